"""
Append-only event sinks.

The tick driver emits one "simulation_tick" event per tick. Sinks are
fire-and-forget: a sink must never make a tick fail.
"""

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, List, Optional

import requests


logger = logging.getLogger(__name__)


@dataclass
class Event:
    """A single appended event."""
    event_type: str
    payload: Dict
    severity: str = "info"
    site_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict:
        return {
            'eventType': self.event_type,
            'severity': self.severity,
            'siteId': self.site_id,
            'createdAt': self.created_at.isoformat(),
            'payload': self.payload,
        }


class EventSink:
    """Base sink; subclasses implement append()."""

    def append(self, event_type: str, payload: Dict) -> None:
        raise NotImplementedError


class LoggingEventSink(EventSink):
    """Writes events as JSON lines through the logging module."""

    def __init__(self, level: int = logging.DEBUG, logger_name: Optional[str] = None):
        self.level = level
        self.logger = logging.getLogger(logger_name) if logger_name else logger

    def append(self, event_type: str, payload: Dict) -> None:
        self.logger.log(self.level, f"{event_type} {json.dumps(payload, default=str)}")


class InMemoryEventSink(EventSink):
    """
    Keeps the most recent events in memory.

    Attributes:
        max_events: Capacity; oldest events are dropped first
        events: Stored events, oldest first
    """

    def __init__(self, max_events: int = 1000, site_id: Optional[str] = None):
        self.max_events = max_events
        self.site_id = site_id
        self.events: Deque[Event] = deque(maxlen=max_events)

    def append(self, event_type: str, payload: Dict) -> None:
        self.events.append(Event(event_type=event_type, payload=dict(payload), site_id=self.site_id))

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        self.events.clear()

    def __len__(self) -> int:
        return len(self.events)


class HttpEventSink(EventSink):
    """
    POSTs {"eventType", "payload"} to an event-log endpoint.

    Delivery is best effort: any error is logged at DEBUG and dropped.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 2.0,
        session: Optional[requests.Session] = None
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.sent_count = 0
        self.failed_count = 0

    def append(self, event_type: str, payload: Dict) -> None:
        body = {'eventType': event_type, 'payload': payload}
        try:
            response = self.session.post(self.url, json=body, timeout=self.timeout_seconds)
            response.raise_for_status()
        except requests.RequestException as exc:
            self.failed_count += 1
            logger.debug(f"Event delivery to {self.url} failed: {exc}")
            return
        self.sent_count += 1

    def __repr__(self) -> str:
        return f"HttpEventSink({self.url}, sent={self.sent_count}, failed={self.failed_count})"
