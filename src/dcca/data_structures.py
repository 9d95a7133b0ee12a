"""
Data structures for the Demand-Constrained Charge Allocator (DCCA).

This module defines the core data structures used throughout the allocation
engine: charger sessions, allocation requests and plans, policy and
simulation configuration, and the tick-indexed simulation state consumed by
dashboards.

Wire-format dictionaries (allocation request/response, read model) use
camelCase keys; Python attributes use snake_case.

Author: Research Team
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any


MAX_CHARGERS_PER_REQUEST = 16


class ChargerStatus(Enum):
    """Per-charger status derived each tick from energy math."""
    CHARGING = "Charging"
    THROTTLED = "Throttled by AI"
    READY = "Ready"

    @classmethod
    def parse(cls, value: Any) -> "ChargerStatus":
        """
        Parse a wire status label.

        Accepts the display label ("Throttled by AI") as well as the compact
        enum spelling ("ThrottledByAI").

        Raises:
            ValueError: If the label is not a known status
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            for status in cls:
                if value == status.value:
                    return status
            if value in STATUS_ALIASES:
                return STATUS_ALIASES[value]
        raise ValueError(f"Unknown charger status: {value!r}")


# Compact wire spellings of the display labels
STATUS_ALIASES = {
    "ThrottledByAI": ChargerStatus.THROTTLED,
}


class InvalidAllocationRequest(ValueError):
    """
    Raised when an allocation request fails validation.

    Nothing is computed and no state is mutated when this is raised.

    Attributes:
        errors: List of human-readable validation messages
    """

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Allocation request validation failed:\n" + "\n".join(self.errors))

    def to_dict(self) -> Dict:
        """Structured error body for callers."""
        return {'error': 'Invalid payload.', 'details': self.errors.copy()}


class BudgetInvariantError(RuntimeError):
    """Raised when a final plan would break the EV budget invariant."""


@dataclass
class ChargerSession:
    """
    One active charging relationship between a charger and a vehicle.

    Sessions are created when a vehicle plugs in and are mutated only by the
    tick driver, once per tick.

    Attributes:
        charger_id: Unique charger identifier
        vehicle_id: Unique vehicle identifier
        max_charge_rate_kw: Hardware upper bound on instantaneous draw (kW)
        required_energy_kwh: Energy the vehicle needs before departure (kWh)
        delivered_energy_kwh: Energy delivered so far (kWh)
        minutes_until_departure: Countdown to departure, floored at zero
        allocated_kw: Grant for the current tick only (kW)
        status: Derived status for the current tick
        departure_label: Optional display label (e.g. "7:30 AM")
    """
    charger_id: str
    vehicle_id: str
    max_charge_rate_kw: float
    required_energy_kwh: float
    delivered_energy_kwh: float = 0.0
    minutes_until_departure: float = 0.0
    allocated_kw: float = 0.0
    status: ChargerStatus = ChargerStatus.CHARGING
    departure_label: Optional[str] = None

    @property
    def remaining_kwh(self) -> float:
        """Unmet energy demand (kWh), never negative."""
        return max(0.0, self.required_energy_kwh - self.delivered_energy_kwh)

    @property
    def soc_pct(self) -> float:
        """Share of the required energy already delivered (0-100)."""
        if self.required_energy_kwh <= 0:
            return 100.0
        return min(100.0, self.delivered_energy_kwh / self.required_energy_kwh * 100.0)

    def to_request_dict(self) -> Dict:
        """Wire form used in allocation requests."""
        return {
            'chargerId': self.charger_id,
            'vehicleId': self.vehicle_id,
            'minutesUntilDeparture': self.minutes_until_departure,
            'requiredEnergyKwh': self.required_energy_kwh,
            'deliveredEnergyKwh': self.delivered_energy_kwh,
            'maxChargeRateKw': self.max_charge_rate_kw,
        }

    def to_dict(self) -> Dict:
        """Read-model form including derived fields."""
        data = self.to_request_dict()
        data.update({
            'allocatedKw': self.allocated_kw,
            'status': self.status.value,
            'remainingKwh': self.remaining_kwh,
            'departureLabel': self.departure_label,
        })
        return data

    @classmethod
    def from_request_dict(cls, data: Dict) -> "ChargerSession":
        """Build a session from an already validated request entry."""
        return cls(
            charger_id=data['chargerId'],
            vehicle_id=data['vehicleId'],
            max_charge_rate_kw=float(data['maxChargeRateKw']),
            required_energy_kwh=float(data['requiredEnergyKwh']),
            delivered_energy_kwh=float(data['deliveredEnergyKwh']),
            minutes_until_departure=float(data['minutesUntilDeparture']),
        )

    def __repr__(self) -> str:
        return (f"ChargerSession({self.charger_id}/{self.vehicle_id}, "
                f"remaining={self.remaining_kwh:.1f}kWh, "
                f"rate={self.allocated_kw:.0f}kW, {self.status.value})")


@dataclass
class AllocationRequest:
    """
    Inputs for one allocation decision.

    Attributes:
        building_base_load_kw: Current building base load sample (kW)
        penalty_limit_kw: Utility demand limit for the whole site (kW)
        chargers: Sessions to allocate, in input order
    """
    building_base_load_kw: float
    penalty_limit_kw: float
    chargers: List[ChargerSession] = field(default_factory=list)

    @property
    def ev_budget_kw(self) -> float:
        """Power headroom available for charging (kW)."""
        return max(0.0, self.penalty_limit_kw - self.building_base_load_kw)

    @property
    def charger_ids(self) -> List[str]:
        return [c.charger_id for c in self.chargers]

    def to_dict(self) -> Dict:
        return {
            'buildingBaseLoadKw': self.building_base_load_kw,
            'penaltyLimitKw': self.penalty_limit_kw,
            'chargers': [c.to_request_dict() for c in self.chargers],
        }

    @classmethod
    def from_dict(cls, payload: Any) -> "AllocationRequest":
        """
        Validate and parse a wire allocation request.

        Raises:
            InvalidAllocationRequest: If the payload is malformed
        """
        # Imported here to keep utils free to import this module
        from .utils import validate_allocation_request

        errors = validate_allocation_request(payload)
        if errors:
            raise InvalidAllocationRequest(errors)

        return cls(
            building_base_load_kw=float(payload['buildingBaseLoadKw']),
            penalty_limit_kw=float(payload['penaltyLimitKw']),
            chargers=[ChargerSession.from_request_dict(c) for c in payload['chargers']],
        )


@dataclass
class Allocation:
    """
    Grant for a single charger in an allocation plan.

    Attributes:
        charger_id: Charger this grant applies to
        allocated_kw: Granted power for this tick (kW)
        status: Status label attached by the producing allocator
        reason: Short human-readable justification
    """
    charger_id: str
    allocated_kw: float
    status: ChargerStatus
    reason: str = ""

    def to_dict(self) -> Dict:
        return {
            'chargerId': self.charger_id,
            'allocatedKw': self.allocated_kw,
            'status': self.status.value,
            'reason': self.reason,
        }


@dataclass
class AllocationPlan:
    """
    Full-tick allocation output.

    Covers exactly the charger IDs of the request that produced it, in
    request order.

    Attributes:
        allocations: Mapping charger_id -> Allocation (insertion ordered)
        summary: Human-readable rationale for the whole plan
        source: "heuristic", "external" or "reconciled"
        fallback_reason: Why the external allocator was not used (if it failed)
    """
    allocations: Dict[str, Allocation] = field(default_factory=dict)
    summary: str = ""
    source: str = "heuristic"
    fallback_reason: Optional[str] = None

    @property
    def total_kw(self) -> float:
        return sum(a.allocated_kw for a in self.allocations.values())

    @property
    def fallback_used(self) -> bool:
        return self.fallback_reason is not None

    @property
    def throttled_ids(self) -> List[str]:
        return [
            cid for cid, a in self.allocations.items()
            if a.status == ChargerStatus.THROTTLED
        ]

    def get(self, charger_id: str) -> Optional[Allocation]:
        return self.allocations.get(charger_id)

    def copy(self) -> "AllocationPlan":
        return copy.deepcopy(self)

    def with_fallback(self, reason: str) -> "AllocationPlan":
        """Copy of this plan tagged with a fallback reason."""
        plan = self.copy()
        plan.fallback_reason = reason
        return plan

    def to_dict(self) -> Dict:
        """Allocation response wire format."""
        data = {
            'allocations': [a.to_dict() for a in self.allocations.values()],
            'summary': self.summary,
            'source': self.source,
        }
        if self.fallback_reason is not None:
            data['fallbackReason'] = self.fallback_reason
        return data

    @classmethod
    def from_dict(cls, payload: Dict, source: str = "external") -> "AllocationPlan":
        """
        Build a plan from an already validated allocation response.

        Entries keep the order in which they appear in the payload.
        """
        allocations = {}
        for entry in payload['allocations']:
            allocations[entry['chargerId']] = Allocation(
                charger_id=entry['chargerId'],
                allocated_kw=float(entry['allocatedKw']),
                status=ChargerStatus.parse(entry['status']),
                reason=entry.get('reason', ''),
            )
        return cls(
            allocations=allocations,
            summary=payload.get('summary', ''),
            source=source,
        )

    def __repr__(self) -> str:
        tag = f", fallback={self.fallback_reason!r}" if self.fallback_reason else ""
        return (f"AllocationPlan({self.source}, chargers={len(self.allocations)}, "
                f"total={self.total_kw:.0f}kW{tag})")


@dataclass
class AllocationPolicy:
    """
    Tunable policy constants for scoring, allocation and status derivation.

    Attributes:
        energy_weight: Urgency weight per kWh of unmet energy
        departure_weight: Urgency numerator for the time-pressure term
        min_departure_minutes: Floor on minutes-to-departure in the urgency term
        throttle_tolerance_kw: Anti-flapping tolerance for the throttled label
        ready_epsilon_kwh: Remaining energy treated as complete after a tick
        tick_minutes: Simulated length of one tick (minutes)
        max_chargers: Maximum chargers accepted in one request
    """
    energy_weight: float = 3.0
    departure_weight: float = 600.0
    min_departure_minutes: float = 10.0
    throttle_tolerance_kw: float = 3.0
    ready_epsilon_kwh: float = 0.2
    tick_minutes: float = 5.0
    max_chargers: int = MAX_CHARGERS_PER_REQUEST

    @property
    def tick_hours(self) -> float:
        return self.tick_minutes / 60.0

    def validate(self) -> None:
        """Validate policy parameters."""
        if self.energy_weight < 0:
            raise ValueError("energy_weight must be non-negative")
        if self.departure_weight < 0:
            raise ValueError("departure_weight must be non-negative")
        if self.min_departure_minutes <= 0:
            raise ValueError("min_departure_minutes must be positive")
        if self.throttle_tolerance_kw < 0:
            raise ValueError("throttle_tolerance_kw must be non-negative")
        if self.ready_epsilon_kwh < 0:
            raise ValueError("ready_epsilon_kwh must be non-negative")
        if self.tick_minutes <= 0:
            raise ValueError("tick_minutes must be positive")
        if self.max_chargers < 1:
            raise ValueError("max_chargers must be at least 1")


@dataclass
class SimulationConfig:
    """
    Configuration for the simulated site and the tick loop.

    Attributes:
        penalty_limit_kw: Utility demand limit (kW)
        initial_base_load_kw: Building base load before the first tick (kW)
        base_load_min_kw: Lower clamp of the base-load random walk (kW)
        base_load_max_kw: Upper clamp of the base-load random walk (kW)
        shock_probability: Probability of a load-shock step per tick
        shock_min_kw: Smallest load-shock magnitude (kW)
        shock_max_kw: Largest load-shock magnitude (kW)
        drift_max_kw: Largest continuous drift magnitude (kW)
        history_window: Chart points kept in the rolling history
        decision_window: Allocator decisions kept for display
        savings_usd_per_kw: Flat demand-charge proxy ($ per avoided kW)
        high_load_warning_kw: Total load above which a tick is flagged
        tick_interval_seconds: Wall-clock cadence of the background loop
        seed: Random seed for the base-load sampler
        enable_logging: Whether to configure INFO logging on start-up
    """
    penalty_limit_kw: float = 500.0
    initial_base_load_kw: float = 332.0
    base_load_min_kw: float = 300.0
    base_load_max_kw: float = 460.0
    shock_probability: float = 0.35
    shock_min_kw: float = 80.0
    shock_max_kw: float = 150.0
    drift_max_kw: float = 35.0
    history_window: int = 40
    decision_window: int = 8
    savings_usd_per_kw: float = 16.5
    high_load_warning_kw: float = 460.0
    tick_interval_seconds: float = 5.0
    seed: Optional[int] = None
    enable_logging: bool = True

    def validate(self) -> None:
        """Validate configuration parameters."""
        if self.penalty_limit_kw <= 0:
            raise ValueError("penalty_limit_kw must be positive")
        if self.base_load_min_kw < 0:
            raise ValueError("base_load_min_kw must be non-negative")
        if self.base_load_max_kw < self.base_load_min_kw:
            raise ValueError("base_load_max_kw cannot be below base_load_min_kw")
        if self.initial_base_load_kw < 0:
            raise ValueError("initial_base_load_kw must be non-negative")
        if not 0 <= self.shock_probability <= 1:
            raise ValueError("shock_probability must be between 0 and 1")
        if self.shock_min_kw < 0 or self.shock_max_kw < self.shock_min_kw:
            raise ValueError("shock magnitudes must satisfy 0 <= min <= max")
        if self.drift_max_kw < 0:
            raise ValueError("drift_max_kw must be non-negative")
        if self.history_window < 1:
            raise ValueError("history_window must be at least 1")
        if self.decision_window < 1:
            raise ValueError("decision_window must be at least 1")
        if self.savings_usd_per_kw < 0:
            raise ValueError("savings_usd_per_kw must be non-negative")
        if self.tick_interval_seconds <= 0:
            raise ValueError("tick_interval_seconds must be positive")


@dataclass
class ChartPoint:
    """One point of the rolling load chart."""
    time: datetime
    total_load_kw: float
    base_load_kw: float
    ev_load_kw: float
    demand_limit_kw: float

    def to_dict(self) -> Dict:
        return {
            'time': self.time.isoformat(),
            'totalLoadKw': self.total_load_kw,
            'baseLoadKw': self.base_load_kw,
            'evLoadKw': self.ev_load_kw,
            'demandLimitKw': self.demand_limit_kw,
        }


@dataclass
class AllocatorDecision:
    """
    Record of one tick's allocator rationale for the decision feed.

    Attributes:
        time: Simulated time of the tick
        summary: Rationale string from the plan
        severity: "success" or "warning"
        source: Plan source ("heuristic", "reconciled", ...)
        fallback_used: Whether the fallback allocator replaced an external plan
    """
    time: datetime
    summary: str
    severity: str
    source: str = "heuristic"
    fallback_used: bool = False

    def to_dict(self) -> Dict:
        return {
            'time': self.time.isoformat(),
            'summary': self.summary,
            'severity': self.severity,
            'source': self.source,
            'fallbackUsed': self.fallback_used,
        }


@dataclass
class SimulationState:
    """
    Tick-indexed aggregate published to the presentation layer.

    Created once at start-up and replaced by the tick driver after every
    tick. Readers must treat it as read-only.

    Attributes:
        tick_count: Number of completed ticks
        building_base_load_kw: Current base-load sample (kW)
        sessions: Active charger sessions
        chart_history: Rolling, bounded chart history
        avoided_penalty_kw: Cumulative avoided over-limit demand (kW)
        estimated_savings_usd: Savings derived from avoided_penalty_kw
        allocator_summary: Most recent allocator rationale
        throttled_ids: Chargers throttled on the last tick
        peak_load_kw: Highest total site load seen so far (kW)
        decisions: Most recent allocator decisions, newest first
        fallback_reason: Set when the last tick fell back to the heuristic
        last_error: Last allocator error message, if any
        clock: Simulated time of the last tick
    """
    tick_count: int = 0
    building_base_load_kw: float = 0.0
    sessions: List[ChargerSession] = field(default_factory=list)
    chart_history: List[ChartPoint] = field(default_factory=list)
    avoided_penalty_kw: float = 0.0
    estimated_savings_usd: float = 0.0
    allocator_summary: str = "Initializing allocation engine..."
    throttled_ids: List[str] = field(default_factory=list)
    peak_load_kw: float = 0.0
    decisions: List[AllocatorDecision] = field(default_factory=list)
    fallback_reason: Optional[str] = None
    last_error: Optional[str] = None
    clock: datetime = field(default_factory=datetime.now)

    @property
    def ev_load_kw(self) -> float:
        return sum(s.allocated_kw for s in self.sessions)

    @property
    def total_load_kw(self) -> float:
        return self.building_base_load_kw + self.ev_load_kw

    @property
    def fallback_used(self) -> bool:
        return self.fallback_reason is not None

    def get_session(self, charger_id: str) -> Optional[ChargerSession]:
        for session in self.sessions:
            if session.charger_id == charger_id:
                return session
        return None

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ChargerStatus}
        for session in self.sessions:
            counts[session.status.value] += 1
        return counts

    def snapshot(self) -> "SimulationState":
        """Deep copy handed to readers between ticks."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict:
        """Presentation read model (camelCase, JSON-friendly)."""
        return {
            'tickCount': self.tick_count,
            'buildingBaseLoadKw': self.building_base_load_kw,
            'evLoadKw': self.ev_load_kw,
            'totalLoadKw': self.total_load_kw,
            'sessions': [s.to_dict() for s in self.sessions],
            'chartHistory': [p.to_dict() for p in self.chart_history],
            'avoidedPenaltyKw': self.avoided_penalty_kw,
            'estimatedSavingsUsd': self.estimated_savings_usd,
            'allocatorSummary': self.allocator_summary,
            'throttledIds': self.throttled_ids.copy(),
            'peakLoadKw': self.peak_load_kw,
            'decisions': [d.to_dict() for d in self.decisions],
            'fallbackUsed': self.fallback_used,
            'fallbackReason': self.fallback_reason,
            'lastError': self.last_error,
            'statusCounts': self.count_by_status(),
            'clock': self.clock.isoformat(),
        }

    def __repr__(self) -> str:
        return (f"SimulationState(tick={self.tick_count}, "
                f"base={self.building_base_load_kw:.0f}kW, "
                f"ev={self.ev_load_kw:.0f}kW, sessions={len(self.sessions)})")
