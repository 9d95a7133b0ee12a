"""
External (AI) allocator integration for DCCA.

The external allocator is an untrusted black box: usually an LLM service
reached over HTTP. This module calls it under a bounded timeout, validates
its response against the allocation response schema, and turns every
failure into a "no proposal" outcome carrying a fallback reason. A
successful proposal is never applied directly; it goes through the
Reconciler first.
"""

import logging
import os
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

from .data_structures import AllocationPlan, AllocationRequest
from .utils import validate_allocation_response


logger = logging.getLogger(__name__)


@dataclass
class ExternalAllocatorConfig:
    """
    Configuration for the external allocator.

    Attributes:
        url: Endpoint accepting allocation requests (None disables it)
        timeout_seconds: Upper bound on one call
        api_key: Bearer token; read from api_key_env when None
        api_key_env: Environment variable holding the token
    """
    url: Optional[str] = None
    timeout_seconds: float = 8.0
    api_key: Optional[str] = None
    api_key_env: str = "DCCA_ALLOCATOR_API_KEY"

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def resolve_api_key(self) -> Optional[str]:
        return self.api_key or os.environ.get(self.api_key_env)

    def validate(self) -> None:
        """Validate configuration parameters."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.url is not None and not self.url.startswith(("http://", "https://")):
            raise ValueError("url must be an http(s) URL")


class ExternalAllocator:
    """Interface for allocators the engine does not trust."""

    def propose(self, payload: Dict) -> Any:
        """
        Return a raw allocation response for a wire allocation request.

        Implementations may raise anything; the adapter treats every
        exception as a failed call.
        """
        raise NotImplementedError


class HttpExternalAllocator(ExternalAllocator):
    """
    Allocator reached with a JSON POST.

    Attributes:
        url: Endpoint URL
        timeout_seconds: Passed to requests so the worker thread ends too
        api_key: Optional bearer token
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 8.0,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.api_key = api_key
        self.session = session or requests.Session()

    def propose(self, payload: Dict) -> Any:
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"

        response = self.session.post(
            self.url, json=payload, headers=headers, timeout=self.timeout_seconds
        )
        response.raise_for_status()
        return response.json()

    def __repr__(self) -> str:
        return f"HttpExternalAllocator({self.url}, timeout={self.timeout_seconds}s)"


class CallableExternalAllocator(ExternalAllocator):
    """Wraps a plain function (e.g. an SDK call) as an external allocator."""

    def __init__(self, func: Callable[[Dict], Any], name: str = "callable"):
        self.func = func
        self.name = name

    def propose(self, payload: Dict) -> Any:
        return self.func(payload)

    def __repr__(self) -> str:
        return f"CallableExternalAllocator({self.name})"


@dataclass
class ProposalOutcome:
    """
    Result of one adapter call.

    Attributes:
        proposal: Validated raw proposal, or None on failure
        fallback_reason: Why the proposal was discarded (None on success)
        failure_kind: Short failure category for statistics
        elapsed_ms: Wall time spent waiting for the allocator
    """
    proposal: Optional[AllocationPlan] = None
    fallback_reason: Optional[str] = None
    failure_kind: Optional[str] = None
    elapsed_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.proposal is not None


class ExternalAllocatorAdapter:
    """
    Calls an external allocator safely.

    Guarantees:
    - The caller waits at most timeout_seconds per call
    - At most one call is in flight; while a timed-out call is still
      running, new calls fail fast instead of queueing
    - No exception escapes propose(); failures become ProposalOutcome
      objects with proposal=None and a fallback reason
    - A proposal is returned only if it matches the response schema and
      names exactly the requested chargers

    Attributes:
        allocator: The wrapped external allocator
        timeout_seconds: Upper bound on one call
        total_calls: Number of propose() calls
        success_count: Calls that produced a proposal
        failure_counts: Failure category -> count
    """

    def __init__(self, allocator: ExternalAllocator, timeout_seconds: float = 8.0):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")

        self.allocator = allocator
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dcca-external")
        self._pending: Optional[Future] = None

        self.total_calls = 0
        self.success_count = 0
        self.failure_counts: Dict[str, int] = {}

    @classmethod
    def from_config(cls, config: ExternalAllocatorConfig) -> Optional["ExternalAllocatorAdapter"]:
        """Build an HTTP-backed adapter, or None when no URL is configured."""
        config.validate()
        if not config.enabled:
            return None

        allocator = HttpExternalAllocator(
            url=config.url,
            timeout_seconds=config.timeout_seconds,
            api_key=config.resolve_api_key(),
        )
        return cls(allocator, timeout_seconds=config.timeout_seconds)

    def propose(self, request: AllocationRequest) -> ProposalOutcome:
        """
        Ask the external allocator for a proposal.

        Args:
            request: Validated allocation request (same payload the greedy
                allocator sees)

        Returns:
            ProposalOutcome with a validated proposal or a fallback reason
        """
        self.total_calls += 1

        if self._pending is not None and not self._pending.done():
            return self._fail(
                "busy",
                "Previous external allocator call still outstanding",
                0.0,
            )

        start = time.perf_counter()
        future = self._executor.submit(self.allocator.propose, request.to_dict())
        self._pending = future

        try:
            raw = future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            return self._fail(
                "timeout",
                f"External allocator timed out after {self.timeout_seconds:.1f}s",
                self._elapsed_ms(start),
            )
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else "unknown"
            return self._fail(
                "http_error",
                f"External allocator returned HTTP {status}",
                self._elapsed_ms(start),
            )
        except ValueError as exc:
            return self._fail(
                "invalid_json",
                f"External allocator returned malformed data: {exc}",
                self._elapsed_ms(start),
            )
        except requests.RequestException as exc:
            return self._fail(
                "network_error",
                f"External allocator unreachable: {exc.__class__.__name__}",
                self._elapsed_ms(start),
            )
        except Exception as exc:
            logger.debug("External allocator raised", exc_info=True)
            return self._fail(
                "error",
                f"External allocator failed: {exc.__class__.__name__}: {exc}",
                self._elapsed_ms(start),
            )

        elapsed_ms = self._elapsed_ms(start)

        errors = validate_allocation_response(raw, request.charger_ids)
        if errors:
            detail = "; ".join(errors[:3])
            if len(errors) > 3:
                detail += f" (+{len(errors) - 3} more)"
            return self._fail(
                "schema",
                f"External allocator response rejected: {detail}",
                elapsed_ms,
            )

        self.success_count += 1
        proposal = AllocationPlan.from_dict(raw, source="external")
        logger.debug(
            f"External proposal accepted in {elapsed_ms:.0f}ms: "
            f"{proposal.total_kw:.0f}kW proposed"
        )
        return ProposalOutcome(proposal=proposal, elapsed_ms=elapsed_ms)

    def _fail(self, kind: str, reason: str, elapsed_ms: float) -> ProposalOutcome:
        self.failure_counts[kind] = self.failure_counts.get(kind, 0) + 1
        message = f"{reason}; fallback allocator used."
        logger.warning(message)
        return ProposalOutcome(
            proposal=None,
            fallback_reason=message,
            failure_kind=kind,
            elapsed_ms=elapsed_ms,
        )

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return (time.perf_counter() - start) * 1000.0

    def get_statistics(self) -> Dict:
        """Call statistics for monitoring."""
        failures = sum(self.failure_counts.values())
        return {
            'total_calls': self.total_calls,
            'success_count': self.success_count,
            'failure_count': failures,
            'failure_counts': dict(self.failure_counts),
            'success_rate_pct': (
                self.success_count / self.total_calls * 100.0 if self.total_calls else 0.0
            ),
        }

    def shutdown(self, wait: bool = False) -> None:
        """Release the worker thread."""
        self._executor.shutdown(wait=wait)

    def __repr__(self) -> str:
        return f"ExternalAllocatorAdapter({self.allocator!r}, timeout={self.timeout_seconds}s)"
