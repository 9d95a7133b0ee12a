"""
Greedy Budget Allocator - the trusted baseline of the DCCA engine.

Grants kW to chargers in urgency order until the EV budget
(penalty limit minus building base load) is exhausted. Every tick computes
this plan; it is used directly when no external allocator is configured or
the external allocator fails, and it is the per-charger fallback inside the
reconciler.

Key properties:
- Total granted kW never exceeds the EV budget (running subtraction on
  integer grants)
- Deterministic: ties in urgency keep input order
- O(n log n) in the number of chargers

Author: Research Team
"""

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

from .data_structures import (
    Allocation,
    AllocationPlan,
    AllocationPolicy,
    AllocationRequest,
    ChargerStatus,
)
from .urgency import UrgencyScorer
from .utils import clamp, derive_status, desired_rate_kw, round_half_up


logger = logging.getLogger(__name__)

# Max metrics records retained
METRICS_HISTORY_LIMIT = 1000


STATUS_REASONS = {
    ChargerStatus.READY: "Battery energy target already met.",
    ChargerStatus.THROTTLED: "Rate reduced to avoid demand charge threshold.",
    ChargerStatus.CHARGING: "Prioritized charging within available site capacity.",
}


@dataclass
class AllocationMetrics:
    """
    Metrics collected for one greedy allocation.

    Attributes:
        budget_kw: EV budget for the tick (kW)
        granted_kw: Total kW granted (kW)
        charging_count: Chargers labelled Charging
        throttled_count: Chargers labelled Throttled by AI
        ready_count: Chargers labelled Ready
        starved_ids: Chargers with need that received nothing
    """
    budget_kw: float
    granted_kw: float = 0.0
    charging_count: int = 0
    throttled_count: int = 0
    ready_count: int = 0
    starved_ids: List[str] = field(default_factory=list)

    @property
    def unused_budget_kw(self) -> float:
        return max(0.0, self.budget_kw - self.granted_kw)

    @property
    def utilization_pct(self) -> float:
        if self.budget_kw <= 0:
            return 0.0
        return self.granted_kw / self.budget_kw * 100.0

    def to_dict(self) -> Dict:
        return {
            'budget_kw': self.budget_kw,
            'granted_kw': self.granted_kw,
            'unused_budget_kw': self.unused_budget_kw,
            'utilization_pct': self.utilization_pct,
            'charging_count': self.charging_count,
            'throttled_count': self.throttled_count,
            'ready_count': self.ready_count,
            'starved_count': len(self.starved_ids),
        }


class GreedyBudgetAllocator:
    """
    Urgency-ordered greedy allocation under a hard site budget.

    Algorithm:
    1. budget = max(0, penalty_limit - base_load)
    2. Rank chargers by urgency (stable on ties)
    3. Walk the ranking: each charger with remaining need gets
       min(desired, remaining_budget), capped at its hardware limit, where
       desired = min(max_rate, remaining_kwh / tick_hours)
    4. Grants are whole kW, rounded half-up but never above the remaining
       budget, so rounding cannot push the total over the budget

    Attributes:
        policy: Allocation policy (weights, tolerances, tick length)
        scorer: Urgency scorer built from the same policy
        metrics_history: Metrics from each allocation
    """

    def __init__(self, policy: Optional[AllocationPolicy] = None):
        self.policy = policy or AllocationPolicy()
        self.policy.validate()
        self.scorer = UrgencyScorer(self.policy)
        self.metrics_history: Deque[AllocationMetrics] = deque(maxlen=METRICS_HISTORY_LIMIT)

    def allocate(self, request: AllocationRequest) -> AllocationPlan:
        """
        Produce the baseline allocation plan for one tick.

        Args:
            request: Validated allocation request

        Returns:
            AllocationPlan in request order with source "heuristic"
        """
        budget = request.ev_budget_kw
        tick_hours = self.policy.tick_hours
        grants = self._grant(request, budget)

        metrics = AllocationMetrics(budget_kw=budget)
        allocations: Dict[str, Allocation] = {}

        for session in request.chargers:
            remaining = session.remaining_kwh
            desired = desired_rate_kw(remaining, session.max_charge_rate_kw, tick_hours)
            granted = grants.get(session.charger_id, 0)

            status = derive_status(
                remaining, desired, granted,
                tolerance_kw=self.policy.throttle_tolerance_kw
            )
            if status == ChargerStatus.READY:
                granted = 0

            allocations[session.charger_id] = Allocation(
                charger_id=session.charger_id,
                allocated_kw=granted,
                status=status,
                reason=STATUS_REASONS[status],
            )

            metrics.granted_kw += granted
            if status == ChargerStatus.READY:
                metrics.ready_count += 1
            elif status == ChargerStatus.THROTTLED:
                metrics.throttled_count += 1
            else:
                metrics.charging_count += 1
            if remaining > 0 and granted == 0:
                metrics.starved_ids.append(session.charger_id)

        self.metrics_history.append(metrics)

        logger.debug(
            f"Greedy allocation: {metrics.granted_kw:.0f}/{budget:.0f}kW granted, "
            f"{metrics.throttled_count} throttled, {metrics.ready_count} ready"
        )

        return AllocationPlan(
            allocations=allocations,
            summary=self.summarize(metrics),
            source="heuristic",
        )

    def _grant(self, request: AllocationRequest, budget: float) -> Dict[str, int]:
        """Walk the urgency ranking and hand out integer kW grants."""
        tick_hours = self.policy.tick_hours
        remaining_budget = budget
        grants: Dict[str, int] = {}

        for entry in self.scorer.rank(request.chargers):
            session = entry.session

            if not entry.needs_power or remaining_budget <= 0:
                grants[session.charger_id] = 0
                continue

            desired = desired_rate_kw(
                entry.remaining_kwh, session.max_charge_rate_kw, tick_hours
            )
            granted = clamp(min(desired, remaining_budget), 0.0, session.max_charge_rate_kw)
            granted_kw = min(
                round_half_up(granted),
                math.floor(remaining_budget),
                math.floor(session.max_charge_rate_kw),
            )
            granted_kw = max(0, granted_kw)

            grants[session.charger_id] = granted_kw
            remaining_budget -= granted_kw

        return grants

    @staticmethod
    def summarize(metrics: AllocationMetrics) -> str:
        """Human-readable rationale for a greedy plan."""
        active = metrics.charging_count + metrics.throttled_count
        if active == 0:
            return "All vehicles at energy target; no EV load scheduled this cycle."

        if metrics.throttled_count > 0:
            plural = "s" if metrics.throttled_count != 1 else ""
            return (
                f"Allocated {metrics.granted_kw:.0f} of {metrics.budget_kw:.0f} kW budget "
                f"by urgency score; {metrics.throttled_count} charger{plural} throttled "
                f"to protect the demand limit."
            )

        return (
            f"Allocated {metrics.granted_kw:.0f} kW within the {metrics.budget_kw:.0f} kW "
            f"budget; all sessions at full rate."
        )

    def get_current_metrics(self) -> Optional[AllocationMetrics]:
        """Metrics from the most recent allocation."""
        return self.metrics_history[-1] if self.metrics_history else None

    def reset_metrics(self) -> None:
        self.metrics_history.clear()

    def __repr__(self) -> str:
        return (f"GreedyBudgetAllocator(energy_weight={self.policy.energy_weight}, "
                f"departure_weight={self.policy.departure_weight}, "
                f"tick_minutes={self.policy.tick_minutes})")
