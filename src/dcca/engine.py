"""
Allocation engine and allocation service.

AllocationEngine wires the pipeline for one decision:

    greedy baseline -> optional external proposal -> reconciler

AllocationService is the request/response entry point: it validates a wire
payload, runs the engine and returns the wire response.

Author: Research Team
"""

import logging
from typing import Any, Dict, Optional

from .allocator import GreedyBudgetAllocator
from .data_structures import AllocationPlan, AllocationPolicy, AllocationRequest
from .external import ExternalAllocatorAdapter
from .reconciler import Reconciler


logger = logging.getLogger(__name__)


class AllocationEngine:
    """
    Produces the final, budget-safe plan for an allocation request.

    The greedy plan is always computed first so that a safe plan exists
    whatever the external allocator does.

    Attributes:
        policy: Allocation policy shared by all components
        allocator: Greedy baseline allocator
        adapter: External allocator adapter (None disables the external path)
        reconciler: Proposal sanitizer
        decisions_count: Plans produced
        fallback_count: Plans that fell back to the greedy baseline
    """

    def __init__(
        self,
        policy: Optional[AllocationPolicy] = None,
        adapter: Optional[ExternalAllocatorAdapter] = None
    ):
        self.policy = policy or AllocationPolicy()
        self.allocator = GreedyBudgetAllocator(self.policy)
        self.adapter = adapter
        self.reconciler = Reconciler(self.policy)

        self.decisions_count = 0
        self.fallback_count = 0

    def allocate(self, request: AllocationRequest) -> AllocationPlan:
        """
        Allocate power for one tick.

        Args:
            request: Validated allocation request

        Returns:
            Heuristic plan (no adapter), heuristic plan with fallback
            reason (adapter failed) or reconciled plan
        """
        self.decisions_count += 1

        if not request.chargers:
            return AllocationPlan(
                summary="No vehicles connected; no EV load scheduled this cycle.",
                source="heuristic",
            )

        baseline = self.allocator.allocate(request)
        if self.adapter is None:
            return baseline

        outcome = self.adapter.propose(request)
        if outcome.proposal is None:
            self.fallback_count += 1
            return baseline.with_fallback(outcome.fallback_reason)

        return self.reconciler.reconcile(request, baseline, outcome.proposal)

    def get_statistics(self) -> Dict:
        """Engine-wide statistics, including component statistics."""
        stats = {
            'decisions_count': self.decisions_count,
            'fallback_count': self.fallback_count,
            'external_enabled': self.adapter is not None,
            'reconciler': self.reconciler.get_statistics(),
        }
        if self.adapter is not None:
            stats['external'] = self.adapter.get_statistics()
        current = self.allocator.get_current_metrics()
        if current is not None:
            stats['last_greedy'] = current.to_dict()
        return stats

    def shutdown(self) -> None:
        if self.adapter is not None:
            self.adapter.shutdown()

    def __repr__(self) -> str:
        mode = "external+reconciler" if self.adapter is not None else "greedy"
        return f"AllocationEngine(mode={mode}, decisions={self.decisions_count})"


class AllocationService:
    """
    Wire-level allocation endpoint.

    Example:
        >>> service = AllocationService()
        >>> response = service.handle({
        ...     "buildingBaseLoadKw": 450, "penaltyLimitKw": 500,
        ...     "chargers": [{"chargerId": "CH01", "vehicleId": "V1",
        ...                   "minutesUntilDeparture": 60,
        ...                   "requiredEnergyKwh": 50, "deliveredEnergyKwh": 0,
        ...                   "maxChargeRateKw": 100}]})
        >>> response["allocations"][0]["allocatedKw"]
        50
    """

    def __init__(self, engine: Optional[AllocationEngine] = None):
        self.engine = engine or AllocationEngine()

    def handle(self, payload: Any) -> Dict:
        """
        Validate a request payload and return the allocation response.

        Raises:
            InvalidAllocationRequest: If the payload is malformed; nothing
                is computed in that case
        """
        request = AllocationRequest.from_dict(payload)
        plan = self.engine.allocate(request)

        logger.debug(
            f"Allocation served: {len(plan.allocations)} chargers, "
            f"{plan.total_kw:.0f}/{request.ev_budget_kw:.0f}kW, source={plan.source}"
        )
        return plan.to_dict()
