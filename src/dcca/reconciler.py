"""
Reconciler / Safety Sanitizer for the DCCA engine.

Merges an untrusted external proposal with the greedy baseline plan using
a two-tier policy: the external allocator's labels are trusted, its
magnitudes are not.

- Per charger: completed sessions are forced to {0 kW, Ready}; missing or
  malformed entries fall back to the greedy entry; everything else keeps
  its external status/reason with kW clamped to the hardware limit
- Plan-wide: if the merged total exceeds the EV budget, every grant is
  scaled down proportionally and floored

Author: Research Team
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .allocator import STATUS_REASONS
from .data_structures import (
    Allocation,
    AllocationPlan,
    AllocationPolicy,
    AllocationRequest,
    BudgetInvariantError,
    ChargerStatus,
)
from .utils import clamp, is_finite_number, round_half_up


logger = logging.getLogger(__name__)

BUDGET_TOLERANCE_KW = 1e-9


@dataclass
class ReconciliationRecord:
    """
    Record of one reconciliation for analysis.

    Attributes:
        budget_kw: EV budget for the tick (kW)
        proposed_kw: Raw total proposed by the external allocator (kW)
        final_kw: Total after clamping and rescaling (kW)
        clamped_ids: Chargers whose proposed kW was changed by clamping
        fallback_ids: Chargers that received the greedy entry
        forced_ready_ids: Chargers forced to Ready (no remaining energy)
        relabeled_ids: Charging entries relabeled Throttled by rescaling
        scale_factor: budget / total when rescaling happened, else None
    """
    budget_kw: float
    proposed_kw: float
    final_kw: float = 0.0
    clamped_ids: List[str] = field(default_factory=list)
    fallback_ids: List[str] = field(default_factory=list)
    forced_ready_ids: List[str] = field(default_factory=list)
    relabeled_ids: List[str] = field(default_factory=list)
    scale_factor: Optional[float] = None

    @property
    def rescaled(self) -> bool:
        return self.scale_factor is not None

    def to_dict(self) -> Dict:
        return {
            'budget_kw': self.budget_kw,
            'proposed_kw': self.proposed_kw,
            'final_kw': self.final_kw,
            'clamped_ids': ','.join(self.clamped_ids),
            'fallback_ids': ','.join(self.fallback_ids),
            'forced_ready_ids': ','.join(self.forced_ready_ids),
            'relabeled_ids': ','.join(self.relabeled_ids),
            'scale_factor': self.scale_factor,
        }


class Reconciler:
    """
    Sanitizes external proposals into plans that respect the EV budget.

    Guarantees for every returned plan:
    - It covers exactly the request's chargers, in request order
    - Every grant is a whole, non-negative kW value within the charger's
      hardware limit
    - The total never exceeds max(0, penalty_limit - base_load)

    Attributes:
        policy: Allocation policy (tolerance used for relabeling)
        history: ReconciliationRecord per reconciled proposal
    """

    def __init__(self, policy: Optional[AllocationPolicy] = None):
        self.policy = policy or AllocationPolicy()
        self.history: List[ReconciliationRecord] = []

    def reconcile(
        self,
        request: AllocationRequest,
        baseline: AllocationPlan,
        proposal: Optional[AllocationPlan]
    ) -> AllocationPlan:
        """
        Merge a proposal with the greedy baseline.

        Args:
            request: The request both plans answer
            baseline: Greedy plan for the same request
            proposal: External proposal, or None

        Returns:
            Reconciled plan with source "reconciled" (the baseline itself
            when there is no proposal)

        Raises:
            BudgetInvariantError: If the result would still break the budget
        """
        if proposal is None:
            return baseline

        budget = request.ev_budget_kw
        record = ReconciliationRecord(budget_kw=budget, proposed_kw=_safe_total(proposal))

        merged: Dict[str, Allocation] = {}
        for session in request.chargers:
            charger_id = session.charger_id

            if session.remaining_kwh <= 0:
                merged[charger_id] = Allocation(
                    charger_id, 0, ChargerStatus.READY, STATUS_REASONS[ChargerStatus.READY]
                )
                record.forced_ready_ids.append(charger_id)
                continue

            entry = proposal.get(charger_id)
            if not _is_well_formed(entry):
                fallback = baseline.get(charger_id)
                merged[charger_id] = Allocation(
                    charger_id, fallback.allocated_kw, fallback.status, fallback.reason
                )
                record.fallback_ids.append(charger_id)
                continue

            kw = int(clamp(
                round_half_up(entry.allocated_kw), 0, math.floor(session.max_charge_rate_kw)
            ))
            if kw != entry.allocated_kw:
                record.clamped_ids.append(charger_id)
            merged[charger_id] = Allocation(charger_id, kw, entry.status, entry.reason)

        total = sum(a.allocated_kw for a in merged.values())
        if total > budget and total > 0:
            record.scale_factor = budget / total
            self._rescale(merged, record)
            logger.info(
                f"External proposal over budget: {total:.0f}kW > {budget:.0f}kW, "
                f"scaled by {record.scale_factor:.3f}"
            )

        plan = AllocationPlan(
            allocations=merged,
            summary=proposal.summary or baseline.summary,
            source="reconciled",
        )
        self._check_budget(plan, budget)

        record.final_kw = plan.total_kw
        self.history.append(record)

        if record.fallback_ids or record.clamped_ids:
            logger.info(
                f"Reconciled proposal: {len(record.clamped_ids)} clamped, "
                f"{len(record.fallback_ids)} replaced by greedy entries"
            )

        return plan

    def _rescale(self, merged: Dict[str, Allocation], record: ReconciliationRecord) -> None:
        """Scale every grant by record.scale_factor, flooring to whole kW."""
        tolerance = self.policy.throttle_tolerance_kw
        for allocation in merged.values():
            before = allocation.allocated_kw
            allocation.allocated_kw = math.floor(before * record.scale_factor)

            # A Charging label cannot survive a grant cut past the tolerance
            if allocation.status == ChargerStatus.CHARGING and (
                allocation.allocated_kw == 0
                or allocation.allocated_kw < before - tolerance
            ):
                allocation.status = ChargerStatus.THROTTLED
                allocation.reason = STATUS_REASONS[ChargerStatus.THROTTLED]
                record.relabeled_ids.append(allocation.charger_id)

    @staticmethod
    def _check_budget(plan: AllocationPlan, budget: float) -> None:
        negative = [a.charger_id for a in plan.allocations.values() if a.allocated_kw < 0]
        if negative:
            raise BudgetInvariantError(f"Negative allocation for chargers {negative}")
        if plan.total_kw > budget + BUDGET_TOLERANCE_KW:
            raise BudgetInvariantError(
                f"Reconciled total {plan.total_kw:.3f}kW exceeds budget {budget:.3f}kW"
            )

    def get_statistics(self) -> Dict:
        """
        Get reconciliation statistics.

        Returns:
            Dictionary with reconciliation statistics for analysis
        """
        if not self.history:
            return {
                'total_reconciliations': 0,
                'rescale_count': 0,
                'rescale_rate': 0.0,
                'avg_scale_factor': 1.0,
                'total_clamped': 0,
                'total_fallback_entries': 0,
                'total_forced_ready': 0,
                'total_relabeled': 0,
            }

        rescaled = [r for r in self.history if r.rescaled]
        return {
            'total_reconciliations': len(self.history),
            'rescale_count': len(rescaled),
            'rescale_rate': len(rescaled) / len(self.history),
            'avg_scale_factor': (
                sum(r.scale_factor for r in rescaled) / len(rescaled) if rescaled else 1.0
            ),
            'total_clamped': sum(len(r.clamped_ids) for r in self.history),
            'total_fallback_entries': sum(len(r.fallback_ids) for r in self.history),
            'total_forced_ready': sum(len(r.forced_ready_ids) for r in self.history),
            'total_relabeled': sum(len(r.relabeled_ids) for r in self.history),
        }

    def get_history_dataframe_data(self) -> List[Dict]:
        """Reconciliation history as list of dicts for DataFrame creation."""
        return [record.to_dict() for record in self.history]

    def reset(self) -> None:
        self.history.clear()
        logger.info("Reconciler history reset")

    def __repr__(self) -> str:
        return f"Reconciler(records={len(self.history)})"


def _is_well_formed(entry: Optional[Allocation]) -> bool:
    return (
        entry is not None
        and is_finite_number(entry.allocated_kw)
        and isinstance(entry.status, ChargerStatus)
    )


def _safe_total(plan: AllocationPlan) -> float:
    return sum(
        a.allocated_kw for a in plan.allocations.values()
        if is_finite_number(a.allocated_kw)
    )
