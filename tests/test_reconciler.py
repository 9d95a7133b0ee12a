"""
Tests for the reconciler (safety sanitizer).

This module tests:
- Proportional rescaling of over-budget proposals
- Clamping of adversarial magnitudes
- Greedy fallback for missing or malformed entries
- Forced Ready for completed sessions
- Idempotence and reconciliation statistics
"""

import pytest

from dcca import (
    Allocation,
    AllocationPlan,
    AllocationRequest,
    BudgetInvariantError,
    ChargerSession,
    ChargerStatus,
    GreedyBudgetAllocator,
    Reconciler,
)


def make_session(charger_id, required=100.0, delivered=0.0, max_rate=100.0):
    return ChargerSession(
        charger_id=charger_id,
        vehicle_id=f"Van {charger_id}",
        max_charge_rate_kw=max_rate,
        required_energy_kwh=required,
        delivered_energy_kwh=delivered,
        minutes_until_departure=90.0,
    )


def make_proposal(entries, summary="External plan balancing the fleet."):
    allocations = {
        charger_id: Allocation(charger_id, kw, status, f"external reason {charger_id}")
        for charger_id, kw, status in entries
    }
    return AllocationPlan(allocations=allocations, summary=summary, source="external")


class TestReconcilerRescale:
    """Over-budget proposals are scaled down proportionally."""

    def setup_method(self):
        self.reconciler = Reconciler()
        self.allocator = GreedyBudgetAllocator()
        self.request = AllocationRequest(
            building_base_load_kw=450.0,
            penalty_limit_kw=500.0,
            chargers=[make_session("A"), make_session("B")],
        )
        self.baseline = self.allocator.allocate(self.request)

    def test_proportional_rescale(self):
        proposal = make_proposal([
            ("A", 40, ChargerStatus.CHARGING),
            ("B", 40, ChargerStatus.CHARGING),
        ])

        plan = self.reconciler.reconcile(self.request, self.baseline, proposal)

        assert plan.get("A").allocated_kw == 25
        assert plan.get("B").allocated_kw == 25
        assert plan.get("A").status == ChargerStatus.THROTTLED
        assert plan.get("B").status == ChargerStatus.THROTTLED
        assert plan.source == "reconciled"
        assert plan.summary == "External plan balancing the fleet."
        assert self.reconciler.history[-1].scale_factor == pytest.approx(0.625)

    def test_rescale_floors_each_grant(self):
        request = AllocationRequest(
            450.0, 500.0, [make_session("A"), make_session("B"), make_session("C")]
        )
        proposal = make_proposal([
            ("A", 30, ChargerStatus.THROTTLED),
            ("B", 30, ChargerStatus.THROTTLED),
            ("C", 30, ChargerStatus.THROTTLED),
        ])

        plan = self.reconciler.reconcile(request, self.allocator.allocate(request), proposal)

        assert [a.allocated_kw for a in plan.allocations.values()] == [16, 16, 16]
        assert plan.total_kw <= request.ev_budget_kw

    def test_charging_entry_scaled_to_zero_is_throttled(self):
        request = AllocationRequest(499.0, 500.0, [make_session("A"), make_session("B")])
        proposal = make_proposal([
            ("A", 1, ChargerStatus.CHARGING),
            ("B", 99, ChargerStatus.CHARGING),
        ])

        plan = self.reconciler.reconcile(request, self.allocator.allocate(request), proposal)

        assert plan.get("A").allocated_kw == 0
        assert plan.get("A").status == ChargerStatus.THROTTLED
        assert plan.total_kw <= 1.0

    def test_within_budget_proposal_passes_through(self):
        proposal = make_proposal([
            ("A", 20, ChargerStatus.CHARGING),
            ("B", 10, ChargerStatus.THROTTLED),
        ])

        plan = self.reconciler.reconcile(self.request, self.baseline, proposal)

        for charger_id in ("A", "B"):
            assert plan.get(charger_id).allocated_kw == proposal.get(charger_id).allocated_kw
            assert plan.get(charger_id).status == proposal.get(charger_id).status
            assert plan.get(charger_id).reason == proposal.get(charger_id).reason
        assert self.reconciler.history[-1].scale_factor is None

    def test_rescale_is_idempotent(self):
        proposal = make_proposal([
            ("A", 40, ChargerStatus.CHARGING),
            ("B", 40, ChargerStatus.CHARGING),
        ])

        once = self.reconciler.reconcile(self.request, self.baseline, proposal)
        twice = self.reconciler.reconcile(self.request, self.baseline, once)

        assert twice.to_dict() == once.to_dict()


class TestReconcilerSanitizing:
    """Per-charger sanitizing of untrusted entries."""

    def setup_method(self):
        self.reconciler = Reconciler()
        self.allocator = GreedyBudgetAllocator()

    def reconcile(self, request, proposal):
        return self.reconciler.reconcile(request, self.allocator.allocate(request), proposal)

    def test_no_proposal_returns_baseline(self):
        request = AllocationRequest(450.0, 500.0, [make_session("A")])
        baseline = self.allocator.allocate(request)

        assert self.reconciler.reconcile(request, baseline, None) is baseline
        assert self.reconciler.history == []

    def test_magnitude_clamped_to_hardware_limit(self):
        request = AllocationRequest(0.0, 500.0, [make_session("A", max_rate=62.0)])
        proposal = make_proposal([("A", 1000, ChargerStatus.CHARGING)])

        plan = self.reconcile(request, proposal)

        assert plan.get("A").allocated_kw == 62
        assert self.reconciler.history[-1].clamped_ids == ["A"]

    def test_negative_and_fractional_values_sanitized(self):
        request = AllocationRequest(300.0, 500.0, [make_session("A"), make_session("B")])
        proposal = make_proposal([
            ("A", -25, ChargerStatus.THROTTLED),
            ("B", 12.5, ChargerStatus.CHARGING),
        ])

        plan = self.reconcile(request, proposal)

        assert plan.get("A").allocated_kw == 0
        assert plan.get("B").allocated_kw == 13

    def test_missing_entry_uses_greedy_entry(self):
        request = AllocationRequest(350.0, 500.0, [make_session("A"), make_session("B")])
        baseline = self.allocator.allocate(request)
        proposal = make_proposal([("B", 10, ChargerStatus.THROTTLED)])

        plan = self.reconciler.reconcile(request, baseline, proposal)

        assert plan.get("A").allocated_kw == baseline.get("A").allocated_kw
        assert plan.get("A").status == baseline.get("A").status
        assert plan.get("A").reason == baseline.get("A").reason
        assert self.reconciler.history[-1].fallback_ids == ["A"]
        assert plan.total_kw <= request.ev_budget_kw

    def test_non_finite_entry_uses_greedy_entry(self):
        request = AllocationRequest(450.0, 500.0, [make_session("A")])
        baseline = self.allocator.allocate(request)
        proposal = make_proposal([("A", float('nan'), ChargerStatus.CHARGING)])

        plan = self.reconciler.reconcile(request, baseline, proposal)

        assert plan.get("A").allocated_kw == baseline.get("A").allocated_kw

    def test_completed_session_forced_ready(self):
        request = AllocationRequest(
            300.0, 500.0, [make_session("A", required=40.0, delivered=40.0), make_session("B")]
        )
        proposal = make_proposal([
            ("A", 50, ChargerStatus.CHARGING),
            ("B", 50, ChargerStatus.CHARGING),
        ])

        plan = self.reconcile(request, proposal)

        assert plan.get("A").allocated_kw == 0
        assert plan.get("A").status == ChargerStatus.READY
        assert self.reconciler.history[-1].forced_ready_ids == ["A"]

    def test_unknown_chargers_ignored_and_order_kept(self):
        request = AllocationRequest(300.0, 500.0, [make_session("A"), make_session("B")])
        proposal = make_proposal([
            ("ZZ", 90, ChargerStatus.CHARGING),
            ("B", 30, ChargerStatus.CHARGING),
            ("A", 20, ChargerStatus.CHARGING),
        ])

        plan = self.reconcile(request, proposal)

        assert list(plan.allocations) == ["A", "B"]

    @pytest.mark.parametrize("base_load", [300.0, 420.0, 455.5, 499.0, 505.0])
    def test_adversarial_proposal_stays_within_budget(self, base_load):
        sessions = [make_session(f"CH{i:02d}", max_rate=180.0) for i in range(8)]
        request = AllocationRequest(base_load, 500.0, sessions)
        proposal = make_proposal([
            (s.charger_id, 10_000, ChargerStatus.CHARGING) for s in sessions
        ])

        plan = self.reconcile(request, proposal)

        assert plan.total_kw <= request.ev_budget_kw
        assert all(a.allocated_kw >= 0 for a in plan.allocations.values())


class TestReconcilerStatistics:
    """History and statistics."""

    def test_empty_statistics(self):
        stats = Reconciler().get_statistics()
        assert stats['total_reconciliations'] == 0
        assert stats['avg_scale_factor'] == 1.0

    def test_statistics_after_rescale(self):
        reconciler = Reconciler()
        request = AllocationRequest(450.0, 500.0, [make_session("A"), make_session("B")])
        baseline = GreedyBudgetAllocator().allocate(request)
        proposal = make_proposal([
            ("A", 40, ChargerStatus.CHARGING),
            ("B", 40, ChargerStatus.CHARGING),
        ])

        reconciler.reconcile(request, baseline, proposal)
        stats = reconciler.get_statistics()

        assert stats['total_reconciliations'] == 1
        assert stats['rescale_count'] == 1
        assert stats['avg_scale_factor'] == pytest.approx(0.625)
        assert stats['total_relabeled'] == 2
        assert len(reconciler.get_history_dataframe_data()) == 1

    def test_budget_check_rejects_overdraw(self):
        plan = AllocationPlan(
            allocations={"A": Allocation("A", 60, ChargerStatus.CHARGING)},
            source="reconciled",
        )
        with pytest.raises(BudgetInvariantError):
            Reconciler._check_budget(plan, 50.0)

    def test_reset(self):
        reconciler = Reconciler()
        request = AllocationRequest(450.0, 500.0, [make_session("A")])
        baseline = GreedyBudgetAllocator().allocate(request)
        reconciler.reconcile(request, baseline, make_proposal([("A", 10, ChargerStatus.CHARGING)]))
        reconciler.reset()
        assert reconciler.history == []
