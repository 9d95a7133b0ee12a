"""
Unit tests for utility functions and data structures.
"""

import math
import unittest
from datetime import datetime, timedelta

from dcca.data_structures import (
    AllocationPlan,
    AllocationRequest,
    ChargerSession,
    ChargerStatus,
    ChartPoint,
    SimulationConfig,
    SimulationState,
)
from dcca.utils import (
    chart_history_to_dataframe,
    clamp,
    derive_status,
    desired_rate_kw,
    energy_for_rate,
    ev_budget_kw,
    is_finite_number,
    round_half_up,
    validate_allocation_request,
)


class TestNumericHelpers(unittest.TestCase):
    """Rounding, clamping and energy conversions."""

    def test_round_half_up(self):
        self.assertEqual(round_half_up(2.5), 3)
        self.assertEqual(round_half_up(3.5), 4)
        self.assertEqual(round_half_up(49.4), 49)
        self.assertEqual(round_half_up(-0.4), 0)

    def test_clamp(self):
        self.assertEqual(clamp(5, 0, 3), 3)
        self.assertEqual(clamp(-1, 0, 3), 0)
        self.assertEqual(clamp(2, 0, 3), 2)

    def test_is_finite_number(self):
        self.assertTrue(is_finite_number(0))
        self.assertTrue(is_finite_number(12.5))
        self.assertFalse(is_finite_number(True))
        self.assertFalse(is_finite_number(float('nan')))
        self.assertFalse(is_finite_number(math.inf))
        self.assertFalse(is_finite_number("12"))
        self.assertFalse(is_finite_number(None))

    def test_ev_budget_never_negative(self):
        self.assertEqual(ev_budget_kw(500.0, 450.0), 50.0)
        self.assertEqual(ev_budget_kw(500.0, 520.0), 0.0)

    def test_desired_rate(self):
        tick_hours = 5 / 60
        self.assertEqual(desired_rate_kw(50.0, 100.0, tick_hours), 100.0)
        self.assertEqual(desired_rate_kw(0.0, 100.0, tick_hours), 0.0)
        self.assertAlmostEqual(desired_rate_kw(2.0, 100.0, tick_hours), 24.0)

    def test_energy_for_rate(self):
        self.assertAlmostEqual(energy_for_rate(60.0, 5 / 60), 5.0)


class TestDeriveStatus(unittest.TestCase):
    """Status derivation from energy math."""

    def test_ready_when_nothing_remains(self):
        self.assertEqual(derive_status(0.0, 0.0, 0.0), ChargerStatus.READY)

    def test_ready_within_epsilon(self):
        self.assertEqual(
            derive_status(0.15, 10.0, 0.0, ready_epsilon_kwh=0.2), ChargerStatus.READY
        )
        self.assertNotEqual(derive_status(0.15, 10.0, 0.0), ChargerStatus.READY)

    def test_throttled_beyond_tolerance(self):
        self.assertEqual(derive_status(50.0, 100.0, 50.0), ChargerStatus.THROTTLED)

    def test_charging_within_tolerance(self):
        self.assertEqual(derive_status(50.0, 100.0, 97.0), ChargerStatus.CHARGING)
        self.assertEqual(derive_status(50.0, 100.0, 100.0), ChargerStatus.CHARGING)

    def test_custom_tolerance(self):
        self.assertEqual(
            derive_status(50.0, 100.0, 97.0, tolerance_kw=0.0), ChargerStatus.THROTTLED
        )


class TestChargerStatusParse(unittest.TestCase):

    def test_parse_labels(self):
        self.assertEqual(ChargerStatus.parse("Throttled by AI"), ChargerStatus.THROTTLED)
        self.assertEqual(ChargerStatus.parse("ThrottledByAI"), ChargerStatus.THROTTLED)
        self.assertEqual(ChargerStatus.parse("Ready"), ChargerStatus.READY)
        self.assertEqual(ChargerStatus.parse(ChargerStatus.CHARGING), ChargerStatus.CHARGING)

    def test_parse_unknown(self):
        for value in ("throttled", "ThrottledbyAI", "", None, 3):
            with self.subTest(value=value):
                with self.assertRaises(ValueError):
                    ChargerStatus.parse(value)


class TestRequestValidation(unittest.TestCase):

    def setUp(self):
        self.payload = {
            'buildingBaseLoadKw': 400,
            'penaltyLimitKw': 500,
            'chargers': [{
                'chargerId': 'CH01', 'vehicleId': 'Van #A01',
                'minutesUntilDeparture': 90, 'requiredEnergyKwh': 140,
                'deliveredEnergyKwh': 62, 'maxChargeRateKw': 180,
            }],
        }

    def test_valid_payload(self):
        self.assertEqual(validate_allocation_request(self.payload), [])
        request = AllocationRequest.from_dict(self.payload)
        self.assertEqual(request.charger_ids, ['CH01'])
        self.assertAlmostEqual(request.chargers[0].remaining_kwh, 78.0)

    def test_round_trip_wire_form(self):
        request = AllocationRequest.from_dict(self.payload)
        self.assertEqual(request.to_dict(), self.payload)

    def test_penalty_limit_must_be_positive(self):
        self.payload['penaltyLimitKw'] = 0
        errors = validate_allocation_request(self.payload)
        self.assertEqual(len(errors), 1)
        self.assertIn('penaltyLimitKw', errors[0])

    def test_charger_ids_must_be_strings(self):
        self.payload['chargers'][0]['chargerId'] = ''
        self.assertTrue(validate_allocation_request(self.payload))

    def test_custom_charger_limit(self):
        self.assertTrue(validate_allocation_request(self.payload, max_chargers=0))


class TestChartExport(unittest.TestCase):

    def test_dataframe_columns_and_headroom(self):
        start = datetime(2024, 1, 1, 6, 0)
        history = [
            ChartPoint(start + timedelta(minutes=5 * i), 480.0 + i, 400.0, 80.0 + i, 500.0)
            for i in range(3)
        ]

        df = chart_history_to_dataframe(history)

        self.assertEqual(len(df), 3)
        self.assertEqual(df.index.name, 'time')
        self.assertIn('headroom_kw', df.columns)
        self.assertEqual(list(df['headroom_kw']), [20.0, 19.0, 18.0])

    def test_empty_history(self):
        df = chart_history_to_dataframe([])
        self.assertEqual(len(df), 0)


class TestReadModel(unittest.TestCase):

    def test_state_read_model(self):
        state = SimulationState(
            building_base_load_kw=400.0,
            sessions=[
                ChargerSession("CH01", "Van", 100.0, 50.0, 10.0, 30.0, allocated_kw=40.0),
                ChargerSession("CH02", "Van", 100.0, 50.0, 50.0, 30.0,
                               status=ChargerStatus.READY),
            ],
            clock=datetime(2024, 1, 1, 6, 0),
        )

        data = state.to_dict()

        self.assertEqual(data['evLoadKw'], 40.0)
        self.assertEqual(data['totalLoadKw'], 440.0)
        self.assertEqual(data['statusCounts']['Ready'], 1)
        self.assertFalse(data['fallbackUsed'])
        self.assertEqual(data['sessions'][0]['remainingKwh'], 40.0)

    def test_snapshot_is_independent(self):
        state = SimulationState(sessions=[ChargerSession("CH01", "Van", 100.0, 50.0)])
        snapshot = state.snapshot()
        snapshot.sessions[0].delivered_energy_kwh = 50.0
        self.assertEqual(state.sessions[0].delivered_energy_kwh, 0.0)

    def test_plan_fallback_copy(self):
        plan = AllocationPlan(summary="Greedy plan for the tick.")
        tagged = plan.with_fallback("External allocator timed out")
        self.assertIsNone(plan.fallback_reason)
        self.assertTrue(tagged.fallback_used)
        self.assertEqual(tagged.to_dict()['fallbackReason'], "External allocator timed out")

    def test_config_validation(self):
        SimulationConfig().validate()
        for bad in (
            SimulationConfig(penalty_limit_kw=0),
            SimulationConfig(base_load_min_kw=400, base_load_max_kw=300),
            SimulationConfig(shock_probability=1.5),
            SimulationConfig(history_window=0),
            SimulationConfig(tick_interval_seconds=0),
        ):
            with self.subTest(config=bad):
                with self.assertRaises(ValueError):
                    bad.validate()


if __name__ == '__main__':
    unittest.main()
