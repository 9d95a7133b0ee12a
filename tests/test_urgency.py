"""
Unit tests for urgency scoring and ranking.
"""

import unittest

from dcca.data_structures import AllocationPolicy, ChargerSession
from dcca.urgency import NO_NEED_URGENCY, UrgencyScorer


def make_session(charger_id, required=60.0, delivered=10.0, minutes=120.0, max_rate=100.0):
    return ChargerSession(
        charger_id=charger_id,
        vehicle_id=f"Van {charger_id}",
        max_charge_rate_kw=max_rate,
        required_energy_kwh=required,
        delivered_energy_kwh=delivered,
        minutes_until_departure=minutes,
    )


class TestUrgencyScore(unittest.TestCase):
    """Test the urgency formula."""

    def setUp(self):
        self.scorer = UrgencyScorer()

    def test_energy_and_departure_terms(self):
        # 50 kWh * 3 + 600 / 120
        session = make_session("CH01", required=60.0, delivered=10.0, minutes=120.0)
        self.assertAlmostEqual(self.scorer.score(session), 155.0)

    def test_departure_term_floored_at_ten_minutes(self):
        session = make_session("CH01", required=10.0, delivered=0.0, minutes=0.0)
        # 10 * 3 + 600 / 10
        self.assertAlmostEqual(self.scorer.score(session), 90.0)

    def test_completed_session_scores_no_need(self):
        session = make_session("CH01", required=40.0, delivered=40.0)
        self.assertEqual(self.scorer.score(session), NO_NEED_URGENCY)

    def test_overdelivered_session_scores_no_need(self):
        session = make_session("CH01", required=40.0, delivered=45.0)
        self.assertEqual(self.scorer.score(session), NO_NEED_URGENCY)

    def test_custom_weights(self):
        scorer = UrgencyScorer(AllocationPolicy(energy_weight=1.0, departure_weight=0.0))
        session = make_session("CH01", required=30.0, delivered=0.0)
        self.assertAlmostEqual(scorer.score(session), 30.0)

    def test_late_departure_boost(self):
        soon = make_session("CH01", minutes=15.0)
        later = make_session("CH02", minutes=300.0)
        self.assertGreater(self.scorer.score(soon), self.scorer.score(later))


class TestUrgencyRanking(unittest.TestCase):
    """Test ranking order and statistics."""

    def setUp(self):
        self.scorer = UrgencyScorer()

    def test_rank_descending(self):
        sessions = [
            make_session("LOW", required=20.0, delivered=15.0),
            make_session("HIGH", required=100.0, delivered=0.0),
            make_session("MID", required=50.0, delivered=20.0),
        ]
        ranking = self.scorer.rank(sessions)
        self.assertEqual([e.session.charger_id for e in ranking], ["HIGH", "MID", "LOW"])

    def test_ties_keep_input_order(self):
        sessions = [make_session("B"), make_session("A"), make_session("C")]
        ranking = self.scorer.rank(sessions)
        self.assertEqual([e.session.charger_id for e in ranking], ["B", "A", "C"])
        self.assertEqual([e.input_index for e in ranking], [0, 1, 2])

    def test_completed_sessions_rank_last(self):
        sessions = [
            make_session("DONE", required=10.0, delivered=10.0),
            make_session("NEEDS", required=10.0, delivered=9.0),
        ]
        ranking = self.scorer.rank(sessions)
        self.assertEqual(ranking[-1].session.charger_id, "DONE")
        self.assertFalse(ranking[-1].needs_power)

    def test_empty_ranking(self):
        self.assertEqual(self.scorer.rank([]), [])


if __name__ == '__main__':
    unittest.main()
