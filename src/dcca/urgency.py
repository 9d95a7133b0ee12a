"""
Urgency scoring for the Demand-Constrained Charge Allocator (DCCA).

This module scores charger sessions by unmet energy and time-to-departure
and produces the ranked list the greedy allocator walks.
"""

from dataclasses import dataclass
from typing import List, Optional

from .data_structures import ChargerSession, AllocationPolicy


NO_NEED_URGENCY = -1.0


@dataclass
class UrgencyEntry:
    """
    A session wrapped with its scheduling metadata for one tick.

    Attributes:
        session: The underlying charger session
        urgency: Priority score (NO_NEED_URGENCY when nothing remains)
        remaining_kwh: Unmet energy at scoring time (kWh)
        input_index: Position of the session in the request
    """
    session: ChargerSession
    urgency: float
    remaining_kwh: float
    input_index: int

    @property
    def needs_power(self) -> bool:
        return self.remaining_kwh > 0

    def __repr__(self) -> str:
        return (f"UrgencyEntry({self.session.charger_id}, "
                f"urgency={self.urgency:.1f}, remaining={self.remaining_kwh:.1f}kWh)")


class UrgencyScorer:
    """
    Scores and ranks charger sessions.

    Urgency combines unmet energy (dominant term) with a time-pressure term
    that grows sharply in the final minutes before departure:

        urgency = remaining_kwh * energy_weight
                  + departure_weight / max(min_departure_minutes, minutes_until_departure)

    Sessions with nothing left to charge score NO_NEED_URGENCY so they
    always rank last.

    Attributes:
        policy: Policy constants (weights and departure floor)
    """

    def __init__(self, policy: Optional[AllocationPolicy] = None):
        self.policy = policy or AllocationPolicy()

    def score(self, session: ChargerSession) -> float:
        """
        Calculate the urgency score of one session.

        Args:
            session: Session to score

        Returns:
            Urgency score, or NO_NEED_URGENCY if no energy remains

        Examples:
            >>> scorer = UrgencyScorer()
            >>> s = ChargerSession("CH01", "Van #A01", max_charge_rate_kw=100,
            ...                    required_energy_kwh=60, delivered_energy_kwh=10,
            ...                    minutes_until_departure=120)
            >>> scorer.score(s)  # 50 * 3 + 600 / 120
            155.0
        """
        remaining = session.remaining_kwh
        if remaining <= 0:
            return NO_NEED_URGENCY

        minutes = max(self.policy.min_departure_minutes, session.minutes_until_departure)
        return remaining * self.policy.energy_weight + self.policy.departure_weight / minutes

    def rank(self, sessions: List[ChargerSession]) -> List[UrgencyEntry]:
        """
        Rank sessions by urgency, highest first.

        Ties keep input order (Python's sort is stable), so identical
        inputs always produce the same ranking.

        Args:
            sessions: Sessions in request order

        Returns:
            List of UrgencyEntry, most urgent first
        """
        entries = [
            UrgencyEntry(
                session=session,
                urgency=self.score(session),
                remaining_kwh=session.remaining_kwh,
                input_index=i,
            )
            for i, session in enumerate(sessions)
        ]
        return sorted(entries, key=lambda e: -e.urgency)
