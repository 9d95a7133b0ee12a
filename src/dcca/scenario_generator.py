"""
Fleet scenario generator for DCCA testing and studies.

This module builds charger session sets: the fixed demo fleet of the
Oakland distribution center and synthetic fleets (F1-F4) sampled with
numpy for runtime testing and performance evaluation.
"""

import numpy as np
from typing import Dict, List, Optional

from .data_structures import ChargerSession, ChargerStatus, MAX_CHARGERS_PER_REQUEST


# Charger hardware classes found on the demo site (kW)
CHARGER_RATINGS_KW = (62.0, 100.0, 180.0)

DEMO_FLEET = (
    # charger, vehicle, departure, minutes, required, delivered, max rate, kW, status
    ("CH01", "Van #A01", "7:30 AM", 90, 140, 62, 180, 62, ChargerStatus.THROTTLED),
    ("CH02", "Van #A02", "8:00 AM", 110, 95, 28, 62, 0, ChargerStatus.THROTTLED),
    ("CH03", "Cargo #A05", "8:30 AM", 130, 120, 45, 180, 0, ChargerStatus.THROTTLED),
    ("CH04", "Truck #A07", "9:00 AM", 170, 168, 35, 100, 100, ChargerStatus.CHARGING),
    ("CH05", "Van #A03", "7:00 AM", 70, 54, 41, 62, 6, ChargerStatus.CHARGING),
    ("CH07", "Van #A09", "9:30 AM", 200, 90, 20, 100, 0, ChargerStatus.THROTTLED),
)


def demo_fleet() -> List[ChargerSession]:
    """
    The six-vehicle demo fleet with its start-up grants and labels.

    Returns:
        Fresh ChargerSession objects (safe to mutate)
    """
    return [
        ChargerSession(
            charger_id=charger_id,
            vehicle_id=vehicle_id,
            departure_label=label,
            minutes_until_departure=float(minutes),
            required_energy_kwh=float(required),
            delivered_energy_kwh=float(delivered),
            max_charge_rate_kw=float(max_rate),
            allocated_kw=float(allocated),
            status=status,
        )
        for (charger_id, vehicle_id, label, minutes, required, delivered,
             max_rate, allocated, status) in DEMO_FLEET
    ]


class FleetGenerator:
    """
    Generate synthetic fleets for DCCA testing.

    Supports the following fleet types:
    - F1: Overnight Depot (spread departures, mixed needs)
    - F2: Morning Rush (early departures, large deficits)
    - F3: Light Load (mostly topped-up vehicles)
    - F4: Peak Stress (full site, every vehicle far from target)

    Attributes:
        ratings_kw: Charger ratings to sample from
        vehicle_prefixes: Vehicle name prefixes
    """

    SCENARIOS = {
        'F1': {
            'name': 'F1: Overnight Depot',
            'departure_minutes': (120.0, 600.0),
            'required_kwh': (40.0, 170.0),
            'delivered_share': (0.0, 0.6),
            'description': 'Standard overnight operation'
        },
        'F2': {
            'name': 'F2: Morning Rush',
            'departure_minutes': (30.0, 120.0),
            'required_kwh': (80.0, 170.0),
            'delivered_share': (0.1, 0.5),
            'description': 'Early departures with large deficits'
        },
        'F3': {
            'name': 'F3: Light Load',
            'departure_minutes': (60.0, 480.0),
            'required_kwh': (30.0, 90.0),
            'delivered_share': (0.75, 1.0),
            'description': 'Most vehicles near their energy target'
        },
        'F4': {
            'name': 'F4: Peak Stress',
            'departure_minutes': (20.0, 240.0),
            'required_kwh': (120.0, 200.0),
            'delivered_share': (0.0, 0.2),
            'description': 'Full site with large deficits'
        },
    }

    def __init__(
        self,
        ratings_kw: tuple = CHARGER_RATINGS_KW,
        vehicle_prefixes: tuple = ("Van", "Cargo", "Truck")
    ):
        self.ratings_kw = ratings_kw
        self.vehicle_prefixes = vehicle_prefixes

    def generate(
        self,
        scenario_key: str,
        n_sessions: int = 8,
        seed: Optional[int] = None
    ) -> List[ChargerSession]:
        """
        Generate a fleet.

        Args:
            scenario_key: Fleet identifier (e.g., 'F1', 'F2')
            n_sessions: Number of sessions (1..16)
            seed: Random seed for reproducibility

        Returns:
            List of ChargerSession objects with unique charger IDs

        Examples:
            >>> generator = FleetGenerator()
            >>> sessions = generator.generate('F2', n_sessions=10, seed=42)
            >>> len(sessions)
            10
        """
        if scenario_key not in self.SCENARIOS:
            raise ValueError(
                f"Unknown scenario: {scenario_key}. "
                f"Valid options: {list(self.SCENARIOS.keys())}"
            )
        if not 1 <= n_sessions <= MAX_CHARGERS_PER_REQUEST:
            raise ValueError(f"n_sessions must be between 1 and {MAX_CHARGERS_PER_REQUEST}")

        rng = np.random.default_rng(seed)
        scenario = self.SCENARIOS[scenario_key]

        sessions = []
        for i in range(n_sessions):
            required = round(float(rng.uniform(*scenario['required_kwh'])), 1)
            share = float(rng.uniform(*scenario['delivered_share']))
            minutes = float(int(rng.uniform(*scenario['departure_minutes'])))
            prefix = self.vehicle_prefixes[int(rng.integers(len(self.vehicle_prefixes)))]

            sessions.append(ChargerSession(
                charger_id=f"CH{i + 1:02d}",
                vehicle_id=f"{prefix} #B{i + 1:02d}",
                max_charge_rate_kw=float(rng.choice(self.ratings_kw)),
                required_energy_kwh=required,
                delivered_energy_kwh=round(required * share, 1),
                minutes_until_departure=minutes,
            ))

        return sessions

    @classmethod
    def list_scenarios(cls) -> List[str]:
        """List available scenario keys."""
        return list(cls.SCENARIOS.keys())

    @classmethod
    def get_scenario_info(cls, scenario_key: str) -> Dict:
        """Get information about a scenario."""
        if scenario_key not in cls.SCENARIOS:
            raise ValueError(f"Unknown scenario: {scenario_key}")
        return cls.SCENARIOS[scenario_key].copy()


def generate_fleet(
    scenario_key: str,
    n_sessions: int = 8,
    seed: Optional[int] = None
) -> List[ChargerSession]:
    """
    Convenience function to generate a fleet.

    Args:
        scenario_key: Fleet identifier (F1-F4)
        n_sessions: Number of sessions to generate
        seed: Random seed

    Returns:
        List of ChargerSession objects

    Examples:
        >>> from dcca.scenario_generator import generate_fleet
        >>> sessions = generate_fleet('F1', n_sessions=12, seed=42)
    """
    generator = FleetGenerator()
    return generator.generate(scenario_key, n_sessions, seed=seed)
