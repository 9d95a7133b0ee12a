"""
Simulation Study for DCCA

Runs the allocation engine against the demo fleet and the synthetic fleets
(F1-F4), collects per-tick metrics with pandas and produces comparison
plots with matplotlib.

Fleets:
- DEMO: Oakland distribution center start-up fleet (6 vehicles)
- F1: Overnight Depot
- F2: Morning Rush
- F3: Light Load
- F4: Peak Stress

Metrics:
- Peak site load vs the demand limit (target: never above)
- Avoided over-limit demand and estimated savings
- Share of ticks with throttled chargers
- Energy delivered vs required at the end of the run

Author: Research Team
"""

import os
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Tuple

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from dcca import (
    AllocationEngine,
    SimulationConfig,
    SimulationState,
    chart_history_to_dataframe,
    demo_fleet,
    generate_fleet,
    run_simulation,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Suppress matplotlib font warnings
logging.getLogger("matplotlib.font_manager").setLevel(logging.ERROR)
# Per-tick engine logging is too chatty for a study run
logging.getLogger("dcca").setLevel(logging.WARNING)

RESULTS_DIR = "results"

N_TICKS = 120  # 10 simulated hours at 5-minute ticks
SEED = 42
START_TIME = datetime(2024, 3, 4, 0, 0)


@dataclass
class StudyResult:
    """Results from a single fleet simulation."""

    fleet_key: str
    fleet_name: str
    n_vehicles: int

    # Load metrics
    peak_load_kw: float
    limit_exceeded_ticks: int
    avg_ev_load_kw: float

    # Penalty metrics
    avoided_penalty_kw: float
    estimated_savings_usd: float

    # Charging outcome
    throttled_tick_share_pct: float
    energy_delivered_pct: float
    vehicles_ready: int

    # Raw data for plotting
    ticks: pd.DataFrame = None
    final_state: SimulationState = None

    def to_row(self) -> Dict:
        return {
            'fleet': self.fleet_key,
            'name': self.fleet_name,
            'vehicles': self.n_vehicles,
            'peak_load_kw': self.peak_load_kw,
            'limit_exceeded_ticks': self.limit_exceeded_ticks,
            'avg_ev_load_kw': self.avg_ev_load_kw,
            'avoided_penalty_kw': self.avoided_penalty_kw,
            'estimated_savings_usd': self.estimated_savings_usd,
            'throttled_tick_share_pct': self.throttled_tick_share_pct,
            'energy_delivered_pct': self.energy_delivered_pct,
            'vehicles_ready': self.vehicles_ready,
        }


def run_fleet(fleet_key: str, fleet_name: str, sessions, config: SimulationConfig) -> StudyResult:
    """Simulate one fleet and summarize it."""
    logger.info(f"Running {fleet_name} ({len(sessions)} vehicles, {N_TICKS} ticks)...")

    required = sum(s.required_energy_kwh for s in sessions)
    final_state, records = run_simulation(
        sessions, N_TICKS, engine=AllocationEngine(), config=config, clock=START_TIME
    )

    df = pd.DataFrame(records).set_index('tick')
    delivered = sum(s.delivered_energy_kwh for s in final_state.sessions)

    return StudyResult(
        fleet_key=fleet_key,
        fleet_name=fleet_name,
        n_vehicles=len(sessions),
        peak_load_kw=float(df['total_load_kw'].max()),
        limit_exceeded_ticks=int((df['total_load_kw'] > config.penalty_limit_kw).sum()),
        avg_ev_load_kw=float(df['ev_load_kw'].mean()),
        avoided_penalty_kw=final_state.avoided_penalty_kw,
        estimated_savings_usd=final_state.estimated_savings_usd,
        throttled_tick_share_pct=float((df['throttled_count'] > 0).mean() * 100.0),
        energy_delivered_pct=delivered / required * 100.0 if required > 0 else 100.0,
        vehicles_ready=final_state.count_by_status()['Ready'],
        ticks=df,
        final_state=final_state,
    )


def run_all_fleets() -> List[StudyResult]:
    config = SimulationConfig(seed=SEED, enable_logging=False)
    fleets: List[Tuple[str, str, list]] = [
        ("DEMO", "DEMO: Oakland Start-up", demo_fleet()),
        ("F1", "F1: Overnight Depot", generate_fleet('F1', n_sessions=10, seed=SEED)),
        ("F2", "F2: Morning Rush", generate_fleet('F2', n_sessions=12, seed=SEED)),
        ("F3", "F3: Light Load", generate_fleet('F3', n_sessions=8, seed=SEED)),
        ("F4", "F4: Peak Stress", generate_fleet('F4', n_sessions=16, seed=SEED)),
    ]
    return [run_fleet(key, name, sessions, config) for key, name, sessions in fleets]


# =============================================================================
# Visualization
# =============================================================================


def generate_load_profile_plot(result: StudyResult, limit_kw: float, output_path: str):
    """
    Generate the stacked load profile for one fleet.

    Shows base load, EV load and the demand limit over the run.
    """
    df = result.ticks
    hours = (df['time'] - START_TIME).dt.total_seconds() / 3600.0

    fig, (ax1, ax2) = plt.subplots(2, 1, figsize=(14, 8), sharex=True)

    ax1.stackplot(
        hours, df['base_load_kw'], df['ev_load_kw'],
        labels=["Building Load", "EV Load"], colors=["#90A4AE", "#2E7D32"], alpha=0.8
    )
    ax1.axhline(y=limit_kw, color="#D32F2F", linestyle="--", linewidth=1.5, label="Demand Limit")
    ax1.set_ylabel("Power (kW)", fontsize=12, fontweight="bold")
    ax1.set_title(f"{result.fleet_name}: Site Load", fontsize=14, fontweight="bold")
    ax1.legend(fontsize=10, loc="lower right")
    ax1.grid(True, alpha=0.3)

    ax2.plot(hours, df['avoided_penalty_kw'], color="#1976D2", linewidth=2, label="Avoided kW")
    ax2.set_ylabel("Cumulative Avoided kW", fontsize=12, fontweight="bold")
    ax2.set_xlabel("Simulated Hours", fontsize=12, fontweight="bold")
    ax2.grid(True, alpha=0.3)

    ax2b = ax2.twinx()
    ax2b.bar(hours, df['throttled_count'], width=0.06, color="#F57C00", alpha=0.5,
             label="Throttled Chargers")
    ax2b.set_ylabel("Throttled Chargers", fontsize=12, fontweight="bold")

    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close()
    logger.info(f"Saved load profile to {output_path}")


def generate_fleet_comparison(results: List[StudyResult], limit_kw: float, output_path: str):
    """
    Generate the cross-fleet comparison plot.

    Shows peak load, savings and energy delivery per fleet.
    """
    fig, (ax1, ax2, ax3) = plt.subplots(1, 3, figsize=(16, 5))

    keys = [r.fleet_key for r in results]
    x = np.arange(len(keys))

    ax1.bar(x, [r.peak_load_kw for r in results], color="#6A1B9A", alpha=0.8)
    ax1.axhline(y=limit_kw, color="black", linestyle="--", linewidth=1, alpha=0.6,
                label="Demand Limit")
    ax1.set_title("Peak Site Load (kW)", fontsize=13, fontweight="bold")
    ax1.legend(fontsize=9)

    ax2.bar(x, [r.estimated_savings_usd for r in results], color="#2E7D32", alpha=0.8)
    ax2.set_title("Estimated Savings (USD)", fontsize=13, fontweight="bold")

    ax3.bar(x, [r.energy_delivered_pct for r in results], color="#1976D2", alpha=0.8)
    ax3.set_ylim([0, 110])
    ax3.set_title("Energy Delivered (%)", fontsize=13, fontweight="bold")

    for ax in (ax1, ax2, ax3):
        ax.set_xticks(x)
        ax.set_xticklabels(keys)
        ax.grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close()
    logger.info(f"Saved fleet comparison to {output_path}")


# =============================================================================
# Main Execution
# =============================================================================


def main():
    """Run the complete simulation study."""
    logger.info("=" * 80)
    logger.info("DCCA SIMULATION STUDY")
    logger.info("=" * 80)

    os.makedirs(RESULTS_DIR, exist_ok=True)
    limit_kw = SimulationConfig().penalty_limit_kw

    results = run_all_fleets()

    summary = pd.DataFrame([r.to_row() for r in results])
    summary_path = os.path.join(RESULTS_DIR, "summary.csv")
    summary.to_csv(summary_path, index=False)
    logger.info(f"Saved summary table to {summary_path}")

    generate_fleet_comparison(results, limit_kw, os.path.join(RESULTS_DIR, "fleet_comparison.png"))

    for result in results:
        fleet_dir = os.path.join(RESULTS_DIR, result.fleet_key.lower())
        os.makedirs(fleet_dir, exist_ok=True)
        generate_load_profile_plot(result, limit_kw, os.path.join(fleet_dir, "load_profile.png"))
        chart_history_to_dataframe(result.final_state.chart_history).to_csv(
            os.path.join(fleet_dir, "chart_history.csv")
        )

    logger.info("\n" + "=" * 80)
    logger.info("STUDY SUMMARY")
    logger.info("=" * 80)
    for r in results:
        logger.info(
            f"{r.fleet_name}: peak {r.peak_load_kw:.0f}kW "
            f"(over limit {r.limit_exceeded_ticks}x), "
            f"avoided {r.avoided_penalty_kw:.0f}kW (${r.estimated_savings_usd:,.0f}), "
            f"delivered {r.energy_delivered_pct:.1f}%, ready {r.vehicles_ready}/{r.n_vehicles}"
        )

    logger.info("All results saved to: " + RESULTS_DIR)
    return results


if __name__ == "__main__":
    results = main()
