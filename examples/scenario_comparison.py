"""
Scenario Comparison Example for DCCA.

This example compares engine behavior across all synthetic fleets (F1-F4)
and shows how a misbehaving external allocator is contained.
"""

from dcca import (
    AllocationEngine,
    CallableExternalAllocator,
    ExternalAllocatorAdapter,
    FleetGenerator,
    SimulationConfig,
    run_simulation,
)


N_TICKS = 48


def greedy_engine():
    return AllocationEngine()


def greedy_external_engine():
    """Engine whose external allocator asks for every charger's full rate."""
    def propose(payload):
        return {
            'allocations': [
                {
                    'chargerId': c['chargerId'],
                    'allocatedKw': c['maxChargeRateKw'],
                    'status': 'Charging',
                    'reason': 'Maximum rate requested.',
                }
                for c in payload['chargers']
            ],
            'summary': 'Full rate for every vehicle.',
        }

    adapter = ExternalAllocatorAdapter(CallableExternalAllocator(propose, name="full-rate"))
    return AllocationEngine(adapter=adapter)


def run_scenario(scenario_key: str, engine: AllocationEngine, n_sessions: int = 12):
    """Run a fleet and collect metrics."""
    sessions = FleetGenerator().generate(scenario_key, n_sessions=n_sessions, seed=42)
    config = SimulationConfig(seed=42, enable_logging=False)
    final, records = run_simulation(sessions, N_TICKS, engine=engine, config=config)

    return {
        'scenario': scenario_key,
        'peak_kw': final.peak_load_kw,
        'avoided_kw': final.avoided_penalty_kw,
        'savings': final.estimated_savings_usd,
        'ready': final.count_by_status()['Ready'],
        'throttled_ticks': sum(1 for r in records if r['throttled_count'] > 0),
        'over_limit': sum(1 for r in records if r['total_load_kw'] > config.penalty_limit_kw),
    }


def main():
    print("=" * 70)
    print("DCCA Scenario Comparison")
    print("=" * 70)

    for label, factory in [("Greedy", greedy_engine), ("External + Reconciler", greedy_external_engine)]:
        print(f"\n{label}")
        print(f"{'Scenario':<10} {'Peak kW':<9} {'Avoided':<9} {'Savings':<11} "
              f"{'Ready':<7} {'Thr.ticks':<10} {'Over':<5}")
        print("-" * 70)

        for scenario_key in FleetGenerator.list_scenarios():
            engine = factory()
            result = run_scenario(scenario_key, engine)
            engine.shutdown()
            print(
                f"{result['scenario']:<10} "
                f"{result['peak_kw']:<9.0f} "
                f"{result['avoided_kw']:<9.0f} "
                f"${result['savings']:<10,.0f} "
                f"{result['ready']:<7} "
                f"{result['throttled_ticks']:<10} "
                f"{result['over_limit']:<5}"
            )

    print("\n" + "=" * 70)
    print("Comparison completed!")
    print("=" * 70)


if __name__ == '__main__':
    main()
