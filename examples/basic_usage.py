"""
Basic Usage Example for the DCCA engine.

This example demonstrates how to:
1. Build an allocation request for the demo fleet
2. Run the greedy allocator through the allocation service
3. Drive the site simulation for a few ticks
4. Examine state, metrics and decisions
"""

from dcca import (
    AllocationService,
    SimulationConfig,
    TickDriver,
    demo_fleet,
)


def main():
    print("=" * 60)
    print("DCCA Basic Usage Example")
    print("=" * 60)

    # Step 1: Wire-format request for the demo fleet
    print("\n1. Building allocation request...")
    payload = {
        'buildingBaseLoadKw': 420,
        'penaltyLimitKw': 500,
        'chargers': [s.to_request_dict() for s in demo_fleet()],
    }
    print(f"   {len(payload['chargers'])} chargers, "
          f"budget {payload['penaltyLimitKw'] - payload['buildingBaseLoadKw']} kW")

    # Step 2: One allocation decision
    print("\n2. Allocating...")
    service = AllocationService()
    response = service.handle(payload)
    for allocation in response['allocations']:
        print(f"     {allocation['chargerId']}: {allocation['allocatedKw']:>4} kW "
              f"{allocation['status']}")
    print(f"   Summary: {response['summary']}")

    # Step 3: Simulation
    print("\n3. Running 24 ticks (2 simulated hours)...")
    config = SimulationConfig(seed=42, enable_logging=False)
    driver = TickDriver(demo_fleet(), config=config)
    state = driver.run(24)

    # Step 4: Results
    print("\n4. State after simulation:")
    print(f"   Base load: {state.building_base_load_kw:.0f} kW")
    print(f"   EV load: {state.ev_load_kw:.0f} kW")
    print(f"   Peak load: {state.peak_load_kw:.0f} kW (limit {config.penalty_limit_kw:.0f} kW)")
    print(f"   Avoided penalty: {state.avoided_penalty_kw:.0f} kW")
    print(f"   Estimated savings: ${state.estimated_savings_usd:,.2f}")
    print(f"   Status counts: {state.count_by_status()}")

    print("\n   Sessions:")
    for session in state.sessions:
        print(f"     {session.charger_id} {session.vehicle_id:<11} "
              f"{session.soc_pct:5.1f}% {session.allocated_kw:>4.0f} kW {session.status.value}")

    print("\n   Latest decisions:")
    for decision in state.decisions[:3]:
        print(f"     [{decision.severity}] {decision.summary}")

    print("\n" + "=" * 60)
    print("Example completed successfully!")
    print("=" * 60)


if __name__ == '__main__':
    main()
