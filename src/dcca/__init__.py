"""
Demand-Constrained Charge Allocator (DCCA)

Keeps an EV-fleet charging site under its utility demand limit. On a fixed
cadence the engine decides how many kW each active charger may draw, given
a volatile building base load, a hard site-wide budget, per-vehicle energy
deficits and departure deadlines, and an optional external (LLM) allocator
whose proposals are validated and reconciled against the budget.

Main Components:
- GreedyBudgetAllocator: Urgency-ordered baseline allocation
- UrgencyScorer: Energy-dominant priority score with departure boost
- ExternalAllocatorAdapter: Timeout-bounded, schema-checked external calls
- Reconciler: Trusts external labels, clamps and rescales magnitudes
- AllocationEngine / AllocationService: The full allocation pipeline
- TickDriver / run_tick: Site simulation with a pure tick function
- FleetGenerator: Demo and synthetic fleets

Quick Start:
    >>> from dcca import TickDriver, SimulationConfig, demo_fleet
    >>>
    >>> config = SimulationConfig(seed=42, enable_logging=False)
    >>> driver = TickDriver(demo_fleet(), config=config)
    >>> state = driver.run(12)
    >>> state.tick_count
    12

Author: Research Team
Version: 0.1.0
"""

from .data_structures import (
    MAX_CHARGERS_PER_REQUEST,
    ChargerStatus,
    ChargerSession,
    AllocationRequest,
    Allocation,
    AllocationPlan,
    AllocationPolicy,
    SimulationConfig,
    SimulationState,
    ChartPoint,
    AllocatorDecision,
    InvalidAllocationRequest,
    BudgetInvariantError,
)
from .urgency import UrgencyScorer, UrgencyEntry, NO_NEED_URGENCY
from .allocator import GreedyBudgetAllocator, AllocationMetrics
from .external import (
    ExternalAllocator,
    ExternalAllocatorAdapter,
    ExternalAllocatorConfig,
    HttpExternalAllocator,
    CallableExternalAllocator,
    ProposalOutcome,
)
from .reconciler import Reconciler, ReconciliationRecord
from .engine import AllocationEngine, AllocationService
from .events import EventSink, LoggingEventSink, InMemoryEventSink, HttpEventSink
from .simulation import (
    BaseLoadSampler,
    TickDriver,
    create_initial_state,
    run_tick,
    run_simulation,
)
from .scenario_generator import FleetGenerator, generate_fleet, demo_fleet
from .utils import (
    derive_status,
    desired_rate_kw,
    round_half_up,
    validate_allocation_request,
    validate_allocation_response,
    chart_history_to_dataframe,
)

__version__ = "0.1.0"
__author__ = "Research Team"

__all__ = [
    # Data structures
    'MAX_CHARGERS_PER_REQUEST',
    'ChargerStatus',
    'ChargerSession',
    'AllocationRequest',
    'Allocation',
    'AllocationPlan',
    'AllocationPolicy',
    'SimulationConfig',
    'SimulationState',
    'ChartPoint',
    'AllocatorDecision',
    'InvalidAllocationRequest',
    'BudgetInvariantError',

    # Allocation
    'UrgencyScorer',
    'UrgencyEntry',
    'NO_NEED_URGENCY',
    'GreedyBudgetAllocator',
    'AllocationMetrics',
    'ExternalAllocator',
    'ExternalAllocatorAdapter',
    'ExternalAllocatorConfig',
    'HttpExternalAllocator',
    'CallableExternalAllocator',
    'ProposalOutcome',
    'Reconciler',
    'ReconciliationRecord',
    'AllocationEngine',
    'AllocationService',

    # Events
    'EventSink',
    'LoggingEventSink',
    'InMemoryEventSink',
    'HttpEventSink',

    # Simulation
    'BaseLoadSampler',
    'TickDriver',
    'create_initial_state',
    'run_tick',
    'run_simulation',
    'FleetGenerator',
    'generate_fleet',
    'demo_fleet',

    # Utilities
    'derive_status',
    'desired_rate_kw',
    'round_half_up',
    'validate_allocation_request',
    'validate_allocation_response',
    'chart_history_to_dataframe',
]
