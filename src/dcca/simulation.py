"""
Site simulation for the Demand-Constrained Charge Allocator (DCCA).

This module drives the allocation engine on a fixed cadence:

- BaseLoadSampler: volatile building base load (random walk with shocks)
- run_tick: pure tick function, old state in, new state out
- TickDriver: owns the current state, serializes ticks with a lock and
  runs them on a background thread

One tick:
1. Sample the next base load
2. Ask the engine for a budget-safe plan
3. Apply the plan: integrate energy, count down departures, derive status
4. Update avoided-penalty metrics, chart history and the decision feed
5. Emit a "simulation_tick" event

Author: Research Team
"""

import copy
import logging
import math
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from .data_structures import (
    AllocationPlan,
    AllocationRequest,
    AllocatorDecision,
    BudgetInvariantError,
    ChargerSession,
    ChargerStatus,
    ChartPoint,
    InvalidAllocationRequest,
    SimulationConfig,
    SimulationState,
)
from .engine import AllocationEngine
from .events import EventSink, LoggingEventSink
from .utils import (
    clamp,
    derive_status,
    desired_rate_kw,
    energy_for_rate,
    round_half_up,
    validate_allocation_request,
)


logger = logging.getLogger(__name__)

TICK_EVENT_TYPE = "simulation_tick"


class BaseLoadSampler:
    """
    Random walk for the building base load.

    Each step is a load shock with probability shock_probability
    (magnitude uniform in [shock_min_kw, shock_max_kw]) or a small drift
    (uniform in [0, drift_max_kw]), with a random sign. The result is
    rounded to whole kW and clamped to [base_load_min_kw, base_load_max_kw].

    Attributes:
        config: Simulation configuration
        rng: numpy random Generator
    """

    def __init__(
        self,
        config: Optional[SimulationConfig] = None,
        rng: Optional[np.random.Generator] = None
    ):
        self.config = config or SimulationConfig()
        self.rng = rng if rng is not None else np.random.default_rng(self.config.seed)

    def next(self, current_kw: float) -> float:
        """
        Sample the base load for the next tick.

        Args:
            current_kw: Current base load (kW)

        Returns:
            Next base load (kW), a whole number within the configured band
        """
        cfg = self.config
        if self.rng.random() < cfg.shock_probability:
            magnitude = self.rng.uniform(cfg.shock_min_kw, cfg.shock_max_kw)
        else:
            magnitude = self.rng.uniform(0.0, cfg.drift_max_kw)
        sign = -1.0 if self.rng.random() < 0.5 else 1.0

        stepped = round_half_up(current_kw + sign * magnitude)
        return float(clamp(stepped, cfg.base_load_min_kw, cfg.base_load_max_kw))


def create_initial_state(
    sessions: List[ChargerSession],
    config: Optional[SimulationConfig] = None,
    clock: Optional[datetime] = None
) -> SimulationState:
    """
    Build the start-up state from a list of sessions.

    Sessions are copied; the caller's objects are never mutated.
    """
    config = config or SimulationConfig()
    sessions = copy.deepcopy(list(sessions))
    ev_load = sum(s.allocated_kw for s in sessions)

    return SimulationState(
        building_base_load_kw=config.initial_base_load_kw,
        sessions=sessions,
        throttled_ids=[s.charger_id for s in sessions if s.status == ChargerStatus.THROTTLED],
        peak_load_kw=config.initial_base_load_kw + ev_load,
        clock=clock or datetime.now(),
    )


def check_plan(plan: AllocationPlan, request: AllocationRequest) -> None:
    """
    Verify a plan before it is applied.

    Raises:
        BudgetInvariantError: On a coverage gap, a negative grant or a
            total above the EV budget
    """
    expected = set(request.charger_ids)
    covered = set(plan.allocations)
    if covered != expected:
        raise BudgetInvariantError(
            f"Plan coverage mismatch: missing={sorted(expected - covered)}, "
            f"unknown={sorted(covered - expected)}"
        )

    negative = [a.charger_id for a in plan.allocations.values() if a.allocated_kw < 0]
    if negative:
        raise BudgetInvariantError(f"Negative allocation for chargers {negative}")

    budget = request.ev_budget_kw
    if plan.total_kw > budget + 1e-9:
        raise BudgetInvariantError(
            f"Plan total {plan.total_kw:.3f}kW exceeds EV budget {budget:.3f}kW"
        )


def run_tick(
    state: SimulationState,
    engine: AllocationEngine,
    sampler: BaseLoadSampler,
    config: Optional[SimulationConfig] = None,
    event_sink: Optional[EventSink] = None
) -> SimulationState:
    """
    Advance the simulation by one tick.

    The input state is left untouched; a new state is returned.

    Args:
        state: Current state
        engine: Allocation engine (its policy sets the tick length)
        sampler: Base-load sampler
        config: Site configuration
        event_sink: Optional sink for the tick event

    Returns:
        The state after the tick

    Raises:
        InvalidAllocationRequest: If the active sessions cannot form a
            valid request
        BudgetInvariantError: If the engine returned an unsafe plan
    """
    config = config or SimulationConfig()
    policy = engine.policy
    tick_hours = policy.tick_hours
    limit = config.penalty_limit_kw

    new_state = state.snapshot()
    base_load = sampler.next(state.building_base_load_kw)
    request = AllocationRequest(
        building_base_load_kw=base_load,
        penalty_limit_kw=limit,
        chargers=new_state.sessions,
    )

    if request.chargers:
        errors = validate_allocation_request(request.to_dict(), policy.max_chargers)
        if errors:
            raise InvalidAllocationRequest(errors)

    plan = engine.allocate(request)
    check_plan(plan, request)

    ev_load = 0.0
    naive_load = base_load
    throttled_ids: List[str] = []

    for session in new_state.sessions:
        remaining_before = session.remaining_kwh
        desired = desired_rate_kw(remaining_before, session.max_charge_rate_kw, tick_hours)

        if remaining_before > 0:
            naive_load += session.max_charge_rate_kw
            granted = plan.get(session.charger_id).allocated_kw
            bounded = clamp(round_half_up(granted), 0, session.max_charge_rate_kw)
        else:
            bounded = 0

        delivered = min(
            session.required_energy_kwh,
            session.delivered_energy_kwh + energy_for_rate(bounded, tick_hours),
        )
        session.delivered_energy_kwh = max(session.delivered_energy_kwh, delivered)
        session.minutes_until_departure = max(
            0.0, session.minutes_until_departure - policy.tick_minutes
        )

        status = derive_status(
            session.remaining_kwh, desired, bounded,
            tolerance_kw=policy.throttle_tolerance_kw,
            ready_epsilon_kwh=policy.ready_epsilon_kwh,
        )
        session.status = status
        session.allocated_kw = 0 if status == ChargerStatus.READY else bounded

        if status == ChargerStatus.THROTTLED:
            throttled_ids.append(session.charger_id)
        ev_load += bounded

    total_load = round_half_up(base_load + ev_load)
    avoided_this_tick = max(0.0, naive_load - limit) - max(0.0, total_load - limit)
    clock = state.clock + timedelta(minutes=policy.tick_minutes)

    new_state.tick_count = state.tick_count + 1
    new_state.building_base_load_kw = base_load
    new_state.avoided_penalty_kw = state.avoided_penalty_kw + max(0.0, avoided_this_tick)
    new_state.estimated_savings_usd = new_state.avoided_penalty_kw * config.savings_usd_per_kw
    new_state.peak_load_kw = max(state.peak_load_kw, total_load)
    new_state.allocator_summary = plan.summary
    new_state.throttled_ids = throttled_ids
    new_state.fallback_reason = plan.fallback_reason
    if plan.fallback_reason is not None:
        new_state.last_error = plan.fallback_reason
    new_state.clock = clock

    new_state.chart_history.append(ChartPoint(
        time=clock,
        total_load_kw=total_load,
        base_load_kw=base_load,
        ev_load_kw=round_half_up(ev_load),
        demand_limit_kw=limit,
    ))
    new_state.chart_history = new_state.chart_history[-config.history_window:]

    severity = (
        "warning"
        if throttled_ids or total_load > config.high_load_warning_kw
        else "success"
    )
    decision = AllocatorDecision(
        time=clock,
        summary=plan.summary,
        severity=severity,
        source=plan.source,
        fallback_used=plan.fallback_used,
    )
    new_state.decisions = [decision] + new_state.decisions[:config.decision_window - 1]

    logger.info(
        f"Tick {new_state.tick_count}: base={base_load:.0f}kW ev={ev_load:.0f}kW "
        f"total={total_load}kW throttled={len(throttled_ids)} source={plan.source}"
    )

    if event_sink is not None:
        _emit(event_sink, {
            'tick': new_state.tick_count,
            'baseLoadKw': base_load,
            'evLoadKw': round_half_up(ev_load),
            'totalLoadKw': total_load,
            'throttledIds': throttled_ids.copy(),
            'source': plan.source,
            'fallbackReason': plan.fallback_reason,
        })

    return new_state


def _emit(event_sink: EventSink, payload: Dict) -> None:
    try:
        event_sink.append(TICK_EVENT_TYPE, payload)
    except Exception:
        logger.warning("Event sink failed; tick event dropped", exc_info=True)


class TickDriver:
    """
    Owns the simulation state and runs ticks.

    - tick() runs one tick; if another tick is still in progress the
      request is skipped and counted, never queued
    - start()/stop() run ticks on a background thread at a fixed cadence;
      deadlines missed by a slow tick are skipped, not made up
    - Any exception from a tick stops the background loop and is kept in
      fatal_error
    - Readers get deep-copied snapshots through the state property and
      the listeners

    Attributes:
        config: Simulation configuration
        engine: Allocation engine
        sampler: Base-load sampler
        event_sink: Sink for tick events (LoggingEventSink by default)
        completed_ticks: Ticks that ran to completion
        skipped_ticks: Tick requests dropped because a tick was in progress
        missed_deadlines: Background deadlines skipped after slow ticks
        fatal_error: Exception that stopped the background loop, if any
    """

    def __init__(
        self,
        sessions: Optional[List[ChargerSession]] = None,
        engine: Optional[AllocationEngine] = None,
        config: Optional[SimulationConfig] = None,
        sampler: Optional[BaseLoadSampler] = None,
        event_sink: Optional[EventSink] = None,
        clock: Optional[datetime] = None
    ):
        self.config = config or SimulationConfig()
        self.config.validate()

        self.engine = engine or AllocationEngine()
        self.sampler = sampler or BaseLoadSampler(self.config)
        self.event_sink = event_sink if event_sink is not None else LoggingEventSink()

        self._state = create_initial_state(sessions or [], self.config, clock)
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._listeners: List[Callable[[SimulationState], None]] = []

        self.completed_ticks = 0
        self.skipped_ticks = 0
        self.missed_deadlines = 0
        self.fatal_error: Optional[BaseException] = None

        if self.config.enable_logging:
            logging.basicConfig(level=logging.INFO)
            logger.info(
                f"Tick driver initialized: {len(self._state.sessions)} sessions, "
                f"limit={self.config.penalty_limit_kw:.0f}kW, "
                f"interval={self.config.tick_interval_seconds}s"
            )

    @property
    def state(self) -> SimulationState:
        """Snapshot of the latest published state."""
        return self._state.snapshot()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def add_listener(self, listener: Callable[[SimulationState], None]) -> None:
        """Register a callback receiving a snapshot after every tick."""
        self._listeners.append(listener)

    def tick(self) -> bool:
        """
        Run one tick now.

        Returns:
            True if the tick ran, False if it was skipped because another
            tick was in progress

        Raises:
            BudgetInvariantError: If the engine produced an unsafe plan
        """
        if not self._lock.acquire(blocking=False):
            self.skipped_ticks += 1
            logger.warning("Tick skipped: previous tick still in progress")
            return False

        try:
            new_state = run_tick(
                self._state, self.engine, self.sampler, self.config, self.event_sink
            )
            self._state = new_state
            self.completed_ticks += 1
        finally:
            self._lock.release()

        self._notify(new_state)
        return True

    def run(self, n_ticks: int) -> SimulationState:
        """Run n_ticks synchronously and return the final snapshot."""
        for _ in range(n_ticks):
            self.tick()
        return self.state

    def _notify(self, state: SimulationState) -> None:
        for listener in self._listeners:
            try:
                listener(state.snapshot())
            except Exception:
                logger.exception("State listener failed")

    def plug_in(self, session: ChargerSession) -> None:
        """
        Add a session between ticks.

        Raises:
            ValueError: If the charger is already in use or the site is full
        """
        with self._lock:
            if self._state.get_session(session.charger_id) is not None:
                raise ValueError(f"Charger {session.charger_id} already has a session")
            if len(self._state.sessions) >= self.engine.policy.max_chargers:
                raise ValueError(
                    f"Cannot exceed {self.engine.policy.max_chargers} active sessions"
                )

            new_state = self._state.snapshot()
            new_state.sessions.append(copy.deepcopy(session))
            self._state = new_state

        logger.info(f"Vehicle {session.vehicle_id} plugged in at {session.charger_id}")

    def unplug(self, charger_id: str) -> Optional[ChargerSession]:
        """Remove a session between ticks; returns it, or None if unknown."""
        with self._lock:
            new_state = self._state.snapshot()
            removed = new_state.get_session(charger_id)
            if removed is None:
                return None
            new_state.sessions.remove(removed)
            new_state.throttled_ids = [
                cid for cid in new_state.throttled_ids if cid != charger_id
            ]
            self._state = new_state

        logger.info(f"Vehicle {removed.vehicle_id} unplugged from {charger_id}")
        return removed

    def start(self) -> None:
        """Start the fixed-cadence background loop (first tick runs at once)."""
        if self.is_running:
            return
        self.fatal_error = None
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="dcca-tick", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop the background loop and wait for the current tick to finish.

        The engine stays usable, so the loop can be started again. Use
        close() to also release the engine's external allocator worker.
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop the loop and shut down the engine. The driver cannot tick afterwards."""
        self.stop(timeout)
        self.engine.shutdown()

    def _loop(self) -> None:
        interval = self.config.tick_interval_seconds
        next_deadline = time.monotonic()

        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as exc:
                self.fatal_error = exc
                logger.exception("Tick loop halted")
                return

            next_deadline += interval
            now = time.monotonic()
            if now > next_deadline:
                missed = int((now - next_deadline) // interval) + 1
                self.missed_deadlines += missed
                next_deadline += missed * interval
                logger.warning(f"Tick overran its interval; skipped {missed} deadline(s)")

            self._stop_event.wait(max(0.0, next_deadline - time.monotonic()))

    def get_statistics(self) -> Dict:
        return {
            'completed_ticks': self.completed_ticks,
            'skipped_ticks': self.skipped_ticks,
            'missed_deadlines': self.missed_deadlines,
            'running': self.is_running,
            'fatal_error': repr(self.fatal_error) if self.fatal_error else None,
            'engine': self.engine.get_statistics(),
        }

    def __repr__(self) -> str:
        return (f"TickDriver(tick={self._state.tick_count}, "
                f"sessions={len(self._state.sessions)}, running={self.is_running})")


def run_simulation(
    sessions: List[ChargerSession],
    n_ticks: int,
    engine: Optional[AllocationEngine] = None,
    config: Optional[SimulationConfig] = None,
    clock: Optional[datetime] = None,
    event_sink: Optional[EventSink] = None
) -> Tuple[SimulationState, List[Dict]]:
    """
    Run a synchronous simulation and collect one record per tick.

    Args:
        sessions: Initial sessions
        n_ticks: Number of ticks
        engine: Allocation engine (greedy-only if None)
        config: Simulation configuration
        clock: Simulated start time
        event_sink: Sink for tick events (LoggingEventSink if None)

    Returns:
        Tuple of (final state, list of per-tick records for DataFrame use)
    """
    config = config or SimulationConfig(enable_logging=False)
    engine = engine or AllocationEngine()
    sampler = BaseLoadSampler(config)
    event_sink = event_sink if event_sink is not None else LoggingEventSink()
    state = create_initial_state(sessions, config, clock)

    records: List[Dict] = []
    for _ in range(n_ticks):
        state = run_tick(state, engine, sampler, config, event_sink)
        point = state.chart_history[-1]
        counts = state.count_by_status()
        records.append({
            'tick': state.tick_count,
            'time': state.clock,
            'base_load_kw': point.base_load_kw,
            'ev_load_kw': point.ev_load_kw,
            'total_load_kw': point.total_load_kw,
            'throttled_count': counts[ChargerStatus.THROTTLED.value],
            'ready_count': counts[ChargerStatus.READY.value],
            'avoided_penalty_kw': state.avoided_penalty_kw,
            'estimated_savings_usd': state.estimated_savings_usd,
            'fallback_used': state.fallback_used,
        })

    return state, records
