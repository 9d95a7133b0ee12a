"""
Utility functions for the Demand-Constrained Charge Allocator (DCCA).

This module provides helper functions for energy/rate conversions, integer
kW rounding, status derivation, wire-format validation and DataFrame export
used throughout the allocation engine.
"""

import math
from typing import Any, List, Optional

import pandas as pd

from .data_structures import (
    ChargerStatus,
    ChartPoint,
    MAX_CHARGERS_PER_REQUEST,
)


REASON_MIN_LENGTH = 2
REASON_MAX_LENGTH = 140
SUMMARY_MIN_LENGTH = 8
SUMMARY_MAX_LENGTH = 220


def clamp(value: float, low: float, high: float) -> float:
    """Clamp value into [low, high]."""
    return min(max(value, low), high)


def round_half_up(value: float) -> int:
    """
    Round to the nearest integer kW, halves rounding up.

    Examples:
        >>> round_half_up(2.5)
        3
        >>> round_half_up(49.4)
        49
    """
    return int(math.floor(value + 0.5))


def is_finite_number(value: Any) -> bool:
    """True for real numbers (bools excluded) that are finite."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def ev_budget_kw(penalty_limit_kw: float, building_base_load_kw: float) -> float:
    """EV budget: headroom under the demand limit, never negative."""
    return max(0.0, penalty_limit_kw - building_base_load_kw)


def desired_rate_kw(
    remaining_kwh: float,
    max_charge_rate_kw: float,
    tick_hours: float
) -> float:
    """
    Rate that would finish the job this tick, capped by the hardware limit.

    Args:
        remaining_kwh: Unmet energy (kWh)
        max_charge_rate_kw: Charger limit (kW)
        tick_hours: Tick length (hours)

    Returns:
        Desired rate in kW (0 when nothing remains)

    Examples:
        >>> desired_rate_kw(50.0, 100.0, 5 / 60)
        100.0
    """
    if remaining_kwh <= 0:
        return 0.0
    return min(max_charge_rate_kw, remaining_kwh / tick_hours)


def energy_for_rate(rate_kw: float, tick_hours: float) -> float:
    """Energy delivered at rate_kw over one tick (kWh)."""
    return rate_kw * tick_hours


def derive_status(
    remaining_kwh: float,
    desired_kw: float,
    granted_kw: float,
    tolerance_kw: float = 3.0,
    ready_epsilon_kwh: float = 0.0
) -> ChargerStatus:
    """
    Derive a charger's status from energy math alone.

    Args:
        remaining_kwh: Remaining energy used for the completion check (kWh)
        desired_kw: Rate that would have finished the job this tick (kW)
        granted_kw: Rate actually granted (kW)
        tolerance_kw: Anti-flapping tolerance for the throttled label
        ready_epsilon_kwh: Remaining energy still treated as complete

    Returns:
        READY, THROTTLED or CHARGING
    """
    if remaining_kwh <= ready_epsilon_kwh:
        return ChargerStatus.READY
    if granted_kw < desired_kw - tolerance_kw:
        return ChargerStatus.THROTTLED
    return ChargerStatus.CHARGING


def _check_number(
    errors: List[str],
    path: str,
    value: Any,
    strictly_positive: bool = False
) -> None:
    if not is_finite_number(value):
        errors.append(f"{path}: expected a finite number, got {value!r}")
    elif strictly_positive and value <= 0:
        errors.append(f"{path}: must be positive")
    elif not strictly_positive and value < 0:
        errors.append(f"{path}: must be non-negative")


def _check_text(
    errors: List[str],
    path: str,
    value: Any,
    min_length: int = 1,
    max_length: Optional[int] = None
) -> None:
    if not isinstance(value, str):
        errors.append(f"{path}: expected a string, got {value!r}")
    elif len(value) < min_length:
        errors.append(f"{path}: must be at least {min_length} characters")
    elif max_length is not None and len(value) > max_length:
        errors.append(f"{path}: must be at most {max_length} characters")


def validate_allocation_request(
    payload: Any,
    max_chargers: int = MAX_CHARGERS_PER_REQUEST
) -> List[str]:
    """
    Validate a wire allocation request and return any error messages.

    Args:
        payload: Decoded request body
        max_chargers: Maximum number of chargers accepted

    Returns:
        List of error messages (empty if valid)
    """
    if not isinstance(payload, dict):
        return [f"request: expected an object, got {type(payload).__name__}"]

    errors: List[str] = []

    _check_number(errors, "buildingBaseLoadKw", payload.get('buildingBaseLoadKw'))
    _check_number(
        errors, "penaltyLimitKw", payload.get('penaltyLimitKw'), strictly_positive=True
    )

    chargers = payload.get('chargers')
    if not isinstance(chargers, list):
        errors.append("chargers: expected a list")
        return errors

    if not 1 <= len(chargers) <= max_chargers:
        errors.append(f"chargers: expected 1..{max_chargers} entries, got {len(chargers)}")

    seen_ids = set()
    for i, charger in enumerate(chargers):
        path = f"chargers[{i}]"
        if not isinstance(charger, dict):
            errors.append(f"{path}: expected an object")
            continue

        _check_text(errors, f"{path}.chargerId", charger.get('chargerId'))
        _check_text(errors, f"{path}.vehicleId", charger.get('vehicleId'))
        _check_number(errors, f"{path}.minutesUntilDeparture", charger.get('minutesUntilDeparture'))
        _check_number(errors, f"{path}.requiredEnergyKwh", charger.get('requiredEnergyKwh'))
        _check_number(errors, f"{path}.deliveredEnergyKwh", charger.get('deliveredEnergyKwh'))
        _check_number(
            errors, f"{path}.maxChargeRateKw", charger.get('maxChargeRateKw'),
            strictly_positive=True
        )

        charger_id = charger.get('chargerId')
        if isinstance(charger_id, str):
            if charger_id in seen_ids:
                errors.append(f"{path}.chargerId: duplicate charger {charger_id!r}")
            seen_ids.add(charger_id)

    return errors


def validate_allocation_response(
    payload: Any,
    expected_ids: List[str]
) -> List[str]:
    """
    Validate an external allocator response against the request it answers.

    The response must contain exactly one entry per expected charger ID.

    Args:
        payload: Decoded response body
        expected_ids: Charger IDs of the originating request

    Returns:
        List of error messages (empty if valid)
    """
    if not isinstance(payload, dict):
        return [f"response: expected an object, got {type(payload).__name__}"]

    errors: List[str] = []

    unknown_keys = set(payload) - {'allocations', 'summary'}
    if unknown_keys:
        errors.append(f"response: unexpected keys {sorted(unknown_keys)}")

    _check_text(
        errors, "summary", payload.get('summary'),
        min_length=SUMMARY_MIN_LENGTH, max_length=SUMMARY_MAX_LENGTH
    )

    allocations = payload.get('allocations')
    if not isinstance(allocations, list) or not allocations:
        errors.append("allocations: expected a non-empty list")
        return errors

    seen_ids: List[str] = []
    for i, entry in enumerate(allocations):
        path = f"allocations[{i}]"
        if not isinstance(entry, dict):
            errors.append(f"{path}: expected an object")
            continue

        extra = set(entry) - {'chargerId', 'allocatedKw', 'status', 'reason'}
        if extra:
            errors.append(f"{path}: unexpected keys {sorted(extra)}")

        _check_text(errors, f"{path}.chargerId", entry.get('chargerId'))
        _check_number(errors, f"{path}.allocatedKw", entry.get('allocatedKw'))
        _check_text(
            errors, f"{path}.reason", entry.get('reason'),
            min_length=REASON_MIN_LENGTH, max_length=REASON_MAX_LENGTH
        )
        try:
            ChargerStatus.parse(entry.get('status'))
        except ValueError as exc:
            errors.append(f"{path}.status: {exc}")

        if isinstance(entry.get('chargerId'), str):
            seen_ids.append(entry['chargerId'])

    expected = set(expected_ids)
    missing = [cid for cid in expected_ids if cid not in seen_ids]
    extra_ids = sorted({cid for cid in seen_ids if cid not in expected})
    duplicates = sorted({cid for cid in seen_ids if seen_ids.count(cid) > 1})

    if missing:
        errors.append(f"allocations: missing chargers {missing}")
    if extra_ids:
        errors.append(f"allocations: unknown chargers {extra_ids}")
    if duplicates:
        errors.append(f"allocations: duplicate chargers {duplicates}")

    return errors


def chart_history_to_dataframe(history: List[ChartPoint]) -> pd.DataFrame:
    """
    Convert chart history to a time-indexed DataFrame.

    Args:
        history: Chart points, oldest first

    Returns:
        DataFrame indexed by time with load columns in kW
    """
    columns = ['time', 'total_load_kw', 'base_load_kw', 'ev_load_kw', 'demand_limit_kw']
    rows = [
        {
            'time': p.time,
            'total_load_kw': p.total_load_kw,
            'base_load_kw': p.base_load_kw,
            'ev_load_kw': p.ev_load_kw,
            'demand_limit_kw': p.demand_limit_kw,
        }
        for p in history
    ]
    df = pd.DataFrame(rows, columns=columns)
    df['headroom_kw'] = df['demand_limit_kw'] - df['total_load_kw']
    return df.set_index('time')

