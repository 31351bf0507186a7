"""
State Reconstruction - Emission Schedule.

============================================================
SCHEDULE
============================================================
The global emission controller mints VICTORY at a per-second rate
that depends only on the week number:

    weeks 1-4     bootstrap, 6.6 VICTORY/s
    week  5       5.47 VICTORY/s
    weeks 6-156   previous week's rate * 9900 / 10000 (floored)
    after 156     nothing

Week 1 starts at the EmissionScheduleStarted timestamp. Each week's
emissions are split across reward contracts by a basis-point table
that shifts toward VICTORY staking over time.

All amounts are integers in VICTORY base units (6 decimals). Partial
weeks are prorated by elapsed milliseconds and floored.

============================================================
"""

import logging
from datetime import timedelta
from typing import Iterable, List, Optional, Tuple

from state_reconstruction.epochs import window_progress
from state_reconstruction.exceptions import NormalizationError
from state_reconstruction.models import (
    Diagnostic,
    DiagnosticStage,
    EmissionAllocation,
    EmissionPhase,
    EmissionStatus,
    EmissionWeek,
    RawEvent,
    ValidationResult,
)
from state_reconstruction.normalizer import event_timestamp, extract_fields, int_field, require_tx_id


logger = logging.getLogger(__name__)


WEEK_MS = 7 * 24 * 60 * 60 * 1000
TOTAL_EMISSION_WEEKS = 156
BOOTSTRAP_WEEKS = 4
BOOTSTRAP_RATE = 6_600_000
POST_BOOTSTRAP_START_RATE = 5_470_000
WEEKLY_DECAY_BP = 9_900
BASIS_POINTS = 10_000

# (last week of the band, split)
_ALLOCATION_BANDS: Tuple[Tuple[int, EmissionAllocation], ...] = (
    (4, EmissionAllocation(lp=6500, single=1500, victory_staking=1750, dev=250)),
    (12, EmissionAllocation(lp=6200, single=1200, victory_staking=2350, dev=250)),
    (26, EmissionAllocation(lp=5800, single=700, victory_staking=3250, dev=250)),
    (52, EmissionAllocation(lp=5500, single=200, victory_staking=4050, dev=250)),
    (104, EmissionAllocation(lp=5000, single=0, victory_staking=4750, dev=250)),
    (156, EmissionAllocation(lp=4500, single=0, victory_staking=5250, dev=250)),
)

START_FIELDS = (
    int_field("start_timestamp", "start_timestamp", "startTimestamp"),
)


def _build_rate_table() -> Tuple[int, ...]:
    rates = [0]
    for week in range(1, TOTAL_EMISSION_WEEKS + 1):
        if week <= BOOTSTRAP_WEEKS:
            rates.append(BOOTSTRAP_RATE)
        elif week == BOOTSTRAP_WEEKS + 1:
            rates.append(POST_BOOTSTRAP_START_RATE)
        else:
            rates.append(rates[-1] * WEEKLY_DECAY_BP // BASIS_POINTS)
    return tuple(rates)


_RATES = _build_rate_table()


# =============================================================
# PER-WEEK SCHEDULE
# =============================================================


def emission_rate_for_week(week: int) -> int:
    """Per-second rate in base units; 0 outside weeks 1..156."""
    if week < 1 or week > TOTAL_EMISSION_WEEKS:
        return 0
    return _RATES[week]


def week_allocation_bp(week: int) -> EmissionAllocation:
    if week < 1:
        return _ALLOCATION_BANDS[0][1]
    for last_week, allocation in _ALLOCATION_BANDS:
        if week <= last_week:
            return allocation
    return EmissionAllocation()


def phase_for_week(week: int) -> EmissionPhase:
    if week <= 0:
        return EmissionPhase.NOT_STARTED
    if week <= BOOTSTRAP_WEEKS:
        return EmissionPhase.BOOTSTRAP
    if week <= TOTAL_EMISSION_WEEKS:
        return EmissionPhase.POST_BOOTSTRAP
    return EmissionPhase.ENDED


def next_phase_transition(week: int) -> Optional[Tuple[EmissionPhase, int, int]]:
    """(next phase, week it starts, weeks until then), or None once ended."""
    if week <= 0:
        return (EmissionPhase.BOOTSTRAP, 1, 1)
    if week <= BOOTSTRAP_WEEKS:
        return (EmissionPhase.POST_BOOTSTRAP, BOOTSTRAP_WEEKS + 1, BOOTSTRAP_WEEKS + 1 - week)
    if week < TOTAL_EMISSION_WEEKS:
        end_week = TOTAL_EMISSION_WEEKS + 1
        return (EmissionPhase.ENDED, end_week, end_week - week)
    return None


def week_total_emission(week: int, week_ms: int = WEEK_MS) -> int:
    return emission_rate_for_week(week) * week_ms // 1000


def total_schedule_emissions(week_ms: int = WEEK_MS) -> int:
    return sum(week_total_emission(week, week_ms) for week in range(1, TOTAL_EMISSION_WEEKS + 1))


def validate_week_number(week) -> ValidationResult:
    """Input check for resetting the schedule to a given week."""
    if isinstance(week, bool) or not isinstance(week, int):
        return ValidationResult(valid=False, errors=["Week must be a whole number"])
    if week < 1:
        return ValidationResult(valid=False, errors=["Week must be at least 1"])
    if week > TOTAL_EMISSION_WEEKS:
        return ValidationResult(valid=False, errors=[f"Week cannot exceed {TOTAL_EMISSION_WEEKS}"])
    return ValidationResult(valid=True)


# =============================================================
# TIME-DERIVED POSITION
# =============================================================


def current_emission_week(now_ms: int, start_ms: Optional[int], week_ms: int = WEEK_MS) -> int:
    """1-based week containing now_ms; 0 before the start or when unset."""
    if not start_ms or now_ms < start_ms:
        return 0
    return (now_ms - start_ms) // week_ms + 1


def week_window(week: int, start_ms: int, week_ms: int = WEEK_MS) -> Tuple[int, int]:
    window_start = start_ms + (week - 1) * week_ms
    return window_start, window_start + week_ms


def week_emitted(week: int, start_ms: Optional[int], now_ms: int, week_ms: int = WEEK_MS) -> int:
    """Base units emitted during one week by now_ms."""
    if week < 1 or not start_ms:
        return 0
    window_start, window_end = week_window(week, start_ms, week_ms)
    if now_ms <= window_start:
        return 0
    if now_ms >= window_end:
        return week_total_emission(week, week_ms)
    return emission_rate_for_week(week) * (now_ms - window_start) // 1000


def total_emitted(start_ms: Optional[int], now_ms: int, week_ms: int = WEEK_MS) -> int:
    week = min(current_emission_week(now_ms, start_ms, week_ms), TOTAL_EMISSION_WEEKS)
    return sum(week_emitted(w, start_ms, now_ms, week_ms) for w in range(1, week + 1))


def emissions_between(
    from_ms: int,
    to_ms: int,
    start_ms: Optional[int],
    week_ms: int = WEEK_MS,
) -> int:
    """Base units emitted in [from_ms, to_ms)."""
    if not start_ms or from_ms >= to_ms:
        return 0
    return total_emitted(start_ms, to_ms, week_ms) - total_emitted(start_ms, max(from_ms, start_ms), week_ms)


def weekly_breakdown(
    first_week: int,
    last_week: int,
    start_ms: int,
    now_ms: int,
    week_ms: int = WEEK_MS,
) -> List[EmissionWeek]:
    """Schedule rows for weeks first_week..last_week inclusive."""
    current = current_emission_week(now_ms, start_ms, week_ms)
    rows: List[EmissionWeek] = []
    for week in range(max(1, first_week), last_week + 1):
        window_start, window_end = week_window(week, start_ms, week_ms)
        rows.append(EmissionWeek(
            week=week,
            phase=phase_for_week(week),
            rate_per_second=emission_rate_for_week(week),
            allocation=week_allocation_bp(week),
            week_total=week_total_emission(week, week_ms),
            window_start_ms=window_start,
            window_end_ms=window_end,
            emitted=week_emitted(week, start_ms, now_ms, week_ms),
            is_active=week == current,
            is_completed=0 < week < current,
        ))
    return rows


def compute_emission_status(
    now_ms: int,
    start_ms: Optional[int],
    week_ms: int = WEEK_MS,
) -> EmissionStatus:
    """
    Emission position for the given clock.

    Unset start (None or 0) reports NOT_STARTED with the whole schedule
    remaining. Past week 156 the phase is ENDED and the rate is zero.
    """
    total_schedule = total_schedule_emissions(week_ms)
    week = current_emission_week(now_ms, start_ms, week_ms)

    if week == 0:
        return EmissionStatus(
            started=False,
            start_ms=start_ms or None,
            week=0,
            phase=EmissionPhase.NOT_STARTED,
            week_window_start_ms=None,
            week_window_end_ms=None,
            week_progress_pct=0.0,
            time_remaining_in_week=timedelta(0),
            total_time_remaining=timedelta(0),
            rate_per_second=0,
            allocation=EmissionAllocation(),
            emitted_so_far=0,
            current_week_emitted=0,
            remaining_in_current_week=0,
            remaining_emissions=total_schedule,
            total_schedule=total_schedule,
            emission_progress_pct=0.0,
        )

    window_start, window_end = week_window(week, start_ms, week_ms)
    schedule_end = start_ms + TOTAL_EMISSION_WEEKS * week_ms
    emitted = total_emitted(start_ms, now_ms, week_ms)
    this_week = week_emitted(week, start_ms, now_ms, week_ms)

    return EmissionStatus(
        started=True,
        start_ms=start_ms,
        week=week,
        phase=phase_for_week(week),
        week_window_start_ms=window_start,
        week_window_end_ms=window_end,
        week_progress_pct=window_progress(now_ms, window_start, window_end),
        time_remaining_in_week=timedelta(milliseconds=max(0, window_end - now_ms)),
        total_time_remaining=timedelta(milliseconds=max(0, schedule_end - now_ms)),
        rate_per_second=emission_rate_for_week(week),
        allocation=week_allocation_bp(week),
        emitted_so_far=emitted,
        current_week_emitted=this_week,
        remaining_in_current_week=week_total_emission(week, week_ms) - this_week,
        remaining_emissions=max(0, total_schedule - emitted),
        total_schedule=total_schedule,
        emission_progress_pct=emitted * 100 / total_schedule if total_schedule else 0.0,
    )


def parse_emission_start(
    events: Iterable[RawEvent],
    time_scale_ms: int = 1000,
    diagnostics: Optional[List[Diagnostic]] = None,
) -> Optional[int]:
    """Start of week 1 in ms from the latest EmissionScheduleStarted event."""
    latest: Optional[Tuple[int, str, int]] = None
    for raw in events:
        try:
            tx_id = require_tx_id(raw)
            timestamp = event_timestamp(raw)
            fields = extract_fields(raw.payload, START_FIELDS, event_type=raw.event_name, tx_id=tx_id)
        except NormalizationError as e:
            logger.warning(f"Skipping malformed emission event: {e}")
            if diagnostics is not None:
                diagnostics.append(Diagnostic.from_error(DiagnosticStage.NORMALIZE, e))
            continue
        if "start_timestamp" not in fields:
            continue
        candidate = (timestamp, tx_id, fields["start_timestamp"])
        if latest is None or candidate[:2] > latest[:2]:
            latest = candidate

    if latest is None:
        return None
    start_ms = latest[2] * time_scale_ms
    logger.debug(f"Emission schedule start from {latest[1]}: {start_ms}")
    return start_ms or None
