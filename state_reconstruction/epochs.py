"""
State Reconstruction - Epoch Timing.

============================================================
EPOCH ARITHMETIC
============================================================
Epochs are fixed-length windows counted from the protocol start:

    index  = (now - protocol_start) // epoch_duration   (0-based)
    id     = index + 1                                   (as in EpochCreated)
    window = [start + index * duration, start + (index + 1) * duration)

Nothing here is stored: every status is recomputed from the clock.
Finalization and claimability come from chain-derived flags; time
alone only decides whether a window has elapsed.

============================================================
EPOCH HISTORY
============================================================
The token locker emits EpochCreated and WeeklyRevenueAdded events.
Replaying them gives one record per epoch; expected epochs whose
creation event is missing become pending rows computed from the
schedule.

============================================================
"""

import logging
from datetime import timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from state_reconstruction.exceptions import NormalizationError
from state_reconstruction.models import (
    Diagnostic,
    DiagnosticStage,
    EpochFlags,
    EpochRecord,
    EpochRecordStatus,
    EpochState,
    EpochStatus,
    ProtocolTiming,
    RawEvent,
)
from state_reconstruction.normalizer import event_timestamp, extract_fields, int_field, require_tx_id


logger = logging.getLogger(__name__)


UNINITIALIZED_EPOCH = EpochStatus(
    id=0,
    window_start_ms=None,
    window_end_ms=None,
    progress_pct=0.0,
    time_remaining=timedelta(0),
    status=EpochState.UNINITIALIZED,
    initialized=False,
)


TIMING_FIELDS = (
    int_field("protocol_start", "protocol_start", "protocolStart"),
    int_field("epoch_duration", "epoch_duration", "epochDuration"),
)

EPOCH_CREATED_FIELDS = (
    int_field("epoch_id", "epoch_id", "epochId"),
    int_field("week_number", "week_number", "weekNumber"),
    int_field("week_start", "week_start", "weekStart"),
    int_field("week_end", "week_end", "weekEnd"),
)

REVENUE_FIELDS = (
    int_field("epoch_id", "epoch_id", "epochId"),
    int_field("amount", "amount"),
    int_field("total_week_revenue", "total_week_revenue", "totalWeekRevenue"),
    int_field("week", "week_pool_sui", "weekPoolSui"),
    int_field("three_month", "three_month_pool_sui", "threeMonthPoolSui"),
    int_field("year", "year_pool_sui", "yearPoolSui"),
    int_field("three_year", "three_year_pool_sui", "threeYearPoolSui"),
)


# =============================================================
# CURRENT EPOCH
# =============================================================


def window_progress(now_ms: int, start_ms: int, end_ms: int) -> float:
    """Elapsed share of [start_ms, end_ms) as a percentage clamped to 0..100."""
    if end_ms <= start_ms:
        return 100.0 if now_ms >= end_ms else 0.0
    pct = (now_ms - start_ms) * 100 / (end_ms - start_ms)
    return max(0.0, min(100.0, pct))


def _status_from_flags(epoch_id: int, flags: Optional[EpochFlags]) -> EpochState:
    if flags is None:
        return EpochState.ACTIVE
    if flags.epoch_id is not None and flags.epoch_id != epoch_id:
        return EpochState.ACTIVE
    if flags.is_claimable:
        return EpochState.CLAIMABLE
    if flags.allocations_finalized:
        return EpochState.FINALIZED
    return EpochState.ACTIVE


def compute_current_epoch(
    now_ms: int,
    protocol_start_ms: Optional[int],
    epoch_duration_ms: Optional[int],
    flags: Optional[EpochFlags] = None,
    max_epochs: Optional[int] = None,
) -> EpochStatus:
    """
    Current epoch for the given clock.

    Returns UNINITIALIZED_EPOCH when the protocol start is unset (None or 0)
    or the duration is not positive. Before the protocol start the first
    epoch is reported with zero progress. With max_epochs the id stops at
    the final epoch and progress clamps to 100 once its window has passed.
    """
    if not protocol_start_ms or not epoch_duration_ms or epoch_duration_ms <= 0:
        return UNINITIALIZED_EPOCH

    index = max(0, (now_ms - protocol_start_ms) // epoch_duration_ms)
    if max_epochs is not None and max_epochs > 0:
        index = min(index, max_epochs - 1)

    window_start = protocol_start_ms + index * epoch_duration_ms
    window_end = window_start + epoch_duration_ms
    epoch_id = index + 1

    return EpochStatus(
        id=epoch_id,
        window_start_ms=window_start,
        window_end_ms=window_end,
        progress_pct=window_progress(now_ms, window_start, window_end),
        time_remaining=timedelta(milliseconds=max(0, window_end - now_ms)),
        status=_status_from_flags(epoch_id, flags),
        initialized=True,
        window_elapsed=now_ms >= window_end,
    )


def compute_epoch_for_timing(
    now_ms: int,
    timing: ProtocolTiming,
    flags: Optional[EpochFlags] = None,
    max_epochs: Optional[int] = None,
) -> EpochStatus:
    if not timing.initialized:
        return UNINITIALIZED_EPOCH
    return compute_current_epoch(
        now_ms, timing.protocol_start_ms, timing.epoch_duration_ms, flags, max_epochs
    )


def total_epochs(timing: ProtocolTiming, now_ms: int, max_epochs: Optional[int] = None) -> int:
    """Number of epochs that have started by now_ms."""
    if not timing.initialized or now_ms < timing.protocol_start_ms:
        return 0
    started = (now_ms - timing.protocol_start_ms) // timing.epoch_duration_ms + 1
    if max_epochs is not None and max_epochs > 0:
        started = min(started, max_epochs)
    return started


def is_epoch_overdue(status: EpochStatus, flags: Optional[EpochFlags]) -> bool:
    """
    True when an epoch's window has elapsed without finalization.

    Flags naming an earlier epoch than the current one describe a window
    that has already passed; flags for the current epoch only count once
    its own window has elapsed (the final epoch of a capped schedule).
    """
    if not status.initialized:
        return False
    flags = flags or EpochFlags()
    if flags.allocations_finalized or flags.is_claimable:
        return False
    if flags.epoch_id is not None and flags.epoch_id < status.id:
        return True
    return status.window_elapsed


# =============================================================
# TIMING AND HISTORY REPLAY
# =============================================================


ParsedEvent = Tuple[int, str, dict, Mapping]


def _event_order(item: ParsedEvent) -> Tuple[int, str]:
    return (item[0], item[1])


def _parse_events(
    events: Iterable[RawEvent],
    specs,
    diagnostics: Optional[List[Diagnostic]],
) -> List[ParsedEvent]:
    """(timestamp, tx id, fields, payload) for every well-formed event."""
    parsed: List[ParsedEvent] = []
    for raw in events:
        try:
            tx_id = require_tx_id(raw)
            timestamp = event_timestamp(raw)
            fields = extract_fields(raw.payload, specs, event_type=raw.event_name, tx_id=tx_id)
        except NormalizationError as e:
            logger.warning(f"Skipping malformed locker event: {e}")
            if diagnostics is not None:
                diagnostics.append(Diagnostic.from_error(DiagnosticStage.NORMALIZE, e))
            continue
        parsed.append((timestamp, tx_id, fields, raw.payload))
    return parsed


def parse_protocol_timing(
    events: Iterable[RawEvent],
    time_scale_ms: int = 1000,
    diagnostics: Optional[List[Diagnostic]] = None,
) -> ProtocolTiming:
    """Timing from the latest ProtocolTimingInitialized event, or uninitialized."""
    parsed = [
        item for item in _parse_events(events, TIMING_FIELDS, diagnostics)
        if "protocol_start" in item[2] and "epoch_duration" in item[2]
    ]
    if not parsed:
        return ProtocolTiming.uninitialized()

    _, tx_id, fields, _ = max(parsed, key=_event_order)
    start_ms = fields["protocol_start"] * time_scale_ms
    duration_ms = fields["epoch_duration"] * time_scale_ms
    logger.debug(f"Protocol timing from {tx_id}: start={start_ms} duration={duration_ms}")
    return ProtocolTiming(
        protocol_start_ms=start_ms or None,
        epoch_duration_ms=duration_ms,
        initialized=start_ms > 0 and duration_ms > 0,
    )


def build_epoch_history(
    created_events: Iterable[RawEvent],
    revenue_events: Iterable[RawEvent],
    timing: ProtocolTiming,
    now_ms: int,
    max_epochs: Optional[int] = None,
    time_scale_ms: int = 1000,
    diagnostics: Optional[List[Diagnostic]] = None,
) -> List[EpochRecord]:
    """Epoch records, newest first. See module docstring."""
    created: Dict[int, ParsedEvent] = {}
    for item in sorted(_parse_events(created_events, EPOCH_CREATED_FIELDS, diagnostics), key=_event_order):
        fields = item[2]
        if not all(k in fields for k in ("epoch_id", "week_start", "week_end")):
            logger.warning(f"EpochCreated in {item[1]} lacks its window, skipping")
            continue
        # Sorted oldest first, so the first creation per id is kept
        created.setdefault(fields["epoch_id"], item)

    # Latest revenue event per epoch wins; its totals are cumulative
    revenue: Dict[int, ParsedEvent] = {}
    for item in sorted(_parse_events(revenue_events, REVENUE_FIELDS, diagnostics), key=_event_order):
        epoch_id = item[2].get("epoch_id")
        if epoch_id is not None:
            revenue[epoch_id] = item

    records: List[EpochRecord] = []
    for epoch_id, (_, tx_id, fields, _) in created.items():
        start_ms = fields["week_start"] * time_scale_ms
        end_ms = fields["week_end"] * time_scale_ms
        revenue_item = revenue.get(epoch_id)
        finalized = revenue_item is not None
        distribution: Dict[str, int] = {}
        total_revenue = 0
        admin = None
        if revenue_item is not None:
            revenue_fields = revenue_item[2]
            admin = revenue_item[3].get("admin")
            total_revenue = revenue_fields.get("total_week_revenue", revenue_fields.get("amount", 0))
            distribution = {
                period: revenue_fields[period]
                for period in ("week", "three_month", "year", "three_year")
                if period in revenue_fields
            }

        records.append(EpochRecord(
            epoch_id=epoch_id,
            week_number=fields.get("week_number", epoch_id),
            window_start_ms=start_ms,
            window_end_ms=end_ms,
            status=EpochRecordStatus.CLAIMABLE if finalized and now_ms >= end_ms else EpochRecordStatus.CREATED,
            total_revenue=total_revenue,
            pool_distribution=distribution,
            allocations_finalized=finalized,
            is_current=start_ms <= now_ms < end_ms,
            progress_pct=window_progress(now_ms, start_ms, end_ms),
            tx_id=tx_id,
            admin=admin if isinstance(admin, str) else None,
        ))

    for epoch_id in range(1, total_epochs(timing, now_ms, max_epochs) + 1):
        if epoch_id in created:
            continue
        start_ms = timing.protocol_start_ms + (epoch_id - 1) * timing.epoch_duration_ms
        end_ms = start_ms + timing.epoch_duration_ms
        records.append(EpochRecord(
            epoch_id=epoch_id,
            week_number=epoch_id,
            window_start_ms=start_ms,
            window_end_ms=end_ms,
            status=EpochRecordStatus.PENDING,
            is_current=start_ms <= now_ms < end_ms,
            progress_pct=window_progress(now_ms, start_ms, end_ms),
        ))

    records.sort(key=lambda r: r.epoch_id, reverse=True)
    return records


def derive_epoch_flags(history: Iterable[EpochRecord], now_ms: int) -> EpochFlags:
    """Flags of the latest created epoch that has started by now_ms."""
    started = [
        record for record in history
        if record.status is not EpochRecordStatus.PENDING and record.window_start_ms <= now_ms
    ]
    if not started:
        return EpochFlags()

    latest = max(started, key=lambda r: r.epoch_id)
    return EpochFlags(
        allocations_finalized=latest.allocations_finalized,
        is_claimable=latest.status is EpochRecordStatus.CLAIMABLE,
        epoch_id=latest.epoch_id,
    )
