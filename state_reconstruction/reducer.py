"""
State Reconstruction - Pool State Reducer.

============================================================
REPLAY RULES
============================================================
1. Group normalized events by entity key
2. Drop duplicate deliveries (same key, kind, tx, timestamp, fields)
3. Sort each group by (timestamp, tx id, Created first, fields)
4. The first Created seeds the state with active=True
5. Each ConfigUpdated overwrites only the fields it carries
6. An update with no prior Created seeds a pending placeholder
7. A Created arriving after a placeholder replaces it
8. Malformed events are skipped with a diagnostic

The output is total over every valid entity key observed and does
not depend on the order the events were supplied in.

============================================================
"""

import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from state_reconstruction.models import (
    Diagnostic,
    DiagnosticStage,
    EventKind,
    NormalizedEvent,
    PoolKind,
    PoolState,
    PoolSummary,
    ReplayResult,
)
from state_reconstruction.type_names import infer_pool_kind, is_native_pair, pool_display_name


logger = logging.getLogger(__name__)


UPDATABLE_FIELDS: Tuple[str, ...] = (
    "allocation_points",
    "deposit_fee_bp",
    "withdrawal_fee_bp",
    "active",
)

_INT_FIELDS = ("allocation_points", "deposit_fee_bp", "withdrawal_fee_bp")
_BOOL_FIELDS = ("active", "is_native_pair", "is_lp_token")


def _validation_problem(event: Any) -> Optional[str]:
    """Why a normalized event cannot take part in replay, or None."""
    if not isinstance(event, NormalizedEvent):
        return f"Not a normalized event: {type(event).__name__}"
    if not isinstance(event.kind, EventKind):
        return f"Unknown event kind: {event.kind!r}"
    if not isinstance(event.entity_key, str) or not event.entity_key:
        return "Empty entity key"
    if isinstance(event.timestamp_ms, bool) or not isinstance(event.timestamp_ms, int):
        return f"Non-integer timestamp: {event.timestamp_ms!r}"
    if event.timestamp_ms < 0:
        return f"Negative timestamp: {event.timestamp_ms}"
    if not isinstance(event.tx_id, str) or not event.tx_id:
        return "Empty transaction id"
    if not isinstance(event.fields, Mapping):
        return "Fields are not a mapping"

    for name in _INT_FIELDS:
        value = event.fields.get(name)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int):
            return f"Field '{name}' is not an integer: {value!r}"
        if value < 0:
            return f"Field '{name}' is negative: {value}"
    for name in _BOOL_FIELDS:
        value = event.fields.get(name)
        if value is not None and not isinstance(value, bool):
            return f"Field '{name}' is not a boolean: {value!r}"
    return None


def _str_attr(event: Any, name: str) -> Optional[str]:
    value = getattr(event, name, None)
    return value if isinstance(value, str) and value else None


class PoolStateReducer:
    """
    Rebuilds one PoolState per entity key from Created and ConfigUpdated events.

    Usage:
        reducer = PoolStateReducer()
        pools = reducer.reduce(events)
        result = reducer.reduce_with_diagnostics(events)
    """

    def reduce(self, events: Iterable[NormalizedEvent]) -> Dict[str, PoolState]:
        """Current state per entity key, ordered by key."""
        return self.reduce_with_diagnostics(events).pools

    def reduce_with_diagnostics(self, events: Iterable[NormalizedEvent]) -> ReplayResult:
        """Like reduce(), also returning what was skipped and why."""
        skipped: List[Diagnostic] = []
        groups: Dict[str, Dict[Tuple[Any, ...], NormalizedEvent]] = {}

        for event in events:
            problem = _validation_problem(event)
            if problem is not None:
                logger.warning(f"Skipping malformed pool event: {problem}")
                skipped.append(Diagnostic(
                    stage=DiagnosticStage.REDUCE,
                    message=problem,
                    event_type=_str_attr(event, "event_type"),
                    tx_id=_str_attr(event, "tx_id"),
                    entity_key=_str_attr(event, "entity_key"),
                ))
                continue
            group = groups.setdefault(event.entity_key, {})
            identity = event.identity()
            if identity in group:
                logger.debug(f"Duplicate delivery of {event.kind.value} for {event.entity_key} in {event.tx_id}")
                continue
            group[identity] = event

        diagnostics = sorted(
            skipped,
            key=lambda d: (d.entity_key or "", d.tx_id or "", d.message),
        )

        pools: Dict[str, PoolState] = {}
        for key in sorted(groups):
            ordered = sorted(groups[key].values(), key=lambda e: e.sort_key())
            pools[key] = self._replay(key, ordered, diagnostics)

        logger.debug(f"Reduced {sum(len(g) for g in groups.values())} events into {len(pools)} pools")
        return ReplayResult(pools=pools, diagnostics=diagnostics)

    # =========================================================
    # REPLAY
    # =========================================================

    def _replay(
        self,
        key: str,
        ordered: List[NormalizedEvent],
        diagnostics: List[Diagnostic],
    ) -> PoolState:
        state: Optional[PoolState] = None

        for event in ordered:
            if event.kind is EventKind.CREATED:
                if state is None or state.pending:
                    if state is not None:
                        logger.info(f"Creation event for {key} replaces its placeholder")
                    state = self._seed(event)
                else:
                    diagnostics.append(Diagnostic(
                        stage=DiagnosticStage.REDUCE,
                        message="Duplicate creation event ignored",
                        event_type=event.event_type or None,
                        tx_id=event.tx_id,
                        entity_key=key,
                        context={"created_tx_id": state.created_tx_id},
                    ))
                continue

            if state is None:
                logger.info(f"No creation event retained for {key}; seeding placeholder from {event.tx_id}")
                state = self._placeholder(event)
            elif event.timestamp_ms < state.last_timestamp_ms:
                diagnostics.append(Diagnostic(
                    stage=DiagnosticStage.REDUCE,
                    message="Update older than current state ignored",
                    event_type=event.event_type or None,
                    tx_id=event.tx_id,
                    entity_key=key,
                    context={"last_timestamp_ms": state.last_timestamp_ms},
                ))
                continue

            state = self._apply_update(state, event)

        # Every group holds at least one valid event, so state is seeded here
        return state

    def _seed(self, event: NormalizedEvent) -> PoolState:
        fields = event.fields
        key = event.entity_key

        is_lp = fields.get("is_lp_token")
        if is_lp is None:
            kind = infer_pool_kind(key)
        else:
            kind = PoolKind.LP if is_lp else PoolKind.SINGLE

        native = fields.get("is_native_pair")
        if native is None:
            native = is_native_pair(key)

        logger.debug(f"Seeding {key} from {event.tx_id} at {event.timestamp_ms}")
        return PoolState(
            entity_key=key,
            display_name=pool_display_name(key, kind),
            kind=kind,
            allocation_points=fields.get("allocation_points", 0),
            deposit_fee_bp=fields.get("deposit_fee_bp", 0),
            withdrawal_fee_bp=fields.get("withdrawal_fee_bp", 0),
            active=True,
            is_native_pair=native,
            last_tx_id=event.tx_id,
            last_timestamp_ms=event.timestamp_ms,
            created_tx_id=event.tx_id,
        )

    def _placeholder(self, event: NormalizedEvent) -> PoolState:
        key = event.entity_key
        kind = infer_pool_kind(key)
        return PoolState(
            entity_key=key,
            display_name=pool_display_name(key, kind),
            kind=kind,
            allocation_points=0,
            deposit_fee_bp=0,
            withdrawal_fee_bp=0,
            active=True,
            is_native_pair=is_native_pair(key),
            last_tx_id=event.tx_id,
            last_timestamp_ms=event.timestamp_ms,
            created_tx_id=None,
            pending=True,
        )

    def _apply_update(self, state: PoolState, event: NormalizedEvent) -> PoolState:
        changes = {
            name: event.fields[name]
            for name in UPDATABLE_FIELDS
            if event.fields.get(name) is not None
        }
        logger.debug(f"Applying update {event.tx_id} to {state.entity_key}: {changes}")
        return replace(
            state,
            last_tx_id=event.tx_id,
            last_timestamp_ms=event.timestamp_ms,
            update_count=state.update_count + 1,
            **changes,
        )


# =============================================================
# SUMMARIES
# =============================================================


PoolCollection = Union[Mapping[str, PoolState], Iterable[PoolState]]


def _pool_values(pools: PoolCollection) -> List[PoolState]:
    if isinstance(pools, Mapping):
        return list(pools.values())
    return list(pools)


def summarize_pools(pools: PoolCollection) -> PoolSummary:
    """Counters over all pools; allocation totals count active pools only."""
    values = _pool_values(pools)
    active = [p for p in values if p.active]

    return PoolSummary(
        total_pools=len(values),
        active_pools=len(active),
        lp_pools=sum(1 for p in values if p.kind is PoolKind.LP),
        single_pools=sum(1 for p in values if p.kind is PoolKind.SINGLE),
        pending_pools=sum(1 for p in values if p.pending),
        total_allocation_points=sum(p.allocation_points for p in active),
        lp_allocation_points=sum(p.allocation_points for p in active if p.kind is PoolKind.LP),
        single_allocation_points=sum(p.allocation_points for p in active if p.kind is PoolKind.SINGLE),
    )


def allocation_share_bp(pool: PoolState, total_allocation_points: int) -> int:
    """Share of active allocation points in basis points (0 for inactive pools)."""
    if not pool.active or total_allocation_points <= 0:
        return 0
    return pool.allocation_points * 10_000 // total_allocation_points
