"""
State Reconstruction - Dashboard Aggregator.

============================================================
PURPOSE
============================================================
Composes normalizer, reducer, pair registry, epoch and emission
calculators, allocation validator and health rules into one Snapshot
per refresh.

- build_snapshot() is pure: all inputs are parameters, the result
  is fresh, nothing is cached between calls
- DashboardAggregator.refresh() fans out every ledger read at once,
  converts each failed read into a diagnostic and a degraded section,
  then calls build_snapshot()

A failed upstream read never fails the refresh.

============================================================
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from state_reconstruction.allocations import AllocationValidator, allocation_set_from_fields, replay_allocation_events
from state_reconstruction.config import EMISSION_MODULE, FACTORY_MODULE, FARM_MODULE, LOCKER_MODULE, EngineConfig
from state_reconstruction.emissions import compute_emission_status, parse_emission_start
from state_reconstruction.epochs import (
    build_epoch_history,
    compute_epoch_for_timing,
    derive_epoch_flags,
    parse_protocol_timing,
)
from state_reconstruction.exceptions import NormalizationError, ReconstructionError
from state_reconstruction.health import evaluate_health
from state_reconstruction.models import (
    AllocationSet,
    AllocationView,
    Diagnostic,
    DiagnosticStage,
    EpochFlags,
    EpochRecord,
    NormalizedEvent,
    ObjectState,
    ProtocolTiming,
    RawEvent,
    Snapshot,
    VaultBalances,
)
from state_reconstruction.normalizer import EventNormalizer, coerce_bool, coerce_int, is_missing, resolve_field
from state_reconstruction.pairs import replay_pair_created
from state_reconstruction.reducer import PoolStateReducer, summarize_pools
from state_reconstruction.sources import EventSource
from state_reconstruction.vaults import read_vault_balances


logger = logging.getLogger(__name__)


ALLOCATION_SET_NAMES = ("victory", "sui")

_ALLOCATION_EVENTS = {
    "victory": "VictoryAllocationsUpdated",
    "sui": "SUIAllocationsUpdated",
}


@dataclass(frozen=True)
class LockerState:
    """Fields of the token locker object the dashboard cares about."""
    admin: Optional[str] = None
    paused: bool = False
    timing: ProtocolTiming = field(default_factory=ProtocolTiming.uninitialized)


def _locker_fields(locker_state: Union[ObjectState, Mapping[str, Any], None]) -> Mapping[str, Any]:
    if locker_state is None:
        return {}
    if isinstance(locker_state, ObjectState):
        return locker_state.fields
    return locker_state


def _scaled_field(
    fields: Mapping[str, Any],
    ms_aliases: Tuple[str, ...],
    second_aliases: Tuple[str, ...],
    time_scale_ms: int,
) -> Optional[int]:
    value, _ = resolve_field(fields, ms_aliases)
    if not is_missing(value):
        return coerce_int(value)
    value, _ = resolve_field(fields, second_aliases)
    if not is_missing(value):
        return coerce_int(value) * time_scale_ms
    return None


def resolve_locker_state(
    locker_state: Union[ObjectState, Mapping[str, Any], None],
    time_scale_ms: int = 1000,
    diagnostics: Optional[List[Diagnostic]] = None,
) -> LockerState:
    """
    Admin, pause flag and protocol timing from the token locker fields.

    Timing accepts millisecond fields (protocol_start_ms, epoch_duration_ms)
    or the on-chain second-based ones (protocol_start, epoch_duration).
    """
    fields = _locker_fields(locker_state)

    admin, _ = resolve_field(fields, ("admin",))
    admin = admin if isinstance(admin, str) and admin else None

    paused = False
    try:
        value, _ = resolve_field(fields, ("paused", "is_paused", "isPaused"))
        if not is_missing(value):
            paused = coerce_bool(value)
        start_ms = _scaled_field(
            fields, ("protocol_start_ms", "protocolStartMs"), ("protocol_start", "protocolStart"), time_scale_ms
        )
        duration_ms = _scaled_field(
            fields, ("epoch_duration_ms", "epochDurationMs"), ("epoch_duration", "epochDuration"), time_scale_ms
        )
    except (ValueError, TypeError) as e:
        error = NormalizationError("Invalid token locker state", original_error=e, raw_data=dict(fields))
        logger.warning(f"Ignoring token locker timing: {error}")
        if diagnostics is not None:
            diagnostics.append(Diagnostic.from_error(DiagnosticStage.NORMALIZE, error))
        return LockerState(admin=admin, paused=paused)

    if start_ms and duration_ms and duration_ms > 0:
        timing = ProtocolTiming(protocol_start_ms=start_ms, epoch_duration_ms=duration_ms, initialized=True)
    else:
        timing = ProtocolTiming.uninitialized()
    return LockerState(admin=admin, paused=paused, timing=timing)


# =============================================================
# PURE COMPOSITION
# =============================================================


def build_snapshot(
    pool_events: Iterable[Union[RawEvent, NormalizedEvent]],
    locker_state: Union[ObjectState, Mapping[str, Any], None],
    vault_balances: Optional[VaultBalances],
    allocation_sets: Mapping[str, Optional[AllocationSet]],
    epoch_flags: Optional[EpochFlags],
    now_ms: int,
    config: Optional[EngineConfig] = None,
    protocol_timing: Optional[ProtocolTiming] = None,
    epoch_history: Optional[List[EpochRecord]] = None,
    diagnostics: Optional[Iterable[Diagnostic]] = None,
    pool_events_available: bool = True,
    pair_events: Iterable[RawEvent] = (),
    pair_events_available: bool = True,
    emission_start_ms: Optional[int] = None,
) -> Snapshot:
    """
    Build one Snapshot from already-fetched inputs.

    Args:
        pool_events: PoolCreated / PoolConfigUpdated events, raw or normalized
        locker_state: Token locker object (admin, paused, timing fields)
        vault_balances: Balances, or None when the vault reads failed
        allocation_sets: Name -> set, None when a set could not be read
        epoch_flags: Chain-derived finalization flags
        now_ms: Clock used for every time-derived value
        protocol_timing: Timing from events; falls back to the locker fields
        epoch_history: Replayed epoch records, newest first
        diagnostics: Problems already recorded upstream
        pool_events_available: False when pool events could not be fetched
        pair_events: factory PairCreated events
        pair_events_available: False when pair events could not be fetched
        emission_start_ms: Start of emission week 1, None when not started

    Returns:
        Snapshot
    """
    config = config or EngineConfig()
    recorded: List[Diagnostic] = list(diagnostics or [])

    raw_events: List[RawEvent] = []
    normalized: List[NormalizedEvent] = []
    for event in pool_events:
        if isinstance(event, NormalizedEvent):
            normalized.append(event)
        else:
            raw_events.append(event)

    events, skipped = EventNormalizer().normalize_batch(raw_events)
    recorded.extend(skipped)
    replay = PoolStateReducer().reduce_with_diagnostics(normalized + events)
    recorded.extend(replay.diagnostics)
    pools = list(replay.pools.values())
    pairs = replay_pair_created(pair_events, recorded)

    locker = resolve_locker_state(locker_state, config.onchain_time_scale_ms, recorded)
    timing = protocol_timing if protocol_timing is not None and protocol_timing.initialized else locker.timing
    epoch = compute_epoch_for_timing(now_ms, timing, epoch_flags, config.max_epochs)
    emissions = compute_emission_status(now_ms, emission_start_ms, config.emission_week_ms)

    allocations: Dict[str, AllocationView] = {}
    for name in sorted(allocation_sets):
        allocation_set = allocation_sets[name]
        if allocation_set is None:
            allocations[name] = AllocationView(allocation_set=None, validation=None)
        else:
            validation = AllocationValidator(name).validate(allocation_set)
            allocations[name] = AllocationView(allocation_set=allocation_set, validation=validation)

    balances_available = vault_balances is not None
    balances = vault_balances if balances_available else VaultBalances()

    health = evaluate_health(
        vault_balances=balances,
        allocations=allocations,
        epoch=epoch,
        epoch_flags=epoch_flags,
        vault_balances_available=balances_available,
        pool_events_available=pool_events_available,
        config=config.health,
    )

    return Snapshot(
        generated_at_ms=now_ms,
        pools=pools,
        pool_summary=summarize_pools(pools),
        vault_balances=balances,
        vault_balances_available=balances_available,
        allocations=allocations,
        protocol_timing=timing,
        epoch=epoch,
        health=health,
        admin=locker.admin,
        paused=locker.paused,
        epoch_history=list(epoch_history or []),
        diagnostics=recorded,
        pairs=pairs,
        pairs_available=pair_events_available,
        emissions=emissions,
    )


# =============================================================
# FETCHING AGGREGATOR
# =============================================================


class DashboardAggregator:
    """
    Fetches everything one dashboard refresh needs and builds the Snapshot.

    Usage:
        async with SuiRpcEventSource(config) as source:
            snapshot = await DashboardAggregator(source, config).refresh()
    """

    def __init__(self, source: EventSource, config: Optional[EngineConfig] = None) -> None:
        self._source = source
        self._config = config or EngineConfig()

    async def refresh(self, now_ms: Optional[int] = None) -> Snapshot:
        """Build a fresh Snapshot. Upstream failures degrade sections, never raise."""
        config = self._config
        now_ms = int(time.time() * 1000) if now_ms is None else now_ms
        diagnostics: List[Diagnostic] = []

        event_requests = {
            "pool_created": config.event_type(FARM_MODULE, "PoolCreated"),
            "pool_updated": config.event_type(FARM_MODULE, "PoolConfigUpdated"),
            "timing": config.event_type(LOCKER_MODULE, "ProtocolTimingInitialized"),
            "epoch_created": config.event_type(LOCKER_MODULE, "EpochCreated"),
            "revenue": config.event_type(LOCKER_MODULE, "WeeklyRevenueAdded"),
            "victory_allocations": config.event_type(LOCKER_MODULE, _ALLOCATION_EVENTS["victory"]),
            "sui_allocations": config.event_type(LOCKER_MODULE, _ALLOCATION_EVENTS["sui"]),
            "pair_created": config.event_type(FACTORY_MODULE, "PairCreated"),
            "emission_started": config.event_type(EMISSION_MODULE, "EmissionScheduleStarted"),
        }
        object_requests = {
            "locker": config.token_locker_id,
            "locked_vault": config.locked_vault_id,
            "victory_vault": config.victory_reward_vault_id,
            "sui_vault": config.sui_reward_vault_id,
        }

        names = list(event_requests) + list(object_requests)
        results = await asyncio.gather(
            *(self._source.fetch_events(t) for t in event_requests.values()),
            *(self._source.fetch_object(o) for o in object_requests.values()),
            return_exceptions=True,
        )

        fetched: Dict[str, Any] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            if isinstance(result, Exception):
                target = event_requests.get(name) or object_requests.get(name)
                logger.error(f"Failed to fetch {name} ({target}): {result}")
                diagnostics.append(Diagnostic.from_error(
                    DiagnosticStage.FETCH,
                    result,
                    event_type=target if name in event_requests else None,
                    entity_key=target if name in object_requests else None,
                ))
                continue
            fetched[name] = result

        pool_events_available = "pool_created" in fetched and "pool_updated" in fetched
        pool_events = fetched.get("pool_created", []) + fetched.get("pool_updated", [])

        locker_object: Optional[ObjectState] = fetched.get("locker")
        timing = parse_protocol_timing(fetched.get("timing", []), config.onchain_time_scale_ms, diagnostics)
        if not timing.initialized:
            timing = resolve_locker_state(locker_object, config.onchain_time_scale_ms).timing

        history = build_epoch_history(
            fetched.get("epoch_created", []),
            fetched.get("revenue", []),
            timing,
            now_ms,
            max_epochs=config.max_epochs,
            time_scale_ms=config.onchain_time_scale_ms,
            diagnostics=diagnostics,
        )
        flags = derive_epoch_flags(history, now_ms)
        emission_start_ms = parse_emission_start(
            fetched.get("emission_started", []), config.onchain_time_scale_ms, diagnostics
        )

        allocation_sets = {
            name: self._resolve_allocation_set(name, locker_object, fetched, diagnostics)
            for name in ALLOCATION_SET_NAMES
        }

        vault_balances: Optional[VaultBalances] = None
        if all(key in fetched for key in ("locked_vault", "victory_vault", "sui_vault")):
            try:
                vault_balances = read_vault_balances(
                    fetched["locked_vault"], fetched["victory_vault"], fetched["sui_vault"]
                )
            except ReconstructionError as e:
                logger.warning(f"Vault balances unreadable: {e}")
                diagnostics.append(Diagnostic.from_error(DiagnosticStage.NORMALIZE, e))

        snapshot = build_snapshot(
            pool_events=pool_events,
            locker_state=locker_object,
            vault_balances=vault_balances,
            allocation_sets=allocation_sets,
            epoch_flags=flags,
            now_ms=now_ms,
            config=config,
            protocol_timing=timing,
            epoch_history=history,
            diagnostics=diagnostics,
            pool_events_available=pool_events_available,
            pair_events=fetched.get("pair_created", []),
            pair_events_available="pair_created" in fetched,
            emission_start_ms=emission_start_ms,
        )
        logger.info(
            f"Snapshot built: {len(snapshot.pools)} pools, {len(snapshot.pairs)} pairs, "
            f"epoch {snapshot.epoch.id}, emission week {snapshot.emissions.week}, "
            f"health {snapshot.health.overall.value}"
        )
        return snapshot

    def _resolve_allocation_set(
        self,
        name: str,
        locker_object: Optional[ObjectState],
        fetched: Mapping[str, Any],
        diagnostics: List[Diagnostic],
    ) -> Optional[AllocationSet]:
        """Locker object fields first, then the latest allocation event, else unavailable."""
        default = getattr(self._config, f"default_{name}_allocations")

        if locker_object is not None:
            try:
                return allocation_set_from_fields(locker_object.fields, name, default)
            except NormalizationError as e:
                logger.warning(f"Falling back to allocation events for {name}: {e}")
                diagnostics.append(Diagnostic.from_error(DiagnosticStage.NORMALIZE, e))

        events_key = f"{name}_allocations"
        if events_key not in fetched:
            return None
        return replay_allocation_events(fetched[events_key], diagnostics)
