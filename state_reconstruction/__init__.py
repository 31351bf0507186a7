"""
State Reconstruction Package - Event-sourced read model for the DEX admin console.

The ledger exposes no "current state" table for farm pools, epochs or
allocations, so this package rebuilds them by replaying the event log.

Features:
- Tolerant event normalization (snake/camel keys, wrapped type names,
  byte-array integers)
- Deterministic, idempotent pool replay with a placeholder policy for
  pools whose creation event has been pruned
- Epoch arithmetic recomputed from the clock on every call
- DEX pair registry and emission schedule position
- Allocation validation returning structured results
- One Snapshot per refresh that degrades section by section

Quick Start:
    from state_reconstruction import (
        DashboardAggregator,
        EngineConfig,
        SuiRpcEventSource,
    )

    async def refresh_dashboard():
        config = EngineConfig.from_env()
        async with SuiRpcEventSource(config) as source:
            snapshot = await DashboardAggregator(source, config).refresh()

        print(f"Pools: {snapshot.pool_summary.total_pools}")
        print(f"Epoch: {snapshot.epoch.id} ({snapshot.epoch.progress_pct:.1f}%)")
        print(f"Health: {snapshot.health.overall.value}")

Pure usage (no I/O):
    events, diagnostics = EventNormalizer().normalize_batch(raw_events)
    pools = PoolStateReducer().reduce(events)
    epoch = compute_current_epoch(now_ms, protocol_start_ms, epoch_duration_ms)
    result = validate_allocations(AllocationSet(200, 800, 2500, 6500))
"""

from state_reconstruction.aggregator import DashboardAggregator, build_snapshot, resolve_locker_state
from state_reconstruction.allocations import (
    AllocationValidator,
    LockPeriod,
    bp_to_percentage,
    prepare_submission,
    require_valid,
    validate_allocations,
)
from state_reconstruction.config import EngineConfig, HealthConfig
from state_reconstruction.emissions import compute_emission_status, parse_emission_start, weekly_breakdown
from state_reconstruction.epochs import (
    UNINITIALIZED_EPOCH,
    build_epoch_history,
    compute_current_epoch,
    derive_epoch_flags,
    parse_protocol_timing,
    window_progress,
)
from state_reconstruction.exceptions import (
    AllocationValidationError,
    ConfigurationError,
    FetchError,
    NormalizationError,
    ReconstructionError,
    RpcResponseError,
)
from state_reconstruction.health import evaluate_health
from state_reconstruction.models import (
    AllocationSet,
    Diagnostic,
    EmissionPhase,
    EmissionStatus,
    EmissionWeek,
    EpochFlags,
    EpochRecord,
    EpochState,
    EpochStatus,
    EventKind,
    HealthReport,
    HealthState,
    NormalizedEvent,
    ObjectState,
    PairRecord,
    PoolKind,
    PoolState,
    ProtocolTiming,
    RawEvent,
    Snapshot,
    ValidationResult,
    VaultBalances,
)
from state_reconstruction.normalizer import EventNormalizer
from state_reconstruction.pairs import replay_pair_created
from state_reconstruction.reducer import PoolStateReducer, summarize_pools
from state_reconstruction.sources import EventSource, InMemoryEventSource, SuiRpcEventSource
from state_reconstruction.type_names import parse_pool_type


__version__ = "1.0.0"

__all__ = [
    # Pipeline
    "EventNormalizer",
    "PoolStateReducer",
    "summarize_pools",
    "compute_current_epoch",
    "window_progress",
    "UNINITIALIZED_EPOCH",
    "parse_protocol_timing",
    "build_epoch_history",
    "derive_epoch_flags",
    "compute_emission_status",
    "parse_emission_start",
    "weekly_breakdown",
    "replay_pair_created",
    "AllocationValidator",
    "LockPeriod",
    "validate_allocations",
    "prepare_submission",
    "require_valid",
    "bp_to_percentage",
    "evaluate_health",
    "build_snapshot",
    "resolve_locker_state",
    "DashboardAggregator",
    "parse_pool_type",

    # Sources
    "EventSource",
    "InMemoryEventSource",
    "SuiRpcEventSource",

    # Config
    "EngineConfig",
    "HealthConfig",

    # Models
    "RawEvent",
    "ObjectState",
    "NormalizedEvent",
    "EventKind",
    "PoolKind",
    "PoolState",
    "PairRecord",
    "AllocationSet",
    "ValidationResult",
    "ProtocolTiming",
    "EpochFlags",
    "EpochState",
    "EpochStatus",
    "EpochRecord",
    "EmissionPhase",
    "EmissionStatus",
    "EmissionWeek",
    "VaultBalances",
    "Diagnostic",
    "HealthReport",
    "HealthState",
    "Snapshot",

    # Exceptions
    "ReconstructionError",
    "NormalizationError",
    "FetchError",
    "RpcResponseError",
    "ConfigurationError",
    "AllocationValidationError",
]
