"""
State Reconstruction - Data Models.

============================================================
CORE DATA STRUCTURES
============================================================

Records produced by the ledger (RawEvent, ObjectState), the canonical
records derived from them (NormalizedEvent, PoolState, EpochStatus,
AllocationSet) and the read model handed to presentation code
(Snapshot).

Serialization rules for to_dict():
- Token amounts are decimal strings (they routinely exceed 2^53)
- Basis points, allocation points, ids and counters are numbers
- Durations are integer milliseconds

============================================================
"""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from state_reconstruction.exceptions import ReconstructionError


# =============================================================
# ENUMS
# =============================================================


class EventKind(str, Enum):
    """Kinds of pool events that take part in replay."""
    CREATED = "Created"
    CONFIG_UPDATED = "ConfigUpdated"

    @property
    def replay_order(self) -> int:
        """Creation sorts before updates carrying the same timestamp and tx."""
        return 0 if self is EventKind.CREATED else 1


class PoolKind(str, Enum):
    """Farm pool kinds."""
    LP = "LP"
    SINGLE = "Single"


class EpochState(str, Enum):
    """
    Status of the current revenue epoch.

    - ACTIVE: window open, no revenue recorded against it
    - FINALIZED: revenue recorded, allocations locked
    - CLAIMABLE: finalized and open for claims
    - UNINITIALIZED: protocol timing not set, nothing computed
    """
    ACTIVE = "active"
    FINALIZED = "finalized"
    CLAIMABLE = "claimable"
    UNINITIALIZED = "uninitialized"


class EpochRecordStatus(str, Enum):
    """Status of one row in the epoch history."""
    PENDING = "pending"
    CREATED = "created"
    CLAIMABLE = "claimable"


class HealthState(str, Enum):
    """Overall dashboard health."""
    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"

    def is_degraded(self) -> bool:
        return self != HealthState.HEALTHY


class EmissionPhase(str, Enum):
    """Phases of the global emission schedule."""
    NOT_STARTED = "not_started"
    BOOTSTRAP = "bootstrap"
    POST_BOOTSTRAP = "post_bootstrap"
    ENDED = "ended"

    @property
    def display_name(self) -> str:
        return {
            EmissionPhase.NOT_STARTED: "Not Started",
            EmissionPhase.BOOTSTRAP: "Bootstrap Phase",
            EmissionPhase.POST_BOOTSTRAP: "Post-Bootstrap Phase",
            EmissionPhase.ENDED: "Ended",
        }[self]


class DiagnosticStage(str, Enum):
    """Where a diagnostic was recorded."""
    NORMALIZE = "normalize"
    REDUCE = "reduce"
    FETCH = "fetch"
    CONFIG = "config"


# =============================================================
# LEDGER RECORDS
# =============================================================


@dataclass(frozen=True)
class RawEvent:
    """An event exactly as the ledger produced it. Never mutated."""
    type_tag: str
    payload: Mapping[str, Any]
    timestamp_ms: Any
    tx_id: str

    @property
    def event_name(self) -> str:
        """Short event name, e.g. "PoolCreated" for "0x1::farm::PoolCreated"."""
        tag = (self.type_tag or "").split("<", 1)[0]
        return tag.rsplit("::", 1)[-1].strip()


@dataclass(frozen=True)
class ObjectState:
    """A current ledger object read (vaults, farm, token locker)."""
    object_id: str
    type_tag: str = ""
    fields: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NormalizedEvent:
    """Canonical pool event used by the reducer."""
    kind: EventKind
    entity_key: str
    fields: Mapping[str, Any]
    timestamp_ms: int
    tx_id: str
    event_type: str = ""

    def sort_key(self) -> Tuple[Any, ...]:
        """Total ordering: timestamp, tx id, creation first, then content."""
        return (
            self.timestamp_ms,
            self.tx_id,
            self.kind.replay_order,
            repr(sorted(self.fields.items())),
        )

    def identity(self) -> Tuple[Any, ...]:
        """Two deliveries with the same identity are the same event."""
        return (
            self.entity_key,
            self.kind.value,
            self.tx_id,
            self.timestamp_ms,
            repr(sorted(self.fields.items())),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "entity_key": self.entity_key,
            "fields": dict(self.fields),
            "timestamp_ms": self.timestamp_ms,
            "tx_id": self.tx_id,
            "event_type": self.event_type,
        }


# =============================================================
# RECONSTRUCTED STATE
# =============================================================


@dataclass(frozen=True)
class PoolState:
    """
    Current state of one farm pool, rebuilt from its event history.

    Records are never deleted; a disabled pool keeps its record with
    active=False. Placeholders (pending=True) come from update events
    whose creation event is no longer retained by the ledger.
    """
    entity_key: str
    display_name: str
    kind: PoolKind
    allocation_points: int
    deposit_fee_bp: int
    withdrawal_fee_bp: int
    active: bool
    is_native_pair: bool
    last_tx_id: str
    last_timestamp_ms: int
    created_tx_id: Optional[str] = None
    pending: bool = False
    update_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_key": self.entity_key,
            "display_name": self.display_name,
            "kind": self.kind.value,
            "allocation_points": self.allocation_points,
            "deposit_fee_bp": self.deposit_fee_bp,
            "withdrawal_fee_bp": self.withdrawal_fee_bp,
            "active": self.active,
            "is_native_pair": self.is_native_pair,
            "last_tx_id": self.last_tx_id,
            "last_timestamp_ms": self.last_timestamp_ms,
            "created_tx_id": self.created_tx_id,
            "pending": self.pending,
            "update_count": self.update_count,
        }


@dataclass(frozen=True)
class PoolSummary:
    """Aggregate counters over the reconstructed pools."""
    total_pools: int = 0
    active_pools: int = 0
    lp_pools: int = 0
    single_pools: int = 0
    pending_pools: int = 0
    total_allocation_points: int = 0
    lp_allocation_points: int = 0
    single_allocation_points: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_pools": self.total_pools,
            "active_pools": self.active_pools,
            "lp_pools": self.lp_pools,
            "single_pools": self.single_pools,
            "pending_pools": self.pending_pools,
            "total_allocation_points": self.total_allocation_points,
            "lp_allocation_points": self.lp_allocation_points,
            "single_allocation_points": self.single_allocation_points,
        }


@dataclass(frozen=True)
class PairRecord:
    """A DEX liquidity pair registered by the factory."""
    pair_address: str
    token0_type: str
    token1_type: str
    token0: str
    token1: str
    display_name: str
    is_native_pair: bool
    created_tx_id: str
    created_timestamp_ms: int
    pair_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pair_address": self.pair_address,
            "token0_type": self.token0_type,
            "token1_type": self.token1_type,
            "token0": self.token0,
            "token1": self.token1,
            "display_name": self.display_name,
            "is_native_pair": self.is_native_pair,
            "created_tx_id": self.created_tx_id,
            "created_timestamp_ms": self.created_timestamp_ms,
            "pair_index": self.pair_index,
        }


@dataclass
class AllocationSet:
    """
    Basis-point split of rewards across the four lock periods.

    Mutable on purpose: editors hold in-progress (possibly invalid)
    values here and validate them as they change.
    """
    week: Any = 0
    three_month: Any = 0
    year: Any = 0
    three_year: Any = 0

    def as_tuple(self) -> Tuple[Any, Any, Any, Any]:
        return (self.week, self.three_month, self.year, self.three_year)

    def total(self) -> Optional[int]:
        """Sum of the four values, or None while any of them is not an integer."""
        values = self.as_tuple()
        if any(isinstance(v, bool) or not isinstance(v, int) for v in values):
            return None
        return sum(values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week": self.week,
            "three_month": self.three_month,
            "year": self.year,
            "three_year": self.three_year,
            "total": self.total(),
        }


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating an allocation set. Never raised."""
    valid: bool
    errors: List[str] = field(default_factory=list)
    total: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors), "total": self.total}


@dataclass(frozen=True)
class SubmissionResult:
    """Structured ok/value/error result for the write boundary."""
    ok: bool
    value: Optional[Tuple[int, int, int, int]] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "value": list(self.value) if self.value is not None else None,
            "error": self.error,
        }


# =============================================================
# EPOCHS
# =============================================================


@dataclass(frozen=True)
class ProtocolTiming:
    """Protocol start and epoch length, in milliseconds."""
    protocol_start_ms: Optional[int] = None
    epoch_duration_ms: int = 0
    initialized: bool = False

    @classmethod
    def uninitialized(cls) -> "ProtocolTiming":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol_start_ms": self.protocol_start_ms,
            "epoch_duration_ms": self.epoch_duration_ms,
            "initialized": self.initialized,
        }


@dataclass(frozen=True)
class EpochFlags:
    """
    Chain-derived epoch flags.

    epoch_id=None means the flags describe the time-derived current epoch.
    """
    allocations_finalized: bool = False
    is_claimable: bool = False
    epoch_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allocations_finalized": self.allocations_finalized,
            "is_claimable": self.is_claimable,
            "epoch_id": self.epoch_id,
        }


@dataclass(frozen=True)
class EpochStatus:
    """Current epoch, always recomputed from time and never stored."""
    id: int
    window_start_ms: Optional[int]
    window_end_ms: Optional[int]
    progress_pct: float
    time_remaining: timedelta
    status: EpochState
    initialized: bool = True
    window_elapsed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "window_start_ms": self.window_start_ms,
            "window_end_ms": self.window_end_ms,
            "progress_pct": self.progress_pct,
            "time_remaining_ms": self.time_remaining // timedelta(milliseconds=1),
            "status": self.status.value,
            "initialized": self.initialized,
            "window_elapsed": self.window_elapsed,
        }


@dataclass(frozen=True)
class EpochRecord:
    """One row of the epoch history."""
    epoch_id: int
    week_number: int
    window_start_ms: int
    window_end_ms: int
    status: EpochRecordStatus
    total_revenue: int = 0
    pool_distribution: Mapping[str, int] = field(default_factory=dict)
    allocations_finalized: bool = False
    is_current: bool = False
    progress_pct: float = 0.0
    tx_id: Optional[str] = None
    admin: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "epoch_id": self.epoch_id,
            "week_number": self.week_number,
            "window_start_ms": self.window_start_ms,
            "window_end_ms": self.window_end_ms,
            "status": self.status.value,
            "total_revenue": str(self.total_revenue),
            "pool_distribution": {k: str(v) for k, v in sorted(self.pool_distribution.items())},
            "allocations_finalized": self.allocations_finalized,
            "is_current": self.is_current,
            "progress_pct": self.progress_pct,
            "tx_id": self.tx_id,
            "admin": self.admin,
        }


# =============================================================
# EMISSIONS
# =============================================================


@dataclass(frozen=True)
class EmissionAllocation:
    """Basis-point split of one week's emissions across reward contracts."""
    lp: int = 0
    single: int = 0
    victory_staking: int = 0
    dev: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "lp": self.lp,
            "single": self.single,
            "victory_staking": self.victory_staking,
            "dev": self.dev,
        }


@dataclass(frozen=True)
class EmissionWeek:
    """One week of the emission schedule. Rates are base units per second."""
    week: int
    phase: EmissionPhase
    rate_per_second: int
    allocation: EmissionAllocation
    week_total: int
    window_start_ms: int
    window_end_ms: int
    emitted: int
    is_active: bool
    is_completed: bool

    def split_rate(self) -> Dict[str, int]:
        """Per-second rate of each reward contract."""
        rate = self.rate_per_second
        return {
            name: rate * bp // 10_000
            for name, bp in self.allocation.to_dict().items()
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "week": self.week,
            "phase": self.phase.value,
            "rate_per_second": str(self.rate_per_second),
            "allocation": self.allocation.to_dict(),
            "split_rate_per_second": {k: str(v) for k, v in self.split_rate().items()},
            "week_total": str(self.week_total),
            "window_start_ms": self.window_start_ms,
            "window_end_ms": self.window_end_ms,
            "emitted": str(self.emitted),
            "is_active": self.is_active,
            "is_completed": self.is_completed,
        }


@dataclass(frozen=True)
class EmissionStatus:
    """Emission schedule position, always recomputed from time."""
    started: bool
    start_ms: Optional[int]
    week: int
    phase: EmissionPhase
    week_window_start_ms: Optional[int]
    week_window_end_ms: Optional[int]
    week_progress_pct: float
    time_remaining_in_week: timedelta
    total_time_remaining: timedelta
    rate_per_second: int
    allocation: EmissionAllocation
    emitted_so_far: int
    current_week_emitted: int
    remaining_in_current_week: int
    remaining_emissions: int
    total_schedule: int
    emission_progress_pct: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started": self.started,
            "start_ms": self.start_ms,
            "week": self.week,
            "phase": self.phase.value,
            "phase_name": self.phase.display_name,
            "week_window_start_ms": self.week_window_start_ms,
            "week_window_end_ms": self.week_window_end_ms,
            "week_progress_pct": self.week_progress_pct,
            "time_remaining_in_week_ms": self.time_remaining_in_week // timedelta(milliseconds=1),
            "total_time_remaining_ms": self.total_time_remaining // timedelta(milliseconds=1),
            "rate_per_second": str(self.rate_per_second),
            "allocation": self.allocation.to_dict(),
            "emitted_so_far": str(self.emitted_so_far),
            "current_week_emitted": str(self.current_week_emitted),
            "remaining_in_current_week": str(self.remaining_in_current_week),
            "remaining_emissions": str(self.remaining_emissions),
            "total_schedule": str(self.total_schedule),
            "emission_progress_pct": self.emission_progress_pct,
        }


# =============================================================
# VAULTS, DIAGNOSTICS, HEALTH
# =============================================================


@dataclass(frozen=True)
class VaultBalances:
    """Raw vault balances in base units, read directly from objects."""
    locked_tokens: int = 0
    victory_rewards: int = 0
    sui_rewards: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "locked_tokens": str(self.locked_tokens),
            "victory_rewards": str(self.victory_rewards),
            "sui_rewards": str(self.sui_rewards),
        }


@dataclass(frozen=True)
class Diagnostic:
    """A recorded, non-fatal problem."""
    stage: DiagnosticStage
    message: str
    event_type: Optional[str] = None
    tx_id: Optional[str] = None
    entity_key: Optional[str] = None
    context: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_error(
        cls,
        stage: DiagnosticStage,
        error: Exception,
        entity_key: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> "Diagnostic":
        if isinstance(error, ReconstructionError):
            return cls(
                stage=stage,
                message=error.message,
                event_type=error.event_type or event_type,
                tx_id=error.tx_id,
                entity_key=entity_key,
                context=error.to_dict(),
            )
        return cls(
            stage=stage,
            message=f"{error.__class__.__name__}: {error}",
            event_type=event_type,
            entity_key=entity_key,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "message": self.message,
            "event_type": self.event_type,
            "tx_id": self.tx_id,
            "entity_key": self.entity_key,
            "context": dict(self.context),
        }


@dataclass(frozen=True)
class ReplayResult:
    """Reducer output: one state per entity key plus what was skipped."""
    pools: Dict[str, PoolState]
    diagnostics: List[Diagnostic] = field(default_factory=list)


@dataclass(frozen=True)
class HealthIssue:
    code: str
    message: str
    recommendation: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "code": self.code,
            "message": self.message,
            "recommendation": self.recommendation,
        }


@dataclass(frozen=True)
class HealthReport:
    """Health diagnostic over a snapshot."""
    overall: HealthState
    issues: List[HealthIssue] = field(default_factory=list)
    notices: List[str] = field(default_factory=list)

    @property
    def recommendations(self) -> List[str]:
        return [issue.recommendation for issue in self.issues]

    @property
    def issue_codes(self) -> List[str]:
        return [issue.code for issue in self.issues]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall": self.overall.value,
            "issues": [issue.message for issue in self.issues],
            "issue_codes": self.issue_codes,
            "recommendations": self.recommendations,
            "notices": list(self.notices),
        }


# =============================================================
# READ MODEL
# =============================================================


@dataclass(frozen=True)
class AllocationView:
    """An allocation set together with its validation outcome."""
    allocation_set: Optional[AllocationSet]
    validation: Optional[ValidationResult]

    @property
    def available(self) -> bool:
        return self.allocation_set is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "available": self.available,
            "set": self.allocation_set.to_dict() if self.allocation_set else None,
            "validation": self.validation.to_dict() if self.validation else None,
        }


@dataclass(frozen=True)
class Snapshot:
    """
    One consistent read model for a dashboard refresh.

    Built fresh on every call; nothing is carried between refreshes.
    """
    generated_at_ms: int
    pools: List[PoolState]
    pool_summary: PoolSummary
    vault_balances: VaultBalances
    vault_balances_available: bool
    allocations: Dict[str, AllocationView]
    protocol_timing: ProtocolTiming
    epoch: EpochStatus
    health: HealthReport
    admin: Optional[str] = None
    paused: bool = False
    epoch_history: List[EpochRecord] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    pairs: List[PairRecord] = field(default_factory=list)
    pairs_available: bool = True
    emissions: Optional[EmissionStatus] = None

    def pool(self, entity_key: str) -> Optional[PoolState]:
        for pool in self.pools:
            if pool.entity_key == entity_key:
                return pool
        return None

    def pair(self, pair_address: str) -> Optional[PairRecord]:
        for pair in self.pairs:
            if pair.pair_address == pair_address:
                return pair
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at_ms": self.generated_at_ms,
            "admin": self.admin,
            "paused": self.paused,
            "pools": [pool.to_dict() for pool in self.pools],
            "pool_summary": self.pool_summary.to_dict(),
            "pairs": [pair.to_dict() for pair in self.pairs],
            "pairs_available": self.pairs_available,
            "emissions": self.emissions.to_dict() if self.emissions else None,
            "vault_balances": self.vault_balances.to_dict(),
            "vault_balances_available": self.vault_balances_available,
            "allocations": {
                name: view.to_dict() for name, view in sorted(self.allocations.items())
            },
            "protocol_timing": self.protocol_timing.to_dict(),
            "epoch": self.epoch.to_dict(),
            "epoch_history": [record.to_dict() for record in self.epoch_history],
            "health": self.health.to_dict(),
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }
