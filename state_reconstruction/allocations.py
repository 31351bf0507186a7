"""
State Reconstruction - Allocation Validation.

Reward allocations split 10000 basis points across four lock periods.
Validation returns a structured result and never raises, so editors
can validate half-typed values on every keystroke. Only the
transaction-facing require_valid() raises.
"""

import logging
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

from state_reconstruction.exceptions import AllocationValidationError, NormalizationError
from state_reconstruction.models import (
    AllocationSet,
    Diagnostic,
    DiagnosticStage,
    RawEvent,
    SubmissionResult,
    ValidationResult,
)
from state_reconstruction.normalizer import (
    coerce_int,
    event_timestamp,
    extract_fields,
    int_field,
    is_missing,
    require_tx_id,
    resolve_field,
)


logger = logging.getLogger(__name__)


TOTAL_BP = 10_000


class LockPeriod(str, Enum):
    """Lock periods, in the order allocations are submitted on chain."""
    WEEK = "week"
    THREE_MONTH = "three_month"
    YEAR = "year"
    THREE_YEAR = "three_year"

    @property
    def days(self) -> int:
        return _LOCK_DAYS[self]

    @property
    def label(self) -> str:
        return _LOCK_LABELS[self]

    @property
    def camel_name(self) -> str:
        head, *rest = self.value.split("_")
        return head + "".join(part.capitalize() for part in rest)


_LOCK_DAYS = {
    LockPeriod.WEEK: 7,
    LockPeriod.THREE_MONTH: 90,
    LockPeriod.YEAR: 365,
    LockPeriod.THREE_YEAR: 1095,
}

_LOCK_LABELS = {
    LockPeriod.WEEK: "Week",
    LockPeriod.THREE_MONTH: "Three-month",
    LockPeriod.YEAR: "Year",
    LockPeriod.THREE_YEAR: "Three-year",
}


ALLOCATION_EVENT_FIELDS = tuple(
    int_field(
        period.value,
        f"{period.value}_allocation",
        f"{period.camel_name}Allocation",
    )
    for period in LockPeriod
)


def bp_to_percentage(bp: int) -> str:
    """2500 -> "25.00%"."""
    return f"{Decimal(bp) / 100:.2f}%"


def _as_allocation_set(value: Union[AllocationSet, Mapping[str, Any]]) -> AllocationSet:
    if isinstance(value, AllocationSet):
        return value
    return AllocationSet(**{p.value: value.get(p.value) for p in LockPeriod})


def validate_allocations(allocation_set: Union[AllocationSet, Mapping[str, Any]]) -> ValidationResult:
    """
    Validate one allocation set.

    Each value must be an integer in [0, 10000] and the four must total
    exactly 10000. The input is never modified.
    """
    allocation_set = _as_allocation_set(allocation_set)
    errors: List[str] = []

    for period in LockPeriod:
        value = getattr(allocation_set, period.value)
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{period.label} allocation must be a whole number of basis points, got {value!r}")
        elif value < 0 or value > TOTAL_BP:
            errors.append(f"{period.label} allocation must be between 0 and {TOTAL_BP} bp, got {value}")

    total = allocation_set.total()
    if total is not None and total != TOTAL_BP:
        errors.append(
            f"Allocations must total {TOTAL_BP} bp ({bp_to_percentage(TOTAL_BP)}), "
            f"got {total} bp ({bp_to_percentage(total)})"
        )

    return ValidationResult(valid=not errors, errors=errors, total=total)


def prepare_submission(allocation_set: Union[AllocationSet, Mapping[str, Any]]) -> SubmissionResult:
    """Ordered (week, three_month, year, three_year) values, or the reason they are refused."""
    allocation_set = _as_allocation_set(allocation_set)
    result = validate_allocations(allocation_set)
    if not result.valid:
        return SubmissionResult(ok=False, error="; ".join(result.errors))
    return SubmissionResult(ok=True, value=allocation_set.as_tuple())


def require_valid(allocation_set: Union[AllocationSet, Mapping[str, Any]]) -> Tuple[int, int, int, int]:
    """Like prepare_submission() but raises AllocationValidationError."""
    allocation_set = _as_allocation_set(allocation_set)
    result = validate_allocations(allocation_set)
    if not result.valid:
        raise AllocationValidationError(
            "Refusing to submit an invalid allocation set",
            errors=result.errors,
            context={"allocations": allocation_set.to_dict()},
        )
    return allocation_set.as_tuple()


class AllocationValidator:
    """
    Validator bound to one named allocation set ("victory", "sui").

    Usage:
        validator = AllocationValidator("victory")
        result = validator.validate(AllocationSet(200, 800, 2500, 6500))
    """

    def __init__(self, name: str = "allocations") -> None:
        self.name = name

    def validate(self, allocation_set: Union[AllocationSet, Mapping[str, Any]]) -> ValidationResult:
        result = validate_allocations(allocation_set)
        if not result.valid:
            logger.debug(f"{self.name} allocations invalid: {result.errors}")
        return result

    def prepare_submission(self, allocation_set: Union[AllocationSet, Mapping[str, Any]]) -> SubmissionResult:
        return prepare_submission(allocation_set)


# =============================================================
# READING ALLOCATIONS FROM THE LEDGER
# =============================================================


def allocation_set_from_fields(
    fields: Mapping[str, Any],
    prefix: str,
    default: AllocationSet,
) -> AllocationSet:
    """
    Read "<prefix>_week_allocation" and friends from a token locker object.

    Missing fields fall back to the default with a warning. A present
    field that is not an integer raises NormalizationError.
    """
    values = {}
    for period in LockPeriod:
        snake = f"{prefix}_{period.value}_allocation"
        camel = f"{prefix}{period.camel_name[0].upper()}{period.camel_name[1:]}Allocation"
        value, alias = resolve_field(fields, (snake, camel))
        if is_missing(value):
            logger.warning(f"Token locker has no {snake}, using default {getattr(default, period.value)}")
            values[period.value] = getattr(default, period.value)
            continue
        try:
            values[period.value] = coerce_int(value)
        except (ValueError, TypeError) as e:
            raise NormalizationError(
                f"Invalid {prefix} allocation value",
                field_name=alias,
                raw_data=value,
                original_error=e,
            ) from e
    return AllocationSet(**values)


def replay_allocation_events(
    events: Iterable[RawEvent],
    diagnostics: Optional[List[Diagnostic]] = None,
) -> Optional[AllocationSet]:
    """Allocation set from the latest complete *AllocationsUpdated event, if any."""
    latest: Optional[Tuple[Tuple[int, str], AllocationSet]] = None

    for raw in events:
        try:
            tx_id = require_tx_id(raw)
            order = (event_timestamp(raw), tx_id)
            fields = extract_fields(raw.payload, ALLOCATION_EVENT_FIELDS, event_type=raw.event_name, tx_id=tx_id)
        except NormalizationError as e:
            logger.warning(f"Skipping malformed allocation event: {e}")
            if diagnostics is not None:
                diagnostics.append(Diagnostic.from_error(DiagnosticStage.NORMALIZE, e))
            continue

        if len(fields) != len(LockPeriod):
            logger.warning(f"Allocation event {tx_id} is missing lock periods, skipping")
            continue
        if latest is None or order > latest[0]:
            latest = (order, AllocationSet(**fields))

    return latest[1] if latest else None
