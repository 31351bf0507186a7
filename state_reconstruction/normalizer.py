"""
State Reconstruction - Event Normalizer.

============================================================
RESPONSIBILITY
============================================================
Converts raw ledger events into canonical NormalizedEvent records.

- One canonical schema per event, with a small table of accepted
  aliases per field (snake_case listed first, so it wins when a
  producer emits both spellings)
- Wrapped TypeName objects are unwrapped to flat strings
- Integers arrive as numbers, decimal strings or little-endian byte
  arrays and always come out as Python ints (no float round trip)
- Booleans arrive as bools, 0/1, strings or single-byte arrays

============================================================
DESIGN PRINCIPLES
============================================================
- normalize() raises NormalizationError for a malformed record
- normalize_batch() never raises; bad records become diagnostics
- Unrecognised TypeName shapes degrade to str(value) with a warning

============================================================
"""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from state_reconstruction.exceptions import NormalizationError
from state_reconstruction.models import Diagnostic, DiagnosticStage, EventKind, NormalizedEvent, RawEvent
from state_reconstruction.type_names import canonical_type_name


logger = logging.getLogger(__name__)


_MISSING = object()
_INT_PATTERN = re.compile(r"^[+-]?\d+$")
_HEX_PATTERN = re.compile(r"^0x[0-9a-fA-F]+$")


# =============================================================
# VALUE COERCION
# =============================================================


def _bytes_to_int(values: Sequence[Any]) -> int:
    if not all(isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in values):
        raise ValueError(f"not a byte array: {values!r}")
    return int.from_bytes(bytes(values), "little")


def coerce_int(value: Any) -> int:
    """
    Coerce an on-chain integer to a Python int.

    Accepts ints, integral floats, decimal or 0x-hex strings, little-endian
    byte arrays, and BCS return pairs such as [[1, 0, 0, 0], "u32"].
    Raises ValueError for anything else, including booleans.
    """
    if isinstance(value, bool):
        raise ValueError(f"boolean is not an integer: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        raise ValueError(f"non-integral number: {value!r}")
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return int(value)
        raise ValueError(f"non-integral number: {value!r}")
    if isinstance(value, str):
        text = value.strip().replace("_", "")
        if _INT_PATTERN.match(text):
            return int(text)
        if _HEX_PATTERN.match(text):
            return int(text, 16)
        raise ValueError(f"not an integer string: {value!r}")
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "little")
    if isinstance(value, (list, tuple)):
        if len(value) == 2 and isinstance(value[1], str) and isinstance(value[0], (list, tuple)):
            return _bytes_to_int(value[0])
        return _bytes_to_int(value)
    raise ValueError(f"unsupported integer representation: {type(value).__name__}")


def coerce_bool(value: Any) -> bool:
    """Coerce true/false, 1/0, "true"/"1" or a single-byte array to bool."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"integer is not a boolean: {value!r}")
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("true", "1"):
            return True
        if text in ("false", "0"):
            return False
        raise ValueError(f"not a boolean string: {value!r}")
    if isinstance(value, (bytes, bytearray)) and len(value) == 1:
        return coerce_bool(value[0])
    if isinstance(value, (list, tuple)):
        if len(value) == 2 and isinstance(value[1], str) and isinstance(value[0], (list, tuple)):
            return coerce_bool(list(value[0]))
        if len(value) == 1:
            return coerce_bool(value[0])
    raise ValueError(f"unsupported boolean representation: {value!r}")


def _find_type_name(value: Any, depth: int = 0) -> Optional[str]:
    if isinstance(value, str):
        return value
    if not isinstance(value, Mapping) or depth > 4:
        return None
    if "name" in value:
        found = _find_type_name(value["name"], depth + 1)
        if found is not None:
            return found
    if "fields" in value:
        return _find_type_name(value["fields"], depth + 1)
    return None


def unwrap_type_name(
    value: Any,
    on_fallback: Optional[Callable[[str], None]] = None,
) -> str:
    """
    Flatten a TypeName into its string form.

    Handles plain strings, {"name": ...} and {"fields": {"name": ...}}.
    Any other shape falls back to str(value) and is reported, never raised.
    """
    found = _find_type_name(value)
    if found is not None:
        return found

    fallback = str(value)
    message = f"Unexpected TypeName shape, using str(): {fallback[:200]}"
    logger.warning(message)
    if on_fallback is not None:
        on_fallback(message)
    return fallback


def resolve_field(payload: Mapping[str, Any], aliases: Sequence[str]) -> Tuple[Any, Optional[str]]:
    """
    First alias present in the payload with a non-null value.

    Returns (value, alias) or (_MISSING, None). The alias order is the
    tie-break when a producer emits both spellings.
    """
    for alias in aliases:
        if alias in payload and payload[alias] is not None:
            return payload[alias], alias
    return _MISSING, None


def is_missing(value: Any) -> bool:
    return value is _MISSING


# =============================================================
# SCHEMAS
# =============================================================


@dataclass(frozen=True)
class FieldSpec:
    """A canonical field and the payload keys it may arrive under."""
    name: str
    aliases: Tuple[str, ...]
    coerce: Callable[[Any], Any]


@dataclass(frozen=True)
class EventSchema:
    event_name: str
    kind: EventKind
    entity_aliases: Tuple[str, ...]
    fields: Tuple[FieldSpec, ...]


def int_field(name: str, *aliases: str) -> FieldSpec:
    return FieldSpec(name, aliases or (name,), coerce_int)


def bool_field(name: str, *aliases: str) -> FieldSpec:
    return FieldSpec(name, aliases or (name,), coerce_bool)


POOL_CREATED = EventSchema(
    event_name="PoolCreated",
    kind=EventKind.CREATED,
    entity_aliases=("pool_type", "poolType"),
    fields=(
        int_field("allocation_points", "allocation_points", "allocationPoints"),
        int_field("deposit_fee_bp", "deposit_fee", "depositFee", "deposit_fee_bp", "depositFeeBp"),
        int_field("withdrawal_fee_bp", "withdrawal_fee", "withdrawalFee", "withdrawal_fee_bp", "withdrawalFeeBp"),
        bool_field("is_native_pair", "is_native_pair", "isNativePair"),
        bool_field("is_lp_token", "is_lp_token", "isLpToken"),
    ),
)

POOL_CONFIG_UPDATED = EventSchema(
    event_name="PoolConfigUpdated",
    kind=EventKind.CONFIG_UPDATED,
    entity_aliases=("pool_type", "poolType"),
    fields=(
        int_field(
            "allocation_points",
            "new_allocation_points", "newAllocationPoints",
            "allocation_points", "allocationPoints",
        ),
        int_field(
            "deposit_fee_bp",
            "new_deposit_fee", "newDepositFee",
            "deposit_fee", "depositFee",
        ),
        int_field(
            "withdrawal_fee_bp",
            "new_withdrawal_fee", "newWithdrawalFee",
            "withdrawal_fee", "withdrawalFee",
        ),
        bool_field("active", "new_active", "newActive", "active", "is_active", "isActive"),
    ),
)

POOL_EVENT_SCHEMAS: Dict[str, EventSchema] = {
    POOL_CREATED.event_name: POOL_CREATED,
    POOL_CONFIG_UPDATED.event_name: POOL_CONFIG_UPDATED,
}


def extract_fields(
    payload: Any,
    specs: Iterable[FieldSpec],
    event_type: Optional[str] = None,
    tx_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Canonical field map for a payload.

    Only fields present in the payload appear in the result. A present
    field that cannot be coerced raises NormalizationError.
    """
    if not isinstance(payload, Mapping):
        raise NormalizationError(
            "Payload is not an object",
            event_type=event_type,
            tx_id=tx_id,
            raw_data=payload,
        )

    fields: Dict[str, Any] = {}
    for spec in specs:
        value, alias = resolve_field(payload, spec.aliases)
        if is_missing(value):
            continue
        try:
            fields[spec.name] = spec.coerce(value)
        except (ValueError, TypeError) as e:
            raise NormalizationError(
                f"Field '{alias}' has an invalid value",
                event_type=event_type,
                tx_id=tx_id,
                field_name=alias,
                raw_data=value,
                original_error=e,
            ) from e
    return fields


def event_timestamp(raw: RawEvent) -> int:
    """Ledger timestamp of a raw event in milliseconds."""
    if raw.timestamp_ms is None or raw.timestamp_ms == "":
        raise NormalizationError(
            "Missing timestampMs",
            event_type=raw.event_name,
            tx_id=raw.tx_id,
            field_name="timestampMs",
        )
    try:
        timestamp = coerce_int(raw.timestamp_ms)
    except (ValueError, TypeError) as e:
        raise NormalizationError(
            "Invalid timestampMs",
            event_type=raw.event_name,
            tx_id=raw.tx_id,
            field_name="timestampMs",
            raw_data=raw.timestamp_ms,
            original_error=e,
        ) from e
    if timestamp < 0:
        raise NormalizationError(
            "Negative timestampMs",
            event_type=raw.event_name,
            tx_id=raw.tx_id,
            field_name="timestampMs",
            raw_data=raw.timestamp_ms,
        )
    return timestamp


def require_tx_id(raw: RawEvent) -> str:
    if not isinstance(raw.tx_id, str) or not raw.tx_id.strip():
        raise NormalizationError(
            "Missing transaction id",
            event_type=raw.event_name,
            field_name="txId",
            raw_data=raw.tx_id,
        )
    return raw.tx_id.strip()


# =============================================================
# NORMALIZER
# =============================================================


class EventNormalizer:
    """
    Converts raw pool events to NormalizedEvent.

    Usage:
        normalizer = EventNormalizer()
        events, diagnostics = normalizer.normalize_batch(raw_events)
    """

    def __init__(self, schemas: Optional[Mapping[str, EventSchema]] = None) -> None:
        self._schemas: Dict[str, EventSchema] = dict(schemas or POOL_EVENT_SCHEMAS)

    @property
    def supported_events(self) -> List[str]:
        return sorted(self._schemas)

    def normalize(self, raw: RawEvent) -> NormalizedEvent:
        """Normalize one event. Raises NormalizationError if it is malformed."""
        return self._normalize(raw, None)

    def normalize_batch(
        self,
        raws: Iterable[RawEvent],
    ) -> Tuple[List[NormalizedEvent], List[Diagnostic]]:
        """Normalize many events, skipping malformed ones. Never raises."""
        events: List[NormalizedEvent] = []
        diagnostics: List[Diagnostic] = []

        for raw in raws:
            try:
                events.append(self._normalize(raw, diagnostics))
            except NormalizationError as e:
                logger.warning(f"Skipping malformed event: {e}")
                diagnostics.append(Diagnostic.from_error(DiagnosticStage.NORMALIZE, e))
            except Exception as e:
                error = NormalizationError(
                    f"Unexpected error: {e}",
                    event_type=getattr(raw, "event_name", None),
                    tx_id=getattr(raw, "tx_id", None),
                    original_error=e,
                )
                logger.warning(f"Skipping malformed event: {error}")
                diagnostics.append(Diagnostic.from_error(DiagnosticStage.NORMALIZE, error))

        logger.debug(f"Normalized {len(events)} events, skipped {len(diagnostics)}")
        return events, diagnostics

    def _normalize(
        self,
        raw: RawEvent,
        diagnostics: Optional[List[Diagnostic]],
    ) -> NormalizedEvent:
        event_name = raw.event_name
        schema = self._schemas.get(event_name)
        if schema is None:
            expected = ", ".join(self.supported_events)
            raise NormalizationError(
                f"Unsupported event type '{event_name}', expected one of: {expected}",
                event_type=event_name,
                tx_id=raw.tx_id,
            )

        tx_id = require_tx_id(raw)
        timestamp_ms = event_timestamp(raw)
        payload = raw.payload
        fields = extract_fields(payload, schema.fields, event_type=event_name, tx_id=tx_id)

        type_value, _ = resolve_field(payload, schema.entity_aliases)
        if is_missing(type_value):
            raise NormalizationError(
                "Missing pool type",
                event_type=event_name,
                tx_id=tx_id,
                field_name=schema.entity_aliases[0],
                raw_data=payload,
            )

        def record_fallback(message: str) -> None:
            if diagnostics is not None:
                diagnostics.append(Diagnostic(
                    stage=DiagnosticStage.NORMALIZE,
                    message=message,
                    event_type=event_name,
                    tx_id=tx_id,
                ))

        entity_key = canonical_type_name(unwrap_type_name(type_value, record_fallback))
        if not entity_key:
            raise NormalizationError(
                "Empty pool type",
                event_type=event_name,
                tx_id=tx_id,
                field_name=schema.entity_aliases[0],
            )

        return NormalizedEvent(
            kind=schema.kind,
            entity_key=entity_key,
            fields=fields,
            timestamp_ms=timestamp_ms,
            tx_id=tx_id,
            event_type=event_name,
        )
