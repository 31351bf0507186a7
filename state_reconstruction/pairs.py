"""
State Reconstruction - Pair Registry.

Rebuilds the DEX pair registry from factory::PairCreated events.
Pairs are never removed, so the registry is the set of distinct pair
addresses ordered by creation. The first creation seen for an address
wins; a later event for the same address is reported and ignored.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from state_reconstruction.exceptions import NormalizationError
from state_reconstruction.models import Diagnostic, DiagnosticStage, PairRecord, RawEvent
from state_reconstruction.normalizer import (
    event_timestamp,
    extract_fields,
    int_field,
    is_missing,
    require_tx_id,
    resolve_field,
    unwrap_type_name,
)
from state_reconstruction.type_names import (
    canonical_type_name,
    extract_token_name,
    is_native_pair,
    lp_display_name,
)


logger = logging.getLogger(__name__)


PAIR_CREATED_FIELDS = (
    int_field("pair_index", "pair_len", "pairLen", "pair_index", "pairIndex"),
)

TOKEN0_ALIASES = ("token0", "token_0", "token0_type", "token0Type")
TOKEN1_ALIASES = ("token1", "token_1", "token1_type", "token1Type")
PAIR_ADDRESS_ALIASES = ("pair", "pair_address", "pairAddress", "pair_id", "pairId")


def _token_type(raw: RawEvent, tx_id: str, aliases: Tuple[str, ...]) -> str:
    value, _ = resolve_field(raw.payload, aliases)
    if is_missing(value):
        raise NormalizationError(
            f"Missing {aliases[0]}",
            event_type=raw.event_name,
            tx_id=tx_id,
            field_name=aliases[0],
            raw_data=raw.payload,
        )
    type_name = canonical_type_name(unwrap_type_name(value))
    if not type_name:
        raise NormalizationError(
            f"Empty {aliases[0]}",
            event_type=raw.event_name,
            tx_id=tx_id,
            field_name=aliases[0],
        )
    return type_name


def _pair_address(raw: RawEvent, tx_id: str) -> str:
    value, _ = resolve_field(raw.payload, PAIR_ADDRESS_ALIASES)
    if isinstance(value, str) and value.strip():
        return value.strip().lower()
    raise NormalizationError(
        "Missing pair address",
        event_type=raw.event_name,
        tx_id=tx_id,
        field_name=PAIR_ADDRESS_ALIASES[0],
        raw_data=None if is_missing(value) else value,
    )


def parse_pair_created(raw: RawEvent) -> PairRecord:
    """One PairCreated event as a PairRecord. Raises NormalizationError."""
    tx_id = require_tx_id(raw)
    timestamp_ms = event_timestamp(raw)
    fields = extract_fields(raw.payload, PAIR_CREATED_FIELDS, event_type=raw.event_name, tx_id=tx_id)

    token0_type = _token_type(raw, tx_id, TOKEN0_ALIASES)
    token1_type = _token_type(raw, tx_id, TOKEN1_ALIASES)
    token0 = extract_token_name(token0_type)
    token1 = extract_token_name(token1_type)

    return PairRecord(
        pair_address=_pair_address(raw, tx_id),
        token0_type=token0_type,
        token1_type=token1_type,
        token0=token0,
        token1=token1,
        display_name=lp_display_name(token0, token1),
        is_native_pair=is_native_pair(token0_type) or is_native_pair(token1_type),
        created_tx_id=tx_id,
        created_timestamp_ms=timestamp_ms,
        pair_index=fields.get("pair_index"),
    )


def replay_pair_created(
    events: Iterable[RawEvent],
    diagnostics: Optional[List[Diagnostic]] = None,
) -> List[PairRecord]:
    """
    Pair registry from PairCreated events, oldest first.

    Malformed events are skipped with a diagnostic. Input order does not
    matter: records are sorted by (timestamp, tx id, address) before the
    first-creation-wins rule is applied.
    """
    parsed: List[PairRecord] = []
    for raw in events:
        try:
            parsed.append(parse_pair_created(raw))
        except NormalizationError as e:
            logger.warning(f"Skipping malformed PairCreated event: {e}")
            if diagnostics is not None:
                diagnostics.append(Diagnostic.from_error(DiagnosticStage.NORMALIZE, e))

    parsed.sort(key=lambda p: (p.created_timestamp_ms, p.created_tx_id, p.pair_address))

    registry: Dict[str, PairRecord] = {}
    for record in parsed:
        existing = registry.get(record.pair_address)
        if existing is None:
            registry[record.pair_address] = record
            continue
        if existing == record:
            continue
        logger.warning(
            f"Pair {record.pair_address} created again in {record.created_tx_id}, "
            f"keeping {existing.created_tx_id}"
        )
        if diagnostics is not None:
            diagnostics.append(Diagnostic(
                stage=DiagnosticStage.REDUCE,
                message="Duplicate pair creation ignored",
                event_type="PairCreated",
                tx_id=record.created_tx_id,
                entity_key=record.pair_address,
            ))

    logger.debug(f"Pair registry rebuilt: {len(registry)} pairs")
    return list(registry.values())
