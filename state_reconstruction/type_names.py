"""
Move type-name helpers.

Pool entity keys are fully-qualified Move type strings such as
"0xabc::victory_token::VICTORY_TOKEN" or
"0xabc::pair::LPCoin<0x2::sui::SUI, 0xabc::victory_token::VICTORY_TOKEN>".
"""

import logging
import re
from dataclasses import dataclass
from typing import Tuple

from state_reconstruction.models import PoolKind


logger = logging.getLogger(__name__)


NATIVE_TOKEN_NAME = "SUI"

_NATIVE_SUI_PATTERN = re.compile(r"(?<![\w:])(0x)?0*2::sui::SUI\b")
_LP_PATTERN = re.compile(r"::pair::LPCoin<\s*([^,]+?)\s*,\s*([^>]+?)\s*>")
# Package addresses open the string or a type argument, never follow "::"
_ADDRESS_PATTERN = re.compile(r"(?<![\w:])(0x)?([0-9a-fA-F]+)::")


@dataclass(frozen=True)
class PoolTypeInfo:
    kind: PoolKind
    display_name: str
    tokens: Tuple[str, ...]


def extract_token_name(type_string: str) -> str:
    """"0x2::sui::SUI" -> "SUI"; anything without three segments is returned as is."""
    if not type_string or not isinstance(type_string, str):
        return "UNKNOWN"
    parts = type_string.split("::")
    if len(parts) >= 3:
        return parts[2].split("<", 1)[0].strip()
    return type_string


def canonical_type_name(name: str) -> str:
    """
    Canonical spelling of a type name used as an entity key.

    Producers disagree on whitespace, on the 0x prefix and on zero padding
    of the package address ("0x2" vs the 64-digit TypeName rendering); all
    three are normalized so the same type groups under one key.
    """
    cleaned = re.sub(r"\s+", " ", name.strip())
    cleaned = re.sub(r"\s*,\s*", ", ", cleaned)
    cleaned = re.sub(r"<\s+", "<", cleaned)
    cleaned = re.sub(r"\s+>", ">", cleaned)
    return _ADDRESS_PATTERN.sub(_short_address, cleaned)


def _short_address(match: "re.Match") -> str:
    digits = match.group(2).lstrip("0") or "0"
    return f"0x{digits.lower()}::"


def infer_pool_kind(entity_key: str) -> PoolKind:
    """Kind heuristic for placeholder pools: LP coin types are LP pools."""
    return PoolKind.LP if "LPCoin<" in (entity_key or "") else PoolKind.SINGLE


def is_native_pair(entity_key: str) -> bool:
    if not entity_key or not isinstance(entity_key, str):
        return False
    return bool(_NATIVE_SUI_PATTERN.search(entity_key))


def lp_display_name(token0: str, token1: str) -> str:
    if token1 == NATIVE_TOKEN_NAME:
        return f"{token0}/{NATIVE_TOKEN_NAME} LP"
    if token0 == NATIVE_TOKEN_NAME:
        return f"{NATIVE_TOKEN_NAME}/{token1} LP"
    first, second = sorted([token0, token1])
    return f"{first}/{second} LP"


def parse_pool_type(entity_key: str) -> PoolTypeInfo:
    """Derive kind, display name and token names from a pool type string."""
    if not entity_key or not isinstance(entity_key, str):
        logger.warning(f"Invalid pool type provided: {entity_key!r}")
        return PoolTypeInfo(PoolKind.SINGLE, "UNKNOWN Single Asset", ("UNKNOWN",))

    match = _LP_PATTERN.search(entity_key)
    if match:
        token0 = extract_token_name(match.group(1))
        token1 = extract_token_name(match.group(2))
        return PoolTypeInfo(PoolKind.LP, lp_display_name(token0, token1), (token0, token1))

    if "LPCoin<" in entity_key:
        logger.warning(f"Unparseable LP type '{entity_key}', naming it as a single asset")

    token = extract_token_name(entity_key)
    return PoolTypeInfo(PoolKind.SINGLE, f"{token} Single Asset", (token,))


def pool_display_name(entity_key: str, kind: PoolKind) -> str:
    info = parse_pool_type(entity_key)
    if info.kind is kind:
        return info.display_name
    # Declared kind disagrees with the type string; keep the declared kind
    if kind is PoolKind.LP:
        return f"{'/'.join(info.tokens)} LP"
    return f"{info.tokens[0]} Single Asset"
