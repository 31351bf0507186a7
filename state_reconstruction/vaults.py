"""
Vault balance reads.

Balances are not append-only deltas, so they are read straight from the
current vault objects instead of being reconstructed from events.
"""

import logging
from typing import Any, Mapping, Tuple

from state_reconstruction.exceptions import NormalizationError
from state_reconstruction.models import ObjectState, VaultBalances
from state_reconstruction.normalizer import coerce_int


logger = logging.getLogger(__name__)


SUI_DECIMALS = 9
VICTORY_DECIMALS = 6

VAULT_BALANCE_FIELDS = {
    "RewardVault": ("victory_balance",),
    "VictoryRewardVault": ("victory_balance",),
    "LockedTokenVault": ("locked_balance",),
    "SUIRewardVault": ("sui_balance",),
}

FALLBACK_BALANCE_FIELDS: Tuple[str, ...] = (
    "victory_balance",
    "locked_balance",
    "sui_balance",
    "balance",
)


def _struct_name(type_tag: str) -> str:
    return (type_tag or "").split("<", 1)[0].rsplit("::", 1)[-1].strip()


def _balance_value(value: Any) -> int:
    # Balance<T> arrives either flat or as {"fields": {"value": ...}}
    for _ in range(4):
        if not isinstance(value, Mapping):
            break
        if "fields" in value:
            value = value["fields"]
        elif "value" in value:
            value = value["value"]
        else:
            raise ValueError(f"no balance value in {value!r}")
    return coerce_int(value)


def extract_vault_balance(vault: ObjectState) -> int:
    """Raw balance of a vault object in base units."""
    struct = _struct_name(vault.type_tag)
    candidates = VAULT_BALANCE_FIELDS.get(struct, FALLBACK_BALANCE_FIELDS)

    for name in candidates:
        if vault.fields.get(name) is None:
            continue
        try:
            return _balance_value(vault.fields[name])
        except (ValueError, TypeError) as e:
            raise NormalizationError(
                f"Invalid balance in vault {vault.object_id}",
                event_type=struct or None,
                field_name=name,
                raw_data=vault.fields[name],
                original_error=e,
            ) from e

    raise NormalizationError(
        f"Vault {vault.object_id} has no balance field",
        event_type=struct or None,
        context={"expected": list(candidates), "fields": sorted(vault.fields)},
    )


def read_vault_balances(
    locked_vault: ObjectState,
    victory_vault: ObjectState,
    sui_vault: ObjectState,
) -> VaultBalances:
    balances = VaultBalances(
        locked_tokens=extract_vault_balance(locked_vault),
        victory_rewards=extract_vault_balance(victory_vault),
        sui_rewards=extract_vault_balance(sui_vault),
    )
    logger.debug(f"Vault balances: {balances.to_dict()}")
    return balances


def format_token_amount(amount: int, decimals: int = SUI_DECIMALS) -> str:
    """
    Exact decimal rendering of a base-unit amount.

    format_token_amount(1_234_500_000_000, 9) == "1,234.5"
    """
    sign = "-" if amount < 0 else ""
    whole, fraction = divmod(abs(amount), 10 ** decimals)
    text = f"{sign}{whole:,}"
    if decimals > 0 and fraction:
        text += "." + str(fraction).rjust(decimals, "0").rstrip("0")
    return text
