"""
State Reconstruction - Health Diagnostic.

============================================================
HEALTH RULES
============================================================
Issues (each with a recommendation):
- protocol_timing_uninitialized: no epoch schedule on chain
- pool_events_unavailable: pool events could not be fetched
- vault_balances_unavailable: vault reads failed, balances shown as 0
- victory_vault_empty / sui_vault_empty: reward vault holds nothing
- <name>_allocations_unavailable / <name>_allocations_invalid
- epoch_unfinalized: an epoch window elapsed without finalization

Overall status:
- HEALTHY: no issues
- WARNING: 1..warning_max_issues issues
- ERROR:   more than warning_max_issues issues

A SUI reward vault below the low threshold adds a notice, not an issue.

============================================================
"""

import logging
from typing import List, Mapping, Optional

from state_reconstruction.config import HealthConfig
from state_reconstruction.epochs import is_epoch_overdue
from state_reconstruction.models import (
    AllocationView,
    EpochFlags,
    EpochStatus,
    HealthIssue,
    HealthReport,
    HealthState,
    VaultBalances,
)
from state_reconstruction.vaults import SUI_DECIMALS, format_token_amount


logger = logging.getLogger(__name__)


def overall_state(issue_count: int, config: HealthConfig) -> HealthState:
    if issue_count == 0:
        return HealthState.HEALTHY
    if issue_count <= config.warning_max_issues:
        return HealthState.WARNING
    return HealthState.ERROR


def evaluate_health(
    vault_balances: VaultBalances,
    allocations: Mapping[str, AllocationView],
    epoch: EpochStatus,
    epoch_flags: Optional[EpochFlags] = None,
    vault_balances_available: bool = True,
    pool_events_available: bool = True,
    config: Optional[HealthConfig] = None,
) -> HealthReport:
    """Evaluate the dashboard health from already-derived snapshot sections."""
    config = config or HealthConfig()
    issues: List[HealthIssue] = []
    notices: List[str] = []

    if not epoch.initialized:
        issues.append(HealthIssue(
            code="protocol_timing_uninitialized",
            message="Protocol timing not initialized",
            recommendation="Initialize protocol timing on the token locker",
        ))

    if not pool_events_available:
        issues.append(HealthIssue(
            code="pool_events_unavailable",
            message="Pool events could not be loaded",
            recommendation="Check RPC connectivity and refresh",
        ))

    if not vault_balances_available:
        issues.append(HealthIssue(
            code="vault_balances_unavailable",
            message="Vault balances could not be read; showing zero",
            recommendation="Check the vault object ids and RPC connectivity",
        ))
    else:
        if vault_balances.victory_rewards == 0:
            issues.append(HealthIssue(
                code="victory_vault_empty",
                message="Victory reward vault is empty",
                recommendation="Deposit VICTORY tokens into the reward vault",
            ))
        if vault_balances.sui_rewards == 0:
            issues.append(HealthIssue(
                code="sui_vault_empty",
                message="SUI reward vault is empty",
                recommendation="Add weekly SUI revenue to the reward vault",
            ))
        elif vault_balances.sui_rewards < config.low_sui_reward_threshold:
            notices.append(
                f"SUI reward vault is low: "
                f"{format_token_amount(vault_balances.sui_rewards, SUI_DECIMALS)} SUI"
            )

    for name in sorted(allocations):
        view = allocations[name]
        if not view.available:
            issues.append(HealthIssue(
                code=f"{name}_allocations_unavailable",
                message=f"{name.upper()} allocations could not be read",
                recommendation="Check the token locker object and refresh",
            ))
        elif view.validation is not None and not view.validation.valid:
            issues.append(HealthIssue(
                code=f"{name}_allocations_invalid",
                message=f"{name.upper()} allocations invalid: {'; '.join(view.validation.errors)}",
                recommendation=f"Update {name.upper()} allocations to total 100%",
            ))

    if is_epoch_overdue(epoch, epoch_flags):
        overdue_id = epoch_flags.epoch_id if epoch_flags and epoch_flags.epoch_id else epoch.id
        issues.append(HealthIssue(
            code="epoch_unfinalized",
            message=f"Epoch {overdue_id} window has elapsed without finalization",
            recommendation="Add weekly revenue to finalize the epoch",
        ))

    overall = overall_state(len(issues), config)
    if overall.is_degraded():
        logger.warning(f"Dashboard health {overall.value}: {[i.code for i in issues]}")
    return HealthReport(overall=overall, issues=issues, notices=notices)
