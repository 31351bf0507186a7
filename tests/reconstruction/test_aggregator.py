"""
Tests for the Dashboard Aggregator.

============================================================
PURPOSE
============================================================
End-to-end snapshot construction from canned ledger data.

TEST PRINCIPLES:
- A failed read degrades its section, never the refresh
- build_snapshot is pure: same inputs, same output
- Serialized snapshots carry token amounts as strings

============================================================
"""

import json
from unittest.mock import AsyncMock

import pytest

from state_reconstruction.aggregator import (
    DashboardAggregator,
    build_snapshot,
    resolve_locker_state,
)
from state_reconstruction.config import EngineConfig
from state_reconstruction.exceptions import FetchError
from state_reconstruction.models import (
    AllocationSet,
    DiagnosticStage,
    EmissionPhase,
    EpochFlags,
    EpochState,
    EventKind,
    HealthState,
    NormalizedEvent,
    ObjectState,
    ProtocolTiming,
    RawEvent,
    VaultBalances,
)
from state_reconstruction.sources import InMemoryEventSource


PACKAGE = "0x1"
START_S = 1_700_000_000
START_MS = START_S * 1000
WEEK_S = 7 * 24 * 3600
WEEK_MS = WEEK_S * 1000
NOW_MS = START_MS + WEEK_MS // 2
VICTORY_KEY = "0xabc::victory_token::VICTORY_TOKEN"
SUI_PADDED = "0000000000000000000000000000000000000000000000000000000000000002::sui::SUI"


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def config():
    return EngineConfig(
        package_id=PACKAGE,
        token_locker_id="locker",
        locked_vault_id="locked",
        victory_reward_vault_id="victory",
        sui_reward_vault_id="sui",
    )


@pytest.fixture
def events():
    return {
        "PoolCreated": [
            RawEvent(
                f"{PACKAGE}::farm::PoolCreated",
                {
                    "pool_type": {"name": "abc::victory_token::VICTORY_TOKEN"},
                    "allocation_points": "1000",
                    "deposit_fee": "0",
                    "withdrawal_fee": "50",
                    "is_native_pair": False,
                    "is_lp_token": False,
                },
                str(START_MS + 100),
                "create-victory",
            ),
        ],
        "PoolConfigUpdated": [
            RawEvent(
                f"{PACKAGE}::farm::PoolConfigUpdated",
                {"pool_type": VICTORY_KEY, "new_allocation_points": "1500"},
                str(START_MS + 200),
                "update-victory",
            ),
        ],
        "ProtocolTimingInitialized": [
            RawEvent(
                f"{PACKAGE}::victory_token_locker::ProtocolTimingInitialized",
                {"protocol_start": str(START_S), "epoch_duration": str(WEEK_S)},
                str(START_MS),
                "timing",
            ),
        ],
        "PairCreated": [
            RawEvent(
                f"{PACKAGE}::factory::PairCreated",
                {
                    "token0": {"name": "abc::victory_token::VICTORY_TOKEN"},
                    "token1": {"name": SUI_PADDED},
                    "pair": "0xPAIR",
                    "pair_len": "1",
                },
                str(START_MS + 50),
                "pair",
            ),
        ],
        "EmissionScheduleStarted": [
            RawEvent(
                f"{PACKAGE}::global_emission_controller::EmissionScheduleStarted",
                {"start_timestamp": str(START_S)},
                str(START_MS),
                "emissions",
            ),
        ],
    }


@pytest.fixture
def locker():
    return ObjectState(
        "locker",
        f"{PACKAGE}::victory_token_locker::TokenLocker",
        {
            "admin": "0xadmin",
            "paused": False,
            "victory_week_allocation": "200",
            "victory_three_month_allocation": "800",
            "victory_year_allocation": "2500",
            "victory_three_year_allocation": "6500",
            "sui_week_allocation": "1000",
            "sui_three_month_allocation": "2000",
            "sui_year_allocation": "3000",
            "sui_three_year_allocation": "4000",
        },
    )


@pytest.fixture
def objects(locker):
    return {
        "locker": locker,
        "locked": ObjectState("locked", f"{PACKAGE}::victory_token_locker::LockedTokenVault", {"locked_balance": "5000000"}),
        "victory": ObjectState("victory", f"{PACKAGE}::victory_token_locker::VictoryRewardVault", {"victory_balance": "7000000"}),
        "sui": ObjectState("sui", f"{PACKAGE}::victory_token_locker::SUIRewardVault", {"sui_balance": "25000000000"}),
    }


def make_aggregator(config, events, objects, failures=None):
    source = InMemoryEventSource(events, objects, failures)
    return DashboardAggregator(source, config)


# ============================================================
# REFRESH TESTS
# ============================================================

class TestRefresh:
    """Tests for DashboardAggregator.refresh."""

    @pytest.mark.asyncio
    async def test_happy_path(self, config, events, objects):
        snapshot = await make_aggregator(config, events, objects).refresh(now_ms=NOW_MS)

        assert snapshot.generated_at_ms == NOW_MS
        assert snapshot.admin == "0xadmin"
        assert snapshot.paused is False

        pool = snapshot.pool(VICTORY_KEY)
        assert pool.allocation_points == 1500
        assert pool.withdrawal_fee_bp == 50
        assert pool.pending is False
        assert snapshot.pool_summary.total_pools == 1

        assert snapshot.epoch.id == 1
        assert snapshot.epoch.progress_pct == 50.0
        assert snapshot.epoch.status is EpochState.ACTIVE
        assert [r.epoch_id for r in snapshot.epoch_history] == [1]

        assert snapshot.vault_balances == VaultBalances(5_000_000, 7_000_000, 25_000_000_000)
        assert snapshot.allocations["victory"].allocation_set == AllocationSet(200, 800, 2500, 6500)
        assert snapshot.allocations["sui"].validation.valid is True

        pair = snapshot.pair("0xpair")
        assert pair.display_name == "VICTORY_TOKEN/SUI LP"
        assert pair.token1_type == "0x2::sui::SUI"
        assert pair.is_native_pair is True
        assert pair.pair_index == 1
        assert snapshot.pairs_available is True

        assert snapshot.emissions.started is True
        assert snapshot.emissions.week == 1
        assert snapshot.emissions.phase is EmissionPhase.BOOTSTRAP
        assert snapshot.emissions.week_progress_pct == 50.0
        assert snapshot.emissions.emitted_so_far == 6_600_000 * (WEEK_S // 2)

        assert snapshot.health.overall is HealthState.HEALTHY
        assert snapshot.diagnostics == []

    @pytest.mark.asyncio
    async def test_fetches_everything_once(self, config, events, objects):
        source = InMemoryEventSource(events, objects)
        source.fetch_events = AsyncMock(side_effect=source.fetch_events)
        source.fetch_object = AsyncMock(side_effect=source.fetch_object)

        await DashboardAggregator(source, config).refresh(now_ms=NOW_MS)

        assert source.fetch_events.await_count == 9
        assert source.fetch_object.await_count == 4
        requested = {call.args[0] for call in source.fetch_events.await_args_list}
        assert f"{PACKAGE}::farm::PoolCreated" in requested
        assert f"{PACKAGE}::victory_token_locker::WeeklyRevenueAdded" in requested

    @pytest.mark.asyncio
    async def test_vault_failure_degrades_vault_section_only(self, config, events, objects):
        aggregator = make_aggregator(config, events, objects, failures={"sui": FetchError("node down")})

        snapshot = await aggregator.refresh(now_ms=NOW_MS)

        assert snapshot.vault_balances_available is False
        assert snapshot.vault_balances == VaultBalances()
        assert snapshot.health.issue_codes == ["vault_balances_unavailable"]
        assert snapshot.pool(VICTORY_KEY).allocation_points == 1500
        assert snapshot.epoch.id == 1

        assert len(snapshot.diagnostics) == 1
        diagnostic = snapshot.diagnostics[0]
        assert diagnostic.stage is DiagnosticStage.FETCH
        assert diagnostic.entity_key == "sui"
        assert diagnostic.message == "node down"

    @pytest.mark.asyncio
    async def test_malformed_vault_is_unavailable(self, config, events, objects):
        objects["victory"] = ObjectState("victory", "0x1::victory_token_locker::VictoryRewardVault", {"id": "x"})

        snapshot = await make_aggregator(config, events, objects).refresh(now_ms=NOW_MS)

        assert snapshot.vault_balances_available is False
        assert snapshot.diagnostics[0].stage is DiagnosticStage.NORMALIZE

    @pytest.mark.asyncio
    async def test_pool_event_failure(self, config, events, objects):
        aggregator = make_aggregator(config, events, objects, failures={"PoolCreated": FetchError("timeout")})

        snapshot = await aggregator.refresh(now_ms=NOW_MS)

        assert "pool_events_unavailable" in snapshot.health.issue_codes
        assert snapshot.pool(VICTORY_KEY).pending is True
        assert snapshot.diagnostics[0].event_type == f"{PACKAGE}::farm::PoolCreated"

    @pytest.mark.asyncio
    async def test_pair_event_failure(self, config, events, objects):
        aggregator = make_aggregator(config, events, objects, failures={"PairCreated": FetchError("timeout")})

        snapshot = await aggregator.refresh(now_ms=NOW_MS)

        assert snapshot.pairs == []
        assert snapshot.pairs_available is False
        assert snapshot.pool(VICTORY_KEY).allocation_points == 1500
        assert snapshot.diagnostics[0].event_type == f"{PACKAGE}::factory::PairCreated"

    @pytest.mark.asyncio
    async def test_emissions_not_started(self, config, events, objects):
        del events["EmissionScheduleStarted"]

        snapshot = await make_aggregator(config, events, objects).refresh(now_ms=NOW_MS)

        assert snapshot.emissions.started is False
        assert snapshot.emissions.phase is EmissionPhase.NOT_STARTED
        assert snapshot.emissions.remaining_emissions == snapshot.emissions.total_schedule
        assert snapshot.health.overall is HealthState.HEALTHY

    @pytest.mark.asyncio
    async def test_locker_failure_uses_allocation_events(self, config, events, objects):
        events["VictoryAllocationsUpdated"] = [
            RawEvent(
                "VictoryAllocationsUpdated",
                {"week_allocation": 2500, "three_month_allocation": 2500, "year_allocation": 2500, "three_year_allocation": 2500},
                str(START_MS),
                "alloc",
            ),
        ]
        aggregator = make_aggregator(config, events, objects, failures={"locker": FetchError("gone")})

        snapshot = await aggregator.refresh(now_ms=NOW_MS)

        assert snapshot.admin is None
        assert snapshot.allocations["victory"].allocation_set == AllocationSet(2500, 2500, 2500, 2500)
        assert snapshot.allocations["sui"].available is False
        assert snapshot.health.issue_codes == ["sui_allocations_unavailable"]
        assert snapshot.epoch.id == 1

    @pytest.mark.asyncio
    async def test_timing_falls_back_to_locker(self, config, events, objects, locker):
        del events["ProtocolTimingInitialized"]
        objects["locker"] = ObjectState(
            locker.object_id,
            locker.type_tag,
            dict(locker.fields, protocol_start=str(START_S), epoch_duration=str(WEEK_S)),
        )

        snapshot = await make_aggregator(config, events, objects).refresh(now_ms=NOW_MS + WEEK_MS)

        assert snapshot.protocol_timing == ProtocolTiming(START_MS, WEEK_MS, True)
        assert snapshot.epoch.id == 2

    @pytest.mark.asyncio
    async def test_everything_failing_still_returns_snapshot(self, config):
        snapshot = await DashboardAggregator(InMemoryEventSource(), config).refresh(now_ms=NOW_MS)

        assert snapshot.pools == []
        assert snapshot.epoch.initialized is False
        assert snapshot.health.overall is HealthState.ERROR
        assert all(d.stage is DiagnosticStage.FETCH for d in snapshot.diagnostics)
        assert len(snapshot.diagnostics) == 4

    @pytest.mark.asyncio
    async def test_repeated_refresh_is_stable(self, config, events, objects):
        aggregator = make_aggregator(config, events, objects)

        first = await aggregator.refresh(now_ms=NOW_MS)
        second = await aggregator.refresh(now_ms=NOW_MS)

        assert first.to_dict() == second.to_dict()
        assert first is not second


# ============================================================
# PURE COMPOSITION TESTS
# ============================================================

class TestBuildSnapshot:
    """Tests for build_snapshot and resolve_locker_state."""

    def test_missing_vaults_and_serialization(self):
        normalized = NormalizedEvent(EventKind.CREATED, VICTORY_KEY, {"allocation_points": 10}, 1, "tx")

        snapshot = build_snapshot(
            pool_events=[normalized],
            locker_state={"protocol_start": START_S, "epoch_duration": WEEK_S},
            vault_balances=None,
            allocation_sets={"victory": AllocationSet(200, 800, 2500, 6500), "sui": None},
            epoch_flags=EpochFlags(),
            now_ms=NOW_MS,
        )

        data = json.loads(json.dumps(snapshot.to_dict()))
        assert data["vault_balances"] == {"locked_tokens": "0", "victory_rewards": "0", "sui_rewards": "0"}
        assert data["vault_balances_available"] is False
        assert data["allocations"]["sui"]["available"] is False
        assert data["allocations"]["victory"]["set"]["total"] == 10000
        assert data["epoch"]["id"] == 1
        assert data["pools"][0]["allocation_points"] == 10
        assert set(snapshot.health.issue_codes) == {"vault_balances_unavailable", "sui_allocations_unavailable"}

    def test_same_inputs_same_output(self):
        kwargs = dict(
            pool_events=[],
            locker_state=None,
            vault_balances=VaultBalances(1, 1, 10 ** 10),
            allocation_sets={},
            epoch_flags=None,
            now_ms=NOW_MS,
            protocol_timing=ProtocolTiming(START_MS, WEEK_MS, True),
        )

        assert build_snapshot(**kwargs) == build_snapshot(**kwargs)

    def test_millisecond_locker_fields(self):
        state = resolve_locker_state({"protocol_start_ms": START_MS, "epoch_duration_ms": WEEK_MS, "is_paused": "true"})

        assert state.timing == ProtocolTiming(START_MS, WEEK_MS, True)
        assert state.paused is True

    def test_unset_locker_timing(self):
        state = resolve_locker_state(ObjectState("locker", fields={"protocol_start": "0", "epoch_duration": "604800"}))

        assert state.timing.initialized is False

    def test_invalid_locker_fields_recorded(self):
        diagnostics = []

        state = resolve_locker_state({"admin": "0xadmin", "protocol_start": "later"}, diagnostics=diagnostics)

        assert state.admin == "0xadmin"
        assert state.timing.initialized is False
        assert len(diagnostics) == 1

    def test_pairs_and_emissions_serialize(self):
        pair_event = RawEvent(
            f"{PACKAGE}::factory::PairCreated",
            {"token0": "0x2::sui::SUI", "token1": VICTORY_KEY, "pair": "0xp1"},
            str(START_MS),
            "pair-tx",
        )

        snapshot = build_snapshot(
            pool_events=[],
            locker_state=None,
            vault_balances=VaultBalances(),
            allocation_sets={},
            epoch_flags=None,
            now_ms=START_MS + WEEK_MS,
            pair_events=[pair_event],
            emission_start_ms=START_MS,
        )

        data = json.loads(json.dumps(snapshot.to_dict()))
        assert data["pairs"][0]["display_name"] == "SUI/VICTORY_TOKEN LP"
        assert data["pairs_available"] is True
        assert data["emissions"]["week"] == 2
        assert data["emissions"]["phase_name"] == "Bootstrap Phase"
        assert data["emissions"]["emitted_so_far"] == str(6_600_000 * WEEK_S)
        assert data["emissions"]["time_remaining_in_week_ms"] == WEEK_MS
