"""
Tests for Event Sources.

============================================================
PURPOSE
============================================================
In-memory fixtures and the Sui JSON-RPC transport.

TEST PRINCIPLES:
- No network: transport calls are mocked at _call or the session
- 4xx responses and JSON-RPC errors are never retried
- Injected sessions belong to the caller

============================================================
"""

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from state_reconstruction.config import EngineConfig
from state_reconstruction.exceptions import FetchError, RpcResponseError
from state_reconstruction.models import ObjectState, RawEvent
from state_reconstruction.sources import InMemoryEventSource, SuiRpcEventSource


EVENT_TYPE = "0x1::farm::PoolCreated"


def rpc_row(tx, ts="1700000000000"):
    return {
        "id": {"txDigest": tx, "eventSeq": "0"},
        "type": EVENT_TYPE,
        "parsedJson": {"pool_type": {"name": "0x2::sui::SUI"}},
        "timestampMs": ts,
    }


def page(rows, cursor=None):
    return {"data": rows, "nextCursor": cursor, "hasNextPage": cursor is not None}


def mock_session(status=200, json_body=None, text=""):
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=json_body)
    response.text = AsyncMock(return_value=text)

    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    session.post.return_value.__aenter__.return_value = response
    session.post.return_value.__aexit__.return_value = False
    return session


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def config():
    return EngineConfig(event_page_limit=2, max_events_per_type=5, max_retries=2)


@pytest.fixture
def source(config):
    return SuiRpcEventSource(config)


@pytest.fixture
def no_sleep():
    with patch("state_reconstruction.sources.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


# ============================================================
# IN-MEMORY SOURCE TESTS
# ============================================================

class TestInMemoryEventSource:
    """Tests for InMemoryEventSource."""

    @pytest.mark.asyncio
    async def test_lookup_by_full_and_short_name(self):
        event = RawEvent(EVENT_TYPE, {}, "1", "tx")
        source = InMemoryEventSource({"PoolCreated": [event]})

        assert await source.fetch_events(EVENT_TYPE) == [event]
        assert await source.fetch_events("0x9::farm::PoolConfigUpdated") == []

    @pytest.mark.asyncio
    async def test_full_name_preferred(self):
        full = RawEvent(EVENT_TYPE, {}, "1", "full")
        short = RawEvent(EVENT_TYPE, {}, "1", "short")
        source = InMemoryEventSource({EVENT_TYPE: [full], "PoolCreated": [short]})

        assert await source.fetch_events(EVENT_TYPE) == [full]

    @pytest.mark.asyncio
    async def test_configured_failures(self):
        source = InMemoryEventSource(failures={"PoolCreated": FetchError("down"), "0xvault": FetchError("gone")})

        with pytest.raises(FetchError, match="down"):
            await source.fetch_events(EVENT_TYPE)
        with pytest.raises(FetchError, match="gone"):
            await source.fetch_object("0xvault")

    @pytest.mark.asyncio
    async def test_missing_object(self):
        async with InMemoryEventSource(objects={"0xa": ObjectState("0xa")}) as source:
            assert (await source.fetch_object("0xa")).object_id == "0xa"
            with pytest.raises(FetchError, match="not found"):
                await source.fetch_object("0xb")


# ============================================================
# SUI RPC SOURCE TESTS
# ============================================================

class TestSuiRpcFetchEvents:
    """Tests for suix_queryEvents pagination."""

    @pytest.mark.asyncio
    async def test_follows_cursor(self, source):
        cursor = {"txDigest": "t2", "eventSeq": "0"}
        call = AsyncMock(side_effect=[
            page([rpc_row("t1"), rpc_row("t2")], cursor),
            page([rpc_row("t3")]),
        ])

        with patch.object(source, "_call", call):
            events = await source.fetch_events(EVENT_TYPE)

        assert [e.tx_id for e in events] == ["t1", "t2", "t3"]
        assert events[0].type_tag == EVENT_TYPE
        assert events[0].timestamp_ms == "1700000000000"
        assert events[0].payload == {"pool_type": {"name": "0x2::sui::SUI"}}

        first_params = call.await_args_list[0].args[1]
        second_params = call.await_args_list[1].args[1]
        assert first_params == [{"MoveEventType": EVENT_TYPE}, None, 2, True]
        assert second_params[1] == cursor

    @pytest.mark.asyncio
    async def test_capped_at_max_events(self, source):
        call = AsyncMock(side_effect=[
            page([rpc_row("t1"), rpc_row("t2")], {"c": 1}),
            page([rpc_row("t3"), rpc_row("t4")], {"c": 2}),
            page([rpc_row("t5")], {"c": 3}),
        ])

        with patch.object(source, "_call", call):
            events = await source.fetch_events(EVENT_TYPE)

        assert len(events) == 5
        assert call.await_count == 3
        assert call.await_args_list[2].args[1][2] == 1

    @pytest.mark.asyncio
    async def test_empty_page_stops(self, source):
        call = AsyncMock(return_value=page([], {"c": 1}))

        with patch.object(source, "_call", call):
            assert await source.fetch_events(EVENT_TYPE) == []

        assert call.await_count == 1


class TestSuiRpcRetry:
    """Tests for _call_with_retry."""

    @pytest.mark.asyncio
    async def test_retries_server_errors(self, source, no_sleep):
        call = AsyncMock(side_effect=[FetchError("HTTP 503", status_code=503), page([rpc_row("t1")])])

        with patch.object(source, "_call", call):
            events = await source.fetch_events(EVENT_TYPE)

        assert len(events) == 1
        assert call.await_count == 2
        no_sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    async def test_client_errors_not_retried(self, source, no_sleep):
        call = AsyncMock(side_effect=FetchError("HTTP 404", status_code=404))

        with patch.object(source, "_call", call):
            with pytest.raises(FetchError) as exc_info:
                await source.fetch_events(EVENT_TYPE)

        assert exc_info.value.status_code == 404
        assert call.await_count == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rpc_errors_not_retried(self, source, no_sleep):
        call = AsyncMock(side_effect=RpcResponseError("RPC error: bad params", method="suix_queryEvents", rpc_code=-32602))

        with patch.object(source, "_call", call):
            with pytest.raises(RpcResponseError):
                await source.fetch_events(EVENT_TYPE)

        assert call.await_count == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, source, no_sleep):
        call = AsyncMock(side_effect=FetchError("Connection error", method="suix_queryEvents"))

        with patch.object(source, "_call", call):
            with pytest.raises(FetchError, match="failed after 2 attempts") as exc_info:
                await source.fetch_events(EVENT_TYPE)

        assert call.await_count == 2
        assert no_sleep.await_count == 1
        assert isinstance(exc_info.value.original_error, FetchError)


class TestSuiRpcFetchObject:
    """Tests for sui_getObject."""

    @pytest.mark.asyncio
    async def test_object_content(self, source):
        result = {
            "data": {
                "objectId": "0xvault",
                "type": "0x1::victory_token_locker::SUIRewardVault",
                "content": {
                    "dataType": "moveObject",
                    "type": "0x1::victory_token_locker::SUIRewardVault",
                    "fields": {"sui_balance": "5"},
                },
            }
        }

        with patch.object(source, "_call", AsyncMock(return_value=result)) as call:
            obj = await source.fetch_object("0xvault")

        assert obj == ObjectState("0xvault", "0x1::victory_token_locker::SUIRewardVault", {"sui_balance": "5"})
        assert call.await_args.args == ("sui_getObject", ["0xvault", {"showContent": True, "showType": True}])

    @pytest.mark.asyncio
    async def test_missing_object(self, source):
        with patch.object(source, "_call", AsyncMock(return_value={"error": {"code": "notExists"}})):
            with pytest.raises(FetchError, match="not found"):
                await source.fetch_object("0xmissing")


class TestSuiRpcTransport:
    """Tests for _call against a mocked aiohttp session."""

    @pytest.mark.asyncio
    async def test_posts_json_rpc(self, config):
        session = mock_session(json_body={"jsonrpc": "2.0", "id": 1, "result": {"ok": True}})
        source = SuiRpcEventSource(config, session=session)

        result = await source._call("sui_getObject", ["0x1"])

        assert result == {"ok": True}
        url = session.post.call_args.args[0]
        body = session.post.call_args.kwargs["json"]
        assert url == config.rpc_url
        assert body == {"jsonrpc": "2.0", "id": 1, "method": "sui_getObject", "params": ["0x1"]}

    @pytest.mark.asyncio
    async def test_http_error_status(self, config):
        source = SuiRpcEventSource(config, session=mock_session(status=502, text="bad gateway"))

        with pytest.raises(FetchError) as exc_info:
            await source._call("sui_getObject", ["0x1"])

        assert exc_info.value.status_code == 502
        assert exc_info.value.context == {"response_body": "bad gateway"}

    @pytest.mark.asyncio
    async def test_rpc_error_object(self, config):
        body = {"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "Invalid params"}}
        source = SuiRpcEventSource(config, session=mock_session(json_body=body))

        with pytest.raises(RpcResponseError) as exc_info:
            await source._call("suix_queryEvents", [])

        assert exc_info.value.rpc_code == -32602
        assert "Invalid params" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_missing_result(self, config):
        source = SuiRpcEventSource(config, session=mock_session(json_body={"jsonrpc": "2.0", "id": 1}))

        with pytest.raises(FetchError, match="Malformed RPC response"):
            await source._call("suix_queryEvents", [])

    @pytest.mark.asyncio
    async def test_connection_error(self, config):
        session = mock_session()
        session.post.side_effect = aiohttp.ClientConnectionError("refused")
        source = SuiRpcEventSource(config, session=session)

        with pytest.raises(FetchError, match="Connection error") as exc_info:
            await source._call("suix_queryEvents", [])

        assert isinstance(exc_info.value.original_error, aiohttp.ClientError)

    @pytest.mark.asyncio
    async def test_injected_session_not_closed(self, config):
        session = mock_session()

        async with SuiRpcEventSource(config, session=session):
            pass

        session.close.assert_not_awaited()
