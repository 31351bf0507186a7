"""
Event Sources - Ledger access for the reconstruction engine.

The engine only needs two capabilities from the ledger:
- fetch every event of one Move event type
- fetch the current fields of one object

Sources own transport concerns (retries, timeouts, pagination); the
reconstruction core never retries anything itself.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Sequence

import aiohttp

from state_reconstruction.config import EngineConfig
from state_reconstruction.exceptions import FetchError, RpcResponseError
from state_reconstruction.models import ObjectState, RawEvent


logger = logging.getLogger(__name__)


class EventSource(ABC):
    """
    Abstract ledger reader.

    Implementations must be safe to call concurrently; the aggregator
    fans out every fetch of a refresh at once.
    """

    name: str = "source"

    @abstractmethod
    async def fetch_events(self, event_type: str) -> List[RawEvent]:
        """
        All retained events of one fully-qualified event type.

        Raises:
            FetchError: If the events cannot be read
        """
        pass

    @abstractmethod
    async def fetch_object(self, object_id: str) -> ObjectState:
        """
        Current state of one ledger object.

        Raises:
            FetchError: If the object cannot be read
        """
        pass

    async def close(self) -> None:
        """Close resources."""

    async def __aenter__(self) -> "EventSource":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name={self.name})>"


# =============================================================
# IN-MEMORY SOURCE
# =============================================================


class InMemoryEventSource(EventSource):
    """
    Serves canned events and objects.

    Event lookups match the full event type first, then its short name,
    so fixtures can be keyed by "PoolCreated". `failures` maps an event
    type, short name or object id to the exception to raise for it.
    """

    name = "memory"

    def __init__(
        self,
        events_by_type: Optional[Mapping[str, Sequence[RawEvent]]] = None,
        objects: Optional[Mapping[str, ObjectState]] = None,
        failures: Optional[Mapping[str, Exception]] = None,
    ) -> None:
        self._events = dict(events_by_type or {})
        self._objects = dict(objects or {})
        self._failures = dict(failures or {})

    @staticmethod
    def _short_name(event_type: str) -> str:
        return event_type.split("<", 1)[0].rsplit("::", 1)[-1]

    def _failure_for(self, *keys: str) -> Optional[Exception]:
        for key in keys:
            if key in self._failures:
                return self._failures[key]
        return None

    async def fetch_events(self, event_type: str) -> List[RawEvent]:
        short = self._short_name(event_type)
        failure = self._failure_for(event_type, short)
        if failure is not None:
            raise failure
        if event_type in self._events:
            return list(self._events[event_type])
        return list(self._events.get(short, []))

    async def fetch_object(self, object_id: str) -> ObjectState:
        failure = self._failure_for(object_id)
        if failure is not None:
            raise failure
        if object_id not in self._objects:
            raise FetchError(f"Object {object_id} not found", method="fetch_object")
        return self._objects[object_id]


# =============================================================
# SUI JSON-RPC SOURCE
# =============================================================


class SuiRpcEventSource(EventSource):
    """
    Sui fullnode JSON-RPC reader built on aiohttp.

    - suix_queryEvents with cursor pagination, newest first, capped at
      max_events_per_type per event type
    - sui_getObject with content and type
    - limited retries with exponential backoff; HTTP 4xx responses and
      JSON-RPC error objects fail immediately
    """

    name = "sui_rpc"

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._session = session
        self._owns_session = session is None
        self._request_id = 0

    # ─────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────

    async def fetch_events(self, event_type: str) -> List[RawEvent]:
        events: List[RawEvent] = []
        cursor: Optional[Dict[str, Any]] = None
        limit = self._config.max_events_per_type

        while len(events) < limit:
            page_size = min(self._config.event_page_limit, limit - len(events))
            result = await self._call_with_retry(
                "suix_queryEvents",
                [{"MoveEventType": event_type}, cursor, page_size, True],
            )
            rows = result.get("data") or []
            events.extend(self._to_raw_event(row, event_type) for row in rows)

            cursor = result.get("nextCursor")
            if not result.get("hasNextPage") or not cursor or not rows:
                break

        logger.debug(f"[{self.name}] Fetched {len(events)} events of {event_type}")
        return events[:limit]

    async def fetch_object(self, object_id: str) -> ObjectState:
        result = await self._call_with_retry(
            "sui_getObject",
            [object_id, {"showContent": True, "showType": True}],
        )
        data = result.get("data") if isinstance(result, Mapping) else None
        if not data:
            raise FetchError(
                f"Object {object_id} not found",
                method="sui_getObject",
                request_url=self._config.rpc_url,
                context={"error": result.get("error") if isinstance(result, Mapping) else None},
            )

        content = data.get("content") or {}
        return ObjectState(
            object_id=data.get("objectId", object_id),
            type_tag=content.get("type") or data.get("type") or "",
            fields=content.get("fields") or {},
        )

    async def close(self) -> None:
        """Close resources."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    # ─────────────────────────────────────────────────────────────
    # Transport
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def _to_raw_event(row: Mapping[str, Any], event_type: str) -> RawEvent:
        event_id = row.get("id") or {}
        return RawEvent(
            type_tag=row.get("type") or event_type,
            payload=row.get("parsedJson") or {},
            timestamp_ms=row.get("timestampMs"),
            tx_id=event_id.get("txDigest", "") if isinstance(event_id, Mapping) else "",
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._config.request_timeout_seconds),
                headers={"Accept": "application/json", "Content-Type": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def _call_with_retry(self, method: str, params: List[Any]) -> Any:
        """JSON-RPC call with limited retries and a per-attempt timeout."""
        last_error: Optional[Exception] = None
        max_retries = self._config.max_retries

        for attempt in range(max_retries):
            try:
                return await asyncio.wait_for(
                    self._call(method, params),
                    timeout=self._config.request_timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                last_error = FetchError(
                    "Timeout",
                    method=method,
                    request_url=self._config.rpc_url,
                    original_error=e,
                )
            except RpcResponseError:
                raise
            except FetchError as e:
                if e.is_client_error():
                    raise
                last_error = e

            if attempt + 1 < max_retries:
                wait_time = self._config.retry_backoff_base ** attempt
                logger.warning(
                    f"[{self.name}] Retry {attempt + 1}/{max_retries} for {method} "
                    f"in {wait_time:.1f}s: {last_error}"
                )
                await asyncio.sleep(wait_time)

        raise FetchError(
            f"{method} failed after {max_retries} attempts",
            method=method,
            request_url=self._config.rpc_url,
            original_error=last_error,
        )

    async def _call(self, method: str, params: List[Any]) -> Any:
        session = await self._get_session()
        self._request_id += 1
        body = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        url = self._config.rpc_url

        try:
            async with session.post(url, json=body) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise FetchError(
                        f"HTTP {response.status}",
                        method=method,
                        status_code=response.status,
                        request_url=url,
                        context={"response_body": text[:500]},
                    )
                payload = await response.json()
        except aiohttp.ClientError as e:
            raise FetchError(
                f"Connection error: {e}",
                method=method,
                request_url=url,
                original_error=e,
            ) from e

        error = payload.get("error") if isinstance(payload, Mapping) else None
        if error:
            raise RpcResponseError(
                f"RPC error: {error.get('message', error) if isinstance(error, Mapping) else error}",
                method=method,
                rpc_code=error.get("code") if isinstance(error, Mapping) else None,
                request_url=url,
            )
        if not isinstance(payload, Mapping) or "result" not in payload:
            raise FetchError(f"Malformed RPC response for {method}", method=method, request_url=url)
        return payload["result"]
