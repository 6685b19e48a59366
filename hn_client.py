#!/usr/bin/env python3
"""
Hacker News Firebase API client.

Thin async wrapper around the per-item REST endpoints:
``/item/<id>.json``, ``/user/<name>.json``, ``/topstories.json`` and
``/newstories.json``. Each call is a single attempt with a short timeout;
callers decide whether a failure is worth retrying on the next cycle.
"""

import asyncio
from typing import Any, List, Optional
from aiohttp import ClientSession, ClientError, ClientTimeout

from config import config, get_logger
from errors import SourceError, ItemNotFoundError
from records import Item, Author
from telemetry import trace_span

logger = get_logger("hn_client")


class HackerNewsClient:
    """Async client for the Hacker News API.

    A shared ClientSession may be injected; otherwise one is created on first
    use and closed by ``close()``.
    """

    def __init__(self, session: Optional[ClientSession] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.base_url = (base_url or config.HN_BASE_URL).rstrip("/")
        self.timeout = ClientTimeout(total=timeout or config.HN_TIMEOUT)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> ClientSession:
        if self._session is None:
            self._session = ClientSession(
                timeout=self.timeout,
                headers={"User-Agent": config.USER_AGENT, "Accept": "application/json"},
            )
        return self._session

    async def close(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def _get_json(self, endpoint: str) -> Any:
        url = f"{self.base_url}/{endpoint}"
        session = await self._get_session()
        try:
            async with session.get(url, timeout=self.timeout) as resp:
                if resp.status != 200:
                    raise SourceError(f"GET {url} returned HTTP {resp.status}")
                return await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise SourceError(f"GET {url} timed out") from e
        except (ClientError, ValueError) as e:
            raise SourceError(f"GET {url} failed: {e}") from e

    async def _get_id_list(self, endpoint: str) -> List[int]:
        data = await self._get_json(endpoint)
        if not isinstance(data, list):
            raise SourceError(f"Unexpected {endpoint} payload: {type(data).__name__}")
        try:
            return [int(i) for i in data]
        except (TypeError, ValueError) as e:
            raise SourceError(f"Malformed ID in {endpoint}: {e}") from e

    @trace_span("hn.fetch_item", tracer_name="hn", attr_from_args=lambda self, item_id: {"hn.item_id": item_id})
    async def fetch_item(self, item_id: int) -> Item:
        data = await self._get_json(f"item/{item_id}.json")
        if data is None:
            raise ItemNotFoundError("item", item_id)
        if not isinstance(data, dict) or "id" not in data:
            raise SourceError(f"Malformed payload for item {item_id}")
        try:
            return Item.from_payload(data)
        except (TypeError, ValueError) as e:
            raise SourceError(f"Malformed payload for item {item_id}: {e}") from e

    @trace_span("hn.fetch_user", tracer_name="hn", attr_from_args=lambda self, username: {"hn.username": username})
    async def fetch_user(self, username: str) -> Author:
        data = await self._get_json(f"user/{username}.json")
        if data is None:
            raise ItemNotFoundError("user", username)
        if not isinstance(data, dict) or "id" not in data:
            raise SourceError(f"Malformed payload for user {username}")
        try:
            return Author.from_payload(data)
        except (TypeError, ValueError) as e:
            raise SourceError(f"Malformed payload for user {username}: {e}") from e

    @trace_span("hn.fetch_top_ids", tracer_name="hn")
    async def fetch_top_ids(self) -> List[int]:
        """Current front page order, best first."""
        return await self._get_id_list("topstories.json")

    @trace_span("hn.fetch_new_ids", tracer_name="hn")
    async def fetch_new_ids(self) -> List[int]:
        return await self._get_id_list("newstories.json")
