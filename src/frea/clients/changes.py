"""CouchDB-style continuous change feed client.

The registry replica exposes ``GET {db}/_changes?feed=continuous``: one JSON
object per line, blank lines as heartbeats. `ChangesFeed.subscribe` turns
that into an endless async iterator of `ChangeEvent`, reconnecting from the
last sequence it saw whenever the stream ends, errors, or stays silent past
the inactivity timeout. Reconnecting is the feed's own contract; nothing
downstream retries.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import aclosing

import httpx
import structlog

from frea.core.models import ChangeEvent, parse_sequence

logger = structlog.get_logger(__name__)


def event_from_row(row: object) -> ChangeEvent | None:
    """Map one feed line to a ChangeEvent; None for ``last_seq`` terminators."""
    if not isinstance(row, dict):
        return ChangeEvent(id=None, sequence=None)
    if "last_seq" in row and "id" not in row:
        return None
    ident = row.get("id")
    return ChangeEvent(
        id=ident if isinstance(ident, str) and ident else None,
        sequence=parse_sequence(row.get("seq")),
    )


class ChangesFeed:
    """Continuous `_changes` reader.

    Parameters
    ----------
    db_url : str
        Database URL, e.g. ``https://replicate.npmjs.com/registry``.
    client : httpx.AsyncClient
        Shared client; its read timeout must not be shorter than the
        inactivity timeout or heartbeats will look like failures.
    heartbeat_s : float
        Heartbeat interval requested from the server.
    reconnect_delay_s : float
        Pause before reconnecting after the stream ends or fails.
    """

    def __init__(
        self,
        db_url: str,
        client: httpx.AsyncClient,
        *,
        heartbeat_s: float = 30.0,
        reconnect_delay_s: float = 5.0,
    ) -> None:
        self.db_url = db_url.rstrip("/")
        self.client = client
        self.heartbeat_s = heartbeat_s
        self.reconnect_delay_s = reconnect_delay_s

    def _params(self, since: int) -> dict[str, str]:
        return {
            "feed": "continuous",
            "since": str(since),
            "heartbeat": str(int(self.heartbeat_s * 1000)),
            "style": "main_only",
        }

    async def subscribe(
        self,
        *,
        since: int,
        inactivity_timeout: float,
    ) -> AsyncIterator[ChangeEvent]:
        cursor = since
        while True:
            try:
                async with aclosing(self._read_once(cursor, inactivity_timeout)) as events:
                    async for event in events:
                        if event.sequence is not None and event.sequence > cursor:
                            cursor = event.sequence
                        yield event
                logger.info("change feed ended; reconnecting", since=cursor)
            except TimeoutError:
                logger.warning(
                    "change feed inactive; reconnecting",
                    since=cursor,
                    inactivity_timeout=inactivity_timeout,
                )
            except (httpx.HTTPError, OSError) as e:
                logger.error("change feed failed; reconnecting", since=cursor, error=repr(e))
            await asyncio.sleep(self.reconnect_delay_s)

    async def _read_once(self, since: int, inactivity_timeout: float) -> AsyncIterator[ChangeEvent]:
        url = f"{self.db_url}/_changes"
        async with self.client.stream("GET", url, params=self._params(since)) as r:
            r.raise_for_status()
            lines = r.aiter_lines()
            while True:
                try:
                    line = await asyncio.wait_for(anext(lines), timeout=inactivity_timeout)
                except StopAsyncIteration:
                    return
                if not line.strip():
                    continue  # heartbeat
                try:
                    row = json.loads(line)
                except ValueError:
                    logger.warning("unparseable change feed line", line=line[:200])
                    yield ChangeEvent(id=None, sequence=None)
                    continue
                event = event_from_row(row)
                if event is None:
                    return
                yield event
