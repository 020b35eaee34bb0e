"""Fan-out of JSON state-change events to connected CLI clients."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

CHANNEL_CAPACITY = 256
DAEMON_VERSION = "1.0.0"


async def _send(writer: Any, line: str) -> bool:
    try:
        writer.write(line.encode("utf-8"))
        await writer.drain()
    except OSError:
        return False
    return True


class Broadcaster:
    """Sends newline-delimited JSON events to every connected client."""

    def __init__(self) -> None:
        self._subscribers: set[asyncio.Queue[str]] = set()
        self._clients = 0

    def client_count(self) -> int:
        """Number of clients currently connected."""
        return self._clients

    def broadcast(self, event: Any) -> None:
        """Queue *event* as one JSON line for every connected client."""
        try:
            message = json.dumps(event)
        except (TypeError, ValueError) as exc:
            logger.warning("failed to serialise event: %s", exc)
            return
        line = message + "\n"
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
                logger.warning("client lagged, dropping its oldest message")
            queue.put_nowait(line)

    async def handle_client(self, reader: Any, writer: Any) -> None:
        """Forward events to one client until it disconnects or a write fails."""
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=CHANNEL_CAPACITY)
        self._subscribers.add(queue)
        self._clients += 1
        logger.debug("client connected (%d total)", self._clients)

        disconnect = asyncio.ensure_future(reader.read())
        pending_get: asyncio.Future[str] | None = None
        try:
            welcome = {
                "event": "connected",
                "daemon_version": DAEMON_VERSION,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            if not await _send(writer, json.dumps(welcome) + "\n"):
                return

            while True:
                pending_get = asyncio.ensure_future(queue.get())
                await asyncio.wait(
                    {pending_get, disconnect}, return_when=asyncio.FIRST_COMPLETED
                )
                if not pending_get.done():
                    logger.debug("client closed the connection")
                    break
                line = pending_get.result()
                pending_get = None
                if not await _send(writer, line):
                    logger.debug("client write failed, disconnecting")
                    break
        finally:
            if pending_get is not None and not pending_get.done():
                pending_get.cancel()
            if disconnect.done():
                if not disconnect.cancelled():
                    disconnect.exception()
            else:
                disconnect.cancel()
            self._subscribers.discard(queue)
            self._clients = max(0, self._clients - 1)
            logger.debug("client disconnected (%d remaining)", self._clients)
            with suppress(OSError):
                writer.close()
            with suppress(OSError):
                await writer.wait_closed()