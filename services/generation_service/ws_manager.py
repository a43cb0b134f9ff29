"""
WebSocket fan-out for request status changes.

Every status transition of every request is pushed to all connected
clients; clients filter by request id. Single-worker uvicorn runs all
handlers on one event loop, so the connection set needs no lock.
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import WebSocket

logger = logging.getLogger(__name__)

SEND_TIMEOUT_SECONDS = 5.0


class ConnectionManager:
    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._clients.add(websocket)
        logger.info("Status subscriber connected (%d active)", len(self._clients))

    def disconnect(self, websocket: WebSocket) -> None:
        self._clients.discard(websocket)
        logger.info("Status subscriber gone (%d active)", len(self._clients))

    async def broadcast(self, message: str) -> None:
        """Push to every client; a slow or broken client is dropped, not awaited forever."""
        if not self._clients:
            return
        clients = list(self._clients)
        results = await asyncio.gather(
            *(asyncio.wait_for(c.send_text(message), SEND_TIMEOUT_SECONDS) for c in clients),
            return_exceptions=True,
        )
        for client, result in zip(clients, results):
            if isinstance(result, Exception):
                self.disconnect(client)

    @property
    def connection_count(self) -> int:
        return len(self._clients)
