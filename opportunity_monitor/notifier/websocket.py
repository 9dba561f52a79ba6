from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional, Set

import websockets

log = logging.getLogger("websocket")


class WebSocketBroadcaster:
    """Push server: every connected client receives every event as JSON."""

    def __init__(self, *, enabled: bool, host: str = "0.0.0.0", port: int = 3001, heartbeat_s: int = 30):
        self.enabled = bool(enabled)
        self.host = host
        self.port = int(port)
        self.heartbeat_s = heartbeat_s
        self._server = None
        self._clients: Set[Any] = set()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def start(self) -> None:
        if not self.enabled or self._server is not None:
            return
        self._server = await websockets.serve(
            self._handler,
            self.host,
            self.port,
            ping_interval=self.heartbeat_s,
            ping_timeout=self.heartbeat_s,
        )
        log.info("ws_server_started host=%s port=%d", self.host, self.port)

    async def _handler(self, ws, *_args) -> None:
        self._clients.add(ws)
        log.info("ws_client_connected clients=%d", len(self._clients))
        try:
            hello = {"type": "CONNECTED", "data": {"clients": len(self._clients)}, "timestamp": int(time.time() * 1000)}
            await ws.send(json.dumps(hello))
            await ws.wait_closed()
        finally:
            self._clients.discard(ws)
            log.info("ws_client_disconnected clients=%d", len(self._clients))

    async def _send_one(self, ws, payload: str) -> Optional[Any]:
        try:
            await ws.send(payload)
            return None
        except Exception as e:
            log.debug("ws_send_failed err=%s", e)
            return ws

    async def broadcast(self, event: Dict[str, Any]) -> None:
        if not self._clients:
            return
        payload = json.dumps(event, separators=(",", ":"))
        dead = await asyncio.gather(*[self._send_one(ws, payload) for ws in list(self._clients)])
        for ws in dead:
            if ws is not None:
                self._clients.discard(ws)

    async def close(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        self._clients.clear()
        log.info("ws_server_stopped")
