# fuel_dispatch/ws_manager.py
import asyncio
from collections import defaultdict
from typing import Dict, Set

from fastapi import WebSocket

from fuel_dispatch.config import get_logger
from fuel_dispatch.metrics import WS_CONNECTIONS
from fuel_dispatch.schemas import Role

logger = get_logger("fuel-dispatch.ws")

ADMINS_CHANNEL = "admins"


def channel_for(role: Role, identity: str) -> str:
    return f"{Role(role).value}_{identity}"


class ConnectionManager:
    """
    Channel-keyed WebSocket hub. A socket joins `{role}_{id}` once it has
    identified itself; admins also join the shared `admins` channel.
    Delivery is at-most-once: nothing is queued for absent subscribers.
    """

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()
        self.channels: Dict[str, Set[WebSocket]] = defaultdict(set)
        self.lock = asyncio.Lock()
        # FIFO per channel keeps events in receipt order
        self.channel_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        async with self.lock:
            self.active_connections.add(websocket)
        WS_CONNECTIONS.inc()
        logger.info(f"[WS] Client connected ({len(self.active_connections)} active)")

    async def subscribe(self, websocket: WebSocket, role: Role, identity: str) -> str:
        channel = channel_for(role, identity)
        async with self.lock:
            self.channels[channel].add(websocket)
            if Role(role) is Role.ADMIN:
                self.channels[ADMINS_CHANNEL].add(websocket)
        logger.info(f"[WS] {channel} joined")
        return channel

    async def disconnect(self, websocket: WebSocket):
        async with self.lock:
            if websocket in self.active_connections:
                self.active_connections.discard(websocket)
                WS_CONNECTIONS.dec()
            for name in [n for n, members in self.channels.items() if websocket in members]:
                self.channels[name].discard(websocket)
                if not self.channels[name]:
                    del self.channels[name]
                    self.channel_locks.pop(name, None)
        logger.info(f"[WS] Client disconnected ({len(self.active_connections)} active)")

    async def publish(self, channel: str, message: dict) -> int:
        """Send JSON message to every socket on `channel`; returns deliveries."""
        async with self.lock:
            targets = list(self.channels.get(channel, ()))
        if not targets:
            return 0

        delivered = 0
        dead = []
        async with self.channel_locks[channel]:
            for ws in targets:
                try:
                    await ws.send_json(message)
                    delivered += 1
                except Exception as e:
                    logger.warning(f"[WS BROADCAST ERROR] Removing client from {channel}: {e}")
                    dead.append(ws)

        # Disconnect failed sockets
        for ws in dead:
            await self.disconnect(ws)
        return delivered


manager = ConnectionManager()
