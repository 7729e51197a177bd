"""WebSocket Status Broadcaster Service.

Manages per-user WebSocket connections and delivers AI operation status
updates to the user that owns the operation.
"""

import asyncio
import time
import orjson
from typing import Set, Dict, Any, Optional, List
from fastapi import WebSocket
from core.logging import get_logger

logger = get_logger(__name__)


class StatusBroadcaster:
    """Manages WebSocket connections keyed by user and delivers status updates."""

    def __init__(self):
        self._connections: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()
        # Last update per user, replayed on connect
        self._last_updates: Dict[str, Dict[str, Any]] = {}

    async def connect(self, user_id: str, websocket: WebSocket):
        """Accept a new WebSocket connection for a user."""
        await websocket.accept()
        async with self._lock:
            self._connections.setdefault(user_id, set()).add(websocket)
        logger.info("Client connected", user_id=user_id, total=self.connection_count)

        try:
            await websocket.send_json({
                "type": "initial_status",
                "data": {
                    "user_id": user_id,
                    "last_update": self._last_updates.get(user_id),
                },
            })
        except Exception as e:
            logger.error("Failed to send initial status", user_id=user_id, error=str(e))

    async def disconnect(self, user_id: str, websocket: WebSocket):
        """Remove a WebSocket connection."""
        async with self._lock:
            sockets = self._connections.get(user_id)
            if sockets is not None:
                sockets.discard(websocket)
                if not sockets:
                    del self._connections[user_id]
        logger.info("Client disconnected", user_id=user_id, total=self.connection_count)

    async def _send_all(self, connections: List[WebSocket], message: Dict[str, Any]) -> Set[WebSocket]:
        """Send to every connection concurrently, returning the ones that failed."""
        message_text = orjson.dumps(message).decode()
        disconnected: Set[WebSocket] = set()

        async def send_to_client(connection: WebSocket):
            try:
                await connection.send_text(message_text)
            except Exception as e:
                logger.warning("Send failed", error=str(e))
                disconnected.add(connection)

        try:
            async with asyncio.TaskGroup() as tg:
                for conn in connections:
                    tg.create_task(send_to_client(conn))
        except* Exception as eg:
            for exc in eg.exceptions:
                logger.warning("TaskGroup exception", error=str(exc))

        return disconnected

    async def _prune(self, user_id: str, disconnected: Set[WebSocket]):
        if not disconnected:
            return
        async with self._lock:
            sockets = self._connections.get(user_id)
            if sockets is not None:
                sockets -= disconnected
                if not sockets:
                    del self._connections[user_id]

    async def deliver(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> int:
        """Deliver an event to every connection of one user.

        Returns:
            Number of connections the message was sent to
        """
        message = {"type": event_type, "data": payload, "timestamp": time.time()}
        self._last_updates[user_id] = message

        async with self._lock:
            connections = list(self._connections.get(user_id, ()))
        if not connections:
            return 0

        disconnected = await self._send_all(connections, message)
        await self._prune(user_id, disconnected)
        return len(connections) - len(disconnected)

    async def broadcast(self, message: Dict[str, Any]):
        """Broadcast a message to all connected clients."""
        async with self._lock:
            by_user = {uid: list(sockets) for uid, sockets in self._connections.items()}

        for user_id, connections in by_user.items():
            disconnected = await self._send_all(connections, message)
            await self._prune(user_id, disconnected)

    # =========================================================================
    # Getters
    # =========================================================================

    def is_connected(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    @property
    def connection_count(self) -> int:
        """Get the number of active WebSocket connections."""
        return sum(len(sockets) for sockets in self._connections.values())

