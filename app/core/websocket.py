"""
WebSocket manager for real-time updates.
Handles connections and game result broadcasts.
"""

import asyncio
import time
from typing import Dict, Set
from fastapi import WebSocket
import orjson

from app.core.logger import get_logger

logger = get_logger("websocket")

WS_CLOSE_CODES = {
    1000: "normal_closure",
    1001: "going_away",
    1006: "abnormal_closure",
    1008: "policy_violation",
    1009: "message_too_big",
    1011: "internal_error",
}


def normalize_ws_close_code(code: int) -> str:
    return WS_CLOSE_CODES.get(code, f"unknown_{code}")


class ConnectionManager:
    """
    Tracks WebSocket clients and pushes game results to them.
    Broadcasts are notifications only; a failed send never affects a round.
    """

    def __init__(self):
        self.all_connections: Set[WebSocket] = set()
        self.topics: Dict[str, Set[WebSocket]] = {"games": set()}
        self._tasks: Set[asyncio.Task] = set()

    async def _send_json(self, websocket: WebSocket, data: dict):
        # orjson.dumps returns bytes, so we use send_bytes
        await websocket.send_bytes(orjson.dumps(data))

    async def connect(self, websocket: WebSocket):
        """Accept a new WebSocket connection and greet it."""
        await websocket.accept()
        self.all_connections.add(websocket)
        for topic in self.topics.values():
            topic.add(websocket)

        logger.info(f"WebSocket connected: total={len(self.all_connections)}")
        await self._send_json(
            websocket, {"type": "connected", "timestamp": int(time.time() * 1000)}
        )

    def disconnect(self, websocket: WebSocket):
        self.all_connections.discard(websocket)
        for topic in self.topics.values():
            topic.discard(websocket)
        logger.info(f"WebSocket disconnected: total={len(self.all_connections)}")

    async def broadcast(
        self,
        topic: str,
        message: dict,
        batch_size: int = 100,
        delay: float = 0.01,
    ):
        """
        Broadcast a message to every client subscribed to a topic, in batches
        so a large audience does not block the event loop.
        """
        if topic not in self.topics:
            logger.warning(f"Broadcast to unknown topic: {topic}")
            return

        disconnected = []
        connections_to_send = list(self.topics[topic])

        for i in range(0, len(connections_to_send), batch_size):
            batch = connections_to_send[i : i + batch_size]
            tasks = [self._send_json(ws, message) for ws in batch]
            results = await asyncio.gather(*tasks, return_exceptions=True)

            for ws, result in zip(batch, results):
                if isinstance(result, Exception):
                    disconnected.append(ws)

            is_last_batch = (i + batch_size) >= len(connections_to_send)
            if delay > 0 and not is_last_batch:
                await asyncio.sleep(delay)

        if disconnected:
            logger.info(
                f"Found {len(disconnected)} disconnected clients during broadcast."
            )
            for ws in disconnected:
                self.disconnect(ws)

    def notify_game_update(self, game_id: str, result: str, won: bool):
        """
        Fire-and-forget gameUpdate broadcast. Must be called from the event
        loop thread; outside a running loop the update is dropped.
        """
        message = {"type": "gameUpdate", "gameId": game_id, "result": result, "won": won}
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, gameUpdate for {game_id} not broadcast")
            return

        task = loop.create_task(self.broadcast("games", message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def get_connection_count(self) -> int:
        return len(self.all_connections)


# Global WebSocket manager instance
ws_manager = ConnectionManager()
