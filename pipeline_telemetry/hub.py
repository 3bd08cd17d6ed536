"""
Fan-out of telemetry envelopes to every connected WebSocket session.

Delivery is best effort: nothing is queued for sessions that are not
connected, and a slow session never holds up the others.
"""

import json
import logging

import websockets

from .envelopes import error_message, info_message

logger = logging.getLogger(__name__)


class BroadcastHub:
    def __init__(self):
        self.sessions = set()

    def __len__(self) -> int:
        return len(self.sessions)

    def register(self, session) -> None:
        self.sessions.add(session)
        logger.info("Client connected. Total: %d", len(self.sessions))

    def unregister(self, session) -> None:
        self.sessions.discard(session)
        logger.info("Client disconnected. Total: %d", len(self.sessions))

    def broadcast(self, message: dict) -> int:
        """Send message to all connected clients. Returns the fan-out size."""
        if not self.sessions:
            return 0
        data = json.dumps(message)
        # websockets.broadcast writes without awaiting and skips sessions that are not open
        websockets.broadcast(self.sessions, data)
        return len(self.sessions)

    def broadcast_error(self, message: str) -> int:
        logger.warning("Broadcasting error: %s", message)
        return self.broadcast(error_message(message))

    async def send_info(self, session, message: str) -> None:
        await session.send(json.dumps(info_message(message)))
