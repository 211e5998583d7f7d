"""
WebSocket connection registry for scan progress streams
"""

import asyncio
import json
from typing import Dict, Set
from datetime import datetime
import structlog
from fastapi import WebSocket

logger = structlog.get_logger()


class WebSocketManager:
    """Tracks the sockets following each scan"""

    def __init__(self):
        # Map of scan_id -> Set of WebSocket connections
        self.scan_connections: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, scan_id: str):
        """Accept and register a connection"""
        await websocket.accept()

        async with self._lock:
            self.scan_connections.setdefault(scan_id, set()).add(websocket)
            logger.info("WebSocket connected", scan_id=scan_id,
                        total_connections=len(self.scan_connections[scan_id]))

        await self.send_personal_message(
            websocket,
            {
                "type": "connection_established",
                "data": {"scan_id": scan_id},
                "timestamp": datetime.utcnow().isoformat()
            }
        )

    async def disconnect(self, websocket: WebSocket, scan_id: str):
        async with self._lock:
            connections = self.scan_connections.get(scan_id)
            if connections is not None:
                connections.discard(websocket)
                if not connections:
                    del self.scan_connections[scan_id]
        logger.info("WebSocket disconnected", scan_id=scan_id)

    async def send_personal_message(self, websocket: WebSocket, message: dict) -> bool:
        """Send to one connection. Returns False when the socket is gone."""
        try:
            await websocket.send_text(json.dumps(message))
            return True
        except Exception as e:
            logger.debug("Failed to send WebSocket message", error=str(e))
            return False

    def get_connection_count(self, scan_id: str = None) -> int:
        if scan_id is not None:
            return len(self.scan_connections.get(scan_id, set()))
        return sum(len(conns) for conns in self.scan_connections.values())


# Global WebSocket manager instance
ws_manager = WebSocketManager()
