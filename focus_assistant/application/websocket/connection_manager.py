from typing import Dict, Set, Optional
from fastapi import WebSocket, WebSocketDisconnect
import asyncio
from datetime import datetime, timezone
import structlog

from .schema.events import BaseEvent, ConnectionEvent, ErrorEvent

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Tracks assistant WebSocket sessions and sends events to them"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.session_metadata: Dict[str, Dict] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, session_id: str):
        """Accept a new WebSocket connection"""
        await websocket.accept()

        async with self._lock:
            now = datetime.now(timezone.utc)
            self.active_connections[session_id] = websocket
            self.session_metadata[session_id] = {
                "connected_at": now,
                "last_activity": now,
                "turns": 0
            }

        await self.send_event(
            session_id,
            ConnectionEvent(status="connected", session_id=session_id)
        )
        logger.info("WebSocket connected", session_id=session_id)

    async def disconnect(self, session_id: str, close: bool = True):
        """Forget a session, closing the socket unless the client already did"""
        async with self._lock:
            ws = self.active_connections.pop(session_id, None)
            self.session_metadata.pop(session_id, None)

        if ws is not None and close:
            try:
                await ws.close()
            except RuntimeError as e:
                # Socket already closed by the other side
                logger.debug("WebSocket already closed", session_id=session_id, error=str(e))

        logger.info("WebSocket disconnected", session_id=session_id)

    async def send_event(self, session_id: str, event: BaseEvent) -> bool:
        """Send an event to a specific session"""
        websocket = self.active_connections.get(session_id)
        if websocket is None:
            logger.warning("Attempted to send to disconnected session", session_id=session_id)
            return False

        event.session_id = session_id
        try:
            await websocket.send_json(event.model_dump(mode="json"))
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.error("Failed to send event", session_id=session_id, error=str(e))
            await self.disconnect(session_id, close=False)
            return False

        if session_id in self.session_metadata:
            self.session_metadata[session_id]["last_activity"] = datetime.now(timezone.utc)
        return True

    async def send_error(self, session_id: str, error_message: str, error_code: Optional[str] = None):
        """Send an error event to a session"""
        await self.send_event(
            session_id,
            ErrorEvent(payload={"message": error_message}, error_code=error_code)
        )

    def record_turn(self, session_id: str):
        if session_id in self.session_metadata:
            self.session_metadata[session_id]["turns"] += 1

    def get_session_metadata(self, session_id: str) -> Optional[Dict]:
        return self.session_metadata.get(session_id)

    def get_active_sessions(self) -> Set[str]:
        return set(self.active_connections.keys())
