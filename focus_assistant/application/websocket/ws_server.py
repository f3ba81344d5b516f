from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from typing import Optional
import asyncio
import json
import uuid
import structlog

from focus_assistant.application.container import AssistantContainer
from focus_assistant.domain.errors import AssistantError
from .connection_manager import ConnectionManager
from .schema.events import EventType, FragmentEvent, MessageEvent, UserMessage

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.websocket("/ws/assistant")
async def assistant_websocket(websocket: WebSocket):
    """Streaming chat with the on-device assistant"""

    container: AssistantContainer = websocket.app.state.container
    connection_manager: ConnectionManager = websocket.app.state.connection_manager
    session_id = uuid.uuid4().hex

    await connection_manager.connect(websocket, session_id)
    turn: Optional[asyncio.Task] = None

    try:
        # Main message loop; turns run as tasks so a cancel or disconnect can reach them
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                await connection_manager.send_error(session_id, "Message is not valid JSON", "invalid_json")
                continue

            event_type = data.get("type") if isinstance(data, dict) else None

            if event_type == EventType.USER_MESSAGE:
                if turn is not None and not turn.done():
                    await connection_manager.send_error(session_id, "A turn is already in progress", "busy")
                    continue
                try:
                    message = UserMessage(**data)
                except ValidationError as e:
                    await connection_manager.send_error(session_id, f"Invalid user message: {e}", "invalid_message")
                    continue
                turn = asyncio.create_task(
                    process_user_message(container, connection_manager, session_id, message)
                )

            elif event_type == EventType.CANCEL:
                cancelled = container.orchestrator.cancel_turn(owner=session_id)
                logger.info("Cancel requested", session_id=session_id, cancelled=cancelled)

            else:
                await connection_manager.send_error(session_id, f"Unknown event type: {event_type}", "unknown_event")

    except WebSocketDisconnect:
        logger.info("Client disconnected", session_id=session_id)
    finally:
        if turn is not None and not turn.done():
            # Abandoned turn: keep its partial reply, stop generating
            turn.cancel()
            await asyncio.wait([turn])
        await connection_manager.disconnect(session_id, close=False)


async def process_user_message(
    container: AssistantContainer,
    connection_manager: ConnectionManager,
    session_id: str,
    message: UserMessage
):
    """Run one turn, streaming fragments, then send the recorded message"""

    async def on_fragment(fragment: str) -> None:
        await connection_manager.send_event(session_id, FragmentEvent(payload=fragment))

    try:
        reply = await container.orchestrator.handle_turn(
            message.content, on_fragment=on_fragment, owner=session_id
        )
    except (AssistantError, ValueError) as e:
        logger.error("Error in assistant turn", error=str(e), session_id=session_id)
        await connection_manager.send_error(session_id, str(e), "turn_failed")
        return

    connection_manager.record_turn(session_id)
    await connection_manager.send_event(session_id, MessageEvent(payload=reply))
