from typing import Annotated, Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from focus_assistant.application.api.dependencies import get_container
from focus_assistant.application.container import AssistantContainer
from focus_assistant.domain.models.chat import ChatMessage

router = APIRouter(prefix="/api/v1", tags=["assistant"])


class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=4000)


class HistoryResponse(BaseModel):
    messages: List[ChatMessage]
    summary: Optional[str] = None
    turn_count: int


# REST endpoint for simple interactions; the WebSocket channel streams
@router.post("/assistant/chat", response_model=ChatMessage)
async def chat_endpoint(
    request: ChatRequest,
    container: Annotated[AssistantContainer, Depends(get_container)]
):
    if not request.message.strip():
        raise HTTPException(status_code=422, detail="Message must not be blank")
    return await container.orchestrator.handle_turn(request.message)


@router.post("/assistant/cancel")
async def cancel_turn(container: Annotated[AssistantContainer, Depends(get_container)]):
    return {"cancelled": container.orchestrator.cancel_turn()}


@router.get("/assistant/history", response_model=HistoryResponse)
async def get_history(container: Annotated[AssistantContainer, Depends(get_container)]):
    snapshot = container.orchestrator.snapshot()
    return HistoryResponse(
        messages=list(snapshot.messages),
        summary=snapshot.summary,
        turn_count=snapshot.turn_count
    )


@router.delete("/assistant/history")
async def clear_history(container: Annotated[AssistantContainer, Depends(get_container)]):
    await container.orchestrator.clear_history()
    return {"cleared": True}


@router.get("/settings")
async def get_settings(container: Annotated[AssistantContainer, Depends(get_container)]):
    return container.settings_store.get().model_dump(mode="json")


@router.patch("/settings")
async def update_settings(
    changes: Dict[str, Any],
    container: Annotated[AssistantContainer, Depends(get_container)]
):
    """Apply recognized settings; unknown or invalid values are rejected"""

    try:
        updated = container.settings_store.update(**changes)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return updated.model_dump(mode="json")
