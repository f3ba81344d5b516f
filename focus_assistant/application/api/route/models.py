from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
import structlog

from focus_assistant.application.api.dependencies import get_container
from focus_assistant.application.container import AssistantContainer
from focus_assistant.domain.models.model_state import ModelDescriptor, ModelStatus

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/models", tags=["models"])


class LoadModelRequest(BaseModel):
    name: str = Field(min_length=1)


class ModelListResponse(BaseModel):
    status: ModelStatus
    models: List[ModelDescriptor]


@router.get("", response_model=ModelListResponse)
async def list_models(container: Annotated[AssistantContainer, Depends(get_container)]):
    """Installed models and the current session state"""
    manager = container.manager
    models = sorted(manager.list_available_models(), key=lambda d: d.name)
    return ModelListResponse(status=manager.status(), models=models)


@router.post("/load", response_model=ModelStatus)
async def load_model(
    request: LoadModelRequest,
    container: Annotated[AssistantContainer, Depends(get_container)]
):
    """Make the named model READY; ModelLoadError maps to 503"""

    descriptor: Optional[ModelDescriptor] = container.manager.find_model(request.name)
    if descriptor is None:
        raise HTTPException(status_code=404, detail=f"Model '{request.name}' is not installed")

    await container.manager.ensure_ready(descriptor)
    container.settings_store.update(selected_model=descriptor.name)
    return container.manager.status()


@router.post("/unload", response_model=ModelStatus)
async def unload_model(container: Annotated[AssistantContainer, Depends(get_container)]):
    await container.manager.unload()
    return container.manager.status()
