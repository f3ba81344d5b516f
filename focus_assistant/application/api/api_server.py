from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from focus_assistant.application.api.route import assistant, models
from focus_assistant.application.container import AssistantContainer
from focus_assistant.application.websocket import ws_server
from focus_assistant.application.websocket.connection_manager import ConnectionManager
from focus_assistant.domain.errors import AssistantError, EntityNotFoundError, InferenceError, ModelLoadError
from focus_assistant.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

ERROR_STATUS = {
    ModelLoadError: 503,
    InferenceError: 503,
    EntityNotFoundError: 404,
}


def create_app(container: Optional[AssistantContainer] = None) -> FastAPI:
    """FastAPI app exposing chat, model management and the streaming channel"""

    container = container or AssistantContainer.build()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await container.startup()
        logger.info("API server started")
        try:
            yield
        finally:
            # Disconnect all active connections
            for session_id in list(app.state.connection_manager.get_active_sessions()):
                await app.state.connection_manager.disconnect(session_id)
            await container.shutdown()
            logger.info("API server shutdown")

    app = FastAPI(title="Focus Assistant", lifespan=lifespan)
    app.state.container = container
    app.state.connection_manager = ConnectionManager()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AssistantError)
    async def assistant_error_handler(request: Request, exc: AssistantError):
        status_code = next(
            (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
            400
        )
        logger.warning("Request failed", path=request.url.path, status_code=status_code, error=exc.message)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        status = container.manager.status()
        return {
            "status": "healthy",
            "model_state": status.state.value,
            "model": status.current.name if status.current else None,
            "active_connections": len(app.state.connection_manager.active_connections),
            "metrics": metrics.get_metrics_summary(),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    app.include_router(models.router)
    app.include_router(assistant.router)
    app.include_router(ws_server.router)
    return app
