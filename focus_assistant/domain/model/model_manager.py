"""
Lifecycle controller for the single native model session.

State machine::

    UNLOADED -> LOADING -> READY -> UNLOADING -> UNLOADED
    LOADING -> UNLOADED            (load failed)

Loads are single-flight per descriptor and serialized with every other load,
unload and generation through one FIFO ``asyncio.Lock``. Native calls run on a
dedicated single-thread executor.
"""

from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Deque, Dict, FrozenSet, Optional
import asyncio
import time

import psutil
import structlog

from focus_assistant.config.settings import AssistantSettings
from focus_assistant.domain.errors import ModelLoadError
from focus_assistant.domain.model.model_catalog import MODEL_FILE_SUFFIX, describe_model_file, format_size
from focus_assistant.domain.model.model_handle import ModelHandle
from focus_assistant.domain.models.model_state import ModelDescriptor, ModelState, ModelStatus
from focus_assistant.infrastructure.inference.engine import InferenceEngine, LlamaCppEngine
from focus_assistant.infrastructure.observability.logging import assistant_logger, metrics

logger = structlog.get_logger(__name__)

GGUF_MAGIC = b"GGUF"

ALLOWED_TRANSITIONS = {
    ModelState.UNLOADED: {ModelState.LOADING},
    ModelState.LOADING: {ModelState.READY, ModelState.UNLOADED},
    ModelState.READY: {ModelState.UNLOADING},
    ModelState.UNLOADING: {ModelState.UNLOADED},
}


def available_memory_bytes() -> int:
    return psutil.virtual_memory().available


class ModelManager:
    """Discovers model files and owns the one loaded session"""

    def __init__(
        self,
        models_dir: Path,
        engine: InferenceEngine,
        memory_headroom_bytes: int = 0,
        available_memory: Callable[[], int] = available_memory_bytes
    ):
        self.models_dir = Path(models_dir)
        self.engine = engine
        self.memory_headroom_bytes = memory_headroom_bytes
        self._available_memory = available_memory

        self._state = ModelState.UNLOADED
        self._handle: Optional[ModelHandle] = None
        self._lock = asyncio.Lock()
        self._pending: Dict[str, "asyncio.Future[ModelHandle]"] = {}
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="model-session")

        self.load_count = 0
        self.state_history: Deque[ModelState] = deque([ModelState.UNLOADED], maxlen=64)

    @classmethod
    def from_settings(cls, settings: AssistantSettings, engine: Optional[InferenceEngine] = None) -> "ModelManager":
        """Build a manager for the configured models directory"""
        return cls(
            models_dir=settings.models_dir,
            engine=engine or LlamaCppEngine(
                context_size=settings.context_size,
                threads=settings.threads,
                gpu_layers=settings.gpu_layers
            ),
            memory_headroom_bytes=settings.memory_headroom_bytes
        )

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def current(self) -> Optional[ModelHandle]:
        """The READY handle, if any"""
        return self._handle if self._state == ModelState.READY else None

    @property
    def is_ready(self) -> bool:
        return self.current is not None

    @property
    def session_lock(self) -> asyncio.Lock:
        return self._lock

    @property
    def executor(self) -> ThreadPoolExecutor:
        return self._executor

    def status(self) -> ModelStatus:
        handle = self.current
        return ModelStatus(
            state=self._state,
            current=handle.descriptor if handle else None,
            session_id=handle.session_id if handle else None,
            load_count=self.load_count
        )

    def list_available_models(self) -> FrozenSet[ModelDescriptor]:
        """Scan the models directory; empty when missing or unreadable"""

        descriptors = set()
        try:
            if not self.models_dir.is_dir():
                return frozenset()
            for path in self.models_dir.iterdir():
                if not path.name.lower().endswith(MODEL_FILE_SUFFIX) or not path.is_file():
                    continue
                try:
                    descriptors.add(describe_model_file(path))
                except OSError as e:
                    logger.warning("Skipping unreadable model file", path=str(path), error=str(e))
        except OSError as e:
            logger.warning("Models directory not readable", models_dir=str(self.models_dir), error=str(e))
            return frozenset()

        return frozenset(descriptors)

    def find_model(self, name: str) -> Optional[ModelDescriptor]:
        """Look up an available model by name or file name"""

        for descriptor in sorted(self.list_available_models(), key=lambda d: d.name):
            if descriptor.matches(name):
                return descriptor
        return None

    def default_model(self, selected: Optional[str] = None) -> Optional[ModelDescriptor]:
        """The selected model, else the first installed one by name"""

        if selected:
            return self.find_model(selected)
        available = sorted(self.list_available_models(), key=lambda d: d.name)
        return available[0] if available else None

    async def ensure_ready(self, descriptor: ModelDescriptor) -> ModelHandle:
        """Return a READY session for the descriptor, loading it if needed"""

        handle = self.current
        if handle is not None and handle.descriptor == descriptor:
            return handle

        key = descriptor.path
        pending = self._pending.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._load_serialized(descriptor))
            self._pending[key] = pending
            pending.add_done_callback(lambda task, key=key: self._forget_pending(key, task))
        else:
            logger.debug("Joining in-flight load", model=descriptor.name)

        # A waiter giving up must not cancel the load other callers share
        return await asyncio.shield(pending)

    async def unload(self) -> None:
        """Release the current session; no-op when nothing is loaded"""

        async with self._lock:
            if self._handle is None:
                return
            await self._teardown(reason="unload")

    async def shutdown(self) -> None:
        """Unload and stop the worker thread"""

        await self.unload()
        self._executor.shutdown(wait=False)

    def _forget_pending(self, key: str, task: "asyncio.Future[ModelHandle]") -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if not task.cancelled():
            # Mark the exception retrieved even when every waiter gave up
            task.exception()

    async def _load_serialized(self, descriptor: ModelDescriptor) -> ModelHandle:
        async with self._lock:
            handle = self.current
            if handle is not None and handle.descriptor == descriptor:
                return handle

            if self._handle is not None:
                await self._teardown(reason=f"switching to {descriptor.name}")

            self._transition(ModelState.LOADING, descriptor)
            started = time.perf_counter()
            try:
                self._check_loadable(descriptor)
                engine_session = await self._load_native(descriptor)
            except ModelLoadError as e:
                self._transition(ModelState.UNLOADED, descriptor, reason=e.message)
                raise
            except asyncio.CancelledError:
                self._transition(ModelState.UNLOADED, descriptor, reason="load cancelled")
                raise
            except Exception as e:
                self._transition(ModelState.UNLOADED, descriptor, reason=str(e))
                raise ModelLoadError(
                    f"Failed to load model {descriptor.name}: {e}",
                    {"model": descriptor.name, "path": descriptor.path}
                ) from e

            handle = ModelHandle(descriptor, engine_session, self)
            self._handle = handle
            self.load_count += 1
            self._transition(ModelState.READY, descriptor)

            duration_ms = (time.perf_counter() - started) * 1000
            metrics.record_latency("model_load", duration_ms, {"model": descriptor.name})
            metrics.increment_counter("model_loads")
            return handle

    async def _load_native(self, descriptor: ModelDescriptor):
        future = self._executor.submit(self.engine.load, descriptor.path)
        try:
            return await asyncio.wrap_future(future)
        except asyncio.CancelledError:
            # The native load keeps running; free whatever it produces
            future.add_done_callback(_close_orphaned_session)
            raise

    def _check_loadable(self, descriptor: ModelDescriptor) -> None:
        path = Path(descriptor.path)
        details = {"model": descriptor.name, "path": descriptor.path}

        if not path.is_file():
            raise ModelLoadError(f"Model file not found: {path}", details)

        try:
            size_bytes = path.stat().st_size
            with path.open("rb") as f:
                magic = f.read(len(GGUF_MAGIC))
        except OSError as e:
            raise ModelLoadError(f"Model file unreadable: {e}", details) from e

        if magic != GGUF_MAGIC:
            raise ModelLoadError(f"Model file is not a GGUF file: {path.name}", details)

        available = self._available_memory()
        required = size_bytes + self.memory_headroom_bytes
        if required > available:
            raise ModelLoadError(
                f"Not enough memory for {descriptor.name}: need {format_size(required)}, "
                f"{format_size(available)} available",
                {**details, "required_bytes": required, "available_bytes": available}
            )

    async def _teardown(self, reason: str) -> None:
        # Caller holds the session lock
        handle = self._handle
        self._transition(ModelState.UNLOADING, handle.descriptor if handle else None, reason=reason)
        try:
            if handle is not None:
                await handle._release()
        except Exception as e:
            logger.warning("Error releasing model session", error=str(e))
        finally:
            self._handle = None
            self._transition(ModelState.UNLOADED, handle.descriptor if handle else None, reason=reason)

    def _transition(
        self,
        new_state: ModelState,
        descriptor: Optional[ModelDescriptor],
        reason: Optional[str] = None
    ) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self._state]:
            raise RuntimeError(f"Invalid model state transition {self._state.value} -> {new_state.value}")

        previous = self._state
        self._state = new_state
        self.state_history.append(new_state)
        metrics.set_gauge("model_ready", 1.0 if new_state == ModelState.READY else 0.0)
        assistant_logger.log_model_transition(
            from_state=previous.value,
            to_state=new_state.value,
            model_name=descriptor.name if descriptor else None,
            reason=reason
        )


def _close_orphaned_session(future: Future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    try:
        future.result().close()
    except Exception as e:
        logger.warning("Failed to free orphaned model session", error=str(e))
