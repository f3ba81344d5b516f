"""
Loaded model session and its generation runs.

A ``ModelHandle`` is created only by ``ModelManager`` and stays valid until the
manager releases it. Each call to ``generate`` returns a ``Generation``: a
lazy, finite async iterator of text fragments that cannot be replayed. A run
holds the manager's session lock from its first fragment until it finishes,
so a model switch never happens underneath it.
"""

from typing import Awaitable, Callable, List, Optional, TYPE_CHECKING
import asyncio
import time
import uuid
from datetime import datetime, timezone

import structlog

from focus_assistant.domain.errors import InferenceError
from focus_assistant.domain.models.model_state import ModelDescriptor
from focus_assistant.infrastructure.inference.engine import EngineSession
from focus_assistant.infrastructure.observability.logging import assistant_logger, metrics

if TYPE_CHECKING:
    from focus_assistant.domain.model.model_manager import ModelManager

logger = structlog.get_logger(__name__)

FragmentCallback = Callable[[str], Awaitable[None]]

_END = object()


class ModelHandle:
    """The single ready-to-generate model session"""

    def __init__(self, descriptor: ModelDescriptor, engine_session: EngineSession, manager: "ModelManager"):
        self.descriptor = descriptor
        self.session_id = uuid.uuid4().hex
        self.loaded_at = datetime.now(timezone.utc)
        self._engine_session = engine_session
        self._manager = manager
        self._released = False

    @property
    def is_ready(self) -> bool:
        return not self._released and self._manager.current is self

    def generate(
        self,
        prompt: str,
        max_tokens: int = 128,
        stop_sequences: Optional[List[str]] = None,
        temperature: float = 0.7,
        top_p: float = 0.9,
        timeout: Optional[float] = None
    ) -> "Generation":
        """Start a new generation run"""

        if not self.is_ready:
            raise InferenceError(
                "No model session is ready",
                {"model": self.descriptor.name, "session_id": self.session_id}
            )
        return Generation(
            handle=self,
            prompt=prompt,
            max_tokens=max_tokens,
            stop_sequences=list(stop_sequences or []),
            temperature=temperature,
            top_p=top_p,
            timeout=timeout
        )

    async def _release(self) -> None:
        """Free the native session; caller holds the session lock"""

        if self._released:
            return
        self._released = True
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._manager.executor, self._engine_session.close)


class Generation:
    """One generation run; iterate to receive fragments"""

    def __init__(
        self,
        handle: ModelHandle,
        prompt: str,
        max_tokens: int,
        stop_sequences: List[str],
        temperature: float,
        top_p: float,
        timeout: Optional[float]
    ):
        self.handle = handle
        self.prompt = prompt
        self.max_tokens = max_tokens
        self.stop_sequences = [s for s in stop_sequences if s]
        self.temperature = temperature
        self.top_p = top_p
        self.timeout = timeout

        self._fragments: List[str] = []
        self._iterator = None
        self._started = False
        self._finished = False
        self._holds_lock = False
        self._cancel_requested = False
        self._stop_after_current = False
        self._deadline: Optional[float] = None
        self._started_at = 0.0

        self.cancelled = False
        self.timed_out = False

    @property
    def text(self) -> str:
        """Everything produced so far; the partial result after a cancel"""
        return "".join(self._fragments)

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def fragment_count(self) -> int:
        return len(self._fragments)

    def cancel(self) -> None:
        """Stop before the next fragment; produced fragments stay valid"""
        self._cancel_requested = True

    def __aiter__(self) -> "Generation":
        return self

    async def __anext__(self) -> str:
        if self._finished:
            raise StopAsyncIteration
        if not self._started:
            await self._start()

        loop = asyncio.get_running_loop()

        if self._cancel_requested or self._stop_after_current:
            self._finish(cancelled=self._cancel_requested)
            raise StopAsyncIteration

        remaining = None
        if self._deadline is not None:
            remaining = self._deadline - loop.time()
            if remaining <= 0:
                self.timed_out = True
                self._finish(cancelled=True)
                raise StopAsyncIteration

        step = loop.run_in_executor(self.handle._manager.executor, self._next_fragment)
        try:
            if remaining is None:
                fragment = await step
            else:
                fragment = await asyncio.wait_for(step, timeout=remaining)
        except asyncio.TimeoutError:
            self.timed_out = True
            self._finish(cancelled=True)
            raise StopAsyncIteration
        except asyncio.CancelledError:
            self._finish(cancelled=True)
            raise
        except Exception as e:
            self._finish(cancelled=False, error=str(e))
            raise InferenceError(
                f"Generation failed: {e}",
                {"model": self.handle.descriptor.name}
            ) from e

        if fragment is _END:
            self._finish(cancelled=False)
            raise StopAsyncIteration

        fragment = self._apply_stop_sequences(fragment)
        if not fragment:
            self._finish(cancelled=False)
            raise StopAsyncIteration

        self._fragments.append(fragment)
        return fragment

    async def collect(self, on_fragment: Optional[FragmentCallback] = None) -> str:
        """Consume the run and return the full (or partial) text"""

        try:
            async for fragment in self:
                if on_fragment is not None:
                    await on_fragment(fragment)
        finally:
            await self.aclose()
        return self.text

    async def aclose(self) -> None:
        """Abandon the run, keeping what was produced"""

        if self._started and not self._finished:
            self._finish(cancelled=True)
        self._finished = True

    async def __aenter__(self) -> "Generation":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _start(self) -> None:
        self._started = True
        manager = self.handle._manager

        await manager.session_lock.acquire()
        self._holds_lock = True

        # The model may have been switched while waiting for the lock
        if not self.handle.is_ready:
            self._finished = True
            self._release_lock()
            raise InferenceError(
                "Model session was released before generation started",
                {"model": self.handle.descriptor.name}
            )

        loop = asyncio.get_running_loop()
        self._started_at = time.perf_counter()
        if self.timeout is not None:
            self._deadline = loop.time() + self.timeout

        try:
            self._iterator = iter(
                self.handle._engine_session.stream(
                    self.prompt,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    top_p=self.top_p,
                    stop=list(self.stop_sequences)
                )
            )
        except Exception as e:
            self._finish(cancelled=False, error=str(e))
            raise InferenceError(
                f"Generation could not start: {e}",
                {"model": self.handle.descriptor.name}
            ) from e

    def _next_fragment(self):
        # Runs on the model worker thread
        return next(self._iterator, _END)

    def _close_iterator(self) -> None:
        # Runs on the model worker thread, after any in-flight step
        close = getattr(self._iterator, "close", None)
        if callable(close):
            try:
                close()
            except Exception as e:
                logger.warning("Failed to close engine stream", error=str(e))

    def _apply_stop_sequences(self, fragment: str) -> str:
        if not self.stop_sequences:
            return fragment

        previous = self.text
        combined = previous + fragment
        longest = max(len(s) for s in self.stop_sequences)
        search_from = max(0, len(previous) - longest + 1)

        positions = [
            combined.find(stop, search_from)
            for stop in self.stop_sequences
        ]
        positions = [p for p in positions if p >= 0]
        if not positions:
            return fragment

        self._stop_after_current = True
        cut = min(positions)
        if cut < len(previous):
            # Stop sequence began in an earlier fragment
            self._fragments = [previous[:cut]] if cut > 0 else []
            return ""
        return combined[len(previous):cut]

    def _release_lock(self) -> None:
        if self._holds_lock:
            self._holds_lock = False
            self.handle._manager.session_lock.release()

    def _finish(self, cancelled: bool, error: Optional[str] = None) -> None:
        if self._finished:
            return
        self._finished = True
        self.cancelled = cancelled

        if self._iterator is not None:
            # Queued behind any in-flight step on the single worker thread
            self.handle._manager.executor.submit(self._close_iterator)
        self._release_lock()

        duration_ms = (time.perf_counter() - self._started_at) * 1000 if self._started_at else 0.0
        metrics.record_latency("generation", duration_ms, {"model": self.handle.descriptor.name})
        assistant_logger.log_generation(
            model_name=self.handle.descriptor.name,
            prompt_chars=len(self.prompt),
            output_chars=len(self.text),
            fragments=len(self._fragments),
            duration_ms=duration_ms,
            cancelled=cancelled,
            timed_out=self.timed_out
        )
        if error:
            logger.error("Generation failed", model=self.handle.descriptor.name, error=error)
