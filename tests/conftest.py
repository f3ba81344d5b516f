"""Shared fixtures: a scripted inference engine and GGUF model files on disk."""

import asyncio
import threading
import time
from collections import deque
from pathlib import Path
from typing import AsyncIterator, Deque, List, Optional, Sequence, Union

import pytest

from focus_assistant.config.settings import AssistantSettings, SettingsStore
from focus_assistant.domain.model.model_manager import ModelManager

TINYLLAMA = "tinyllama-1.1b-chat-v1.0.Q4_K_M.gguf"
PHI2 = "phi-2.Q4_K_M.gguf"

Script = Union[str, Sequence[str]]


class FakeSession:
    """Engine session that replays scripted fragments"""

    def __init__(self, engine: "FakeEngine", model_path: str):
        self.engine = engine
        self.model_path = model_path
        self.closed = False

    def stream(self, prompt: str, max_tokens: int, temperature: float, top_p: float, stop: List[str]):
        self.engine.prompts.append(prompt)
        self.engine.stop_sequences.append(list(stop))
        fragments = self.engine.next_script()
        return self._replay(fragments)

    def _replay(self, fragments: List[str]):
        for index, fragment in enumerate(fragments):
            if self.engine.fail_at == index:
                raise RuntimeError("engine exploded")
            if self.engine.pause_at == index:
                self.engine.paused.set()
                self.engine.resume.wait(timeout=5)
            if self.engine.fragment_delay:
                time.sleep(self.engine.fragment_delay)
            yield fragment

    def close(self) -> None:
        self.closed = True


class FakeEngine:
    """InferenceEngine double with load counting and optional failures"""

    def __init__(self, default: Script = ("Hello", " there", "!")):
        self.default = self._fragments(default)
        self.scripts: Deque[List[str]] = deque()
        self.prompts: List[str] = []
        self.stop_sequences: List[List[str]] = []
        self.sessions: List[FakeSession] = []

        self.load_calls = 0
        self.load_delay = 0.0
        self.fail_load: Optional[str] = None

        self.fail_at: Optional[int] = None
        self.pause_at: Optional[int] = None
        self.fragment_delay = 0.0
        self.paused = threading.Event()
        self.resume = threading.Event()

    @staticmethod
    def _fragments(script: Script) -> List[str]:
        return [script] if isinstance(script, str) else list(script)

    def script(self, *responses: Script) -> "FakeEngine":
        """Queue responses for the next generations, one per run"""
        self.scripts.extend(self._fragments(r) for r in responses)
        return self

    def next_script(self) -> List[str]:
        return self.scripts.popleft() if self.scripts else list(self.default)

    def load(self, model_path: str) -> FakeSession:
        self.load_calls += 1
        if self.load_delay:
            time.sleep(self.load_delay)
        if self.fail_load:
            raise RuntimeError(self.fail_load)
        session = FakeSession(self, model_path)
        self.sessions.append(session)
        return session


async def wait_until_paused(engine: FakeEngine, timeout: float = 5.0) -> None:
    """Block until the engine's worker thread reaches the pause point"""
    assert await asyncio.to_thread(engine.paused.wait, timeout)


def write_model(directory: Path, name: str, payload: bytes = b"\x00" * 64, magic: bytes = b"GGUF") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_bytes(magic + payload)
    return path


@pytest.fixture
def models_dir(tmp_path: Path) -> Path:
    """Models directory with TinyLlama and Phi-2 files"""
    directory = tmp_path / "models"
    write_model(directory, TINYLLAMA)
    write_model(directory, PHI2)
    return directory


@pytest.fixture
def engine() -> FakeEngine:
    fake = FakeEngine()
    yield fake
    fake.resume.set()


@pytest.fixture
async def manager(models_dir: Path, engine: FakeEngine) -> AsyncIterator[ModelManager]:
    manager = ModelManager(models_dir, engine, memory_headroom_bytes=0, available_memory=lambda: 16 * 1024 ** 3)
    yield manager
    engine.resume.set()
    await manager.shutdown()


@pytest.fixture
def settings(models_dir: Path, tmp_path: Path) -> AssistantSettings:
    return AssistantSettings(
        models_dir=models_dir,
        selected_model=None,
        memory_headroom_bytes=0,
        generation_timeout_seconds=5.0,
        max_turns=20,
        log_format="console",
    )


@pytest.fixture
def settings_store(settings: AssistantSettings) -> SettingsStore:
    return SettingsStore(settings)
