"""
File-backed assistant memory.

Each conversation is stored as ``<id>.jsonl`` (one ChatMessage per line) with
its running summary in ``<id>.summary.json``. File IO runs in a worker thread.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence
import asyncio
import json
import re

import structlog
from pydantic import ValidationError

from focus_assistant.domain.models.chat import ChatMessage

logger = structlog.get_logger(__name__)

_SAFE_ID = re.compile(r"[^A-Za-z0-9_.-]")


class JsonlAssistantMemoryRepository:
    """Durable chat history, one JSON-lines file per conversation"""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        if conversation_id not in self._locks:
            self._locks[conversation_id] = asyncio.Lock()
        return self._locks[conversation_id]

    def _messages_path(self, conversation_id: str) -> Path:
        return self.directory / f"{_SAFE_ID.sub('_', conversation_id)}.jsonl"

    def _summary_path(self, conversation_id: str) -> Path:
        return self.directory / f"{_SAFE_ID.sub('_', conversation_id)}.summary.json"

    async def append_messages(self, conversation_id: str, messages: Sequence[ChatMessage]) -> None:
        """Append messages to the conversation file"""

        if not messages:
            return
        lines = "".join(message.model_dump_json() + "\n" for message in messages)
        path = self._messages_path(conversation_id)

        def write() -> None:
            self.directory.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as f:
                f.write(lines)

        async with self._lock_for(conversation_id):
            await asyncio.to_thread(write)

    async def load_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[ChatMessage]:
        """Read messages in stored order; corrupt lines are skipped"""

        path = self._messages_path(conversation_id)

        def read() -> List[str]:
            if not path.exists():
                return []
            return path.read_text(encoding="utf-8").splitlines()

        async with self._lock_for(conversation_id):
            lines = await asyncio.to_thread(read)

        messages = []
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                messages.append(ChatMessage.model_validate_json(line))
            except ValidationError as e:
                logger.warning(
                    "Skipping corrupt memory line",
                    conversation_id=conversation_id,
                    line=number,
                    error=str(e)
                )
        return messages[-limit:] if limit else messages

    async def save_summary(self, conversation_id: str, summary: Optional[str]) -> None:
        path = self._summary_path(conversation_id)

        def write() -> None:
            if not summary:
                path.unlink(missing_ok=True)
                return
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps({"summary": summary}), encoding="utf-8")
            tmp.replace(path)

        async with self._lock_for(conversation_id):
            await asyncio.to_thread(write)

    async def load_summary(self, conversation_id: str) -> Optional[str]:
        path = self._summary_path(conversation_id)

        def read() -> Optional[str]:
            if not path.exists():
                return None
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
            except ValueError:
                logger.warning("Corrupt summary file", conversation_id=conversation_id)
                return None
            summary = payload.get("summary") if isinstance(payload, dict) else None
            return summary if isinstance(summary, str) else None

        async with self._lock_for(conversation_id):
            return await asyncio.to_thread(read)

    async def clear(self, conversation_id: str) -> None:
        def remove() -> None:
            self._messages_path(conversation_id).unlink(missing_ok=True)
            self._summary_path(conversation_id).unlink(missing_ok=True)

        async with self._lock_for(conversation_id):
            await asyncio.to_thread(remove)
