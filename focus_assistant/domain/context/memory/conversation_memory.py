"""
Bounded conversation log with a rolling summary.

``ConversationMemory`` is the in-process authority for one conversation. The
turn count is the number of kept messages plus one for the summary when
present; it never exceeds ``max_turns``. On overflow the oldest messages are
folded into the summary with a single ``summarize`` call. The assistant memory
repository is a write-behind store updated by ``flush``.
"""

from typing import List, Optional, Sequence
import asyncio

import structlog

from focus_assistant.domain.context.memory.summarizer import RuleBasedSummarizer, Summarizer
from focus_assistant.domain.models.chat import ChatMessage, ConversationSnapshot
from focus_assistant.domain.repositories import AssistantMemoryRepository
from focus_assistant.infrastructure.observability.logging import assistant_logger, metrics

logger = structlog.get_logger(__name__)


class ConversationMemory:
    """Ordered, append-only turn log capped at max_turns"""

    def __init__(
        self,
        conversation_id: str = "default",
        max_turns: int = 20,
        summarizer: Optional[Summarizer] = None,
        repository: Optional[AssistantMemoryRepository] = None
    ):
        if max_turns < 3:
            raise ValueError("max_turns must be at least 3")
        self.conversation_id = conversation_id
        self.max_turns = max_turns
        self.summarizer: Summarizer = summarizer or RuleBasedSummarizer()
        self.repository = repository

        self._messages: List[ChatMessage] = []
        self._summary: Optional[str] = None
        self._pending: List[ChatMessage] = []
        self._summary_dirty = False
        self._lock = asyncio.Lock()
        self._flush_lock = asyncio.Lock()

        self.summarization_count = 0

    @property
    def turn_count(self) -> int:
        return len(self._messages) + (1 if self._summary else 0)

    @property
    def summary(self) -> Optional[str]:
        return self._summary

    async def append(self, message: ChatMessage) -> ChatMessage:
        """Add a turn; returns the stored message (timestamp may be clamped)"""

        async with self._lock:
            if self._messages and message.timestamp < self._messages[-1].timestamp:
                message = message.model_copy(update={"timestamp": self._messages[-1].timestamp})

            messages = self._messages + [message]
            summary = self._summary
            overflow = len(messages) + (1 if summary else 0) - self.max_turns
            if overflow > 0:
                # Folding creates the summary entry when there was none
                fold = overflow if summary else overflow + 1
                old_turns, messages = messages[:fold], messages[fold:]
                summary = await self.summarize(old_turns)
                self._summary_dirty = True

            # Swap in one step so snapshots never see a torn state
            self._messages = messages
            self._summary = summary
            self._pending.append(message)

        assistant_logger.log_memory_update(
            self.conversation_id,
            "append",
            {"sender": message.sender.value, "turns": self.turn_count}
        )
        return message

    def snapshot_for_prompt(self) -> ConversationSnapshot:
        """Consistent copy of everything appended so far"""
        return ConversationSnapshot(messages=tuple(self._messages), summary=self._summary)

    async def summarize(self, old_turns: Sequence[ChatMessage]) -> str:
        """Fold old turns into the running summary"""

        summary = await self.summarizer.summarize(self._summary, old_turns)
        if not summary.strip():
            # Dropped turns must leave a trace
            summary = RuleBasedSummarizer().summarize_now(self._summary, old_turns)

        self.summarization_count += 1
        metrics.increment_counter("memory_summarizations")
        assistant_logger.log_memory_update(
            self.conversation_id,
            "summarize",
            {"folded_turns": len(old_turns), "summary_chars": len(summary)}
        )
        return summary

    async def load(self) -> int:
        """Hydrate from the repository; returns the number of messages loaded"""

        if self.repository is None:
            return 0

        summary = await self.repository.load_summary(self.conversation_id)
        limit = self.max_turns - 1 if summary else self.max_turns
        messages = await self.repository.load_messages(self.conversation_id, limit=limit)

        async with self._lock:
            self._summary = summary
            self._messages = list(messages)
            self._pending = []
            self._summary_dirty = False

        logger.info(
            "Conversation memory loaded",
            conversation_id=self.conversation_id,
            messages=len(messages),
            has_summary=summary is not None
        )
        return len(messages)

    async def flush(self) -> None:
        """Write pending turns and the summary to the repository"""

        if self.repository is None:
            self._pending = []
            return

        async with self._flush_lock:
            async with self._lock:
                pending, self._pending = self._pending, []
                summary_dirty, self._summary_dirty = self._summary_dirty, False
                summary = self._summary

            try:
                if pending:
                    await self.repository.append_messages(self.conversation_id, pending)
                if summary_dirty:
                    await self.repository.save_summary(self.conversation_id, summary)
            except Exception:
                # Keep unsaved turns for the next flush
                async with self._lock:
                    self._pending = pending + self._pending
                    self._summary_dirty = self._summary_dirty or summary_dirty
                raise

        if pending or summary_dirty:
            assistant_logger.log_memory_update(
                self.conversation_id,
                "flush",
                {"messages": len(pending), "summary": summary_dirty}
            )

    async def clear(self) -> None:
        """Forget the conversation in memory and in the repository"""

        async with self._lock:
            self._messages = []
            self._summary = None
            self._pending = []
            self._summary_dirty = False
        if self.repository is not None:
            await self.repository.clear(self.conversation_id)
        assistant_logger.log_memory_update(self.conversation_id, "clear")
