"""
Strategies that fold dropped conversation turns into a running summary.
"""

from typing import List, Optional, Protocol, Sequence, TYPE_CHECKING
import re

import structlog

from focus_assistant.domain.errors import InferenceError
from focus_assistant.domain.models.chat import ActionType, ChatMessage, ChatSender

if TYPE_CHECKING:
    from focus_assistant.domain.model.model_manager import ModelManager

logger = structlog.get_logger(__name__)


class Summarizer(Protocol):
    async def summarize(self, previous_summary: Optional[str], old_turns: Sequence[ChatMessage]) -> str:
        ...


def _clip(text: str, limit: int) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[:limit - 3].rstrip() + "..."


DIGEST_PATTERN = re.compile(r"^Earlier: (\d+) messages, (\d+) actions(?: \((.*)\))?$")
ENTRY_SEPARATOR = " | "


def _render_digest(messages: int, actions: int, names: List[str], limit: int) -> str:
    base = f"Earlier: {messages} messages, {actions} actions"
    kept = list(names)
    while kept and len(base) + len("; ".join(kept)) + 3 > limit:
        kept.pop(0)
    return f"{base} ({'; '.join(kept)})" if kept else base


def _fold_into_digest(text: str, max_chars: int) -> str:
    """Fold the oldest entries into a counted digest until the summary fits"""

    if len(text) <= max_chars:
        return text

    entries = text.split(ENTRY_SEPARATOR)
    messages, actions, names = 0, 0, []
    match = DIGEST_PATTERN.match(entries[0])
    if match:
        messages, actions = int(match.group(1)), int(match.group(2))
        names = match.group(3).split("; ") if match.group(3) else []
        entries = entries[1:]

    digest_limit = max_chars // 2
    digest = _render_digest(messages, actions, names, digest_limit)
    while entries and len(ENTRY_SEPARATOR.join([digest] + entries)) > max_chars:
        entry = entries.pop(0)
        # Action entries keep their name; everything else is counted
        if entry.startswith("Assistant ") and not entry.startswith("Assistant:"):
            actions += 1
            names.append(entry[len("Assistant "):])
        else:
            messages += 1
        digest = _render_digest(messages, actions, names, digest_limit)
    return ENTRY_SEPARATOR.join([digest] + entries)


class RuleBasedSummarizer:
    """Extracts one short line per turn, keeping every action taken"""

    def __init__(self, max_chars: int = 1200, excerpt_chars: int = 80):
        self.max_chars = max_chars
        self.excerpt_chars = excerpt_chars

    async def summarize(self, previous_summary: Optional[str], old_turns: Sequence[ChatMessage]) -> str:
        return self.summarize_now(previous_summary, old_turns)

    def summarize_now(self, previous_summary: Optional[str], old_turns: Sequence[ChatMessage]) -> str:
        lines: List[str] = [previous_summary] if previous_summary else []
        for turn in old_turns:
            line = self._describe(turn)
            if line:
                lines.append(line)
        if not lines:
            return f"{len(old_turns)} earlier system notices"
        return _fold_into_digest(ENTRY_SEPARATOR.join(lines), self.max_chars)

    def _describe(self, turn: ChatMessage) -> Optional[str]:
        if turn.sender == ChatSender.USER:
            return f"User: {_clip(turn.text, self.excerpt_chars)}"
        if turn.sender == ChatSender.ASSISTANT:
            action = turn.action
            if action is not None and action.type != ActionType.NONE:
                target = f" '{action.item_name}'" if action.item_name else ""
                return f"Assistant {action.type.value}{target}"
            return f"Assistant: {_clip(turn.text, self.excerpt_chars)}"
        return None


class ModelSummarizer:
    """Condenses old turns with the loaded model; rule-based when it cannot"""

    PROMPT = (
        "Summarize this conversation between a user and a productivity assistant "
        "in at most three sentences. Keep goal and task names.\n\n"
        "{previous}{turns}\n\nSummary:"
    )

    def __init__(
        self,
        manager: "ModelManager",
        fallback: Optional[RuleBasedSummarizer] = None,
        max_tokens: int = 96,
        timeout: Optional[float] = 15.0
    ):
        self.manager = manager
        self.fallback = fallback or RuleBasedSummarizer()
        self.max_tokens = max_tokens
        self.timeout = timeout

    async def summarize(self, previous_summary: Optional[str], old_turns: Sequence[ChatMessage]) -> str:
        try:
            text = await self._condense(previous_summary, old_turns)
        except InferenceError as e:
            logger.warning("Model summarization failed, using rule-based summary", error=e.message)
            return await self.fallback.summarize(previous_summary, old_turns)

        if not text:
            return await self.fallback.summarize(previous_summary, old_turns)
        # The model already folded everything in; this only bounds runaway output
        return _clip(text, self.fallback.max_chars)

    async def _condense(self, previous_summary: Optional[str], old_turns: Sequence[ChatMessage]) -> str:
        handle = self.manager.current
        if handle is None:
            raise InferenceError("No model loaded for summarization")

        turns = "\n".join(
            f"{turn.sender.value.lower()}: {turn.text}"
            for turn in old_turns
            if turn.sender != ChatSender.SYSTEM
        )
        previous = f"Earlier summary: {previous_summary}\n" if previous_summary else ""
        generation = handle.generate(
            self.PROMPT.format(previous=previous, turns=turns),
            max_tokens=self.max_tokens,
            stop_sequences=["\n\n", "User:", "user:"],
            temperature=0.2,
            timeout=self.timeout
        )
        text = (await generation.collect()).strip()
        if generation.timed_out:
            raise InferenceError("Summarization timed out")
        return text
