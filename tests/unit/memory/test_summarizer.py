"""Tests for the pluggable summarization strategies."""

from focus_assistant.domain.context.memory.summarizer import DIGEST_PATTERN, ModelSummarizer, RuleBasedSummarizer
from focus_assistant.domain.model.model_manager import ModelManager
from focus_assistant.domain.models.chat import ActionTaken, ActionType, ChatMessage
from tests.conftest import TINYLLAMA, FakeEngine

TURNS = [
    ChatMessage.user("Can you add a task to buy milk?"),
    ChatMessage.assistant("Added!", ActionTaken(type=ActionType.TASK_CREATED, item_name="Buy milk")),
    ChatMessage.system("The assistant model could not be loaded"),
]


class TestRuleBasedSummarizer:

    async def test_one_line_per_turn(self) -> None:
        summary = await RuleBasedSummarizer().summarize(None, TURNS)

        assert summary == "User: Can you add a task to buy milk? | Assistant TASK_CREATED 'Buy milk'"

    async def test_extends_previous_summary(self) -> None:
        summary = await RuleBasedSummarizer().summarize("Earlier stuff", TURNS[:1])

        assert summary.startswith("Earlier stuff | User:")

    async def test_bounded_length_keeps_newest(self) -> None:
        summarizer = RuleBasedSummarizer(max_chars=100)
        summary = None
        for i in range(20):
            summary = await summarizer.summarize(summary, [ChatMessage.user(f"message number {i}")])

        assert len(summary) <= 100
        assert summary.endswith("User: message number 19")

    async def test_condensing_keeps_counts_and_actions(self) -> None:
        """Over budget, the oldest entries are folded into a digest, not cut."""
        summarizer = RuleBasedSummarizer(max_chars=120)
        summary = await summarizer.summarize(None, TURNS[1:2])
        for i in range(15):
            summary = await summarizer.summarize(summary, [ChatMessage.user(f"message number {i}")])

        digest, *kept = summary.split(" | ")
        match = DIGEST_PATTERN.match(digest)
        assert len(summary) <= 120
        assert match is not None
        assert int(match.group(1)) + len(kept) == 15
        assert match.group(2) == "1"
        assert "TASK_CREATED 'Buy milk'" in digest
        assert kept[-1] == "User: message number 14"

    async def test_system_only_turns_still_leave_a_trace(self) -> None:
        summary = await RuleBasedSummarizer().summarize(None, TURNS[2:])
        assert summary


class TestModelSummarizer:

    async def test_uses_loaded_model(self, manager: ModelManager, engine: FakeEngine) -> None:
        await manager.ensure_ready(manager.find_model(TINYLLAMA))
        engine.script(["The user added", " a milk task."])

        summary = await ModelSummarizer(manager).summarize(None, TURNS)

        assert summary == "The user added a milk task."
        assert "buy milk" in engine.prompts[-1]
        assert "could not be loaded" not in engine.prompts[-1]

    async def test_falls_back_without_model(self, manager: ModelManager) -> None:
        summary = await ModelSummarizer(manager).summarize(None, TURNS)

        assert summary == await RuleBasedSummarizer().summarize(None, TURNS)

    async def test_falls_back_on_engine_failure(self, manager: ModelManager, engine: FakeEngine) -> None:
        await manager.ensure_ready(manager.find_model(TINYLLAMA))
        engine.script(["partial", " text"])
        engine.fail_at = 1

        summary = await ModelSummarizer(manager).summarize("Before", TURNS[:1])

        assert summary == "Before | User: Can you add a task to buy milk?"
