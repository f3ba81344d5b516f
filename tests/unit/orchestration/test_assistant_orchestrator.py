"""Scenario tests for AssistantOrchestrator.handle_turn."""

import asyncio
from pathlib import Path

import pytest

from focus_assistant.config.settings import SettingsStore
from focus_assistant.domain.context.memory.conversation_memory import ConversationMemory
from focus_assistant.domain.model.model_manager import ModelManager
from focus_assistant.domain.models.chat import ActionTaken, ActionType, ChatSender
from focus_assistant.domain.models.model_state import ModelState
from focus_assistant.domain.models.productivity import Task
from focus_assistant.domain.orchestration.assistant_orchestrator import AssistantOrchestrator
from focus_assistant.infrastructure.persistence.in_memory import (
    InMemoryAssistantMemoryRepository,
    InMemoryGoalRepository,
    InMemoryTaskRepository,
)
from tests.conftest import FakeEngine, wait_until_paused


@pytest.fixture
def memory_repository() -> InMemoryAssistantMemoryRepository:
    return InMemoryAssistantMemoryRepository()


@pytest.fixture
def orchestrator(
    manager: ModelManager,
    settings_store: SettingsStore,
    memory_repository: InMemoryAssistantMemoryRepository
) -> AssistantOrchestrator:
    memory = ConversationMemory("test", max_turns=20, repository=memory_repository)
    return AssistantOrchestrator(
        manager=manager,
        memory=memory,
        goals=InMemoryGoalRepository(),
        tasks=InMemoryTaskRepository(),
        settings_store=settings_store
    )


def senders(orchestrator: AssistantOrchestrator):
    return [m.sender for m in orchestrator.snapshot().messages]


class TestActions:

    async def test_task_created_from_directive(self, orchestrator: AssistantOrchestrator, engine: FakeEngine) -> None:
        engine.script("[ACTION:TASK_CREATED:Buy milk] Sure, I added that task.")

        reply = await orchestrator.handle_turn("Add a task to buy milk")

        assert reply.sender == ChatSender.ASSISTANT
        assert reply.text == "Sure, I added that task."
        assert reply.action == ActionTaken(type=ActionType.TASK_CREATED, item_name="Buy milk")
        assert [t.title for t in await orchestrator.tasks.list_active()] == ["Buy milk"]
        assert senders(orchestrator) == [ChatSender.USER, ChatSender.ASSISTANT]
        assert orchestrator.snapshot().messages[-1] == reply

    async def test_only_first_of_conflicting_tags(self, orchestrator: AssistantOrchestrator, engine: FakeEngine) -> None:
        engine.script("[ACTION:TASK_CREATED:Buy milk] [ACTION:TASK_DELETED:Buy milk] Done.")

        reply = await orchestrator.handle_turn("Add a task to buy milk")

        assert reply.action.type == ActionType.TASK_CREATED
        assert [t.title for t in await orchestrator.tasks.list_active()] == ["Buy milk"]

    async def test_execution_failure_downgrades(self, orchestrator: AssistantOrchestrator, engine: FakeEngine) -> None:
        engine.script("[ACTION:TASK_COMPLETED:Write report] Marked it done.")

        reply = await orchestrator.handle_turn("I finished the report")

        assert reply.sender == ChatSender.ASSISTANT
        assert reply.text == "Marked it done."
        assert reply.action.type == ActionType.NONE
        assert reply.action.item_name == "Write report"
        assert "TASK_COMPLETED failed: Task 'Write report' not found" in reply.action.details

    async def test_tag_only_reply_gets_confirmation(self, orchestrator: AssistantOrchestrator, engine: FakeEngine) -> None:
        engine.script("[ACTION:GOAL_CREATED:Learn Spanish|6 months, 30 min per day]")

        reply = await orchestrator.handle_turn("I want to learn Spanish")

        assert reply.text == 'Created goal "Learn Spanish".'
        [goal] = await orchestrator.goals.list_active()
        assert goal.duration_months == 6

    async def test_list_shown_is_read_only(self, orchestrator: AssistantOrchestrator, engine: FakeEngine) -> None:
        await orchestrator.tasks.create(Task(title="Buy milk"))
        engine.script("Here are your tasks. [ACTION:LIST_SHOWN:tasks]")

        reply = await orchestrator.handle_turn("show my tasks")

        assert reply.action.type == ActionType.LIST_SHOWN
        assert reply.action.details == "1 open tasks: Buy milk"
        assert len(await orchestrator.tasks.list_active()) == 1

    async def test_prompt_carries_context(self, orchestrator: AssistantOrchestrator, engine: FakeEngine) -> None:
        await orchestrator.tasks.create(Task(title="Buy milk", minutes=20))

        await orchestrator.handle_turn("What should I do today?")

        assert "○Buy milk|20min" in engine.prompts[-1]
        assert "What should I do today?" in engine.prompts[-1]
        assert "### Input:" in engine.stop_sequences[-1]


class TestModelLifecycle:

    async def test_model_loaded_once_across_turns(self, orchestrator: AssistantOrchestrator, engine: FakeEngine) -> None:
        await orchestrator.handle_turn("hi")
        await orchestrator.handle_turn("hello again")

        assert engine.load_calls == 1
        assert orchestrator.manager.state == ModelState.READY

    async def test_no_model_installed_is_system_turn(
        self, orchestrator: AssistantOrchestrator, models_dir: Path
    ) -> None:
        for path in models_dir.iterdir():
            path.unlink()

        reply = await orchestrator.handle_turn("hi")

        assert reply.sender == ChatSender.SYSTEM
        assert "No model is installed" in reply.text
        assert reply.action is None
        assert senders(orchestrator) == [ChatSender.USER, ChatSender.SYSTEM]

    async def test_load_failure_is_system_turn(self, orchestrator: AssistantOrchestrator, engine: FakeEngine) -> None:
        engine.fail_load = "out of memory"

        reply = await orchestrator.handle_turn("hi")

        assert reply.sender == ChatSender.SYSTEM
        assert "out of memory" in reply.text
        assert orchestrator.manager.state == ModelState.UNLOADED

    async def test_inference_failure_is_system_turn(self, orchestrator: AssistantOrchestrator, engine: FakeEngine) -> None:
        engine.script(["Sure", " thing"])
        engine.fail_at = 1

        reply = await orchestrator.handle_turn("hi")

        assert reply.sender == ChatSender.SYSTEM
        assert "engine exploded" in reply.text
        assert senders(orchestrator) == [ChatSender.USER, ChatSender.SYSTEM]

    async def test_selected_model_not_installed(
        self, orchestrator: AssistantOrchestrator, settings_store: SettingsStore
    ) -> None:
        settings_store.update(selected_model="Llama 3.2 3B (Q4_K_M)")

        reply = await orchestrator.handle_turn("hi")

        assert reply.sender == ChatSender.SYSTEM
        assert "is not installed" in reply.text

    async def test_command_fallback_without_model(
        self, orchestrator: AssistantOrchestrator, settings_store: SettingsStore, models_dir: Path
    ) -> None:
        for path in models_dir.iterdir():
            path.unlink()
        settings_store.update(use_command_fallback=True)

        reply = await orchestrator.handle_turn("add task Buy milk tomorrow for 20 minutes")

        assert reply.sender == ChatSender.ASSISTANT
        assert reply.action.type == ActionType.TASK_CREATED
        [task] = await orchestrator.tasks.list_active()
        assert task.minutes == 20

    async def test_command_fallback_no_match_is_system_turn(
        self, orchestrator: AssistantOrchestrator, settings_store: SettingsStore, models_dir: Path
    ) -> None:
        for path in models_dir.iterdir():
            path.unlink()
        settings_store.update(use_command_fallback=True)

        reply = await orchestrator.handle_turn("tell me a joke")

        assert reply.sender == ChatSender.SYSTEM


class TestCancellation:
    """Cancelled turns record their partial text with action NONE."""

    async def test_cancel_turn_keeps_partial(self, orchestrator: AssistantOrchestrator, engine: FakeEngine) -> None:
        engine.script(["Sure", ", let", " me", " [ACTION:TASK_CREATED:Buy milk]"])
        engine.pause_at = 2
        turn = asyncio.create_task(orchestrator.handle_turn("Add a task to buy milk"))

        await wait_until_paused(engine)
        assert orchestrator.cancel_turn()
        engine.resume.set()
        reply = await turn

        assert reply.text == "Sure, let me"
        assert reply.action == ActionTaken.none()
        assert await orchestrator.tasks.list_active() == []
        assert senders(orchestrator) == [ChatSender.USER, ChatSender.ASSISTANT]
        assert orchestrator.manager.state == ModelState.READY

    async def test_abandoned_turn_records_partial_and_propagates(
        self, orchestrator: AssistantOrchestrator, engine: FakeEngine
    ) -> None:
        engine.script(["Sure", ", let", " me"])
        engine.pause_at = 2
        turn = asyncio.create_task(orchestrator.handle_turn("Add a task"))

        await wait_until_paused(engine)
        turn.cancel()
        with pytest.raises(asyncio.CancelledError):
            await turn
        engine.resume.set()

        messages = orchestrator.snapshot().messages
        assert [m.sender for m in messages] == [ChatSender.USER, ChatSender.ASSISTANT]
        assert messages[-1].text == "Sure, let"
        assert messages[-1].action == ActionTaken.none()
        assert not orchestrator.busy

    async def test_abandoned_while_model_loads_still_gets_reply(
        self, orchestrator: AssistantOrchestrator, engine: FakeEngine
    ) -> None:
        engine.load_delay = 0.5
        turn = asyncio.create_task(orchestrator.handle_turn("hi"))

        await asyncio.sleep(0.1)
        turn.cancel()
        with pytest.raises(asyncio.CancelledError):
            await turn

        messages = orchestrator.snapshot().messages
        assert [m.sender for m in messages] == [ChatSender.USER, ChatSender.ASSISTANT]
        assert messages[-1].text == "(response cancelled)"
        assert messages[-1].action == ActionTaken.none()

    async def test_cancel_is_scoped_to_owner(self, orchestrator: AssistantOrchestrator, engine: FakeEngine) -> None:
        engine.script(["Sure", ", let", " me"])
        engine.pause_at = 1
        turn = asyncio.create_task(orchestrator.handle_turn("hi", owner="session-a"))

        await wait_until_paused(engine)
        assert orchestrator.cancel_turn(owner="session-b") is False
        assert orchestrator.cancel_turn(owner="session-a") is True
        engine.resume.set()
        reply = await turn

        assert reply.text == "Sure, let"
        assert reply.action == ActionTaken.none()

    async def test_timeout_records_placeholder(
        self, orchestrator: AssistantOrchestrator, engine: FakeEngine, settings_store: SettingsStore
    ) -> None:
        settings_store.update(generation_timeout_seconds=0.1)
        engine.fragment_delay = 0.3

        reply = await orchestrator.handle_turn("hi")

        assert reply.sender == ChatSender.ASSISTANT
        assert reply.text == "(response timed out)"
        assert reply.action.type == ActionType.NONE

    def test_cancel_without_turn(self, orchestrator: AssistantOrchestrator) -> None:
        assert orchestrator.cancel_turn() is False


class TestOrderingAndPersistence:

    async def test_concurrent_turns_are_serialized(self, orchestrator: AssistantOrchestrator, engine: FakeEngine) -> None:
        engine.script("first reply", "second reply")

        first, second = await asyncio.gather(
            orchestrator.handle_turn("first"),
            orchestrator.handle_turn("second"),
        )

        assert [m.text for m in orchestrator.snapshot().messages] == ["first", "first reply", "second", "second reply"]
        assert first.text == "first reply"
        assert second.text == "second reply"

    async def test_turn_is_flushed(
        self, orchestrator: AssistantOrchestrator, memory_repository: InMemoryAssistantMemoryRepository
    ) -> None:
        reply = await orchestrator.handle_turn("hi")

        stored = await memory_repository.load_messages("test")
        assert [m.sender for m in stored] == [ChatSender.USER, ChatSender.ASSISTANT]
        assert stored[-1] == reply

    async def test_empty_utterance_rejected(self, orchestrator: AssistantOrchestrator) -> None:
        with pytest.raises(ValueError):
            await orchestrator.handle_turn("   ")
        assert orchestrator.snapshot().messages == ()

    async def test_clear_history(self, orchestrator: AssistantOrchestrator) -> None:
        await orchestrator.handle_turn("hi")

        await orchestrator.clear_history()

        assert orchestrator.snapshot().messages == ()
