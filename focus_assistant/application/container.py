from typing import Optional

import structlog

from focus_assistant.config.settings import AssistantSettings, SettingsStore
from focus_assistant.domain.action.action_executor import ActionExecutor
from focus_assistant.domain.context.memory.conversation_memory import ConversationMemory
from focus_assistant.domain.context.memory.summarizer import ModelSummarizer, RuleBasedSummarizer, Summarizer
from focus_assistant.domain.model.model_manager import ModelManager
from focus_assistant.domain.orchestration.assistant_orchestrator import AssistantOrchestrator
from focus_assistant.domain.repositories import AssistantMemoryRepository, GoalRepository, TaskRepository
from focus_assistant.infrastructure.inference.engine import InferenceEngine
from focus_assistant.infrastructure.persistence.in_memory import (
    InMemoryAssistantMemoryRepository,
    InMemoryGoalRepository,
    InMemoryTaskRepository,
)
from focus_assistant.infrastructure.persistence.jsonl_memory_repository import JsonlAssistantMemoryRepository

logger = structlog.get_logger(__name__)


class AssistantContainer:
    """Wires settings, model manager, repositories, memory and orchestrator"""

    def __init__(
        self,
        settings_store: SettingsStore,
        manager: ModelManager,
        goals: GoalRepository,
        tasks: TaskRepository,
        memory_repository: AssistantMemoryRepository,
        memory: ConversationMemory,
        orchestrator: AssistantOrchestrator
    ):
        self.settings_store = settings_store
        self.manager = manager
        self.goals = goals
        self.tasks = tasks
        self.memory_repository = memory_repository
        self.memory = memory
        self.orchestrator = orchestrator

    @classmethod
    def build(
        cls,
        settings: Optional[AssistantSettings] = None,
        engine: Optional[InferenceEngine] = None,
        goals: Optional[GoalRepository] = None,
        tasks: Optional[TaskRepository] = None
    ) -> "AssistantContainer":
        """Assemble the assistant from settings"""

        settings_store = SettingsStore(settings)
        settings = settings_store.get()

        manager = ModelManager.from_settings(settings, engine=engine)
        goals = goals or InMemoryGoalRepository()
        tasks = tasks or InMemoryTaskRepository()

        if settings.memory_dir is not None:
            memory_repository: AssistantMemoryRepository = JsonlAssistantMemoryRepository(settings.memory_dir)
        else:
            memory_repository = InMemoryAssistantMemoryRepository()

        rule_based = RuleBasedSummarizer(max_chars=settings.summary_max_chars)
        summarizer: Summarizer = rule_based
        if settings.summarizer == "model":
            summarizer = ModelSummarizer(manager, fallback=rule_based)

        memory = ConversationMemory(
            conversation_id=settings.conversation_id,
            max_turns=settings.max_turns,
            summarizer=summarizer,
            repository=memory_repository
        )
        orchestrator = AssistantOrchestrator(
            manager=manager,
            memory=memory,
            goals=goals,
            tasks=tasks,
            settings_store=settings_store,
            executor=ActionExecutor(goals, tasks)
        )
        return cls(settings_store, manager, goals, tasks, memory_repository, memory, orchestrator)

    async def startup(self) -> None:
        """Restore the saved conversation"""

        loaded = await self.memory.load()
        logger.info(
            "Assistant started",
            models_dir=str(self.manager.models_dir),
            available_models=len(self.manager.list_available_models()),
            restored_messages=loaded
        )

    async def shutdown(self) -> None:
        """Persist memory and release the model"""

        try:
            await self.memory.flush()
        finally:
            await self.manager.shutdown()
        logger.info("Assistant stopped")
