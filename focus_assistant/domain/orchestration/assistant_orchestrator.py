"""
Single coordination point for assistant turns.

One turn: record the user message, make a model READY, build the prompt,
stream the generation, parse at most one action, execute it, record the
assistant message. Turns run one at a time in arrival order. Load and
inference failures become SYSTEM turns; action failures are downgraded to
``NONE`` and the turn still succeeds.
"""

from typing import Dict, Optional
import asyncio
import time
import uuid

import structlog

from focus_assistant.config.settings import AssistantSettings, SettingsStore
from focus_assistant.domain.action.action_executor import ActionExecutor
from focus_assistant.domain.action.action_grammar import ActionGrammar
from focus_assistant.domain.action.command_parser import CommandParser
from focus_assistant.domain.context.memory.conversation_memory import ConversationMemory
from focus_assistant.domain.context.prompt_builder import PromptBuilder
from focus_assistant.domain.errors import ActionExecutionError, InferenceError, ModelLoadError
from focus_assistant.domain.model.model_handle import FragmentCallback, Generation, ModelHandle
from focus_assistant.domain.model.model_manager import ModelManager
from focus_assistant.domain.models.chat import ActionTaken, ActionType, ChatMessage, ConversationSnapshot
from focus_assistant.domain.repositories import GoalRepository, TaskRepository
from focus_assistant.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

CANCELLED_PLACEHOLDER = "(response cancelled)"
TIMED_OUT_PLACEHOLDER = "(response timed out)"
EMPTY_PLACEHOLDER = "(no response)"

CONFIRMATIONS: Dict[ActionType, str] = {
    ActionType.GOAL_CREATED: 'Created goal "{name}".',
    ActionType.TASK_CREATED: 'Added task "{name}".',
    ActionType.GOAL_DELETED: 'Deleted goal "{name}".',
    ActionType.TASK_DELETED: 'Deleted task "{name}".',
    ActionType.TASK_COMPLETED: 'Marked "{name}" as complete.',
    ActionType.LIST_SHOWN: "{details}",
    ActionType.NONE: "",
}


class AssistantOrchestrator:
    """Runs user turns against the model, the data layer and memory"""

    def __init__(
        self,
        manager: ModelManager,
        memory: ConversationMemory,
        goals: GoalRepository,
        tasks: TaskRepository,
        settings_store: SettingsStore,
        executor: Optional[ActionExecutor] = None,
        grammar: Optional[ActionGrammar] = None,
        command_parser: Optional[CommandParser] = None
    ):
        self.manager = manager
        self.memory = memory
        self.goals = goals
        self.tasks = tasks
        self.settings_store = settings_store
        self.executor = executor or ActionExecutor(goals, tasks)
        self.grammar = grammar or ActionGrammar()
        self.command_parser = command_parser or CommandParser()

        self._turn_lock = asyncio.Lock()
        self._active: Optional[Generation] = None
        self._active_owner: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self._turn_lock.locked()

    def snapshot(self) -> ConversationSnapshot:
        return self.memory.snapshot_for_prompt()

    def cancel_turn(self, owner: Optional[str] = None) -> bool:
        """Stop the in-flight generation; the turn keeps its partial text

        With an owner, only a turn started by that owner is cancelled.
        """

        generation = self._active
        if generation is None or generation.finished:
            return False
        if owner is not None and owner != self._active_owner:
            logger.info("Ignoring cancel for a turn owned by another caller", owner=owner)
            return False
        generation.cancel()
        logger.info("Turn cancellation requested", owner=owner)
        return True

    async def clear_history(self) -> None:
        async with self._turn_lock:
            await self.memory.clear()

    async def handle_turn(
        self,
        utterance: str,
        on_fragment: Optional[FragmentCallback] = None,
        owner: Optional[str] = None
    ) -> ChatMessage:
        """Process one user utterance and return the recorded reply"""

        text = utterance.strip()
        if not text:
            raise ValueError("Utterance must not be empty")

        async with self._turn_lock:
            turn_id = uuid.uuid4().hex[:12]
            structlog.contextvars.bind_contextvars(
                conversation_id=self.memory.conversation_id,
                turn_id=turn_id
            )
            started = time.perf_counter()
            try:
                reply = await self._run_turn(text, on_fragment, owner)
                logger.info(
                    "Turn completed",
                    sender=reply.sender.value,
                    action_type=reply.action.type.value if reply.action else None
                )
                return reply
            finally:
                metrics.record_latency("turn", (time.perf_counter() - started) * 1000)
                structlog.contextvars.unbind_contextvars("conversation_id", "turn_id")

    async def _run_turn(self, text: str, on_fragment: Optional[FragmentCallback], owner: Optional[str]) -> ChatMessage:
        await self.memory.append(ChatMessage.user(text))
        settings = self.settings_store.get()

        try:
            handle = await self._ensure_model(settings)
            generation = await self._start_generation(handle, settings)
        except asyncio.CancelledError:
            # Abandoned before generating; the user turn still gets a reply
            await self._record(ChatMessage.assistant(CANCELLED_PLACEHOLDER, ActionTaken.none()))
            metrics.increment_counter("turns_cancelled")
            raise
        except ModelLoadError as e:
            logger.warning("Model not ready for turn", error=e.message, details=e.details)
            if settings.use_command_fallback:
                reply = await self._command_fallback(text)
                if reply is not None:
                    return await self._record(reply)
            return await self._record(ChatMessage.system(f"The assistant model could not be loaded: {e.message}"))
        except InferenceError as e:
            logger.error("Prompt or generation setup failed", error=e.message)
            return await self._record(ChatMessage.system(f"The assistant could not respond: {e.message}"))

        self._active = generation
        self._active_owner = owner
        try:
            raw = await generation.collect(on_fragment)
        except asyncio.CancelledError:
            # The caller went away; keep what was produced, then propagate
            await self._record(self._partial_reply(generation))
            raise
        except InferenceError as e:
            logger.error("Generation failed", error=e.message)
            return await self._record(ChatMessage.system(f"The assistant could not respond: {e.message}"))
        finally:
            self._active = None
            self._active_owner = None

        if generation.cancelled:
            return await self._record(self._partial_reply(generation))

        parsed = self.grammar.parse_response(raw)
        action = await self._execute(parsed.action)
        message = parsed.message or self._confirmation(action) or EMPTY_PLACEHOLDER
        return await self._record(ChatMessage.assistant(message, action))

    async def _ensure_model(self, settings: AssistantSettings) -> ModelHandle:
        current = self.manager.current
        if current is not None and (not settings.selected_model or current.descriptor.matches(settings.selected_model)):
            return current

        descriptor = self.manager.default_model(settings.selected_model)
        if descriptor is None:
            if settings.selected_model:
                raise ModelLoadError(
                    f"Selected model '{settings.selected_model}' is not installed",
                    {"models_dir": str(self.manager.models_dir)}
                )
            raise ModelLoadError("No model is installed", {"models_dir": str(self.manager.models_dir)})
        return await self.manager.ensure_ready(descriptor)

    async def _start_generation(self, handle: ModelHandle, settings: AssistantSettings) -> Generation:
        builder = PromptBuilder(settings.prompt_format)
        goals = await self.goals.list_active()
        tasks = await self.tasks.list_active()
        prompt = builder.build(self.memory.snapshot_for_prompt(), goals, tasks)

        return handle.generate(
            prompt,
            max_tokens=settings.max_tokens,
            stop_sequences=builder.stop_sequences + list(settings.stop_sequences),
            temperature=settings.temperature,
            top_p=settings.top_p,
            timeout=settings.generation_timeout_seconds
        )

    async def _execute(self, action: ActionTaken) -> ActionTaken:
        if action.type == ActionType.NONE:
            return action
        try:
            return await self.executor.execute(action)
        except ActionExecutionError as e:
            logger.info("Action downgraded", action_type=action.type.value, reason=e.message)
            return action.downgraded(e.message)

    async def _command_fallback(self, text: str) -> Optional[ChatMessage]:
        command = self.command_parser.parse(text)
        if command is None:
            return None

        action = await self._execute(command.action)
        if action.type == ActionType.NONE:
            reply = f"Sorry, I couldn't do that: {action.details}"
        elif action.type == ActionType.LIST_SHOWN:
            reply = f"{command.reply} {self._confirmation(action)}"
        else:
            reply = command.reply
        logger.info("Handled turn with command fallback", action_type=action.type.value)
        return ChatMessage.assistant(reply, action)

    def _partial_reply(self, generation: Generation) -> ChatMessage:
        partial = generation.text.strip()
        if not partial:
            partial = TIMED_OUT_PLACEHOLDER if generation.timed_out else CANCELLED_PLACEHOLDER
        metrics.increment_counter("turns_cancelled")
        return ChatMessage.assistant(partial, ActionTaken.none())

    def _confirmation(self, action: ActionTaken) -> str:
        return CONFIRMATIONS[action.type].format(name=action.item_name, details=action.details)

    async def _record(self, message: ChatMessage) -> ChatMessage:
        stored = await self.memory.append(message)
        try:
            await self.memory.flush()
        except OSError as e:
            # Unsaved turns stay pending for the next flush
            logger.error("Failed to persist conversation memory", error=str(e))
        return stored
