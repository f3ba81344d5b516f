"""
Applies one parsed ``ActionTaken`` to the goal and task repositories.

Dispatch is a closed table over ``ActionType``; every member has exactly one
handler. Targets are resolved by title, case-insensitively: an exact match
first, then a unique substring match. Failures surface as
``ActionExecutionError`` for the orchestrator to downgrade.
"""

from datetime import date, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar
import re
import time

import structlog

from focus_assistant.domain.action.command_parser import (
    DAILY_HOURS,
    DAILY_MINUTES,
    DURATION_HOURS,
    DURATION_MINUTES,
    MONTHS,
)
from focus_assistant.domain.errors import ActionExecutionError, AssistantError
from focus_assistant.domain.models.chat import ActionTaken, ActionType
from focus_assistant.domain.models.productivity import Goal, Task
from focus_assistant.domain.repositories import GoalRepository, TaskRepository
from focus_assistant.infrastructure.observability.logging import assistant_logger, metrics

logger = structlog.get_logger(__name__)

# key=value details produced from JSON envelopes
KEYED_MONTHS = re.compile(r"(?:duration_?months|months)\s*=\s*(\d+)", re.IGNORECASE)
KEYED_DAILY = re.compile(r"(?:daily_?minutes|minutes_?per_?day)\s*=\s*(\d+)", re.IGNORECASE)
KEYED_MINUTES = re.compile(r"(?:duration_?minutes|minutes|estimated_?minutes)\s*=\s*(\d+)", re.IGNORECASE)
KEYED_DUE = re.compile(r"(?:due_?date|date|due)\s*=\s*([\w-]+)", re.IGNORECASE)
KEYED_GOAL = re.compile(r"(?:goal_?title|goal)\s*=\s*([^,;]+)", re.IGNORECASE)
DUE_PHRASE = re.compile(r"\bdue\s+(today|tomorrow|next[\s_]week|\d{4}-\d{2}-\d{2})\b", re.IGNORECASE)
GOAL_PHRASE = re.compile(r"\bfor\s+goal\s+([^,;]+)", re.IGNORECASE)

MAX_LISTED = 10

Item = TypeVar("Item", Goal, Task)
Handler = Callable[[ActionTaken], Awaitable[ActionTaken]]


def parse_due_date(token: Optional[str], today: Optional[date] = None) -> date:
    """Resolve today/tomorrow/next week/ISO dates; unknown tokens mean today"""

    today = today or date.today()
    if not token:
        return today
    lowered = re.sub(r"[\s_]+", "_", token.strip().lower())
    if lowered == "tomorrow":
        return today + timedelta(days=1)
    if lowered == "next_week":
        return today + timedelta(days=7)
    try:
        return date.fromisoformat(lowered)
    except ValueError:
        return today


def goal_from_action(action: ActionTaken) -> Goal:
    details = action.details or ""
    fields = {"title": action.item_name.strip()}

    months = KEYED_MONTHS.search(details) or MONTHS.search(details)
    if months:
        fields["duration_months"] = max(1, int(months.group(1)))

    keyed = KEYED_DAILY.search(details)
    hours = DAILY_HOURS.search(details)
    minutes = DAILY_MINUTES.search(details)
    if keyed:
        fields["daily_minutes"] = max(1, int(keyed.group(1)))
    elif hours:
        fields["daily_minutes"] = max(1, int(hours.group(1)) * 60)
    elif minutes:
        fields["daily_minutes"] = max(1, int(minutes.group(1)))

    return Goal(**fields)


def task_fields_from_action(action: ActionTaken) -> Dict[str, object]:
    details = action.details or ""
    fields: Dict[str, object] = {"title": action.item_name.strip()}

    due = KEYED_DUE.search(details) or DUE_PHRASE.search(details)
    fields["due_date"] = parse_due_date(due.group(1) if due else None)

    keyed = KEYED_MINUTES.search(details)
    hours = DURATION_HOURS.search(details)
    minutes = DURATION_MINUTES.search(details)
    if keyed:
        fields["minutes"] = int(keyed.group(1))
    elif hours:
        fields["minutes"] = int(hours.group(1)) * 60
    elif minutes:
        fields["minutes"] = int(minutes.group(1))
    return fields


def resolve_by_title(items: Sequence[Item], name: str, kind: str) -> Item:
    """Exact case-insensitive title match, else a unique substring match"""

    wanted = name.strip().lower()
    if not wanted:
        raise ActionExecutionError(f"No {kind} name given")

    exact = [item for item in items if item.title.strip().lower() == wanted]
    if exact:
        return exact[0]

    partial = [item for item in items if wanted in item.title.lower()]
    if len(partial) == 1:
        return partial[0]
    if len(partial) > 1:
        raise ActionExecutionError(
            f"{kind.capitalize()} name '{name}' is ambiguous",
            {"matches": [item.title for item in partial]}
        )
    raise ActionExecutionError(f"{kind.capitalize()} '{name}' not found", {"name": name})


class ActionExecutor:
    """Executes at most one action per call against the data layer"""

    def __init__(self, goals: GoalRepository, tasks: TaskRepository):
        self.goals = goals
        self.tasks = tasks
        self._handlers: Dict[ActionType, Handler] = {
            ActionType.GOAL_CREATED: self._create_goal,
            ActionType.TASK_CREATED: self._create_task,
            ActionType.GOAL_DELETED: self._delete_goal,
            ActionType.TASK_DELETED: self._delete_task,
            ActionType.TASK_COMPLETED: self._complete_task,
            ActionType.LIST_SHOWN: self._list,
            ActionType.NONE: self._noop,
        }
        missing = set(ActionType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for action types: {sorted(t.value for t in missing)}")

    async def execute(self, action: ActionTaken) -> ActionTaken:
        """Apply the action and return the resolved value to record"""

        handler = self._handlers[action.type]
        started = time.perf_counter()
        try:
            resolved = await handler(action)
        except ActionExecutionError as e:
            self._log(action, started, success=False, error=e.message)
            raise
        except AssistantError as e:
            # Repository lookups that miss
            self._log(action, started, success=False, error=e.message)
            raise ActionExecutionError(e.message, e.details) from e
        except ValueError as e:
            self._log(action, started, success=False, error=str(e))
            raise ActionExecutionError(f"Invalid {action.type.value} values: {e}") from e

        if action.type != ActionType.NONE:
            self._log(action, started, success=True)
            metrics.increment_counter("actions_executed", tags={"type": action.type.value})
        return resolved

    def _log(self, action: ActionTaken, started: float, success: bool, error: Optional[str] = None) -> None:
        assistant_logger.log_action_execution(
            action_type=action.type.value,
            item_name=action.item_name,
            duration_ms=(time.perf_counter() - started) * 1000,
            success=success,
            error=error
        )

    async def _create_goal(self, action: ActionTaken) -> ActionTaken:
        goal = goal_from_action(action)
        goal_id = await self.goals.create(goal)
        logger.info("Goal created", goal_id=goal_id, title=goal.title)
        return action

    async def _create_task(self, action: ActionTaken) -> ActionTaken:
        fields = task_fields_from_action(action)

        goal_ref = KEYED_GOAL.search(action.details) or GOAL_PHRASE.search(action.details)
        if goal_ref:
            goal = resolve_by_title(await self.goals.list_active(), goal_ref.group(1), "goal")
            fields["goal_id"] = goal.id

        task_id = await self.tasks.create(Task(**fields))
        logger.info("Task created", task_id=task_id, title=fields["title"])
        return action

    async def _delete_goal(self, action: ActionTaken) -> ActionTaken:
        goal = resolve_by_title(await self.goals.list_active(), action.item_name, "goal")
        await self.goals.delete(goal.id)
        return action

    async def _delete_task(self, action: ActionTaken) -> ActionTaken:
        task = resolve_by_title(await self.tasks.list_active(), action.item_name, "task")
        await self.tasks.delete(task.id)
        return action

    async def _complete_task(self, action: ActionTaken) -> ActionTaken:
        task = resolve_by_title(await self.tasks.list_active(), action.item_name, "task")
        await self.tasks.complete(task.id)
        return action

    async def _list(self, action: ActionTaken) -> ActionTaken:
        target = action.item_name.strip().lower()
        sections: List[str] = []

        if target in ("", "all", "progress") or "goal" in target:
            goals = await self.goals.list_active()
            titles = ", ".join(g.title for g in goals[:MAX_LISTED]) or "none"
            sections.append(f"{len(goals)} active goals: {titles}")
        if target in ("", "all", "progress") or "task" in target:
            tasks = await self.tasks.list_active()
            titles = ", ".join(t.title for t in tasks[:MAX_LISTED]) or "none"
            sections.append(f"{len(tasks)} open tasks: {titles}")
        if not sections:
            raise ActionExecutionError(f"Cannot list '{action.item_name}'")

        listing = "; ".join(sections)
        details = f"{action.details}; {listing}" if action.details else listing
        return ActionTaken(type=ActionType.LIST_SHOWN, item_name=action.item_name, details=details)

    async def _noop(self, action: ActionTaken) -> ActionTaken:
        return action
