"""
Rule-based command parser for user utterances.

Used when no model can be made ready and command fallback is enabled.
Recognizes:

- "create goal Learn Python in 6 months 60 minutes per day"
- "add task Watch OOP video tomorrow for 30 minutes"
- "complete / finish / mark done <task>"
- "delete goal <goal>", "delete task <task>"
- "list goals", "show my tasks", "how am I doing"
"""

from typing import Callable, List, Optional
import re

import structlog
from pydantic import BaseModel, ConfigDict

from focus_assistant.domain.models.chat import ActionTaken, ActionType

logger = structlog.get_logger(__name__)

_QUOTE = r"[\"'“”]?"

CREATE_GOAL = re.compile(
    rf"(?:create|add|new|set)\s+(?:a\s+)?goal\s+(?:to\s+)?{_QUOTE}(?P<title>.+?){_QUOTE}"
    r"(?=\s+(?:in|for|at|with)\s+\d|\s*$)",
    re.IGNORECASE
)
ADD_TASK = re.compile(
    rf"(?:add|create|new)\s+(?:a\s+)?task\s+{_QUOTE}(?P<title>.+?){_QUOTE}"
    r"(?=\s+(?:for|on|due|by)\b|\s+(?:today|tomorrow|next\s+week)\b|\s*$)",
    re.IGNORECASE
)
COMPLETE_TASK = re.compile(
    rf"(?:complete|finish(?:ed)?|done\s+with|mark\s+(?:as\s+)?(?:done|complete))\s+(?:the\s+)?(?:task\s+)?"
    rf"{_QUOTE}(?P<title>.+?){_QUOTE}(?:\s+task)?(?=\s+(?:please|thanks)\b|[.!]?\s*$)",
    re.IGNORECASE
)
DELETE_GOAL = re.compile(
    rf"(?:delete|remove)\s+(?:the\s+)?goal\s+{_QUOTE}(?P<title>.+?){_QUOTE}(?=\s+(?:please|thanks)\b|[.!]?\s*$)",
    re.IGNORECASE
)
DELETE_TASK = re.compile(
    rf"(?:delete|remove)\s+(?:the\s+)?task\s+{_QUOTE}(?P<title>.+?){_QUOTE}(?=\s+(?:please|thanks)\b|[.!]?\s*$)",
    re.IGNORECASE
)
LIST_GOALS = re.compile(r"(?:list|show|what\s+are)\s+(?:me\s+)?(?:my\s+)?goals?", re.IGNORECASE)
LIST_TASKS = re.compile(r"(?:list|show|what\s+are)\s+(?:me\s+)?(?:my\s+)?(?:today'?s?\s+)?tasks?", re.IGNORECASE)
SHOW_PROGRESS = re.compile(r"how\s+am\s+i\s+doing|my\s+progress|show\s+progress", re.IGNORECASE)

MONTHS = re.compile(r"(\d+)\s*months?", re.IGNORECASE)
DAILY_HOURS = re.compile(r"(\d+)\s*(?:hours?|hrs?|h)\s*(?:per|a|each)\s*day", re.IGNORECASE)
DAILY_MINUTES = re.compile(r"(\d+)\s*(?:minutes?|mins?|m)\s*(?:per|a|each)\s*day", re.IGNORECASE)
DURATION_HOURS = re.compile(r"(\d+)\s*(?:hours?|hrs?|h)\b", re.IGNORECASE)
DURATION_MINUTES = re.compile(r"(\d+)\s*(?:minutes?|mins?|m)\b", re.IGNORECASE)
DUE = re.compile(r"\b(today|tomorrow|next\s+week|\d{4}-\d{2}-\d{2})\b", re.IGNORECASE)

COMMAND_WORDS = ("create", "add", "delete", "remove", "complete", "finish", "done", "list", "show", "progress")


class ParsedCommand(BaseModel):
    """Action recognized in a user utterance plus a reply for the user"""
    model_config = ConfigDict(frozen=True)

    action: ActionTaken
    reply: str


def looks_like_command(utterance: str) -> bool:
    lowered = utterance.lower()
    return any(word in lowered for word in COMMAND_WORDS)


def goal_details(text: str) -> str:
    """Duration and daily time phrased as action details"""

    parts = []
    months = MONTHS.search(text)
    if months:
        parts.append(f"{int(months.group(1))} months")

    hours = DAILY_HOURS.search(text)
    minutes = DAILY_MINUTES.search(text)
    if hours:
        parts.append(f"{int(hours.group(1)) * 60} min per day")
    elif minutes:
        parts.append(f"{int(minutes.group(1))} min per day")
    return ", ".join(parts)


def task_details(text: str) -> str:
    parts = []
    due = DUE.search(text)
    if due:
        due_date = re.sub(r"\s+", "_", due.group(1).lower())
        parts.append(f"due {due_date}")

    hours = DURATION_HOURS.search(text)
    minutes = DURATION_MINUTES.search(text)
    if hours:
        parts.append(f"{int(hours.group(1)) * 60} min")
    elif minutes:
        parts.append(f"{int(minutes.group(1))} min")
    return ", ".join(parts)


class CommandParser:
    """Regex parser tried in order of specificity"""

    def __init__(self):
        self._rules: List[Callable[[str], Optional[ParsedCommand]]] = [
            self._create_goal,
            self._add_task,
            self._complete_task,
            self._delete_goal,
            self._delete_task,
            self._list_or_progress,
        ]

    def parse(self, utterance: str) -> Optional[ParsedCommand]:
        """Return the first matching command, or None for plain chat"""

        text = utterance.strip()
        if not text:
            return None
        for rule in self._rules:
            command = rule(text)
            if command is not None:
                logger.debug(
                    "Parsed command",
                    action_type=command.action.type.value,
                    item_name=command.action.item_name
                )
                return command
        return None

    def _create_goal(self, text: str) -> Optional[ParsedCommand]:
        match = CREATE_GOAL.search(text)
        if not match or not match.group("title").strip():
            return None
        title = match.group("title").strip()
        details = goal_details(text)
        return ParsedCommand(
            action=ActionTaken(type=ActionType.GOAL_CREATED, item_name=title, details=details),
            reply=f"I'll create a goal for \"{title}\"" + (f" ({details})." if details else ".")
        )

    def _add_task(self, text: str) -> Optional[ParsedCommand]:
        match = ADD_TASK.search(text)
        if not match or not match.group("title").strip():
            return None
        title = match.group("title").strip()
        details = task_details(text)
        return ParsedCommand(
            action=ActionTaken(type=ActionType.TASK_CREATED, item_name=title, details=details),
            reply=f"I'll add the task \"{title}\"" + (f" ({details})." if details else ".")
        )

    def _complete_task(self, text: str) -> Optional[ParsedCommand]:
        match = COMPLETE_TASK.search(text)
        if not match or not match.group("title").strip():
            return None
        title = match.group("title").strip()
        return ParsedCommand(
            action=ActionTaken(type=ActionType.TASK_COMPLETED, item_name=title),
            reply=f"Great job! I'll mark \"{title}\" as complete."
        )

    def _delete_goal(self, text: str) -> Optional[ParsedCommand]:
        match = DELETE_GOAL.search(text)
        if not match or not match.group("title").strip():
            return None
        title = match.group("title").strip()
        return ParsedCommand(
            action=ActionTaken(type=ActionType.GOAL_DELETED, item_name=title),
            reply=f"I'll delete the goal \"{title}\"."
        )

    def _delete_task(self, text: str) -> Optional[ParsedCommand]:
        match = DELETE_TASK.search(text)
        if not match or not match.group("title").strip():
            return None
        title = match.group("title").strip()
        return ParsedCommand(
            action=ActionTaken(type=ActionType.TASK_DELETED, item_name=title),
            reply=f"I'll delete the task \"{title}\"."
        )

    def _list_or_progress(self, text: str) -> Optional[ParsedCommand]:
        if SHOW_PROGRESS.search(text):
            return ParsedCommand(
                action=ActionTaken(type=ActionType.LIST_SHOWN, item_name="", details="progress"),
                reply="Here's your progress summary!"
            )
        if LIST_GOALS.search(text):
            return ParsedCommand(
                action=ActionTaken(type=ActionType.LIST_SHOWN, item_name="goals"),
                reply="Here are your current goals."
            )
        if LIST_TASKS.search(text):
            return ParsedCommand(
                action=ActionTaken(type=ActionType.LIST_SHOWN, item_name="tasks"),
                reply="Here are your tasks."
            )
        return None
