"""
Action grammar: raw model text -> exactly one ``ActionTaken``.

The model is asked to put its action in a directive tag::

    [ACTION:TASK_CREATED:Buy milk]
    [ACTION:GOAL_CREATED:Learn Spanish|6 months, 30 min per day]

A JSON envelope ``{"action": "create_task", "message": ..., "data": {...}}``
is accepted as well. Only the first well-formed candidate in the text counts;
later ones are ignored, and an invalid first one yields ``NONE``. Model output is
untrusted, so nothing here raises: irregular input degrades to ``NONE``.
"""

from typing import Any, Dict, Iterator, List, Optional, Tuple
import json
import re

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

from focus_assistant.domain.models.chat import ActionTaken, ActionType

logger = structlog.get_logger(__name__)

DIRECTIVE_PATTERN = re.compile(
    r"\[\s*ACTION\s*:\s*(?P<type>[^:\]|]*?)\s*(?::(?P<target>[^\]|]*))?(?:\|(?P<details>[^\]]*))?\]",
    re.IGNORECASE
)

# Enum names plus the action names the JSON prompt format uses
TYPE_ALIASES: Dict[str, ActionType] = {
    "create_goal": ActionType.GOAL_CREATED,
    "add_goal": ActionType.GOAL_CREATED,
    "create_task": ActionType.TASK_CREATED,
    "add_task": ActionType.TASK_CREATED,
    "delete_goal": ActionType.GOAL_DELETED,
    "remove_goal": ActionType.GOAL_DELETED,
    "delete_task": ActionType.TASK_DELETED,
    "remove_task": ActionType.TASK_DELETED,
    "complete_task": ActionType.TASK_COMPLETED,
    "finish_task": ActionType.TASK_COMPLETED,
    "list": ActionType.LIST_SHOWN,
    "show_list": ActionType.LIST_SHOWN,
    "show_progress": ActionType.LIST_SHOWN,
    "reply": ActionType.NONE,
}

TARGET_KEYS = {
    ActionType.GOAL_CREATED: ("goalTitle", "goal_title", "title", "name"),
    ActionType.GOAL_DELETED: ("goalTitle", "goal_title", "title", "name"),
    ActionType.TASK_CREATED: ("taskTitle", "task_title", "title", "name"),
    ActionType.TASK_DELETED: ("taskTitle", "task_title", "title", "name"),
    ActionType.TASK_COMPLETED: ("taskTitle", "task_title", "title", "name"),
    ActionType.LIST_SHOWN: ("list", "items", "target", "title"),
}


class ParsedResponse(BaseModel):
    """Resolved action plus the text to show the user"""
    model_config = ConfigDict(frozen=True)

    action: ActionTaken
    message: str
    candidates: int = 0


def normalize_action_type(token: Optional[str]) -> Optional[ActionType]:
    """Map a type token to the closed enum; None when unrecognized"""

    if token is None:
        return None
    cleaned = re.sub(r"[\s\-]+", "_", str(token).strip())
    if not cleaned:
        return None
    try:
        return ActionType[cleaned.upper()]
    except KeyError:
        return TYPE_ALIASES.get(cleaned.lower())


def iter_json_objects(text: str) -> Iterator[Tuple[int, int, str]]:
    """Yield (start, end, raw) for each balanced top-level {...} block"""

    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and depth > 0:
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield start, index + 1, text[start:index + 1]


class _Candidate:
    __slots__ = ("start", "end", "type_token", "target", "details", "message")

    def __init__(self, start: int, end: int, type_token: Any, target: str, details: str, message: Optional[str] = None):
        self.start = start
        self.end = end
        self.type_token = type_token
        self.target = target
        self.details = details
        self.message = message


class ActionGrammar:
    """Pure parser from generated text to at most one action"""

    def parse(self, text: Optional[str]) -> ActionTaken:
        """Return the action of the first candidate in the text, else NONE"""
        return self.parse_response(text).action

    def parse_response(self, text: Optional[str]) -> ParsedResponse:
        """Parse the action and strip directives from the conversational text"""

        raw = text if isinstance(text, str) else ""
        try:
            candidates = self._find_candidates(raw)
            # Only the first well-formed candidate counts, even when it is invalid
            first = candidates[0] if candidates else None
            action = self._validate(first) if first is not None else None
            if first is not None and action is None:
                logger.debug("First action candidate is invalid", type_token=str(first.type_token)[:40])
            action = action or ActionTaken.none()

            message = self._conversational_text(raw, candidates, first)
            if len(candidates) > 1:
                logger.info(
                    "Multiple action candidates; first one wins",
                    candidates=len(candidates),
                    chosen=action.type.value
                )
            return ParsedResponse(action=action, message=message, candidates=len(candidates))
        except Exception as e:
            logger.warning("Action parsing failed; treating output as conversation", error=str(e))
            return ParsedResponse(action=ActionTaken.none(), message=raw.strip(), candidates=0)

    def strip_directives(self, text: str) -> str:
        """Remove directive tags, keeping the surrounding prose"""
        return _tidy(DIRECTIVE_PATTERN.sub("", text))

    def _find_candidates(self, text: str) -> List[_Candidate]:
        candidates = [
            _Candidate(
                start=match.start(),
                end=match.end(),
                type_token=match.group("type"),
                target=(match.group("target") or "").strip(),
                details=(match.group("details") or "").strip()
            )
            for match in DIRECTIVE_PATTERN.finditer(text)
        ]

        for start, end, raw in iter_json_objects(text):
            if any(c.start <= start < c.end for c in candidates):
                continue
            envelope = _json_envelope(raw)
            if envelope is not None:
                candidates.append(_Candidate(start=start, end=end, **envelope))

        candidates.sort(key=lambda c: c.start)
        return candidates

    def _validate(self, candidate: _Candidate) -> Optional[ActionTaken]:
        action_type = normalize_action_type(candidate.type_token)
        if action_type is None or action_type == ActionType.NONE:
            return None
        try:
            return ActionTaken(type=action_type, item_name=candidate.target, details=candidate.details)
        except ValidationError:
            return None

    def _conversational_text(
        self,
        text: str,
        candidates: List[_Candidate],
        chosen: Optional[_Candidate]
    ) -> str:
        # JSON envelopes carry their own message; tags are simply removed
        if chosen is not None and chosen.message:
            return chosen.message.strip()

        pieces = []
        cursor = 0
        for candidate in candidates:
            pieces.append(text[cursor:candidate.start])
            cursor = candidate.end
        pieces.append(text[cursor:])
        return _tidy("".join(pieces))


def _json_envelope(raw: str) -> Optional[Dict[str, Any]]:
    try:
        payload = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(payload, dict) or "action" not in payload:
        return None

    data = payload.get("data")
    if not isinstance(data, dict):
        data = {}
    action_type = normalize_action_type(payload.get("action"))

    target = ""
    used_key = None
    for key in TARGET_KEYS.get(action_type, ()):
        value = data.get(key)
        if value is not None and str(value).strip():
            target = str(value).strip()
            used_key = key
            break

    details = ", ".join(
        f"{key}={value}"
        for key, value in data.items()
        if key != used_key and value not in (None, "")
    )
    message = payload.get("message")
    return {
        "type_token": payload.get("action"),
        "target": target,
        "details": details,
        "message": message if isinstance(message, str) else None,
    }


def _tidy(text: str) -> str:
    text = re.sub(r"[ \t]{2,}", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
