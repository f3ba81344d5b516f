from typing import Any, Dict, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from datetime import datetime, timezone
from enum import Enum
import uuid


class ChatSender(str, Enum):
    """Author of a chat turn"""
    USER = "USER"
    ASSISTANT = "ASSISTANT"
    SYSTEM = "SYSTEM"


class ActionType(str, Enum):
    """Closed set of actions the assistant can perform"""
    GOAL_CREATED = "GOAL_CREATED"
    TASK_CREATED = "TASK_CREATED"
    GOAL_DELETED = "GOAL_DELETED"
    TASK_DELETED = "TASK_DELETED"
    TASK_COMPLETED = "TASK_COMPLETED"
    LIST_SHOWN = "LIST_SHOWN"
    NONE = "NONE"

    @property
    def is_mutation(self) -> bool:
        """Whether executing this action changes the data layer"""
        return self not in (ActionType.LIST_SHOWN, ActionType.NONE)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return uuid.uuid4().hex


class ActionTaken(BaseModel):
    """Structured outcome of one assistant turn"""
    model_config = ConfigDict(frozen=True)

    type: ActionType = Field(default=ActionType.NONE)
    item_name: str = Field(default="", description="Title of the goal or task acted on")
    details: str = Field(default="", description="Free-text details")

    @model_validator(mode="after")
    def _require_target(self) -> "ActionTaken":
        if self.type.is_mutation and not self.item_name.strip():
            raise ValueError(f"{self.type.value} requires a non-empty item name")
        return self

    @classmethod
    def none(cls, details: str = "") -> "ActionTaken":
        """Conversational-only outcome"""
        return cls(type=ActionType.NONE, item_name="", details=details)

    def downgraded(self, reason: str) -> "ActionTaken":
        """Return a NONE action that keeps the failure reason in details"""
        parts = [p for p in (self.details, f"{self.type.value} failed: {reason}") if p]
        return ActionTaken(type=ActionType.NONE, item_name=self.item_name, details="; ".join(parts))


class ChatMessage(BaseModel):
    """One immutable chat turn"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_message_id)
    sender: ChatSender
    text: str
    timestamp: datetime = Field(default_factory=utc_now)
    action: Optional[ActionTaken] = None

    @model_validator(mode="before")
    @classmethod
    def _assistant_has_action(cls, data: Any) -> Any:
        # Every assistant turn records an action, NONE when nothing happened
        if isinstance(data, dict):
            sender = data.get("sender")
            if sender in (ChatSender.ASSISTANT, ChatSender.ASSISTANT.value) and data.get("action") is None:
                data = {**data, "action": ActionTaken.none()}
        return data

    @model_validator(mode="after")
    def _text_required(self) -> "ChatMessage":
        if self.sender != ChatSender.SYSTEM and not self.text.strip():
            raise ValueError(f"{self.sender.value} message text must not be empty")
        return self

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @classmethod
    def user(cls, text: str) -> "ChatMessage":
        return cls(sender=ChatSender.USER, text=text)

    @classmethod
    def assistant(cls, text: str, action: Optional[ActionTaken] = None) -> "ChatMessage":
        return cls(sender=ChatSender.ASSISTANT, text=text, action=action or ActionTaken.none())

    @classmethod
    def system(cls, text: str) -> "ChatMessage":
        return cls(sender=ChatSender.SYSTEM, text=text)

    def to_prompt_dict(self) -> Dict[str, str]:
        """Role/content pair used by prompt templates"""
        return {"role": self.sender.value.lower(), "content": self.text}


class ConversationSnapshot(BaseModel):
    """Read-only view of memory used to build the next prompt"""
    model_config = ConfigDict(frozen=True)

    messages: Tuple[ChatMessage, ...] = ()
    summary: Optional[str] = None

    @property
    def turn_count(self) -> int:
        return len(self.messages) + (1 if self.summary else 0)
