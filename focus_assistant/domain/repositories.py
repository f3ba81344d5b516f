"""
Narrow contracts for the data-layer collaborators.

The assistant core only ever issues single-operation calls through these
protocols; it never spans a transaction across repositories.
"""

from typing import List, Optional, Protocol, Sequence

from focus_assistant.domain.models.chat import ChatMessage
from focus_assistant.domain.models.productivity import Goal, Task


class GoalRepository(Protocol):

    async def create(self, goal: Goal) -> int:
        ...

    async def delete(self, goal_id: int) -> None:
        ...

    async def list_active(self) -> List[Goal]:
        ...


class TaskRepository(Protocol):

    async def create(self, task: Task) -> int:
        ...

    async def delete(self, task_id: int) -> None:
        ...

    async def complete(self, task_id: int) -> None:
        ...

    async def list_active(self) -> List[Task]:
        ...


class AssistantMemoryRepository(Protocol):
    """Durable chat history keyed by conversation id"""

    async def append_messages(self, conversation_id: str, messages: Sequence[ChatMessage]) -> None:
        ...

    async def load_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[ChatMessage]:
        ...

    async def save_summary(self, conversation_id: str, summary: Optional[str]) -> None:
        ...

    async def load_summary(self, conversation_id: str) -> Optional[str]:
        ...

    async def clear(self, conversation_id: str) -> None:
        ...
