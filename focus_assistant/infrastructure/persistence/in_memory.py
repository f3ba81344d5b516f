from typing import Dict, List, Optional, Sequence
from collections import defaultdict
import asyncio
import itertools

from focus_assistant.domain.errors import EntityNotFoundError
from focus_assistant.domain.models.chat import ChatMessage
from focus_assistant.domain.models.productivity import Goal, Task


class InMemoryGoalRepository:
    """Goal store held in process memory"""

    def __init__(self):
        self.goals: Dict[int, Goal] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def create(self, goal: Goal) -> int:
        """Insert a goal and return its id"""

        async with self._lock:
            goal_id = next(self._ids)
            self.goals[goal_id] = goal.model_copy(update={"id": goal_id})
            return goal_id

    async def delete(self, goal_id: int) -> None:
        """Delete a goal by id"""

        async with self._lock:
            if goal_id not in self.goals:
                raise EntityNotFoundError(f"Goal {goal_id} not found", {"goal_id": goal_id})
            del self.goals[goal_id]

    async def list_active(self) -> List[Goal]:
        """Active goals in creation order"""

        async with self._lock:
            return [goal for goal in self.goals.values() if goal.is_active]


class InMemoryTaskRepository:
    """Task store held in process memory"""

    def __init__(self):
        self.tasks: Dict[int, Task] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def create(self, task: Task) -> int:
        async with self._lock:
            task_id = next(self._ids)
            self.tasks[task_id] = task.model_copy(update={"id": task_id})
            return task_id

    async def delete(self, task_id: int) -> None:
        async with self._lock:
            if task_id not in self.tasks:
                raise EntityNotFoundError(f"Task {task_id} not found", {"task_id": task_id})
            del self.tasks[task_id]

    async def complete(self, task_id: int) -> None:
        async with self._lock:
            task = self.tasks.get(task_id)
            if task is None:
                raise EntityNotFoundError(f"Task {task_id} not found", {"task_id": task_id})
            self.tasks[task_id] = task.model_copy(update={"is_completed": True})

    async def list_active(self) -> List[Task]:
        """Incomplete tasks ordered by due date"""

        async with self._lock:
            pending = [task for task in self.tasks.values() if not task.is_completed]
            return sorted(pending, key=lambda t: (t.due_date, t.id or 0))


class InMemoryAssistantMemoryRepository:
    """Chat history store held in process memory"""

    def __init__(self):
        self.conversations: Dict[str, List[ChatMessage]] = defaultdict(list)
        self.summaries: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def append_messages(self, conversation_id: str, messages: Sequence[ChatMessage]) -> None:
        async with self._lock:
            self.conversations[conversation_id].extend(messages)

    async def load_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[ChatMessage]:
        async with self._lock:
            messages = list(self.conversations.get(conversation_id, []))
        return messages[-limit:] if limit else messages

    async def save_summary(self, conversation_id: str, summary: Optional[str]) -> None:
        async with self._lock:
            if summary:
                self.summaries[conversation_id] = summary
            else:
                self.summaries.pop(conversation_id, None)

    async def load_summary(self, conversation_id: str) -> Optional[str]:
        async with self._lock:
            return self.summaries.get(conversation_id)

    async def clear(self, conversation_id: str) -> None:
        async with self._lock:
            self.conversations.pop(conversation_id, None)
            self.summaries.pop(conversation_id, None)
