"""
Renders conversation memory and goal/task context into a model prompt.

Four template formats are supported: ``simple`` (``### Instruction``),
``chatml`` (``<|im_start|>``), ``llama`` (``[INST]``) and ``zephyr``
(``<|system|>``). Each supplies default stop sequences so the model does not
run on into the next user turn.
"""

from typing import Dict, List, Optional, Sequence, Tuple

from focus_assistant.domain.models.chat import ChatMessage, ChatSender, ConversationSnapshot
from focus_assistant.domain.models.productivity import Goal, Task

MAX_CONTEXT_ITEMS = 5

SYSTEM_INSTRUCTION = """You are the assistant of a productivity app that tracks goals and tasks.
Reply with one short, friendly message. When the user asks you to change their data,
put exactly one action tag in your reply:
[ACTION:GOAL_CREATED:<goal title>|<N> months, <M> min per day]
[ACTION:TASK_CREATED:<task title>|due <today|tomorrow|YYYY-MM-DD>, <M> min]
[ACTION:TASK_COMPLETED:<task title>]
[ACTION:GOAL_DELETED:<goal title>]
[ACTION:TASK_DELETED:<task title>]
[ACTION:LIST_SHOWN:<goals|tasks>]
Never use more than one tag. For normal conversation use no tag."""

STOP_SEQUENCES: Dict[str, List[str]] = {
    "simple": ["### Input:", "### Instruction:"],
    "chatml": ["<|im_end|>", "<|im_start|>"],
    "llama": ["[INST]", "</s>"],
    "zephyr": ["</s>", "<|user|>"],
}


def describe_context(goals: Sequence[Goal], tasks: Sequence[Task]) -> str:
    """Compact goals/tasks line, at most five of each"""

    lines = []
    if goals:
        entries = [
            f"{goal.title}|{goal.daily_minutes}min|ends:{goal.end_date.isoformat() if goal.end_date else '-'}"
            for goal in goals[:MAX_CONTEXT_ITEMS]
        ]
        lines.append("Context - Goals: " + "; ".join(entries))
    if tasks:
        entries = []
        for task in tasks[:MAX_CONTEXT_ITEMS]:
            status = "✓" if task.is_completed else "○"
            entry = f"{status}{task.title}"
            if task.minutes > 0:
                entry += f"|{task.minutes}min"
            entries.append(entry)
        lines.append("Context - Tasks: " + "; ".join(entries))
    if not lines:
        lines.append("Context: No active goals or tasks yet.")
    return "\n".join(lines)


class PromptBuilder:
    """Builds a prompt in one of the supported template formats"""

    def __init__(self, prompt_format: str = "simple", max_history: int = 8, system_instruction: str = SYSTEM_INSTRUCTION):
        if prompt_format not in STOP_SEQUENCES:
            raise ValueError(f"Unknown prompt format: {prompt_format}")
        self.prompt_format = prompt_format
        self.max_history = max_history
        self.system_instruction = system_instruction

    @property
    def stop_sequences(self) -> List[str]:
        return list(STOP_SEQUENCES[self.prompt_format])

    def build(
        self,
        snapshot: ConversationSnapshot,
        goals: Sequence[Goal] = (),
        tasks: Sequence[Task] = (),
        utterance: Optional[str] = None
    ) -> str:
        """Render system text, context, summary and recent turns"""

        system = self.system_instruction + "\n" + describe_context(goals, tasks)
        if snapshot.summary:
            system += f"\nEarlier in this conversation: {snapshot.summary}"

        turns = self._recent_turns(snapshot.messages, utterance)
        render = getattr(self, f"_render_{self.prompt_format}")
        return render(system, turns)

    def _recent_turns(self, messages: Sequence[ChatMessage], utterance: Optional[str]) -> List[Tuple[str, str]]:
        # SYSTEM turns are error notices for the user, not model context
        turns = [
            ("user" if m.sender == ChatSender.USER else "assistant", m.text)
            for m in messages
            if m.sender != ChatSender.SYSTEM
        ]
        if utterance is not None and (not turns or turns[-1] != ("user", utterance)):
            turns.append(("user", utterance))
        return turns[-self.max_history:] if self.max_history else turns

    def _render_simple(self, system: str, turns: List[Tuple[str, str]]) -> str:
        parts = [f"### Instruction:\n{system}\n"]
        for role, text in turns:
            header = "### Input:" if role == "user" else "### Response:"
            parts.append(f"{header}\n{text}\n")
        parts.append("### Response:\n")
        return "\n".join(parts)

    def _render_chatml(self, system: str, turns: List[Tuple[str, str]]) -> str:
        parts = [f"<|im_start|>system\n{system}\n<|im_end|>"]
        for role, text in turns:
            parts.append(f"<|im_start|>{role}\n{text}\n<|im_end|>")
        parts.append("<|im_start|>assistant\n")
        return "\n".join(parts)

    def _render_llama(self, system: str, turns: List[Tuple[str, str]]) -> str:
        prompt = f"[INST] <<SYS>>\n{system}\n<</SYS>>\n\n"
        first = True
        pending_user: Optional[str] = None
        for role, text in turns:
            if role == "user":
                pending_user = text if pending_user is None else f"{pending_user}\n{text}"
                continue
            if pending_user is None:
                continue
            prompt += f"{pending_user} [/INST] {text} </s>" if first else f"<s>[INST] {pending_user} [/INST] {text} </s>"
            first = False
            pending_user = None
        if pending_user is not None:
            prompt += f"{pending_user} [/INST]" if first else f"<s>[INST] {pending_user} [/INST]"
        return prompt

    def _render_zephyr(self, system: str, turns: List[Tuple[str, str]]) -> str:
        parts = [f"<|system|>\n{system}</s>"]
        for role, text in turns:
            parts.append(f"<|{role}|>\n{text}</s>")
        parts.append("<|assistant|>\n")
        return "\n".join(parts)
