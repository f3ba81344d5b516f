"""Tests for PromptBuilder context rendering and template formats."""

from datetime import date

import pytest

from focus_assistant.domain.context.prompt_builder import PromptBuilder, describe_context
from focus_assistant.domain.models.chat import ChatMessage, ConversationSnapshot
from focus_assistant.domain.models.productivity import Goal, Task


def snapshot(*messages: ChatMessage, summary=None) -> ConversationSnapshot:
    return ConversationSnapshot(messages=messages, summary=summary)


class TestDescribeContext:

    def test_empty(self) -> None:
        assert describe_context([], []) == "Context: No active goals or tasks yet."

    def test_goals_and_tasks(self) -> None:
        goals = [Goal(title="Learn Spanish", daily_minutes=30, start_date=date(2025, 1, 1), duration_months=6)]
        tasks = [Task(title="Buy milk", minutes=20), Task(title="Stretch", minutes=0, is_completed=True)]

        context = describe_context(goals, tasks)

        assert "Context - Goals: Learn Spanish|30min|ends:2025-07-01" in context
        assert "Context - Tasks: ○Buy milk|20min; ✓Stretch" in context

    def test_at_most_five_of_each(self) -> None:
        tasks = [Task(title=f"t{i}") for i in range(8)]

        context = describe_context([], tasks)

        assert "t4" in context
        assert "t5" not in context


class TestFormats:

    def test_simple_format(self) -> None:
        prompt = PromptBuilder("simple").build(snapshot(ChatMessage.user("Add a task to buy milk")))

        assert prompt.startswith("### Instruction:\n")
        assert "### Input:\nAdd a task to buy milk" in prompt
        assert prompt.endswith("### Response:\n")

    def test_chatml_format(self) -> None:
        prompt = PromptBuilder("chatml").build(snapshot(ChatMessage.user("hi")))

        assert prompt.startswith("<|im_start|>system\n")
        assert "<|im_start|>user\nhi\n<|im_end|>" in prompt
        assert prompt.endswith("<|im_start|>assistant\n")

    def test_llama_format_with_history(self) -> None:
        prompt = PromptBuilder("llama").build(snapshot(
            ChatMessage.user("hi"),
            ChatMessage.assistant("hello!"),
            ChatMessage.user("add a task"),
        ))

        assert prompt.startswith("[INST] <<SYS>>\n")
        assert "hi [/INST] hello! </s>" in prompt
        assert prompt.endswith("<s>[INST] add a task [/INST]")

    def test_zephyr_format(self) -> None:
        prompt = PromptBuilder("zephyr").build(snapshot(ChatMessage.user("hi")))

        assert prompt.startswith("<|system|>\n")
        assert "<|user|>\nhi</s>" in prompt
        assert prompt.endswith("<|assistant|>\n")

    def test_unknown_format(self) -> None:
        with pytest.raises(ValueError):
            PromptBuilder("alpaca")

    @pytest.mark.parametrize("prompt_format", ["simple", "chatml", "llama", "zephyr"])
    def test_each_format_has_stop_sequences(self, prompt_format: str) -> None:
        assert PromptBuilder(prompt_format).stop_sequences


class TestHistory:

    def test_system_turns_excluded(self) -> None:
        prompt = PromptBuilder("chatml").build(snapshot(
            ChatMessage.user("hi"),
            ChatMessage.system("The assistant model could not be loaded"),
            ChatMessage.user("hello?"),
        ))

        assert "could not be loaded" not in prompt
        assert "hello?" in prompt

    def test_summary_included(self) -> None:
        prompt = PromptBuilder().build(snapshot(ChatMessage.user("hi"), summary="User created goal Learn Spanish"))

        assert "Earlier in this conversation: User created goal Learn Spanish" in prompt

    def test_history_is_capped(self) -> None:
        messages = [ChatMessage.user(f"turn {i}") for i in range(12)]

        prompt = PromptBuilder("chatml", max_history=3).build(snapshot(*messages))

        assert "turn 8" not in prompt
        assert "turn 9" in prompt
        assert "turn 11" in prompt

    def test_utterance_appended_once(self) -> None:
        builder = PromptBuilder("chatml")

        with_history = builder.build(snapshot(ChatMessage.user("hi")), utterance="hi")
        without = builder.build(snapshot(), utterance="hi")

        assert with_history.count("<|im_start|>user") == 1
        assert without.count("<|im_start|>user") == 1

    def test_grammar_described(self) -> None:
        prompt = PromptBuilder().build(snapshot(ChatMessage.user("hi")))
        assert "[ACTION:TASK_CREATED:" in prompt
