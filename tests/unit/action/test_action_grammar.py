"""Tests for ActionGrammar: untrusted text in, exactly one ActionTaken out."""

import pytest

from focus_assistant.domain.action.action_grammar import ActionGrammar, normalize_action_type
from focus_assistant.domain.models.chat import ActionTaken, ActionType


@pytest.fixture
def grammar() -> ActionGrammar:
    return ActionGrammar()


class TestDirectiveTags:

    def test_single_tag(self, grammar: ActionGrammar) -> None:
        parsed = grammar.parse_response("[ACTION:TASK_CREATED:Buy milk] Sure, I added that task.")

        assert parsed.action == ActionTaken(type=ActionType.TASK_CREATED, item_name="Buy milk")
        assert parsed.message == "Sure, I added that task."
        assert parsed.candidates == 1

    def test_details_suffix(self, grammar: ActionGrammar) -> None:
        action = grammar.parse("Done! [ACTION:GOAL_CREATED:Learn Spanish|6 months, 30 min per day]")

        assert action.type == ActionType.GOAL_CREATED
        assert action.item_name == "Learn Spanish"
        assert action.details == "6 months, 30 min per day"

    def test_type_is_case_insensitive(self, grammar: ActionGrammar) -> None:
        assert grammar.parse("[action:task_completed:Review notes]").type == ActionType.TASK_COMPLETED
        assert grammar.parse("[ACTION: complete_task : Review notes ]").item_name == "Review notes"

    def test_list_shown_allows_empty_target(self, grammar: ActionGrammar) -> None:
        action = grammar.parse("Here you go [ACTION:LIST_SHOWN]")

        assert action.type == ActionType.LIST_SHOWN
        assert action.item_name == ""

    def test_no_tags_is_conversation(self, grammar: ActionGrammar) -> None:
        parsed = grammar.parse_response("  Keep going, you're doing great!  ")

        assert parsed.action == ActionTaken.none()
        assert parsed.message == "Keep going, you're doing great!"
        assert parsed.candidates == 0


class TestMultipleCandidates:
    """The first well-formed candidate decides; later ones are ignored entirely."""

    def test_first_tag_wins(self, grammar: ActionGrammar) -> None:
        parsed = grammar.parse_response(
            "[ACTION:TASK_CREATED:Buy milk] [ACTION:TASK_DELETED:Buy milk] Added it."
        )

        assert parsed.action.type == ActionType.TASK_CREATED
        assert parsed.action.item_name == "Buy milk"
        assert "ACTION" not in parsed.message
        assert parsed.candidates == 2

    @pytest.mark.parametrize(
        "text",
        [
            "[ACTION:NONE] [ACTION:GOAL_DELETED:Old goal] ok",
            "[ACTION:LAUNCH_ROCKET:Moon] [ACTION:TASK_DELETED:Buy milk]",
            "[ACTION:TASK_CREATED:] [ACTION:GOAL_DELETED:Old goal]",
            '{"action": "reply", "message": "Hi"} [ACTION:TASK_DELETED:Buy milk]',
        ],
    )
    def test_invalid_first_candidate_blocks_later_ones(self, grammar: ActionGrammar, text: str) -> None:
        parsed = grammar.parse_response(text)

        assert parsed.action == ActionTaken.none()
        assert "ACTION" not in parsed.message


class TestMalformedInput:
    """Irregular input degrades to NONE, never raises."""

    @pytest.mark.parametrize(
        "text",
        [
            "",
            None,
            "[ACTION:]",
            "[ACTION:TASK_CREATED]",
            "[ACTION:NOT_A_TYPE:thing]",
            "[ACTION:TASK_CREATED:   ]",
            "[ACTION:TASK_CREATED:Buy milk",
            "{\"action\": \"create_task\", \"data\": {}}",
            "{\"action\": ",
            "{{{{]]]][[[[",
            "[ACTION:NONE:whatever]",
        ],
    )
    def test_degrades_to_none(self, grammar: ActionGrammar, text) -> None:
        action = grammar.parse(text)

        assert isinstance(action, ActionTaken)
        assert action.type == ActionType.NONE

    def test_non_string_input(self, grammar: ActionGrammar) -> None:
        assert grammar.parse(12345).type == ActionType.NONE

    def test_always_one_of_the_enum_values(self, grammar: ActionGrammar) -> None:
        samples = [
            "[ACTION:GOAL_CREATED:a][ACTION:TASK_CREATED:b]",
            "text [ACTION:LIST_SHOWN:tasks] more [ACTION:bogus:x]",
            "{\"action\":\"reply\",\"message\":\"hi\"} [ACTION:TASK_DELETED:c]",
            "]]][[[ACTION:ACTION:ACTION]",
        ]
        for text in samples:
            assert grammar.parse(text).type in set(ActionType)


class TestJsonEnvelope:

    def test_envelope_action_and_message(self, grammar: ActionGrammar) -> None:
        parsed = grammar.parse_response(
            '{"action": "create_goal", "message": "Goal created!", '
            '"data": {"goalTitle": "Learn Python", "durationMonths": 6, "dailyMinutes": 60}}'
        )

        assert parsed.action.type == ActionType.GOAL_CREATED
        assert parsed.action.item_name == "Learn Python"
        assert parsed.action.details == "durationMonths=6, dailyMinutes=60"
        assert parsed.message == "Goal created!"

    def test_reply_envelope_uses_message(self, grammar: ActionGrammar) -> None:
        parsed = grammar.parse_response('{"action": "reply", "message": "Hello!", "data": {}}')

        assert parsed.action.type == ActionType.NONE
        assert parsed.message == "Hello!"

    def test_tag_before_envelope_wins(self, grammar: ActionGrammar) -> None:
        action = grammar.parse(
            '[ACTION:TASK_COMPLETED:Review notes] {"action": "delete_task", "data": {"taskTitle": "Review notes"}}'
        )
        assert action.type == ActionType.TASK_COMPLETED


class TestStripDirectives:

    def test_strip_keeps_prose(self, grammar: ActionGrammar) -> None:
        assert grammar.strip_directives("Okay  [ACTION:TASK_CREATED:Buy milk]  done") == "Okay done"


class TestNormalizeActionType:

    @pytest.mark.parametrize(
        "token,expected",
        [
            ("GOAL_CREATED", ActionType.GOAL_CREATED),
            ("goal-created", ActionType.GOAL_CREATED),
            ("create_task", ActionType.TASK_CREATED),
            ("show_progress", ActionType.LIST_SHOWN),
            ("reply", ActionType.NONE),
            ("dance", None),
            ("", None),
            (None, None),
        ],
    )
    def test_tokens(self, token, expected) -> None:
        assert normalize_action_type(token) == expected
