import json
import random

import pytest

from server.conversation import NewUserTurn, normalize_conversation, parse_history
from shared.schemas import ConversationTurn, Role


def turn(role, content="x"):
    return ConversationTurn(role=role, content=content)


def assert_alternates(roles):
    body = roles[1:] if roles and roles[0] == "system" else roles
    assert body[0] == "user"
    assert body[-1] == "user"
    for previous, current in zip(body, body[1:]):
        assert previous != current


class TestNormalizeConversation:
    def test_empty_history_yields_single_user_turn(self):
        result = normalize_conversation([], NewUserTurn(text="hi"))
        assert result.roles == ["user"]
        assert result.messages[0]["content"] == [{"type": "text", "text": "hi"}]
        assert not result.repaired

    def test_well_formed_history_is_unchanged(self):
        history = [turn(Role.USER, "a"), turn(Role.ASSISTANT, "b")]
        result = normalize_conversation(history, NewUserTurn(text="c"))
        assert result.roles == ["user", "assistant", "user"]
        assert [m["content"][0]["text"] for m in result.messages] == ["a", "b", "c"]
        assert result.repairs == []

    def test_two_user_turns_in_a_row_get_an_empty_assistant_between(self):
        history = [turn(Role.USER, "a"), turn(Role.USER, "b")]
        result = normalize_conversation(history, NewUserTurn(text="c"))
        assert result.roles == ["user", "assistant", "user", "assistant", "user"]
        assert result.messages[1]["content"] == [{"type": "text", "text": ""}]
        assert len(result.repairs) == 2

    def test_history_starting_with_assistant_gets_empty_user_first(self):
        result = normalize_conversation([turn(Role.ASSISTANT, "hello")], NewUserTurn(text="q"))
        assert result.roles == ["user", "assistant", "user"]
        assert result.messages[0]["content"][0]["text"] == ""

    def test_leading_system_turn_is_kept(self):
        history = [turn(Role.SYSTEM, "be brief"), turn(Role.USER, "a"), turn(Role.ASSISTANT, "b")]
        result = normalize_conversation(history, NewUserTurn(text="c"))
        assert result.roles == ["system", "user", "assistant", "user"]

    def test_system_turn_elsewhere_is_dropped_and_recorded(self):
        history = [turn(Role.USER, "a"), turn(Role.SYSTEM, "late"), turn(Role.ASSISTANT, "b")]
        result = normalize_conversation(history, NewUserTurn(text="c"))
        assert result.roles == ["user", "assistant", "user"]
        assert any("system" in note for note in result.repairs)

    def test_new_turn_parts_are_ordered_image_audio_text(self):
        result = normalize_conversation([], NewUserTurn(text="what?", has_image=True, has_audio=True))
        assert [part["type"] for part in result.messages[-1]["content"]] == ["image", "audio", "text"]

    def test_new_turn_omits_empty_parts(self):
        result = normalize_conversation([], NewUserTurn(text=None, has_image=True))
        assert result.messages[-1]["content"] == [{"type": "image"}]

    def test_repairs_are_logged(self, caplog):
        with caplog.at_level("WARNING", logger="server.conversation"):
            normalize_conversation([turn(Role.ASSISTANT)], NewUserTurn(text="q"))
        assert "Conversation repair" in caplog.text

    @pytest.mark.parametrize("seed", range(25))
    def test_random_histories_always_alternate(self, seed):
        rng = random.Random(seed)
        roles = [Role.USER, Role.ASSISTANT, Role.SYSTEM]
        history = [turn(rng.choice(roles), str(i)) for i in range(rng.randint(0, 20))]
        result = normalize_conversation(history, NewUserTurn(text="final"))
        assert_alternates(result.roles)
        assert result.messages[-1]["content"][-1]["text"] == "final"


class TestParseHistory:
    def test_missing_field_is_empty(self):
        assert parse_history(None) == []
        assert parse_history("") == []

    def test_invalid_json_is_ignored(self):
        assert parse_history("[{not json") == []

    def test_non_list_is_ignored(self):
        assert parse_history(json.dumps({"role": "user"})) == []

    def test_unknown_roles_are_dropped(self):
        raw = json.dumps([
            {"role": "user", "content": "a"},
            {"role": "robot", "content": "?"},
            {"role": "assistant", "content": "b"},
        ])
        assert [t.role for t in parse_history(raw)] == [Role.USER, Role.ASSISTANT]

    def test_null_content_becomes_empty(self):
        (parsed,) = parse_history(json.dumps([{"role": "assistant", "content": None}]))
        assert parsed.content == ""

    def test_attachments_are_accepted(self):
        raw = json.dumps([{"role": "user", "content": "look", "attachments": {"image": "a.png"}}])
        (parsed,) = parse_history(raw)
        assert parsed.attachments.image == "a.png"
