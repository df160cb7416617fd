# =============================================================================
# Station Inference - Conversation Normalizer
# =============================================================================
# Turns a client-supplied history (possibly empty, possibly with consecutive
# same-role turns left behind by client bugs or edits) plus the new user turn
# into the strictly alternating message list the chat template accepts:
#
#     [system]? user assistant user assistant ... user(new)
#
# Malformed histories are repaired, never rejected: a missing turn is filled
# with an empty placeholder of the expected role. Every repair is logged and
# returned so that client bugs stay visible.
# =============================================================================

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from shared.schemas import ConversationTurn, Role

logger = logging.getLogger(__name__)


@dataclass
class NewUserTurn:
    """The content of the turn being submitted with this request."""

    text: Optional[str] = None
    has_image: bool = False
    has_audio: bool = False

    def content_parts(self) -> List[Dict[str, Any]]:
        """Chat-template parts in fixed order: image, audio, text (non-empty only)."""
        parts: List[Dict[str, Any]] = []
        if self.has_image:
            parts.append({"type": "image"})
        if self.has_audio:
            parts.append({"type": "audio"})
        if self.text:
            parts.append({"type": "text", "text": self.text})
        return parts


@dataclass
class NormalizedConversation:
    """
    Template-ready messages plus a record of the repairs that produced them.

    Attributes:
        messages: Chat-template messages ({"role", "content": [parts]}).
        repairs:  One human readable note per inserted or dropped turn.
    """

    messages: List[Dict[str, Any]]
    repairs: List[str] = field(default_factory=list)

    @property
    def roles(self) -> List[str]:
        return [message["role"] for message in self.messages]

    @property
    def repaired(self) -> bool:
        return bool(self.repairs)


def _text_message(role: Role, text: str) -> Dict[str, Any]:
    return {"role": role.value, "content": [{"type": "text", "text": text}]}


def _flip(role: Role) -> Role:
    return Role.ASSISTANT if role is Role.USER else Role.USER


def parse_history(raw: Optional[str]) -> List[ConversationTurn]:
    """
    Parse the JSON-encoded conversation form field.

    Unparseable JSON yields an empty history; entries that are not valid
    turns (unknown role, wrong shape) are dropped. Both are logged.
    """
    if not raw:
        return []
    try:
        items = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Failed to parse conversation history, ignoring it: %s", exc)
        return []
    if not isinstance(items, list):
        logger.warning("Conversation history is not a list (got %s), ignoring it", type(items).__name__)
        return []

    turns: List[ConversationTurn] = []
    for index, item in enumerate(items):
        try:
            turns.append(ConversationTurn.model_validate(item))
        except ValidationError as exc:
            logger.warning("Dropping malformed history entry %d: %s", index, exc.errors()[0]["msg"])
    logger.info("Parsed conversation history with %d messages", len(turns))
    return turns


def normalize_conversation(
    history: List[ConversationTurn],
    new_turn: NewUserTurn,
) -> NormalizedConversation:
    """
    Build a strictly alternating message list ending with the new user turn.

    Algorithm:
        1. A System turn is kept only if it is the first history entry.
        2. Walk the remaining history with expected_role starting at user.
           When a turn's role differs, insert an empty placeholder of the
           expected role first. Emit the turn, then flip expected_role.
        3. If the history ended on a user turn, insert an empty assistant turn.
        4. Append the new user turn (image, audio, text parts).

    Args:
        history:  Prior turns, oldest first.
        new_turn: The content submitted with this request.

    Returns:
        NormalizedConversation whose roles read [system]? user (assistant user)*.
    """
    messages: List[Dict[str, Any]] = []
    repairs: List[str] = []

    remaining = list(history)
    if remaining and remaining[0].role is Role.SYSTEM:
        messages.append(_text_message(Role.SYSTEM, remaining.pop(0).content))

    expected = Role.USER
    for index, turn in enumerate(remaining):
        if turn.role is Role.SYSTEM:
            repairs.append(f"dropped system turn at position {index}")
            continue
        if turn.role is not expected:
            repairs.append(
                f"inserted empty {expected.value} turn before {turn.role.value} turn at position {index}"
            )
            messages.append(_text_message(expected, ""))
        messages.append(_text_message(turn.role, turn.content))
        expected = _flip(turn.role)

    if expected is not Role.USER:
        repairs.append("inserted empty assistant turn after trailing user turn")
        messages.append(_text_message(Role.ASSISTANT, ""))

    messages.append({"role": Role.USER.value, "content": new_turn.content_parts()})

    for note in repairs:
        logger.warning("Conversation repair: %s", note)
    logger.info("Role sequence: %s", ", ".join(m["role"] for m in messages))
    return NormalizedConversation(messages=messages, repairs=repairs)
