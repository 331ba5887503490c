"""Rendering a conversation into the agent's stdin transcript."""
from __future__ import annotations

import math
from collections.abc import Iterable

from .models import ConversationMessage

_ROLE_LABELS = {"user": "Human", "human": "Human", "assistant": "Assistant"}
NON_TEXT_PLACEHOLDER = "[Non-text content]"


def render_content(content: str | list[dict]) -> str:
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if block.get("type") == "text":
            parts.append(str(block.get("text", "")))
        else:
            parts.append(NON_TEXT_PLACEHOLDER)
    return "\n".join(parts)


def format_conversation(
    system_preamble: str, messages: Iterable[ConversationMessage],
) -> str:
    """Render ``System:`` then ``Human:``/``Assistant:`` blocks, blank-line separated.

    >>> format_conversation("Be brief.", [ConversationMessage("user", "Hi")])
    'System: Be brief.\\n\\nHuman: Hi'
    """
    blocks = []
    if system_preamble:
        blocks.append(f"System: {system_preamble}")
    for message in messages:
        label = _ROLE_LABELS.get(message.role.lower(), message.role.capitalize())
        blocks.append(f"{label}: {render_content(message.content)}")
    return "\n\n".join(blocks).strip()


def estimate_tokens(text: str) -> int:
    """Rough token count at ~4 characters per token."""
    return math.ceil(len(text) / 4)
