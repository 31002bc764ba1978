"""
Token counting for assistant chat history.

Uses the tiktoken ``cl100k_base`` encoding; when the encoding cannot be
loaded (no cached BPE file and no network) a 4-characters-per-token
estimate is used instead.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import tiktoken

if TYPE_CHECKING:
    from google.genai import types

logger = logging.getLogger(__name__)

ENCODING_NAME = "cl100k_base"
MESSAGE_OVERHEAD = 4

_encoder = None
_USE_TIKTOKEN = True


def _get_encoder():
    """Lazily load the encoder; remember a failure so we only log it once."""
    global _encoder, _USE_TIKTOKEN
    if _encoder is not None:
        return _encoder
    if not _USE_TIKTOKEN:
        return None
    try:
        _encoder = tiktoken.get_encoding(ENCODING_NAME)
        return _encoder
    except Exception as exc:
        logger.warning("tiktoken encoding unavailable, using char heuristic: %s", exc)
        _USE_TIKTOKEN = False
        return None


def content_text(content: "types.Content") -> str:
    """Flatten a Content message (text, tool calls, tool results) into text."""
    parts = []
    for part in content.parts or []:
        if getattr(part, "text", None):
            parts.append(part.text)
        elif getattr(part, "function_call", None):
            parts.append(f"function_call:{part.function_call.name}({part.function_call.args})")
        elif getattr(part, "function_response", None):
            parts.append(
                f"function_response:{part.function_response.name}={part.function_response.response}"
            )
    return "\n".join(parts)


def count_tokens_text(text: str) -> int:
    """Count tokens in a plain string."""
    enc = _get_encoder()
    if enc is not None:
        return len(enc.encode(text))
    return max(1, len(text) // 4)


def count_tokens(messages: list["types.Content"]) -> int:
    """Total tokens across *messages*, plus a small per-message overhead."""
    return sum(count_tokens_text(content_text(msg)) + MESSAGE_OVERHEAD for msg in messages)


def split_at_token_boundary(
    messages: list["types.Content"],
    target_head_tokens: int,
) -> tuple[list["types.Content"], list["types.Content"]]:
    """
    Split *messages* into (head, tail) where head holds roughly
    *target_head_tokens* tokens.

    The split happens at a message boundary and the tail always starts with
    a plain user message, so function calls stay paired with their results.
    """
    running = 0
    split_idx = len(messages)
    for i, msg in enumerate(messages):
        msg_tokens = count_tokens_text(content_text(msg)) + MESSAGE_OVERHEAD
        if running + msg_tokens > target_head_tokens:
            split_idx = i
            break
        running += msg_tokens

    while split_idx < len(messages) and not _is_user_turn(messages[split_idx]):
        split_idx += 1

    return list(messages[:split_idx]), list(messages[split_idx:])


def _is_user_turn(content: "types.Content") -> bool:
    if content.role != "user":
        return False
    return not any(getattr(part, "function_response", None) for part in content.parts or [])
