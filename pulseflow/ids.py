"""Prefixed, opaque entity identifiers."""

from __future__ import annotations

import secrets
import string
import time

_ALPHABET = string.digits + string.ascii_lowercase


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_id(prefix: str) -> str:
    """Return ``{prefix}_{base36 ms timestamp}_{random}``."""
    timestamp = _base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(8))
    return f"{prefix}_{timestamp}_{suffix}"


def workflow_id() -> str:
    return generate_id("workflow")


def pulse_id() -> str:
    return generate_id("pulse")


def preflight_id() -> str:
    return generate_id("preflight")


def baseline_id() -> str:
    return generate_id("baseline")


def command_baseline_id() -> str:
    return generate_id("cmdbaseline")


def session_id() -> str:
    return generate_id("session")


def note_id() -> str:
    return generate_id("note")


def todo_id() -> str:
    return generate_id("todo")


def turn_id() -> str:
    return generate_id("turn")


def message_id() -> str:
    return generate_id("message")


def tool_id() -> str:
    return generate_id("tool")


def thought_id() -> str:
    return generate_id("thought")


def question_id() -> str:
    return generate_id("question")


def subtask_id() -> str:
    return generate_id("subtask")


def scope_card_id() -> str:
    return generate_id("scope")


def research_card_id() -> str:
    return generate_id("research")


def plan_id() -> str:
    return generate_id("plan")


def review_card_id() -> str:
    return generate_id("review")


def comment_id() -> str:
    return generate_id("comment")


def cost_record_id() -> str:
    return generate_id("cost")


def stage_transition_id() -> str:
    return generate_id("stagetx")


def workflow_error_id() -> str:
    return generate_id("wferror")
