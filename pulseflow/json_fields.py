"""Schemas for JSON-valued columns and the column type that enforces them.

Every JSON column is validated against its schema when written and again
when read back, so callers only ever see parsed, typed values.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, JsonValue, TypeAdapter, ValidationError
from sqlalchemy import Text
from sqlalchemy.types import TypeDecorator

from .errors import JsonFieldError
from .states import WorkflowStatus

# =============================================================================
# Schemas
# =============================================================================


class _Schema(BaseModel):
    model_config = ConfigDict(extra="forbid")


class VerificationCommand(_Schema):
    command: str
    source: Literal["build", "lint", "test"]


class PulseDefinition(_Schema):
    """A pulse as laid out in a plan, before it is materialized."""

    id: str
    title: str
    description: str
    expected_changes: list[str] = []
    estimated_size: Literal["small", "medium", "large"] = "medium"
    depends_on: list[str] | None = None


class KeyFile(_Schema):
    path: str
    purpose: str
    line_ranges: list[str] | None = None


class CodePattern(_Schema):
    category: str
    description: str
    example: str
    locations: list[str]


class Dependency(_Schema):
    name: str
    purpose: str
    usage_example: str


class IntegrationPoint(_Schema):
    location: str
    description: str
    existing_code: str


class Challenge(_Schema):
    issue: str
    mitigation: str


STRING_LIST = TypeAdapter(list[str])
STAGE_LIST = TypeAdapter(list[WorkflowStatus])
VERIFICATION_COMMANDS = TypeAdapter(list[VerificationCommand])
PULSE_DEFINITIONS = TypeAdapter(list[PulseDefinition])
KEY_FILES = TypeAdapter(list[KeyFile])
CODE_PATTERNS = TypeAdapter(list[CodePattern])
DEPENDENCIES = TypeAdapter(list[Dependency])
INTEGRATION_POINTS = TypeAdapter(list[IntegrationPoint])
CHALLENGES = TypeAdapter(list[Challenge])
JSON_OBJECT = TypeAdapter(dict[str, JsonValue])
JSON_STRING = TypeAdapter(str)
JSON_ANY = TypeAdapter(JsonValue)


# =============================================================================
# Validation helpers
# =============================================================================


def validate_field(adapter: TypeAdapter, field_name: str, value: Any) -> Any:
    """Validate a Python value against ``adapter``, naming the field on failure."""
    try:
        return adapter.validate_python(value)
    except ValidationError as exc:
        raise JsonFieldError(field_name, exc) from exc


def stringify_json(adapter: TypeAdapter, field_name: str, value: Any) -> str:
    validated = validate_field(adapter, field_name, value)
    return adapter.dump_json(validated).decode()


def parse_json(adapter: TypeAdapter, field_name: str, raw: str | bytes) -> Any:
    try:
        return adapter.validate_json(raw)
    except ValidationError as exc:
        raise JsonFieldError(field_name, exc) from exc


class ValidatedJSON(TypeDecorator):
    """Text column holding JSON that must satisfy a pydantic schema."""

    impl = Text
    cache_ok = True

    def __init__(self, adapter: TypeAdapter, field_name: str) -> None:
        super().__init__()
        self.adapter = adapter
        self.field_name = field_name

    def process_bind_param(self, value, dialect):  # type: ignore[override]
        if value is None:
            return None
        return stringify_json(self.adapter, self.field_name, value)

    def process_result_value(self, value, dialect):  # type: ignore[override]
        if value is None:
            return None
        return parse_json(self.adapter, self.field_name, value)
