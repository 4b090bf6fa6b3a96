"""Error types and helpers for the pulseflow engine."""

from __future__ import annotations

import re


class PulseflowError(Exception):
    """Base class for engine errors."""


class InvalidTransitionError(PulseflowError):
    """Raised when a state change is not allowed from the entity's current state."""


class JsonFieldError(PulseflowError, ValueError):
    """Raised when a persisted JSON field fails schema validation."""

    def __init__(self, field_name: str, cause: Exception | str) -> None:
        self.field_name = field_name
        self.cause = cause
        super().__init__(f"{field_name}: schema validation failed - {cause}")


class MigrationError(PulseflowError):
    """Raised when a migration or data repair cannot proceed safely."""


class SchemaNotInitializedError(PulseflowError):
    """Raised when a query hits a table the migrations have not created yet."""

    def __init__(self, table: str | None = None) -> None:
        self.table = table
        where = f" (missing table `{table}`)" if table else ""
        super().__init__(
            f"Database schema is not initialized{where}.\n"
            "Run: `pulseflow upgrade`\n"
            "Or check with: `pulseflow schema-check`"
        )


# PostgreSQL reports `relation "x" does not exist`, SQLite `no such table: x`.
_MISSING_TABLE_PATTERNS = (
    re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE),
    re.compile(r"no such table:\s*(?P<table>\w+)", re.IGNORECASE),
)


def _error_chain(exc: BaseException):
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        orig = getattr(current, "orig", None)
        if isinstance(orig, BaseException) and id(orig) not in seen:
            seen.add(id(orig))
            yield orig
        current = current.__cause__ or current.__context__


def missing_table_name(exc: BaseException) -> str | None:
    """Name of the table a database error complains about, if any."""
    for err in _error_chain(exc):
        for pattern in _MISSING_TABLE_PATTERNS:
            found = pattern.search(str(err))
            if found:
                return found.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    if missing_table_name(exc) is not None:
        return True
    # asyncpg raises UndefinedTableError with driver-specific wording
    return any(type(err).__name__ == "UndefinedTableError" for err in _error_chain(exc))
