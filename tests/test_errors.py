from sqlalchemy.exc import OperationalError, ProgrammingError

from pulseflow.errors import (
    InvalidTransitionError,
    PulseflowError,
    SchemaNotInitializedError,
    is_schema_missing_error,
    missing_table_name,
)


class UndefinedTableError(Exception):
    pass


def test_sqlite_missing_table() -> None:
    exc = OperationalError("SELECT * FROM pulses", {}, Exception("no such table: pulses"))

    assert missing_table_name(exc) == "pulses"
    assert is_schema_missing_error(exc)


def test_postgres_missing_relation_in_cause() -> None:
    try:
        try:
            raise Exception('relation "cost_records" does not exist')
        except Exception as inner:
            raise RuntimeError("query failed") from inner
    except RuntimeError as outer:
        assert missing_table_name(outer) == "cost_records"


def test_driver_error_without_table_name() -> None:
    exc = ProgrammingError("SELECT 1", {}, UndefinedTableError("undefined"))

    assert missing_table_name(exc) is None
    assert is_schema_missing_error(exc)


def test_other_errors_are_not_schema_errors() -> None:
    exc = OperationalError("SELECT 1", {}, Exception("database is locked"))

    assert not is_schema_missing_error(exc)


def test_schema_error_message() -> None:
    err = SchemaNotInitializedError("workflows")

    assert isinstance(err, PulseflowError)
    assert err.table == "workflows"
    assert str(err).startswith("Database schema is not initialized (missing table `workflows`).")
    assert "(missing table" not in str(SchemaNotInitializedError())


def test_transition_errors_share_the_base() -> None:
    assert issubclass(InvalidTransitionError, PulseflowError)
