from pathlib import Path

import pytest
import sqlalchemy as sa
from sqlalchemy import create_engine, inspect, text

from pulseflow import migrations
from pulseflow.errors import MigrationError

LEGACY_REVIEW_SCHEMA = [
    "CREATE TABLE review_cards (id VARCHAR NOT NULL PRIMARY KEY, workflow_id VARCHAR NOT NULL)",
    """
    CREATE TABLE review_comments (
        id VARCHAR NOT NULL PRIMARY KEY,
        review_card_id VARCHAR NOT NULL REFERENCES review_cards (id),
        type VARCHAR NOT NULL,
        file_path VARCHAR,
        start_line INTEGER,
        end_line INTEGER,
        severity VARCHAR NOT NULL,
        category VARCHAR NOT NULL,
        description TEXT NOT NULL,
        created_at DATETIME
    )
    """,
    "INSERT INTO review_cards (id, workflow_id) VALUES ('review_1', 'workflow_1')",
    """
    INSERT INTO review_comments (id, review_card_id, type, severity, category, description)
    VALUES ('comment_1', 'review_1', 'review', 'High', 'bug', 'legacy comment')
    """,
]

AUTHOR = sa.Column("author", sa.String(), nullable=False, server_default=sa.text("'agent'"))


@pytest.fixture
def legacy_engine(tmp_path: Path):
    engine = create_engine(f"sqlite:///{tmp_path / 'legacy.db'}")
    with engine.begin() as conn:
        for statement in LEGACY_REVIEW_SCHEMA:
            conn.execute(text(statement))
    yield engine
    engine.dispose()


def _nullable(conn, table: str) -> dict[str, bool]:
    return {col["name"]: col["nullable"] for col in inspect(conn).get_columns(table)}


def test_upgrade_fresh_database_to_head(tmp_path: Path) -> None:
    path = tmp_path / "fresh.db"
    migrations.upgrade_database(f"sqlite+aiosqlite:///{path}")

    engine = create_engine(f"sqlite:///{path}")
    with engine.connect() as conn:
        tables = set(inspect(conn).get_table_names())
        assert {"workflows", "pulses", "sessions", "cost_records"} <= tables
        assert migrations.current_revision(conn) == migrations.head_revision()
        assert _nullable(conn, "review_comments")["severity"] is True
    engine.dispose()


def test_upgrade_twice_is_a_no_op(tmp_path: Path) -> None:
    url = f"sqlite+aiosqlite:///{tmp_path / 'twice.db'}"
    migrations.upgrade_database(url)
    migrations.upgrade_database(url)


def test_add_column_if_missing(legacy_engine) -> None:
    with legacy_engine.begin() as conn:
        assert migrations.add_column_if_missing(conn, "review_comments", AUTHOR) is True
        assert migrations.add_column_if_missing(conn, "review_comments", AUTHOR) is False
        author = conn.execute(text("SELECT author FROM review_comments")).scalar_one()
    assert author == "agent"


def test_relax_rebuilds_table_and_keeps_rows(legacy_engine) -> None:
    with legacy_engine.begin() as conn:
        migrations.add_column_if_missing(conn, "review_comments", AUTHOR)
        assert migrations.relax_review_comment_constraints(conn) is True

    with legacy_engine.begin() as conn:
        nullable = _nullable(conn, "review_comments")
        assert nullable["severity"] is True
        assert nullable["category"] is True
        row = conn.execute(text("SELECT id, description, author FROM review_comments")).one()
        assert tuple(row) == ("comment_1", "legacy comment", "agent")
        conn.execute(
            text(
                "INSERT INTO review_comments (id, review_card_id, type, description) "
                "VALUES ('comment_2', 'review_1', 'review', 'no severity')"
            )
        )
        assert migrations.relax_review_comment_constraints(conn) is False


def test_relax_recovers_rows_from_interrupted_run(legacy_engine) -> None:
    with legacy_engine.begin() as conn:
        migrations.add_column_if_missing(conn, "review_comments", AUTHOR)
        conn.execute(text("CREATE TABLE _review_comments_old AS SELECT * FROM review_comments"))
        conn.execute(
            text(
                "INSERT INTO _review_comments_old (id, review_card_id, type, severity, category, "
                "description, author) VALUES ('comment_9', 'review_1', 'review', 'Low', 'nit', "
                "'only in the copy', 'user')"
            )
        )

        assert migrations.relax_review_comment_constraints(conn) is True

        tables = set(inspect(conn).get_table_names())
        assert "_review_comments_old" not in tables
        ids = conn.execute(text("SELECT id FROM review_comments ORDER BY id")).scalars().all()
        assert ids == ["comment_1", "comment_9"]


def test_relax_requires_author_column(legacy_engine) -> None:
    with legacy_engine.begin() as conn:
        with pytest.raises(MigrationError):
            migrations.relax_review_comment_constraints(conn)


def test_each_revision_changes_a_fresh_database(tmp_path: Path) -> None:
    path = tmp_path / "stepwise.db"
    url = f"sqlite+aiosqlite:///{path}"
    engine = create_engine(f"sqlite:///{path}")

    migrations.upgrade_database(url, "0001_initial")
    with engine.begin() as conn:
        assert "author" not in {c["name"] for c in inspect(conn).get_columns("review_comments")}
        assert _nullable(conn, "review_comments")["severity"] is False
        assert "cache_read_tokens" not in {c["name"] for c in inspect(conn).get_columns("cost_records")}
        conn.execute(text("INSERT INTO workflows (id, title) VALUES ('workflow_1', 'Login')"))
        conn.execute(
            text("INSERT INTO review_cards (id, workflow_id, round_number) VALUES ('review_1', 'workflow_1', 1)")
        )
        conn.execute(
            text(
                "INSERT INTO review_comments (id, review_card_id, type, severity, category, description) "
                "VALUES ('comment_1', 'review_1', 'review', 'High', 'bug', 'early comment')"
            )
        )
        conn.execute(
            text(
                "INSERT INTO cost_records (id, context_type, context_id, model_id, prompt_tokens) "
                "VALUES ('cost_1', 'workflow', 'workflow_1', 'claude-sonnet-4-5', 10)"
            )
        )

    migrations.upgrade_database(url)
    with engine.connect() as conn:
        assert migrations.current_revision(conn) == migrations.head_revision()
        nullable = _nullable(conn, "review_comments")
        assert nullable["severity"] is True
        assert nullable["category"] is True
        author = conn.execute(text("SELECT author FROM review_comments WHERE id = 'comment_1'")).scalar_one()
        assert author == "agent"
        cache = conn.execute(
            text("SELECT cache_read_tokens, cache_write_tokens FROM cost_records WHERE id = 'cost_1'")
        ).one()
        assert tuple(cache) == (0, 0)
        assert {"cache_read_tokens", "cache_write_tokens"} <= {
            c["name"] for c in inspect(conn).get_columns("turns")
        }
    engine.dispose()
