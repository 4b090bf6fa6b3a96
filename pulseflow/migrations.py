"""Schema migration helpers shared by the Alembic revisions and the CLI."""

from __future__ import annotations

import logging

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import Column, inspect, text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import OperationalError, ProgrammingError

from .config import settings
from .errors import MigrationError

logger = logging.getLogger(__name__)

_STALE_REVIEW_COMMENTS = "_review_comments_old"


def alembic_config(url: str | None = None) -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(settings.alembic_dir))
    cfg.set_main_option("sqlalchemy.url", url or settings.database_url)
    return cfg


def upgrade_database(url: str | None = None, revision: str = "head") -> None:
    """Apply pending revisions. Must not be called from a running event loop."""
    logger.info("Upgrading database schema to %s", revision)
    command.upgrade(alembic_config(url), revision)


def stamp_database(url: str | None = None, revision: str = "head") -> None:
    """Mark a schema built by ``create_all`` as being at ``revision``."""
    command.stamp(alembic_config(url), revision)


def head_revision() -> str | None:
    return ScriptDirectory.from_config(alembic_config()).get_current_head()


def current_revision(conn: Connection) -> str | None:
    return MigrationContext.configure(conn).get_current_revision()


# =============================================================================
# Additive changes
# =============================================================================


def _column_names(conn: Connection, table: str) -> set[str]:
    return {col["name"] for col in inspect(conn).get_columns(table)}


def add_column_if_missing(conn: Connection, table: str, column: Column) -> bool:
    """Add ``column`` unless it is already there. Returns True if it was added.

    Only an existing column is tolerated; any other failure propagates and
    aborts the migration.
    """
    if column.name in _column_names(conn, table):
        logger.info("Column %s.%s already exists; skipping", table, column.name)
        return False

    col_type = column.type.compile(dialect=conn.dialect)
    ddl = f"ALTER TABLE {table} ADD COLUMN {column.name} {col_type}"
    if column.server_default is not None:
        ddl += f" DEFAULT {column.server_default.arg}"
    if not column.nullable:
        ddl += " NOT NULL"
    try:
        conn.execute(text(ddl))
    except (OperationalError, ProgrammingError) as exc:
        if "duplicate column" in str(exc).lower() or "already exists" in str(exc).lower():
            logger.info("Column %s.%s added concurrently; skipping", table, column.name)
            return False
        raise
    logger.info("Added column %s.%s", table, column.name)
    return True


# =============================================================================
# Review comment constraint relaxation
# =============================================================================

_REVIEW_COMMENTS_DDL = """
CREATE TABLE review_comments (
    id VARCHAR NOT NULL PRIMARY KEY,
    review_card_id VARCHAR NOT NULL REFERENCES review_cards (id) ON DELETE CASCADE,
    type VARCHAR NOT NULL,
    file_path VARCHAR,
    start_line INTEGER,
    end_line INTEGER,
    severity VARCHAR,
    category VARCHAR,
    description TEXT NOT NULL,
    author VARCHAR NOT NULL DEFAULT 'agent',
    created_at DATETIME
)
"""

_REVIEW_COMMENT_COLUMNS = (
    "id, review_card_id, type, file_path, start_line, end_line, "
    "severity, category, description, author, created_at"
)


def _severity_is_nullable(conn: Connection) -> bool:
    for col in inspect(conn).get_columns("review_comments"):
        if col["name"] == "severity":
            return bool(col["nullable"])
    raise MigrationError("review_comments.severity is missing; run the earlier revisions first")


def relax_review_comment_constraints(conn: Connection) -> bool:
    """Make review comment severity and category optional.

    SQLite cannot drop NOT NULL in place, so the table is rebuilt and swapped
    with foreign key enforcement off. A copy left behind by an interrupted
    run is dropped first. Returns False when there was nothing to do.
    """
    tables = set(inspect(conn).get_table_names())
    if conn.dialect.name == "sqlite" and _STALE_REVIEW_COMMENTS in tables:
        if "review_comments" in tables:
            logger.warning("Merging and dropping %s left by an interrupted migration", _STALE_REVIEW_COMMENTS)
            conn.execute(
                text(
                    f"INSERT OR IGNORE INTO review_comments ({_REVIEW_COMMENT_COLUMNS}) "
                    f"SELECT {_REVIEW_COMMENT_COLUMNS} FROM {_STALE_REVIEW_COMMENTS}"
                )
            )
            conn.execute(text(f"DROP TABLE {_STALE_REVIEW_COMMENTS}"))
        else:
            # Interrupted right after the rename: the stale copy holds the only data.
            logger.warning("Restoring review_comments from %s", _STALE_REVIEW_COMMENTS)
            conn.execute(text(f"ALTER TABLE {_STALE_REVIEW_COMMENTS} RENAME TO review_comments"))

    if _severity_is_nullable(conn):
        logger.info("review_comments constraints already relaxed; skipping")
        return False

    if conn.dialect.name != "sqlite":
        conn.execute(text("ALTER TABLE review_comments ALTER COLUMN severity DROP NOT NULL"))
        conn.execute(text("ALTER TABLE review_comments ALTER COLUMN category DROP NOT NULL"))
        logger.info("Relaxed review_comments severity/category constraints")
        return True

    if "author" not in _column_names(conn, "review_comments"):
        raise MigrationError("review_comments.author is missing; run the earlier revisions first")

    fk_enabled = conn.execute(text("PRAGMA foreign_keys")).scalar()
    conn.execute(text("PRAGMA foreign_keys=OFF"))
    try:
        conn.execute(text(f"ALTER TABLE review_comments RENAME TO {_STALE_REVIEW_COMMENTS}"))
        conn.execute(text(_REVIEW_COMMENTS_DDL))
        conn.execute(
            text(
                f"INSERT INTO review_comments ({_REVIEW_COMMENT_COLUMNS}) "
                f"SELECT {_REVIEW_COMMENT_COLUMNS} FROM {_STALE_REVIEW_COMMENTS}"
            )
        )
        conn.execute(text(f"DROP TABLE {_STALE_REVIEW_COMMENTS}"))
        conn.execute(
            text(
                "CREATE INDEX IF NOT EXISTS ix_review_comments_review_card_id "
                "ON review_comments (review_card_id)"
            )
        )
    finally:
        conn.execute(text(f"PRAGMA foreign_keys={'ON' if fk_enabled else 'OFF'}"))

    logger.info("Rebuilt review_comments with optional severity/category")
    return True
