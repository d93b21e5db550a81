"""
Migration Runner - applies pending Alembic migrations at startup.

Enabled with RUN_MIGRATIONS_ON_STARTUP. Alembic's command API is
synchronous, so the asyncpg URL is rewritten for psycopg2.
"""

from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from alembic.util.exc import CommandError
from credpool.config import settings

logger = get_logger(__name__)

# alembic.ini lives at the project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


class MigrationError(Exception):
    """Raised when the schema could not be brought to head."""

    pass


@dataclass(frozen=True)
class MigrationStatus:
    """Current and head revisions."""

    current_revision: str | None
    head_revision: str | None

    @property
    def pending(self) -> bool:
        return self.current_revision != self.head_revision


def sync_database_url(url: str | None = None) -> str:
    """Rewrite an asyncpg URL into its psycopg2 equivalent."""
    url = url or settings.database_url
    return url.replace("postgresql+asyncpg", "postgresql+psycopg2", 1)


def _alembic_config() -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_database_url().replace("%", "%%"))
    return alembic_cfg


def _current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        return MigrationContext.configure(conn).get_current_revision()


def _head_revision(alembic_cfg: Config) -> str | None:
    return ScriptDirectory.from_config(alembic_cfg).get_current_head()


def check_migrations_status() -> MigrationStatus:
    """Report revisions without applying anything."""
    alembic_cfg = _alembic_config()
    engine = create_engine(sync_database_url())
    try:
        return MigrationStatus(
            current_revision=_current_revision(engine),
            head_revision=_head_revision(alembic_cfg),
        )
    finally:
        engine.dispose()


def run_migrations() -> None:
    """
    Upgrade the database to head if it is behind.

    Raises:
        MigrationError: Alembic or the database failed
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    try:
        status = check_migrations_status()
        if not status.pending:
            logger.info("database_schema_up_to_date", revision=status.current_revision)
            return

        logger.info(
            "database_migration_starting",
            from_revision=status.current_revision,
            to_revision=status.head_revision,
        )
        command.upgrade(_alembic_config(), "head")
        logger.info("database_migration_completed", revision=status.head_revision)

    except (SQLAlchemyError, CommandError) as e:
        logger.error("database_migration_failed", error_type=type(e).__name__)
        raise MigrationError(f"Database migration failed: {type(e).__name__}") from e
