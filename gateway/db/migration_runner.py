"""
Migration Runner - Runs Alembic migrations at application startup.

Applies pending migrations when the application starts and AUTO_MIGRATE is on.
"""

from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


def to_sync_database_url(url: str) -> str:
    """Convert an async driver URL into its synchronous counterpart.

    Alembic's command API uses synchronous connections.
    """
    return url.replace("+asyncpg", "+psycopg").replace("+aiosqlite", "")


def _get_current_revision(engine: Engine) -> str | None:
    """Get the current database revision."""
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        return context.get_current_revision()


def _get_head_revision(alembic_cfg: Config) -> str | None:
    """Get the head revision from migration scripts."""
    script = ScriptDirectory.from_config(alembic_cfg)
    return script.get_current_head()


def run_migrations(database_url: str) -> None:
    """
    Run pending Alembic migrations.

    Only runs migrations if there are pending ones.
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    sync_url = to_sync_database_url(database_url)
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option("sqlalchemy.url", sync_url.replace("%", "%%"))

    engine = create_engine(sync_url)
    try:
        current = _get_current_revision(engine)
        head = _get_head_revision(alembic_cfg)

        if current == head:
            logger.info("database_schema_up_to_date", revision=current)
            return

        logger.info("database_migrations_starting", current=current, head=head)
        try:
            command.upgrade(alembic_cfg, "head")
        except Exception as e:
            logger.error("database_migration_failed", error=str(e), exc_info=True)
            raise RuntimeError(f"Database migration failed: {e}") from e

        logger.info("database_migrations_complete", revision=_get_current_revision(engine))
    finally:
        engine.dispose()
