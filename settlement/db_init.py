"""
Startup database preparation: reach the server, bring the schema to the
current Alembic head (or check that it is there), then seed the fee policy.
"""
import logging
import time
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from settlement.config import settings
from settlement.models.database import Base, SessionLocal, _normalize_database_url, engine
from settlement import models  # noqa: F401 - register models
from settlement.services.fees import seed_default_fee_policy

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def wait_for_db(retries: int, retry_delay_seconds: int) -> int:
    """Block until the database answers a ping. Returns the attempt that succeeded."""
    for attempt in range(1, retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except OperationalError as exc:
            if attempt == retries:
                raise RuntimeError(
                    f"Database unreachable after {retries} attempts, check DATABASE_URL"
                ) from exc
            logger.warning("Database ping %s/%s failed: %s", attempt, retries, exc)
            time.sleep(retry_delay_seconds)
        else:
            logger.info("Database reachable (attempt %s)", attempt)
            return attempt
    raise RuntimeError("DB_CONNECT_RETRIES must be at least 1")


def _alembic_config():
    from alembic.config import Config

    alembic_ini = PROJECT_ROOT / "alembic.ini"
    if not alembic_ini.exists():
        raise RuntimeError(f"Alembic configuration not found at {alembic_ini}")
    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", _normalize_database_url(settings.DATABASE_URL))
    return config


def run_migrations() -> None:
    from alembic import command

    command.upgrade(_alembic_config(), "head")


def schema_revision() -> tuple[str | None, str | None]:
    """(current revision in the database, head revision of the migration scripts)."""
    from alembic.runtime.migration import MigrationContext
    from alembic.script import ScriptDirectory

    head = ScriptDirectory.from_config(_alembic_config()).get_current_head()
    with engine.connect() as conn:
        current = MigrationContext.configure(conn).get_current_revision()
    return current, head


def ensure_schema_current() -> None:
    current, head = schema_revision()
    if current != head:
        raise RuntimeError(
            f"Database schema is at revision {current}, expected {head}. "
            "Run `alembic upgrade head` or set DB_AUTO_MIGRATE=true."
        )


def prepare_schema() -> None:
    if settings.DATABASE_URL.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
    elif settings.DB_AUTO_MIGRATE:
        run_migrations()
    else:
        ensure_schema_current()


def seed_fee_policy(db: Session) -> None:
    seed_default_fee_policy(db)
    logger.info("Platform fee policy ready")


def init_db(session_factory=SessionLocal) -> None:
    wait_for_db(
        retries=settings.DB_CONNECT_RETRIES,
        retry_delay_seconds=settings.DB_CONNECT_RETRY_DELAY_SECONDS,
    )
    prepare_schema()
    db = session_factory()
    try:
        seed_fee_policy(db)
    finally:
        db.close()
