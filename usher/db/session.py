# usher/db/session.py
import time
import logging
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from usher.core.config import UsherSettings, get_settings

logger = logging.getLogger("usher")


def _sql_head(statement: str) -> str:
    if not statement:
        return ""
    # Collapse whitespace + trim. No params logged.
    head = " ".join(statement.split())
    return head[:240]


def install_query_logging(engine: Engine, *, slow_query_ms: float, log_sql: bool = False) -> None:
    """
    Attach cursor-execute hooks that warn about slow statements.

    Parameters are never logged; the statement head only when log_sql is set.
    """

    @event.listens_for(engine, "before_cursor_execute")
    def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        context._usher_query_start = time.perf_counter()

    @event.listens_for(engine, "after_cursor_execute")
    def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        start = getattr(context, "_usher_query_start", None)
        if start is None:
            return

        duration_ms = (time.perf_counter() - start) * 1000.0
        if duration_ms < slow_query_ms:
            return

        if log_sql:
            logger.warning(
                "slow_db_query duration_ms=%.2f sql=%s",
                duration_ms,
                _sql_head(statement),
            )
        else:
            logger.warning("slow_db_query duration_ms=%.2f", duration_ms)


def create_usher_engine(
    settings: Optional[UsherSettings] = None,
    *,
    database_url: Optional[str] = None,
    **engine_kwargs,
) -> Engine:
    """
    Build an Engine for settings.database_url (or an explicit URL) with the
    slow-query hooks installed.
    """
    settings = settings or get_settings()
    url = database_url or settings.database_url

    if url.startswith("sqlite"):
        engine_kwargs.setdefault("connect_args", {"check_same_thread": False})

    engine = create_engine(url, future=True, **engine_kwargs)
    install_query_logging(
        engine,
        slow_query_ms=float(settings.slow_db_query_ms),
        log_sql=bool(settings.log_db_sql),
    )
    return engine


def make_session_factory(engine: Engine, settings: Optional[UsherSettings] = None) -> sessionmaker:
    """
    Session factory for the Usher ORM models.

    When a schema prefix is configured, the ORM tables (declared without a
    schema) are translated onto it.
    """
    settings = settings or get_settings()
    bind = engine
    if settings.prefix:
        bind = engine.execution_options(schema_translate_map={None: settings.prefix})
    return sessionmaker(autocommit=False, autoflush=False, bind=bind, future=True)
