"""
Query Executor: runs profile queries and processing commands against the
profile's source connection through SQLAlchemy.
"""
import logging
import re
import threading
import time
from typing import Any, Dict, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from dataexport.collaborators import CommandResult, QueryResult

logger = logging.getLogger(__name__)

_AT_PARAM = re.compile(r"(?<![\w@])@(\w+)")


def to_bind_style(sql: str, params: Optional[Dict[str, Any]]):
    """Rewrite `@name` parameters into SQLAlchemy's `:name` binds."""
    if not params:
        return sql, {}
    binds = {name.lstrip("@"): value for name, value in params.items()}
    return _AT_PARAM.sub(lambda m: f":{m.group(1)}" if m.group(1) in binds else m.group(0), sql), binds


class SqlAlchemyQueryExecutor:
    """One engine per connection string, created on first use."""

    def __init__(self):
        self._engines: Dict[str, Engine] = {}
        self._lock = threading.Lock()

    def _engine_for(self, connection) -> Engine:
        url = connection.connection_string
        with self._lock:
            engine = self._engines.get(url)
            if engine is None:
                engine = create_engine(url, pool_pre_ping=True)
                self._engines[url] = engine
            return engine

    def execute_query(self, connection, sql: str, params: Optional[Dict[str, Any]] = None) -> QueryResult:
        started = time.monotonic()
        try:
            statement, binds = to_bind_style(sql, params)
            with self._engine_for(connection).connect() as conn:
                result = conn.execute(text(statement), binds)
                rows = [dict(row) for row in result.mappings()]
            elapsed = int((time.monotonic() - started) * 1000)
            logger.debug("[PIPELINE] Query on '%s' returned %d rows in %dms", connection.name, len(rows), elapsed)
            return QueryResult(True, rows, None, elapsed)
        except SQLAlchemyError as e:
            elapsed = int((time.monotonic() - started) * 1000)
            logger.error(f"[PIPELINE] Query on '{connection.name}' failed: {e}")
            return QueryResult(False, [], str(e), elapsed)

    def execute_command(self, connection, sql: str, params: Optional[Dict[str, Any]] = None,
                        timeout: int = 30) -> CommandResult:
        started = time.monotonic()
        try:
            statement, binds = to_bind_style(sql, params)
            with self._engine_for(connection).begin() as conn:
                result = conn.execute(text(statement), binds)
                affected = result.rowcount if result.rowcount and result.rowcount > 0 else 0
            elapsed = int((time.monotonic() - started) * 1000)
            return CommandResult(True, affected, None, elapsed)
        except SQLAlchemyError as e:
            elapsed = int((time.monotonic() - started) * 1000)
            logger.error(f"[PIPELINE] Command on '{connection.name}' failed: {e}")
            return CommandResult(False, 0, str(e), elapsed)

    def dispose(self):
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()
