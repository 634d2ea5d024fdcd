"""Named runners: the injected capability that executes compiled SELECTs."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Mapping, Optional

from .errors import ConnectionNotReady

logger = logging.getLogger("readorm")


class Connection:
    """Adapter giving every runner the same ``await execute(sql, params) -> rows`` shape.

    ``runner`` is either a DB-API 2.0 connection using the ``qmark`` paramstyle
    (anything with a ``cursor()`` method, e.g. ``sqlite3``), or a callable
    ``execute(sql, params)`` returning a list of mappings, or an awaitable
    resolving to one. Rows are always returned as plain dicts.

    A DB-API runner is called synchronously, so each statement blocks the
    event loop until its rows are fetched, and concurrent loads run one
    after another. Pass an async callable (for instance one wrapping
    ``aiosqlite`` or ``asyncpg``) when loads should overlap.
    """

    def __init__(self, runner: Any, name: str = "default"):
        self.runner = runner
        self.name = name

    def __repr__(self) -> str:
        return f"Connection(name={self.name!r}, runner={self.runner!r})"

    async def execute(self, sql: str, parameters: Optional[list[Any]] = None) -> list[dict[str, Any]]:
        """Run sql with positional parameters and return the rows as dicts."""
        parameters = list(parameters or ())
        logger.debug("SQL [%s] %s %r", self.name, sql, parameters)
        if hasattr(self.runner, "cursor"):
            rows = self._execute_dbapi(sql, parameters)
        else:
            rows = self.runner(sql, parameters)
            if inspect.isawaitable(rows):
                rows = await rows
            rows = [dict(row) for row in rows or ()]
        logger.debug("SQL [%s] returned %d row(s)", self.name, len(rows))
        return rows

    def _execute_dbapi(self, sql: str, parameters: list[Any]) -> list[dict[str, Any]]:
        cursor = self.runner.cursor()
        try:
            cursor.execute(sql, parameters)
            if cursor.description is None:
                return []
            names = [column[0] for column in cursor.description]
            return [dict(zip(names, row)) for row in cursor.fetchall()]
        finally:
            cursor.close()


_connections: dict[str, Connection] = {}


def connect(
    runner: Any | Callable[..., Any],
    name: str = "default",
    morphs: Optional[Mapping[str, Any]] = None,
) -> Connection:
    """Register runner under name; optionally merge morphs into the morph map.

    See Connection for the runner shapes accepted. DB-API connections block
    the event loop while they execute.
    """
    connection = Connection(runner, name=name)
    _connections[name] = connection
    if morphs:
        from .morph import morph_map
        morph_map.register(morphs)
    return connection


def disconnect(name: str = "default") -> None:
    """Forget the runner registered under name (the runner itself is left open)."""
    _connections.pop(name, None)


def _get_connection(name: str = "default") -> Connection:
    try:
        return _connections[name]
    except KeyError as error:
        raise ConnectionNotReady(f"No connection configured with name=`{name}`") from error
