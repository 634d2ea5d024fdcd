"""Bookkeeping of loaded relations and coordination of in-flight loads."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Hashable, Iterable, Optional

logger = logging.getLogger("readorm")

DEFAULT_MAX_ENTRIES = 100_000


class LoadRegistry:
    """Which relations are known to be loaded for which (model, id), plus in-flight loads.

    Loaded entries are kept in least-recently-used order and the oldest are
    evicted past ``max_entries``. Only the fact that a relation was loaded is
    recorded, never the loaded values.

    ``coordinate`` collapses concurrent requests sharing a key into one
    underlying load: the first caller starts it, later callers await the same
    task, and the key is released when the task settles, whatever its outcome.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.max_entries = max_entries
        self._loaded: OrderedDict[tuple[type, Any], set[str]] = OrderedDict()
        self._in_flight: dict[Hashable, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._loaded)

    def __repr__(self) -> str:
        return f"LoadRegistry(entries={len(self._loaded)}, in_flight={len(self._in_flight)})"

    def mark(self, model: type, identifier: Any, names: Iterable[str]) -> None:
        """Record that relations names are loaded for the row (model, identifier)."""
        if identifier is None:
            return
        key = (model, identifier)
        entry = self._loaded.get(key)
        if entry is None:
            entry = self._loaded[key] = set()
        else:
            self._loaded.move_to_end(key)
        entry.update(names)
        while len(self._loaded) > self.max_entries:
            self._loaded.popitem(last=False)

    def mark_objects(self, objects: Iterable[Any], names: Iterable[str]) -> None:
        names = list(names)
        for obj in objects:
            self.mark(type(obj), obj.id, names)

    def is_loaded(self, model: type, identifier: Any, names: Iterable[str]) -> bool:
        """True when every one of names was marked for (model, identifier)."""
        if identifier is None:
            return False
        key = (model, identifier)
        entry = self._loaded.get(key)
        if entry is None:
            return False
        self._loaded.move_to_end(key)
        return set(names) <= entry

    def forget(self, model: type, identifier: Any, names: Optional[Iterable[str]] = None) -> None:
        """Drop the marks for (model, identifier), or only those for names."""
        key = (model, identifier)
        if names is None:
            self._loaded.pop(key, None)
        elif key in self._loaded:
            self._loaded[key].difference_update(names)

    def in_flight(self, key: Hashable) -> Optional[asyncio.Task]:
        return self._in_flight.get(key)

    async def coordinate(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``factory()`` unless a load with the same key is already running.

        Returns the outcome of the shared load (or raises its error) for
        every caller. Cancelling one caller does not cancel the shared load.
        """
        task = self._in_flight.get(key)
        if task is not None:
            logger.debug("Waiting for in-flight load %r", key)
            return await asyncio.shield(task)
        task = asyncio.ensure_future(self._run(key, factory))
        self._in_flight[key] = task
        return await asyncio.shield(task)

    async def _run(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await factory()
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]

    def clear(self) -> None:
        self._loaded.clear()
        self._in_flight.clear()


default_registry = LoadRegistry()
