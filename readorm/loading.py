"""Batched eager loading of relations, nested paths included.

Each relation is fetched with one query per chunk of ``IN_CHUNK_SIZE``
distinct keys for the whole set of parent objects, never one query per
parent. Fetched rows are matched back to parents by key, so the order in
which chunks complete does not matter.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Optional

from .collection import Collection
from .errors import RelationKindMismatch
from .morph import morph_map
from .query import Query, parse_relation_path
from .registry import LoadRegistry, default_registry
from .relations import RelationDescriptor, require_relation, resolve_relation

logger = logging.getLogger("readorm")

IN_CHUNK_SIZE = 1000

PIVOT_KEY = "__pivot_fk"
THROUGH_KEY = "__through_fk"

_JOINED_KINDS = frozenset({"belongs_to_many", "has_one_through", "has_many_through"})


def _unique(values: Iterable[Any]) -> list[Any]:
    """Distinct non-null values, in first-seen order."""
    seen = set()
    result = []
    for value in values:
        if value is None or value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


def _chunks(values: list[Any], size: int) -> Iterable[list[Any]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


def _one_of_many_condition(table: str, column: str, aggregate: str, partition: list[str],
                           soft_deletes: bool = False) -> str:
    """Keep, per partition, the row whose column equals the partition's MAX/MIN."""
    links = " AND ".join(f"sub.{key} = {table}.{key}" for key in partition)
    if soft_deletes:
        links += " AND sub.deleted_at IS NULL"
    return f"{table}.{column} = (SELECT {aggregate.upper()}(sub.{column}) FROM {table} sub WHERE {links})"


def parent_key_attribute(descriptor: RelationDescriptor) -> str:
    """Attribute of the parent object whose value identifies its related rows."""
    if descriptor.kind == "belongs_to":
        return descriptor.foreign_key
    if descriptor.kind == "belongs_to_many":
        return descriptor.parent_key
    if descriptor.kind == "morph_to":
        return descriptor.id_column
    return descriptor.local_key


def related_key_column(descriptor: RelationDescriptor) -> Optional[str]:
    """Column of the related rows matched against the parent key.

    None for joined kinds, whose rows carry the parent key in a tagged column.
    """
    if descriptor.kind in ("has_one", "has_many"):
        return descriptor.foreign_key
    if descriptor.kind == "belongs_to":
        return descriptor.owner_key
    if descriptor.is_morph_owned:
        return descriptor.id_column
    return None


def relation_query(descriptor: RelationDescriptor, parent: type, keys: list[Any],
                   columns: Optional[list[str]] = None, tag_keys: bool = True) -> Query:
    """Query for the rows related to the parents whose keys are keys.

    Joined kinds select the parent key as ``__pivot_fk`` / ``__through_fk``
    when tag_keys is set. When columns is given, only those columns (plus the
    key needed to match rows to parents) are selected.

    Raises:
        RelationKindMismatch: For ``morph_to``, whose target depends on each row.
    """
    if descriptor.kind == "morph_to":
        raise RelationKindMismatch(descriptor.morph_name, "a relation with a fixed target model", "morph_to")
    related = descriptor.related_model()
    table = related.get_table_name()
    query = related.query()
    kind = descriptor.kind

    if kind in ("has_one", "has_many"):
        query.where_in(descriptor.foreign_key, keys)
        if descriptor.column:
            query.where_raw(_one_of_many_condition(table, descriptor.column, descriptor.aggregate,
                                                   [descriptor.foreign_key], related.uses_soft_deletes()))
    elif kind == "belongs_to":
        query.where_in(descriptor.owner_key, keys)
    elif descriptor.is_morph_owned:
        query.where_in(descriptor.type_column, morph_map.possible_types_for(parent))
        query.where_in(descriptor.id_column, keys)
        if kind == "morph_one_of_many":
            query.where_raw(_one_of_many_condition(table, descriptor.column, descriptor.aggregate,
                                                   [descriptor.type_column, descriptor.id_column],
                                                   related.uses_soft_deletes()))
    elif kind == "belongs_to_many":
        pivot = descriptor.table
        selection = [f"{table}.*"]
        if tag_keys:
            selection.append(f"{pivot}.{descriptor.foreign_pivot_key} AS {PIVOT_KEY}")
        query.select(selection)
        query.join(pivot, f"{table}.{descriptor.related_key}", "=", f"{pivot}.{descriptor.related_pivot_key}")
        query.where_in(f"{pivot}.{descriptor.foreign_pivot_key}", keys)
        query.set_pivot_source(pivot, descriptor.pivot_alias).with_pivot(*descriptor.pivot_columns)
    else:
        through_table = descriptor.through_model().get_table_name()
        selection = [f"{table}.*"]
        if tag_keys:
            selection.append(f"{through_table}.{descriptor.first_key} AS {THROUGH_KEY}")
        query.select(selection)
        query.join(through_table, f"{table}.{descriptor.second_key}", "=",
                   f"{through_table}.{descriptor.second_local_key}")
        query.where_in(f"{through_table}.{descriptor.first_key}", keys)

    descriptor.apply_constraints(query)

    if columns:
        key = related_key_column(descriptor)
        wanted = list(columns) + ([key] if key and key not in columns else [])
        if kind in _JOINED_KINDS:
            query.columns = [f"{table}.{c}" for c in wanted] + query.columns[1:]
        else:
            query.columns = wanted
    return query


class EagerLoader:
    """Loads relation paths onto already-fetched objects.

    Args:
        columns: Column restriction per full relation path.
        callbacks: Query refinement per full relation path, applied to every
            chunk query of that path.
        registry: Registry marked with every relation loaded.
        force: Refetch relations even on objects that already carry them.
        chunk_size: Maximum number of keys per ``IN`` list.
    """

    def __init__(self, columns: Optional[dict[str, list[str]]] = None,
                 callbacks: Optional[dict[str, Callable]] = None,
                 registry: Optional[LoadRegistry] = None,
                 force: bool = False,
                 chunk_size: int = IN_CHUNK_SIZE):
        self.columns = dict(columns or {})
        self.callbacks = dict(callbacks or {})
        self.registry = registry if registry is not None else default_registry
        self.force = force
        self.chunk_size = chunk_size

    @classmethod
    def from_request(cls, model: type, relations: Any, **kwargs) -> tuple["EagerLoader", list[str]]:
        """Build a loader and its paths from anything ``Query.with_`` accepts."""
        request = Query(model=model).with_(relations)
        loader = cls(columns=request.with_columns, callbacks=request.with_callbacks, **kwargs)
        return loader, request.with_relations

    @staticmethod
    def group_paths(paths: Iterable[str]) -> dict[str, list[str]]:
        """``["a.b", "a.c", "d"]`` -> ``{"a": ["b", "c"], "d": []}``, first-seen order."""
        groups: dict[str, list[str]] = {}
        for path in paths:
            head, _, rest = path.partition(".")
            nested = groups.setdefault(head, [])
            if rest and rest not in nested:
                nested.append(rest)
        return groups

    async def load(self, objects: Iterable[Any], paths: Iterable[str], prefix: str = "",
                   polymorphic: bool = False) -> None:
        """Load every path on objects, recursing into nested segments.

        With polymorphic set (objects reached through a ``morph_to``), classes
        that do not declare a relation are skipped instead of raising.
        """
        normalized = []
        for path in paths:
            relation, columns = parse_relation_path(path)
            if columns:
                self.columns[prefix + relation] = columns
            normalized.append(relation)
        by_class: dict[type, list[Any]] = {}
        for obj in objects:
            if obj is not None:
                by_class.setdefault(type(obj), []).append(obj)
        for group in by_class.values():
            for name, nested in self.group_paths(normalized).items():
                await self._load_relation(group, name, nested, prefix, polymorphic)

    async def _load_relation(self, objects: list[Any], name: str, nested: list[str], prefix: str,
                             polymorphic: bool = False) -> None:
        model = type(objects[0])
        path = prefix + name
        if polymorphic:
            descriptor = resolve_relation(model, name)
            if descriptor is None:
                logger.debug("Skipping %s: %s has no such relation", path, model.__name__)
                return
        else:
            descriptor = require_relation(model, name)
        pending = objects if self.force else [o for o in objects if not o.relation_loaded(name)]
        if pending:
            logger.debug("Loading %s.%s for %d object(s)", model.__name__, path, len(pending))
            for obj in pending:
                obj._mark_relation_loading(name)
            try:
                if descriptor.kind == "morph_to":
                    values = await self._fetch_morph_to(descriptor, path, pending)
                else:
                    values = await self._fetch(descriptor, model, path, pending)
            except BaseException:
                for obj in pending:
                    obj._reset_relation_state(name)
                raise
            for obj, value in zip(pending, values):
                obj.set_relation(name, value)
            self.registry.mark_objects(pending, [name])
            logger.debug("Loaded %s.%s for %d object(s)", model.__name__, path, len(pending))
        if nested:
            children = []
            for obj in objects:
                value = obj.get_relation(name)
                if isinstance(value, list):
                    children.extend(value)
                elif value is not None:
                    children.append(value)
            if children:
                await self.load(children, nested, prefix=f"{path}.",
                                polymorphic=descriptor.kind == "morph_to")

    def _refine(self, query: Query, path: str) -> Query:
        callback = self.callbacks.get(path)
        if callback is None:
            return query
        result = callback(query)
        return result if isinstance(result, Query) else query

    async def _fetch(self, descriptor: RelationDescriptor, model: type, path: str,
                     objects: list[Any]) -> list[Any]:
        parent_attribute = parent_key_attribute(descriptor)
        key_column = related_key_column(descriptor)
        tag = PIVOT_KEY if descriptor.kind == "belongs_to_many" else THROUGH_KEY
        keys = _unique(getattr(obj, parent_attribute, None) for obj in objects)
        matches: dict[Any, list[Any]] = {}
        fetched = Collection()
        for chunk in _chunks(keys, self.chunk_size):
            query = relation_query(descriptor, model, chunk, columns=self.columns.get(path))
            query = self._refine(query, path)
            if key_column is None:
                pairs = await query.get_with_keys(tag, registry=self.registry)
            else:
                results = await query.get(registry=self.registry)
                pairs = [(getattr(related, key_column, None), related) for related in results]
            for key, related in pairs:
                matches.setdefault(key, []).append(related)
                fetched.append(related)
        fetched.adopt()
        values = []
        for obj in objects:
            found = matches.get(getattr(obj, parent_attribute, None), [])
            if descriptor.is_single:
                values.append(found[0] if found else None)
            else:
                values.append(list(found))
        return values

    async def _fetch_morph_to(self, descriptor: RelationDescriptor, path: str, objects: list[Any]) -> list[Any]:
        """One batched fetch per concrete model the stored type tags resolve to."""
        groups: dict[type, list[Any]] = {}
        for obj in objects:
            morph_type = getattr(obj, descriptor.type_column, None)
            if morph_type is None:
                continue
            related = morph_map.model_for(morph_type)
            if related is None:
                logger.warning("Cannot resolve morph type `%s` for %s.%s, assigning None",
                               morph_type, type(obj).__name__, path)
                continue
            groups.setdefault(related, []).append(obj)

        found: dict[int, Any] = {}
        for related, members in groups.items():
            table = related.get_table_name()
            ids = _unique(getattr(obj, descriptor.id_column, None) for obj in members)
            by_id: dict[Any, Any] = {}
            fetched = Collection()
            for chunk in _chunks(ids, self.chunk_size):
                query = related.query().where_in(f"{table}.id", chunk)
                descriptor.apply_constraints(query)
                columns = self.columns.get(path)
                if columns:
                    query.select(list(columns) + ([] if "id" in columns else ["id"]))
                query = self._refine(query, path)
                for instance in await query.get(registry=self.registry):
                    by_id.setdefault(instance.id, instance)
                    fetched.append(instance)
            fetched.adopt()
            for obj in members:
                found[id(obj)] = by_id.get(getattr(obj, descriptor.id_column, None))
        return [found.get(id(obj)) for obj in objects]
