"""Model base: row hydration, relation state and loading entry points."""

from __future__ import annotations

import enum
import logging
from typing import Any, Optional

from pydantic import BaseModel, PrivateAttr, SerializationInfo, SerializerFunctionWrapHandler, model_serializer

from ..collection import Collection
from ..errors import PolymorphicModelUnresolved, RelationNotLoaded
from ..morph import morph_map
from ..query import Query
from ..registry import LoadRegistry, default_registry
from ..relations import RelationDeclaration, require_relation
from .meta import ModelMeta

logger = logging.getLogger("readorm")


class RelationState(str, enum.Enum):
    NOT_REQUESTED = "not_requested"
    LOADING = "loading"
    LOADED = "loaded"


def _dump_relation(value: Any, mode: str) -> Any:
    if isinstance(value, list):
        return [_dump_relation(item, mode) for item in value]
    if isinstance(value, BaseModel):
        return value.model_dump(mode=mode)
    return value


class Model(BaseModel, metaclass=ModelMeta):
    """Base class for read-only models.

    Declared fields are validated from result rows; undeclared columns are
    kept as extra attributes. Relation values live outside the pydantic
    fields; ``model_dump()`` adds the loaded ones after the row data and
    leaves out every name listed in the ``hidden`` class keyword.

    Example:
        class User(Model, table="users"):
            id: int
            name: str

            posts = has_many("Post")
    """

    model_config = {
        "arbitrary_types_allowed": True,
        "extra": "allow",
        "ignored_types": (RelationDeclaration,),
    }

    id: Any = None

    _relations: dict[str, Any] = PrivateAttr(default_factory=dict)
    _relation_states: dict[str, RelationState] = PrivateAttr(default_factory=dict)
    _collection: Optional[Collection] = PrivateAttr(default=None)

    def __eq__(self, other: Any) -> bool:
        """Same class and same non-null id; rows without id only equal themselves."""
        if not isinstance(other, Model):
            return NotImplemented
        if self.id is None or other.id is None:
            return self is other
        return type(self) is type(other) and self.id == other.id

    def __hash__(self) -> int:
        if self.id is None:
            return id(self)
        return hash((type(self), self.id))

    def __deepcopy__(self, memo):
        """Return self; models referenced from queries are not copied with them."""
        return self

    @model_serializer(mode="wrap")
    def serialize_model(self, handler: SerializerFunctionWrapHandler, info: SerializationInfo) -> dict[str, Any]:
        data = handler(self)
        hidden = type(self)._HIDDEN
        for name in hidden:
            data.pop(name, None)
        excluded = info.exclude or ()
        for name, value in self._relations.items():
            if name in hidden or name in excluded:
                continue
            data[name] = _dump_relation(value, info.mode)
        return data

    # --- class-level metadata ---

    @classmethod
    def get_table_name(cls) -> str:
        """Table name: the ``table`` class keyword, else the lowercased class name plus ``s``."""
        return cls._TABLE or f"{cls.__name__.lower()}s"

    @classmethod
    def get_connection_name(cls) -> str:
        return cls._CONNECTION_NAME

    @classmethod
    def uses_soft_deletes(cls) -> bool:
        return bool(cls._SOFT_DELETES)

    @classmethod
    def morph_type(cls) -> str:
        """Tag stored in polymorphic type columns for this model."""
        return morph_map.morph_type_for(cls)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Model":
        return cls.model_validate(row)

    # --- querying ---

    @classmethod
    def query(cls) -> Query:
        """A new query on this model, eager-loading the model's ``default_with`` relations."""
        query = Query(model=cls)
        if cls._DEFAULT_WITH:
            query.with_(list(cls._DEFAULT_WITH))
        return query

    @classmethod
    def with_(cls, relations: Any, callback=None) -> Query:
        return cls.query().with_(relations, callback)

    @classmethod
    async def find(cls, identifier: Any) -> Optional["Model"]:
        return await cls.query().find(identifier)

    @classmethod
    async def find_or_fail(cls, identifier: Any) -> "Model":
        return await cls.query().find_or_fail(identifier)

    @classmethod
    async def all(cls) -> Collection:
        return await cls.query().get()

    def related(self, name: str) -> Query:
        """Query for the rows related to this object through relation ``name``.

        Raises:
            RelationNotFound: If the model has no such relation.
            PolymorphicModelUnresolved: For a ``morph_to`` whose stored type maps to no model.
        """
        from ..loading import parent_key_attribute, relation_query
        descriptor = require_relation(type(self), name)
        if descriptor.kind == "morph_to":
            morph_type = getattr(self, descriptor.type_column, None)
            related = morph_map.model_for(morph_type) if morph_type is not None else None
            if related is None:
                raise PolymorphicModelUnresolved(str(morph_type))
            query = related.query().where(f"{related.get_table_name()}.id", getattr(self, descriptor.id_column, None))
            return descriptor.apply_constraints(query)
        key = getattr(self, parent_key_attribute(descriptor), None)
        return relation_query(descriptor, type(self), [key], tag_keys=False)

    # --- relation state ---

    def get_relation(self, name: str) -> Any:
        """Loaded value of relation name.

        Raises:
            RelationNotLoaded: If the relation has not been loaded.
        """
        try:
            return self._relations[name]
        except KeyError:
            raise RelationNotLoaded(type(self), name) from None

    def set_relation(self, name: str, value: Any) -> None:
        self._relations[name] = value
        self._relation_states[name] = RelationState.LOADED

    def forget_relation(self, name: str) -> None:
        self._relations.pop(name, None)
        self._relation_states.pop(name, None)

    def relation_state(self, name: str) -> RelationState:
        return self._relation_states.get(name, RelationState.NOT_REQUESTED)

    def relation_loaded(self, name: str) -> bool:
        return self.relation_state(name) is RelationState.LOADED

    @property
    def loaded_relations(self) -> dict[str, Any]:
        return dict(self._relations)

    def _mark_relation_loading(self, name: str) -> None:
        # a loaded value stays readable while it is being refetched
        if name not in self._relations:
            self._relation_states[name] = RelationState.LOADING

    def _reset_relation_state(self, name: str) -> None:
        if name in self._relations:
            self._relation_states[name] = RelationState.LOADED
        else:
            self._relation_states.pop(name, None)

    # --- loading ---

    @classmethod
    async def load_many(cls, objects: list["Model"], relations: Any,
                        registry: Optional[LoadRegistry] = None) -> None:
        """Load relations on every one of objects, refetching those already loaded."""
        from ..loading import EagerLoader
        objects = [obj for obj in objects if obj is not None]
        if not objects:
            return
        loader, paths = EagerLoader.from_request(type(objects[0]), relations, registry=registry, force=True)
        await loader.load(objects, paths)

    @classmethod
    async def load_missing_many(cls, objects: list["Model"], relations: Any,
                                registry: Optional[LoadRegistry] = None) -> None:
        """Load relations on those of objects that do not carry them yet."""
        from ..loading import EagerLoader
        objects = [obj for obj in objects if obj is not None]
        if not objects:
            return
        loader, paths = EagerLoader.from_request(type(objects[0]), relations, registry=registry)
        await loader.load(objects, paths)

    @classmethod
    async def load_count_many(cls, objects: list["Model"], relations: Any) -> None:
        """Set ``{relation}_count`` on every one of objects with one counting query."""
        objects = [obj for obj in objects if obj is not None and obj.id is not None]
        if not objects:
            return
        model = type(objects[0])
        table = model.get_table_name()
        query = model.query().with_only([]).select(f"{table}.id")
        query.trashed_mode = "with"
        query.with_count(relations).where_in(f"{table}.id", list({obj.id: None for obj in objects}))
        aliases = [column.rsplit(" AS ", 1)[1] for column in query.columns[1:]]
        counts = {row["id"]: row for row in await query.rows()}
        for obj in objects:
            row = counts.get(obj.id, {})
            for alias in aliases:
                obj.__pydantic_extra__[alias] = int(row.get(alias) or 0)

    async def load(self, relations: Any, registry: Optional[LoadRegistry] = None) -> "Model":
        """Load relations on this object, refetching them if already loaded."""
        await type(self).load_many([self], relations, registry=registry)
        return self

    async def load_missing(self, relations: Any, registry: Optional[LoadRegistry] = None) -> "Model":
        """Load those of relations this object does not carry yet."""
        await type(self).load_missing_many([self], relations, registry=registry)
        return self

    async def load_count(self, relations: Any) -> "Model":
        await type(self).load_count_many([self], relations)
        return self

    async def load_for_all(self, *relations: Any, registry: Optional[LoadRegistry] = None) -> "Model":
        """Load relations for this object and every object fetched with it.

        Returns immediately when the relations are known to be loaded: judged
        on the first member of this object's collection, or, for an object
        fetched alone, from the registry (which also covers a fresh copy of a
        row loaded before). Concurrent calls for the same objects and
        relations share a single load.
        """
        from ..loading import EagerLoader
        registry = registry if registry is not None else default_registry
        request = relations[0] if len(relations) == 1 else list(relations)
        loader, paths = EagerLoader.from_request(type(self), request, registry=registry)
        names = list(EagerLoader.group_paths(paths))
        model = type(self)
        targets = list(self._collection) if self._collection else [self]

        if len(targets) > 1:
            first = targets[0]
            already_loaded = all(first.relation_loaded(name) for name in names)
            if already_loaded:
                registry.mark_objects(targets, names)
        else:
            already_loaded = registry.is_loaded(model, self.id, names)
        if already_loaded:
            logger.debug("Relations %s of %s#%s already loaded", names, model.__name__, self.id)
            return self

        if self._collection:
            key = ("collection", self._collection.id, tuple(sorted(paths)))
        else:
            key = ("instance", model, self.id, tuple(sorted(paths)))

        async def fresh_load():
            logger.debug("Loading %s for %d %s object(s)", names, len(targets), model.__name__)
            await loader.load(targets, paths)
            registry.mark_objects(targets, names)
            return targets

        loaded = await registry.coordinate(key, fresh_load)
        # a caller that joined another caller's load holds different objects for the same rows
        if not all(self.relation_loaded(name) for name in names):
            self._copy_relations_from(loaded, names)
        return self

    def _copy_relations_from(self, others: list["Model"], names: list[str]) -> None:
        """Take relation values from the counterpart of this row among others."""
        for other in others:
            if other is self:
                return
            if type(other) is type(self) and other.id is not None and other.id == self.id:
                for name in names:
                    if other.relation_loaded(name) and not self.relation_loaded(name):
                        self.set_relation(name, other.get_relation(name))
                return
