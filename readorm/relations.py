"""Relation descriptors, the declaration DSL, and static relation resolution.

Relations are declared as class attributes of a model::

    class Post(Model):
        id: int
        user_id: int

        author = belongs_to("User", "user_id")
        comments = has_many("Comment", "post_id").order_by("created_at")
        tags = belongs_to_many("Tag").with_pivot("weight").as_("tagging")
        activity = morph_many("Activity", "subject")

Declarations never build queries. Chained calls made on a declaration
(``.where(...)``, ``.order_by(...)``...) are only recorded, and replayed on
every query later built for that relation. A model may also expose a static
``__relations__`` table mapping names to descriptors (or plain dicts).
"""

from __future__ import annotations

import logging
from typing import Any, Literal, Optional

from pydantic import BaseModel, ValidationError

from .errors import PolymorphicModelUnresolved, ReadormError, RelationNotFound
from .morph import MorphMap, resolve_model

logger = logging.getLogger("readorm")


RelationKind = Literal[
    "has_one",
    "has_many",
    "belongs_to",
    "belongs_to_many",
    "morph_one",
    "morph_many",
    "morph_to",
    "morph_one_of_many",
    "has_one_through",
    "has_many_through",
]

SINGLE_KINDS = frozenset({
    "has_one",
    "belongs_to",
    "morph_one",
    "morph_one_of_many",
    "morph_to",
    "has_one_through",
})

MORPH_OWNED_KINDS = frozenset({"morph_one", "morph_many", "morph_one_of_many"})
THROUGH_KINDS = frozenset({"has_one_through", "has_many_through"})


class RecordedCall(BaseModel):
    """A query-builder call recorded on a declaration, replayed later."""

    model_config = {"frozen": True, "arbitrary_types_allowed": True}

    method: str
    args: tuple[Any, ...] = ()
    kwargs: tuple[tuple[str, Any], ...] = ()

    def apply(self, query):
        return getattr(query, self.method)(*self.args, **dict(self.kwargs))


class RelationDescriptor(BaseModel):
    """Static description of one relation: kind, target model and key names.

    ``model`` is a model class, or a string (morph alias or class name)
    resolved when the relation is used; it is None for ``morph_to``.
    """

    model_config = {"frozen": True, "arbitrary_types_allowed": True}

    kind: RelationKind
    model: Any = None
    # has_one / has_many / belongs_to
    foreign_key: Optional[str] = None
    local_key: Optional[str] = None
    owner_key: Optional[str] = None
    # belongs_to_many
    table: Optional[str] = None
    foreign_pivot_key: Optional[str] = None
    related_pivot_key: Optional[str] = None
    parent_key: Optional[str] = None
    related_key: Optional[str] = None
    pivot_columns: tuple[str, ...] = ()
    pivot_alias: str = "pivot"
    # polymorphic
    morph_name: Optional[str] = None
    type_column: Optional[str] = None
    id_column: Optional[str] = None
    # "one of many"
    column: Optional[str] = None
    aggregate: Optional[Literal["max", "min"]] = None
    # through
    through: Any = None
    first_key: Optional[str] = None
    second_key: Optional[str] = None
    second_local_key: Optional[str] = None

    constraints: tuple[RecordedCall, ...] = ()

    @property
    def is_single(self) -> bool:
        """True when the relation holds one object (or None) rather than a list."""
        return self.kind in SINGLE_KINDS

    @property
    def is_morph_owned(self) -> bool:
        return self.kind in MORPH_OWNED_KINDS

    @property
    def is_through(self) -> bool:
        return self.kind in THROUGH_KINDS

    def related_model(self, morphs: Optional[MorphMap] = None) -> type:
        """Return the target model class.

        Raises:
            PolymorphicModelUnresolved: If a string target names no known model.
        """
        model = resolve_model(self.model, morphs)
        if model is None:
            raise PolymorphicModelUnresolved(str(self.model))
        return model

    def through_model(self, morphs: Optional[MorphMap] = None) -> type:
        model = resolve_model(self.through, morphs)
        if model is None:
            raise PolymorphicModelUnresolved(str(self.through))
        return model

    def apply_constraints(self, query):
        """Replay the calls recorded on the declaration onto query."""
        for call in self.constraints:
            query = call.apply(query)
        return query

    def with_defaults(self, parent: type, name: str) -> "RelationDescriptor":
        """Return a copy with every omitted key name filled with its conventional default.

        Pure: depends only on the descriptor, the parent class and the relation name.
        """
        parent_name = parent.__name__.lower()
        related_name = _reference_name(self.model)
        updates: dict[str, Any] = {}

        def default(field: str, value: Any) -> None:
            if getattr(self, field) is None:
                updates[field] = value

        if self.kind in ("has_one", "has_many"):
            default("foreign_key", f"{parent_name}_id")
            default("local_key", "id")
            if self.column is not None:
                default("aggregate", "max")
        elif self.kind == "belongs_to":
            default("foreign_key", f"{related_name}_id")
            default("owner_key", "id")
        elif self.kind == "belongs_to_many":
            default("table", "_".join(sorted((parent_name, related_name))))
            default("foreign_pivot_key", f"{parent_name}_id")
            default("related_pivot_key", f"{related_name}_id")
            default("parent_key", "id")
            default("related_key", "id")
        elif self.kind in MORPH_OWNED_KINDS or self.kind == "morph_to":
            morph_name = self.morph_name or name
            default("morph_name", morph_name)
            default("type_column", f"{morph_name}_type")
            default("id_column", f"{morph_name}_id")
            if self.kind != "morph_to":
                default("local_key", "id")
            if self.kind == "morph_one_of_many":
                default("column", "created_at")
                default("aggregate", "max")
        elif self.kind in THROUGH_KINDS:
            default("first_key", f"{parent_name}_id")
            default("second_key", f"{_reference_name(self.through)}_id")
            default("local_key", "id")
            default("second_local_key", "id")
        if not updates:
            return self
        return self.model_copy(update=updates)


def _reference_name(reference: Any) -> str:
    """Lowercased name of a model reference (class or string), for default key names."""
    if reference is None:
        return ""
    if isinstance(reference, type):
        return reference.__name__.lower()
    return str(reference).lower()


# --- declaration DSL ---


class RelationDeclaration:
    """Class attribute declaring a relation on a model.

    On an instance, the attribute reads the loaded value, and raises
    RelationNotLoaded when the relation has not been loaded yet.
    Unknown attribute access returns a recorder for chained query calls.
    """

    def __init__(self, **fields: Any):
        self.fields = fields
        self.constraints: tuple[RecordedCall, ...] = ()
        self.name: Optional[str] = None
        self.owner: Optional[type] = None

    def __set_name__(self, owner: type, name: str) -> None:
        self.owner = owner
        self.name = name

    def __get__(self, instance, owner=None):
        if instance is None:
            return self
        return instance.get_relation(self.name)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, {self.fields!r})"

    def __getattr__(self, method: str):
        if method.startswith("_"):
            raise AttributeError(method)
        from .query import Query
        if not callable(getattr(Query, method, None)):
            raise AttributeError(f"Cannot chain unknown query method `{method}` on a relation declaration")

        def record(*args, **kwargs):
            call = RecordedCall(method=method, args=args, kwargs=tuple(sorted(kwargs.items())))
            self.constraints += (call,)
            return self

        return record

    def with_pivot(self, *columns: str) -> "RelationDeclaration":
        """Expose extra pivot-table columns on related objects (belongs_to_many only)."""
        existing = tuple(self.fields.get("pivot_columns", ()))
        self.fields["pivot_columns"] = existing + tuple(c for c in columns if c and c not in existing)
        return self

    def as_(self, alias: str) -> "RelationDeclaration":
        """Name the attribute holding pivot data (default ``pivot``)."""
        self.fields["pivot_alias"] = alias
        return self

    def describe(self, owner: type) -> RelationDescriptor:
        return RelationDescriptor(**self.fields, constraints=self.constraints)


class ThroughDeclaration(RelationDeclaration):
    """``through("cars").has("owner")``: a through relation derived from two declared relations."""

    def __init__(self, through_relation: str, final_relation: str):
        super().__init__()
        self.through_relation = through_relation
        self.final_relation = final_relation

    def __repr__(self) -> str:
        return f"through({self.through_relation!r}).has({self.final_relation!r})"

    def describe(self, owner: type) -> RelationDescriptor:
        first = require_relation(owner, self.through_relation)
        if first.kind not in ("has_one", "has_many"):
            raise RelationNotFound(owner, self.through_relation)
        through_model = first.related_model()
        final = require_relation(through_model, self.final_relation)
        if final.kind == "belongs_to":
            second_key, second_local_key = final.owner_key, final.foreign_key
        elif final.kind in ("has_one", "has_many"):
            second_key, second_local_key = final.foreign_key, final.local_key
        else:
            raise RelationNotFound(through_model, self.final_relation)
        is_one = final.kind in ("belongs_to", "has_one")
        return RelationDescriptor(
            kind="has_one_through" if is_one else "has_many_through",
            model=final.model,
            through=through_model,
            first_key=first.foreign_key,
            second_key=second_key,
            local_key=first.local_key,
            second_local_key=second_local_key,
            constraints=final.constraints + self.constraints,
        )


class _ThroughBuilder:
    def __init__(self, through_relation: str):
        self.through_relation = through_relation

    def has(self, final_relation: str) -> ThroughDeclaration:
        return ThroughDeclaration(self.through_relation, final_relation)


def through(relation: str) -> _ThroughBuilder:
    """Start a through relation along the declared relation ``relation``."""
    return _ThroughBuilder(relation)


def has_one(related: Any, foreign_key: str = None, local_key: str = "id") -> RelationDeclaration:
    return RelationDeclaration(kind="has_one", model=related, foreign_key=foreign_key, local_key=local_key)


def has_many(related: Any, foreign_key: str = None, local_key: str = "id") -> RelationDeclaration:
    return RelationDeclaration(kind="has_many", model=related, foreign_key=foreign_key, local_key=local_key)


def has_one_of_many(related: Any, foreign_key: str = None, column: str = "created_at",
                    aggregate: str = "max", local_key: str = "id") -> RelationDeclaration:
    """The single related row with the greatest (``max``) or least (``min``) ``column``."""
    return RelationDeclaration(kind="has_one", model=related, foreign_key=foreign_key,
                               local_key=local_key, column=column, aggregate=aggregate)


def latest_of_many(related: Any, foreign_key: str = None, column: str = "created_at",
                   local_key: str = "id") -> RelationDeclaration:
    return has_one_of_many(related, foreign_key, column, "max", local_key)


def oldest_of_many(related: Any, foreign_key: str = None, column: str = "created_at",
                   local_key: str = "id") -> RelationDeclaration:
    return has_one_of_many(related, foreign_key, column, "min", local_key)


def belongs_to(related: Any, foreign_key: str = None, owner_key: str = "id") -> RelationDeclaration:
    return RelationDeclaration(kind="belongs_to", model=related, foreign_key=foreign_key, owner_key=owner_key)


def belongs_to_many(related: Any, table: str = None, foreign_pivot_key: str = None,
                    related_pivot_key: str = None, parent_key: str = "id",
                    related_key: str = "id") -> RelationDeclaration:
    return RelationDeclaration(kind="belongs_to_many", model=related, table=table,
                               foreign_pivot_key=foreign_pivot_key, related_pivot_key=related_pivot_key,
                               parent_key=parent_key, related_key=related_key)


def morph_one(related: Any, name: str, type_column: str = None, id_column: str = None,
              local_key: str = "id") -> RelationDeclaration:
    return RelationDeclaration(kind="morph_one", model=related, morph_name=name,
                               type_column=type_column, id_column=id_column, local_key=local_key)


def morph_many(related: Any, name: str, type_column: str = None, id_column: str = None,
               local_key: str = "id") -> RelationDeclaration:
    return RelationDeclaration(kind="morph_many", model=related, morph_name=name,
                               type_column=type_column, id_column=id_column, local_key=local_key)


def morph_one_of_many(related: Any, name: str, column: str = "created_at", aggregate: str = "max",
                      type_column: str = None, id_column: str = None,
                      local_key: str = "id") -> RelationDeclaration:
    return RelationDeclaration(kind="morph_one_of_many", model=related, morph_name=name,
                               column=column, aggregate=aggregate, type_column=type_column,
                               id_column=id_column, local_key=local_key)


def latest_morph_one(related: Any, name: str, column: str = "created_at", type_column: str = None,
                     id_column: str = None, local_key: str = "id") -> RelationDeclaration:
    return morph_one_of_many(related, name, column, "max", type_column, id_column, local_key)


def oldest_morph_one(related: Any, name: str, column: str = "created_at", type_column: str = None,
                     id_column: str = None, local_key: str = "id") -> RelationDeclaration:
    return morph_one_of_many(related, name, column, "min", type_column, id_column, local_key)


def morph_to(name: str = None, type_column: str = None, id_column: str = None) -> RelationDeclaration:
    """Owning side of a polymorphic relation; ``name`` defaults to the attribute name."""
    return RelationDeclaration(kind="morph_to", morph_name=name, type_column=type_column, id_column=id_column)


def has_one_through(related: Any, through: Any, first_key: str = None, second_key: str = None,
                    local_key: str = "id", second_local_key: str = "id") -> RelationDeclaration:
    return RelationDeclaration(kind="has_one_through", model=related, through=through,
                               first_key=first_key, second_key=second_key,
                               local_key=local_key, second_local_key=second_local_key)


def has_many_through(related: Any, through: Any, first_key: str = None, second_key: str = None,
                     local_key: str = "id", second_local_key: str = "id") -> RelationDeclaration:
    return RelationDeclaration(kind="has_many_through", model=related, through=through,
                               first_key=first_key, second_key=second_key,
                               local_key=local_key, second_local_key=second_local_key)


# --- resolution ---


def _describe(model: type, name: str) -> Optional[tuple[RelationDescriptor, type]]:
    """The raw descriptor of relation name, and the class its default key names derive from.

    Declared relations take their defaults from the class that declared them,
    so that subclasses keep the keys of their base.
    """
    table = getattr(model, "__relations__", None) or {}
    if name in table:
        entry = table[name]
        if isinstance(entry, RelationDeclaration):
            return entry.describe(model), model
        if isinstance(entry, RelationDescriptor):
            return entry, model
        return RelationDescriptor.model_validate(entry), model
    declaration = getattr(model, "_DECLARED_RELATIONS", {}).get(name)
    if declaration is not None:
        return declaration.describe(model), declaration.owner or model
    return None


def resolve_relation(model: type, name: str) -> Optional[RelationDescriptor]:
    """Return the descriptor of relation ``name`` on model, or None.

    Never raises: a relation that cannot be described statically (unknown
    name, malformed static entry, through relation over missing relations)
    resolves to None. Resolving the same pair twice yields equal descriptors.
    """
    try:
        described = _describe(model, name)
    except (ReadormError, ValidationError, TypeError) as error:
        logger.debug("Relation %s.%s cannot be described: %s", model.__name__, name, error)
        return None
    if described is None:
        return None
    descriptor, owner = described
    return descriptor.with_defaults(owner, name)


def require_relation(model: type, name: str) -> RelationDescriptor:
    """Like resolve_relation, but raise RelationNotFound instead of returning None."""
    descriptor = resolve_relation(model, name)
    if descriptor is None:
        raise RelationNotFound(model, name)
    return descriptor


def relation_names(model: type) -> list[str]:
    """Names of every relation declared on model (static table first)."""
    names = list(getattr(model, "__relations__", None) or {})
    names.extend(n for n in getattr(model, "_DECLARED_RELATIONS", {}) if n not in names)
    return names
