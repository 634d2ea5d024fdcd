"""Query builder, SQL compiler and execution for Model classes.

A Query is built by chained calls that mutate it in place and return it;
``clone()`` returns an independent deep copy. Compilation produces SQL with
``?`` placeholders plus the positional parameter list, and every statement
passes the read-only guard before it is handed to the connection.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Iterable, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from .collection import Collection
from .conditions import (
    Boolean,
    Condition,
    BasicCondition,
    InCondition,
    NotInCondition,
    NullCondition,
    NotNullCondition,
    BetweenCondition,
    NotBetweenCondition,
    RawCondition,
    GroupCondition,
    compile_conditions,
)
from .connection import Connection, _get_connection
from .errors import (
    ModelNotFound,
    PolymorphicModelUnresolved,
    RelationKindMismatch,
    RelationNotFound,
    SoftDeletesNotSupported,
)
from .guard import ensure_read_only_snippet, ensure_read_only_sql
from .morph import morph_map
from .relations import require_relation, relation_names

logger = logging.getLogger("readorm")

# sentinel for "argument not given" (None is a legitimate value)
_MISSING: Any = object()

_NEGATED_OPERATORS: dict[str, str] = {
    "=": "!=",
    "!=": "=",
    "<>": "=",
    "<": ">=",
    "<=": ">",
    ">": "<=",
    ">=": "<",
    "LIKE": "NOT LIKE",
    "NOT LIKE": "LIKE",
}


class Join(BaseModel):
    """One JOIN clause. Every kind but ``cross`` needs first, operator and second."""

    kind: Literal["inner", "left", "right", "cross"] = "inner"
    table: str
    first: Optional[str] = None
    operator: Optional[str] = None
    second: Optional[str] = None

    @model_validator(mode="after")
    def _check_fields(self) -> "Join":
        if self.kind != "cross" and None in (self.first, self.operator, self.second):
            raise ValueError(f"{self.kind} join on `{self.table}` requires first, operator and second")
        return self

    @property
    def sql(self) -> str:
        if self.kind == "cross":
            return f"CROSS JOIN {self.table}"
        return f"{self.kind.upper()} JOIN {self.table} ON {self.first} {self.operator} {self.second}"


class Order(BaseModel):
    """One ORDER BY term."""

    column: str
    direction: Literal["asc", "desc"] = "asc"
    random: bool = False

    @property
    def sql(self) -> str:
        if self.random:
            return "RAND()"
        return f"{self.column} {self.direction.upper()}"


class PivotConfig(BaseModel):
    """Pivot table whose ``alias__column`` result columns are gathered under ``alias``."""

    table: str
    alias: str = "pivot"
    columns: list[str] = Field(default_factory=list)


class UnionBranch(BaseModel):
    query: "Query"
    all: bool = False


def _flatten(items: Iterable[Any]) -> list[Any]:
    result = []
    for item in items:
        if isinstance(item, (list, tuple)):
            result.extend(item)
        else:
            result.append(item)
    return result


def parse_relation_path(path: str) -> tuple[str, Optional[list[str]]]:
    """Split ``"rel.sub:col1,col2"`` into ``("rel.sub", ["col1", "col2"])``."""
    if ":" not in path:
        return path, None
    relation, _, columns = path.partition(":")
    return relation, [c.strip() for c in columns.split(",") if c.strip()]


class Query(BaseModel):
    """Fluent SELECT builder for a Model.

    State covers the whole statement: table, columns, joins, WHERE and HAVING
    condition trees, grouping, ordering, limit/offset, union branches, the
    soft-delete mode, and the relations to eager-load after fetching.
    """

    model_config = {"arbitrary_types_allowed": True}

    model: Any
    """The Model class whose rows this query returns."""
    table_name: Optional[str] = None
    """Overrides the model's table name."""
    columns: list[str] = Field(default_factory=lambda: ["*"])
    is_distinct: bool = False
    joins: list[Join] = Field(default_factory=list)
    conditions: list[Condition] = Field(default_factory=list)
    """Root WHERE condition list."""
    group_by_columns: list[str] = Field(default_factory=list)
    having_conditions: list[Condition] = Field(default_factory=list)
    order_by_clauses: list[Order] = Field(default_factory=list)
    limit_value: Optional[int] = None
    offset_value: Optional[int] = None
    unions: list[UnionBranch] = Field(default_factory=list)
    trashed_mode: Literal["default", "with", "only"] = "default"
    """Soft-delete filter: hide deleted rows, include them, or return only them."""
    select_bindings: list[Any] = Field(default_factory=list)
    """Parameters of raw SELECT expressions; bound before WHERE parameters."""
    with_relations: list[str] = Field(default_factory=list)
    with_columns: dict[str, list[str]] = Field(default_factory=dict)
    with_callbacks: dict[str, Any] = Field(default_factory=dict)
    pivot: Optional[PivotConfig] = None

    # --- plumbing ---

    def _table(self) -> str:
        return self.table_name or self.model.get_table_name()

    def _connection(self) -> Connection:
        return _get_connection(self.model.get_connection_name())

    def _new(self) -> "Query":
        """A blank query on the same model, used to collect grouped conditions."""
        return Query(model=self.model, table_name=self.table_name)

    def clone(self) -> "Query":
        """Return a deep copy; later changes to either query never affect the other."""
        return self.model_copy(deep=True)

    # --- SELECT / FROM ---

    def table(self, name: str) -> "Query":
        self.table_name = name
        return self

    def select(self, *columns: str | list[str]) -> "Query":
        """Replace the selected columns."""
        self.columns = _flatten(columns) or ["*"]
        return self

    def add_select(self, *columns: str | list[str]) -> "Query":
        self.columns.extend(_flatten(columns))
        return self

    def select_raw(self, sql: str, bindings: Optional[list[Any]] = None) -> "Query":
        """Add a raw SELECT expression; ``bindings`` are bound before any WHERE parameter."""
        ensure_read_only_snippet(sql, "select_raw")
        self.columns.append(sql)
        self.select_bindings.extend(bindings or ())
        return self

    def distinct(self) -> "Query":
        self.is_distinct = True
        return self

    def join(self, table: str, first: str, operator: str, second: str) -> "Query":
        self.joins.append(Join(kind="inner", table=table, first=first, operator=operator, second=second))
        return self

    def left_join(self, table: str, first: str, operator: str, second: str) -> "Query":
        self.joins.append(Join(kind="left", table=table, first=first, operator=operator, second=second))
        return self

    def right_join(self, table: str, first: str, operator: str, second: str) -> "Query":
        self.joins.append(Join(kind="right", table=table, first=first, operator=operator, second=second))
        return self

    def cross_join(self, table: str) -> "Query":
        self.joins.append(Join(kind="cross", table=table))
        return self

    # --- WHERE ---

    def _group(self, callback: Callable[["Query"], Any], boolean: Boolean, negated: bool = False,
               having: bool = False) -> GroupCondition:
        sub = self._new()
        callback(sub)
        children = sub.having_conditions if having else sub.conditions
        return GroupCondition(children=children, boolean=boolean, negated=negated)

    def _basic(self, boolean: Boolean, column: str, operator: Any, value: Any) -> Condition:
        if value is _MISSING:
            if operator is _MISSING:
                raise TypeError(f"where() on `{column}` needs a value")
            operator, value = "=", operator
        if value is None and operator in ("=", "is", "IS"):
            return NullCondition(column=column, boolean=boolean)
        if value is None and operator in ("!=", "<>", "is not", "IS NOT"):
            return NotNullCondition(column=column, boolean=boolean)
        return BasicCondition(column=column, operator=operator, value=value, boolean=boolean)

    def where(self, column: str | Callable, operator: Any = _MISSING, value: Any = _MISSING) -> "Query":
        """Add an AND condition.

        Examples:
            where("name", "John")             # name = ?
            where("age", ">", 18)             # age > ?
            where("deleted_at", None)         # deleted_at IS NULL
            where(lambda q: q.where("a", 1).or_where("b", 2))   # (a = ? OR b = ?)
        """
        if callable(column):
            self.conditions.append(self._group(column, "AND"))
        else:
            self.conditions.append(self._basic("AND", column, operator, value))
        return self

    def or_where(self, column: str | Callable, operator: Any = _MISSING, value: Any = _MISSING) -> "Query":
        """Like where(), joined to the previous condition with OR."""
        if callable(column):
            self.conditions.append(self._group(column, "OR"))
        else:
            self.conditions.append(self._basic("OR", column, operator, value))
        return self

    def where_not(self, column: str | Callable, operator: Any = _MISSING, value: Any = _MISSING) -> "Query":
        """Negate a group (``NOT (...)``) or a single comparison."""
        if callable(column):
            self.conditions.append(self._group(column, "AND", negated=True))
            return self
        if value is _MISSING:
            return self.where(column, "!=", operator)
        return self.where(column, _NEGATED_OPERATORS.get(operator.upper(), operator), value)

    def where_in(self, column: str, values: Iterable[Any]) -> "Query":
        self.conditions.append(InCondition(column=column, items=list(values)))
        return self

    def where_not_in(self, column: str, values: Iterable[Any]) -> "Query":
        self.conditions.append(NotInCondition(column=column, items=list(values)))
        return self

    def or_where_in(self, column: str, values: Iterable[Any]) -> "Query":
        self.conditions.append(InCondition(column=column, items=list(values), boolean="OR"))
        return self

    def or_where_not_in(self, column: str, values: Iterable[Any]) -> "Query":
        self.conditions.append(NotInCondition(column=column, items=list(values), boolean="OR"))
        return self

    def where_null(self, column: str) -> "Query":
        self.conditions.append(NullCondition(column=column))
        return self

    def where_not_null(self, column: str) -> "Query":
        self.conditions.append(NotNullCondition(column=column))
        return self

    def or_where_null(self, column: str) -> "Query":
        self.conditions.append(NullCondition(column=column, boolean="OR"))
        return self

    def or_where_not_null(self, column: str) -> "Query":
        self.conditions.append(NotNullCondition(column=column, boolean="OR"))
        return self

    @staticmethod
    def _bounds(values: Iterable[Any]) -> tuple[Any, Any]:
        values = list(values)
        if len(values) != 2:
            raise ValueError(f"between expects exactly two values, got {len(values)}")
        return values[0], values[1]

    def where_between(self, column: str, values: Iterable[Any]) -> "Query":
        low, high = self._bounds(values)
        self.conditions.append(BetweenCondition(column=column, low=low, high=high))
        return self

    def where_not_between(self, column: str, values: Iterable[Any]) -> "Query":
        low, high = self._bounds(values)
        self.conditions.append(NotBetweenCondition(column=column, low=low, high=high))
        return self

    def or_where_between(self, column: str, values: Iterable[Any]) -> "Query":
        low, high = self._bounds(values)
        self.conditions.append(BetweenCondition(column=column, low=low, high=high, boolean="OR"))
        return self

    def or_where_not_between(self, column: str, values: Iterable[Any]) -> "Query":
        low, high = self._bounds(values)
        self.conditions.append(NotBetweenCondition(column=column, low=low, high=high, boolean="OR"))
        return self

    def where_raw(self, sql: str, bindings: Optional[list[Any]] = None) -> "Query":
        """Add a raw SQL condition (checked by the read-only guard)."""
        self.conditions.append(RawCondition(fragment=sql, bindings=list(bindings or ()), context="where_raw"))
        return self

    def or_where_raw(self, sql: str, bindings: Optional[list[Any]] = None) -> "Query":
        self.conditions.append(RawCondition(fragment=sql, bindings=list(bindings or ()),
                                            context="or_where_raw", boolean="OR"))
        return self

    def _column_comparison(self, boolean: Boolean, first: str, operator: str, second: Any) -> "Query":
        if second is _MISSING:
            operator, second = "=", operator
        self.conditions.append(RawCondition(fragment=f"{first} {operator} {second}",
                                            context="where_column", boolean=boolean))
        return self

    def where_column(self, first: str, operator: str, second: Any = _MISSING) -> "Query":
        """Compare two columns (``first = second`` or ``first op second``)."""
        return self._column_comparison("AND", first, operator, second)

    def or_where_column(self, first: str, operator: str, second: Any = _MISSING) -> "Query":
        return self._column_comparison("OR", first, operator, second)

    def where_like(self, column: str, value: str) -> "Query":
        return self.where(column, "LIKE", value)

    def where_not_like(self, column: str, value: str) -> "Query":
        return self.where(column, "NOT LIKE", value)

    def where_any(self, columns: Iterable[str], operator: str, value: Any) -> "Query":
        """At least one of columns matches: ``(a op ? OR b op ?)``."""
        children = [BasicCondition(column=c, operator=operator, value=value, boolean="OR") for c in columns]
        self.conditions.append(GroupCondition(children=children))
        return self

    def where_all(self, columns: Iterable[str], operator: str, value: Any) -> "Query":
        """Every one of columns matches: ``(a op ? AND b op ?)``."""
        children = [BasicCondition(column=c, operator=operator, value=value) for c in columns]
        self.conditions.append(GroupCondition(children=children))
        return self

    def _where_part(self, function: str, column: str, operator: Any, value: Any) -> "Query":
        return self.where(f"{function}({column})", operator, value)

    def where_date(self, column: str, operator: Any, value: Any = _MISSING) -> "Query":
        return self._where_part("DATE", column, operator, value)

    def where_month(self, column: str, operator: Any, value: Any = _MISSING) -> "Query":
        return self._where_part("MONTH", column, operator, value)

    def where_year(self, column: str, operator: Any, value: Any = _MISSING) -> "Query":
        return self._where_part("YEAR", column, operator, value)

    def where_day(self, column: str, operator: Any, value: Any = _MISSING) -> "Query":
        return self._where_part("DAY", column, operator, value)

    def where_time(self, column: str, operator: Any, value: Any = _MISSING) -> "Query":
        return self._where_part("TIME", column, operator, value)

    # --- GROUP BY / HAVING ---

    def group_by(self, *columns: str | list[str]) -> "Query":
        self.group_by_columns.extend(_flatten(columns))
        return self

    def having(self, column: str | Callable, operator: Any = _MISSING, value: Any = _MISSING) -> "Query":
        if callable(column):
            self.having_conditions.append(self._group(column, "AND", having=True))
        else:
            self.having_conditions.append(self._basic("AND", column, operator, value))
        return self

    def or_having(self, column: str | Callable, operator: Any = _MISSING, value: Any = _MISSING) -> "Query":
        if callable(column):
            self.having_conditions.append(self._group(column, "OR", having=True))
        else:
            self.having_conditions.append(self._basic("OR", column, operator, value))
        return self

    def having_raw(self, sql: str, bindings: Optional[list[Any]] = None) -> "Query":
        self.having_conditions.append(RawCondition(fragment=sql, bindings=list(bindings or ()), context="having_raw"))
        return self

    # --- ORDER BY / LIMIT / OFFSET ---

    def order_by(self, column: str, direction: str = "asc") -> "Query":
        direction = direction.lower()
        if direction not in ("asc", "desc"):
            raise ValueError(f"Order direction must be `asc` or `desc`, got `{direction}`")
        self.order_by_clauses.append(Order(column=column, direction=direction))
        return self

    def order_by_desc(self, column: str) -> "Query":
        return self.order_by(column, "desc")

    def latest(self, column: str = "created_at") -> "Query":
        return self.order_by(column, "desc")

    def oldest(self, column: str = "created_at") -> "Query":
        return self.order_by(column, "asc")

    def in_random_order(self) -> "Query":
        self.order_by_clauses.append(Order(column="RAND()", random=True))
        return self

    def reorder(self, column: Optional[str] = None, direction: str = "asc") -> "Query":
        """Drop every ORDER BY term, then optionally order by column."""
        self.order_by_clauses = []
        if column:
            self.order_by(column, direction)
        return self

    def limit(self, limit: Optional[int]) -> "Query":
        self.limit_value = limit
        return self

    def take(self, limit: Optional[int]) -> "Query":
        return self.limit(limit)

    def offset(self, offset: Optional[int]) -> "Query":
        self.offset_value = offset
        return self

    def skip(self, offset: Optional[int]) -> "Query":
        return self.offset(offset)

    def for_page(self, page: int, per_page: int = 15) -> "Query":
        """Limit to the rows of 1-based page ``page``."""
        return self.offset(max(page - 1, 0) * per_page).limit(per_page)

    # --- UNION ---

    def union(self, query: "Query") -> "Query":
        self.unions.append(UnionBranch(query=query.clone(), all=False))
        return self

    def union_all(self, query: "Query") -> "Query":
        self.unions.append(UnionBranch(query=query.clone(), all=True))
        return self

    # --- soft deletes ---

    def _require_soft_deletes(self, method: str) -> None:
        if not self.model.uses_soft_deletes():
            raise SoftDeletesNotSupported(self.model, method)

    def with_trashed(self) -> "Query":
        """Include soft-deleted rows."""
        self._require_soft_deletes("with_trashed")
        self.trashed_mode = "with"
        return self

    def only_trashed(self) -> "Query":
        """Return soft-deleted rows only."""
        self._require_soft_deletes("only_trashed")
        self.trashed_mode = "only"
        return self

    def without_trashed(self) -> "Query":
        self.trashed_mode = "default"
        return self

    def _soft_delete_conditions(self, table: Optional[str] = None) -> list[Condition]:
        if not self.model.uses_soft_deletes():
            return []
        column = f"{table or self._table()}.deleted_at"
        if self.trashed_mode == "default":
            return [NullCondition(column=column)]
        if self.trashed_mode == "only":
            return [NotNullCondition(column=column)]
        return []

    def _where_conditions(self, table: Optional[str] = None) -> list[Condition]:
        """Root conditions plus the soft-delete scope.

        When the root list contains an OR, it is parenthesized so the scope
        applies to the whole of it.
        """
        scope = self._soft_delete_conditions(table)
        conditions = list(self.conditions)
        if scope and any(c.boolean == "OR" for c in conditions[1:]):
            conditions = [GroupCondition(children=conditions)]
        return conditions + scope

    # --- eager loading ---

    def with_(self, relations: str | list[str] | dict[str, Any], callback: Optional[Callable] = None) -> "Query":
        """Eager-load relations after fetching.

        Accepts ``"rel"``, ``"rel.nested"``, ``"rel:col1,col2"``, a list of
        those, or a dict mapping each path to a column list or a callback that
        refines the query fetching that relation.
        """
        if isinstance(relations, str):
            relation, columns = parse_relation_path(relations)
            self._add_with(relation, columns, callback)
        elif isinstance(relations, dict):
            for name, value in relations.items():
                relation, columns = parse_relation_path(name)
                if isinstance(value, (list, tuple)):
                    self._add_with(relation, list(value), None)
                else:
                    self._add_with(relation, columns, value)
        else:
            for name in relations:
                relation, columns = parse_relation_path(name)
                self._add_with(relation, columns, None)
        return self

    def _add_with(self, relation: str, columns: Optional[list[str]], callback: Optional[Callable]) -> None:
        if relation not in self.with_relations:
            self.with_relations.append(relation)
        if columns:
            self.with_columns[relation] = columns
        if callback is not None:
            self.with_callbacks[relation] = callback

    def without(self, *relations: str | list[str]) -> "Query":
        """Cancel eager loading of relations (e.g. ones from the model's ``default_with``)."""
        removed = set(_flatten(relations))
        self.with_relations = [r for r in self.with_relations if r not in removed]
        for relation in removed:
            self.with_columns.pop(relation, None)
            self.with_callbacks.pop(relation, None)
        return self

    def with_only(self, relations: str | list[str] | dict[str, Any]) -> "Query":
        """Eager-load exactly relations, replacing anything requested so far."""
        self.with_relations = []
        self.with_columns = {}
        self.with_callbacks = {}
        return self.with_(relations)

    def with_where_has(self, relation: str, callback: Optional[Callable] = None) -> "Query":
        """Filter on the relation existing (refined by callback) and eager-load it the same way."""
        self.where_has(relation, callback)
        return self.with_(relation, callback)

    def with_count(self, relations: str | list[str] | dict[str, Optional[Callable]]) -> "Query":
        """Select ``{relation}_count`` for each relation, counted by a correlated subquery."""
        if isinstance(relations, str):
            items = [(relations, None)]
        elif isinstance(relations, dict):
            items = list(relations.items())
        else:
            items = [(name, None) for name in relations]
        for name, callback in items:
            sql, params = self._count_subquery(name, callback)
            alias = name.replace(".", "_") + "_count"
            self.select_raw(f"({sql}) AS {alias}", params)
        return self

    def eager_loader(self, registry=None):
        """The loader that applies this query's eager-load requests."""
        from .loading import EagerLoader
        return EagerLoader(columns=self.with_columns, callbacks=self.with_callbacks, registry=registry)

    # --- relation existence ---

    def _has_subquery(self, relation: str, callback: Optional[Callable] = None) -> tuple[str, list[Any]]:
        """``SELECT 1 FROM related ... WHERE <link to this table> [AND (<constraints>)]``."""
        descriptor = require_relation(self.model, relation)
        if descriptor.kind == "morph_to":
            raise RelationKindMismatch(relation, "a relation with a fixed target model (see where_has_morph)", "morph_to")
        parent_table = self._table()
        related = descriptor.related_model()
        related_table = related.get_table_name()
        inner = related.query()
        descriptor.apply_constraints(inner)
        if callback is not None:
            callback(inner)
        where_sql, where_params = compile_conditions(inner._where_conditions(related_table))

        source = related_table
        params: list[Any] = []
        if descriptor.kind in ("has_one", "has_many"):
            links = [f"{related_table}.{descriptor.foreign_key} = {parent_table}.{descriptor.local_key}"]
        elif descriptor.kind == "belongs_to":
            links = [f"{related_table}.{descriptor.owner_key} = {parent_table}.{descriptor.foreign_key}"]
        elif descriptor.is_morph_owned:
            types = morph_map.possible_types_for(self.model)
            placeholders = ", ".join("?" for _ in types)
            links = [
                f"{related_table}.{descriptor.id_column} = {parent_table}.{descriptor.local_key}",
                f"{related_table}.{descriptor.type_column} IN ({placeholders})",
            ]
            params.extend(types)
        elif descriptor.kind == "belongs_to_many":
            pivot = descriptor.table
            source = (f"{related_table} JOIN {pivot} ON "
                      f"{related_table}.{descriptor.related_key} = {pivot}.{descriptor.related_pivot_key}")
            links = [f"{pivot}.{descriptor.foreign_pivot_key} = {parent_table}.{descriptor.parent_key}"]
        else:
            through_table = descriptor.through_model().get_table_name()
            source = (f"{related_table} JOIN {through_table} ON "
                      f"{related_table}.{descriptor.second_key} = {through_table}.{descriptor.second_local_key}")
            links = [f"{through_table}.{descriptor.first_key} = {parent_table}.{descriptor.local_key}"]

        sql = f"SELECT 1 FROM {source} WHERE {' AND '.join(links)}"
        if where_sql:
            sql += f" AND ({where_sql})"
        return sql, params + where_params

    def _count_subquery(self, relation: str, callback: Optional[Callable] = None) -> tuple[str, list[Any]]:
        sql, params = self._has_subquery(relation, callback)
        return "SELECT COUNT(*) " + sql[len("SELECT 1 "):], params

    def _where_has(self, boolean: Boolean, relation: str, callback: Optional[Callable],
                   operator: Optional[str], count: Optional[int]) -> "Query":
        if operator is not None and count is not None:
            sql, params = self._count_subquery(relation, callback)
            fragment, bindings = f"({sql}) {operator} ?", params + [count]
        else:
            sql, params = self._has_subquery(relation, callback)
            fragment, bindings = f"EXISTS ({sql})", params
        self.conditions.append(RawCondition(fragment=fragment, bindings=bindings, context="where_has", boolean=boolean))
        return self

    def where_has(self, relation: str, callback: Optional[Callable] = None,
                  operator: Optional[str] = None, count: Optional[int] = None) -> "Query":
        """Keep rows having related rows (matching callback; at least one, or ``operator count``)."""
        return self._where_has("AND", relation, callback, operator, count)

    def or_where_has(self, relation: str, callback: Optional[Callable] = None,
                     operator: Optional[str] = None, count: Optional[int] = None) -> "Query":
        return self._where_has("OR", relation, callback, operator, count)

    def has(self, relation: str, operator: str = ">=", count: int = 1) -> "Query":
        """Keep rows with ``operator count`` related rows; the default uses EXISTS."""
        if operator == ">=" and count == 1:
            return self.where_has(relation)
        return self.where_has(relation, None, operator, count)

    def or_has(self, relation: str, operator: str = ">=", count: int = 1) -> "Query":
        if operator == ">=" and count == 1:
            return self.or_where_has(relation)
        return self.or_where_has(relation, None, operator, count)

    def _doesnt_have(self, boolean: Boolean, relation: str, callback: Optional[Callable]) -> "Query":
        sql, params = self._has_subquery(relation, callback)
        self.conditions.append(RawCondition(fragment=f"NOT EXISTS ({sql})", bindings=params,
                                            context="doesnt_have", boolean=boolean))
        return self

    def doesnt_have(self, relation: str, callback: Optional[Callable] = None) -> "Query":
        return self._doesnt_have("AND", relation, callback)

    def where_doesnt_have(self, relation: str, callback: Optional[Callable] = None) -> "Query":
        return self._doesnt_have("AND", relation, callback)

    def or_doesnt_have(self, relation: str, callback: Optional[Callable] = None) -> "Query":
        return self._doesnt_have("OR", relation, callback)

    def or_where_doesnt_have(self, relation: str, callback: Optional[Callable] = None) -> "Query":
        return self._doesnt_have("OR", relation, callback)

    @staticmethod
    def _relation_callback(column: str | Callable, operator: Any, value: Any) -> Callable:
        if callable(column):
            return column
        return lambda q: q.where(column, operator, value)

    def where_relation(self, relation: str, column: str | Callable, operator: Any = _MISSING,
                       value: Any = _MISSING) -> "Query":
        """``where_has`` with a single condition, e.g. ``where_relation("posts", "published", True)``."""
        return self.where_has(relation, self._relation_callback(column, operator, value))

    def or_where_relation(self, relation: str, column: str | Callable, operator: Any = _MISSING,
                          value: Any = _MISSING) -> "Query":
        return self.or_where_has(relation, self._relation_callback(column, operator, value))

    def where_belongs_to(self, related: Any, relation: Optional[str] = None) -> "Query":
        """Keep rows owned by related (an instance or a list of instances).

        Without ``relation``, the single belongs_to relation targeting the
        class of related is used.

        Raises:
            RelationNotFound: If no (or no unique) belongs_to relation matches.
            RelationKindMismatch: If relation is not a belongs_to relation.
        """
        many = isinstance(related, (list, tuple))
        items = [item for item in (related if many else [related]) if item is not None]
        if not items:
            return self.where_raw("0=1")
        if relation is None:
            relation = self._infer_belongs_to(type(items[0]))
        descriptor = require_relation(self.model, relation)
        if descriptor.kind != "belongs_to":
            raise RelationKindMismatch(relation, "belongs_to", descriptor.kind)
        keys = [getattr(item, descriptor.owner_key) for item in items]
        keys = [key for key in keys if key is not None]
        if not keys:
            return self.where_raw("0=1")
        if many:
            return self.where_in(descriptor.foreign_key, keys)
        return self.where(descriptor.foreign_key, keys[0])

    def _infer_belongs_to(self, owner: type) -> str:
        candidates = []
        for name in relation_names(self.model):
            descriptor = require_relation(self.model, name)
            if descriptor.kind == "belongs_to" and descriptor.related_model() is owner:
                candidates.append(name)
        if len(candidates) != 1:
            raise RelationNotFound(self.model, owner.__name__.lower())
        return candidates[0]

    def _where_has_morph(self, boolean: Boolean, relation: str, types: Any,
                         callback: Optional[Callable]) -> "Query":
        descriptor = require_relation(self.model, relation)
        if descriptor.kind != "morph_to":
            raise RelationKindMismatch(relation, "morph_to", descriptor.kind)
        parent_table = self._table()
        parts, params = [], []
        for morph in types if isinstance(types, (list, tuple)) else [types]:
            morph_type = morph if isinstance(morph, str) else morph_map.morph_type_for(morph)
            related = morph_map.model_for(morph_type)
            if related is None:
                raise PolymorphicModelUnresolved(morph_type)
            related_table = related.get_table_name()
            inner = related.query()
            if callback is not None:
                callback(inner)
            where_sql, where_params = compile_conditions(inner._where_conditions(related_table))
            exists = f"SELECT 1 FROM {related_table} WHERE {related_table}.id = {parent_table}.{descriptor.id_column}"
            if where_sql:
                exists += f" AND ({where_sql})"
            parts.append(f"({parent_table}.{descriptor.type_column} = ? AND EXISTS ({exists}))")
            params.extend([morph_type, *where_params])
        self.conditions.append(RawCondition(fragment=" OR ".join(parts) or "0=1", bindings=params,
                                            context="where_has_morph", boolean=boolean))
        return self

    def where_has_morph(self, relation: str, types: Any, callback: Optional[Callable] = None) -> "Query":
        """Keep rows whose morph_to target is one of types (classes or tags) and matches callback."""
        return self._where_has_morph("AND", relation, types, callback)

    def or_where_has_morph(self, relation: str, types: Any, callback: Optional[Callable] = None) -> "Query":
        return self._where_has_morph("OR", relation, types, callback)

    def where_morphed_to(self, relation: str, instance: Any) -> "Query":
        """Keep rows whose morph_to relation points at instance."""
        descriptor = require_relation(self.model, relation)
        if descriptor.kind != "morph_to":
            raise RelationKindMismatch(relation, "morph_to", descriptor.kind)
        return (self
                .where(descriptor.type_column, morph_map.morph_type_for(type(instance)))
                .where(descriptor.id_column, instance.id))

    # --- "one of many" ---

    def of_many(self, column: str, aggregate: str) -> "Query":
        """Keep the row(s) where column equals its MAX/MIN over this query's rows."""
        aggregate = aggregate.lower()
        if aggregate not in ("max", "min"):
            raise ValueError(f"Aggregate must be `max` or `min`, got `{aggregate}`")
        sub = self.clone()
        sub.columns = [f"{aggregate.upper()}({column}) AS aggregate_value"]
        sub.select_bindings = []
        sub.order_by_clauses = []
        sub.limit_value = None
        sub.offset_value = None
        sub_sql, sub_params = sub.compile()
        self.where_raw(f"{column} = ({sub_sql})", sub_params)
        return self.order_by(column, "desc" if aggregate == "max" else "asc").limit(1)

    def latest_of_many(self, column: str = "created_at") -> "Query":
        return self.of_many(column, "max")

    def oldest_of_many(self, column: str = "created_at") -> "Query":
        return self.of_many(column, "min")

    # --- pivot ---

    def set_pivot_source(self, table: str, alias: str = "pivot") -> "Query":
        if self.pivot is None:
            self.pivot = PivotConfig(table=table, alias=alias)
        return self

    def as_(self, alias: str) -> "Query":
        if self.pivot is not None:
            self.pivot.alias = alias
        return self

    def with_pivot(self, *columns: str) -> "Query":
        """Select pivot columns as ``alias__column``; they end up under ``instance.<alias>``."""
        if self.pivot is None:
            return self
        for column in columns:
            if not column or column in self.pivot.columns:
                continue
            self.pivot.columns.append(column)
            self.add_select(f"{self.pivot.table}.{column} AS {self.pivot.alias}__{column}")
        return self

    # --- control flow ---

    def when(self, condition: Any, callback: Callable, default: Optional[Callable] = None) -> "Query":
        if condition:
            callback(self)
        elif default is not None:
            default(self)
        return self

    def unless(self, condition: Any, callback: Callable, default: Optional[Callable] = None) -> "Query":
        if not condition:
            callback(self)
        elif default is not None:
            default(self)
        return self

    def tap(self, callback: Callable) -> "Query":
        callback(self)
        return self

    def scope(self, name: str, *args: Any) -> "Query":
        """Apply the model's ``scope_<name>(query, *args)`` classmethod."""
        method = getattr(self.model, f"scope_{name}", None)
        if method is None:
            raise AttributeError(f"{self.model.__name__} has no scope `{name}`")
        result = method(self, *args)
        return self if result is None else result

    # --- SQL-generating methods ---

    def _sql_order_limit(self) -> str:
        sql = ""
        if self.order_by_clauses:
            sql += " ORDER BY " + ", ".join(o.sql for o in self.order_by_clauses)
        if self.limit_value is not None:
            sql += f" LIMIT {int(self.limit_value)}"
        if self.offset_value is not None:
            sql += f" OFFSET {int(self.offset_value)}"
        return sql

    def compile(self, include_order_limit: bool = True) -> tuple[str, list[Any]]:
        """Compile this query alone (no union branches) into ``(sql, params)``.

        Parameters are ordered: SELECT bindings, WHERE, HAVING.
        """
        table = self._table()
        distinct = "DISTINCT " if self.is_distinct else ""
        sql = f"SELECT {distinct}{', '.join(self.columns)} FROM {table}"
        for join in self.joins:
            sql += f" {join.sql}"
        where_sql, where_params = compile_conditions(self._where_conditions(table))
        if where_sql:
            sql += f" WHERE {where_sql}"
        if self.group_by_columns:
            sql += f" GROUP BY {', '.join(self.group_by_columns)}"
        having_sql, having_params = compile_conditions(self.having_conditions)
        if having_sql:
            sql += f" HAVING {having_sql}"
        if include_order_limit:
            sql += self._sql_order_limit()
        return sql, [*self.select_bindings, *where_params, *having_params]

    def statement(self, context: str = "statement") -> tuple[str, list[Any]]:
        """Full statement including union branches, checked by the read-only guard.

        Union branches are compiled without ORDER BY/LIMIT/OFFSET, which apply
        once to the combined result.
        """
        sql, params = self.compile(include_order_limit=not self.unions)
        if self.unions:
            for branch in self.unions:
                branch_sql, branch_params = branch.query.compile(include_order_limit=False)
                sql += f" UNION {'ALL ' if branch.all else ''}{branch_sql}"
                params.extend(branch_params)
            sql += self._sql_order_limit()
        ensure_read_only_sql(sql, context)
        return sql, params

    def to_sql(self) -> str:
        return self.statement("to_sql")[0]

    def get_bindings(self) -> list[Any]:
        return self.statement("get_bindings")[1]

    def to_raw_sql(self) -> str:
        """SQL with parameters inlined; for debugging only, never for execution."""
        sql, params = self.statement("to_raw_sql")
        for param in params:
            if isinstance(param, str):
                literal = "'" + param.replace("'", "''") + "'"
            elif param is None:
                literal = "NULL"
            else:
                literal = str(param)
            sql = sql.replace("?", literal, 1)
        return sql

    # --- execution ---

    def _hydrate(self, row: dict[str, Any]):
        if self.pivot is not None and self.pivot.columns:
            prefix = f"{self.pivot.alias}__"
            pivot_data = {key[len(prefix):]: row.pop(key) for key in list(row) if key.startswith(prefix)}
            if pivot_data:
                row[self.pivot.alias] = pivot_data
        return self.model.from_row(row)

    async def rows(self) -> list[dict[str, Any]]:
        """Execute and return the raw rows as dicts (no hydration, no eager loading)."""
        sql, params = self.statement("rows")
        return await self._connection().execute(sql, params)

    async def _fetch(self, key_column: Optional[str] = None, registry=None) -> tuple[list[Any], Collection]:
        sql, params = self.statement("get")
        rows = await self._connection().execute(sql, params)
        keys: list[Any] = []
        instances = Collection()
        for row in rows:
            if key_column is not None:
                keys.append(row.pop(key_column, None))
            instances.append(self._hydrate(row))
        if self.with_relations and instances:
            await self.eager_loader(registry).load(instances, self.with_relations)
        return keys, instances.adopt()

    async def get(self, registry=None) -> Collection:
        """Execute and return the matching models, with requested relations loaded."""
        _, instances = await self._fetch(registry=registry)
        return instances

    async def get_with_keys(self, key_column: str, registry=None) -> list[tuple[Any, Any]]:
        """Like get(), but pop key_column off each row and pair it with the model."""
        keys, instances = await self._fetch(key_column, registry=registry)
        return list(zip(keys, instances))

    async def first(self):
        """Return the first matching model, or None."""
        results = await self.clone().limit(1).get()
        return results[0] if results else None

    async def first_or_fail(self):
        result = await self.first()
        if result is None:
            raise ModelNotFound(f"No {self.model.__name__} matches the query")
        return result

    async def find(self, identifier: Any):
        return await self.clone().where(f"{self._table()}.id", identifier).first()

    async def find_or_fail(self, identifier: Any):
        result = await self.find(identifier)
        if result is None:
            raise ModelNotFound(f"No {self.model.__name__} found with id `{identifier}`")
        return result

    async def pluck(self, column: str, key: Optional[str] = None) -> list[Any] | dict[Any, Any]:
        """Values of column for every match, or a ``{key: value}`` dict when key is given."""
        results = await self.get()
        name = column.split(".")[-1]
        if key is None:
            return [getattr(instance, name, None) for instance in results]
        key_name = key.split(".")[-1]
        return {getattr(instance, key_name, None): getattr(instance, name, None) for instance in results}

    async def value(self, column: str) -> Any:
        result = await self.first()
        return None if result is None else getattr(result, column.split(".")[-1], None)

    async def aggregate(self, function: str, column: str = "*") -> Any:
        """Run ``SELECT FUNCTION(column) AS aggregate`` with this query's conditions."""
        q = self.clone()
        q.columns = [f"{function.upper()}({column}) AS aggregate"]
        q.select_bindings = []
        q.order_by_clauses = []
        q.limit_value = None
        q.offset_value = None
        q.unions = []
        q.with_relations = []
        sql, params = q.statement("aggregate")
        rows = await q._connection().execute(sql, params)
        return rows[0]["aggregate"] if rows else None

    async def count(self, column: str = "*") -> int:
        return int(await self.aggregate("COUNT", column) or 0)

    async def sum(self, column: str) -> Any:
        return await self.aggregate("SUM", column)

    async def avg(self, column: str) -> Any:
        return await self.aggregate("AVG", column)

    async def min(self, column: str) -> Any:
        return await self.aggregate("MIN", column)

    async def max(self, column: str) -> Any:
        return await self.aggregate("MAX", column)

    async def exists(self) -> bool:
        return await self.count() > 0

    async def doesnt_exist(self) -> bool:
        return not await self.exists()

    async def chunk(self, size: int, callback: Callable) -> None:
        """Feed callback successive pages of ``size`` models; stop when it returns False."""
        page = 0
        while True:
            results = await self.clone().offset(page * size).limit(size).get()
            if not results:
                break
            outcome = callback(results)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            if outcome is False or len(results) < size:
                break
            page += 1

    async def each(self, callback: Callable) -> None:
        for instance in await self.get():
            outcome = callback(instance)
            if inspect.isawaitable(outcome):
                await outcome


UnionBranch.model_rebuild()
