"""Base condition type and the condition-list compiler."""

from __future__ import annotations
from typing import Any, Literal, Iterable

from pydantic import BaseModel


Boolean = Literal["AND", "OR"]


class Condition(BaseModel):
    """Base type for all WHERE/HAVING condition nodes.

    ``boolean`` tells how the condition joins the *previous* sibling; it is
    ignored for the first emitted clause of a list. Subclasses implement
    ``sql``; ``values`` returns the bound values in the same order as the
    ``?`` placeholders in ``sql``.
    """

    model_config = {"arbitrary_types_allowed": True}

    boolean: Boolean = "AND"

    @property
    def sql(self) -> str:
        """SQL fragment for this condition, with ``?`` for bound parameters."""
        raise NotImplementedError("Subclasses must implement `sql` property")

    @property
    def values(self) -> tuple[Any, ...]:
        """Bound values for placeholders in ``sql``, in order."""
        return ()


class ColumnCondition(Condition):
    """Base for conditions that test a single column."""

    column: str


def compile_conditions(conditions: Iterable[Condition]) -> tuple[str, list[Any]]:
    """Compile a list of sibling conditions into ``(sql, params)``.

    Clauses are emitted depth-first, left to right. A condition that compiles
    to nothing (an empty group) contributes neither text nor its boolean
    operator, so no dangling ``AND``/``OR`` or ``()`` is ever produced.
    """
    sql = ""
    params: list[Any] = []
    for condition in conditions:
        fragment = condition.sql
        if not fragment:
            continue
        if sql:
            sql += f" {condition.boolean} "
        sql += fragment
        params.extend(condition.values)
    return sql, params
