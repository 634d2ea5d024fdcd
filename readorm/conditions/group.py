"""Parenthesized group of conditions."""

from __future__ import annotations
from typing import Any

from pydantic import Field

from ._bases import Condition, compile_conditions


class GroupCondition(Condition):
    """``(child AND child OR ...)``, optionally negated as ``NOT (...)``.

    A group whose children compile to nothing compiles to the empty string,
    which the enclosing compiler skips together with the group's boolean.
    """

    children: list[Condition] = Field(default_factory=list)
    negated: bool = False

    @property
    def sql(self) -> str:
        sql, _ = compile_conditions(self.children)
        if not sql:
            return ""
        return f"NOT ({sql})" if self.negated else f"({sql})"

    @property
    def values(self) -> tuple[Any, ...]:
        _, params = compile_conditions(self.children)
        return tuple(params)
