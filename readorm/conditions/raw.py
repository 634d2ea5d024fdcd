"""Raw SQL condition: the only place caller text reaches the output unescaped."""

from __future__ import annotations
from typing import Any

from pydantic import Field

from ..guard import ensure_read_only_snippet
from ._bases import Condition


class RawCondition(Condition):
    """A caller-supplied SQL fragment, wrapped in parentheses.

    The fragment is checked by the read-only guard when the condition is
    built, so a forbidden fragment never reaches a query.
    """

    fragment: str
    bindings: list[Any] = Field(default_factory=list)
    context: str = "where_raw"

    def __init__(self, **data: Any):
        # checked before validation so ReadOnlyViolation is not wrapped in a ValidationError
        ensure_read_only_snippet(str(data.get("fragment", "")), data.get("context", "where_raw"))
        super().__init__(**data)

    @property
    def sql(self) -> str:
        return f"({self.fragment})"

    @property
    def values(self) -> tuple[Any, ...]:
        return tuple(self.bindings)
