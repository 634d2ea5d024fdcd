"""Conditions on a single column: comparison, IN, NULL, BETWEEN."""

from __future__ import annotations
from typing import Any

from pydantic import Field

from ._bases import ColumnCondition


class BasicCondition(ColumnCondition):
    """``column operator ?``"""

    operator: str = "="
    value: Any = None

    @property
    def sql(self) -> str:
        return f"{self.column} {self.operator} ?"

    @property
    def values(self) -> tuple[Any, ...]:
        return (self.value,)


class InCondition(ColumnCondition):
    """``column IN (?, ...)``; an empty set is always false."""

    items: list[Any] = Field(default_factory=list)

    @property
    def sql(self) -> str:
        if not self.items:
            return "0=1"
        placeholders = ", ".join("?" for _ in self.items)
        return f"{self.column} IN ({placeholders})"

    @property
    def values(self) -> tuple[Any, ...]:
        return tuple(self.items)


class NotInCondition(InCondition):
    """``column NOT IN (?, ...)``; an empty set is always true."""

    @property
    def sql(self) -> str:
        if not self.items:
            return "1=1"
        placeholders = ", ".join("?" for _ in self.items)
        return f"{self.column} NOT IN ({placeholders})"


class NullCondition(ColumnCondition):
    """``column IS NULL``"""

    @property
    def sql(self) -> str:
        return f"{self.column} IS NULL"


class NotNullCondition(ColumnCondition):
    """``column IS NOT NULL``"""

    @property
    def sql(self) -> str:
        return f"{self.column} IS NOT NULL"


class BetweenCondition(ColumnCondition):
    """``column BETWEEN ? AND ?`` (inclusive)."""

    low: Any
    high: Any

    @property
    def sql(self) -> str:
        return f"{self.column} BETWEEN ? AND ?"

    @property
    def values(self) -> tuple[Any, ...]:
        return (self.low, self.high)


class NotBetweenCondition(BetweenCondition):
    """``column NOT BETWEEN ? AND ?``"""

    @property
    def sql(self) -> str:
        return f"{self.column} NOT BETWEEN ? AND ?"
