"""Condition tree for WHERE/HAVING clauses, compiled to SQL with ``?`` placeholders."""

from ._bases import Boolean, Condition, ColumnCondition, compile_conditions
from .column import (
    BasicCondition,
    InCondition,
    NotInCondition,
    NullCondition,
    NotNullCondition,
    BetweenCondition,
    NotBetweenCondition,
)
from .raw import RawCondition
from .group import GroupCondition

__all__ = [
    "Boolean",
    "Condition",
    "ColumnCondition",
    "compile_conditions",
    "BasicCondition",
    "InCondition",
    "NotInCondition",
    "NullCondition",
    "NotNullCondition",
    "BetweenCondition",
    "NotBetweenCondition",
    "RawCondition",
    "GroupCondition",
]
