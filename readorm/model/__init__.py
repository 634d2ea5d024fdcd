"""Model base class, metaclass and mixins."""

from .base import Model, RelationState
from .meta import ModelMeta
from .mixins import _WithSoftDelete

__all__ = [
    "Model",
    "ModelMeta",
    "RelationState",
    "_WithSoftDelete",
]
