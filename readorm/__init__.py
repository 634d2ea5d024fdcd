"""readorm: a read-only query builder and relation loader built on Pydantic."""

from .connection import connect, disconnect
from .collection import Collection
from .errors import (
    ReadormError,
    ReadOnlyViolation,
    RelationNotFound,
    RelationKindMismatch,
    PolymorphicModelUnresolved,
    ConnectionNotReady,
    RelationNotLoaded,
    ModelNotFound,
    SoftDeletesNotSupported,
)
from .model import Model, RelationState
from .morph import MorphMap, morph_map
from .query import Query
from .registry import LoadRegistry, default_registry
from .loading import EagerLoader, IN_CHUNK_SIZE
from .relations import (
    RelationDescriptor,
    resolve_relation,
    require_relation,
    has_one,
    has_many,
    has_one_of_many,
    latest_of_many,
    oldest_of_many,
    belongs_to,
    belongs_to_many,
    morph_one,
    morph_many,
    morph_one_of_many,
    latest_morph_one,
    oldest_morph_one,
    morph_to,
    has_one_through,
    has_many_through,
    through,
)
