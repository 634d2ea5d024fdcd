"""Polymorphic type registry: alias <-> model class."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from .utils.find_model import find_model, iter_models

logger = logging.getLogger("readorm")


class MorphMap:
    """Registered aliases under which models are stored in polymorphic type columns.

    Without a registration, a model is known by its ``morph_class`` (if set)
    or its class name.
    """

    def __init__(self, mapping: Optional[Mapping[str, type]] = None):
        self._aliases: dict[str, type] = {}
        if mapping:
            self.register(mapping)

    def register(self, mapping: Mapping[str, type]) -> None:
        """Add (or replace) aliases."""
        self._aliases.update(mapping)

    def clear(self) -> None:
        self._aliases.clear()

    def aliases_for(self, model: type) -> list[str]:
        return [alias for alias, cls in self._aliases.items() if cls is model]

    def morph_type_for(self, model: type) -> str:
        """The type tag written for model: morph_class, else first alias, else class name."""
        morph_class = getattr(model, "_MORPH_CLASS", None)
        if morph_class:
            return morph_class
        aliases = self.aliases_for(model)
        if aliases:
            return aliases[0]
        return model.__name__

    def possible_types_for(self, model: type) -> list[str]:
        """Every tag under which rows may refer to model."""
        candidates = list(getattr(model, "_MORPH_TYPES", None) or ())
        morph_class = getattr(model, "_MORPH_CLASS", None)
        if morph_class:
            candidates.append(morph_class)
        candidates.extend(self.aliases_for(model))
        candidates.append(model.__name__)
        return list(dict.fromkeys(candidates))

    def model_for(self, morph_type: str) -> Optional[type]:
        """Return the model stored under morph_type, or None."""
        if morph_type in self._aliases:
            return self._aliases[morph_type]
        for cls in iter_models():
            if getattr(cls, "_MORPH_CLASS", None) == morph_type:
                return cls
        return find_model(morph_type)


morph_map = MorphMap()


def resolve_model(reference: Any, morphs: Optional[MorphMap] = None) -> Optional[type]:
    """Turn a model reference (class, alias or class name) into a class, or None."""
    if reference is None or isinstance(reference, type):
        return reference
    return (morphs or morph_map).model_for(reference)
