"""Exceptions raised by readorm."""


class ReadormError(Exception):
    """Base class for every error raised by readorm."""


class ReadOnlyViolation(ReadormError, ValueError):
    """A SQL fragment or statement would do something other than read."""

    def __init__(self, context: str, reason: str):
        self.context = context
        self.reason = reason
        super().__init__(f"Read-only violation in {context}: {reason}")


class RelationNotFound(ReadormError):
    """The model declares no relation with that name."""

    def __init__(self, model: type, name: str):
        self.model = model
        self.name = name
        super().__init__(f"Relation `{name}` does not exist on model {model.__name__}")


class RelationKindMismatch(ReadormError):
    """The relation exists but its kind does not support the operation."""

    def __init__(self, name: str, expected: str, actual: str):
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(f"Relation `{name}` is a {actual} relationship, expected {expected}")


class PolymorphicModelUnresolved(ReadormError):
    """A polymorphic type tag (or model name) maps to no known model."""

    def __init__(self, morph_type: str):
        self.morph_type = morph_type
        super().__init__(f"Cannot resolve model for morph type `{morph_type}`")


class ConnectionNotReady(ReadormError):
    """No runner has been configured under the requested name."""


class RelationNotLoaded(ReadormError):
    """A relation attribute was read before the relation was loaded."""

    def __init__(self, model: type, name: str):
        self.model = model
        self.name = name
        super().__init__(
            f"Relation `{name}` of {model.__name__} is not loaded; "
            f"call `await instance.load({name!r})` or query with `.with_({name!r})`"
        )


class ModelNotFound(ReadormError):
    """A query expected a row and got none."""


class SoftDeletesNotSupported(ReadormError, ValueError):
    """A trashed-rows scope was requested on a model without soft deletes."""

    def __init__(self, model: type, method: str):
        self.model = model
        self.method = method
        super().__init__(f"{method}() only applies to models with soft deletes, and {model.__name__} has none")
