"""Metaclass for Model: reads class keywords and collects relation declarations."""

from typing import Iterable, Optional

from pydantic._internal._model_construction import ModelMetaclass

from ..relations import RelationDeclaration
from .mixins import _WithSoftDelete


def _inherited(bases: tuple, attribute: str, default=None):
    for base in bases:
        value = getattr(base, attribute, None)
        if value is not None:
            return value
    return default


class ModelMeta(ModelMetaclass):
    """Metaclass for Model.

    Class keywords (inherited from bases when omitted):
        table: table name; defaults to the lowercased class name plus ``s``.
        soft_deletes: filter rows whose ``deleted_at`` is set.
        morph_class: tag stored in polymorphic type columns for this model.
        morph_types: further tags under which rows may refer to this model.
        connection_name: name given to ``connect()``; defaults to ``default``.
        default_with: relations eager-loaded by every ``query()``.
        hidden: fields and relations left out of ``model_dump()``.
    """

    def __new__(mcs, name, bases, namespace,
                table: Optional[str] = None,
                soft_deletes: Optional[bool] = None,
                morph_class: Optional[str] = None,
                morph_types: Optional[Iterable[str]] = None,
                connection_name: Optional[str] = None,
                default_with: Optional[Iterable[str]] = None,
                hidden: Optional[Iterable[str]] = None,
                **kwargs):
        if soft_deletes is None:
            soft_deletes = _inherited(bases, "_SOFT_DELETES", False)
        default_bases: tuple[type, ...] = ()
        if soft_deletes and not any(issubclass(base, _WithSoftDelete) for base in bases):
            default_bases += (_WithSoftDelete,)
        result = super().__new__(mcs, name, bases + default_bases, namespace, **kwargs)
        result._TABLE = table or _inherited(bases, "_TABLE")
        result._SOFT_DELETES = soft_deletes
        result._MORPH_CLASS = morph_class
        result._MORPH_TYPES = tuple(morph_types or ())
        result._CONNECTION_NAME = connection_name or _inherited(bases, "_CONNECTION_NAME", "default")
        if default_with is None:
            default_with = _inherited(bases, "_DEFAULT_WITH", ())
        result._DEFAULT_WITH = tuple(default_with)
        if hidden is None:
            hidden = _inherited(bases, "_HIDDEN", ())
        result._HIDDEN = frozenset(hidden)
        declared: dict[str, RelationDeclaration] = {}
        for base in reversed(result.__mro__[1:]):
            declared.update(getattr(base, "_DECLARED_RELATIONS", None) or {})
        for attribute, value in namespace.items():
            if isinstance(value, RelationDeclaration):
                declared[attribute] = value
        result._DECLARED_RELATIONS = declared
        return result
