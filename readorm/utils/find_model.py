"""Resolve model classes by name (e.g. for string relation targets)."""

from typing import Iterable, Optional


def _get_subclasses(base: type) -> Iterable[type]:
    """Recursively yield all subclasses of base, most recently defined first."""
    for subclass in base.__subclasses__()[::-1]:
        yield subclass
        yield from _get_subclasses(subclass)


def iter_models() -> Iterable[type]:
    """Yield every Model subclass currently alive in the process."""
    from ..model import Model
    seen = set()
    for cls in _get_subclasses(Model):
        if cls not in seen:
            seen.add(cls)
            yield cls


def find_model(name: str) -> Optional[type]:
    """Return the model whose class name or table name equals name, or None.

    When several classes share a name, the most recently defined one wins.
    """
    for cls in iter_models():
        if name in (cls.__name__, cls.get_table_name()):
            return cls
    return None
