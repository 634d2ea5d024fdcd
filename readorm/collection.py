"""Result collections: lists of models that share one loading context."""

import itertools

_ids = itertools.count(1)


class Collection(list):
    """A list of models returned together by one query.

    Every member of an adopted collection knows it, so that loading a
    relation on any one member loads it for all of them in one round trip.
    """

    def __init__(self, items=()):
        super().__init__(items)
        self.id = next(_ids)

    def __repr__(self) -> str:
        return f"Collection(id={self.id}, {list.__repr__(self)})"

    def adopt(self) -> "Collection":
        """Attach every member to this collection; returns self."""
        for item in self:
            item._collection = self
        return self
