"""Mixins injected into models by ModelMeta."""

import datetime

from pydantic import BaseModel


class _WithSoftDelete(BaseModel):
    """Mixin for soft-deleted rows: a non-null `deleted_at` marks the row deleted."""

    deleted_at: datetime.datetime | None = None
