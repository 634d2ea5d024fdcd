"""Read-only guard for raw SQL fragments and compiled statements."""

import re

from .errors import ReadOnlyViolation


FORBIDDEN_SQL: tuple[str, ...] = (
    "insert",
    "update",
    "delete",
    "replace",
    "create",
    "drop",
    "alter",
    "truncate",
    "grant",
    "revoke",
    "load data",
    "into outfile",
)

# word boundaries, so that e.g. `created_at` does not match `create`
_FORBIDDEN_PATTERNS = tuple(
    (keyword, re.compile(rf"\b{keyword}\b", re.IGNORECASE))
    for keyword in FORBIDDEN_SQL
)


def ensure_read_only_snippet(snippet: str, context: str) -> None:
    """Raise ReadOnlyViolation if snippet contains `;` or a write/DDL keyword."""
    text = snippet or ""
    if ";" in text:
        raise ReadOnlyViolation(context, "semicolons are not allowed")
    for keyword, pattern in _FORBIDDEN_PATTERNS:
        if pattern.search(text):
            raise ReadOnlyViolation(context, f"disallowed keyword `{keyword}`")


def ensure_read_only_sql(sql: str, context: str) -> None:
    """Raise ReadOnlyViolation unless sql is a single SELECT statement."""
    if not sql.strip().lower().startswith("select"):
        raise ReadOnlyViolation(context, "only SELECT statements are permitted")
    ensure_read_only_snippet(sql, context)
