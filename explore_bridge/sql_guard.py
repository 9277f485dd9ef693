"""Read-only SQL guard.

Only a single SELECT, WITH, or PRAGMA statement, free of comment markers and
write keywords, gets past ``validate_sql``. The guard runs twice: in the tool
adapter (fail fast, before a call is registered) and on the remote executor
before anything touches the local data.
"""

from __future__ import annotations

import re

from explore_bridge.errors import SQLValidationError

FORBIDDEN_KEYWORDS: tuple[str, ...] = (
    "INSERT",
    "UPDATE",
    "DELETE",
    "DROP",
    "CREATE",
    "ALTER",
    "TRUNCATE",
    "REPLACE",
    "MERGE",
    "GRANT",
    "REVOKE",
)

FORBIDDEN_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r";\s*(INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|TRUNCATE)", re.I),
    re.compile(r"--"),
    re.compile(r"/\*"),
    re.compile(r"xp_", re.I),
    re.compile(r"sp_", re.I),
)

ALLOWED_PREFIXES: tuple[str, ...] = ("SELECT", "WITH", "PRAGMA")

_LINE_COMMENT = re.compile(r"--[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*[\s\S]*?\*/")
_WHITESPACE = re.compile(r"\s+")
_TRAILING_SEMICOLONS = re.compile(r";+\s*$")
_HAS_LIMIT = re.compile(r"\bLIMIT\s+\d+", re.I)


def is_read_only_sql(sql: str) -> bool:
    """True if ``sql`` is a SELECT/WITH/PRAGMA statement with no write markers."""
    normalized = sql.strip().upper()

    if any(normalized.startswith(keyword) for keyword in FORBIDDEN_KEYWORDS):
        return False
    if any(pattern.search(sql) for pattern in FORBIDDEN_PATTERNS):
        return False
    return normalized.startswith(ALLOWED_PREFIXES)


def sanitize_sql(sql: str) -> str:
    """Strip comments and collapse whitespace."""
    without_comments = _BLOCK_COMMENT.sub("", _LINE_COMMENT.sub("", sql))
    return _WHITESPACE.sub(" ", without_comments).strip()


def validate_sql(sql: str) -> str:
    """Return the sanitized statement, or raise SQLValidationError.

    Raises:
        SQLValidationError: empty input, or anything other than a read-only
            statement.
    """
    sanitized = sanitize_sql(sql or "")
    if not sanitized:
        raise SQLValidationError("Empty SQL query")
    if not is_read_only_sql(sanitized):
        raise SQLValidationError(
            "Only read-only queries (SELECT, WITH, PRAGMA) are allowed",
            details={"sql": sanitized},
        )
    return sanitized


def apply_row_limit(sql: str, max_rows: int) -> str:
    """Drop trailing semicolons and append ``LIMIT max_rows`` when none is present."""
    stripped = _TRAILING_SEMICOLONS.sub("", sql.strip())
    if stripped.upper().startswith("PRAGMA") or _HAS_LIMIT.search(stripped):
        return stripped
    return f"{stripped} LIMIT {int(max_rows)}"
