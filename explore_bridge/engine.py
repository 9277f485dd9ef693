"""Local query capability on the remote side.

The remote executor owns the data. ``SQLiteQueryEngine`` loads a dataset into
an in-memory SQLite table and answers the read-only queries the model issues.
Results are plain JSON-safe lists so they can be reported as-is.
"""

from __future__ import annotations

import csv
import logging
import re
import sqlite3
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Protocol, Sequence

from explore_bridge.errors import QueryExecutionError

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass
class QueryResult:
    columns: list[str] = field(default_factory=list)
    rows: list[list[Any]] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def records(self) -> list[dict[str, Any]]:
        """Rows as column-keyed dicts (the shape Vega-Lite ``data.values`` wants)."""
        return [dict(zip(self.columns, row)) for row in self.rows]


class QueryEngine(Protocol):
    def execute(self, sql: str) -> QueryResult: ...

    def interrupt(self) -> None: ...


def _quote(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _jsonable(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    return value


def _infer_type(values: Iterable[Any]) -> str:
    kind = "INTEGER"
    seen = False
    for value in values:
        if value is None:
            continue
        seen = True
        if isinstance(value, bool) or isinstance(value, int):
            continue
        if isinstance(value, float):
            kind = "REAL"
            continue
        return "TEXT"
    return kind if seen else "TEXT"


def _coerce_csv_value(raw: str) -> Any:
    text = raw.strip()
    if text == "":
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return raw


class SQLiteQueryEngine:
    """In-memory SQLite database holding one dataset table.

    Connections are shared across worker threads; a lock serializes access.
    ``interrupt()`` aborts the statement currently running.
    """

    def __init__(self, table_name: str = "t_parsed") -> None:
        if not _IDENTIFIER_RE.match(table_name):
            raise ValueError(f"Invalid table name {table_name!r}")
        self.table_name = table_name
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        self._schema: list[dict[str, str]] = []

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_rows(
        cls,
        columns: Sequence[str],
        rows: Iterable[Sequence[Any]],
        *,
        table_name: str = "t_parsed",
    ) -> "SQLiteQueryEngine":
        engine = cls(table_name)
        engine.load(columns, rows)
        return engine

    @classmethod
    def from_csv(cls, path: str | Path, *, table_name: str = "t_parsed") -> "SQLiteQueryEngine":
        """Load a CSV with a header row; numeric-looking cells become numbers."""
        with open(path, newline="", encoding="utf-8") as f:
            reader = csv.reader(f)
            try:
                header = next(reader)
            except StopIteration:
                raise ValueError(f"CSV file is empty: {path}") from None
            rows = [[_coerce_csv_value(cell) for cell in row] for row in reader if row]
        engine = cls(table_name)
        engine.load(header, rows)
        logger.info("Loaded %d rows from %s into %s", len(rows), path, table_name)
        return engine

    def load(self, columns: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
        """(Re)create the dataset table and insert ``rows``."""
        names = [str(c) for c in columns]
        if not names:
            raise ValueError("At least one column is required")
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate column names: {names}")
        materialized = [list(r) for r in rows]
        for i, row in enumerate(materialized):
            if len(row) != len(names):
                raise ValueError(f"Row {i} has {len(row)} values, expected {len(names)}")

        schema = [
            {"name": name, "type": _infer_type(row[idx] for row in materialized)}
            for idx, name in enumerate(names)
        ]
        column_defs = ", ".join(f"{_quote(c['name'])} {c['type']}" for c in schema)
        placeholders = ", ".join("?" for _ in names)
        table = _quote(self.table_name)
        with self._lock:
            self._conn.execute(f"DROP TABLE IF EXISTS {table}")
            self._conn.execute(f"CREATE TABLE {table} ({column_defs})")
            self._conn.executemany(f"INSERT INTO {table} VALUES ({placeholders})", materialized)
            self._conn.commit()
            self._schema = schema

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def schema(self) -> list[dict[str, str]]:
        return [dict(c) for c in self._schema]

    def row_count(self) -> int:
        return int(self.execute(f"SELECT COUNT(*) FROM {_quote(self.table_name)}").rows[0][0])

    def sample(self, n: int = 5) -> QueryResult:
        return self.execute(f"SELECT * FROM {_quote(self.table_name)} LIMIT {int(n)}")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, sql: str) -> QueryResult:
        """Run one statement and fetch all rows.

        Raises:
            QueryExecutionError: SQLite rejected or aborted the statement.
        """
        with self._lock:
            try:
                cursor = self._conn.execute(sql)
                rows = cursor.fetchall()
            except sqlite3.Error as exc:
                raise QueryExecutionError(str(exc), original=exc) from exc
            columns = [d[0] for d in cursor.description or ()]
        return QueryResult(
            columns=columns,
            rows=[[_jsonable(v) for v in row] for row in rows],
        )

    def interrupt(self) -> None:
        self._conn.interrupt()

    def close(self) -> None:
        with self._lock:
            self._conn.close()
