"""Table and column detection for externally-versioned SQLite databases."""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence


@dataclass
class SchemaInfo:
    tables: set[str] = field(default_factory=set)
    columns: dict[str, set[str]] = field(default_factory=dict)

    def has_table(self, table: str) -> bool:
        return table in self.tables

    def has_column(self, table: str, column: str) -> bool:
        return column in self.columns.get(table, set())

    def missing(self, required: dict[str, Sequence[str]]) -> list[str]:
        """Names of required tables and ``table.column`` pairs that are absent."""
        absent: list[str] = []
        for table, cols in required.items():
            if not self.has_table(table):
                absent.append(table)
                continue
            absent.extend(f"{table}.{col}" for col in cols if not self.has_column(table, col))
        return absent


def open_readonly(path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True, timeout=5.0)
    conn.row_factory = sqlite3.Row
    return conn


def read_schema(conn: sqlite3.Connection) -> SchemaInfo:
    schema = SchemaInfo()
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    for row in rows:
        name = row[0]
        schema.tables.add(name)
        # Table names come from sqlite_master, not user input.
        info = conn.execute(f"PRAGMA table_info('{name}')").fetchall()
        schema.columns[name] = {col[1] for col in info}
    return schema


def select_columns(schema: SchemaInfo, table: str, wanted: Sequence[str]) -> str:
    """Build a select list where absent columns read as ``NULL AS <column>``."""
    return ", ".join(col if schema.has_column(table, col) else f"NULL AS {col}" for col in wanted)
