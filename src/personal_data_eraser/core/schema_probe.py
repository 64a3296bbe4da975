from __future__ import annotations

import sqlite3

from .database import Database
from .errors import PreconditionError


class SchemaProbe:
    """Live table-existence checks against `sqlite_master`.

    Every call queries the database; results are never cached because optional
    plugin tables may come and go between runs.
    """

    def __init__(self, database: Database) -> None:
        self._database = database

    def exists(self, table: str) -> bool:
        try:
            with self._database.connection() as conn:
                row = conn.execute(
                    "select 1 from sqlite_master where type='table' and name = ?",
                    (table,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise PreconditionError(f"Schema probe failed for {table}: {exc}") from exc
        return row is not None

    def list_tables(self, prefix: str | None = None) -> list[str]:
        try:
            with self._database.connection() as conn:
                rows = conn.execute(
                    "select name from sqlite_master where type='table' and name not like 'sqlite_%' order by name"
                ).fetchall()
        except sqlite3.Error as exc:
            raise PreconditionError(f"Schema probe failed: {exc}") from exc
        names = [str(r["name"]) for r in rows]
        if prefix:
            names = [n for n in names if n.startswith(prefix)]
        return names
