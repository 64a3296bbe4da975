from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import PreconditionError


_WRITE_ACTIONS = {
    sqlite3.SQLITE_INSERT,
    sqlite3.SQLITE_UPDATE,
    sqlite3.SQLITE_DELETE,
    sqlite3.SQLITE_CREATE_TABLE,
    sqlite3.SQLITE_DROP_TABLE,
    sqlite3.SQLITE_ALTER_TABLE,
    sqlite3.SQLITE_CREATE_INDEX,
    sqlite3.SQLITE_DROP_INDEX,
    sqlite3.SQLITE_CREATE_TRIGGER,
    sqlite3.SQLITE_DROP_TRIGGER,
    sqlite3.SQLITE_CREATE_VIEW,
    sqlite3.SQLITE_DROP_VIEW,
}


class Database:
    """Handle on the site database.

    `mode`:
    - "rw": statements may mutate rows (apply runs)
    - "ro": opened read-only and guarded by an authorizer (estimate runs)
    """

    def __init__(self, db_path: Path, *, mode: str = "rw") -> None:
        if mode not in {"rw", "ro"}:
            raise ValueError(f"Unknown database mode: {mode}")
        self.db_path = Path(db_path)
        self.mode = mode
        if not self.db_path.is_file():
            raise PreconditionError(f"Database not found: {self.db_path}")

    def _connect(self) -> sqlite3.Connection:
        uri = f"{self.db_path.resolve().as_uri()}?mode={self.mode}"
        try:
            conn = sqlite3.connect(uri, uri=True, timeout=30.0)
        except sqlite3.Error as exc:
            raise PreconditionError(f"Unable to open database {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")

        if self.mode == "ro":
            def _authorizer(action_code: int, param1: str, param2: str, dbname: str, source: str) -> int:
                if action_code in _WRITE_ACTIONS or action_code == sqlite3.SQLITE_TRANSACTION:
                    return sqlite3.SQLITE_DENY
                if action_code in (sqlite3.SQLITE_ATTACH, sqlite3.SQLITE_DETACH):
                    return sqlite3.SQLITE_DENY
                return sqlite3.SQLITE_OK

            conn.set_authorizer(_authorizer)
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            if self.mode == "rw":
                conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def read_only(self) -> Database:
        return Database(self.db_path, mode="ro")

    def integrity_check(self, full: bool = False) -> tuple[bool, str]:
        pragma = "integrity_check" if full else "quick_check"
        with self.connection() as conn:
            row = conn.execute(f"PRAGMA {pragma}").fetchone()
        msg = str(row[0]) if row else "unknown"
        return msg.lower() == "ok", msg
