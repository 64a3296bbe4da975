from __future__ import annotations

import sqlite3

from .types import Rule
from .utils import quote_identifier


class RowEstimator:
    """Counts the rows a rule would touch without running it.

    The count query is built from the rule's own structured predicate, so for an
    unchanged database the estimate equals the affected-row count of the real
    statement. Opaque `sql` rules cannot be analysed and yield None (unknown).
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    @staticmethod
    def count_statement(rule: Rule) -> tuple[str, tuple] | None:
        if rule.action not in {"update", "delete"}:
            return None
        where, params = rule.where_clause()
        return f"SELECT COUNT(*) FROM {quote_identifier(rule.table)}{where}", params

    def estimate(self, rule: Rule) -> int | None:
        statement = self.count_statement(rule)
        if statement is None:
            return None
        sql, params = statement
        row = self._conn.execute(sql, params).fetchone()
        return int(row[0]) if row else 0
