from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any

from .utils import quote_identifier


RULE_ACTIONS = ("update", "delete", "sql")

MODE_ESTIMATE = "estimate"
MODE_APPLY = "apply"
RUN_MODES = (MODE_ESTIMATE, MODE_APPLY)


@dataclass(frozen=True)
class Predicate:
    sql: str
    params: tuple[Any, ...] = ()

    def and_(self, other: Predicate | None) -> Predicate:
        if other is None:
            return self
        return Predicate(
            sql=f"({self.sql}) AND ({other.sql})",
            params=self.params + other.params,
        )


@dataclass(frozen=True)
class Assignment:
    """`column = ?` when `expr` is None, otherwise `column = <expr>`."""

    column: str
    value: Any = None
    expr: str | None = None

    def render(self) -> tuple[str, tuple[Any, ...]]:
        target = quote_identifier(self.column)
        if self.expr is not None:
            return f"{target} = {self.expr}", ()
        return f"{target} = ?", (self.value,)


@dataclass(frozen=True)
class Rule:
    name: str
    group_id: str
    action: str
    table: str
    assignments: tuple[Assignment, ...] = ()
    predicate: Predicate | None = None
    sql: str | None = None
    tenant_sensitive: bool = False
    owner_column: str | None = None

    def with_predicate(self, extra: Predicate) -> Rule:
        if self.predicate is None:
            return replace(self, predicate=extra)
        return replace(self, predicate=self.predicate.and_(extra))

    def where_clause(self) -> tuple[str, tuple[Any, ...]]:
        if self.predicate is None:
            return "", ()
        return f" WHERE {self.predicate.sql}", self.predicate.params

    def statement(self) -> tuple[str, tuple[Any, ...]]:
        table = quote_identifier(self.table)
        if self.action == "update":
            parts: list[str] = []
            params: list[Any] = []
            for assignment in self.assignments:
                text, values = assignment.render()
                parts.append(text)
                params.extend(values)
            where, where_params = self.where_clause()
            return f"UPDATE {table} SET {', '.join(parts)}{where}", tuple(params) + where_params
        if self.action == "delete":
            where, where_params = self.where_clause()
            return f"DELETE FROM {table}{where}", where_params
        if self.action == "sql":
            if not self.sql:
                raise ValueError(f"Rule {self.name!r} has no statement")
            return self.sql, ()
        raise ValueError(f"Unknown rule action: {self.action}")


@dataclass(frozen=True)
class RuleError:
    type: str
    message: str


@dataclass(frozen=True)
class RuleOutcome:
    ordinal: int
    rule_name: str
    group_id: str
    status: str
    rows: int | None = None
    reason: str | None = None
    error: RuleError | None = None

    @property
    def unknown(self) -> bool:
        return self.status == "estimated" and self.rows is None


@dataclass(frozen=True)
class DocumentSummary:
    candidates: int = 0
    sanitized: int = 0
    malformed: int = 0
    failed: int = 0
    error: RuleError | None = None


@dataclass
class RunReport:
    run_id: str
    mode: str
    started_at: str
    tenant: dict[str, Any]
    outcomes: list[RuleOutcome] = field(default_factory=list)
    documents: DocumentSummary | None = None
    completed_at: str | None = None

    def record(self, outcome: RuleOutcome) -> None:
        self.outcomes.append(outcome)

    def counts(self) -> dict[str, int]:
        out = {"applied": 0, "estimated": 0, "skipped": 0, "failed": 0}
        for outcome in self.outcomes:
            out[outcome.status] = out.get(outcome.status, 0) + 1
        return out

    @property
    def failures(self) -> list[RuleOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]

    def to_payload(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "mode": self.mode,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "tenant": dict(self.tenant),
            "counts": self.counts(),
            "outcomes": [asdict(o) for o in self.outcomes],
            "documents": asdict(self.documents) if self.documents else None,
        }
