from __future__ import annotations

import sqlite3
from typing import Callable, Iterable

from .catalog import Catalog
from .database import Database
from .documents import DocumentSanitizer
from .estimator import RowEstimator
from .types import (
    MODE_APPLY,
    MODE_ESTIMATE,
    RUN_MODES,
    DocumentSummary,
    Rule,
    RuleError,
    RuleOutcome,
    RunReport,
)
from .utils import make_run_id, now_iso


OutcomeCallback = Callable[[RuleOutcome, int], None]


class ExecutionEngine:
    """Runs a catalog rule by rule on a single connection.

    Each statement commits on its own; a failing rule is rolled back, recorded
    and the run moves on. Estimate runs use a read-only connection.
    """

    def __init__(
        self,
        database: Database,
        *,
        protected_tables: Iterable[str] = (),
        logger: Callable[[str], None] | None = None,
        on_outcome: OutcomeCallback | None = None,
    ) -> None:
        self.database = database
        self.protected_tables = tuple(protected_tables)
        self._logger = logger or (lambda msg: None)
        self._on_outcome = on_outcome

    def _protected(self, catalog: Catalog) -> set[str]:
        out = set(self.protected_tables)
        out.update(catalog.scope.table(name) for name in self.protected_tables)
        return out

    def run(self, catalog: Catalog, mode: str) -> RunReport:
        if mode not in RUN_MODES:
            raise ValueError(f"Unknown run mode: {mode}")
        database = self.database.read_only() if mode == MODE_ESTIMATE else self.database
        report = RunReport(
            run_id=make_run_id(),
            mode=mode,
            started_at=now_iso(),
            tenant=catalog.scope.describe(),
        )
        protected = self._protected(catalog)
        total = len(catalog)
        self._logger(f"[RUN] {report.run_id} mode={mode} rules={total}")

        with database.connection() as conn:
            estimator = RowEstimator(conn)
            for ordinal, rule in enumerate(catalog, start=1):
                if rule.table in protected:
                    outcome = RuleOutcome(
                        ordinal=ordinal,
                        rule_name=rule.name,
                        group_id=rule.group_id,
                        status="skipped",
                        reason=f"protected table {rule.table}",
                    )
                else:
                    outcome = self._run_rule(conn, estimator, ordinal, rule, mode)
                report.record(outcome)
                self._log_outcome(outcome)
                if self._on_outcome is not None:
                    self._on_outcome(outcome, total)

            report.documents = self._sanitize_documents(conn, catalog, mode)

        report.completed_at = now_iso()
        counts = report.counts()
        self._logger(
            f"[DONE] {report.run_id} "
            + " ".join(f"{key}={value}" for key, value in sorted(counts.items()))
        )
        return report

    def _run_rule(
        self,
        conn: sqlite3.Connection,
        estimator: RowEstimator,
        ordinal: int,
        rule: Rule,
        mode: str,
    ) -> RuleOutcome:
        try:
            if mode == MODE_ESTIMATE:
                return RuleOutcome(
                    ordinal=ordinal,
                    rule_name=rule.name,
                    group_id=rule.group_id,
                    status="estimated",
                    rows=estimator.estimate(rule),
                )
            sql, params = rule.statement()
            cursor = conn.execute(sql, params)
            rows = int(cursor.rowcount)
            conn.commit()
        except (sqlite3.Error, ValueError) as exc:
            if mode == MODE_APPLY:
                conn.rollback()
            return RuleOutcome(
                ordinal=ordinal,
                rule_name=rule.name,
                group_id=rule.group_id,
                status="failed",
                error=RuleError(type=type(exc).__name__, message=str(exc)),
            )
        return RuleOutcome(
            ordinal=ordinal,
            rule_name=rule.name,
            group_id=rule.group_id,
            status="applied",
            rows=rows,
        )

    def _sanitize_documents(
        self, conn: sqlite3.Connection, catalog: Catalog, mode: str
    ) -> DocumentSummary:
        sanitizer = DocumentSanitizer(conn, logger=self._logger)
        try:
            summary = sanitizer.sanitize(catalog.document_table, mode)
        except (sqlite3.Error, ValueError) as exc:
            self._logger(f"[ERR] documents: {type(exc).__name__}: {exc}")
            return DocumentSummary(error=RuleError(type=type(exc).__name__, message=str(exc)))
        self._logger(
            f"[OK] documents candidates={summary.candidates} sanitized={summary.sanitized} "
            f"malformed={summary.malformed} failed={summary.failed}"
        )
        return summary

    def _log_outcome(self, outcome: RuleOutcome) -> None:
        prefix = f"[{outcome.ordinal}] {outcome.rule_name}"
        if outcome.status == "failed" and outcome.error is not None:
            self._logger(f"[ERR] {prefix}: {outcome.error.type}: {outcome.error.message}")
        elif outcome.status == "skipped":
            self._logger(f"[SKIP] {prefix}: {outcome.reason}")
        elif outcome.unknown:
            self._logger(f"[EST] {prefix}: unknown")
        else:
            tag = "EST" if outcome.status == "estimated" else "OK"
            self._logger(f"[{tag}] {prefix}: rows={outcome.rows}")
