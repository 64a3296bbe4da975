from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from .catalog import Catalog, CatalogBuilder, RuleRegistry
from .database import Database
from .engine import ExecutionEngine, OutcomeCallback
from .errors import CatalogError, PreconditionError
from .schema_probe import SchemaProbe
from .settings import Settings
from .tenancy import TenantContext, TenantScope, resolve_tenant_scope
from .types import MODE_APPLY, MODE_ESTIMATE, RunReport


@dataclass(frozen=True)
class EraseFlags:
    dry_run: bool = False
    skip_forms: bool = False
    assume_yes: bool = False

    @property
    def mode(self) -> str:
        return MODE_ESTIMATE if self.dry_run else MODE_APPLY


class Eraser:
    """Wires settings, schema probe, tenant scope, catalog and engine together.

    `prepare` covers every precondition (database reachable, WordPress schema,
    tenant resolvable, catalog valid) and mutates nothing; `execute` then runs
    the catalog.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        registry: RuleRegistry | None = None,
        logger: Callable[[str], None] | None = None,
        on_outcome: OutcomeCallback | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry or RuleRegistry(settings.rule_dirs())
        self._logger = logger or (lambda msg: None)
        self._on_outcome = on_outcome

    def open_database(self) -> Database:
        if self.settings.database is None:
            raise PreconditionError(
                "No database configured (use --database, ERASE_PD_DATABASE or settings)"
            )
        return Database(self.settings.database)

    def resolve_scope(
        self, database: Database, probe: SchemaProbe, tenant_context: TenantContext
    ) -> TenantScope:
        prefix = self.settings.table_prefix
        if not probe.exists(f"{prefix}users"):
            raise PreconditionError(
                f"{database.db_path} does not look like a WordPress database ({prefix}users missing)"
            )
        return resolve_tenant_scope(database, probe, prefix, tenant_context)

    def prepare(
        self, flags: EraseFlags, tenant_context: TenantContext
    ) -> tuple[Database, Catalog]:
        database = self.open_database()
        probe = SchemaProbe(database)
        scope = self.resolve_scope(database, probe, tenant_context)
        try:
            catalog = CatalogBuilder(self.registry, probe).build(flags, scope)
        except CatalogError as exc:
            raise PreconditionError(str(exc)) from exc
        self._logger(
            f"[PLAN] scope={scope.mode} site={scope.tenant_id} rules={len(catalog)} "
            f"groups={','.join(catalog.group_ids)}"
        )
        return database, catalog

    def execute(self, flags: EraseFlags, tenant_context: TenantContext) -> RunReport:
        database, catalog = self.prepare(flags, tenant_context)
        return self.run(database, catalog, flags.mode)

    def run(self, database: Database, catalog: Catalog, mode: str) -> RunReport:
        """Run a catalog returned by `prepare` without rebuilding it."""

        engine = ExecutionEngine(
            database,
            protected_tables=self.settings.protected_tables,
            logger=self._logger,
            on_outcome=self._on_outcome,
        )
        return engine.run(catalog, mode)


def execute(
    flags: EraseFlags,
    tenant_context: TenantContext,
    settings: Settings,
    *,
    logger: Callable[[str], None] | None = None,
    on_outcome: OutcomeCallback | None = None,
) -> RunReport:
    return Eraser(settings, logger=logger, on_outcome=on_outcome).execute(flags, tenant_context)
