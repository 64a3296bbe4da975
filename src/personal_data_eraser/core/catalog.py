from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Protocol, Sequence

import yaml
from jsonschema import ValidationError, validate

from .errors import CatalogError
from .tenancy import TenantScope
from .types import Assignment, Predicate, Rule
from .utils import quote_identifier, read_json


PACKAGE_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_RULES_DIR = PACKAGE_ROOT / "rules"
RULE_GROUP_SCHEMA = PACKAGE_ROOT / "schemas" / "rule_group.schema.json"

FORMS_TAG = "forms"


class TableProbe(Protocol):
    def exists(self, table: str) -> bool:  # pragma: no cover - protocol
        ...


@dataclass(frozen=True)
class RuleSpec:
    name: str
    table: str
    action: str
    assignments: tuple[Assignment, ...] = ()
    where: str | None = None
    params: tuple[Any, ...] = ()
    sql: str | None = None


@dataclass(frozen=True)
class RuleGroup:
    group_id: str
    name: str
    requires: str | None
    tags: tuple[str, ...]
    rules: tuple[RuleSpec, ...]
    network_tables: dict[str, str] = field(default_factory=dict)
    path: Path | None = None

    @property
    def core(self) -> bool:
        return self.requires is None

    @property
    def forms(self) -> bool:
        return FORMS_TAG in self.tags


@dataclass(frozen=True)
class CatalogDiscoveryError:
    group_id: str
    path: Path
    message: str


def _rule_spec(payload: dict[str, Any]) -> RuleSpec:
    assignments = tuple(
        Assignment(column=column, value=item.get("value"), expr=item.get("expr"))
        for column, item in (payload.get("set") or {}).items()
    )
    return RuleSpec(
        name=str(payload["name"]),
        table=str(payload["table"]),
        action=str(payload["action"]),
        assignments=assignments,
        where=payload.get("where"),
        params=tuple(payload.get("params") or ()),
        sql=payload.get("sql"),
    )


class RuleRegistry:
    """Discovers rule-group manifests (`*.yaml`) in registration order.

    Registration order is the sorted file name order of each directory, with
    directories visited in the order given.
    """

    def __init__(self, rule_dirs: Sequence[Path] | None = None) -> None:
        self.rule_dirs = [Path(p) for p in (rule_dirs or [DEFAULT_RULES_DIR])]
        self.discovery_errors: list[CatalogDiscoveryError] = []
        self._schema: dict[str, Any] | None = None
        self._groups: list[RuleGroup] | None = None

    def _load_schema(self) -> dict[str, Any]:
        if self._schema is None:
            self._schema = read_json(RULE_GROUP_SCHEMA)
        return self._schema

    def _record_error(self, group_id: str, manifest: Path, message: str) -> None:
        self.discovery_errors.append(
            CatalogDiscoveryError(group_id=group_id or manifest.stem, path=manifest, message=message)
        )

    def discover(self) -> list[RuleGroup]:
        groups: list[RuleGroup] = []
        self.discovery_errors = []
        schema = self._load_schema()
        seen_groups: set[str] = set()
        seen_rules: dict[str, str] = {}
        for rule_dir in self.rule_dirs:
            if not rule_dir.is_dir():
                self._record_error(rule_dir.name, rule_dir, "Rule directory not found")
                continue
            for manifest in sorted(rule_dir.glob("*.yaml")):
                try:
                    data = yaml.safe_load(manifest.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:
                    self._record_error(manifest.stem, manifest, f"Invalid YAML: {exc}")
                    continue
                if not isinstance(data, dict):
                    self._record_error(manifest.stem, manifest, "Invalid manifest payload")
                    continue
                group_id = str(data.get("id") or manifest.stem)
                try:
                    validate(instance=data, schema=schema)
                except ValidationError as exc:
                    self._record_error(group_id, manifest, f"Invalid manifest: {exc.message}")
                    continue
                if group_id in seen_groups:
                    self._record_error(group_id, manifest, "Duplicate group id")
                    continue
                specs = [_rule_spec(item) for item in data["rules"]]
                names = [s.name for s in specs]
                duplicates = sorted({n for n in names if names.count(n) > 1 or n in seen_rules})
                if duplicates:
                    self._record_error(
                        group_id, manifest, f"Duplicate rule name: {', '.join(duplicates)}"
                    )
                    continue
                seen_groups.add(group_id)
                for spec in specs:
                    seen_rules[spec.name] = group_id
                groups.append(
                    RuleGroup(
                        group_id=group_id,
                        name=str(data["name"]),
                        requires=data.get("requires"),
                        tags=tuple(data.get("tags") or ()),
                        rules=tuple(specs),
                        network_tables=dict(data.get("network_tables") or {}),
                        path=manifest,
                    )
                )
        self._groups = groups
        return list(groups)

    def groups(self) -> list[RuleGroup]:
        if self._groups is None:
            self.discover()
        if self.discovery_errors:
            details = "; ".join(
                f"{err.group_id} ({err.path}): {err.message}" for err in self.discovery_errors
            )
            raise CatalogError(f"Rule catalog is invalid: {details}")
        return list(self._groups or [])

    def network_tables(self) -> dict[str, str]:
        out: dict[str, str] = {}
        for group in self.groups():
            out.update(group.network_tables)
        return out


@dataclass(frozen=True)
class Catalog:
    rules: tuple[Rule, ...]
    scope: TenantScope
    group_ids: tuple[str, ...]
    document_table: str

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self) -> Iterator[Rule]:
        return iter(self.rules)

    def names(self) -> list[str]:
        return [rule.name for rule in self.rules]


class CatalogBuilder:
    def __init__(self, registry: RuleRegistry, probe: TableProbe) -> None:
        self.registry = registry
        self.probe = probe

    def build(self, flags: Any, scope: TenantScope) -> Catalog:
        """Assemble the ordered rule list for this schema and tenant scope.

        Core groups come first, then optional groups whose defining table is
        present. No statement is executed.
        """

        groups = self.registry.groups()
        scope = scope.with_network_tables(self.registry.network_tables())
        skip_forms = bool(getattr(flags, "skip_forms", False))
        present: dict[str, bool] = {}

        def exists(table: str) -> bool:
            if table not in present:
                present[table] = bool(self.probe.exists(table))
            return present[table]

        ordered = [g for g in groups if g.core] + [g for g in groups if not g.core]
        rules: list[Rule] = []
        group_ids: list[str] = []
        for group in ordered:
            if skip_forms and group.forms:
                continue
            if not group.core and not exists(scope.table(str(group.requires))):
                continue
            selected: list[Rule] = []
            for spec in group.rules:
                table = scope.table(spec.table)
                if not group.core and not exists(table):
                    continue
                selected.append(scope.partition(self._materialize(group, spec, scope)))
            if not selected:
                continue
            group_ids.append(group.group_id)
            rules.extend(selected)

        names = [r.name for r in rules]
        if len(set(names)) != len(names):
            raise CatalogError("Rule names must be unique within a catalog")
        return Catalog(
            rules=tuple(rules),
            scope=scope,
            group_ids=tuple(group_ids),
            document_table=scope.table("posts"),
        )

    @staticmethod
    def _materialize(group: RuleGroup, spec: RuleSpec, scope: TenantScope) -> Rule:
        partitioned = scope.is_partitioned(spec.table)
        if scope.is_network(spec.table) and not partitioned:
            raise CatalogError(
                f"Rule {spec.name!r} targets network table {spec.table} which has no owner column"
            )
        table = scope.table(spec.table)
        predicate = Predicate(sql=spec.where, params=spec.params) if spec.where else None
        sql = None
        if spec.action == "sql" and spec.sql:
            sql = spec.sql.replace("{table}", quote_identifier(table))
        return Rule(
            name=spec.name,
            group_id=group.group_id,
            action=spec.action,
            table=table,
            assignments=spec.assignments,
            predicate=predicate,
            sql=sql,
            tenant_sensitive=partitioned,
            owner_column=scope.owner_column(spec.table),
        )
