"""Tenant (multisite) scope resolution.

Network tables such as `users` and `usermeta` are shared by every site of a
multisite install, so rules touching them must be narrowed to the accounts
that belong to the selected site. Site tables (`posts`, `comments`, plugin
tables) are already partitioned by their table prefix.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from .database import Database
from .errors import CatalogError, TenantResolutionError
from .schema_probe import SchemaProbe
from .types import Predicate, Rule
from .utils import env_value, quote_identifier


MODE_SINGLE = "single"
MODE_MULTI = "multi"
MAIN_SITE_ID = 1

NETWORK_TABLES = frozenset(
    {
        "users",
        "usermeta",
        "blogs",
        "blogmeta",
        "blog_versions",
        "registration_log",
        "signups",
        "site",
        "sitemeta",
    }
)

NETWORK_OWNER_COLUMNS: dict[str, str] = {
    "users": "ID",
    "usermeta": "user_id",
}


@dataclass(frozen=True)
class TenantContext:
    site_id: int | None = None


def parse_site_id(raw: Any) -> int | None:
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    try:
        site_id = int(text)
    except ValueError as exc:
        raise TenantResolutionError(f"Invalid site id: {raw!r}") from exc
    if site_id < 1:
        raise TenantResolutionError(f"Invalid site id: {raw!r}")
    return site_id


def get_tenant_context(requested: Any = None) -> TenantContext:
    if requested is None:
        requested = env_value("SITE_ID")
    return TenantContext(site_id=parse_site_id(requested))


@dataclass(frozen=True)
class TenantScope:
    mode: str
    tenant_id: int | None
    base_prefix: str
    network_owners: Mapping[str, str] = field(
        default_factory=lambda: dict(NETWORK_OWNER_COLUMNS)
    )

    @property
    def multi(self) -> bool:
        return self.mode == MODE_MULTI

    @property
    def site_prefix(self) -> str:
        if not self.multi or self.tenant_id in (None, MAIN_SITE_ID):
            return self.base_prefix
        return f"{self.base_prefix}{self.tenant_id}_"

    def is_network(self, logical: str) -> bool:
        return logical in NETWORK_TABLES or logical in self.network_owners

    def table(self, logical: str) -> str:
        if self.is_network(logical):
            return f"{self.base_prefix}{logical}"
        return f"{self.site_prefix}{logical}"

    def owner_column(self, logical: str) -> str | None:
        return self.network_owners.get(logical)

    def is_partitioned(self, logical: str) -> bool:
        return self.owner_column(logical) is not None

    def with_network_tables(self, owners: Mapping[str, str]) -> TenantScope:
        if not owners:
            return self
        merged = dict(self.network_owners)
        for table, column in owners.items():
            existing = merged.get(table)
            if existing is not None and existing != column:
                raise CatalogError(
                    f"Conflicting owner column for network table {table}: {existing} vs {column}"
                )
            merged[table] = column
        return replace(self, network_owners=merged)

    def membership_predicate(self, owner_column: str) -> Predicate:
        """Rows whose owning account is a member of the selected site."""

        if not self.multi:
            raise ValueError("Membership predicate requires a multisite scope")
        usermeta = quote_identifier(self.table("usermeta"))
        return Predicate(
            sql=f"{quote_identifier(owner_column)} IN (SELECT user_id FROM {usermeta} WHERE meta_key = ?)",
            params=(f"{self.site_prefix}capabilities",),
        )

    def partition(self, rule: Rule) -> Rule:
        if not rule.tenant_sensitive or not self.multi:
            return rule
        if rule.action == "sql" or not rule.owner_column:
            raise CatalogError(f"Rule {rule.name!r} touches shared accounts but cannot be partitioned")
        return rule.with_predicate(self.membership_predicate(rule.owner_column))

    def describe(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "tenant_id": self.tenant_id,
            "base_prefix": self.base_prefix,
            "site_prefix": self.site_prefix,
        }


def resolve_tenant_scope(
    database: Database,
    probe: SchemaProbe,
    table_prefix: str,
    context: TenantContext,
) -> TenantScope:
    site_id = context.site_id
    if not probe.exists(f"{table_prefix}blogs"):
        if site_id not in (None, MAIN_SITE_ID):
            raise TenantResolutionError(
                f"Site {site_id} requested but the database is not a multisite install"
            )
        return TenantScope(mode=MODE_SINGLE, tenant_id=None, base_prefix=table_prefix)

    if site_id is None:
        raise TenantResolutionError(
            "Multisite database: select a site with --site-id or ERASE_PD_SITE_ID"
        )
    blogs = quote_identifier(f"{table_prefix}blogs")
    try:
        with database.connection() as conn:
            row = conn.execute(
                f"SELECT blog_id FROM {blogs} WHERE blog_id = ?", (site_id,)
            ).fetchone()
    except sqlite3.Error as exc:
        raise TenantResolutionError(f"Unable to read {table_prefix}blogs: {exc}") from exc
    if row is None:
        raise TenantResolutionError(f"Site {site_id} does not exist in {table_prefix}blogs")
    return TenantScope(mode=MODE_MULTI, tenant_id=site_id, base_prefix=table_prefix)
