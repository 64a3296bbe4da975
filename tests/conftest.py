from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Iterable

import pytest

from personal_data_eraser.core.database import Database
from personal_data_eraser.core.settings import Settings


SITE_TABLES: dict[str, str] = {
    "posts": "ID INTEGER PRIMARY KEY, post_type TEXT, post_title TEXT, post_content TEXT",
    "postmeta": "meta_id INTEGER PRIMARY KEY, post_id INTEGER, meta_key TEXT, meta_value TEXT",
    "comments": (
        "comment_ID INTEGER PRIMARY KEY, comment_post_ID INTEGER, comment_author TEXT, "
        "comment_author_email TEXT, comment_author_url TEXT, comment_author_IP TEXT, "
        "comment_content TEXT, user_id INTEGER"
    ),
    "commentmeta": "meta_id INTEGER PRIMARY KEY, comment_id INTEGER, meta_key TEXT, meta_value TEXT",
    "options": "option_id INTEGER PRIMARY KEY, option_name TEXT, option_value TEXT",
}

NETWORK_TABLES: dict[str, str] = {
    "users": "ID INTEGER PRIMARY KEY, user_login TEXT, user_email TEXT, display_name TEXT",
    "usermeta": "umeta_id INTEGER PRIMARY KEY, user_id INTEGER, meta_key TEXT, meta_value TEXT",
}

PLUGIN_TABLES: dict[str, str] = {
    "wc_customer_lookup": (
        "customer_id INTEGER PRIMARY KEY, first_name TEXT, last_name TEXT, email TEXT, "
        "postcode TEXT, city TEXT, state TEXT"
    ),
    "flamingo_inbound": "id INTEGER PRIMARY KEY, subject TEXT, from_email TEXT",
    "gf_entry": "id INTEGER PRIMARY KEY, ip TEXT, source_url TEXT, user_agent TEXT",
    "gf_entry_meta": "id INTEGER PRIMARY KEY, entry_id INTEGER, meta_key TEXT, meta_value TEXT",
    "rg_lead": "id INTEGER PRIMARY KEY, ip TEXT, source_url TEXT, user_agent TEXT",
    "rg_lead_detail": "id INTEGER PRIMARY KEY, lead_id INTEGER, value TEXT",
    "nf3_submissions": "id INTEGER PRIMARY KEY, data TEXT",
    "wpforms_entries": "entry_id INTEGER PRIMARY KEY, ip_address TEXT, user_agent TEXT",
    "wpforms_entry_fields": "id INTEGER PRIMARY KEY, entry_id INTEGER, value TEXT",
    "mepr_members": "id INTEGER PRIMARY KEY, user_id INTEGER",
    "edd_customers": "id INTEGER PRIMARY KEY, name TEXT, email TEXT",
    "bp_xprofile_data": "id INTEGER PRIMARY KEY, field_id INTEGER, user_id INTEGER, value TEXT",
    "newsletter": "id INTEGER PRIMARY KEY, email TEXT, name TEXT, surname TEXT, ip TEXT",
    "mailpoet_subscribers": "id INTEGER PRIMARY KEY, email TEXT, first_name TEXT, last_name TEXT",
    "wpum_field_meta": "meta_id INTEGER PRIMARY KEY, field_id INTEGER, meta_key TEXT, meta_value TEXT",
    "learndash_user_activity": "activity_id INTEGER PRIMARY KEY, user_id INTEGER, activity_meta TEXT",
    "wpmailsmtp_emails_log": "id INTEGER PRIMARY KEY, people TEXT",
    "wpmailsmtp_attachment_files": "id INTEGER PRIMARY KEY, filename TEXT",
    "pronamic_pay_payments": (
        "id INTEGER PRIMARY KEY, customer_name TEXT, email TEXT, telephone_number TEXT, "
        "company_name TEXT, address TEXT, city TEXT, zip TEXT, country TEXT"
    ),
}

# Plugin tables shared by every site of a network.
NETWORK_PLUGIN_TABLES = {"bp_xprofile_data"}


class WordPressDb:
    """A throwaway sqlite database laid out like a WordPress install."""

    def __init__(self, path: Path, prefix: str = "wp_") -> None:
        self.path = path
        self.prefix = prefix
        self.multisite = False

    def site_prefix(self, site_id: int | None = None) -> str:
        if site_id in (None, 1):
            return self.prefix
        return f"{self.prefix}{site_id}_"

    def table(self, logical: str, site_id: int | None = None) -> str:
        if logical in NETWORK_TABLES or logical in NETWORK_PLUGIN_TABLES or logical == "blogs":
            return f"{self.prefix}{logical}"
        return f"{self.site_prefix(site_id)}{logical}"

    def execute(self, sql: str, params: Iterable[Any] = ()) -> None:
        conn = sqlite3.connect(self.path)
        try:
            conn.execute(sql, tuple(params))
            conn.commit()
        finally:
            conn.close()

    def create(self, logical: str, columns: str, site_id: int | None = None) -> str:
        name = self.table(logical, site_id)
        self.execute(f'CREATE TABLE IF NOT EXISTS "{name}" ({columns})')
        return name

    def create_core(self) -> None:
        for logical, columns in NETWORK_TABLES.items():
            self.create(logical, columns)
        for logical, columns in SITE_TABLES.items():
            self.create(logical, columns)

    def create_plugin_tables(self, *names: str, site_id: int | None = None) -> None:
        for name in names:
            self.create(name, PLUGIN_TABLES[name], site_id)

    def enable_multisite(self, *site_ids: int) -> None:
        self.multisite = True
        self.create("blogs", "blog_id INTEGER PRIMARY KEY, domain TEXT, path TEXT")
        self.insert("blogs", {"blog_id": 1, "domain": "example.org", "path": "/"})
        for site_id in site_ids:
            if site_id == 1:
                continue
            self.insert("blogs", {"blog_id": site_id, "domain": "example.org", "path": f"/s{site_id}/"})
            for logical, columns in SITE_TABLES.items():
                self.create(logical, columns, site_id)

    def insert(self, logical: str, row: dict[str, Any], site_id: int | None = None) -> None:
        columns = ", ".join(f'"{c}"' for c in row)
        marks = ", ".join("?" for _ in row)
        self.execute(
            f'INSERT INTO "{self.table(logical, site_id)}" ({columns}) VALUES ({marks})',
            row.values(),
        )

    def add_user(self, user_id: int, email: str, *, sites: Iterable[int] = (1,), **meta: str) -> None:
        self.insert(
            "users",
            {
                "ID": user_id,
                "user_login": f"login{user_id}",
                "user_email": email,
                "display_name": email.split("@")[0],
            },
        )
        for site_id in sites:
            self.insert(
                "usermeta",
                {
                    "user_id": user_id,
                    "meta_key": f"{self.site_prefix(site_id)}capabilities",
                    "meta_value": 'a:1:{s:10:"subscriber";b:1;}',
                },
            )
        for key, value in meta.items():
            self.insert("usermeta", {"user_id": user_id, "meta_key": key, "meta_value": value})

    def rows(self, table: str, order_by: str | None = None) -> list[dict[str, Any]]:
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        try:
            sql = f'SELECT * FROM "{table}"'
            if order_by:
                sql += f" ORDER BY {order_by}"
            return [dict(r) for r in conn.execute(sql).fetchall()]
        finally:
            conn.close()

    def count(self, table: str) -> int:
        return len(self.rows(table))

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        conn = sqlite3.connect(self.path)
        try:
            names = [
                r[0]
                for r in conn.execute(
                    "select name from sqlite_master where type='table' order by name"
                ).fetchall()
            ]
        finally:
            conn.close()
        return {name: self.rows(name, order_by="rowid") for name in names}

    @property
    def database(self) -> Database:
        return Database(self.path)

    def settings(self, **kwargs: Any) -> Settings:
        return Settings(database=self.path, table_prefix=self.prefix, **kwargs)


def make_wordpress(path: Path, prefix: str = "wp_") -> WordPressDb:
    wp = WordPressDb(path, prefix=prefix)
    wp.create_core()
    return wp


def seed_site(wp: WordPressDb) -> None:
    wp.add_user(1, "admin@x.com", first_name="Ada", last_name="Admin")
    wp.add_user(
        2,
        "bob@y.com",
        first_name="Bob",
        last_name="Builder",
        description="Likes tools",
        session_tokens="a:1:{}",
        user_registration_ip="10.0.0.2",
        password_reset_key="abc",
    )
    wp.insert("usermeta", {"user_id": 2, "meta_key": "shipping", "meta_value": "keep"})
    wp.insert("posts", {"ID": 10, "post_type": "shop_order", "post_title": "Order", "post_content": ""})
    for key, value in (
        ("_billing_first_name", "Bob"),
        ("_billing_email", "bob@y.com"),
        ("_billing_phone", "555-1234"),
        ("_billing_city", "Springfield"),
        ("_order_total", "19.99"),
    ):
        wp.insert("postmeta", {"post_id": 10, "meta_key": key, "meta_value": value})
    wp.insert(
        "comments",
        {
            "comment_ID": 1,
            "comment_post_ID": 10,
            "comment_author": "Carol",
            "comment_author_email": "carol@z.com",
            "comment_author_url": "https://carol.example",
            "comment_author_IP": "192.168.1.4",
            "comment_content": "Nice",
            "user_id": 0,
        },
    )
    wp.insert("commentmeta", {"comment_id": 1, "meta_key": "rating", "meta_value": "5"})
    wp.insert("commentmeta", {"comment_id": 1, "meta_key": "author_ip", "meta_value": "192.168.1.4"})


@pytest.fixture()
def wp(tmp_path: Path) -> WordPressDb:
    site = make_wordpress(tmp_path / "wordpress.sqlite")
    seed_site(site)
    return site


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("DATABASE", "TABLE_PREFIX", "SITE_ID", "REPORT_DIR", "LOG_PATH"):
        monkeypatch.delenv(f"ERASE_PD_{name}", raising=False)
