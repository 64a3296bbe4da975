"""Field-level redaction of JSON payment documents.

Pronamic Pay keeps a JSON copy of each payment (customer, billing and shipping
details) in the `post_content` of `pronamic_payment` posts. These values cannot
be reached with a flat UPDATE, so each record is parsed, redacted and written
back on its own.
"""

from __future__ import annotations

import copy
import json
import sqlite3
from typing import Any, Callable

from .types import MODE_ESTIMATE, RUN_MODES, DocumentSummary
from .utils import quote_identifier


PAYMENT_POST_TYPE = "pronamic_payment"
SECTIONS = ("customer", "billing_address", "shipping_address")
NAME_PLACEHOLDER = {"first_name": "Anonymous", "last_name": "Customer"}
CLEARED_FIELDS = (
    "phone",
    "line_1",
    "line_2",
    "street_name",
    "house_number",
    "house_number_base",
    "house_number_addition",
    "postal_code",
    "city",
    "region",
    "company_name",
)


def placeholder_email(record_id: int) -> str:
    return f"payment{record_id}@example.com"


def redact_payload(payload: dict[str, Any], record_id: int) -> dict[str, Any]:
    redacted = copy.deepcopy(payload)
    for section in SECTIONS:
        block = redacted.get(section)
        if not isinstance(block, dict):
            continue
        if "name" in block:
            block["name"] = dict(NAME_PLACEHOLDER)
        if "email" in block:
            block["email"] = placeholder_email(record_id)
        for key in CLEARED_FIELDS:
            if key in block:
                block[key] = ""
    return redacted


def parse_payload(raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, (str, bytes)):
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


class DocumentSanitizer:
    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        post_type: str = PAYMENT_POST_TYPE,
        logger: Callable[[str], None] | None = None,
    ) -> None:
        self._conn = conn
        self.post_type = post_type
        self._logger = logger or (lambda msg: None)

    def candidates(self, table: str) -> list[tuple[int, Any]]:
        markers = " OR ".join("post_content LIKE ?" for _ in SECTIONS)
        sql = (
            f"SELECT ID, post_content FROM {quote_identifier(table)} "
            f"WHERE post_type = ? AND ({markers}) ORDER BY ID"
        )
        params = (self.post_type, *(f'%"{section}"%' for section in SECTIONS))
        return [(int(r[0]), r[1]) for r in self._conn.execute(sql, params).fetchall()]

    def sanitize(self, table: str, mode: str) -> DocumentSummary:
        if mode not in RUN_MODES:
            raise ValueError(f"Unknown run mode: {mode}")
        records = self.candidates(table)
        sanitized = 0
        malformed = 0
        failed = 0
        update_sql = f"UPDATE {quote_identifier(table)} SET post_content = ? WHERE ID = ?"
        for record_id, raw in records:
            payload = parse_payload(raw)
            if payload is None:
                malformed += 1
                self._logger(f"[SKIP] document {record_id}: payload is not a JSON object")
                continue
            if mode == MODE_ESTIMATE:
                sanitized += 1
                continue
            text = json.dumps(redact_payload(payload, record_id), ensure_ascii=False)
            try:
                self._conn.execute(update_sql, (text, record_id))
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                failed += 1
                self._logger(f"[ERR] document {record_id}: {type(exc).__name__}: {exc}")
                continue
            sanitized += 1
        return DocumentSummary(
            candidates=len(records),
            sanitized=sanitized,
            malformed=malformed,
            failed=failed,
        )
