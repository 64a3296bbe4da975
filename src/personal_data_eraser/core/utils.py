from __future__ import annotations

import json
import os
import re
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


ENV_PREFIX = "ERASE_PD_"
DEFAULT_TABLE_PREFIX = "wp_"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_run_id() -> str:
    return uuid.uuid4().hex


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def json_dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True)


_IDENT_RE = re.compile(r"^[A-Za-z0-9_]+$")


def quote_identifier(name: str) -> str:
    if not _IDENT_RE.match(name):
        raise ValueError(f"Unsafe identifier: {name}")
    return f"\"{name}\""


def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def env_value(name: str) -> str | None:
    raw = os.environ.get(f"{ENV_PREFIX}{name}", "").strip()
    return raw or None


def safe_replace(src: Path, dst: Path) -> None:
    """os.replace with a few retries to tolerate transient locks."""

    attempts = 5 if os.name == "nt" else 1
    for i in range(attempts):
        try:
            os.replace(src, dst)
            return
        except OSError:
            if i + 1 >= attempts:
                raise
            time.sleep(0.02 * (i + 1))


def atomic_write_text(path: Path, text: str, encoding: str = "utf-8") -> None:
    """Atomically write `text` to `path` (temp file in the same dir, then replace)."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp.{uuid.uuid4().hex}")
    try:
        with tmp_path.open("w", encoding=encoding) as handle:
            handle.write(text)
            handle.flush()
            try:
                os.fsync(handle.fileno())
            except OSError:
                # Some filesystems do not support fsync; the replace stays atomic.
                pass
        safe_replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, json_dumps(data) + "\n")


_ENV_PLACEHOLDER_RE = re.compile(r"^\$\{ENV:([A-Z0-9_]+)\}$")


def resolve_env_placeholders(value: Any) -> Any:
    """Resolve `${ENV:NAME}` strings to their environment variable values.

    Settings files stay schema-friendly (placeholders are still strings) while
    credentials and paths can come from the environment.
    """

    if isinstance(value, str):
        match = _ENV_PLACEHOLDER_RE.match(value.strip())
        if not match:
            return value
        name = match.group(1)
        if name not in os.environ:
            raise ValueError(f"Missing environment variable: {name}")
        return os.environ[name]
    if isinstance(value, list):
        return [resolve_env_placeholders(item) for item in value]
    if isinstance(value, dict):
        return {k: resolve_env_placeholders(v) for k, v in value.items()}
    return value
