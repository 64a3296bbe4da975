from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validate

from .catalog import DEFAULT_RULES_DIR, PACKAGE_ROOT
from .errors import SettingsError
from .utils import DEFAULT_TABLE_PREFIX, env_value, read_json, resolve_env_placeholders


SETTINGS_SCHEMA = PACKAGE_ROOT / "schemas" / "settings.schema.json"

_ENV_OVERRIDES = {
    "database": "DATABASE",
    "table_prefix": "TABLE_PREFIX",
    "report_dir": "REPORT_DIR",
}


@dataclass(frozen=True)
class Settings:
    database: Path | None = None
    table_prefix: str = DEFAULT_TABLE_PREFIX
    protected_tables: tuple[str, ...] = ()
    catalog_dirs: tuple[Path, ...] = ()
    report_dir: Path | None = None
    log_path: Path | None = None
    source: Path | None = field(default=None, compare=False)

    def rule_dirs(self) -> list[Path]:
        return [DEFAULT_RULES_DIR, *self.catalog_dirs]


def load_settings(path: str | Path | None) -> dict[str, Any]:
    if not path:
        return {}
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SettingsError(f"Unable to read settings {path}: {exc}") from exc
    try:
        if path.suffix == ".json":
            payload = json.loads(content)
        else:
            payload = yaml.safe_load(content)
    except (ValueError, yaml.YAMLError) as exc:
        raise SettingsError(f"Invalid settings file {path}: {exc}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise SettingsError(f"Settings must be a mapping: {path}")
    return payload


def apply_jsonschema_defaults(schema: Any, instance: Any) -> Any:
    """Recursively apply `default` values from a JSONSchema into `instance`.

    Only object properties and array items are handled; that covers the
    settings schema.
    """

    if not isinstance(schema, dict):
        return instance
    if instance is None and "default" in schema:
        instance = copy.deepcopy(schema["default"])

    schema_type = schema.get("type")
    if schema_type == "object" and isinstance(instance, dict):
        props = schema.get("properties") or {}
        for key in sorted(props.keys()):
            prop_schema = props.get(key)
            if key not in instance:
                if isinstance(prop_schema, dict) and "default" in prop_schema:
                    instance[key] = copy.deepcopy(prop_schema["default"])
            if key in instance:
                instance[key] = apply_jsonschema_defaults(prop_schema, instance[key])

    if schema_type == "array" and isinstance(instance, list):
        items_schema = schema.get("items")
        if isinstance(items_schema, dict):
            for idx, value in enumerate(list(instance)):
                instance[idx] = apply_jsonschema_defaults(items_schema, value)

    return instance


def _as_path(value: Any, base: Path | None) -> Path | None:
    if value in (None, ""):
        return None
    path = Path(str(value)).expanduser()
    if base is not None and not path.is_absolute():
        path = base / path
    return path


def resolve_settings(
    path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Settings precedence: explicit overrides > ERASE_PD_* env > file > schema defaults."""

    raw = load_settings(path)
    try:
        raw = resolve_env_placeholders(raw)
    except ValueError as exc:
        raise SettingsError(str(exc)) from exc
    overridden: set[str] = set()
    for key, env_name in _ENV_OVERRIDES.items():
        value = env_value(env_name)
        if value is not None:
            raw[key] = value
            overridden.add(key)
    for key, value in (overrides or {}).items():
        if value is not None:
            raw[key] = value
            overridden.add(key)

    schema = read_json(SETTINGS_SCHEMA)
    resolved = apply_jsonschema_defaults(schema, copy.deepcopy(raw))
    try:
        validate(instance=resolved, schema=schema)
    except ValidationError as exc:
        raise SettingsError(f"Invalid settings: {exc.message}") from exc

    file_base = Path(path).resolve().parent if path else None

    def base(key: str) -> Path | None:
        # Relative paths in a settings file are relative to that file.
        return None if key in overridden else file_base

    catalog_dirs = [_as_path(item, base("catalog_dirs")) for item in resolved["catalog_dirs"]]
    log_path = env_value("LOG_PATH")
    return Settings(
        database=_as_path(resolved.get("database"), base("database")),
        table_prefix=str(resolved["table_prefix"]),
        protected_tables=tuple(resolved["protected_tables"]),
        catalog_dirs=tuple(p for p in catalog_dirs if p is not None),
        report_dir=_as_path(resolved.get("report_dir"), base("report_dir")),
        log_path=Path(log_path) if log_path else None,
        source=Path(path) if path else None,
    )
