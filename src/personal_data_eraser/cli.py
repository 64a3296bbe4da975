from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any, Callable, Sequence

from personal_data_eraser.core.eraser import EraseFlags, Eraser
from personal_data_eraser.core.errors import PreconditionError, SettingsError
from personal_data_eraser.core.schema_probe import SchemaProbe
from personal_data_eraser.core.settings import Settings, resolve_settings
from personal_data_eraser.core.tenancy import get_tenant_context
from personal_data_eraser.core.types import RuleOutcome, RunReport
from personal_data_eraser.core.utils import ensure_dir, now_iso, write_json


def _settings_from_args(args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {
        "database": getattr(args, "database", None),
        "table_prefix": getattr(args, "table_prefix", None),
    }
    return resolve_settings(getattr(args, "settings", None), overrides)


def _run_logger(settings: Settings) -> Callable[[str], None]:
    log_path = settings.log_path
    if log_path is None and settings.report_dir is not None:
        log_path = settings.report_dir / "run.log"
    if log_path is None:
        return lambda msg: None

    def logger(msg: str) -> None:
        ensure_dir(log_path.parent)
        with log_path.open("a", encoding="utf-8") as handle:
            handle.write(f"{now_iso()} {msg}\n")

    return logger


def confirm(prompt: str) -> bool:
    answer = input(f"{prompt} [y/n] ").strip().lower()
    return answer in {"y", "yes"}


def render_outcome(outcome: RuleOutcome, total: int) -> None:
    print(f"[{outcome.ordinal}/{total}] {outcome.rule_name}")
    if outcome.status == "failed" and outcome.error is not None:
        print(f"[WARN] Failed to execute: {outcome.rule_name} ({outcome.error.type}: {outcome.error.message})")
    elif outcome.status == "skipped":
        print(f"    [SKIP] {outcome.reason}")
    elif outcome.status == "estimated":
        if outcome.rows is None:
            print("    [DRY RUN] Unable to estimate affected rows")
        else:
            print(f"    [DRY RUN] Would affect approximately {outcome.rows} rows")
    else:
        print(f"    Affected rows: {outcome.rows}")


def render_summary(report: RunReport) -> None:
    docs = report.documents
    if docs is not None:
        if docs.error is not None:
            print(f"[WARN] Payment documents not processed ({docs.error.type}: {docs.error.message})")
        else:
            verb = "Would sanitize" if report.mode == "estimate" else "Sanitized"
            print(
                f"{verb} {docs.sanitized} payment documents "
                f"({docs.malformed} malformed skipped, {docs.failed} failed)"
            )
    counts = report.counts()
    if report.mode == "estimate":
        print(f"[OK] Dry run completed. No data was actually erased. ({counts['estimated']} rules estimated)")
        return
    print(
        f"[OK] Personal data erased: {counts['applied']} applied, "
        f"{counts['skipped']} skipped, {counts['failed']} failed"
    )


def _write_reports(report: RunReport, settings: Settings, out_path: str | None) -> None:
    payload = report.to_payload()
    if out_path:
        write_json(Path(out_path), payload)
    if settings.report_dir is not None:
        write_json(settings.report_dir / f"run-{report.run_id}.json", payload)


def cmd_run(args: argparse.Namespace) -> RunReport:
    flags = EraseFlags(
        dry_run=bool(args.dry_run),
        skip_forms=bool(args.skip_forms),
        assume_yes=bool(args.yes),
    )
    settings = _settings_from_args(args)
    tenant_ctx = get_tenant_context(args.site_id)
    eraser = Eraser(settings, logger=_run_logger(settings), on_outcome=render_outcome)
    # Everything that can abort the run happens before the prompt.
    database, catalog = eraser.prepare(flags, tenant_ctx)

    if flags.dry_run:
        print("[WARN] DRY RUN MODE: No changes will be made to the database.")
    elif not flags.assume_yes:
        print("[WARN] This will IRREVERSIBLY erase personal data from your WordPress database.")
        if not confirm("Are you sure you want to continue?"):
            raise SystemExit("Aborted.")

    print("Starting personal data erasure...")
    if flags.skip_forms:
        print("Skipping form submissions as requested.")
    report = eraser.run(database, catalog, flags.mode)
    render_summary(report)
    _write_reports(report, settings, args.report_out)
    return report


def cmd_catalog(args: argparse.Namespace) -> None:
    settings = _settings_from_args(args)
    eraser = Eraser(settings)
    flags = EraseFlags(dry_run=True, skip_forms=bool(args.skip_forms))
    _, catalog = eraser.prepare(flags, get_tenant_context(args.site_id))
    scope = catalog.scope
    print(f"scope={scope.mode} site={scope.tenant_id} prefix={scope.site_prefix}")
    total = len(catalog)
    for ordinal, rule in enumerate(catalog, start=1):
        marker = " [tenant]" if rule.tenant_sensitive and scope.multi else ""
        print(f"[{ordinal}/{total}] {rule.name} ({rule.group_id}: {rule.action} {rule.table}){marker}")
        if args.show_sql:
            sql, params = rule.statement()
            print(f"    {' '.join(sql.split())}")
            if params:
                print(f"    params={list(params)}")
    print(f"documents: {catalog.document_table}")


def cmd_tables(args: argparse.Namespace) -> None:
    settings = _settings_from_args(args)
    database = Eraser(settings).open_database()
    for name in SchemaProbe(database).list_tables(prefix=settings.table_prefix):
        print(name)


def cmd_integrity_check(args: argparse.Namespace) -> None:
    settings = _settings_from_args(args)
    database = Eraser(settings).open_database()
    ok, msg = database.read_only().integrity_check(full=bool(args.full))
    if not ok:
        raise SystemExit(f"Integrity check failed: {msg}")
    print("OK")


def _add_database_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--database")
    parser.add_argument("--settings")
    parser.add_argument("--table-prefix")


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="erase-personal-data")
    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run")
    _add_database_args(run_parser)
    run_parser.add_argument("--yes", action="store_true")
    run_parser.add_argument("--dry-run", action="store_true")
    run_parser.add_argument("--skip-forms", action="store_true")
    run_parser.add_argument("--site-id")
    run_parser.add_argument("--report-out")

    catalog_parser = sub.add_parser("catalog")
    _add_database_args(catalog_parser)
    catalog_parser.add_argument("--skip-forms", action="store_true")
    catalog_parser.add_argument("--site-id")
    catalog_parser.add_argument("--show-sql", action="store_true")

    tables_parser = sub.add_parser("tables")
    _add_database_args(tables_parser)

    integrity_parser = sub.add_parser("integrity-check")
    _add_database_args(integrity_parser)
    integrity_parser.add_argument("--full", action="store_true")

    args = parser.parse_args(argv)

    try:
        if args.command == "run":
            cmd_run(args)
        elif args.command == "catalog":
            cmd_catalog(args)
        elif args.command == "tables":
            cmd_tables(args)
        elif args.command == "integrity-check":
            cmd_integrity_check(args)
        else:
            raise SystemExit(2)
    except (PreconditionError, SettingsError) as exc:
        raise SystemExit(f"Error: {exc}") from exc


if __name__ == "__main__":
    main()
