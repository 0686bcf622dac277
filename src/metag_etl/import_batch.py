"""metag_etl.import_batch

Unified MetaG ingestion CLI.

Modes:
  batch_import     import one batch table and its sequencing data
  seed_reference   seed measurement types and (optionally) WHO standards
  indicators       print derived indicators for a patient or sample
  export           write OTU, taxonomy and metadata tables for samples (ZIP)

Usage:
    metag-import --mode batch_import --db-dsn "$METAG_DB_DSN" \\
        --table-path batch.csv --data-dir /data/runs [--dry-run]
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path

import click
import psycopg

from metag_etl.derived import patient_indicators, sample_indicators
from metag_etl.export import (
    DEFAULT_BLACKLIST,
    EXPORT_FORMATS,
    build_tables,
    collect_export,
    parse_blacklist,
    write_archive,
)
from metag_etl.pipeline import build_import_report, run_batch_import
from metag_etl.reference import (
    SeedCounters,
    build_seed_report,
    load_who_standard,
    seed_standard,
    seed_types,
)
from metag_etl.settings import (
    VALID_CONTROL_SCOPES,
    LayoutValidationError,
    load_layout,
    load_type_catalog,
)
from metag_etl.shared import (
    BatchError,
    ExportError,
    ImportCounters,
    SkipWriter,
    write_run_report,
)
from metag_etl.transaction import STATUS_FAILED


# ---------------------------------------------------------------------------
# Flag validation
# ---------------------------------------------------------------------------

def _validate_batch_import_flags(table_path: str | None, run_id: str) -> None:
    if not table_path:
        click.echo(f"[{run_id}] FATAL: --table-path is required for batch_import", err=True)
        sys.exit(1)


def _validate_seed_flags(girls: str | None, boys: str | None, run_id: str) -> None:
    if bool(girls) != bool(boys):
        click.echo(
            f"[{run_id}] FATAL: --who-girls-path and --who-boys-path must be given together",
            err=True,
        )
        sys.exit(1)


def _validate_indicator_flags(patient_id: int | None, sample_id: int | None, run_id: str) -> None:
    if (patient_id is None) == (sample_id is None):
        click.echo(
            f"[{run_id}] FATAL: indicators needs exactly one of --patient-id or --sample-id",
            err=True,
        )
        sys.exit(1)


def _validate_export_flags(sample_ids: str | None, run_id: str) -> list[int]:
    ids = [s.strip() for s in (sample_ids or "").split(",") if s.strip()]
    if not ids:
        click.echo(f"[{run_id}] FATAL: --sample-ids is required for export", err=True)
        sys.exit(1)
    bad = [s for s in ids if not s.isdigit()]
    if bad:
        click.echo(
            f"[{run_id}] FATAL: sample ids must be numbers separated by ',': {bad}",
            err=True,
        )
        sys.exit(1)
    return [int(s) for s in ids]


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------

def _run_batch_import(
    run_id: str,
    started_at: str,
    db_dsn: str,
    table_path: str,
    data_dir: str | None,
    layout_path: str | None,
    types_path: str | None,
    control_scope: str | None,
    skips_path: str,
    dry_run: bool,
) -> None:
    try:
        layout = load_layout(Path(layout_path) if layout_path else None)
        catalog = load_type_catalog(Path(types_path) if types_path else None)
    except LayoutValidationError as exc:
        click.echo(f"[{run_id}] FATAL: invalid configuration: {exc}", err=True)
        sys.exit(1)

    if not Path(table_path).is_file():
        click.echo(f"[{run_id}] FATAL: batch table not found: {table_path}", err=True)
        sys.exit(1)

    counters = ImportCounters()
    skips = SkipWriter(Path(skips_path))
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        outcome = run_batch_import(
            conn,
            Path(table_path),
            layout,
            catalog,
            run_id,
            data_dir=Path(data_dir) if data_dir else None,
            dry_run=dry_run,
            skips=skips,
            control_scope=control_scope,
            counters=counters,
        )
    except (OSError, UnicodeDecodeError, psycopg.Error) as exc:
        click.echo(f"[{run_id}] FATAL: {type(exc).__name__}: {exc} — rolled back.", err=True)
        sys.exit(1)
    finally:
        skips.close()
        conn.close()

    click.echo(build_import_report(outcome, dry_run=dry_run))
    report_path = write_run_report(
        run_id, started_at, "batch_import", dry_run,
        {
            "table_path": table_path,
            "data_dir": data_dir,
            "layout_hash": layout.yaml_hash,
            "types_hash": catalog.yaml_hash,
        },
        counters,
        status=outcome.status,
        error=outcome.error,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if outcome.status == STATUS_FAILED:
        click.echo(f"[{run_id}] FATAL: {outcome.error} — rolled back.", err=True)
        sys.exit(1)
    if dry_run:
        click.echo(f"[{run_id}] DRY RUN — rolled back.")
    elif outcome.status == "unchanged":
        click.echo(f"[{run_id}] Nothing changed — rolled back.")
    else:
        click.echo(f"[{run_id}] Committed.")


def _run_seed_reference(
    run_id: str,
    started_at: str,
    db_dsn: str,
    types_path: str | None,
    who_girls_path: str | None,
    who_boys_path: str | None,
    dry_run: bool,
) -> None:
    try:
        catalog = load_type_catalog(Path(types_path) if types_path else None)
    except LayoutValidationError as exc:
        click.echo(f"[{run_id}] FATAL: invalid type catalogue: {exc}", err=True)
        sys.exit(1)

    counters = SeedCounters()
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        seed_types(conn, catalog, counters)
        if who_girls_path and who_boys_path:
            rows = load_who_standard(Path(who_girls_path), Path(who_boys_path))
            seed_standard(conn, rows, counters)
        click.echo(build_seed_report(counters, dry_run=dry_run))
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] DRY RUN — rolled back.")
        else:
            conn.commit()
            click.echo(f"[{run_id}] Committed.")
    except BatchError as exc:
        conn.rollback()
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()

    report_path = write_run_report(
        run_id, started_at, "seed_reference", dry_run,
        {
            "types_path": types_path,
            "who_girls_path": who_girls_path,
            "who_boys_path": who_boys_path,
        },
        counters,  # type: ignore[arg-type]
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


def _run_indicators(db_dsn: str, patient_id: int | None, sample_id: int | None, run_id: str) -> None:
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        if patient_id is not None:
            result = patient_indicators(conn, patient_id)
        else:
            result = sample_indicators(conn, sample_id)  # type: ignore[arg-type]
    except LookupError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    finally:
        conn.rollback()
        conn.close()
    click.echo(json.dumps(result, indent=2, default=str))



def _run_export(
    run_id: str,
    db_dsn: str,
    sample_ids: list[int],
    export_format: str,
    blacklist: str | None,
    keep_controls: bool,
    output_path: str | None,
) -> None:
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        data = collect_export(conn, sample_ids, parse_blacklist(blacklist), keep_controls)
        otu, tax, meta = build_tables(data, export_format)
    except ExportError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    finally:
        conn.rollback()
        conn.close()

    path = Path(output_path or f"./artifacts/exports/{run_id}.zip")
    write_archive(path, export_format, otu, tax, meta, data.warnings)
    for warning in data.warnings:
        click.echo(f"[{run_id}] {warning}", err=True)
    click.echo(f"[{run_id}] Exported {len(data.counts)} sample(s) to {path}")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    required=True,
    type=click.Choice(["batch_import", "seed_reference", "indicators", "export"]),
    help="Run mode",
)
@click.option("--db-dsn", required=True, envvar="METAG_DB_DSN", help="PostgreSQL DSN")
@click.option("--table-path", default=None, type=click.Path(), help="[batch_import] Batch table CSV (.csv or .csv.gz)")
@click.option("--data-dir", default=None, type=click.Path(), help="[batch_import] Root directory of sequencing runs")
@click.option("--layout-path", default=None, type=click.Path(), help="[batch_import] Table layout YAML")
@click.option("--types-path", default=None, type=click.Path(), help="Measurement type catalogue YAML")
@click.option(
    "--control-scope",
    default=None,
    type=click.Choice(list(VALID_CONTROL_SCOPES)),
    help="[batch_import] Override the layout's control replication scope",
)
@click.option("--who-girls-path", default=None, type=click.Path(), help="[seed_reference] WHO weight-for-age CSV, girls")
@click.option("--who-boys-path", default=None, type=click.Path(), help="[seed_reference] WHO weight-for-age CSV, boys")
@click.option("--patient-id", default=None, type=int, help="[indicators] Patient id")
@click.option("--sample-id", default=None, type=int, help="[indicators] Sample id")
@click.option("--sample-ids", default=None, help="[export] Comma-separated sample ids")
@click.option(
    "--format",
    "export_format",
    default="microbiomeanalyst",
    show_default=True,
    type=click.Choice(sorted(EXPORT_FORMATS)),
    help="[export] Target tool",
)
@click.option(
    "--blacklist",
    default=",".join(DEFAULT_BLACKLIST),
    show_default=True,
    help="[export] Comma-separated domain names to drop (NA = UNMATCHED); empty keeps all",
)
@click.option("--keep-controls", is_flag=True, default=False, help="[export] Keep control samples")
@click.option("--output-path", default=None, type=click.Path(), help="[export] ZIP archive path")
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--skips-path",
    default="./artifacts/skips/batch_skips.csv",
    show_default=True,
    help="CSV of acquisition units skipped with a warning",
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--verbose", is_flag=True, default=False, help="Debug logging")
def main(
    mode: str,
    db_dsn: str,
    table_path: str | None,
    data_dir: str | None,
    layout_path: str | None,
    types_path: str | None,
    control_scope: str | None,
    who_girls_path: str | None,
    who_boys_path: str | None,
    patient_id: int | None,
    sample_id: int | None,
    sample_ids: str | None,
    export_format: str,
    blacklist: str,
    keep_controls: bool,
    output_path: str | None,
    dry_run: bool,
    skips_path: str,
    run_id: str | None,
    verbose: bool,
) -> None:
    """Unified MetaG ingestion CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    if mode == "indicators":
        _validate_indicator_flags(patient_id, sample_id, run_id)
        _run_indicators(db_dsn, patient_id, sample_id, run_id)
        return

    if mode == "export":
        ids = _validate_export_flags(sample_ids, run_id)
        _run_export(run_id, db_dsn, ids, export_format, blacklist, keep_controls, output_path)
        return

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == "batch_import":
        _validate_batch_import_flags(table_path, run_id)
        _run_batch_import(
            run_id, started_at, db_dsn,
            table_path=table_path,  # type: ignore[arg-type]
            data_dir=data_dir,
            layout_path=layout_path,
            types_path=types_path,
            control_scope=control_scope,
            skips_path=skips_path,
            dry_run=dry_run,
        )
    elif mode == "seed_reference":
        _validate_seed_flags(who_girls_path, who_boys_path, run_id)
        _run_seed_reference(
            run_id, started_at, db_dsn,
            types_path=types_path,
            who_girls_path=who_girls_path,
            who_boys_path=who_boys_path,
            dry_run=dry_run,
        )


if __name__ == "__main__":
    main()
