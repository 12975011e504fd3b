"""biblebee_etl.cli

Unified CLI entrypoint for Bible Bee scripture imports and enrollment.

Modes (--mode):
  preview_matches      compare a scripture CSV with a JSON text bundle (no store)
  import_csv           upsert scripture CSV rows into a competition year
  import_json          merge JSON translation texts into a competition year
  load_year_config     register a YAML competition-year file
  enroll               materialize scripture/essay assignments per child
  auto_enroll_preview  show the division each child would be enrolled in
  auto_enroll          write division enrollments (overrides win)
  progress             print per-child completion status

Every mode except preview_matches needs a store: --db-dsn (or
BIBLEBEE_DB_DSN) for PostgreSQL, or --demo-store for a local JSON file.

Usage (import_csv):
    python -m biblebee_etl.cli \\
        --mode import_csv \\
        --db-dsn "$BIBLEBEE_DB_DSN" \\
        --year 2025 \\
        --csv-path "imports/scriptures_2025.csv"

Usage (enroll, demo store):
    python -m biblebee_etl.cli \\
        --mode enroll \\
        --demo-store "./artifacts/demo_store.json" \\
        --year 2025
"""

from __future__ import annotations

import sys
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import click
import psycopg

from biblebee_etl.assignment import enroll_children, get_child_progress
from biblebee_etl.auto_enroll import commit_auto_enrollment, preview_auto_enrollment
from biblebee_etl.import_scriptures import (
    CsvHeaderError,
    commit_csv_rows_to_year,
    merge_json_texts,
    read_csv_rows,
    read_json_upload,
    validate_csv_rows,
)
from biblebee_etl.matching import preview_csv_json_matches
from biblebee_etl.rules import (
    AmbiguousRuleError,
    YearConfigValidationError,
    find_competition_year,
    load_year_config,
    register_year_config,
)
from biblebee_etl.shared import (
    InvalidUploadError,
    PreconditionError,
    RejectWriter,
    RunCounters,
    write_run_report,
)
from biblebee_etl.storage import MemoryStore, PostgresStore, Record, Store

MODES = [
    "preview_matches",
    "import_csv",
    "import_json",
    "load_year_config",
    "enroll",
    "auto_enroll_preview",
    "auto_enroll",
    "progress",
]

# Errors an administrator can fix; reported as FATAL with exit status 1.
_FATAL_ERRORS = (
    PreconditionError,
    InvalidUploadError,
    YearConfigValidationError,
    CsvHeaderError,
    AmbiguousRuleError,
    FileNotFoundError,
)


@click.command()
@click.option(
    "--mode",
    required=True,
    type=click.Choice(MODES),
    help="Run mode",
)
@click.option("--db-dsn", default=None, envvar="BIBLEBEE_DB_DSN", help="PostgreSQL DSN")
@click.option("--demo-store", default=None, type=click.Path(), help="Local JSON store file (demo mode)")
@click.option("--year", "year_ref", default=None, help="Competition year id, number, or name")
@click.option("--csv-path", default=None, type=click.Path(), help="[preview_matches|import_csv] Scripture CSV")
@click.option("--json-path", default=None, type=click.Path(), help="[preview_matches|import_json] JSON text bundle")
@click.option(
    "--json-mode",
    default="merge",
    type=click.Choice(["merge", "overwrite"]),
    show_default=True,
    help="[import_json] Merge uploaded translations into texts, or replace texts",
)
@click.option(
    "--create-missing/--no-create-missing",
    default=False,
    show_default=True,
    help="[import_json] Create scriptures for bundle items with no match",
)
@click.option("--config-path", default=None, type=click.Path(), help="[load_year_config] YAML year file")
@click.option("--child-id", "child_ids", multiple=True, help="[enroll|progress] Limit to these children")
@click.option(
    "--first-match-wins/--no-first-match-wins",
    default=False,
    show_default=True,
    help="[enroll|progress] Pick the lowest range instead of failing on overlapping rules",
)
# shared flags
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/biblebee_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
def main(
    mode: str,
    db_dsn: str | None,
    demo_store: str | None,
    year_ref: str | None,
    csv_path: str | None,
    json_path: str | None,
    json_mode: str,
    create_missing: bool,
    config_path: str | None,
    child_ids: tuple[str, ...],
    first_match_wins: bool,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
) -> None:
    """Unified Bible Bee scripture and enrollment CLI."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    counters = RunCounters()
    rejects = RejectWriter(Path(rejects_path))
    source_paths: dict[str, str] = {}
    extra: dict = {}

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    try:
        if mode == "preview_matches":
            _require(run_id, csv_path=csv_path, json_path=json_path)
            source_paths = {"csv_path": csv_path, "json_path": json_path}
            extra = _run_preview_matches(run_id, Path(csv_path), Path(json_path), counters)
        else:
            if bool(db_dsn) == bool(demo_store):
                _fatal(run_id, "exactly one of --db-dsn or --demo-store is required")
            with _store_session(run_id, db_dsn, demo_store, dry_run) as store:
                if mode == "load_year_config":
                    _require(run_id, config_path=config_path)
                    source_paths = {"config_path": config_path}
                    extra = _run_load_year_config(run_id, store, Path(config_path), counters)
                else:
                    _require(run_id, year=year_ref)
                    year = _resolve_year(store, year_ref)
                    click.echo(f"[{run_id}] Competition year: {year['name']} ({year['id']})")
                    if mode == "import_csv":
                        _require(run_id, csv_path=csv_path)
                        source_paths = {"csv_path": csv_path}
                        extra = _run_import_csv(
                            run_id, store, year, Path(csv_path), counters, rejects
                        )
                    elif mode == "import_json":
                        _require(run_id, json_path=json_path)
                        source_paths = {"json_path": json_path}
                        extra = _run_import_json(
                            run_id, store, year, Path(json_path), json_mode,
                            create_missing, dry_run, counters,
                        )
                    elif mode == "enroll":
                        extra = _run_enroll(
                            run_id, store, year, list(child_ids) or None,
                            first_match_wins, counters,
                        )
                    elif mode in ("auto_enroll_preview", "auto_enroll"):
                        extra = _run_auto_enroll(
                            run_id, store, year, commit=(mode == "auto_enroll"),
                            counters=counters,
                        )
                    elif mode == "progress":
                        extra = _run_progress(
                            run_id, store, year, list(child_ids) or None, first_match_wins
                        )
    except _FATAL_ERRORS as exc:
        _fatal(run_id, str(exc))
    finally:
        rejects.close()

    counters.rows_rejected = max(counters.rows_rejected, rejects.count)
    report_path = write_run_report(
        run_id, started_at, mode, dry_run, source_paths, counters, extra
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if counters.warnings:
        click.echo(f"[{run_id}] {len(counters.warnings)} warnings (see report)")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _require(run_id: str, **values: str | None) -> None:
    missing = [f"--{k.replace('_', '-')}" for k, v in values.items() if not v]
    if missing:
        _fatal(run_id, f"missing required options: {', '.join(missing)}")


@contextmanager
def _store_session(
    run_id: str,
    db_dsn: str | None,
    demo_store: str | None,
    dry_run: bool,
) -> Iterator[Store]:
    """Yield a store; commit (or save) on success, roll back on dry run/error."""
    if demo_store:
        path = Path(demo_store)
        store = MemoryStore.load(path)
        yield store
        if dry_run:
            click.echo(f"[{run_id}] DRY RUN: demo store not saved.")
        else:
            store.dump(path)
            click.echo(f"[{run_id}] Saved demo store: {path}")
        return

    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        yield PostgresStore(conn)
        if dry_run:
            conn.rollback()
            click.echo(f"[{run_id}] DRY RUN: rolled back.")
        else:
            conn.commit()
            click.echo(f"[{run_id}] Committed.")
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def _resolve_year(store: Store, year_ref: str) -> Record:
    year = find_competition_year(store, year_ref)
    if year is None:
        raise PreconditionError(f"Competition year '{year_ref}' not found")
    return year


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

def _run_preview_matches(
    run_id: str, csv_path: Path, json_path: Path, counters: RunCounters
) -> dict:
    rows = read_csv_rows(csv_path)
    upload = read_json_upload(json_path)
    items = upload.get("scriptures") if isinstance(upload, dict) else None
    if not isinstance(items, list):
        raise InvalidUploadError(["scriptures must be a list"])
    counters.rows_read = len(rows)

    preview = preview_csv_json_matches(rows, items)
    counters.matches = len(preview.matches)
    counters.csv_only_rows = len(preview.csv_only)
    counters.json_only_items = len(preview.json_only)
    for key in preview.duplicate_csv_keys:
        counters.warnings.append(f"duplicate CSV reference '{key}': last row wins")

    click.echo(
        f"[{run_id}] {len(preview.matches)} matches, {len(preview.csv_only)} csv-only, "
        f"{len(preview.json_only)} json-only"
    )
    for side in preview.csv_only:
        click.echo(f"[{run_id}]   csv-only  row {side.index + 1}: {side.row.get('reference')}")
    for side in preview.json_only:
        click.echo(f"[{run_id}]   json-only item {side.index + 1}: {side.item.get('reference')}")
    return {
        "preview": {
            **preview.summary(),
            "matched_references": [m.csv.row.get("reference") for m in preview.matches],
            "csv_only_references": [s.row.get("reference") for s in preview.csv_only],
            "json_only_references": [s.item.get("reference") for s in preview.json_only],
        }
    }


def _run_load_year_config(
    run_id: str, store: Store, config_path: Path, counters: RunCounters
) -> dict:
    config = load_year_config(config_path)
    click.echo(f"[{run_id}] Loaded {config_path} (year={config.year}, sha256={config.yaml_hash[:12]})")
    counts = register_year_config(store, config)
    for key, value in counts.items():
        setattr(counters, key, value)
    click.echo(
        f"[{run_id}] Registered: {counts['competition_years_upserted']} years, "
        f"{counts['divisions_upserted']} divisions, {counts['essay_prompts_upserted']} essay prompts, "
        f"{counts['grade_rules_upserted']} grade rules written"
    )
    return {"yaml_hash": config.yaml_hash, "year": config.year}


def _run_import_csv(
    run_id: str,
    store: Store,
    year: Record,
    csv_path: Path,
    counters: RunCounters,
    rejects: RejectWriter,
) -> dict:
    rows = read_csv_rows(csv_path)
    counters.rows_read = len(rows)
    click.echo(f"[{run_id}] Pre-scan: {len(rows)} rows read")

    validation = validate_csv_rows(rows)
    for message in validation.messages():
        counters.warnings.append(message)

    result = commit_csv_rows_to_year(store, rows, year["id"])
    for _, row, reason in result.rejected:
        rejects.write(row, reason)
    counters.rows_rejected = len(result.rejected)
    counters.scriptures_inserted = result.inserted
    counters.scriptures_updated = result.updated
    counters.warnings.extend(result.warnings)

    click.echo(
        f"[{run_id}] Scriptures: {result.inserted} inserted, {result.updated} updated, "
        f"{result.unchanged} unchanged, {len(result.rejected)} rejected"
    )
    return {"unchanged": result.unchanged}


def _run_import_json(
    run_id: str,
    store: Store,
    year: Record,
    json_path: Path,
    json_mode: str,
    create_missing: bool,
    dry_run: bool,
    counters: RunCounters,
) -> dict:
    upload = read_json_upload(json_path)
    result = merge_json_texts(
        store, upload, year["id"],
        mode=json_mode, dry_run=dry_run, create_missing=create_missing,
    )
    counters.rows_read = len(upload["scriptures"])
    counters.matches = len(result.preview.matches)
    counters.texts_merged = result.updated
    counters.json_only_items = len(result.json_only)
    counters.scriptures_inserted = result.created
    counters.warnings.extend(result.warnings)

    click.echo(
        f"[{run_id}] JSON {json_mode}: {result.updated} scriptures updated, "
        f"{result.unchanged} unchanged, {result.created} created, "
        f"{len(result.json_only)} unmatched"
    )
    for reference in result.json_only:
        click.echo(f"[{run_id}]   unmatched: {reference}")
    return {"json_only_references": result.json_only}


def _run_enroll(
    run_id: str,
    store: Store,
    year: Record,
    child_ids: list[str] | None,
    first_match_wins: bool,
    counters: RunCounters,
) -> dict:
    results, _ = enroll_children(
        store, year["id"], child_ids, counters=counters, first_match_wins=first_match_wins
    )
    click.echo(
        f"[{run_id}] Enrollment: {counters.children_processed} children, "
        f"{counters.children_enrolled} with requirements, "
        f"{counters.scripture_assignments_created} scripture + "
        f"{counters.essay_assignments_created} essay assignments created, "
        f"{counters.assignments_already_present} already present"
    )
    return {
        "assignments": [
            {
                "child_id": r.child_id,
                "kind": r.kind,
                "source": r.source,
                "created": r.created,
                "total_assigned": r.total_assigned,
                "shortfall": r.shortfall,
            }
            for r in results
        ]
    }


def _run_auto_enroll(
    run_id: str,
    store: Store,
    year: Record,
    commit: bool,
    counters: RunCounters,
) -> dict:
    preview = preview_auto_enrollment(store, year["id"])
    counters.children_processed = len(preview.previews)
    for p in preview.previews:
        target = p.division_name or "-"
        click.echo(f"[{run_id}]   {p.child_name} (grade {p.grade_text or '?'}): {p.status} {target}")
    click.echo(f"[{run_id}] Preview counts: {preview.counts}")
    if commit:
        commit_auto_enrollment(store, year["id"], preview.previews, counters=counters)
        click.echo(
            f"[{run_id}] Enrollments: {counters.enrollments_created} created, "
            f"{counters.enrollments_updated} updated, {counters.enrollments_unchanged} unchanged, "
            f"{counters.overrides_applied} overrides"
        )
    return {"preview_counts": preview.counts}


def _run_progress(
    run_id: str,
    store: Store,
    year: Record,
    child_ids: list[str] | None,
    first_match_wins: bool,
) -> dict:
    if child_ids is None:
        child_ids = sorted({
            e["child_id"] for e in store.where("enrollments", competition_year_id=year["id"])
        } | {
            s["child_id"] for s in store.where("student_scriptures", competition_year_id=year["id"])
        } | {
            e["child_id"] for e in store.where("student_essays", competition_year_id=year["id"])
        })
    rows = []
    for child_id in child_ids:
        progress = get_child_progress(store, child_id, year["id"], first_match_wins=first_match_wins)
        click.echo(
            f"[{run_id}]   {child_id}: {progress.status} "
            f"({progress.completed_scriptures}/{progress.required_scriptures}) "
            f"essay={progress.essay_status}"
        )
        rows.append({
            "child_id": child_id,
            "status": progress.status,
            "completed": progress.completed_scriptures,
            "required": progress.required_scriptures,
            "essay_status": progress.essay_status,
            "grade_group": progress.grade_group,
            "division": progress.division_name,
        })
    return {"progress": rows}


if __name__ == "__main__":
    main()
