"""parlor_etl.import_parlor_csv

Unified CLI entrypoint for parlor data ingestion, analysis and admin tasks.

Modes (--mode):
  auto                       — detect the CSV dialect and ingest (default)
  store_profile              — store profile long-format CSV
  machine_master             — machine master CSV (flat or long format)
  event_master               — event master CSV (flat or long format)
  production                 — daily production CSV (day_N payloads or flat rows)
  analysis_rerun             — score every active store and save the analyses
  machine_popularity_recalc  — re-estimate popularity for every machine
  machine_popularity_set     — override one machine's popularity
  store_deactivate           — mark one store inactive
  store_delete               — delete one store and everything hanging off it
  rankings                   — print the current store ranking

Usage (ingest):
    python -m parlor_etl.import_parlor_csv \\
        --db-dsn "$DB_DSN" \\
        --csv-path "data/store_production_20250801.csv" \\
        --rejects-path "artifacts/rejects/production_rejects.csv"

Usage (analysis):
    python -m parlor_etl.import_parlor_csv \\
        --mode analysis_rerun \\
        --db-dsn "$DB_DSN" \\
        --analysis-date 2025-08-02 \\
        --holiday 2025-08-11 \\
        --llm --llm-api-key-env ANTHROPIC_API_KEY
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import date, datetime
from pathlib import Path
from typing import Any

import click
import psycopg

from parlor_etl.analysis import AnalysisCounters, build_analysis_report, run_analysis
from parlor_etl.csv_dialect import (
    EVENT_MASTER,
    MACHINE_MASTER,
    PRODUCTION_DATA,
    STORE_PROFILE,
    UnknownDialectError,
    read_csv_table,
    require_dialect,
)
from parlor_etl.import_event_master import ingest_event_master
from parlor_etl.import_machine_master import (
    ingest_machine_master,
    recalculate_machine_popularity,
    set_machine_popularity,
)
from parlor_etl.import_store_production import ingest_store_production
from parlor_etl.import_store_profile import ingest_store_profile
from parlor_etl.llm_commentary import (
    DEFAULT_API_KEY_ENV,
    DEFAULT_MODEL,
    ClaudeCommentator,
    LlmUnavailableError,
)
from parlor_etl.ranking import MAX_LIMIT, build_rankings
from parlor_etl.repository import PgRepository, RepositoryError
from parlor_etl.scoring_rules import (
    ScoringConfig,
    ScoringConfigValidationError,
    load_default_config,
    load_scoring_config,
)
from parlor_etl.shared import IngestResult, RejectWriter, RunCounters, write_run_report

INGEST_MODES = {
    "store_profile": STORE_PROFILE,
    "machine_master": MACHINE_MASTER,
    "event_master": EVENT_MASTER,
    "production": PRODUCTION_DATA,
}

ADMIN_MODES = (
    "machine_popularity_recalc",
    "machine_popularity_set",
    "store_deactivate",
    "store_delete",
)

ALL_MODES = ["auto", *INGEST_MODES, "analysis_rerun", *ADMIN_MODES, "rankings"]


# ---------------------------------------------------------------------------
# Flag validation
# ---------------------------------------------------------------------------

def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _validate_db_flags(db_dsn: str | None, mode: str, run_id: str) -> None:
    if not db_dsn:
        _fatal(run_id, f"{mode} mode requires: --db-dsn")


def _validate_ingest_flags(csv_path: str | None, mode: str, run_id: str) -> None:
    if csv_path is None:
        _fatal(run_id, f"{mode} mode requires: --csv-path")
    if not Path(csv_path).exists():
        _fatal(run_id, f"CSV file not found: {csv_path}")


def _validate_admin_flags(
    mode: str,
    store_id: tuple[str, ...],
    machine_id: str | None,
    popularity_score: int | None,
    run_id: str,
) -> None:
    required: dict[str, Any] = {}
    if mode == "machine_popularity_set":
        required = {"--machine-id": machine_id, "--popularity-score": popularity_score}
    elif mode in ("store_deactivate", "store_delete"):
        required = {"--store-id": store_id or None}
    missing = [k for k, v in required.items() if v is None]
    if missing:
        _fatal(run_id, f"{mode} mode requires: {', '.join(missing)}")
    if mode in ("store_deactivate", "store_delete") and len(store_id) != 1:
        _fatal(run_id, f"{mode} mode takes exactly one --store-id")
    if popularity_score is not None and not 0 <= popularity_score <= 100:
        _fatal(run_id, f"--popularity-score must be in [0, 100], got {popularity_score}")


def _resolve_config(scoring_config: str | None, run_id: str) -> ScoringConfig:
    try:
        if scoring_config:
            return load_scoring_config(Path(scoring_config))
        return load_default_config()
    except (ScoringConfigValidationError, FileNotFoundError) as exc:
        _fatal(run_id, f"scoring config: {exc}")
        raise


def _connect(db_dsn: str, run_id: str) -> psycopg.Connection:
    try:
        return psycopg.connect(db_dsn, autocommit=False)
    except psycopg.OperationalError as exc:
        _fatal(run_id, f"database unreachable: {exc}")
        raise


def _finish_transaction(conn: psycopg.Connection, dry_run: bool, db_errors: int, run_id: str) -> None:
    if dry_run:
        conn.rollback()
        click.echo(f"[{run_id}] DRY RUN — rolled back.")
    else:
        conn.commit()
        if db_errors:
            click.echo(f"[{run_id}] Committed with {db_errors} failed unit(s) rolled back.")
        else:
            click.echo(f"[{run_id}] Committed.")


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

def build_ingest_report(result: IngestResult, counters: RunCounters) -> str:
    lines = [
        "=" * 60,
        f"Ingestion result ({result.dialect})",
        "=" * 60,
        f"  success:   {result.success}",
        f"  processed: {result.processed}",
        f"  errored:   {result.errored}",
        f"  rejected rows: {counters.rows_rejected}",
    ]
    if result.errors:
        lines.append("")
        lines.append("Errors:")
        lines.extend(f"  - {e}" for e in result.errors[:10])
    if result.warnings:
        lines.append("")
        lines.append("Warnings:")
        lines.extend(f"  - {w}" for w in result.warnings[:20])
    lines.append("=" * 60)
    return "\n".join(lines)


def run_ingest(
    repo: PgRepository,
    dialect: str,
    headers: list[str],
    rows: list[dict[str, str]],
    counters: RunCounters,
    rejects: RejectWriter,
    config: ScoringConfig,
    force_overwrite: bool = False,
) -> IngestResult:
    """Dispatch one parsed CSV payload to the matching ingestion pipeline."""
    if dialect == STORE_PROFILE:
        return ingest_store_profile(repo, headers, rows, counters, rejects, config)
    if dialect == MACHINE_MASTER:
        return ingest_machine_master(repo, headers, rows, counters, rejects, config)
    if dialect == EVENT_MASTER:
        return ingest_event_master(repo, headers, rows, counters, rejects)
    if dialect == PRODUCTION_DATA:
        return ingest_store_production(repo, headers, rows, counters, rejects, force=force_overwrite)
    raise UnknownDialectError(f"no ingestion pipeline for dialect {dialect!r}")


def _run_ingest_mode(
    mode: str,
    db_dsn: str,
    csv_path: str,
    force_overwrite: bool,
    dry_run: bool,
    rejects: RejectWriter,
    counters: RunCounters,
    config: ScoringConfig,
    run_id: str,
) -> IngestResult:
    text = Path(csv_path).read_text(encoding="utf-8-sig")
    headers, rows = read_csv_table(text)
    if mode == "auto":
        try:
            dialect = require_dialect(headers, rows, filename=csv_path)
        except UnknownDialectError as exc:
            _fatal(run_id, str(exc))
            raise
    else:
        dialect = INGEST_MODES[mode]
    click.echo(f"[{run_id}] {csv_path}: {len(rows)} rows, dialect={dialect}")

    conn = _connect(db_dsn, run_id)
    try:
        result = run_ingest(
            PgRepository(conn), dialect, headers, rows, counters, rejects, config, force_overwrite,
        )
        click.echo(build_ingest_report(result, counters))
        _finish_transaction(conn, dry_run, counters.db_phase_errors, run_id)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    return result


def _run_analysis_mode(
    db_dsn: str,
    analysis_date: date,
    store_id: tuple[str, ...],
    workers: int,
    holiday: tuple[datetime, ...],
    llm: bool,
    llm_api_key_env: str,
    llm_model: str,
    dry_run: bool,
    config: ScoringConfig,
    run_id: str,
) -> AnalysisCounters:
    commentator = None
    if llm:
        try:
            commentator = ClaudeCommentator.from_env(llm_api_key_env, model=llm_model)
        except LlmUnavailableError as exc:
            click.echo(f"[{run_id}] LLM disabled: {exc}; using engine comments.", err=True)

    ctrs = AnalysisCounters()
    conn = _connect(db_dsn, run_id)
    try:
        analyses = run_analysis(
            PgRepository(conn),
            analysis_date,
            config,
            ctrs,
            store_ids=list(store_id) or None,
            workers=workers,
            holidays=[h.date() for h in holiday],
            commentator=commentator,
        )
        click.echo(build_analysis_report(analyses, ctrs, analysis_date))
        _finish_transaction(conn, dry_run, ctrs.db_phase_errors, run_id)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
    return ctrs


def _run_admin_mode(
    mode: str,
    db_dsn: str,
    store_id: tuple[str, ...],
    machine_id: str | None,
    popularity_score: int | None,
    dry_run: bool,
    counters: RunCounters,
    config: ScoringConfig,
    run_id: str,
) -> None:
    conn = _connect(db_dsn, run_id)
    try:
        repo = PgRepository(conn)
        if mode == "machine_popularity_recalc":
            changed = recalculate_machine_popularity(repo, counters, config)
            click.echo(f"[{run_id}] Re-estimated popularity: {changed} machine(s) changed.")
        else:
            try:
                with repo.unit_of_work(mode):
                    if mode == "machine_popularity_set":
                        found = set_machine_popularity(repo, machine_id, popularity_score)
                        target = f"machine {machine_id}"
                    elif mode == "store_deactivate":
                        found = repo.set_store_active(store_id[0], False)
                        target = f"store {store_id[0]}"
                    else:
                        found = repo.delete_store(store_id[0])
                        target = f"store {store_id[0]}"
            except RepositoryError as exc:
                counters.db_phase_errors += 1
                counters.warnings.append(f"{mode}: {exc}")
                found, target = False, mode
            if found:
                click.echo(f"[{run_id}] {mode}: {target} updated.")
            else:
                click.echo(f"[{run_id}] {mode}: {target} not found.", err=True)
        _finish_transaction(conn, dry_run, counters.db_phase_errors, run_id)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _run_rankings_mode(
    db_dsn: str,
    prefecture: str | None,
    search: str | None,
    limit: int,
    offset: int,
    run_id: str,
) -> None:
    conn = _connect(db_dsn, run_id)
    try:
        entries = PgRepository(conn).list_latest_analyses()
        conn.rollback()
    finally:
        conn.close()
    ranked = build_rankings(entries, prefecture, search, limit, offset)
    click.echo(json.dumps([r.to_dict() for r in ranked], indent=2, ensure_ascii=False))


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="auto",
    type=click.Choice(ALL_MODES),
    show_default=True,
    help="Operation to run",
)
@click.option("--db-dsn", default=None, help="PostgreSQL DSN")
# ingest flags
@click.option("--csv-path", default=None, type=click.Path(), help="[ingest] CSV file to import")
@click.option(
    "--force-overwrite/--no-force-overwrite",
    default=False,
    show_default=True,
    help="[production] Overwrite store-day summaries that are already stored",
)
# analysis flags
@click.option(
    "--analysis-date",
    default=None,
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="[analysis_rerun] Date to score (default today)",
)
@click.option("--store-id", multiple=True, help="[analysis_rerun|store_*] Restrict to store id(s)")
@click.option("--workers", default=4, type=int, show_default=True, help="[analysis_rerun] Scoring threads")
@click.option("--scoring-config", default=None, type=click.Path(), help="Path to scoring YAML")
@click.option(
    "--holiday",
    multiple=True,
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="[analysis_rerun] Public holiday date (repeatable)",
)
@click.option("--llm/--no-llm", default=False, show_default=True, help="[analysis_rerun] Ask the LLM for comments")
@click.option(
    "--llm-api-key-env",
    default=DEFAULT_API_KEY_ENV,
    show_default=True,
    help="[analysis_rerun] Env var name holding the LLM API key",
)
@click.option("--llm-model", default=DEFAULT_MODEL, show_default=True, help="[analysis_rerun] LLM model id")
# admin flags
@click.option("--machine-id", default=None, help="[machine_popularity_set] Machine id")
@click.option("--popularity-score", default=None, type=int, help="[machine_popularity_set] Score 0-100")
# rankings flags
@click.option("--prefecture", default=None, help="[rankings] Prefecture filter")
@click.option("--search", default=None, help="[rankings] Store name / station substring")
@click.option("--limit", default=20, type=click.IntRange(1, MAX_LIMIT), show_default=True, help="[rankings] Page size")
@click.option("--offset", default=0, type=click.IntRange(min=0), show_default=True, help="[rankings] Page offset")
# shared flags
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/parlor_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str | None,
    # ingest
    csv_path: str | None,
    force_overwrite: bool,
    # analysis
    analysis_date: datetime | None,
    store_id: tuple[str, ...],
    workers: int,
    scoring_config: str | None,
    holiday: tuple[datetime, ...],
    llm: bool,
    llm_api_key_env: str,
    llm_model: str,
    # admin
    machine_id: str | None,
    popularity_score: int | None,
    # rankings
    prefecture: str | None,
    search: str | None,
    limit: int,
    offset: int,
    # shared
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Unified parlor ingestion, analysis and admin CLI."""
    logging.basicConfig(level=log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    _validate_db_flags(db_dsn, mode, run_id)
    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == "rankings":
        _run_rankings_mode(db_dsn, prefecture, search, limit, offset, run_id)
        return

    config = _resolve_config(scoring_config, run_id)
    source_paths = {"csv_path": csv_path, "scoring_config": scoring_config}

    if mode == "analysis_rerun":
        day = analysis_date.date() if analysis_date else date.today()
        ctrs = _run_analysis_mode(
            db_dsn, day, store_id, workers, holiday, llm, llm_api_key_env, llm_model,
            dry_run, config, run_id,
        )
        report_path = write_run_report(run_id, started_at, mode, dry_run, source_paths, ctrs)
        click.echo(f"[{run_id}] Run report: {report_path}")
        click.echo(json.dumps(ctrs.to_dict(), indent=2, default=str, ensure_ascii=False))
        if ctrs.db_phase_errors > 0:
            click.echo(
                f"[{run_id}] Run completed with {ctrs.db_phase_errors} DB error(s) — exiting non-zero",
                err=True,
            )
            sys.exit(1)
        click.echo(f"[{run_id}] Done.")
        return

    counters = RunCounters()
    result: IngestResult | None = None
    if mode in ADMIN_MODES:
        _validate_admin_flags(mode, store_id, machine_id, popularity_score, run_id)
        _run_admin_mode(
            mode, db_dsn, store_id, machine_id, popularity_score, dry_run, counters, config, run_id,
        )
    else:
        _validate_ingest_flags(csv_path, mode, run_id)
        rejects = RejectWriter(Path(rejects_path))
        try:
            result = _run_ingest_mode(
                mode, db_dsn, csv_path, force_overwrite, dry_run, rejects, counters, config, run_id,
            )
        finally:
            rejects.close()

    report_path = write_run_report(
        run_id, started_at, mode, dry_run, source_paths, counters, result,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    click.echo(json.dumps(counters.to_dict(), indent=2, default=str, ensure_ascii=False))
    if counters.db_phase_errors > 0:
        click.echo(
            f"[{run_id}] Run completed with {counters.db_phase_errors} DB error(s) — exiting non-zero",
            err=True,
        )
        sys.exit(1)
    if result is not None and not result.success:
        click.echo(f"[{run_id}] No usable records — exiting non-zero", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] Done.")


if __name__ == "__main__":
    main()
