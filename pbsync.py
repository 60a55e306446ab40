#!/usr/bin/env python3
"""
PBASS → inbound task synchronizer

Features:
- Pulls purchase-order line items from the PBASS API (or a CSV export)
- Tolerates inconsistent upstream JSON shapes and field names
- Keyword filter for in-scope parts (RAMP / DIVERTER by default)
- SQLite inbound task table keyed by (invoice_no, part_no, vendor)
- Incremental (rolling window) and full sync, interval scheduler
- Structured logging

Usage:
  export $(grep -v '^#' .env | xargs)  # or rely on python-dotenv
  python pbsync.py verify
  python pbsync.py sync
  python pbsync.py sync --full --retries 3
  python pbsync.py schedule --interval 300
  python pbsync.py tasks --status ARRIVED
"""

import logging
import signal
from pathlib import Path

import click
import structlog
from tenacity import Retrying, retry_if_result, stop_after_attempt, wait_exponential_jitter

from pbsync_config import load_config
from pbsync_db import TaskStore
from pbsync_http import PbassClient
from pbsync_models import SyncResult, SyncStatus, TaskStatus
from pbsync_scheduler import SyncScheduler
from pbsync_settings import get_settings, missing_required_keys, require_settings
from pbsync_sources import SyncMode
from pbsync_sync import build_service

# Configure structured logging
logging.basicConfig(level=logging.INFO, format="%(message)s", handlers=[logging.StreamHandler()])
logger = structlog.get_logger()


def print_msg(msg):
    print(msg)


def print_error(msg):
    print(f"ERROR: {msg}")


def print_success(msg):
    print(f"SUCCESS: {msg}")


def _load_setup(config_path):
    """Load config and check env for the configured source."""
    try:
        cfg = load_config(config_path)
    except Exception as e:
        print_error(f"Configuration error: {e}")
        raise click.ClickException("Invalid configuration") from e

    missing = missing_required_keys(cfg.source)
    if missing:
        print_error(f"Missing environment variables: {', '.join(missing)}")
        print_msg("Copy env.example to .env and fill in the values")
        raise click.ClickException("Missing required environment variables")
    if cfg.source == "api":
        # Type validation via Pydantic
        try:
            _ = require_settings()
        except Exception as e:
            print_error(f"Invalid environment configuration: {e}")
            raise click.ClickException("Invalid environment configuration") from e
    return cfg


def report(result: SyncResult) -> None:
    """Render the three user-visible cases differently."""
    if result.status == SyncStatus.UNREACHABLE:
        print_error(f"Could not reach {result.source}: {result.message}")
    elif result.status == SyncStatus.NO_MATCHES:
        print_msg(f"WARNING: {result.message}")
    else:
        print_msg(result.message)
        print_msg(f"  Total fetched: {result.total} (candidates: {result.candidates})")


def _unreachable(result: SyncResult) -> bool:
    return result.status == SyncStatus.UNREACHABLE


def _log_retry(retry_state) -> None:
    logger.warning(
        "Source unreachable, retrying sync",
        attempt=retry_state.attempt_number,
        sleep=round(retry_state.next_action.sleep, 1),
    )


def run_with_retries(service, mode: SyncMode, retries: int, wait=None) -> SyncResult:
    """Re-run the whole sync while the source stays unreachable.

    Returns the last result once retries are exhausted.
    """
    if retries <= 0:
        return service.run_sync(mode)
    retryer = Retrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait or wait_exponential_jitter(1, 30),
        retry=retry_if_result(_unreachable),
        before_sleep=_log_retry,
        retry_error_callback=lambda state: state.outcome.result(),
    )
    return retryer(service.run_sync, mode)


@click.group()
@click.option("--config", "config_path", default=None, help="path to pbsync.config.json")
@click.pass_context
def cli(ctx, config_path):
    """PBASS → inbound task synchronizer"""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.pass_context
def verify(ctx):
    """Check env, config, and the PBASS connection."""
    print_msg("Verifying setup...")

    try:
        cfg = _load_setup(ctx.obj["config_path"])
        print_success("Configuration OK")
    except click.ClickException:
        return

    if cfg.source == "csv":
        if Path(cfg.csv_path or "").exists():
            print_success(f"CSV export found: {cfg.csv_path}")
        else:
            print_error(f"CSV export not found: {cfg.csv_path}")
        return

    client = PbassClient.from_settings()
    check = client.test_connection()
    if check.success:
        print_success(f"{check.message} ({check.latency_ms} ms)")
    else:
        print_error(f"PBASS connection failed: {check.message} ({check.latency_ms} ms)")


@cli.command()
@click.option("--full", is_flag=True, help="fetch the whole history (ALL/ALL window)")
@click.option("--retries", type=int, default=0, help="re-run this many times while PBASS is unreachable")
@click.option("--verbose", is_flag=True, help="verbose logging")
@click.pass_context
def sync(ctx, full, retries, verbose):
    """Run one sync pass and print the summary."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    mode = SyncMode.FULL if full else SyncMode.INCREMENTAL
    print_msg(f"Starting sync ({mode.value})")

    cfg = _load_setup(ctx.obj["config_path"])
    try:
        service = build_service(cfg)
    except Exception as e:
        print_error(f"Setup error: {e}")
        raise click.ClickException("Could not build sync service") from e

    result = run_with_retries(service, mode, retries)
    report(result)
    if not result.success:
        ctx.exit(1)


@cli.command()
@click.option("--interval", type=int, default=None, help="seconds between runs (default PBSYNC_INTERVAL)")
@click.option("--full-first", is_flag=True, help="make the first run a full sync")
@click.option("--verbose", is_flag=True, help="verbose logging")
@click.pass_context
def schedule(ctx, interval, full_first, verbose):
    """Sync now and then on a fixed interval until interrupted."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    cfg = _load_setup(ctx.obj["config_path"])
    service = build_service(cfg)
    scheduler = SyncScheduler(service, interval or get_settings().SYNC_INTERVAL)

    def _stop(signum, frame):
        print_msg("Scheduler stopping...")
        scheduler.stop()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)

    print_msg(f"PBASS sync scheduler started, interval {scheduler.interval_seconds}s")
    scheduler.run_forever(SyncMode.FULL if full_first else SyncMode.INCREMENTAL)


@cli.command()
@click.option("--status", type=click.Choice([s.value for s in TaskStatus]), default=None)
@click.option("--limit", type=int, default=20, help="max rows; 0 = unlimited")
def tasks(status, limit):
    """List stored inbound tasks, newest first."""
    store = TaskStore()
    rows = store.list_tasks(TaskStatus(status) if status else None, limit)
    print_msg(f"{store.count()} tasks stored, showing {len(rows)}")
    for t in rows:
        due = t.due_date.date().isoformat() if t.due_date else "-"
        print_msg(
            f"{t.id:>5} {t.status.value:<9} PO {t.po_no} INV {t.invoice_no} "
            f"{t.part_no} x{t.plan_qty:g} {t.vendor} due {due}"
        )


if __name__ == "__main__":
    cli()
