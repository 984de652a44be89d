"""cdauction CLI entrypoint.

Single command entrypoint supporting:
  config verify
  auction preview
  scenario run
  heart run
  wal replay
  db migrate
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click

# ─── Logging setup ────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger("cdauction")


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync Click context."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _load(config_path: Optional[str]) -> Dict[str, Any]:
    from cdauction.config import ConfigError, load_config

    try:
        return load_config(config_path)
    except ConfigError as e:
        click.echo("✗ CONFIG_INVALID: {}".format(e), err=True)
        sys.exit(1)


_config_option = click.option(
    "--config", "config_path", default=None,
    help="Deployment file (default: $CDAUCTION_CONFIG or config/deployment.json)",
)


# ─── Root CLI ─────────────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0", prog_name="cdauction")
def cli() -> None:
    """cdauction — convertible deposit auction and deposit ledger."""
    pass


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIG commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.group()
def config() -> None:
    """Deployment file checks."""
    pass


@config.command("verify")
@_config_option
def config_verify(config_path: Optional[str]) -> None:
    """Validate a deployment file and bring it up in memory."""
    from cdauction.config import config_hash, get_config_path
    from cdauction.deployment import Deployment
    from cdauction.errors import ProtocolError

    cfg = _load(config_path)
    try:
        Deployment.from_config(cfg)
    except ProtocolError as e:
        click.echo("✗ DEPLOYMENT_INVALID: {}".format(e), err=True)
        sys.exit(1)
    path = Path(config_path or get_config_path())
    click.echo("✓ Deployment verified OK")
    click.echo("sha256: {}".format(config_hash(path)))


# ═══════════════════════════════════════════════════════════════════════════════
# AUCTION commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.group()
def auction() -> None:
    """Auction inspection."""
    pass


@auction.command("preview")
@_config_option
@click.option("--asset", default=None, help="Auctioned asset (default: all)")
@click.option("--amount", default=None, type=int, help="Preview a bid of this deposit amount")
@click.option("--period", default=None, type=int, help="Deposit period in months for --amount")
def auction_preview(config_path: Optional[str], asset: Optional[str], amount: Optional[int],
                    period: Optional[int]) -> None:
    """Print current ticks, optionally previewing a bid."""
    from cdauction.deployment import Deployment
    from cdauction.errors import ProtocolError

    dep = Deployment.from_config(_load(config_path))
    assets = [asset] if asset else sorted(dep.auctions)
    for name in assets:
        engine = dep.auctions.get(name)
        if engine is None:
            click.echo("No auction for asset {}".format(name), err=True)
            sys.exit(1)
        click.echo("Auction {}: enabled={} tick_step={}".format(name, engine.is_enabled, engine.get_tick_step()))
        if not engine.is_enabled:
            continue
        click.echo("  current tick size: {}".format(engine.get_current_tick_size()))
        for p in engine.get_deposit_periods():
            tick = engine.get_current_tick(p)
            click.echo("  {}m: price={} capacity={}".format(p, tick.price, tick.capacity))
        if amount is not None:
            p = period or engine.get_deposit_periods()[0]
            try:
                preview = engine.preview_bid(p, amount)
            except ProtocolError as e:
                click.echo("  preview failed: {}".format(e), err=True)
                sys.exit(1)
            click.echo("  bid {} ({}m): output={} spent={}".format(amount, p, preview.output, preview.deposit_spent))


# ═══════════════════════════════════════════════════════════════════════════════
# SCENARIO commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.group()
def scenario() -> None:
    """Scripted protocol runs."""
    pass


@scenario.command("run")
@click.argument("scenario_file", type=click.Path(exists=True))
@_config_option
@click.option("--wal-path", default=None, help="Journal path (default: $CDAUCTION_WAL_PATH)")
@click.option("--no-wal", is_flag=True, help="Do not journal the run")
def scenario_run(scenario_file: str, config_path: Optional[str], wal_path: Optional[str], no_wal: bool) -> None:
    """Apply the actions of SCENARIO_FILE against a fresh deployment."""
    from cdauction.clock import ManualClock
    from cdauction.config import get_wal_path
    from cdauction.deployment import Deployment
    from cdauction.errors import ProtocolError
    from cdauction.wal import WALSyncError, WALWriter

    try:
        doc = json.loads(Path(scenario_file).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        click.echo("Invalid scenario JSON: {}".format(e), err=True)
        sys.exit(1)
    actions = doc if isinstance(doc, list) else doc.get("actions", [])
    start = doc.get("start_time", 1_700_000_000) if isinstance(doc, dict) else 1_700_000_000

    try:
        dep = Deployment.from_config(_load(config_path), clock=ManualClock(start))
    except ProtocolError as e:
        click.echo("✗ DEPLOYMENT_INVALID: {}".format(e), err=True)
        sys.exit(1)

    try:
        if no_wal:
            outcomes = dep.run_scenario(actions)
        else:
            with WALWriter(wal_path or get_wal_path()) as writer:
                outcomes = dep.run_scenario(actions, writer)
    except WALSyncError as e:
        click.echo("WAL write failed: {}".format(e), err=True)
        sys.exit(1)

    for o in outcomes:
        if o["ok"]:
            click.echo("[{}] {} ok {}".format(o["index"], o["action"], json.dumps(o["result"], sort_keys=True)))
        else:
            click.echo("[{}] {} REJECTED {}: {}".format(o["index"], o["action"], o["error"], o["message"]))
    rejected = sum(1 for o in outcomes if not o["ok"])
    click.echo("Scenario complete: steps={} rejected={}".format(len(outcomes), rejected))


# ═══════════════════════════════════════════════════════════════════════════════
# HEART commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.group()
def heart() -> None:
    """Periodic task runner."""
    pass


@heart.command("run")
@_config_option
@click.option("--beats", default=1, type=int, help="Number of beats (0 = run forever)")
@click.option("--interval", default=None, type=float, help="Seconds between beats")
def heart_run(config_path: Optional[str], beats: int, interval: Optional[float]) -> None:
    """Run the heartbeat against a fresh deployment, alerting on failures."""
    from cdauction.alerts import TelegramNotifier
    from cdauction.deployment import Deployment

    cfg = _load(config_path)
    dep = Deployment.from_config(cfg, notifier=TelegramNotifier())
    wait = interval if interval is not None else cfg["heartbeat_interval_sec"]
    failures = _run(dep.heart.run(beats=beats or None, interval=wait))
    click.echo("Heartbeat complete: beats={} failures={}".format(dep.heart.stats["beats"], failures))


# ═══════════════════════════════════════════════════════════════════════════════
# WAL commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.group()
def wal() -> None:
    """Write-Ahead Log operations."""
    pass


@wal.command("replay")
@click.option("--wal-path", default=None, help="Path to WAL file (default: $CDAUCTION_WAL_PATH)")
def wal_replay(wal_path: Optional[str]) -> None:
    """Replay WAL records into the database."""
    from cdauction.config import get_wal_path
    from cdauction.db import close_pool, get_pool
    from cdauction.wal import WALSyncError, replay_wal

    async def _run_replay() -> Dict[str, int]:
        try:
            pool = await get_pool()
            return await replay_wal(wal_path or get_wal_path(), pool)
        finally:
            await close_pool()

    try:
        stats = _run(_run_replay())
    except WALSyncError as e:
        click.echo("WAL replay failed: {}".format(e), err=True)
        sys.exit(1)
    click.echo(
        "WAL replay complete: inserted={} skipped={} orphans={}".format(
            stats["inserted"], stats["skipped"], stats["orphans"],
        )
    )


# ═══════════════════════════════════════════════════════════════════════════════
# DB commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.group()
def db() -> None:
    """Database operations."""
    pass


@db.command("migrate")
@click.option(
    "--migrations-dir", default=None,
    help="Path to migrations directory (default: auto-detect)",
)
def db_migrate(migrations_dir: Optional[str]) -> None:
    """Run pending database migrations."""
    from cdauction.db import close_pool, run_migrations

    mdir = Path(migrations_dir) if migrations_dir else None

    async def _run_migrate() -> List[str]:
        try:
            return await run_migrations(mdir)
        finally:
            await close_pool()

    applied = _run(_run_migrate())
    if applied:
        click.echo("Applied {} migration(s): {}".format(len(applied), ", ".join(applied)))
    else:
        click.echo("All migrations already applied.")


if __name__ == "__main__":
    cli()
