"""Deployment configuration — JSON file + environment.

A deployment file names the output token, the reserve assets and their
vault limits, the facility with its deposit periods and reclaim rate, and
one auction per auctioned asset. Everything is validated on load; any
problem raises ConfigError and nothing is deployed.

Environment:
- CDAUCTION_CONFIG       path of the deployment file
- CDAUCTION_WAL_PATH     journal path for scenario runs
- CDAUCTION_DATABASE_URL Postgres DSN (see db.py)
- TELEGRAM_BOT_TOKEN / TELEGRAM_CHAT_ID (see alerts.py)
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

from cdauction.constants import (
    DEFAULT_AUCTION_TRACKING_PERIOD,
    DEFAULT_TICK_STEP,
    HEARTBEAT_INTERVAL_SEC,
    ONE_HUNDRED_PERCENT,
    OPERATOR_NAME_PATTERN,
    OUTPUT_DECIMALS,
    TREASURY,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/deployment.json"
DEFAULT_WAL_PATH = "data/wal.jsonl"


class ConfigError(Exception):
    """Raised when a deployment file is missing or invalid."""


def get_config_path() -> str:
    return os.environ.get("CDAUCTION_CONFIG", DEFAULT_CONFIG_PATH)


def get_wal_path() -> str:
    return os.environ.get("CDAUCTION_WAL_PATH", DEFAULT_WAL_PATH)


def config_hash(path: Path) -> str:
    """SHA-256 of the file bytes, reported by `config verify`."""
    return hashlib.sha256(Path(path).read_bytes()).hexdigest()


def _require(section: Dict[str, Any], key: str, where: str) -> Any:
    if key not in section:
        raise ConfigError("{}: missing '{}'".format(where, key))
    return section[key]


def _int(section: Dict[str, Any], key: str, where: str, minimum: int = 0, default: Optional[int] = None) -> int:
    value = section.get(key, default) if default is not None else _require(section, key, where)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError("{}: '{}' must be an integer, got {!r}".format(where, key, value))
    if value < minimum:
        raise ConfigError("{}: '{}' must be >= {}, got {}".format(where, key, minimum, value))
    return value


def validate_config(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a parsed deployment document; returns it with defaults filled in."""
    if not isinstance(raw, dict):
        raise ConfigError("Deployment must be a JSON object")

    output_token = _require(raw, "output_token", "deployment")
    if not isinstance(output_token, str) or not output_token:
        raise ConfigError("deployment: 'output_token' must be a non-empty string")

    cfg = {
        "output_token": output_token,
        "output_decimals": _int(raw, "output_decimals", "deployment", default=OUTPUT_DECIMALS),
        "treasury": raw.get("treasury", TREASURY),
        "heartbeat_interval_sec": _int(
            raw, "heartbeat_interval_sec", "deployment", minimum=1, default=HEARTBEAT_INTERVAL_SEC,
        ),
    }  # type: Dict[str, Any]

    assets = _require(raw, "assets", "deployment")
    if not isinstance(assets, list) or not assets:
        raise ConfigError("deployment: 'assets' must be a non-empty list")
    cfg["assets"] = []
    seen = set()
    for i, a in enumerate(assets):
        where = "assets[{}]".format(i)
        name = _require(a, "asset", where)
        if name in seen:
            raise ConfigError("{}: duplicate asset {}".format(where, name))
        seen.add(name)
        cfg["assets"].append({
            "asset": name,
            "symbol": a.get("symbol", name),
            "decimals": _int(a, "decimals", where, default=18),
            "deposit_cap": _int(a, "deposit_cap", where),
            "minimum_deposit": _int(a, "minimum_deposit", where, default=0),
        })

    fac = _require(raw, "facility", "deployment")
    name = _require(fac, "name", "facility")
    if not isinstance(name, str) or not re.fullmatch(OPERATOR_NAME_PATTERN, name):
        raise ConfigError("facility: 'name' must be 3 lowercase alphanumeric characters, got {!r}".format(name))
    periods = _require(fac, "periods", "facility")
    if not isinstance(periods, list) or not periods:
        raise ConfigError("facility: 'periods' must be a non-empty list")
    for p in periods:
        if isinstance(p, bool) or not isinstance(p, int) or p <= 0:
            raise ConfigError("facility: deposit periods must be positive integers, got {!r}".format(p))
    reclaim_rate = _int(fac, "reclaim_rate", "facility")
    if reclaim_rate > ONE_HUNDRED_PERCENT:
        raise ConfigError("facility: 'reclaim_rate' must be <= {}".format(ONE_HUNDRED_PERCENT))
    cfg["facility"] = {
        "name": name,
        "periods": sorted(set(periods)),
        "reclaim_rate": reclaim_rate,
        "operators": list(fac.get("operators", [])),
    }

    cfg["auctions"] = []
    for i, au in enumerate(raw.get("auctions", [])):
        where = "auctions[{}]".format(i)
        asset = _require(au, "asset", where)
        if asset not in seen:
            raise ConfigError("{}: unknown asset {}".format(where, asset))
        au_periods = au.get("periods", cfg["facility"]["periods"])
        unknown = sorted(set(au_periods) - set(cfg["facility"]["periods"]))
        if unknown:
            raise ConfigError("{}: periods {} not offered by the facility".format(where, unknown))
        tick_step = _int(au, "tick_step", where, default=DEFAULT_TICK_STEP)
        if tick_step < ONE_HUNDRED_PERCENT:
            raise ConfigError("{}: 'tick_step' must be >= {}".format(where, ONE_HUNDRED_PERCENT))
        cfg["auctions"].append({
            "asset": asset,
            "target": _int(au, "target", where),
            "tick_size": _int(au, "tick_size", where, minimum=1),
            "min_price": _int(au, "min_price", where, minimum=1),
            "tick_step": tick_step,
            "tracking_period": _int(
                au, "tracking_period", where, minimum=1, default=DEFAULT_AUCTION_TRACKING_PERIOD,
            ),
            "periods": list(au_periods),
            "enabled": bool(au.get("enabled", True)),
        })

    return cfg


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Read and validate a deployment file (default: $CDAUCTION_CONFIG)."""
    config_path = Path(path or get_config_path())
    if not config_path.is_file():
        raise ConfigError("Deployment file not found: {}".format(config_path))
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError("Deployment file is not valid JSON: {}: {}".format(config_path, e)) from e

    cfg = validate_config(raw)
    logger.info(
        "Deployment loaded: %s assets=%d auctions=%d",
        config_path, len(cfg["assets"]), len(cfg["auctions"]),
    )
    return cfg
