"""Locked protocol defaults.

Every constant here is a named protocol value. Deployment files may override
the auction parameters, never the units below.
"""

from __future__ import annotations

# ── Time ──────────────────────────────────────────────────────────────────────
SECONDS_PER_DAY = 86400
SECONDS_PER_MONTH = 30 * SECONDS_PER_DAY

# ── Percentages (100.00% = 10_000) ───────────────────────────────────────────
ONE_HUNDRED_PERCENT = 100_00

# ── Auction ───────────────────────────────────────────────────────────────────
OUTPUT_DECIMALS = 9
OUTPUT_SCALE = 10 ** OUTPUT_DECIMALS
DEFAULT_TICK_STEP = 110_00
DEFAULT_AUCTION_TRACKING_PERIOD = 7
MIN_TICK_SIZE = 1

# ── Operators ─────────────────────────────────────────────────────────────────
OPERATOR_NAME_LENGTH = 3
OPERATOR_NAME_PATTERN = r"[a-z0-9]{3}"

# ── Well-known accounts ──────────────────────────────────────────────────────
TREASURY = "treasury"
VAULT_CUSTODIAN = "deposit_ledger"

# ── Periodic task / alerts ────────────────────────────────────────────────────
HEARTBEAT_INTERVAL_SEC = 8 * 3600
ALERT_DEDUP_SEC = 300
