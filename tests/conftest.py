"""Shared fixtures: a small deployment on a manual clock."""

import copy
from typing import Any, Dict

import pytest

from cdauction.atomic import StateCoordinator
from cdauction.clock import ManualClock
from cdauction.config import validate_config
from cdauction.deployment import Deployment
from cdauction.ledger import DepositLedger
from cdauction.observability import EventLog
from cdauction.receipts import ReceiptTokenRegistry
from cdauction.tokens import TokenLedger
from cdauction.vault import AssetVaultAdapter, ShareVault

# price 10**9 = one deposit unit per output unit
RAW_CONFIG = {
    "output_token": "OHM",
    "output_decimals": 9,
    "assets": [
        {"asset": "USDS", "deposit_cap": 10 ** 12},
    ],
    "facility": {
        "name": "cdf",
        "periods": [1, 3],
        "reclaim_rate": 9000,
        "operators": ["lender"],
    },
    "auctions": [
        {
            "asset": "USDS",
            "target": 1000,
            "tick_size": 100,
            "min_price": 10 ** 9,
            "tick_step": 11000,
            "periods": [3],
        },
    ],
}  # type: Dict[str, Any]


@pytest.fixture
def raw_config() -> Dict[str, Any]:
    return copy.deepcopy(RAW_CONFIG)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(1_700_000_000)


@pytest.fixture
def deployment(raw_config: Dict[str, Any], clock: ManualClock) -> Deployment:
    return Deployment.from_config(validate_config(raw_config), clock=clock)


class LedgerHarness:
    """Ledger with one asset and one named operator, outside any facility."""

    def __init__(self) -> None:
        self.clock = ManualClock(1_700_000_000)
        self.coordinator = StateCoordinator()
        self.events = EventLog(self.coordinator)
        self.tokens = TokenLedger(self.coordinator)
        self.vault = ShareVault("USDS", self.tokens, coordinator=self.coordinator)
        self.vaults = AssetVaultAdapter(self.tokens)
        self.vaults.add_vault(self.vault)
        self.receipts = ReceiptTokenRegistry(self.coordinator)
        self.ledger = DepositLedger(self.vaults, self.receipts, self.clock, self.events, self.coordinator)
        self.ledger.add_asset("USDS", deposit_cap=10 ** 12)
        self.ledger.set_operator_name("op", "abc")
        self.token_id = self.ledger.add_asset_period("USDS", 3, "op", 9000)


@pytest.fixture
def harness() -> LedgerHarness:
    return LedgerHarness()
