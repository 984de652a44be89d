"""Yield-bearing share vaults and the adapter the ledger custodies through.

Implements:
- ShareVault: share accounting with one virtual share and one virtual asset
- Rounding: deposit mints shares rounded down, withdraw burns shares rounded
  up, redeem and share→asset conversion round down (always against the caller)
- AssetVaultAdapter: one vault per reserve asset, shares held by a single
  custodian on behalf of every ledger operator
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from cdauction.atomic import StateCoordinator, Transactional, ensure_coordinator
from cdauction.constants import VAULT_CUSTODIAN
from cdauction.errors import InsufficientFundsError, InvalidParamsError, InvalidStateError
from cdauction.fixedpoint import mul_div, mul_div_up
from cdauction.tokens import TokenLedger

logger = logging.getLogger(__name__)


class ShareVault(Transactional):
    """Share vault over a single reserve asset."""

    _state_attrs = ("_total_shares", "_shares")

    def __init__(
        self,
        asset: str,
        tokens: TokenLedger,
        address: Optional[str] = None,
        coordinator: Optional[StateCoordinator] = None,
    ) -> None:
        self.asset = asset
        self.tokens = tokens
        self.address = address or "vault:{}".format(asset)
        self.coordinator = ensure_coordinator(coordinator)
        self.coordinator.register(self)
        self._total_shares = 0
        self._shares = {}  # type: Dict[str, int]

    # ── Views ─────────────────────────────────────────────────────────────────

    def total_assets(self) -> int:
        return self.tokens.balance_of(self.asset, self.address)

    @property
    def total_shares(self) -> int:
        return self._total_shares

    def balance_of(self, holder: str) -> int:
        return self._shares.get(holder, 0)

    def convert_to_shares(self, assets: int, round_up: bool = False) -> int:
        fn = mul_div_up if round_up else mul_div
        return fn(assets, self._total_shares + 1, self.total_assets() + 1)

    def convert_to_assets(self, shares: int, round_up: bool = False) -> int:
        fn = mul_div_up if round_up else mul_div
        return fn(shares, self.total_assets() + 1, self._total_shares + 1)

    # ── Mutations ─────────────────────────────────────────────────────────────

    def deposit(self, assets: int, payer: str, receiver: str) -> int:
        """Pull `assets` from payer, mint shares (rounded down) to receiver."""
        if assets <= 0:
            raise InvalidParamsError("Vault deposit must be positive: {}".format(assets))
        shares = self.convert_to_shares(assets)
        if shares == 0:
            raise InvalidParamsError("Vault deposit of {} mints zero shares".format(assets))
        self.tokens.transfer(self.asset, payer, self.address, assets)
        self._shares[receiver] = self._shares.get(receiver, 0) + shares
        self._total_shares += shares
        return shares

    def withdraw(self, assets: int, receiver: str, owner: str) -> int:
        """Send `assets` to receiver, burning owner's shares (rounded up)."""
        if assets <= 0:
            raise InvalidParamsError("Vault withdraw must be positive: {}".format(assets))
        shares = self.convert_to_shares(assets, round_up=True)
        owned = self._shares.get(owner, 0)
        if shares > owned:
            raise InsufficientFundsError(
                "Vault withdraw needs {} shares, owner {} holds {}".format(shares, owner, owned)
            )
        self._shares[owner] = owned - shares
        self._total_shares -= shares
        self.tokens.transfer(self.asset, self.address, receiver, assets)
        return shares

    def redeem(self, shares: int, receiver: str, owner: str) -> int:
        """Burn exactly `shares` of owner's, sending their value (rounded down) to receiver."""
        if shares <= 0:
            raise InvalidParamsError("Vault redeem must be positive: {}".format(shares))
        owned = self._shares.get(owner, 0)
        if shares > owned:
            raise InsufficientFundsError(
                "Vault redeem of {} shares, owner {} holds {}".format(shares, owner, owned)
            )
        assets = self.convert_to_assets(shares)
        if assets == 0:
            raise InvalidParamsError("Vault redeem of {} shares is worth zero".format(shares))
        self._shares[owner] = owned - shares
        self._total_shares -= shares
        self.tokens.transfer(self.asset, self.address, receiver, assets)
        return assets


class AssetVaultAdapter:
    """Routes ledger custody through one share vault per reserve asset."""

    def __init__(self, tokens: TokenLedger, custodian: str = VAULT_CUSTODIAN) -> None:
        self.tokens = tokens
        self.custodian = custodian
        self._vaults = {}  # type: Dict[str, ShareVault]

    def add_vault(self, vault: ShareVault) -> None:
        if vault.asset in self._vaults:
            raise InvalidStateError("Vault already registered for {}".format(vault.asset))
        self._vaults[vault.asset] = vault
        logger.info("Vault registered: asset=%s address=%s", vault.asset, vault.address)

    def has_vault(self, asset: str) -> bool:
        return asset in self._vaults

    def get_vault(self, asset: str) -> ShareVault:
        vault = self._vaults.get(asset)
        if vault is None:
            raise InvalidStateError("No vault for asset {}".format(asset))
        return vault

    @property
    def assets(self) -> List[str]:
        return sorted(self._vaults)

    def deposit(self, asset: str, amount: int, payer: str) -> int:
        """Returns shares minted to the custodian (rounded down)."""
        return self.get_vault(asset).deposit(amount, payer, self.custodian)

    def withdraw(self, asset: str, amount: int, recipient: str) -> int:
        """Returns shares burned from the custodian (rounded up)."""
        return self.get_vault(asset).withdraw(amount, recipient, self.custodian)

    def redeem(self, asset: str, shares: int, recipient: str) -> int:
        """Returns assets sent for exactly `shares` of the custodian's (rounded down)."""
        return self.get_vault(asset).redeem(shares, recipient, self.custodian)

    def convert_to_shares(self, asset: str, assets: int, round_up: bool = False) -> int:
        return self.get_vault(asset).convert_to_shares(assets, round_up)

    def convert_to_assets(self, asset: str, shares: int, round_up: bool = False) -> int:
        return self.get_vault(asset).convert_to_assets(shares, round_up)
