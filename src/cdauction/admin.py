"""Admin Surface — role-gated configuration entry points.

Roles:
- ADMIN            asset + period setup, operator names, facility lifecycle,
                   authorizations, tick step, tracking period
- MANAGER          deposit caps/minimums, reclaim rates, period enable/disable
- EMISSION_MANAGER auction parameters and auction enable/disable

Every method takes the calling account first; a caller without the role
gets UnauthorizedError before anything is touched.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Set

from cdauction.auction import AuctionEngine
from cdauction.constants import DEFAULT_AUCTION_TRACKING_PERIOD, DEFAULT_TICK_STEP
from cdauction.errors import InvalidStateError, UnauthorizedError
from cdauction.facility import DepositFacility
from cdauction.ledger import DepositLedger

logger = logging.getLogger(__name__)

ROLE_ADMIN = "ADMIN"
ROLE_MANAGER = "MANAGER"
ROLE_EMISSION_MANAGER = "EMISSION_MANAGER"

ALL_ROLES = frozenset({ROLE_ADMIN, ROLE_MANAGER, ROLE_EMISSION_MANAGER})


class RoleRegistry:
    """Role → accounts mapping."""

    def __init__(self) -> None:
        self._members = {role: set() for role in ALL_ROLES}  # type: Dict[str, Set[str]]

    def _check_role(self, role: str) -> None:
        if role not in ALL_ROLES:
            raise ValueError("Unknown role: {}".format(role))

    def grant_role(self, role: str, account: str) -> None:
        self._check_role(role)
        self._members[role].add(account)
        logger.info("Role granted: %s → %s", role, account)

    def revoke_role(self, role: str, account: str) -> None:
        self._check_role(role)
        self._members[role].discard(account)
        logger.info("Role revoked: %s from %s", role, account)

    def has_role(self, role: str, account: str) -> bool:
        self._check_role(role)
        return account in self._members[role]

    def require_role(self, role: str, account: str) -> None:
        if not self.has_role(role, account):
            logger.warning("Unauthorized: %s lacks role %s", account, role)
            raise UnauthorizedError("{} lacks role {}".format(account, role))

    def roles_of(self, account: str) -> List[str]:
        return sorted(role for role, members in self._members.items() if account in members)


class AdminSurface:
    """Privileged boundary over the ledger, facility and auctions."""

    def __init__(
        self,
        ledger: DepositLedger,
        facility: DepositFacility,
        auctions: Dict[str, AuctionEngine],
        roles: RoleRegistry,
    ) -> None:
        self.ledger = ledger
        self.facility = facility
        self.auctions = auctions
        self.roles = roles

    def _auction(self, asset: str) -> AuctionEngine:
        engine = self.auctions.get(asset)
        if engine is None:
            raise InvalidStateError("No auction for asset {}".format(asset))
        return engine

    # ── Ledger ────────────────────────────────────────────────────────────────

    def add_asset(self, caller: str, asset: str, deposit_cap: int, minimum_deposit: int = 0) -> None:
        self.roles.require_role(ROLE_ADMIN, caller)
        self.ledger.add_asset(asset, deposit_cap, minimum_deposit)

    def set_asset_deposit_cap(self, caller: str, asset: str, deposit_cap: int) -> None:
        self.roles.require_role(ROLE_MANAGER, caller)
        self.ledger.set_asset_deposit_cap(asset, deposit_cap)

    def set_asset_minimum_deposit(self, caller: str, asset: str, minimum_deposit: int) -> None:
        self.roles.require_role(ROLE_MANAGER, caller)
        self.ledger.set_asset_minimum_deposit(asset, minimum_deposit)

    def set_operator_name(self, caller: str, operator: str, name: str) -> None:
        self.roles.require_role(ROLE_ADMIN, caller)
        self.ledger.set_operator_name(operator, name)

    def add_asset_period(self, caller: str, asset: str, period_months: int, reclaim_rate: int) -> int:
        """Offer a deposit period through the facility; returns the receipt token id."""
        self.roles.require_role(ROLE_ADMIN, caller)
        return self.ledger.add_asset_period(asset, period_months, self.facility.address, reclaim_rate)

    def enable_asset_period(self, caller: str, asset: str, period_months: int) -> None:
        self.roles.require_role(ROLE_MANAGER, caller)
        self.ledger.enable_asset_period(asset, period_months, self.facility.address)

    def disable_asset_period(self, caller: str, asset: str, period_months: int) -> None:
        self.roles.require_role(ROLE_MANAGER, caller)
        self.ledger.disable_asset_period(asset, period_months, self.facility.address)

    def set_asset_period_reclaim_rate(self, caller: str, asset: str, period_months: int, reclaim_rate: int) -> None:
        self.roles.require_role(ROLE_MANAGER, caller)
        self.ledger.set_asset_period_reclaim_rate(asset, period_months, self.facility.address, reclaim_rate)

    # ── Facility ──────────────────────────────────────────────────────────────

    def enable_facility(self, caller: str) -> None:
        self.roles.require_role(ROLE_ADMIN, caller)
        self.facility.enable()

    def disable_facility(self, caller: str) -> None:
        self.roles.require_role(ROLE_ADMIN, caller)
        self.facility.disable()

    def authorize_operator(self, caller: str, operator: str) -> None:
        self.roles.require_role(ROLE_ADMIN, caller)
        self.facility.authorize_operator(operator)

    def deauthorize_operator(self, caller: str, operator: str) -> None:
        self.roles.require_role(ROLE_ADMIN, caller)
        self.facility.deauthorize_operator(operator)

    def authorize_auctioneer(self, caller: str, auctioneer: str) -> None:
        self.roles.require_role(ROLE_ADMIN, caller)
        self.facility.authorize_auctioneer(auctioneer)

    def deauthorize_auctioneer(self, caller: str, auctioneer: str) -> None:
        self.roles.require_role(ROLE_ADMIN, caller)
        self.facility.deauthorize_auctioneer(auctioneer)

    # ── Auction ───────────────────────────────────────────────────────────────

    def enable_auction(
        self,
        caller: str,
        asset: str,
        target: int,
        tick_size: int,
        min_price: int,
        tick_step: int = DEFAULT_TICK_STEP,
        tracking_period: int = DEFAULT_AUCTION_TRACKING_PERIOD,
    ) -> None:
        self.roles.require_role(ROLE_EMISSION_MANAGER, caller)
        self._auction(asset).enable(target, tick_size, min_price, tick_step, tracking_period)

    def disable_auction(self, caller: str, asset: str) -> None:
        self.roles.require_role(ROLE_EMISSION_MANAGER, caller)
        self._auction(asset).disable()

    def set_auction_parameters(self, caller: str, asset: str, target: int, tick_size: int, min_price: int) -> None:
        self.roles.require_role(ROLE_EMISSION_MANAGER, caller)
        self._auction(asset).set_auction_parameters(target, tick_size, min_price)

    def set_tick_step(self, caller: str, asset: str, tick_step: int) -> None:
        self.roles.require_role(ROLE_ADMIN, caller)
        self._auction(asset).set_tick_step(tick_step)

    def set_auction_tracking_period(self, caller: str, asset: str, days: int) -> None:
        self.roles.require_role(ROLE_ADMIN, caller)
        self._auction(asset).set_auction_tracking_period(days)

    def enable_deposit_period(self, caller: str, asset: str, period_months: int) -> None:
        self.roles.require_role(ROLE_ADMIN, caller)
        self._auction(asset).enable_deposit_period(period_months)

    def disable_deposit_period(self, caller: str, asset: str, period_months: int) -> None:
        self.roles.require_role(ROLE_ADMIN, caller)
        self._auction(asset).disable_deposit_period(period_months)
