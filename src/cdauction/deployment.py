"""Deployment — wires every component from a validated config.

Implements:
- Deployment.from_config(): tokens, vaults, receipt registry, positions,
  ledger, facility, auctions, admin surface and heartbeat sharing one
  StateCoordinator, clock and EventLog
- Scenario actions: a JSON list of {"action": ..., ...} steps applied in
  order, each journaled as ACTION_INTENT then ACTION_RESULT or ACTION_ABORTED
- Snapshot of the whole deployment for checkpoints and the CLI
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from cdauction.admin import ALL_ROLES, AdminSurface, RoleRegistry
from cdauction.atomic import StateCoordinator
from cdauction.auction import AuctionEngine
from cdauction.clock import ManualClock, SystemClock
from cdauction.constants import SECONDS_PER_DAY
from cdauction.errors import InvalidParamsError, InvalidStateError, ProtocolError
from cdauction.facility import DepositFacility
from cdauction.heart import Heartbeat
from cdauction.ledger import DepositLedger
from cdauction.observability import EventLog
from cdauction.positions import PositionManager
from cdauction.receipts import ReceiptTokenRegistry
from cdauction.tokens import TokenLedger
from cdauction.vault import AssetVaultAdapter, ShareVault
from cdauction.wal import ActionJournal, WALWriter

logger = logging.getLogger(__name__)

ADMIN_ACCOUNT = "admin"


class Deployment:
    """A complete in-memory protocol instance."""

    def __init__(self, cfg: Dict[str, Any], clock: Any = None, notifier: Any = None) -> None:
        self.cfg = cfg
        self.clock = clock or SystemClock()
        self.coordinator = StateCoordinator()
        self.events = EventLog(self.coordinator)
        self.output_token = cfg["output_token"]
        self.output_scale = 10 ** cfg["output_decimals"]
        self.treasury = cfg["treasury"]

        self.tokens = TokenLedger(self.coordinator)
        self.vaults = AssetVaultAdapter(self.tokens)
        self.receipts = ReceiptTokenRegistry(self.coordinator)
        self.positions = PositionManager(self.output_scale, self.coordinator)
        self.ledger = DepositLedger(self.vaults, self.receipts, self.clock, self.events, self.coordinator)

        for a in cfg["assets"]:
            self.vaults.add_vault(ShareVault(a["asset"], self.tokens, coordinator=self.coordinator))
            self.ledger.add_asset(a["asset"], a["deposit_cap"], a["minimum_deposit"], a["symbol"], a["decimals"])

        fac = cfg["facility"]
        self.facility = DepositFacility(
            self.ledger,
            self.positions,
            self.tokens,
            self.output_token,
            fac["name"],
            treasury=self.treasury,
            clock=self.clock,
            events=self.events,
            coordinator=self.coordinator,
        )

        self.auctions = {}  # type: Dict[str, AuctionEngine]
        for au in cfg["auctions"]:
            self.auctions[au["asset"]] = AuctionEngine(
                au["asset"],
                self.facility,
                self.clock,
                self.output_scale,
                self.events,
                self.coordinator,
            )

        self.roles = RoleRegistry()
        for role in sorted(ALL_ROLES):
            self.roles.grant_role(role, ADMIN_ACCOUNT)
        self.admin = AdminSurface(self.ledger, self.facility, self.auctions, self.roles)

        self.heart = Heartbeat(notifier)
        self.heart.add_task("{}.execute".format(fac["name"]), self.facility.execute)

        self._handlers = {
            "fund": self._fund,
            "advance": self._advance,
            "accrue_yield": self._accrue_yield,
            "bid": self._bid,
            "convert": self._convert,
            "reclaim": self._reclaim,
            "transfer_receipt": self._transfer_receipt,
            "split": self._split,
            "commit": self._commit,
            "commit_cancel": self._commit_cancel,
            "commit_withdraw": self._commit_withdraw,
            "borrow": self._borrow,
            "repay": self._repay,
            "default": self._default,
            "set_auction_parameters": self._set_auction_parameters,
            "set_tick_step": self._set_tick_step,
            "set_auction_tracking_period": self._set_auction_tracking_period,
            "enable_deposit_period": self._enable_deposit_period,
            "disable_deposit_period": self._disable_deposit_period,
            "enable_auction": self._enable_auction,
            "disable_auction": self._disable_auction,
            "heartbeat": self._heartbeat,
            "snapshot": lambda action: self.snapshot(),
        }  # type: Dict[str, Callable[[Dict[str, Any]], Any]]

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], clock: Any = None, notifier: Any = None) -> Deployment:
        """Build and bring up a deployment: asset periods, facility, auctions."""
        dep = cls(cfg, clock=clock, notifier=notifier)
        fac = cfg["facility"]
        for a in cfg["assets"]:
            for period in fac["periods"]:
                dep.admin.add_asset_period(ADMIN_ACCOUNT, a["asset"], period, fac["reclaim_rate"])
        dep.admin.enable_facility(ADMIN_ACCOUNT)
        for operator in fac["operators"]:
            dep.admin.authorize_operator(ADMIN_ACCOUNT, operator)

        for au in cfg["auctions"]:
            engine = dep.auctions[au["asset"]]
            dep.admin.authorize_auctioneer(ADMIN_ACCOUNT, engine.address)
            if not au["enabled"]:
                continue
            dep.admin.enable_auction(
                ADMIN_ACCOUNT, au["asset"], au["target"], au["tick_size"], au["min_price"],
                au["tick_step"], au["tracking_period"],
            )
            for period in au["periods"]:
                dep.admin.enable_deposit_period(ADMIN_ACCOUNT, au["asset"], period)

        logger.info(
            "Deployment ready: facility=%s assets=%s auctions=%s",
            dep.facility.address, dep.ledger.assets, sorted(dep.auctions),
        )
        return dep

    # ── Scenario actions ──────────────────────────────────────────────────────

    def _auction(self, asset: str) -> AuctionEngine:
        engine = self.auctions.get(asset)
        if engine is None:
            raise InvalidStateError("No auction for asset {}".format(asset))
        return engine

    def _fund(self, a: Dict[str, Any]) -> Dict[str, Any]:
        self.tokens.mint(a["asset"], a["account"], a["amount"])
        return {"balance": self.tokens.balance_of(a["asset"], a["account"])}

    def _advance(self, a: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(self.clock, ManualClock):
            raise InvalidStateError("Clock cannot be advanced outside a scenario")
        seconds = a.get("seconds", 0) + a.get("days", 0) * SECONDS_PER_DAY
        return {"now": self.clock.advance(int(seconds))}

    def _accrue_yield(self, a: Dict[str, Any]) -> Dict[str, Any]:
        vault = self.vaults.get_vault(a["asset"])
        self.tokens.mint(a["asset"], vault.address, a["amount"])
        return {"total_assets": vault.total_assets()}

    def _bid(self, a: Dict[str, Any]) -> Dict[str, Any]:
        result = self._auction(a["asset"]).bid(
            a["bidder"], a["period"], a["amount"], a.get("min_output", 0), a.get("wrap", False),
        )
        return result.to_dict()

    def _convert(self, a: Dict[str, Any]) -> Dict[str, Any]:
        deposit, output = self.facility.convert(a["owner"], a["position_ids"], a["amounts"])
        return {"deposit": deposit, "output": output}

    def _reclaim(self, a: Dict[str, Any]) -> Dict[str, Any]:
        return {"reclaimed": self.facility.reclaim(a["owner"], a["asset"], a["period"], a["amount"])}

    def _transfer_receipt(self, a: Dict[str, Any]) -> Dict[str, Any]:
        token_id = self.ledger.get_receipt_token_id(a["asset"], a["period"], self.facility.address)
        self.receipts.transfer(token_id, a["from"], a["to"], a["amount"])
        return {"balance": self.receipts.balance_of(token_id, a["to"])}

    def _split(self, a: Dict[str, Any]) -> Dict[str, Any]:
        new_id = self.positions.split(a["owner"], a["position_id"], a["amount"], a["to"], a.get("wrap", False))
        return {"position_id": new_id}

    def _commit(self, a: Dict[str, Any]) -> Dict[str, Any]:
        self.facility.handle_commit(a["operator"], a["asset"], a["amount"])
        return {"committed": self.facility.get_committed_deposits(a["asset"], a["operator"])}

    def _commit_cancel(self, a: Dict[str, Any]) -> Dict[str, Any]:
        self.facility.handle_commit_cancel(a["operator"], a["asset"], a["amount"])
        return {"committed": self.facility.get_committed_deposits(a["asset"], a["operator"])}

    def _commit_withdraw(self, a: Dict[str, Any]) -> Dict[str, Any]:
        withdrawn = self.facility.handle_commit_withdraw(
            a["operator"], a["asset"], a["period"], a["amount"], a["recipient"],
        )
        return {"withdrawn": withdrawn}

    def _borrow(self, a: Dict[str, Any]) -> Dict[str, Any]:
        self.facility.handle_borrow(a["operator"], a["asset"], a["amount"], a["recipient"])
        return {"borrowed": self.ledger.get_borrowed_amount(a["asset"], self.facility.address)}

    def _repay(self, a: Dict[str, Any]) -> Dict[str, Any]:
        credited = self.facility.handle_loan_repay(a["operator"], a["asset"], a["amount"], a["payer"])
        return {"credited": credited, "borrowed": self.ledger.get_borrowed_amount(a["asset"], self.facility.address)}

    def _default(self, a: Dict[str, Any]) -> Dict[str, Any]:
        self.facility.handle_loan_default(a["operator"], a["asset"], a["period"], a["amount"], a["payer"])
        return {"borrowed": self.ledger.get_borrowed_amount(a["asset"], self.facility.address)}

    def _caller(self, a: Dict[str, Any]) -> str:
        return a.get("caller", ADMIN_ACCOUNT)

    def _set_auction_parameters(self, a: Dict[str, Any]) -> Dict[str, Any]:
        self.admin.set_auction_parameters(self._caller(a), a["asset"], a["target"], a["tick_size"], a["min_price"])
        return {"auction_results": self._auction(a["asset"]).get_auction_results()}

    def _set_tick_step(self, a: Dict[str, Any]) -> Dict[str, Any]:
        self.admin.set_tick_step(self._caller(a), a["asset"], a["tick_step"])
        return {"tick_step": a["tick_step"]}

    def _set_auction_tracking_period(self, a: Dict[str, Any]) -> Dict[str, Any]:
        self.admin.set_auction_tracking_period(self._caller(a), a["asset"], a["days"])
        return {"days": a["days"]}

    def _enable_deposit_period(self, a: Dict[str, Any]) -> Dict[str, Any]:
        self.admin.enable_deposit_period(self._caller(a), a["asset"], a["period"])
        return {"periods": self._auction(a["asset"]).get_deposit_periods()}

    def _disable_deposit_period(self, a: Dict[str, Any]) -> Dict[str, Any]:
        self.admin.disable_deposit_period(self._caller(a), a["asset"], a["period"])
        return {"periods": self._auction(a["asset"]).get_deposit_periods()}

    def _enable_auction(self, a: Dict[str, Any]) -> Dict[str, Any]:
        engine = self._auction(a["asset"])
        self.admin.enable_auction(
            self._caller(a), a["asset"], a["target"], a["tick_size"], a["min_price"],
            a.get("tick_step", engine.get_tick_step()), a.get("tracking_period", len(engine.get_auction_results())),
        )
        return {"enabled": engine.is_enabled}

    def _disable_auction(self, a: Dict[str, Any]) -> Dict[str, Any]:
        self.admin.disable_auction(self._caller(a), a["asset"])
        return {"enabled": self._auction(a["asset"]).is_enabled}

    def _heartbeat(self, a: Dict[str, Any]) -> Dict[str, Any]:
        failures = self.heart.beat()
        return {"failures": [f.to_dict() for f in failures]}

    def apply(self, action: Dict[str, Any]) -> Any:
        """Apply one scenario step; protocol errors propagate."""
        name = action.get("action")
        handler = self._handlers.get(name or "")
        if handler is None:
            raise InvalidParamsError("Unknown scenario action: {!r}".format(name))
        try:
            return handler(action)
        except KeyError as e:
            raise InvalidParamsError("Scenario action {} missing field {}".format(name, e)) from e

    def run_scenario(
        self,
        actions: List[Dict[str, Any]],
        wal: Optional[WALWriter] = None,
    ) -> List[Dict[str, Any]]:
        """Apply steps in order. A rejected step is recorded and the run continues."""
        journal = ActionJournal(wal) if wal is not None else None
        outcomes = []  # type: List[Dict[str, Any]]
        for index, action in enumerate(actions):
            action_id = "{}-{}".format(index, uuid.uuid4().hex[:12])
            if journal is not None:
                journal.intent(action_id, action.get("action"), action)
            try:
                result = self.apply(action)
            except ProtocolError as e:
                logger.info("Scenario step %d (%s) rejected: %s", index, action.get("action"), e)
                outcome = {"index": index, "action": action.get("action"), "ok": False,
                           "error": type(e).__name__, "message": str(e)}
                if journal is not None:
                    journal.abort(action_id, e)
            else:
                outcome = {"index": index, "action": action.get("action"), "ok": True, "result": result}
                if journal is not None:
                    journal.result(action_id, result)
            outcomes.append(outcome)

        if journal is not None:
            journal.checkpoint(self.snapshot())
        return outcomes

    # ── Reporting ─────────────────────────────────────────────────────────────

    def snapshot(self) -> Dict[str, Any]:
        return {
            "now": self.clock.now(),
            "ledger": self.ledger.stats,
            "facility": self.facility.stats,
            "auctions": {asset: engine.stats for asset, engine in sorted(self.auctions.items())},
            "positions": self.positions.stats,
            "events": self.events.stats,
            "heartbeat": self.heart.stats,
        }
