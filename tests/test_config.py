"""Tests for deployment config loading, validation and wiring."""

import json
from pathlib import Path
from typing import Any, Dict

import pytest

from cdauction.admin import ROLE_EMISSION_MANAGER
from cdauction.config import ConfigError, load_config, validate_config
from cdauction.constants import DEFAULT_AUCTION_TRACKING_PERIOD, DEFAULT_TICK_STEP
from cdauction.deployment import Deployment
from cdauction.errors import InvalidParamsError, UnauthorizedError

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config" / "deployment.json"


def _write(tmp_path: Path, raw: Dict[str, Any]) -> Path:
    path = tmp_path / "deployment.json"
    path.write_text(json.dumps(raw))
    return path


def test_load_valid_config(tmp_path: Path, raw_config: Dict[str, Any]) -> None:
    """Defaults are filled in on load."""
    cfg = load_config(str(_write(tmp_path, raw_config)))
    assert cfg["treasury"] == "treasury"
    assert cfg["assets"][0]["symbol"] == "USDS"
    assert cfg["assets"][0]["minimum_deposit"] == 0
    assert cfg["auctions"][0]["tracking_period"] == DEFAULT_AUCTION_TRACKING_PERIOD
    assert cfg["auctions"][0]["tick_step"] == 11000
    assert cfg["auctions"][0]["enabled"] is True


def test_repo_config_is_valid() -> None:
    """The shipped deployment file loads."""
    cfg = load_config(str(REPO_CONFIG))
    assert cfg["facility"]["name"] == "cdf"
    assert cfg["auctions"][0]["tick_step"] == DEFAULT_TICK_STEP


def test_config_path_from_env(tmp_path: Path, raw_config: Dict[str, Any], monkeypatch: pytest.MonkeyPatch) -> None:
    """CDAUCTION_CONFIG selects the deployment file."""
    monkeypatch.setenv("CDAUCTION_CONFIG", str(_write(tmp_path, raw_config)))
    assert load_config()["output_token"] == "OHM"


def test_missing_file(tmp_path: Path) -> None:
    """A missing file is a config error."""
    with pytest.raises(ConfigError, match="not found"):
        load_config(str(tmp_path / "nope.json"))


def test_invalid_json(tmp_path: Path) -> None:
    """Malformed JSON is a config error."""
    path = tmp_path / "deployment.json"
    path.write_text("{")
    with pytest.raises(ConfigError, match="not valid JSON"):
        load_config(str(path))


def test_bad_facility_name(raw_config: Dict[str, Any]) -> None:
    """Facility names follow the operator name rules."""
    raw_config["facility"]["name"] = "CDF1"
    with pytest.raises(ConfigError, match="3 lowercase"):
        validate_config(raw_config)
    raw_config["facility"]["name"] = "cdf\n"
    with pytest.raises(ConfigError, match="3 lowercase"):
        validate_config(raw_config)


def test_tick_step_below_one_hundred_percent(raw_config: Dict[str, Any]) -> None:
    """Tick steps below 100% are rejected."""
    raw_config["auctions"][0]["tick_step"] = 9000
    with pytest.raises(ConfigError, match="tick_step"):
        validate_config(raw_config)


def test_auction_for_unknown_asset(raw_config: Dict[str, Any]) -> None:
    """Auctions must reference a configured asset."""
    raw_config["auctions"][0]["asset"] = "DAI"
    with pytest.raises(ConfigError, match="unknown asset"):
        validate_config(raw_config)


def test_auction_period_not_offered(raw_config: Dict[str, Any]) -> None:
    """Auction periods must be offered by the facility."""
    raw_config["auctions"][0]["periods"] = [6]
    with pytest.raises(ConfigError, match="not offered"):
        validate_config(raw_config)


def test_non_integer_amount(raw_config: Dict[str, Any]) -> None:
    """Amounts are integers in the smallest unit."""
    raw_config["assets"][0]["deposit_cap"] = 10.5
    with pytest.raises(ConfigError, match="must be an integer"):
        validate_config(raw_config)


# ── Wiring ────────────────────────────────────────────────────────────────────

def test_deployment_wiring(deployment: Deployment) -> None:
    """Config brings up asset periods, facility and auction."""
    facility = deployment.facility
    assert facility.is_enabled
    assert facility.is_authorized_operator("lender")
    assert [ap.period_months for ap in deployment.ledger.get_asset_periods(facility.address)] == [1, 3]
    engine = deployment.auctions["USDS"]
    assert engine.is_enabled
    assert engine.get_deposit_periods() == [3]


def test_admin_requires_role(deployment: Deployment) -> None:
    """Admin calls from accounts without the role are rejected."""
    with pytest.raises(UnauthorizedError, match=ROLE_EMISSION_MANAGER):
        deployment.admin.set_auction_parameters("mallory", "USDS", 1, 1, 1)

    deployment.roles.grant_role(ROLE_EMISSION_MANAGER, "ops")
    deployment.admin.set_auction_parameters("ops", "USDS", 2000, 100, 10 ** 9)
    assert deployment.auctions["USDS"].get_auction_parameters().target == 2000


def test_unknown_scenario_action(deployment: Deployment) -> None:
    """Unknown actions and missing fields are invalid parameters."""
    with pytest.raises(InvalidParamsError, match="Unknown scenario action"):
        deployment.apply({"action": "mint_money"})
    with pytest.raises(InvalidParamsError, match="missing field"):
        deployment.apply({"action": "bid", "asset": "USDS"})
