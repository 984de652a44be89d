"""Tests for the heartbeat runner and the Telegram notifier."""

from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from cdauction.alerts import TelegramNotifier
from cdauction.heart import Heartbeat, TaskFailure


def _ok() -> Optional[TaskFailure]:
    return None


def _raises() -> Optional[TaskFailure]:
    raise RuntimeError("task exploded")


# ── Heartbeat ─────────────────────────────────────────────────────────────────

def test_beat_runs_all_tasks() -> None:
    """A raising task is reported and the rest still run."""
    ran = []  # type: List[str]
    heart = Heartbeat()
    heart.add_task("first", _raises)
    heart.add_task("second", lambda: ran.append("second"))
    heart.add_task("third", lambda: TaskFailure("third", ValueError("soft")))

    failures = heart.beat()

    assert ran == ["second"]
    assert [f.task for f in failures] == ["first", "third"]
    assert "RuntimeError: task exploded" in failures[0].message
    assert heart.stats == {"tasks": 3, "beats": 1, "failures": 2}


def test_duplicate_task_rejected() -> None:
    """Task names are unique."""
    heart = Heartbeat()
    heart.add_task("sweep", _ok)
    with pytest.raises(ValueError, match="already registered"):
        heart.add_task("sweep", _ok)
    heart.remove_task("sweep")
    assert heart.tasks == []


@pytest.mark.asyncio
async def test_run_forwards_failures_to_notifier() -> None:
    """Failures are sent as alerts, deduped per task."""
    notifier = MagicMock()
    notifier.send_alert = AsyncMock(return_value=True)
    heart = Heartbeat(notifier)
    heart.add_task("sweep", _raises)

    failures = await heart.run(beats=2, interval=0)

    assert failures == 2
    assert notifier.send_alert.await_count == 2
    assert notifier.send_alert.call_args.kwargs["dedup_key"] == "sweep"


def test_heartbeat_drives_facility(deployment) -> None:
    """The deployment registers the facility yield sweep."""
    vault = deployment.vaults.get_vault("USDS")
    deployment.tokens.mint("USDS", "alice", 1000)
    deployment.auctions["USDS"].bid("alice", 3, 550)
    deployment.tokens.mint("USDS", vault.address, 100)

    assert deployment.heart.tasks == ["cdf.execute"]
    assert deployment.heart.beat() == []
    assert deployment.tokens.balance_of("USDS", "treasury") == 98


# ── Telegram notifier ─────────────────────────────────────────────────────────

def _session(raise_error: Optional[Exception] = None) -> MagicMock:
    resp = MagicMock()
    resp.raise_for_status = MagicMock(side_effect=raise_error)
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=resp)
    ctx.__aexit__ = AsyncMock(return_value=False)
    session = MagicMock()
    session.post = MagicMock(return_value=ctx)
    return session


@pytest.mark.asyncio
async def test_alert_disabled_without_token(monkeypatch: pytest.MonkeyPatch) -> None:
    """Without a token the alert is only logged."""
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
    monkeypatch.delenv("TELEGRAM_CHAT_ID", raising=False)
    notifier = TelegramNotifier()
    assert not notifier.enabled
    assert await notifier.send_alert("sweep failed") is True


@pytest.mark.asyncio
async def test_alert_posts_to_bot_api() -> None:
    """Enabled alerts post sendMessage with the chat id."""
    session = _session()
    notifier = TelegramNotifier("123:abc", "42", session=session)

    assert await notifier.send_alert("sweep failed") is True

    url = session.post.call_args.args[0]
    assert url.endswith("/bot123:abc/sendMessage")
    assert session.post.call_args.kwargs["json"] == {"chat_id": "42", "text": "sweep failed"}
    assert notifier.sent == 1


@pytest.mark.asyncio
async def test_alert_dedup_window() -> None:
    """The same key is suppressed inside the dedup window."""
    now = [1000.0]
    session = _session()
    notifier = TelegramNotifier("123:abc", "42", session=session, time_fn=lambda: now[0])

    assert await notifier.send_alert("a", dedup_key="sweep") is True
    assert await notifier.send_alert("a", dedup_key="sweep") is False
    now[0] += 301
    assert await notifier.send_alert("a", dedup_key="sweep") is True
    assert notifier.deduped == 1
    assert session.post.call_count == 2


@pytest.mark.asyncio
async def test_alert_http_error_returns_false() -> None:
    """A failed post is logged and reported, not raised."""
    session = _session(aiohttp.ClientError("502"))
    notifier = TelegramNotifier("123:abc", "42", session=session)
    assert await notifier.send_alert("sweep failed") is False
    assert notifier.sent == 0
