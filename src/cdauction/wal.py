"""Action journal — append-only JSONL write-ahead log, fsync per record.

Every scenario step is journaled before it is applied:

    ACTION_INTENT   {action_id, action, params}
    ACTION_RESULT   {action_id, result}
    ACTION_ABORTED  {action_id, error, message}
    STATE_CHECKPOINT  deployment snapshot at the end of a run

Lines are canonical JSON (sorted keys, ASCII, UTC timestamps). An intent
left without a result or abort means the process died mid-action; replay
reports it as an orphan.

A failed write raises WALSyncError; the caller must stop applying actions.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from cdauction.db import insert_event, insert_orphan

logger = logging.getLogger(__name__)

VALID_RECORD_TYPES = frozenset({
    "ACTION_INTENT",
    "ACTION_RESULT",
    "ACTION_ABORTED",
    "STATE_CHECKPOINT",
})

_RESOLVING_TYPES = ("ACTION_RESULT", "ACTION_ABORTED")


class WALSyncError(Exception):
    """Raised when the journal cannot be written, read back or replayed."""


def _canonical(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, ensure_ascii=True)


def record_hash(record: Dict[str, Any]) -> bytes:
    """SHA-256 over the identifying fields; the replay dedup key."""
    body = {k: record.get(k) for k in ("event_id", "record_type", "payload")}
    return hashlib.sha256(_canonical(body).encode("utf-8")).digest()


class WALWriter:
    """Appends records to the journal file."""

    def __init__(self, wal_path: Any) -> None:
        self.path = Path(wal_path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fd = None  # type: Optional[int]
        self.records_written = 0

    def open(self) -> None:
        self._fd = os.open(str(self.path), os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o640)

    def close(self) -> None:
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None

    def __enter__(self) -> WALWriter:
        self.open()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def write(self, record_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Append one record and fsync; returns the record as written."""
        if record_type not in VALID_RECORD_TYPES:
            raise ValueError("Invalid WAL record type: {}".format(record_type))
        if self._fd is None:
            raise WALSyncError("WAL not opened, call open() first")

        record = {
            "event_id": str(uuid.uuid4()),
            "record_type": record_type,
            "ts_utc": datetime.now(timezone.utc).isoformat(),
            "payload": payload,
        }  # type: Dict[str, Any]
        try:
            line = _canonical(record) + "\n"
        except (TypeError, ValueError) as e:
            raise WALSyncError("Unserializable {} payload: {}".format(record_type, e)) from e

        try:
            os.write(self._fd, line.encode("utf-8"))
            os.fsync(self._fd)
        except OSError as e:
            raise WALSyncError("WAL fsync failed: {}".format(e)) from e

        self.records_written += 1
        logger.debug("WAL %s %s", record_type, record["event_id"])
        return record


class ActionJournal:
    """Intent / result / abort bookkeeping for scenario steps."""

    def __init__(self, writer: WALWriter) -> None:
        self.writer = writer

    def intent(self, action_id: str, action: Optional[str], params: Dict[str, Any]) -> None:
        self.writer.write("ACTION_INTENT", {"action_id": action_id, "action": action, "params": params})

    def result(self, action_id: str, result: Any) -> None:
        self.writer.write("ACTION_RESULT", {"action_id": action_id, "result": result})

    def abort(self, action_id: str, error: BaseException) -> None:
        self.writer.write(
            "ACTION_ABORTED",
            {"action_id": action_id, "error": type(error).__name__, "message": str(error)},
        )

    def checkpoint(self, snapshot: Dict[str, Any]) -> None:
        self.writer.write("STATE_CHECKPOINT", snapshot)


class WALReader:
    """Reads the journal back in file order."""

    def __init__(self, wal_path: Any) -> None:
        self.path = Path(wal_path)

    def read_all(self) -> List[Dict[str, Any]]:
        if not self.path.is_file():
            return []

        records = []  # type: List[Dict[str, Any]]
        with open(self.path, "r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.error("WAL parse error at line %d: %s", line_num, e)
                    raise WALSyncError("WAL corrupted at line {}: {}".format(line_num, e)) from e
                records.append(record)
        return records


def find_orphan_intents(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """ACTION_INTENT records never resolved by a result or abort."""
    resolved = set()  # type: Set[str]
    for rec in records:
        if rec.get("record_type") in _RESOLVING_TYPES:
            resolved.add(rec.get("payload", {}).get("action_id", ""))
    return [
        rec for rec in records
        if rec.get("record_type") == "ACTION_INTENT"
        and rec.get("payload", {}).get("action_id", rec.get("event_id")) not in resolved
    ]


async def replay_wal(wal_path: Any, pool: Any) -> Dict[str, int]:
    """Load the journal into event_log and flag orphan intents.

    Safe to run repeatedly: records already present (same hash) are skipped.
    Returns {"inserted", "skipped", "orphans"}.
    """
    records = WALReader(wal_path).read_all()
    stats = {"inserted": 0, "skipped": 0, "orphans": 0}
    if not records:
        logger.info("WAL replay: journal %s is empty", wal_path)
        return stats

    for rec in records:
        payload = rec.get("payload", {})
        correlation_ids = [rec["event_id"]]
        if payload.get("action_id"):
            correlation_ids.append(payload["action_id"])
        try:
            inserted = await insert_event(
                pool,
                uuid.UUID(rec["event_id"]),
                datetime.fromisoformat(rec["ts_utc"]),
                rec["record_type"],
                correlation_ids,
                payload,
                record_hash(rec),
            )
        except Exception as e:
            raise WALSyncError("WAL replay DB insert failed for event {}: {}".format(rec["event_id"], e)) from e
        stats["inserted" if inserted else "skipped"] += 1

    for intent in find_orphan_intents(records):
        payload = intent.get("payload", {})
        action_id = payload.get("action_id", intent["event_id"])
        logger.warning("WAL orphan: intent %s (%s) has no result", action_id, payload.get("action", "?"))
        try:
            await insert_orphan(pool, action_id, payload.get("action") or "UNKNOWN", payload)
        except Exception as e:
            raise WALSyncError("WAL orphan record failed for action {}: {}".format(action_id, e)) from e
        stats["orphans"] += 1

    logger.info(
        "WAL replay complete: inserted=%d skipped=%d orphans=%d",
        stats["inserted"], stats["skipped"], stats["orphans"],
    )
    return stats
