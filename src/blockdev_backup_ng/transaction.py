"""Transaction log: one JSON record per stage of every device backup.

Logging is disabled until set_transaction_log() is given a path. Records
are appended as JSON lines so a log survives a crash mid-run.
"""

import json
import logging
import os
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_log_path: Path | None = None
_lock = threading.Lock()


def set_transaction_log(path: Path | str | None) -> None:
    """Set (or with None, disable) the transaction log file."""
    global _log_path
    if path is None:
        _log_path = None
        return
    _log_path = Path(path).expanduser()
    _log_path.parent.mkdir(parents=True, exist_ok=True)


def log_transaction(
    action: str,
    status: str,
    device: str | None = None,
    artifact: str | None = None,
    predecessor: str | None = None,
    size_bytes: int | None = None,
    duration_seconds: float | None = None,
    error: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """Append one record; failures to write are logged, never raised."""
    if _log_path is None:
        return

    record: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "pid": os.getpid(),
        "action": action,
        "status": status,
    }
    optional = {
        "device": device,
        "artifact": artifact,
        "predecessor": predecessor,
        "size_bytes": size_bytes,
        "duration_seconds": (
            round(duration_seconds, 3) if duration_seconds is not None else None
        ),
        "error": error,
        "details": details,
    }
    record.update({k: v for k, v in optional.items() if v is not None})

    try:
        with _lock, open(_log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record) + "\n")
    except OSError as e:
        logger.warning("Could not write transaction log %s: %s", _log_path, e)


def read_transaction_log(
    path: Path | str | None = None,
    limit: int | None = None,
    action_filter: str | None = None,
    status_filter: str | None = None,
) -> list[dict[str, Any]]:
    """Read records, oldest first, skipping lines that are not valid JSON."""
    path = Path(path) if path is not None else _log_path
    if path is None or not path.exists():
        return []

    records = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if action_filter and record.get("action") != action_filter:
                continue
            if status_filter and record.get("status") != status_filter:
                continue
            records.append(record)

    if limit is not None:
        records = records[-limit:]
    return records


class TransactionContext:
    """Log started/completed/failed records around a block of work."""

    def __init__(
        self,
        action: str,
        device: str | None = None,
        details: dict[str, Any] | None = None,
        **fields: Any,
    ) -> None:
        self.action = action
        self.device = device
        self.fields = fields
        self.details: dict[str, Any] = dict(details or {})
        self._start = 0.0

    def set_artifact(self, artifact) -> None:
        self.fields["artifact"] = str(artifact)

    def add_detail(self, key: str, value: Any) -> None:
        self.details[key] = value

    def __enter__(self) -> "TransactionContext":
        self._start = time.monotonic()
        log_transaction(
            self.action,
            "started",
            device=self.device,
            details=self.details or None,
            **self.fields,
        )
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> bool:
        status = "completed" if exc_type is None else "failed"
        log_transaction(
            self.action,
            status,
            device=self.device,
            duration_seconds=time.monotonic() - self._start,
            error=str(exc_value) if exc_value is not None else None,
            details=self.details or None,
            **self.fields,
        )
        return False
