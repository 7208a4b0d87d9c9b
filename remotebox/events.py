from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from remotebox.paths import logs_dir

_EVENT_LOG_MAX_BYTES_ENV = "REMOTEBOX_EVENT_LOG_MAX_BYTES"
_DEFAULT_EVENT_LOG_MAX_BYTES = 5 * 1024 * 1024
_EVENT_LOG_FILE = "events.jsonl"
_EVENT_LOG_ROTATED_FILE = "events.jsonl.1"


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _max_log_size_bytes() -> int:
    raw = os.getenv(_EVENT_LOG_MAX_BYTES_ENV)
    if raw is None:
        return _DEFAULT_EVENT_LOG_MAX_BYTES
    try:
        value = int(raw)
    except ValueError:
        return _DEFAULT_EVENT_LOG_MAX_BYTES
    if value <= 0:
        return _DEFAULT_EVENT_LOG_MAX_BYTES
    return value


def event_log_path(state_dir: Path, project_id: str) -> Path:
    return logs_dir(state_dir, project_id) / _EVENT_LOG_FILE


def _maybe_rotate(path: Path, rotated: Path) -> None:
    if not path.exists():
        return
    if path.stat().st_size < _max_log_size_bytes():
        return
    rotated.unlink(missing_ok=True)
    path.replace(rotated)


def emit_event(
    state_dir: Path,
    project_id: str,
    *,
    event: str,
    actor: str,
    reason: str = "",
    details: Mapping[str, Any] | None = None,
) -> None:
    """Append a best-effort lifecycle event to the project's JSONL log."""
    try:
        path = event_log_path(state_dir, project_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        _maybe_rotate(path, path.with_name(_EVENT_LOG_ROTATED_FILE))

        payload: dict[str, Any] = {
            "timestamp": _timestamp(),
            "project": project_id,
            "event": event,
            "actor": actor,
        }
        if reason:
            payload["reason"] = reason
        if details:
            payload["details"] = dict(details)
        encoded = (json.dumps(payload, sort_keys=True, separators=(",", ":")) + "\n").encode("utf-8")

        fd = os.open(path, os.O_APPEND | os.O_CREAT | os.O_WRONLY, 0o600)
        try:
            os.write(fd, encoded)
        finally:
            os.close(fd)
    except OSError:
        # Diagnostics only; never interrupts lifecycle work.
        return


def read_events(state_dir: Path, project_id: str) -> list[dict[str, Any]]:
    path = event_log_path(state_dir, project_id)
    events: list[dict[str, Any]] = []
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return events
    for line in lines:
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            events.append(payload)
    return events
