from __future__ import annotations

import errno
import fcntl
import json
import os
import re
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from remotebox.config import LOCK_TIMEOUT_SECONDS
from remotebox.errors import StateCorrupted, StateNotFound, UserFacingError
from remotebox.io_utils import atomic_write_json, read_text_or_empty
from remotebox.paths import project_state_dir

STATE_VERSION = 1
RUN_ID_RE = re.compile(r"^[0-9a-f]{8}$")
_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

T = TypeVar("T")


class VMState(str, Enum):
    ABSENT = "absent"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


TRANSITIONS: dict[VMState, frozenset[VMState]] = {
    VMState.ABSENT: frozenset({VMState.PROVISIONING}),
    VMState.PROVISIONING: frozenset({VMState.RUNNING, VMState.STOPPING, VMState.TERMINATING}),
    VMState.RUNNING: frozenset({VMState.STOPPING, VMState.TERMINATING}),
    VMState.STOPPING: frozenset({VMState.STOPPED, VMState.TERMINATING}),
    VMState.STOPPED: frozenset({VMState.PROVISIONING, VMState.TERMINATING}),
    VMState.TERMINATING: frozenset({VMState.TERMINATED}),
    VMState.TERMINATED: frozenset({VMState.PROVISIONING}),
}


class InvalidTransition(RuntimeError):
    """Raised when a VM record is asked to move along an edge not in the graph."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def transition_path(current: VMState, target: VMState) -> list[VMState]:
    """Shortest walk through the transition graph, excluding ``current``."""
    if current == target:
        return []
    previous: dict[VMState, VMState] = {}
    queue = deque([current])
    while queue:
        node = queue.popleft()
        for nxt in sorted(TRANSITIONS[node], key=lambda s: s.value):
            if nxt in previous or nxt == current:
                continue
            previous[nxt] = node
            if nxt == target:
                path = [nxt]
                while previous[path[-1]] != current:
                    path.append(previous[path[-1]])
                return list(reversed(path))
            queue.append(nxt)
    raise InvalidTransition(f"no transition path from {current.value} to {target.value}")


@dataclass
class VMRecord:
    instance_id: str = ""
    state: VMState = VMState.ABSENT
    public_ip: str = ""
    instance_type: str = ""
    region: str = ""
    availability_zone: str = ""
    created_at: str = ""
    last_state_change_at: str = ""
    setup_hash: str = ""

    def transition(self, new_state: VMState, now: datetime, *, instance_id: str | None = None) -> None:
        """Move along one edge of the graph.

        Leaving ABSENT or TERMINATED requires the new instance id in the same
        call so the record never holds a live state without an id.
        """
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"invalid VM transition {self.state.value} -> {new_state.value}")
        if self.state in (VMState.ABSENT, VMState.TERMINATED):
            if not instance_id:
                raise InvalidTransition("an instance id is required to leave the absent state")
            self.instance_id = instance_id
            self.created_at = format_timestamp(now)
            self.setup_hash = ""
        elif instance_id:
            self.instance_id = instance_id
        self.state = new_state
        self.last_state_change_at = format_timestamp(now)

    def move_to(self, target: VMState, now: datetime) -> list[VMState]:
        path = transition_path(self.state, target)
        for step in path:
            self.transition(step, now)
        return path

    def reset(self) -> None:
        for name, value in vars(VMRecord()).items():
            setattr(self, name, value)

    def as_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "state": self.state.value,
            "public_ip": self.public_ip,
            "instance_type": self.instance_type,
            "region": self.region,
            "availability_zone": self.availability_zone,
            "created_at": self.created_at,
            "last_state_change_at": self.last_state_change_at,
            "setup_hash": self.setup_hash,
        }


@dataclass
class RunRecord:
    run_id: str
    command: str
    work_dir: str
    started_at: str
    log_path: str
    ended_at: str | None = None
    exit_code: int | None = None
    remote_pid: int | None = None
    instance_id: str = ""

    @property
    def status(self) -> str:
        if self.ended_at is None:
            return "running"
        if self.exit_code is None:
            return "lost"
        return "finished"

    def as_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "command": self.command,
            "work_dir": self.work_dir,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "exit_code": self.exit_code,
            "log_path": self.log_path,
            "remote_pid": self.remote_pid,
            "instance_id": self.instance_id,
        }


@dataclass
class IdleState:
    last_activity_at: str = ""
    grace_period_seconds: int = 0
    idle_stop_enabled: bool = False

    def touch(self, now: datetime) -> None:
        self.last_activity_at = format_timestamp(now)

    def as_dict(self) -> dict[str, Any]:
        return {
            "last_activity_at": self.last_activity_at,
            "grace_period_seconds": self.grace_period_seconds,
            "idle_stop_enabled": self.idle_stop_enabled,
        }


@dataclass
class ProjectState:
    vm: VMRecord = field(default_factory=VMRecord)
    runs: list[RunRecord] = field(default_factory=list)
    idle: IdleState = field(default_factory=IdleState)

    def find_run(self, run_id: str) -> RunRecord | None:
        for run in self.runs:
            if run.run_id == run_id:
                return run
        return None

    def running_runs(self) -> list[RunRecord]:
        return [run for run in self.runs if run.status == "running"]

    def newest_runs(self) -> list[RunRecord]:
        """Most recent first; insertion order breaks same-second ties."""
        indexed = list(enumerate(self.runs))
        indexed.sort(key=lambda pair: (pair[1].started_at, pair[0]), reverse=True)
        return [run for _, run in indexed]

    def as_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "vm": self.vm.as_dict(),
            "runs": [run.as_dict() for run in self.runs],
            "idle": self.idle.as_dict(),
        }


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ValueError(message)


def _check_timestamp(value: object, label: str, *, optional: bool = True) -> None:
    if value is None and optional:
        return
    _require(isinstance(value, str), f"{label} must be a string")
    if value == "" and optional:
        return
    try:
        parse_timestamp(value)  # type: ignore[arg-type]
    except ValueError as exc:
        raise ValueError(f"{label} is not a valid timestamp: {value!r}") from exc


def _optional_int(value: object, label: str) -> int | None:
    if value is None:
        return None
    _require(isinstance(value, int) and not isinstance(value, bool), f"{label} must be an integer or null")
    return value  # type: ignore[return-value]


def _vm_from_dict(raw: object) -> VMRecord:
    _require(isinstance(raw, dict), "vm must be an object")
    assert isinstance(raw, dict)
    strings = (
        "instance_id",
        "public_ip",
        "instance_type",
        "region",
        "availability_zone",
        "setup_hash",
    )
    for key in strings:
        _require(isinstance(raw.get(key, ""), str), f"vm.{key} must be a string")
    try:
        state = VMState(raw.get("state", ""))
    except ValueError as exc:
        raise ValueError(f"vm.state has unknown value {raw.get('state')!r}") from exc
    _check_timestamp(raw.get("created_at", ""), "vm.created_at")
    _check_timestamp(raw.get("last_state_change_at", ""), "vm.last_state_change_at")
    record = VMRecord(
        instance_id=raw.get("instance_id", ""),
        state=state,
        public_ip=raw.get("public_ip", ""),
        instance_type=raw.get("instance_type", ""),
        region=raw.get("region", ""),
        availability_zone=raw.get("availability_zone", ""),
        created_at=raw.get("created_at", ""),
        last_state_change_at=raw.get("last_state_change_at", ""),
        setup_hash=raw.get("setup_hash", ""),
    )
    _require(
        (record.instance_id == "") == (record.state == VMState.ABSENT),
        "vm.instance_id must be empty exactly when vm.state is absent",
    )
    return record


def _run_from_dict(raw: object, index: int) -> RunRecord:
    label = f"runs[{index}]"
    _require(isinstance(raw, dict), f"{label} must be an object")
    assert isinstance(raw, dict)
    run_id = raw.get("run_id")
    _require(isinstance(run_id, str) and bool(RUN_ID_RE.match(run_id)), f"{label}.run_id is invalid")
    for key in ("command", "work_dir", "log_path"):
        _require(isinstance(raw.get(key), str), f"{label}.{key} must be a string")
    _require(isinstance(raw.get("instance_id", ""), str), f"{label}.instance_id must be a string")
    _check_timestamp(raw.get("started_at"), f"{label}.started_at", optional=False)
    _check_timestamp(raw.get("ended_at"), f"{label}.ended_at")
    return RunRecord(
        run_id=run_id,  # type: ignore[arg-type]
        command=raw["command"],
        work_dir=raw["work_dir"],
        started_at=raw["started_at"],
        log_path=raw["log_path"],
        ended_at=raw.get("ended_at") or None,
        exit_code=_optional_int(raw.get("exit_code"), f"{label}.exit_code"),
        remote_pid=_optional_int(raw.get("remote_pid"), f"{label}.remote_pid"),
        instance_id=raw.get("instance_id", ""),
    )


def _idle_from_dict(raw: object) -> IdleState:
    _require(isinstance(raw, dict), "idle must be an object")
    assert isinstance(raw, dict)
    _check_timestamp(raw.get("last_activity_at", ""), "idle.last_activity_at")
    grace = raw.get("grace_period_seconds", 0)
    _require(isinstance(grace, int) and not isinstance(grace, bool) and grace >= 0,
             "idle.grace_period_seconds must be a non-negative integer")
    enabled = raw.get("idle_stop_enabled", False)
    _require(isinstance(enabled, bool), "idle.idle_stop_enabled must be a boolean")
    return IdleState(
        last_activity_at=raw.get("last_activity_at", ""),
        grace_period_seconds=grace,
        idle_stop_enabled=enabled,
    )


def parse_state(text: str) -> ProjectState:
    """Parse and validate a serialized project state; raises ValueError."""
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"not valid JSON ({exc.msg} at line {exc.lineno})") from exc
    _require(isinstance(payload, dict), "top level must be an object")
    _require(payload.get("version") == STATE_VERSION, f"unsupported version {payload.get('version')!r}")
    runs_raw = payload.get("runs", [])
    _require(isinstance(runs_raw, list), "runs must be a list")
    runs = [_run_from_dict(item, index) for index, item in enumerate(runs_raw)]
    seen: set[str] = set()
    for run in runs:
        _require(run.run_id not in seen, f"duplicate run id {run.run_id}")
        seen.add(run.run_id)
    return ProjectState(
        vm=_vm_from_dict(payload.get("vm")),
        runs=runs,
        idle=_idle_from_dict(payload.get("idle", {})),
    )


class StateStore:
    """Per-project state file guarded by an exclusive flock on a sibling file.

    The lock is held only for the duration of one ``locked()`` block and is
    not reentrant; callers never nest blocks.
    """

    def __init__(
        self,
        state_dir: Path,
        project_id: str,
        *,
        lock_timeout_seconds: float = LOCK_TIMEOUT_SECONDS,
    ):
        self.state_dir = state_dir
        self.project_id = project_id
        self.lock_timeout_seconds = lock_timeout_seconds

    @property
    def project_dir(self) -> Path:
        return project_state_dir(self.state_dir, self.project_id)

    @property
    def path(self) -> Path:
        return self.project_dir / "state.json"

    @property
    def lock_path(self) -> Path:
        return self.project_dir / "state.lock"

    def exists(self) -> bool:
        return self.path.exists()

    @contextmanager
    def locked(self) -> Iterator[None]:
        self.project_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            deadline = time.monotonic() + max(self.lock_timeout_seconds, 0)
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except OSError as exc:
                    if exc.errno not in (errno.EAGAIN, errno.EACCES):
                        raise
                    if time.monotonic() >= deadline:
                        raise UserFacingError(
                            f"Error: Timed out waiting for the state lock: {self.lock_path}\n"
                            "Another remotebox command is holding it. Retry the command."
                        ) from exc
                    time.sleep(0.05)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def with_lock(self, fn: Callable[[], T]) -> T:
        with self.locked():
            return fn()

    def validate(self) -> ProjectState:
        raw = read_text_or_empty(self.path)
        if not raw and not self.path.exists():
            raise StateNotFound(str(self.path))
        try:
            return parse_state(raw)
        except ValueError as exc:
            raise StateCorrupted(
                f"Error: State file is corrupted: {self.path}\n"
                f"  reason: {exc}\n"
                "Inspect or move the file aside, then rerun the command. "
                "remotebox does not repair it automatically."
            ) from exc

    def load(self) -> ProjectState:
        return self.validate()

    def save(self, state: ProjectState) -> None:
        atomic_write_json(self.path, state.as_dict())

    def load_or_empty(self) -> ProjectState:
        try:
            return self.load()
        except StateNotFound:
            return ProjectState()

    def read(self) -> ProjectState:
        with self.locked():
            return self.load_or_empty()

    def update(self, fn: Callable[[ProjectState], T]) -> T:
        with self.locked():
            state = self.load_or_empty()
            result = fn(state)
            self.save(state)
            return result

    def update_if_changed(self, fn: Callable[[ProjectState], T]) -> T:
        """Like ``update`` but leaves the file alone when ``fn`` changed nothing."""
        with self.locked():
            state = self.load_or_empty()
            before = state.as_dict()
            result = fn(state)
            if state.as_dict() != before:
                self.save(state)
            return result
