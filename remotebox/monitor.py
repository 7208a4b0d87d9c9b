from __future__ import annotations

import errno
import fcntl
import json
import os
import shlex
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from remotebox.config import MONITOR_POLL_SECONDS, ProjectConfig
from remotebox.errors import UserFacingError
from remotebox.events import emit_event
from remotebox.io_utils import atomic_write_json, read_text_or_empty, tail_lines
from remotebox.paths import logs_dir, project_state_dir
from remotebox.project import Project
from remotebox.state import StateStore, VMState, format_timestamp, parse_timestamp, utc_now

MONITOR_COMMAND = "_idle-monitor"
OUTCOME_VM_GONE = "vm_gone"
OUTCOME_NOT_RUNNING = "not_running"
OUTCOME_DISABLED = "disabled"
OUTCOME_STOPPED = "stopped"
OUTCOME_WAITING = "waiting"
EXIT_OUTCOMES = frozenset({OUTCOME_VM_GONE, OUTCOME_NOT_RUNNING, OUTCOME_DISABLED, OUTCOME_STOPPED})


class MonitorError(UserFacingError):
    """Raised for idle-monitor lifecycle failures."""


@dataclass(frozen=True)
class MonitorLease:
    pid: int
    project_id: str
    state_dir: str
    project_dir: str
    started_at: str

    def as_dict(self) -> dict[str, object]:
        return {
            "pid": self.pid,
            "project_id": self.project_id,
            "state_dir": self.state_dir,
            "project_dir": self.project_dir,
            "started_at": self.started_at,
        }


def lease_path(state_dir: Path, project_id: str) -> Path:
    return project_state_dir(state_dir, project_id) / "monitor.json"


def _lock_path(state_dir: Path, project_id: str) -> Path:
    return project_state_dir(state_dir, project_id) / "monitor.lock"


def monitor_log_path(state_dir: Path, project_id: str) -> Path:
    return logs_dir(state_dir, project_id) / "monitor.log"


def read_lease(state_dir: Path, project_id: str) -> MonitorLease | None:
    raw = read_text_or_empty(lease_path(state_dir, project_id))
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    pid = payload.get("pid")
    fields = [payload.get(key) for key in ("project_id", "state_dir", "project_dir", "started_at")]
    if not isinstance(pid, int) or pid <= 0 or not all(isinstance(value, str) for value in fields):
        return None
    return MonitorLease(pid, *fields)  # type: ignore[arg-type]


def _pid_running(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _pid_cmdline(pid: int) -> str:
    if not _pid_running(pid):
        return ""
    try:
        proc = subprocess.run(
            ["ps", "-o", "command=", "-p", str(pid)],
            check=False,
            text=True,
            capture_output=True,
        )
    except OSError:
        return ""
    if proc.returncode != 0:
        return ""
    return (proc.stdout or "").strip()


def _is_monitor_pid(pid: int, project_dir: str) -> bool:
    cmd = _pid_cmdline(pid)
    if not cmd:
        return False
    try:
        parts = set(shlex.split(cmd))
    except ValueError:
        return MONITOR_COMMAND in cmd and project_dir in cmd
    return MONITOR_COMMAND in parts and project_dir in parts


def live_lease(state_dir: Path, project_id: str) -> MonitorLease | None:
    lease = read_lease(state_dir, project_id)
    if lease is None or not _pid_running(lease.pid):
        return None
    if not _is_monitor_pid(lease.pid, lease.project_dir):
        return None
    return lease


def _signal_pid(pid: int, sig: signal.Signals) -> None:
    try:
        os.killpg(os.getpgid(pid), sig)
    except ProcessLookupError:
        return
    except OSError:
        pass
    try:
        os.kill(pid, sig)
    except OSError:
        pass


def _remove_lease_if_owner(state_dir: Path, project_id: str, pid: int) -> None:
    path = lease_path(state_dir, project_id)
    lease = read_lease(state_dir, project_id)
    if lease is None or lease.pid == pid:
        path.unlink(missing_ok=True)


def _try_lock(path: Path) -> int | None:
    """Non-blocking exclusive flock; returns the held fd or None if contended."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as exc:
        os.close(fd)
        if exc.errno in (errno.EAGAIN, errno.EACCES):
            return None
        raise
    return fd


def _release_lock(fd: int) -> None:
    try:
        fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


def start_idle_monitor(
    state_dir: Path,
    project: Project,
    *,
    poll_seconds: int = MONITOR_POLL_SECONDS,
) -> int:
    """Spawn the idle monitor for a project unless one already holds its lock."""
    if poll_seconds <= 0:
        raise MonitorError("Error: idle monitor poll interval must be > 0")

    existing = live_lease(state_dir, project.project_id)
    if existing is not None:
        return existing.pid
    probe = _try_lock(_lock_path(state_dir, project.project_id))
    if probe is None:
        lease = read_lease(state_dir, project.project_id)
        return lease.pid if lease else 0
    _release_lock(probe)

    log_file = monitor_log_path(state_dir, project.project_id)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    log_handle = log_file.open("ab")
    cmd = [
        sys.executable,
        "-m",
        "remotebox.main",
        MONITOR_COMMAND,
        "--project-dir",
        str(project.path),
        "--state-dir",
        str(state_dir),
        "--poll-seconds",
        str(poll_seconds),
    ]
    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=log_handle,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    except FileNotFoundError as exc:
        raise MonitorError(f"Error: Could not find Python executable: {sys.executable}") from exc
    except OSError as exc:
        raise MonitorError(f"Error: Could not launch the idle monitor: {exc}") from exc
    finally:
        log_handle.close()

    time.sleep(0.15)
    returncode = proc.poll()
    if returncode is not None and returncode != 0:
        msg = [f"Error: idle monitor failed to start for {project.path}."]
        tail = tail_lines(log_file)
        if tail:
            msg.append(f"Recent monitor output ({log_file}):")
            msg.append(tail)
        raise MonitorError("\n".join(msg))
    emit_event(state_dir, project.project_id, event="monitor_spawned", actor="cli", details={"pid": proc.pid})
    return proc.pid


def stop_idle_monitor(state_dir: Path, project_id: str, *, timeout_seconds: int = 5) -> bool:
    """Terminate the project's monitor. A monitor never stops itself this way."""
    path = lease_path(state_dir, project_id)
    lease = read_lease(state_dir, project_id)
    if lease is None:
        path.unlink(missing_ok=True)
        return False
    if lease.pid == os.getpid():
        return False

    if _is_monitor_pid(lease.pid, lease.project_dir):
        _signal_pid(lease.pid, signal.SIGTERM)
        deadline = time.monotonic() + max(timeout_seconds, 0)
        while time.monotonic() < deadline:
            if not _pid_running(lease.pid):
                break
            time.sleep(0.1)
        if _pid_running(lease.pid):
            _signal_pid(lease.pid, signal.SIGKILL)
    _remove_lease_if_owner(state_dir, project_id, lease.pid)
    return True


class IdleMonitor:
    """Poll loop that stops a project's VM after its grace period of inactivity.

    ``controller`` is the session controller; only ``reconcile()``,
    ``stop(reason=...)`` and ``ledger.refresh()`` are used.
    """

    def __init__(
        self,
        store: StateStore,
        controller: Any,
        *,
        project_dir: Path,
        load_config: Callable[[], ProjectConfig],
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        poll_seconds: float = MONITOR_POLL_SECONDS,
    ):
        self.store = store
        self.controller = controller
        self.project_dir = project_dir
        self.load_config = load_config
        self.clock = clock
        self.sleep = sleep
        self.poll_seconds = poll_seconds

    def _log(self, message: str) -> None:
        print(f"{format_timestamp(self.clock())} {message}", flush=True)

    def _emit(self, event: str, reason: str, **details: object) -> None:
        emit_event(
            self.store.state_dir,
            self.store.project_id,
            event=event,
            actor="monitor",
            reason=reason,
            details=details or None,
        )

    def tick(self) -> str:
        vm = self.controller.reconcile()
        if vm.state == VMState.ABSENT:
            self._log("VM no longer exists; exiting.")
            return OUTCOME_VM_GONE
        if vm.state != VMState.RUNNING:
            self._log(f"VM is {vm.state.value}; exiting.")
            return OUTCOME_NOT_RUNNING

        config = self.load_config()
        if not config.lifecycle.idle_stop:
            self._log("idle_stop disabled in configuration; exiting.")
            return OUTCOME_DISABLED

        try:
            self.controller.ledger.refresh()
        except UserFacingError as exc:
            self._log(f"Could not refresh runs: {exc}")

        state = self.store.read()
        active = state.running_runs()
        if active:
            return OUTCOME_WAITING

        grace = config.lifecycle.grace_period_seconds
        last = state.idle.last_activity_at or state.vm.last_state_change_at
        if not last:
            return OUTCOME_WAITING
        idle_for = (self.clock() - parse_timestamp(last)).total_seconds()
        if idle_for < grace:
            return OUTCOME_WAITING

        self._log(f"Idle for {int(idle_for)}s (grace period {grace}s); stopping VM {vm.instance_id}.")
        self._emit("idle_stop", "grace_period_elapsed", idle_seconds=int(idle_for), grace_seconds=grace)
        self.controller.stop(reason="idle")
        return OUTCOME_STOPPED

    def run(self) -> str:
        state_dir = self.store.state_dir
        project_id = self.store.project_id
        lock_fd = _try_lock(_lock_path(state_dir, project_id))
        if lock_fd is None:
            self._log("Another idle monitor is active for this project; exiting.")
            return "duplicate"

        should_exit = False

        def _handle_signal(_sig: int, _frame: object) -> None:
            nonlocal should_exit
            should_exit = True

        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

        pid = os.getpid()
        atomic_write_json(
            lease_path(state_dir, project_id),
            MonitorLease(
                pid=pid,
                project_id=project_id,
                state_dir=str(state_dir),
                project_dir=str(self.project_dir),
                started_at=format_timestamp(self.clock()),
            ).as_dict(),
        )
        self._log(f"Idle monitor started (pid {pid}, poll {self.poll_seconds}s).")
        outcome = "signalled"
        try:
            while not should_exit:
                try:
                    result = self.tick()
                except UserFacingError as exc:
                    self._log(f"Check failed: {exc}")
                    result = OUTCOME_WAITING
                if result in EXIT_OUTCOMES:
                    outcome = result
                    break
                self.sleep(self.poll_seconds)
        finally:
            _remove_lease_if_owner(state_dir, project_id, pid)
            _release_lock(lock_fd)
            self._log(f"Idle monitor exiting ({outcome}).")
        return outcome
