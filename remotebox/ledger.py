from __future__ import annotations

import os
import secrets
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Callable

from remotebox.errors import RunNotFound, UserFacingError
from remotebox.events import emit_event
from remotebox.io_utils import atomic_write_bytes
from remotebox.paths import run_logs_dir
from remotebox.remote import RemoteExecutor
from remotebox.state import ProjectState, RunRecord, StateStore, VMState, format_timestamp, utc_now

DEFAULT_HISTORY_LIMIT = 10
DEFAULT_ATTACH_POLL_SECONDS = 0.5


class KillOutcome(str, Enum):
    KILLED = "killed"
    ALREADY_FINISHED = "already_finished"


@dataclass(frozen=True)
class AttachResult:
    run_id: str
    finished: bool
    exit_code: int | None
    bytes_streamed: int


@dataclass(frozen=True)
class LedgerStatus:
    active: list[RunRecord] = field(default_factory=list)
    recent: list[RunRecord] = field(default_factory=list)


def new_run_id(existing: set[str]) -> str:
    while True:
        run_id = secrets.token_hex(4)
        if run_id not in existing:
            return run_id


class RunLedger:
    """Detached command executions for one project.

    The state lock only guards run metadata; remote processes, log reads and
    signals all happen outside it, so runs never serialize each other.
    """

    def __init__(
        self,
        store: StateStore,
        executor_factory: Callable[[], RemoteExecutor],
        *,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        poll_seconds: float = DEFAULT_ATTACH_POLL_SECONDS,
        kill_wait_seconds: float = 3.0,
    ):
        self.store = store
        self._executor_factory = executor_factory
        self._executor: RemoteExecutor | None = None
        self.clock = clock
        self.sleep = sleep
        self.poll_seconds = poll_seconds
        self.kill_wait_seconds = kill_wait_seconds

    def executor(self) -> RemoteExecutor:
        if self._executor is None:
            self._executor = self._executor_factory()
        return self._executor

    def forget_executor(self) -> None:
        """Drop the cached connection; the VM address may change across restarts."""
        self._executor = None

    def cache_path(self, run_id: str) -> Path:
        return run_logs_dir(self.store.state_dir, self.store.project_id) / f"{run_id}.log"

    def _emit(self, event: str, run_id: str, **details: object) -> None:
        emit_event(
            self.store.state_dir,
            self.store.project_id,
            event=event,
            actor="ledger",
            details={"run_id": run_id, **details},
        )

    def _get(self, run_id: str) -> RunRecord:
        record = self.store.read().find_run(run_id)
        if record is None:
            raise RunNotFound(f"Error: No run with id '{run_id}' in this project's history.")
        return record

    def _finish(self, run_id: str, exit_code: int | None) -> bool:
        """Record completion once; returns False if another caller already did."""
        now = self.clock()

        def _apply(state: ProjectState) -> bool:
            record = state.find_run(run_id)
            if record is None or record.ended_at is not None:
                return False
            record.ended_at = format_timestamp(now)
            record.exit_code = exit_code
            state.idle.touch(now)
            return True

        changed = self.store.update(_apply)
        if changed:
            self._emit("run_finished" if exit_code is not None else "run_lost", run_id, exit_code=exit_code)
        return changed

    def _save_log(self, record: RunRecord, executor: RemoteExecutor) -> None:
        atomic_write_bytes(self.cache_path(record.run_id), executor.read_all(record.log_path))

    def _complete(self, record: RunRecord, executor: RemoteExecutor, exit_code: int | None) -> bool:
        """Copy the log off the VM, then record completion."""
        self._save_log(record, executor)
        return self._finish(record.run_id, exit_code)

    def _on_current_vm(self, record: RunRecord) -> bool:
        vm = self.store.read().vm
        if vm.state != VMState.RUNNING or not record.instance_id:
            return False
        return vm.instance_id == record.instance_id

    def start_run(self, command: str, work_dir: str) -> str:
        if not command.strip():
            raise UserFacingError("Error: No command given.")
        executor = self.executor()
        now = self.clock()

        def _allocate(state: ProjectState) -> RunRecord:
            run_id = new_run_id({run.run_id for run in state.runs})
            record = RunRecord(
                run_id=run_id,
                command=command,
                work_dir=work_dir,
                started_at=format_timestamp(now),
                log_path=f"{executor.runs_dir}/{run_id}.log",
                instance_id=state.vm.instance_id,
            )
            state.runs.append(record)
            state.idle.touch(now)
            return record

        record = self.store.update(_allocate)
        try:
            pid = executor.start_detached(command, work_dir, record.log_path)
        except BaseException:
            self._finish(record.run_id, None)
            raise

        def _store_pid(state: ProjectState) -> None:
            stored = state.find_run(record.run_id)
            if stored is not None:
                stored.remote_pid = pid

        self.store.update(_store_pid)
        self._emit("run_started", record.run_id, command=command, pid=pid)
        return record.run_id

    def attach(
        self,
        run_id: str,
        sink: BinaryIO,
        *,
        follow: bool = True,
        timeout_seconds: float | None = None,
    ) -> AttachResult:
        """Stream a run's combined output from byte zero.

        Finished runs replay the local cache when present, and fall back to
        the VM only while the instance that ran them is still up. Live runs
        are followed until the exit file exists and a read after seeing it
        comes back empty, which means the log is fully drained.
        """
        record = self._get(run_id)
        cache = self.cache_path(run_id)
        if record.status != "running":
            if cache.exists():
                data = cache.read_bytes()
                sink.write(data)
                sink.flush()
                return AttachResult(run_id, True, record.exit_code, len(data))
            if not self._on_current_vm(record):
                return AttachResult(run_id, True, record.exit_code, 0)

        executor = self.executor()
        deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
        cache.parent.mkdir(parents=True, exist_ok=True)
        fd, partial_name = tempfile.mkstemp(prefix=f".{run_id}.log.partial-", dir=str(cache.parent))
        partial = Path(partial_name)
        offset = 0
        exit_code: int | None = None
        finished = False
        try:
            with os.fdopen(fd, "wb") as partial_handle:
                while True:
                    exit_code = executor.exit_code(record.log_path)
                    chunk = executor.read_from(record.log_path, offset)
                    if chunk:
                        sink.write(chunk)
                        sink.flush()
                        partial_handle.write(chunk)
                        offset += len(chunk)
                        continue
                    if exit_code is not None or record.status != "running":
                        finished = True
                        break
                    if not follow:
                        break
                    if deadline is not None and time.monotonic() >= deadline:
                        break
                    self.sleep(self.poll_seconds)
            if finished:
                partial.replace(cache)
        finally:
            partial.unlink(missing_ok=True)

        if not finished:
            return AttachResult(run_id, False, None, offset)
        if record.status == "running":
            self._finish(run_id, exit_code)
            return AttachResult(run_id, True, exit_code, offset)
        return AttachResult(run_id, True, record.exit_code, offset)

    def kill(self, run_id: str) -> KillOutcome:
        record = self._get(run_id)
        if record.status != "running":
            return KillOutcome.ALREADY_FINISHED
        executor = self.executor()
        exit_code = executor.exit_code(record.log_path)
        if exit_code is not None:
            self._complete(record, executor, exit_code)
            return KillOutcome.ALREADY_FINISHED
        if record.remote_pid is None or not executor.signal(record.remote_pid, "TERM"):
            exit_code = executor.exit_code(record.log_path)
            self._complete(record, executor, exit_code)
            return KillOutcome.ALREADY_FINISHED
        self._emit("run_killed", run_id, pid=record.remote_pid)
        deadline = time.monotonic() + self.kill_wait_seconds
        while time.monotonic() < deadline:
            exit_code = executor.exit_code(record.log_path)
            if exit_code is not None:
                self._complete(record, executor, exit_code)
                break
            self.sleep(0.1)
        return KillOutcome.KILLED

    def refresh(self) -> list[str]:
        """Collect exit codes of running records; returns the ids that ended."""
        state = self.store.read()
        running = state.running_runs()
        if not running:
            return []
        ended: list[str] = []
        executor: RemoteExecutor | None = None
        for record in running:
            if record.instance_id != state.vm.instance_id:
                if self._finish(record.run_id, None):
                    ended.append(record.run_id)
                continue
            if executor is None:
                executor = self.executor()
            exit_code = executor.exit_code(record.log_path)
            if exit_code is None:
                if record.remote_pid is None or executor.is_alive(record.remote_pid):
                    continue
                # Re-check: the supervisor may have exited between the two probes.
                exit_code = executor.exit_code(record.log_path)
            if self._complete(record, executor, exit_code):
                ended.append(record.run_id)
        return ended

    def save_running_logs(self) -> list[str]:
        """Cache the output so far of runs on the current VM before it goes away."""
        state = self.store.read()
        saved: list[str] = []
        executor: RemoteExecutor | None = None
        for record in state.running_runs():
            if record.instance_id != state.vm.instance_id:
                continue
            if executor is None:
                executor = self.executor()
            self._save_log(record, executor)
            saved.append(record.run_id)
        return saved

    def mark_running_lost(self, reason: str) -> list[str]:
        """End every running record without an exit code (VM stopped or gone)."""
        now = self.clock()

        def _apply(state: ProjectState) -> list[str]:
            lost: list[str] = []
            for record in state.running_runs():
                record.ended_at = format_timestamp(now)
                lost.append(record.run_id)
            return lost

        lost = self.store.update(_apply)
        for run_id in lost:
            self._emit("run_lost", run_id, reason=reason)
        return lost

    def list_runs(self, limit: int = DEFAULT_HISTORY_LIMIT) -> list[RunRecord]:
        return self.store.read().newest_runs()[: max(limit, 0)]

    def status(self, limit: int = DEFAULT_HISTORY_LIMIT) -> LedgerStatus:
        ordered = self.store.read().newest_runs()
        return LedgerStatus(
            active=[run for run in ordered if run.status == "running"],
            recent=ordered[: max(limit, 0)],
        )

    def last_run_id(self) -> str | None:
        ordered = self.store.read().newest_runs()
        return ordered[0].run_id if ordered else None
