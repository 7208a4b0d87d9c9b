from __future__ import annotations

import shlex
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Callable, TypeVar

from remotebox import monitor
from remotebox.config import BOOT_TIMEOUT_SECONDS, ProjectConfig
from remotebox.errors import ProvisionTimeout, UserFacingError
from remotebox.events import emit_event
from remotebox.ledger import AttachResult, KillOutcome, RunLedger
from remotebox.project import Project
from remotebox.provider import (
    INSTANCE_RUNNING,
    INSTANCE_SHUTTING_DOWN,
    INSTANCE_STOPPED,
    INSTANCE_STOPPING,
    INSTANCE_TERMINATED,
    InstanceInfo,
    InstanceSpec,
    VMProvider,
    call_with_retry,
)
from remotebox.provision import Language, detect_languages, render_cloud_config, setup_commands, setup_hash
from remotebox.remote import RemoteError, RemoteExecutor, connect
from remotebox.state import ProjectState, StateStore, VMRecord, VMState, format_timestamp, utc_now
from remotebox.status import StatusReport, build_status_report
from remotebox.sync import SyncResult, format_bytes, sync_project

_GONE_STATES = (INSTANCE_TERMINATED, INSTANCE_SHUTTING_DOWN)

T = TypeVar("T")


def _apply_info(vm: VMRecord, info: InstanceInfo) -> None:
    vm.public_ip = info.public_ip
    if info.instance_type:
        vm.instance_type = info.instance_type
    if info.region:
        vm.region = info.region
    if info.availability_zone:
        vm.availability_zone = info.availability_zone


class SessionController:
    """Drives one project's VM through its lifecycle.

    Every public entry point reconciles the recorded VM against the provider
    first; drift (instance gone, stopped or started out of band) is corrected
    in the state file without raising.
    """

    def __init__(
        self,
        project: Project,
        config: ProjectConfig,
        provider: VMProvider,
        *,
        state_dir: Path,
        connector: Callable[..., RemoteExecutor] = connect,
        syncer: Callable[..., SyncResult] = sync_project,
        spawn_monitor: Callable[[Path, Project], int] | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        boot_timeout_seconds: int = BOOT_TIMEOUT_SECONDS,
        poll_seconds: float = 2,
    ):
        self.project = project
        self.config = config
        self.provider = provider
        self.state_dir = state_dir
        self.connector = connector
        self.syncer = syncer
        self.spawn_monitor = spawn_monitor or monitor.start_idle_monitor
        self.clock = clock
        self.sleep = sleep
        self.boot_timeout_seconds = boot_timeout_seconds
        self.poll_seconds = poll_seconds
        self.store = StateStore(state_dir, project.project_id)
        self.ledger = RunLedger(self.store, self.executor, clock=clock, sleep=sleep)

    def _emit(self, event: str, reason: str = "", **details: object) -> None:
        emit_event(
            self.state_dir,
            self.project.project_id,
            event=event,
            actor="session",
            reason=reason,
            details=details or None,
        )

    def _call(self, fn: Callable[[], T]) -> T:
        return call_with_retry(fn, sleep=self.sleep)

    def _describe(self, instance_id: str) -> InstanceInfo | None:
        return self._call(lambda: self.provider.describe_instance(instance_id))

    # Reconciliation

    def reconcile(self) -> VMRecord:
        """Align the recorded VM with provider truth and return the result."""
        recorded = self.store.read().vm
        if recorded.state == VMState.ABSENT:
            return recorded
        info = self._describe(recorded.instance_id)
        now = self.clock()
        changes: list[str] = []

        def _apply(state: ProjectState) -> VMRecord:
            vm = state.vm
            if vm.instance_id != recorded.instance_id:
                return vm
            if info is None or info.state in _GONE_STATES:
                for run in state.running_runs():
                    run.ended_at = format_timestamp(now)
                changes.append(f"{vm.state.value} -> absent")
                vm.reset()
                return vm
            _apply_info(vm, info)
            target = None
            if info.state == INSTANCE_STOPPED and vm.state in (VMState.RUNNING, VMState.STOPPING):
                target = VMState.STOPPED
            elif info.state == INSTANCE_STOPPING and vm.state == VMState.RUNNING:
                target = VMState.STOPPING
            elif info.state == INSTANCE_RUNNING and vm.state == VMState.STOPPED:
                target = VMState.RUNNING
            if target is not None:
                before = vm.state.value
                vm.move_to(target, now)
                if target != VMState.RUNNING:
                    for run in state.running_runs():
                        run.ended_at = format_timestamp(now)
                changes.append(f"{before} -> {target.value}")
            return vm

        vm = self.store.update_if_changed(_apply)
        for change in changes:
            self._emit("reconciled", "provider_drift", instance_id=recorded.instance_id, change=change)
        return vm

    # Remote access

    def executor(self) -> RemoteExecutor:
        vm = self.store.read().vm
        if vm.state not in (VMState.RUNNING, VMState.PROVISIONING):
            raise UserFacingError(
                f"Error: No running VM for this project (state: {vm.state.value}).\n"
                "Run `remotebox up` first."
            )
        info = self._describe(vm.instance_id)
        if info is None or info.state != INSTANCE_RUNNING:
            raise UserFacingError("Error: The VM is not running. Run `remotebox up` first.")
        return self.connector(info, self.config.ssh)

    def _wait_for_instance(self, instance_id: str, deadline: float) -> InstanceInfo:
        while True:
            info = self._describe(instance_id)
            if info is None or info.state in _GONE_STATES:
                raise UserFacingError(
                    f"Error: Instance {instance_id} disappeared while starting.\n"
                    "Run `remotebox up` again to create a new VM."
                )
            if info.state == INSTANCE_RUNNING and (info.public_ip or info.transport == "local"):
                return info
            if time.monotonic() >= deadline:
                raise ProvisionTimeout(
                    f"Error: Instance {instance_id} did not reach running within "
                    f"{self.boot_timeout_seconds}s (last state: {info.state}).\n"
                    "Rerun the command to resume."
                )
            self.sleep(self.poll_seconds)

    def _wait_reachable(self, info: InstanceInfo, deadline: float) -> RemoteExecutor:
        while True:
            try:
                return self.connector(info, self.config.ssh)
            except RemoteError as exc:
                if time.monotonic() >= deadline:
                    raise ProvisionTimeout(
                        f"Error: VM {info.instance_id} was not reachable within "
                        f"{self.boot_timeout_seconds}s.\n{exc}\nRerun the command to resume."
                    ) from exc
            self.sleep(self.poll_seconds)

    # Lifecycle

    def _create(self) -> None:
        languages = detect_languages(self.project.path)
        spec = InstanceSpec(
            project_id=self.project.project_id,
            project_path=str(self.project.path),
            instance_type=self.config.compute.instance_type,
            region=self.config.compute.region,
            user_data=render_cloud_config(languages, self.config.setup, user=self.config.ssh.user),
            tags={"remotebox-project": self.project.project_id},
        )
        print(
            f"Creating VM ({self.config.compute.size}, {spec.instance_type}, {spec.region}) "
            f"for {self.project.display_name}..."
        )
        info = self._call(lambda: self.provider.create_instance(spec))
        now = self.clock()

        def _apply(state: ProjectState) -> None:
            vm = state.vm
            if vm.state == VMState.TERMINATED:
                vm.reset()
            vm.transition(VMState.PROVISIONING, now, instance_id=info.instance_id)
            vm.instance_type = spec.instance_type
            vm.region = spec.region
            _apply_info(vm, info)

        self.store.update(_apply)
        self._emit("vm_created", instance_id=info.instance_id, instance_type=spec.instance_type)

    def _resume(self, vm: VMRecord, deadline: float) -> None:
        info = self._describe(vm.instance_id)
        if info is not None and info.state == INSTANCE_STOPPING:
            print("Waiting for the VM to finish stopping...")
            while info is not None and info.state == INSTANCE_STOPPING:
                if time.monotonic() >= deadline:
                    raise ProvisionTimeout(f"Error: VM {vm.instance_id} is still stopping; retry shortly.")
                self.sleep(self.poll_seconds)
                info = self._describe(vm.instance_id)
        if info is not None and info.state == INSTANCE_STOPPED:
            print(f"Starting VM {vm.instance_id}...")
            self._call(lambda: self.provider.start_instance(vm.instance_id))
            self._emit("vm_started", instance_id=vm.instance_id)
        now = self.clock()

        def _apply(state: ProjectState) -> None:
            if state.vm.state in (VMState.STOPPED, VMState.STOPPING):
                state.vm.move_to(VMState.PROVISIONING, now)

        self.store.update(_apply)

    def _sync(self, executor: RemoteExecutor, languages: list[Language] | None = None) -> SyncResult:
        if languages is None:
            languages = detect_languages(self.project.path)
        print("Syncing project files...")
        result = self.syncer(
            executor,
            self.project.path,
            sync=self.config.sync,
            languages=[language.name for language in languages],
        )
        print(
            f"Synced {result.files_transferred} of {result.total_files} files "
            f"({format_bytes(result.bytes_transferred)})."
        )
        return result

    def _provision(self, *, fresh: bool, deadline: float) -> VMRecord:
        vm = self.store.read().vm
        info = self._wait_for_instance(vm.instance_id, deadline)
        print("Waiting for the VM to accept connections...")
        executor = self._wait_reachable(info, deadline)
        if fresh or not vm.setup_hash:
            print("Waiting for first-boot provisioning...")
            executor.wait_for_bootstrap(max(int(deadline - time.monotonic()), 1), sleep=self.sleep)

        languages = detect_languages(self.project.path)
        self._sync(executor, languages)

        desired = setup_hash(self.config.setup)
        if vm.setup_hash != desired:
            commands = setup_commands(languages, self.config.setup, install_packages=not fresh)
            if commands:
                print("Running setup steps...")
            project_dir = shlex.quote(executor.project_dir)
            for command in commands:
                print(f"  $ {command}")
                try:
                    executor.run(f"cd {project_dir} && {command}")
                except RemoteError as exc:
                    raise UserFacingError(
                        f"Error: Setup step failed: {command}\n{exc}\n"
                        "Fix the step in .remotebox.toml and rerun; the VM is kept."
                    ) from exc

        now = self.clock()
        lifecycle = self.config.lifecycle

        def _apply(state: ProjectState) -> VMRecord:
            state.vm.setup_hash = desired
            _apply_info(state.vm, info)
            if state.vm.state == VMState.PROVISIONING:
                state.vm.transition(VMState.RUNNING, now)
            state.idle.idle_stop_enabled = lifecycle.idle_stop
            state.idle.grace_period_seconds = lifecycle.grace_period_seconds
            state.idle.touch(now)
            return state.vm

        self.ledger.forget_executor()
        vm = self.store.update(_apply)
        self._emit("vm_running", instance_id=vm.instance_id, fresh=fresh)
        return vm

    def _preserve_run_output(self) -> None:
        """Collect finished runs and cache every log while the VM is reachable."""
        try:
            self.ledger.refresh()
            self.ledger.save_running_logs()
        except UserFacingError as exc:
            print(f"Warning: could not save run output before shutdown: {exc}", file=sys.stderr)

    def ensure_idle_monitor(self) -> int | None:
        lifecycle = self.config.lifecycle

        def _apply(state: ProjectState) -> None:
            state.idle.idle_stop_enabled = lifecycle.idle_stop
            state.idle.grace_period_seconds = lifecycle.grace_period_seconds

        self.store.update(_apply)
        if not lifecycle.idle_stop:
            return None
        return self.spawn_monitor(self.state_dir, self.project)

    def up(self, *, resync: bool = False) -> VMRecord:
        """Bring the VM to RUNNING.

        A VM that is already running is only probed; ``resync`` also pushes
        the project files to it. The create and resume paths always sync.
        """
        vm = self.reconcile()
        wanted_type = self.config.compute.instance_type
        if vm.state != VMState.ABSENT and vm.instance_type and vm.instance_type != wanted_type:
            print(f"Instance size changed ({vm.instance_type} -> {wanted_type}); recreating the VM.")
            self.destroy()
            vm = self.store.read().vm

        if vm.state == VMState.RUNNING:
            executor: RemoteExecutor | None = None
            try:
                executor = self.executor()
                if not executor.probe():
                    executor = None
            except UserFacingError:
                executor = None
            if executor is not None:
                if resync:
                    self._sync(executor)
                self.ensure_idle_monitor()
                return vm
            vm = self.reconcile()

        deadline = time.monotonic() + self.boot_timeout_seconds
        if vm.state == VMState.TERMINATING:
            self._terminate(vm.instance_id)
            vm = self.store.read().vm
        fresh = vm.state in (VMState.ABSENT, VMState.TERMINATED)
        if fresh:
            self._create()
        elif vm.state != VMState.RUNNING:
            self._resume(vm, deadline)
        vm = self._provision(fresh=fresh, deadline=deadline)
        print(f"VM {vm.instance_id} is running.")
        self.ensure_idle_monitor()
        return vm

    def stop(self, reason: str = "user") -> bool:
        """Stop a RUNNING VM. Returns False when it was already stopped."""
        vm = self.reconcile()
        if vm.state == VMState.STOPPED:
            print("VM is already stopped.")
            return False
        if vm.state == VMState.ABSENT:
            raise UserFacingError("Error: No VM exists for this project.")
        if vm.state != VMState.RUNNING:
            raise UserFacingError(f"Error: Cannot stop a VM that is {vm.state.value}.")

        self._preserve_run_output()
        monitor.stop_idle_monitor(self.state_dir, self.project.project_id)
        now = self.clock()

        def _stopping(state: ProjectState) -> None:
            if state.vm.state == VMState.RUNNING:
                state.vm.transition(VMState.STOPPING, now)

        self.store.update(_stopping)
        print(f"Stopping VM {vm.instance_id}...")
        self._call(lambda: self.provider.stop_instance(vm.instance_id))

        deadline = time.monotonic() + self.boot_timeout_seconds
        while True:
            info = self._describe(vm.instance_id)
            if info is None or info.state in _GONE_STATES:
                self.reconcile()
                return True
            if info.state == INSTANCE_STOPPED:
                break
            if time.monotonic() >= deadline:
                raise ProvisionTimeout(
                    f"Error: VM {vm.instance_id} did not stop within {self.boot_timeout_seconds}s.\n"
                    "Run `remotebox status` to check again."
                )
            self.sleep(self.poll_seconds)

        stopped_at = self.clock()

        def _stopped(state: ProjectState) -> None:
            if state.vm.state == VMState.STOPPING:
                state.vm.transition(VMState.STOPPED, stopped_at)
            for run in state.running_runs():
                run.ended_at = format_timestamp(stopped_at)

        self.store.update(_stopped)
        self.ledger.forget_executor()
        self._emit("vm_stopped", reason, instance_id=vm.instance_id)
        print(f"VM {vm.instance_id} stopped.")
        return True

    def _terminate(self, instance_id: str) -> None:
        self._call(lambda: self.provider.terminate_instance(instance_id))
        deadline = time.monotonic() + self.boot_timeout_seconds
        while True:
            info = self._describe(instance_id)
            if info is None or info.state in _GONE_STATES:
                break
            if time.monotonic() >= deadline:
                raise ProvisionTimeout(
                    f"Error: VM {instance_id} did not terminate within {self.boot_timeout_seconds}s.\n"
                    "Run `remotebox destroy` again to retry."
                )
            self.sleep(self.poll_seconds)
        now = self.clock()

        def _apply(state: ProjectState) -> None:
            vm = state.vm
            if vm.instance_id != instance_id:
                return
            if vm.state == VMState.TERMINATING:
                vm.transition(VMState.TERMINATED, now)
            for run in state.running_runs():
                run.ended_at = format_timestamp(now)
            vm.reset()

        self.ledger.forget_executor()
        self.store.update(_apply)
        self._emit("vm_terminated", instance_id=instance_id)

    def destroy(self) -> bool:
        """Terminate the VM and forget it. Returns False when none existed."""
        vm = self.reconcile()
        monitor.stop_idle_monitor(self.state_dir, self.project.project_id)
        if vm.state == VMState.ABSENT:
            print("No VM exists for this project.")
            return False
        if vm.state == VMState.RUNNING:
            self._preserve_run_output()
        now = self.clock()

        def _terminating(state: ProjectState) -> None:
            if state.vm.state not in (VMState.TERMINATING, VMState.TERMINATED):
                state.vm.move_to(VMState.TERMINATING, now)

        self.store.update(_terminating)
        print(f"Terminating VM {vm.instance_id}...")
        self._terminate(vm.instance_id)
        print(f"VM {vm.instance_id} destroyed.")
        return True

    # Commands

    def remote_workdir(self, cwd: Path, executor: RemoteExecutor) -> str:
        try:
            relative = cwd.resolve().relative_to(self.project.path)
        except ValueError:
            return executor.project_dir
        if str(relative) in ("", "."):
            return executor.project_dir
        return f"{executor.project_dir}/{relative.as_posix()}"

    def start(self, command: str, *, cwd: Path | None = None) -> str:
        """Bring the VM up, then launch ``command`` detached; returns the run id."""
        self.up(resync=True)
        executor = self.ledger.executor()
        return self.ledger.start_run(command, self.remote_workdir(cwd or self.project.path, executor))

    def run(
        self,
        command: str,
        sink: BinaryIO,
        *,
        cwd: Path | None = None,
        follow: bool = True,
    ) -> tuple[str, AttachResult]:
        run_id = self.start(command, cwd=cwd)
        return run_id, self.ledger.attach(run_id, sink, follow=follow)

    def logs(self, run_id: str | None, sink: BinaryIO, *, follow: bool = True) -> AttachResult:
        return self.ledger.attach(self.target_run(run_id), sink, follow=follow)

    def kill(self, run_id: str | None) -> tuple[str, KillOutcome]:
        target = self.target_run(run_id)
        return target, self.ledger.kill(target)

    def target_run(self, run_id: str | None) -> str:
        if run_id:
            return run_id
        last = self.ledger.last_run_id()
        if last is None:
            raise UserFacingError("Error: No runs recorded for this project yet.")
        return last

    def status(self) -> StatusReport:
        warnings: list[str] = []
        vm = self.reconcile()
        state = self.store.read()
        if vm.state == VMState.RUNNING and state.running_runs():
            try:
                self.ledger.refresh()
                state = self.store.read()
            except UserFacingError as exc:
                warnings.append(f"could not refresh run status: {exc}")
        lease = monitor.live_lease(self.state_dir, self.project.project_id)
        return build_status_report(self.project, state, lease, warnings=warnings)
