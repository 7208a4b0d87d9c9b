from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from remotebox.project import Project
from remotebox.state import ProjectState, RunRecord, VMState

if TYPE_CHECKING:
    from remotebox.monitor import MonitorLease

STATUS_HISTORY_LIMIT = 10


def _run_dict(run: RunRecord) -> dict[str, object]:
    return {
        "run_id": run.run_id,
        "command": run.command,
        "status": run.status,
        "started_at": run.started_at,
        "ended_at": run.ended_at,
        "exit_code": run.exit_code,
    }


@dataclass
class StatusReport:
    project: str
    project_id: str
    state: str
    instance_id: str = ""
    region: str = ""
    availability_zone: str = ""
    instance_type: str = ""
    public_ip: str = ""
    setup_hash: str = ""
    idle: dict[str, object] = field(default_factory=dict)
    monitor: dict[str, object] = field(default_factory=dict)
    active_runs: list[RunRecord] = field(default_factory=list)
    recent_runs: list[RunRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "project": self.project,
            "project_id": self.project_id,
            "state": self.state,
            "instance_id": self.instance_id,
            "region": self.region,
            "availability_zone": self.availability_zone,
            "instance_type": self.instance_type,
            "public_ip": self.public_ip,
            "setup_hash": self.setup_hash,
            "idle": self.idle,
            "monitor": self.monitor,
            "active_runs": [_run_dict(run) for run in self.active_runs],
            "recent_runs": [_run_dict(run) for run in self.recent_runs],
            "warnings": self.warnings,
        }


def build_status_report(
    project: Project,
    state: ProjectState,
    lease: MonitorLease | None,
    *,
    warnings: list[str] | None = None,
    limit: int = STATUS_HISTORY_LIMIT,
) -> StatusReport:
    vm = state.vm
    ordered = state.newest_runs()
    if vm.state == VMState.ABSENT:
        report = StatusReport(project=str(project.path), project_id=project.project_id, state="none")
    else:
        report = StatusReport(
            project=str(project.path),
            project_id=project.project_id,
            state=vm.state.value,
            instance_id=vm.instance_id,
            region=vm.region,
            availability_zone=vm.availability_zone,
            instance_type=vm.instance_type,
            public_ip=vm.public_ip,
            setup_hash=vm.setup_hash,
        )
    report.idle = {
        "idle_stop": state.idle.idle_stop_enabled,
        "grace_period_seconds": state.idle.grace_period_seconds,
        "last_activity_at": state.idle.last_activity_at,
    }
    report.monitor = {"running": lease is not None, "pid": lease.pid if lease else None}
    report.active_runs = [run for run in ordered if run.status == "running"]
    report.recent_runs = ordered[:limit]
    report.warnings = list(warnings or [])
    return report


def render_status_text(report: StatusReport) -> None:
    print(f"Project: {report.project}")
    if report.state == "none":
        print("  VM: none")
        print("  run `remotebox up` to create one.")
    else:
        print(f"  VM: {report.instance_id} ({report.state})")
        print(f"  type: {report.instance_type or '(unknown)'}")
        zone = f" / {report.availability_zone}" if report.availability_zone else ""
        print(f"  region: {report.region or '(unknown)'}{zone}")
        print(f"  ip: {report.public_ip or '(unavailable)'}")
    if report.idle.get("idle_stop"):
        print(
            f"  idle stop: after {report.idle.get('grace_period_seconds')}s "
            f"(monitor {'running' if report.monitor.get('running') else 'not running'})"
        )
    else:
        print("  idle stop: disabled")
    if report.warnings:
        print("  warnings:")
        for warning in report.warnings:
            print(f"    - {warning}")
    if report.active_runs:
        print("  active runs:")
        for run in report.active_runs:
            print(f"    - {run.run_id}  {run.command}  (started {run.started_at})")
    if report.recent_runs:
        print("  recent runs:")
        for run in report.recent_runs:
            outcome = run.status if run.exit_code is None else f"exit {run.exit_code}"
            print(f"    - {run.run_id}  {outcome:<10}  {run.command}")


def print_status(report: StatusReport, *, as_json: bool) -> None:
    if as_json:
        print(json.dumps(report.as_dict(), indent=2))
        return
    render_status_text(report)
