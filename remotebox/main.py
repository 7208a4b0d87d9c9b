from __future__ import annotations

import argparse
import shlex
import sys
from pathlib import Path

from remotebox.cli import add_project_args, positive_int, resolve_project_dir, run_id_arg
from remotebox.config import MONITOR_POLL_SECONDS, load_config
from remotebox.errors import main_guard
from remotebox.ledger import KillOutcome
from remotebox.monitor import MONITOR_COMMAND, IdleMonitor
from remotebox.paths import default_state_dir
from remotebox.project import resolve_project
from remotebox.provider import resolve_provider
from remotebox.session import SessionController
from remotebox.status import print_status


def _session(args: argparse.Namespace) -> SessionController:
    project_dir = resolve_project_dir(args)
    state_dir = args.state_dir if getattr(args, "state_dir", None) else default_state_dir()
    config = load_config(project_dir)
    project = resolve_project(config.source.parent if config.source else project_dir)
    provider = resolve_provider(config, state_dir)
    return SessionController(project, config, provider, state_dir=state_dir)


def _detach_hint(run_id: str) -> None:
    print(
        f"\nDetached from run {run_id}; it keeps running on the VM.\n"
        f"Reattach with: remotebox logs {run_id}    Stop it with: remotebox kill {run_id}",
        file=sys.stderr,
    )


def _report_exit(run_id: str, exit_code: int | None, finished: bool) -> int:
    if not finished:
        return 0
    if exit_code is None:
        print(f"Run {run_id} ended without an exit status (VM stopped or destroyed).", file=sys.stderr)
        return 1
    if exit_code != 0:
        print(f"Run {run_id} exited with code {exit_code}.", file=sys.stderr)
    return exit_code


def _handle_up(args: argparse.Namespace) -> int:
    _session(args).up()
    return 0


def _handle_run(args: argparse.Namespace) -> int:
    session = _session(args)
    parts = list(args.cmd)
    if parts and parts[0] == "--":
        parts = parts[1:]
    if not parts:
        print("Error: No command given. Usage: remotebox run <command>", file=sys.stderr)
        return 2
    command = parts[0] if len(parts) == 1 else shlex.join(parts)
    run_id = session.start(command, cwd=resolve_project_dir(args))
    print(f"Run {run_id} started.", flush=True)
    try:
        result = session.logs(run_id, sys.stdout.buffer, follow=not args.detach)
    except KeyboardInterrupt:
        _detach_hint(run_id)
        return 130
    if args.detach:
        print(f"Run {run_id} continues in the background. Follow it with: remotebox logs {run_id}")
        return 0
    return _report_exit(run_id, result.exit_code, result.finished)


def _handle_logs(args: argparse.Namespace) -> int:
    session = _session(args)
    run_id = session.target_run(args.run_id)
    try:
        result = session.logs(run_id, sys.stdout.buffer, follow=not args.no_follow)
    except KeyboardInterrupt:
        _detach_hint(run_id)
        return 130
    return _report_exit(run_id, result.exit_code, result.finished)


def _handle_kill(args: argparse.Namespace) -> int:
    run_id, outcome = _session(args).kill(args.run_id)
    if outcome == KillOutcome.KILLED:
        print(f"Run {run_id} killed.")
    else:
        print(f"Run {run_id} already finished.")
    return 0


def _handle_stop(args: argparse.Namespace) -> int:
    _session(args).stop()
    return 0


def _handle_destroy(args: argparse.Namespace) -> int:
    _session(args).destroy()
    return 0


def _handle_status(args: argparse.Namespace) -> int:
    print_status(_session(args).status(), as_json=args.json)
    return 0


def _handle_idle_monitor(args: argparse.Namespace) -> int:
    session = _session(args)
    project_dir = resolve_project_dir(args)
    idle = IdleMonitor(
        session.store,
        session,
        project_dir=project_dir,
        load_config=lambda: load_config(project_dir),
        poll_seconds=args.poll_seconds,
    )
    idle.run()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="remotebox",
        description="Run project commands on an ephemeral cloud VM",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    up_parser = subparsers.add_parser("up", help="Create or start the project VM and sync files")
    add_project_args(up_parser)
    up_parser.set_defaults(handler=_handle_up)

    run_parser = subparsers.add_parser("run", help="Run a command on the VM and stream its output")
    add_project_args(run_parser)
    run_parser.add_argument(
        "--detach",
        action="store_true",
        help="Start the command and return after printing its current output",
    )
    run_parser.add_argument("cmd", nargs=argparse.REMAINDER, help="Command to run")
    run_parser.set_defaults(handler=_handle_run)

    logs_parser = subparsers.add_parser("logs", help="Replay and follow a run's output")
    add_project_args(logs_parser)
    logs_parser.add_argument("run_id", nargs="?", type=run_id_arg, help="Run id (default: latest run)")
    logs_parser.add_argument("--no-follow", action="store_true", help="Print current output and exit")
    logs_parser.set_defaults(handler=_handle_logs)

    kill_parser = subparsers.add_parser("kill", help="Terminate a run on the VM")
    add_project_args(kill_parser)
    kill_parser.add_argument("run_id", nargs="?", type=run_id_arg, help="Run id (default: latest run)")
    kill_parser.set_defaults(handler=_handle_kill)

    stop_parser = subparsers.add_parser("stop", help="Stop the project VM")
    add_project_args(stop_parser)
    stop_parser.set_defaults(handler=_handle_stop)

    destroy_parser = subparsers.add_parser("destroy", help="Terminate the project VM and forget it")
    add_project_args(destroy_parser)
    destroy_parser.set_defaults(handler=_handle_destroy)

    status_parser = subparsers.add_parser("status", help="Show VM state and recent runs")
    add_project_args(status_parser)
    status_parser.add_argument("--json", action="store_true")
    status_parser.set_defaults(handler=_handle_status)

    monitor_parser = subparsers.add_parser(MONITOR_COMMAND)
    add_project_args(monitor_parser)
    monitor_parser.add_argument("--poll-seconds", type=positive_int, default=MONITOR_POLL_SECONDS)
    monitor_parser.set_defaults(handler=_handle_idle_monitor)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def main() -> None:
    args = parse_args()

    def run() -> int:
        handler = getattr(args, "handler", None)
        if handler is None:
            raise RuntimeError(f"Unhandled command: {getattr(args, 'command', '<missing>')}")
        return handler(args)

    main_guard(run)


if __name__ == "__main__":
    main()
