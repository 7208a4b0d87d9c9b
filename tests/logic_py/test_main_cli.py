from __future__ import annotations

import argparse
import sys
from pathlib import Path

import pytest

from remotebox import main as main_cli
from remotebox.ledger import AttachResult, KillOutcome
from remotebox.monitor import MONITOR_COMMAND


class FakeSession:
    def __init__(self, *, result: AttachResult | None = None, interrupt: bool = False):
        self.result = result or AttachResult("0a0a0a0a", True, 0, 0)
        self.interrupt = interrupt
        self.calls: list[tuple[str, object]] = []

    def up(self) -> None:
        self.calls.append(("up", None))

    def start(self, command: str, *, cwd: Path) -> str:
        self.calls.append(("start", command))
        return "0a0a0a0a"

    def logs(self, run_id, sink, *, follow: bool) -> AttachResult:
        self.calls.append(("logs", (run_id, follow)))
        if self.interrupt:
            raise KeyboardInterrupt
        return self.result

    def target_run(self, run_id):
        return run_id or "0b0b0b0b"

    def kill(self, run_id):
        self.calls.append(("kill", run_id))
        return "0b0b0b0b", KillOutcome.ALREADY_FINISHED

    def stop(self) -> bool:
        self.calls.append(("stop", None))
        return True

    def destroy(self) -> bool:
        self.calls.append(("destroy", None))
        return True


def _use_session(monkeypatch: pytest.MonkeyPatch, session: FakeSession) -> None:
    monkeypatch.setattr(main_cli, "_session", lambda _args: session)


def test_parse_run_keeps_command_tokens(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(sys, "argv", ["remotebox", "run", "--detach", "--", "pytest", "-x", "tests/"])
    args = main_cli.parse_args()
    assert args.command == "run"
    assert args.detach is True
    assert args.cmd[-3:] == ["pytest", "-x", "tests/"]


def test_parse_logs_defaults_to_latest_run(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(sys, "argv", ["remotebox", "logs"])
    args = main_cli.parse_args()
    assert args.run_id is None
    assert args.no_follow is False
    assert args.project_dir is None


def test_parse_logs_normalizes_run_id(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(sys, "argv", ["remotebox", "logs", "ABCDEF01", "--no-follow"])
    args = main_cli.parse_args()
    assert args.run_id == "abcdef01"
    assert args.no_follow is True


def test_parse_kill_rejects_malformed_run_id(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(sys, "argv", ["remotebox", "kill", "not-hex"])
    with pytest.raises(SystemExit):
        main_cli.parse_args()


def test_parse_status_json(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(sys, "argv", ["remotebox", "status", "--json", "--project-dir", "/work/app"])
    args = main_cli.parse_args()
    assert args.json is True
    assert args.project_dir == Path("/work/app")


def test_parse_idle_monitor_rejects_non_positive_poll(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(sys, "argv", ["remotebox", MONITOR_COMMAND, "--poll-seconds", "0"])
    with pytest.raises(SystemExit):
        main_cli.parse_args()


def test_idle_monitor_command_is_hidden_from_help():
    assert MONITOR_COMMAND not in main_cli.build_parser().format_help()


def test_main_dispatches_stop(monkeypatch: pytest.MonkeyPatch):
    session = FakeSession()
    _use_session(monkeypatch, session)
    monkeypatch.setattr(main_cli, "parse_args", lambda: argparse.Namespace(handler=main_cli._handle_stop))
    monkeypatch.setattr(main_cli, "main_guard", lambda fn: fn())

    main_cli.main()

    assert session.calls == [("stop", None)]


def test_main_exits_with_handler_return_code(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(main_cli, "parse_args", lambda: argparse.Namespace(handler=lambda _args: 3))
    with pytest.raises(SystemExit) as exc_info:
        main_cli.main()
    assert exc_info.value.code == 3


def test_run_joins_tokens_and_returns_exit_code(monkeypatch: pytest.MonkeyPatch, capsys):
    session = FakeSession(result=AttachResult("0a0a0a0a", True, 4, 10))
    _use_session(monkeypatch, session)
    args = argparse.Namespace(cmd=["--", "echo", "a b"], detach=False, project_dir=Path("/work/app"))

    assert main_cli._handle_run(args) == 4

    assert ("start", "echo 'a b'") in session.calls
    assert ("logs", ("0a0a0a0a", True)) in session.calls
    captured = capsys.readouterr()
    assert "Run 0a0a0a0a started." in captured.out
    assert "exited with code 4" in captured.err


def test_run_single_token_is_passed_verbatim(monkeypatch: pytest.MonkeyPatch):
    session = FakeSession()
    _use_session(monkeypatch, session)
    args = argparse.Namespace(cmd=["make test && make lint"], detach=True, project_dir=None)

    assert main_cli._handle_run(args) == 0
    assert ("start", "make test && make lint") in session.calls
    assert ("logs", ("0a0a0a0a", False)) in session.calls


def test_run_without_command_is_usage_error(monkeypatch: pytest.MonkeyPatch, capsys):
    _use_session(monkeypatch, FakeSession())
    args = argparse.Namespace(cmd=["--"], detach=False, project_dir=None)

    assert main_cli._handle_run(args) == 2
    assert "No command given" in capsys.readouterr().err


def test_run_interrupt_detaches_with_hint(monkeypatch: pytest.MonkeyPatch, capsys):
    _use_session(monkeypatch, FakeSession(interrupt=True))
    args = argparse.Namespace(cmd=["sleep", "100"], detach=False, project_dir=None)

    assert main_cli._handle_run(args) == 130
    err = capsys.readouterr().err
    assert "keeps running on the VM" in err
    assert "remotebox logs 0a0a0a0a" in err


def test_logs_of_lost_run_fails(monkeypatch: pytest.MonkeyPatch, capsys):
    _use_session(monkeypatch, FakeSession(result=AttachResult("0b0b0b0b", True, None, 0)))
    args = argparse.Namespace(run_id=None, no_follow=False, project_dir=None)

    assert main_cli._handle_logs(args) == 1
    assert "ended without an exit status" in capsys.readouterr().err


def test_logs_without_follow_of_running_run(monkeypatch: pytest.MonkeyPatch):
    session = FakeSession(result=AttachResult("0b0b0b0b", False, None, 12))
    _use_session(monkeypatch, session)
    args = argparse.Namespace(run_id="0b0b0b0b", no_follow=True, project_dir=None)

    assert main_cli._handle_logs(args) == 0
    assert ("logs", ("0b0b0b0b", False)) in session.calls


def test_kill_reports_outcome(monkeypatch: pytest.MonkeyPatch, capsys):
    _use_session(monkeypatch, FakeSession())
    assert main_cli._handle_kill(argparse.Namespace(run_id=None, project_dir=None)) == 0
    assert "Run 0b0b0b0b already finished." in capsys.readouterr().out
