from __future__ import annotations

import subprocess

import pytest

from remotebox import errors
from remotebox.errors import ProviderError, StateCorrupted, UserFacingError


def test_main_guard_handles_user_facing_error(capsys):
    def run():
        raise UserFacingError("bad input")

    with pytest.raises(SystemExit) as exc_info:
        errors.main_guard(run)
    captured = capsys.readouterr()
    assert exc_info.value.code == 1
    assert "bad input" in captured.err


def test_main_guard_handles_provider_error_with_fix(capsys):
    def run():
        raise ProviderError("Error: cloud permissions denied", fix="grant ec2:RunInstances")

    with pytest.raises(SystemExit) as exc_info:
        errors.main_guard(run)
    captured = capsys.readouterr()
    assert exc_info.value.code == 1
    assert "cloud permissions denied\n  fix: grant ec2:RunInstances" in captured.err


def test_main_guard_handles_state_corruption(capsys):
    def run():
        raise StateCorrupted("Error: State file is corrupted")

    with pytest.raises(SystemExit):
        errors.main_guard(run)
    assert "corrupted" in capsys.readouterr().err


def test_main_guard_handles_file_not_found(capsys):
    def run():
        raise FileNotFoundError(2, "No such file", "rsync")

    with pytest.raises(SystemExit) as exc_info:
        errors.main_guard(run)
    captured = capsys.readouterr()
    assert exc_info.value.code == 1
    assert "Command not found: rsync" in captured.err


def test_main_guard_handles_subprocess_error(capsys):
    def run():
        raise subprocess.SubprocessError("subprocess fail")

    with pytest.raises(SystemExit) as exc_info:
        errors.main_guard(run)
    captured = capsys.readouterr()
    assert exc_info.value.code == 1
    assert "Command execution failed" in captured.err


def test_main_guard_handles_oserror(capsys):
    def run():
        raise OSError("os fail")

    with pytest.raises(SystemExit) as exc_info:
        errors.main_guard(run)
    captured = capsys.readouterr()
    assert exc_info.value.code == 1
    assert "OS command failure" in captured.err


def test_main_guard_passes_through_success():
    assert errors.main_guard(lambda: 0) is None
    assert errors.main_guard(lambda: None) is None
