from __future__ import annotations

from pathlib import Path

import pytest

from remotebox import paths
from remotebox.project import resolve_project


def test_default_state_dir_uses_env_override(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv(paths.STATE_DIR_ENV, str(tmp_path / "custom"))
    assert paths.default_state_dir() == tmp_path / "custom"


def test_default_state_dir_uses_home(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv(paths.STATE_DIR_ENV, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    assert paths.default_state_dir() == tmp_path / "home" / ".remotebox" / "state"


def test_project_paths_are_nested_under_project_id(tmp_path: Path) -> None:
    base = paths.project_state_dir(tmp_path, "abc123")
    assert base == tmp_path / "projects" / "abc123"
    assert paths.state_file(tmp_path, "abc123") == base / "state.json"
    assert paths.logs_dir(tmp_path, "abc123") == base / "logs"
    assert paths.run_logs_dir(tmp_path, "abc123") == base / "runs"


def test_project_id_is_stable_per_directory(tmp_path: Path) -> None:
    (tmp_path / "a").mkdir()
    (tmp_path / "b").mkdir()

    first = resolve_project(tmp_path / "a")
    again = resolve_project(str(tmp_path / "a" / ".." / "a"))
    other = resolve_project(tmp_path / "b")

    assert first.project_id == again.project_id
    assert first.project_id != other.project_id
    assert len(first.project_id) == 12
    assert first.display_name == "a"


def test_resolve_project_rejects_empty_path() -> None:
    with pytest.raises(ValueError):
        resolve_project("")
