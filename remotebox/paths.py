from __future__ import annotations

import os
from pathlib import Path

STATE_DIR_ENV = "REMOTEBOX_STATE_DIR"


def default_state_dir() -> Path:
    override = os.getenv(STATE_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".remotebox" / "state"


def project_state_dir(state_dir: Path, project_id: str) -> Path:
    return state_dir / "projects" / project_id


def state_file(state_dir: Path, project_id: str) -> Path:
    return project_state_dir(state_dir, project_id) / "state.json"


def logs_dir(state_dir: Path, project_id: str) -> Path:
    return project_state_dir(state_dir, project_id) / "logs"


def run_logs_dir(state_dir: Path, project_id: str) -> Path:
    return project_state_dir(state_dir, project_id) / "runs"
