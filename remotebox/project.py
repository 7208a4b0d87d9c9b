from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Project:
    path: Path
    project_id: str
    display_name: str


def resolve_project(path: Path | str) -> Project:
    """Identify a project by its absolute path.

    The id is stable for a given directory and is used to key the state
    directory, so two checkouts of the same repository are two projects.
    """
    raw = str(path)
    if not raw:
        raise ValueError("project path cannot be empty")
    resolved = Path(raw).expanduser().resolve()
    digest = hashlib.sha256(str(resolved).encode("utf-8")).hexdigest()
    return Project(
        path=resolved,
        project_id=digest[:12],
        display_name=resolved.name or str(resolved),
    )
