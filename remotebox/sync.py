from __future__ import annotations

import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from remotebox.config import SyncConfig
from remotebox.errors import UserFacingError
from remotebox.remote import RemoteExecutor

DEFAULT_EXCLUDES = (
    ".git/",
    "node_modules/",
    "target/",
    "__pycache__/",
    ".venv/",
    "dist/",
    "build/",
    ".next/",
    ".tox/",
    ".mypy_cache/",
    ".pytest_cache/",
    ".cargo/",
    ".gradle/",
    "*.pyc",
    ".DS_Store",
)
LANGUAGE_EXCLUDES = {
    "go": ("vendor/",),
}
_RSYNC_EXIT_MESSAGES = {
    5: "rsync: I/O error (disk space, permissions, or network issue)",
    12: "rsync: protocol error (version mismatch or corruption)",
    23: "rsync: partial transfer (some files could not be synced)",
    255: "rsync: SSH connection failed (check network and SSH access)",
}
_NUM_FILES_RE = re.compile(r"Number of files: ([\d,]+)")
_TRANSFERRED_RE = re.compile(r"Number of (?:regular )?files transferred: ([\d,]+)")
_TOTAL_SIZE_RE = re.compile(r"Total transferred file size: ([\d,]+)")


class SyncError(UserFacingError):
    """Raised when project files could not be copied to the VM."""


@dataclass(frozen=True)
class SyncResult:
    total_files: int = 0
    files_transferred: int = 0
    bytes_transferred: int = 0


def language_excludes(languages: Iterable[str]) -> list[str]:
    extras: list[str] = []
    for language in languages:
        for pattern in LANGUAGE_EXCLUDES.get(language, ()):
            if pattern not in extras:
                extras.append(pattern)
    return extras


def build_rsync_args(
    source_dir: Path,
    target: str,
    *,
    sync: SyncConfig,
    languages: Iterable[str] = (),
    remote_shell: str | None = None,
) -> list[str]:
    """rsync argv; the first matching rule wins, so order is precedence."""
    args = ["rsync", "-az", "--delete", "--stats"]
    if remote_shell:
        args.extend(["-e", remote_shell])
    for pattern in sync.include:
        args.extend(["--include", pattern])
    args.extend(["--filter", ":- .gitignore"])
    for pattern in sync.exclude:
        args.extend(["--exclude", pattern])
    for pattern in language_excludes(languages):
        args.extend(["--exclude", pattern])
    for pattern in DEFAULT_EXCLUDES:
        args.extend(["--exclude", pattern])
    args.append(f"{source_dir}/")
    args.append(target)
    return args


def _comma_int(raw: str) -> int:
    try:
        return int(raw.replace(",", ""))
    except ValueError:
        return 0


def parse_stats(output: str) -> SyncResult:
    def first(pattern: re.Pattern[str]) -> int:
        match = pattern.search(output)
        return _comma_int(match.group(1)) if match else 0

    return SyncResult(
        total_files=first(_NUM_FILES_RE),
        files_transferred=first(_TRANSFERRED_RE),
        bytes_transferred=first(_TOTAL_SIZE_RE),
    )


def rsync_error_message(exit_code: int) -> str:
    return _RSYNC_EXIT_MESSAGES.get(exit_code, "rsync failed")


def format_bytes(size: int) -> str:
    if size >= 1 << 30:
        return f"{size / (1 << 30):.1f} GB"
    if size >= 1 << 20:
        return f"{size / (1 << 20):.1f} MB"
    if size >= 1 << 10:
        return f"{size / (1 << 10):.1f} KB"
    return f"{size} B"


def sync_project(
    executor: RemoteExecutor,
    source_dir: Path,
    *,
    sync: SyncConfig,
    languages: Iterable[str] = (),
) -> SyncResult:
    executor.run(f"mkdir -p {shlex.quote(executor.project_dir)}")
    args = build_rsync_args(
        source_dir,
        executor.rsync_target(),
        sync=sync,
        languages=languages,
        remote_shell=executor.rsync_shell(),
    )
    try:
        proc = subprocess.run(args, check=False, text=True, capture_output=True)
    except FileNotFoundError as exc:
        raise SyncError("Error: Command not found: rsync") from exc
    if proc.returncode != 0:
        details = (proc.stderr or "").strip()
        message = f"Error: {rsync_error_message(proc.returncode)} (exit {proc.returncode})"
        raise SyncError(f"{message}\n{details}" if details else message)
    return parse_stats(proc.stdout or "")
