from __future__ import annotations

import argparse
import os
from pathlib import Path

from remotebox.state import RUN_ID_RE


def positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid int value: '{value}'") from exc
    if parsed < 1:
        raise argparse.ArgumentTypeError("value must be >= 1")
    return parsed


def run_id_arg(value: str) -> str:
    lowered = value.strip().lower()
    if not RUN_ID_RE.match(lowered):
        raise argparse.ArgumentTypeError(f"invalid run id '{value}' (expected 8 hex characters)")
    return lowered


def add_project_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=None,
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=None,
        help="Local state directory (default: $REMOTEBOX_STATE_DIR or ~/.remotebox/state)",
    )


def resolve_project_dir(args: argparse.Namespace) -> Path:
    value = getattr(args, "project_dir", None)
    return Path(value) if value is not None else Path(os.getcwd())
