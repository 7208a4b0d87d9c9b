from __future__ import annotations

import subprocess
import sys
from typing import Callable


class UserFacingError(RuntimeError):
    """Error with user-facing text; caller should print and return non-zero."""


class ConfigError(UserFacingError):
    """Malformed project settings. Raised before any provider call."""


class ProviderError(UserFacingError):
    """A provider call failed.

    Transient failures (throttling, dropped connections) are retried by
    ``provider.call_with_retry``; permanent ones surface immediately.
    """

    def __init__(self, message: str, *, transient: bool = False, fix: str = ""):
        text = message if not fix else f"{message}\n  fix: {fix}"
        super().__init__(text)
        self.transient = transient
        self.fix = fix


class StateCorrupted(UserFacingError):
    """The persisted project state failed validation."""


class StateNotFound(LookupError):
    """No state file exists for the project yet."""


class RunNotFound(UserFacingError):
    """Attach or kill on a run id with no ledger record."""


class ProvisionTimeout(UserFacingError):
    """A boot, reachability or bootstrap deadline was exceeded."""


def main_guard(fn: Callable[[], int | None]) -> None:
    """Run fn and convert known errors to CLI output/exit code."""
    try:
        code = fn()
    except UserFacingError as exc:
        print(str(exc) or type(exc).__name__, file=sys.stderr)
        raise SystemExit(1) from exc
    except FileNotFoundError as exc:
        print(f"Error: Command not found: {exc.filename or 'unknown'}", file=sys.stderr)
        raise SystemExit(1) from exc
    except subprocess.SubprocessError as exc:
        print(f"Error: Command execution failed: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    except OSError as exc:
        print(f"Error: OS command failure: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    if code:
        raise SystemExit(code)
