from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from remotebox.errors import ConfigError

CONFIG_FILE_NAME = ".remotebox.toml"
DEFAULT_SIZE = "medium"
DEFAULT_REGION = "us-east-1"
DEFAULT_PROVIDER = "sim"
DEFAULT_GRACE_PERIOD = "10m"
DEFAULT_SSH_USER = "ubuntu"

SIZE_INSTANCE_TYPES = {
    "small": "t4g.small",
    "medium": "t4g.medium",
    "large": "t4g.large",
    "xlarge": "t4g.xlarge",
}

_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)([smhd])")
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


BOOT_TIMEOUT_SECONDS = _env_int("REMOTEBOX_BOOT_TIMEOUT_SECONDS", 300)
MONITOR_POLL_SECONDS = _env_int("REMOTEBOX_MONITOR_POLL_SECONDS", 5)
LOCK_TIMEOUT_SECONDS = _env_int("REMOTEBOX_LOCK_TIMEOUT_SECONDS", 10)


def parse_duration(value: str) -> int:
    """Parse "30s", "10m", "1h30m" or "7d" into whole seconds."""
    text = value.strip().lower()
    if not text:
        raise ValueError("duration cannot be empty")
    if text.isdigit():
        return int(text)
    pos = 0
    total = 0.0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration {value!r} (use forms like 30s, 10m, 2h, 1d)")
    return int(total)


@dataclass(frozen=True)
class ComputeConfig:
    size: str = DEFAULT_SIZE
    region: str = DEFAULT_REGION
    provider: str = DEFAULT_PROVIDER

    @property
    def instance_type(self) -> str:
        return SIZE_INSTANCE_TYPES[self.size]


@dataclass(frozen=True)
class LifecycleConfig:
    idle_stop: bool = True
    grace_period: str = DEFAULT_GRACE_PERIOD

    @property
    def grace_period_seconds(self) -> int:
        return parse_duration(self.grace_period)


@dataclass(frozen=True)
class SetupConfig:
    packages: tuple[str, ...] = ()
    run: tuple[str, ...] = ()


@dataclass(frozen=True)
class SyncConfig:
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()


@dataclass(frozen=True)
class SSHConfig:
    user: str = DEFAULT_SSH_USER
    key_path: str = ""


@dataclass(frozen=True)
class ProjectConfig:
    compute: ComputeConfig = field(default_factory=ComputeConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    setup: SetupConfig = field(default_factory=SetupConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    ssh: SSHConfig = field(default_factory=SSHConfig)
    source: Path | None = None


def find_config_file(start_dir: Path) -> Path | None:
    current = start_dir.resolve()
    for candidate_dir in (current, *current.parents):
        candidate = candidate_dir / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate
    return None


def _section(data: dict[str, Any], name: str, source: Path) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"Error: [{name}] in {source} must be a table.")
    return value


def _string(section: dict[str, Any], key: str, default: str, label: str) -> str:
    value = section.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"Error: {label} must be a string, got {value!r}.")
    return value.strip()


def _string_list(section: dict[str, Any], key: str, label: str) -> tuple[str, ...]:
    value = section.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"Error: {label} must be a list of strings.")
    return tuple(item for item in value if item.strip())


def _parse_bool(raw: str, label: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigError(f"Error: {label} must be true or false, got {raw!r}.")


def _lifecycle(section: dict[str, Any]) -> LifecycleConfig:
    idle_stop = section.get("idle_stop", True)
    grace_period = _string(section, "grace_period", DEFAULT_GRACE_PERIOD, "lifecycle.grace_period")
    # A duration string in idle_stop enables idle-stop with that grace period.
    if isinstance(idle_stop, str):
        if idle_stop.strip().lower() in _TRUE_VALUES | _FALSE_VALUES:
            idle_stop = _parse_bool(idle_stop, "lifecycle.idle_stop")
        else:
            try:
                seconds = parse_duration(idle_stop)
            except ValueError as exc:
                raise ConfigError(f"Error: Invalid lifecycle.idle_stop: {exc}") from exc
            if seconds <= 0:
                return LifecycleConfig(idle_stop=False, grace_period=grace_period)
            return LifecycleConfig(idle_stop=True, grace_period=idle_stop.strip())
    if not isinstance(idle_stop, bool):
        raise ConfigError(f"Error: lifecycle.idle_stop must be a boolean, got {idle_stop!r}.")
    return LifecycleConfig(idle_stop=idle_stop, grace_period=grace_period)


def _apply_env(cfg: ProjectConfig) -> ProjectConfig:
    compute = cfg.compute
    lifecycle = cfg.lifecycle
    size = os.getenv("REMOTEBOX_COMPUTE_SIZE")
    region = os.getenv("REMOTEBOX_COMPUTE_REGION")
    provider = os.getenv("REMOTEBOX_COMPUTE_PROVIDER")
    idle_stop = os.getenv("REMOTEBOX_IDLE_STOP")
    grace_period = os.getenv("REMOTEBOX_GRACE_PERIOD")
    compute = ComputeConfig(
        size=size.strip() if size else compute.size,
        region=region.strip() if region else compute.region,
        provider=provider.strip() if provider else compute.provider,
    )
    lifecycle = LifecycleConfig(
        idle_stop=_parse_bool(idle_stop, "REMOTEBOX_IDLE_STOP") if idle_stop else lifecycle.idle_stop,
        grace_period=grace_period.strip() if grace_period else lifecycle.grace_period,
    )
    return ProjectConfig(
        compute=compute,
        lifecycle=lifecycle,
        setup=cfg.setup,
        sync=cfg.sync,
        ssh=cfg.ssh,
        source=cfg.source,
    )


def validate_config(cfg: ProjectConfig) -> None:
    if cfg.compute.size not in SIZE_INSTANCE_TYPES:
        raise ConfigError(
            f"Error: Invalid compute.size {cfg.compute.size!r} "
            "(must be small, medium, large, or xlarge)."
        )
    if not cfg.compute.region:
        raise ConfigError("Error: compute.region cannot be empty.")
    if not cfg.compute.provider:
        raise ConfigError("Error: compute.provider cannot be empty.")
    try:
        seconds = parse_duration(cfg.lifecycle.grace_period)
    except ValueError as exc:
        raise ConfigError(f"Error: Invalid lifecycle.grace_period: {exc}") from exc
    if cfg.lifecycle.idle_stop and seconds <= 0:
        raise ConfigError("Error: lifecycle.grace_period must be greater than zero when idle_stop is enabled.")


def load_config(start_dir: Path) -> ProjectConfig:
    """Load project settings from the nearest .remotebox.toml plus env overrides.

    Missing files yield defaults. Every malformed value raises ConfigError so
    callers fail before touching the provider.
    """
    source = find_config_file(start_dir)
    data: dict[str, Any] = {}
    if source is not None:
        try:
            with source.open("rb") as handle:
                data = tomllib.load(handle)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Error: Could not parse {source}: {exc}") from exc
        except OSError as exc:
            raise ConfigError(f"Error: Could not read {source}: {exc}") from exc

    label_source = source or Path(CONFIG_FILE_NAME)
    compute = _section(data, "compute", label_source)
    lifecycle = _section(data, "lifecycle", label_source)
    setup = _section(data, "setup", label_source)
    sync = _section(data, "sync", label_source)
    ssh = _section(data, "ssh", label_source)

    cfg = ProjectConfig(
        compute=ComputeConfig(
            size=_string(compute, "size", DEFAULT_SIZE, "compute.size"),
            region=_string(compute, "region", DEFAULT_REGION, "compute.region"),
            provider=_string(compute, "provider", DEFAULT_PROVIDER, "compute.provider"),
        ),
        lifecycle=_lifecycle(lifecycle),
        setup=SetupConfig(
            packages=_string_list(setup, "packages", "setup.packages"),
            run=_string_list(setup, "run", "setup.run"),
        ),
        sync=SyncConfig(
            include=_string_list(sync, "include", "sync.include"),
            exclude=_string_list(sync, "exclude", "sync.exclude"),
        ),
        ssh=SSHConfig(
            user=_string(ssh, "user", DEFAULT_SSH_USER, "ssh.user") or DEFAULT_SSH_USER,
            key_path=_string(ssh, "key_path", "", "ssh.key_path"),
        ),
        source=source,
    )
    cfg = _apply_env(cfg)
    validate_config(cfg)
    return cfg
