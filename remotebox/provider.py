from __future__ import annotations

import fcntl
import json
import os
import secrets
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from importlib.metadata import entry_points
from pathlib import Path
from typing import Callable, Iterator, TypeVar

from remotebox.config import ProjectConfig
from remotebox.errors import ProviderError
from remotebox.io_utils import atomic_write_json, read_text_or_empty

PROVIDER_ENTRY_POINT_GROUP = "remotebox.providers"

# Provider-side instance states, EC2 naming.
INSTANCE_PENDING = "pending"
INSTANCE_RUNNING = "running"
INSTANCE_STOPPING = "stopping"
INSTANCE_STOPPED = "stopped"
INSTANCE_SHUTTING_DOWN = "shutting-down"
INSTANCE_TERMINATED = "terminated"

T = TypeVar("T")


@dataclass(frozen=True)
class InstanceSpec:
    project_id: str
    project_path: str
    instance_type: str
    region: str
    user_data: str = ""
    tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class InstanceInfo:
    instance_id: str
    state: str
    public_ip: str = ""
    instance_type: str = ""
    region: str = ""
    availability_zone: str = ""
    # "ssh" reaches public_ip over OpenSSH; "local" runs under root on this host.
    transport: str = "ssh"
    root: str = ""


class VMProvider:
    """Cloud instance operations consumed by the session controller.

    Adapters subclass this and register a factory under the
    ``remotebox.providers`` entry-point group. Every method raises
    ProviderError on failure; ``describe_instance`` returns None when the
    provider no longer knows the instance.
    """

    name = "base"

    def create_instance(self, spec: InstanceSpec) -> InstanceInfo:
        raise NotImplementedError

    def start_instance(self, instance_id: str) -> None:
        raise NotImplementedError

    def stop_instance(self, instance_id: str) -> None:
        raise NotImplementedError

    def terminate_instance(self, instance_id: str) -> None:
        raise NotImplementedError

    def describe_instance(self, instance_id: str) -> InstanceInfo | None:
        raise NotImplementedError


_PERMANENT_RULES: tuple[tuple[tuple[str, ...], str, str], ...] = (
    (
        ("ExpiredToken", "RequestExpired"),
        "cloud credentials have expired",
        "refresh your provider credentials and retry",
    ),
    (
        ("NoCredentialProviders", "no credentials"),
        "no cloud credentials found",
        "configure credentials for the selected compute.provider",
    ),
    (
        ("InvalidClientTokenId", "SignatureDoesNotMatch", "AuthFailure"),
        "cloud credentials are invalid",
        "check the credentials configured for the selected compute.provider",
    ),
    (
        ("AccessDenied", "UnauthorizedOperation"),
        "cloud permissions denied",
        "grant the account permission to create, start, stop and terminate instances",
    ),
    (
        ("InvalidAMIID", "InvalidImage", "InvalidRegion", "invalid region"),
        "invalid region or machine image",
        "check compute.region in .remotebox.toml",
    ),
    (
        ("InsufficientInstanceCapacity", "InstanceLimitExceeded"),
        "provider capacity limit reached",
        "try a different region (REMOTEBOX_COMPUTE_REGION) or compute.size in .remotebox.toml",
    ),
    (
        ("VcpuLimitExceeded", "VpcLimitExceeded"),
        "cloud account limit reached",
        "request a limit increase, or terminate unused instances",
    ),
)

_TRANSIENT_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("Throttling", "RequestLimitExceeded", "TooManyRequests", "SlowDown"), "provider is throttling requests"),
    (
        ("RequestError", "connection refused", "Connection refused", "connection reset",
         "no such host", "i/o timeout", "timed out"),
        "cannot reach the cloud provider",
    ),
)


def classify_provider_error(exc: BaseException | str) -> ProviderError:
    """Map a raw provider failure onto a ProviderError with a fix hint."""
    if isinstance(exc, ProviderError):
        return exc
    message = str(exc)
    for tokens, summary, fix in _PERMANENT_RULES:
        if any(token in message for token in tokens):
            return ProviderError(f"Error: {summary} ({message})", transient=False, fix=fix)
    for tokens, summary in _TRANSIENT_RULES:
        if any(token in message for token in tokens):
            return ProviderError(
                f"Error: {summary} ({message})",
                transient=True,
                fix="check your network connection and retry",
            )
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return ProviderError(f"Error: cannot reach the cloud provider ({message})", transient=True)
    return ProviderError(f"Error: provider call failed: {message}")


def call_with_retry(
    fn: Callable[[], T],
    *,
    attempts: int = 4,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call fn, retrying transient provider failures with exponential backoff."""
    delay = base_delay
    attempts = max(attempts, 1)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except (ProviderError, OSError) as exc:
            err = classify_provider_error(exc)
            if attempt >= attempts or not err.transient:
                if err is exc:
                    raise
                raise err from exc
        sleep(min(delay, max_delay))
        delay *= 2
    raise AssertionError("unreachable")


class SimProvider(VMProvider):
    """File-backed provider that hosts instances as directories on this machine.

    State lives in ``<state_dir>/sim-provider.json`` so separate processes
    (CLI invocations and the idle monitor) observe the same instances.
    """

    name = "sim"

    def __init__(self, state_dir: Path, *, region: str = "us-east-1"):
        self.state_dir = state_dir
        self.region = region

    @property
    def _db_path(self) -> Path:
        return self.state_dir / "sim-provider.json"

    def host_root(self, instance_id: str) -> Path:
        return self.state_dir / "sim-hosts" / instance_id

    @contextmanager
    def _locked(self) -> Iterator[dict[str, dict[str, str]]]:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        lock_path = self.state_dir / "sim-provider.lock"
        fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            raw = read_text_or_empty(self._db_path)
            try:
                data = json.loads(raw) if raw else {}
            except json.JSONDecodeError as exc:
                raise ProviderError(f"Error: sim provider database is unreadable: {self._db_path}") from exc
            instances = data.get("instances", {}) if isinstance(data, dict) else {}
            yield instances
            atomic_write_json(self._db_path, {"instances": instances})
        finally:
            os.close(fd)

    def _info(self, payload: dict[str, str]) -> InstanceInfo:
        return InstanceInfo(
            instance_id=payload["instance_id"],
            state=payload["state"],
            public_ip="127.0.0.1" if payload["state"] == INSTANCE_RUNNING else "",
            instance_type=payload.get("instance_type", ""),
            region=payload.get("region", self.region),
            availability_zone=payload.get("availability_zone", ""),
            transport="local",
            root=str(self.host_root(payload["instance_id"])),
        )

    def _require(self, instances: dict[str, dict[str, str]], instance_id: str) -> dict[str, str]:
        payload = instances.get(instance_id)
        if payload is None or payload["state"] == INSTANCE_TERMINATED:
            raise ProviderError(f"Error: InvalidInstanceID.NotFound: {instance_id}")
        return payload

    def create_instance(self, spec: InstanceSpec) -> InstanceInfo:
        instance_id = f"i-{secrets.token_hex(8)}"
        root = self.host_root(instance_id)
        root.mkdir(parents=True, exist_ok=True)
        if spec.user_data:
            (root / "user-data").write_text(spec.user_data, encoding="utf-8")
        payload = {
            "instance_id": instance_id,
            "state": INSTANCE_RUNNING,
            "instance_type": spec.instance_type,
            "region": spec.region,
            "availability_zone": f"{spec.region}a",
            "project_id": spec.project_id,
        }
        with self._locked() as instances:
            instances[instance_id] = payload
        return self._info(payload)

    def start_instance(self, instance_id: str) -> None:
        with self._locked() as instances:
            self._require(instances, instance_id)["state"] = INSTANCE_RUNNING

    def stop_instance(self, instance_id: str) -> None:
        with self._locked() as instances:
            self._require(instances, instance_id)["state"] = INSTANCE_STOPPED

    def terminate_instance(self, instance_id: str) -> None:
        with self._locked() as instances:
            payload = instances.get(instance_id)
            if payload is not None:
                payload["state"] = INSTANCE_TERMINATED

    def describe_instance(self, instance_id: str) -> InstanceInfo | None:
        with self._locked() as instances:
            payload = instances.get(instance_id)
            if payload is None:
                return None
            return self._info(dict(payload))

    def instances(self) -> list[InstanceInfo]:
        with self._locked() as instances:
            return [self._info(dict(payload)) for payload in instances.values()]


def _sim_factory(config: ProjectConfig, state_dir: Path) -> VMProvider:
    return SimProvider(state_dir, region=config.compute.region)


BUILTIN_PROVIDERS: dict[str, Callable[[ProjectConfig, Path], VMProvider]] = {
    "sim": _sim_factory,
}


def resolve_provider(config: ProjectConfig, state_dir: Path) -> VMProvider:
    name = config.compute.provider
    factory = BUILTIN_PROVIDERS.get(name)
    if factory is None:
        for ep in entry_points(group=PROVIDER_ENTRY_POINT_GROUP):
            if ep.name == name:
                factory = ep.load()
                break
    if factory is None:
        raise ProviderError(
            f"Error: Unknown compute.provider '{name}'.",
            fix=f"install a package that registers '{name}' under the "
            f"{PROVIDER_ENTRY_POINT_GROUP} entry-point group, or use 'sim'",
        )
    return factory(config, state_dir)
