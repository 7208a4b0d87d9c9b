from __future__ import annotations

from pathlib import Path

import pytest

from remotebox import provider as provider_mod
from remotebox.config import ComputeConfig, ProjectConfig
from remotebox.errors import ProviderError
from remotebox.provider import (
    INSTANCE_RUNNING,
    INSTANCE_STOPPED,
    INSTANCE_TERMINATED,
    InstanceSpec,
    SimProvider,
    call_with_retry,
    classify_provider_error,
    resolve_provider,
)


def _spec(**overrides) -> InstanceSpec:
    values = {
        "project_id": "abcabcabcabc",
        "project_path": "/work/app",
        "instance_type": "t4g.small",
        "region": "us-west-2",
        "user_data": "#cloud-config\n",
    }
    values.update(overrides)
    return InstanceSpec(**values)


def test_sim_provider_lifecycle(tmp_path: Path) -> None:
    provider = SimProvider(tmp_path)

    info = provider.create_instance(_spec())
    assert info.state == INSTANCE_RUNNING
    assert info.transport == "local"
    assert info.public_ip == "127.0.0.1"
    assert info.availability_zone == "us-west-2a"
    assert (provider.host_root(info.instance_id) / "user-data").read_text(encoding="utf-8") == "#cloud-config\n"

    provider.stop_instance(info.instance_id)
    stopped = provider.describe_instance(info.instance_id)
    assert stopped.state == INSTANCE_STOPPED
    assert stopped.public_ip == ""

    provider.start_instance(info.instance_id)
    assert provider.describe_instance(info.instance_id).state == INSTANCE_RUNNING

    provider.terminate_instance(info.instance_id)
    assert provider.describe_instance(info.instance_id).state == INSTANCE_TERMINATED
    with pytest.raises(ProviderError, match="NotFound"):
        provider.start_instance(info.instance_id)


def test_sim_provider_state_is_shared_between_instances(tmp_path: Path) -> None:
    created = SimProvider(tmp_path).create_instance(_spec())
    other = SimProvider(tmp_path)

    assert other.describe_instance(created.instance_id).instance_type == "t4g.small"
    assert [info.instance_id for info in other.instances()] == [created.instance_id]
    assert other.describe_instance("i-missing") is None


def test_sim_provider_rejects_unknown_instance(tmp_path: Path) -> None:
    provider = SimProvider(tmp_path)
    with pytest.raises(ProviderError):
        provider.stop_instance("i-unknown")
    provider.terminate_instance("i-unknown")


@pytest.mark.parametrize(
    ("raw", "transient", "fix_fragment"),
    [
        ("An error occurred (ExpiredToken) when calling RunInstances", False, "refresh"),
        ("UnauthorizedOperation: You are not authorized", False, "permission"),
        ("InsufficientInstanceCapacity in us-east-1a", False, "different region"),
        ("Throttling: Rate exceeded", True, "network"),
        ("dial tcp: i/o timeout", True, "network"),
    ],
)
def test_classify_provider_error(raw: str, transient: bool, fix_fragment: str) -> None:
    err = classify_provider_error(raw)
    assert err.transient is transient
    assert fix_fragment in err.fix
    assert raw in str(err)


def test_classify_unknown_error_is_permanent_without_fix() -> None:
    err = classify_provider_error(RuntimeError("weird"))
    assert err.transient is False
    assert err.fix == ""
    assert "provider call failed: weird" in str(err)


def test_call_with_retry_backs_off_on_transient_errors() -> None:
    delays: list[float] = []
    attempts = iter([ConnectionResetError("connection reset by peer"), TimeoutError("timed out"), None])

    def _fn() -> str:
        exc = next(attempts)
        if exc is not None:
            raise exc
        return "ok"

    assert call_with_retry(_fn, base_delay=1, sleep=delays.append) == "ok"
    assert delays == [1, 2]


def test_call_with_retry_gives_up_after_attempts() -> None:
    delays: list[float] = []

    def _fn() -> None:
        raise ProviderError("Error: throttled", transient=True)

    with pytest.raises(ProviderError, match="throttled"):
        call_with_retry(_fn, attempts=3, base_delay=4, max_delay=5, sleep=delays.append)
    assert delays == [4, 5]


def test_call_with_retry_does_not_retry_permanent_errors() -> None:
    calls = []

    def _fn() -> None:
        calls.append(1)
        raise ProviderError("Error: AccessDenied")

    with pytest.raises(ProviderError):
        call_with_retry(_fn, sleep=lambda _s: None)
    assert len(calls) == 1


def test_resolve_provider_builtin_and_unknown(tmp_path: Path, monkeypatch) -> None:
    sim = resolve_provider(ProjectConfig(compute=ComputeConfig(region="eu-central-1")), tmp_path)
    assert isinstance(sim, SimProvider)
    assert sim.region == "eu-central-1"

    monkeypatch.setattr(provider_mod, "entry_points", lambda group: [])
    with pytest.raises(ProviderError) as exc_info:
        resolve_provider(ProjectConfig(compute=ComputeConfig(provider="aws")), tmp_path)
    assert "Unknown compute.provider 'aws'" in str(exc_info.value)
    assert "fix:" in str(exc_info.value)


def test_resolve_provider_loads_entry_point(tmp_path: Path, monkeypatch) -> None:
    class _EntryPoint:
        name = "custom"

        def load(self):
            return lambda config, state_dir: SimProvider(state_dir, region="custom-1")

    monkeypatch.setattr(provider_mod, "entry_points", lambda group: [_EntryPoint()])

    provider = resolve_provider(ProjectConfig(compute=ComputeConfig(provider="custom")), tmp_path)
    assert isinstance(provider, SimProvider)
    assert provider.region == "custom-1"
