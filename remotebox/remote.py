from __future__ import annotations

import shlex
import subprocess
import time
from pathlib import Path
from typing import Callable, Sequence

from remotebox.config import SSHConfig
from remotebox.errors import ProvisionTimeout, UserFacingError
from remotebox.provider import InstanceInfo

SSH_PORTS = (22, 443)
READ_CHUNK_BYTES = 1024 * 1024
BOOT_FINISHED_MARKER = "/var/lib/cloud/instance/boot-finished"
_SSH_OPTIONS = (
    "-o",
    "StrictHostKeyChecking=no",
    "-o",
    "UserKnownHostsFile=/dev/null",
    "-o",
    "LogLevel=ERROR",
    "-o",
    "BatchMode=yes",
    "-o",
    "ConnectTimeout=10",
)


class RemoteError(UserFacingError):
    """Raised when a command on the VM cannot be executed."""


def exit_file_for(log_path: str) -> str:
    return f"{log_path}.exit"


def supervisor_script(command: str, workdir: str, log_path: str) -> str:
    """Shell that runs ``command`` and records its exit status beside the log.

    The supervisor survives the TERM it forwards to its process group so the
    exit file is always written, including for killed runs.
    """
    log = shlex.quote(log_path)
    exit_final = shlex.quote(exit_file_for(log_path))
    exit_tmp = shlex.quote(exit_file_for(log_path) + ".tmp")
    return (
        "trap 'true' TERM INT HUP\n"
        f"if cd {shlex.quote(workdir)} 2>>{log}; then\n"
        f"  bash -c {shlex.quote(command)} >>{log} 2>&1 </dev/null\n"
        "  ec=$?\n"
        "else\n"
        "  ec=1\n"
        "fi\n"
        f"echo \"$ec\" >{exit_tmp} && mv -f {exit_tmp} {exit_final}\n"
    )


def launch_script(command: str, workdir: str, log_path: str) -> str:
    """Create the log, then start the supervisor in its own process group."""
    log = shlex.quote(log_path)
    wrapper = shlex.quote(supervisor_script(command, workdir, log_path))
    return (
        "set -m\n"
        f"mkdir -p {shlex.quote(str(Path(log_path).parent))}\n"
        f": >{log}\n"
        f"rm -f {shlex.quote(exit_file_for(log_path))}\n"
        f"nohup bash -c {wrapper} >/dev/null 2>&1 </dev/null &\n"
        "echo $!\n"
    )


class RemoteExecutor:
    """Shell access to one instance.

    Subclasses implement ``_exec``; everything else is built from portable
    shell snippets so SSH and local hosts behave the same.
    """

    home: str = ""

    def _exec(self, script: str, *, timeout: float | None = None) -> subprocess.CompletedProcess[bytes]:
        raise NotImplementedError

    @property
    def project_dir(self) -> str:
        return f"{self.home}/project"

    @property
    def runs_dir(self) -> str:
        return f"{self.home}/.remotebox/runs"

    def rsync_target(self) -> str:
        raise NotImplementedError

    def rsync_shell(self) -> str | None:
        return None

    def run(self, script: str, *, check: bool = True, timeout: float | None = None) -> str:
        try:
            proc = self._exec(script, timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            raise RemoteError(f"Error: Remote command timed out after {timeout}s.") from exc
        stdout = proc.stdout.decode("utf-8", errors="replace")
        if check and proc.returncode != 0:
            details = proc.stderr.decode("utf-8", errors="replace").strip() or stdout.strip()
            message = f"Error: Remote command failed (exit {proc.returncode})."
            if details:
                message = f"{message}\n{details}"
            raise RemoteError(message)
        return stdout

    def probe(self, *, timeout: float = 15) -> bool:
        try:
            proc = self._exec("true", timeout=timeout)
        except subprocess.TimeoutExpired:
            return False
        return proc.returncode == 0

    def start_detached(self, command: str, workdir: str, log_path: str) -> int:
        out = self.run(launch_script(command, workdir, log_path)).strip().splitlines()
        try:
            return int(out[-1])
        except (IndexError, ValueError) as exc:
            raise RemoteError(f"Error: Could not read the pid of the started command: {out!r}") from exc

    def read_from(self, log_path: str, offset: int, *, limit: int = READ_CHUNK_BYTES) -> bytes:
        script = (
            f"tail -c +{offset + 1} {shlex.quote(log_path)} 2>/dev/null | head -c {limit}"
        )
        proc = self._exec(script)
        if proc.returncode != 0:
            details = proc.stderr.decode("utf-8", errors="replace").strip()
            message = f"Error: Could not read {log_path} (exit {proc.returncode})."
            raise RemoteError(f"{message}\n{details}" if details else message)
        return proc.stdout

    def read_all(self, log_path: str) -> bytes:
        data = bytearray()
        while True:
            chunk = self.read_from(log_path, len(data))
            if not chunk:
                return bytes(data)
            data.extend(chunk)

    def exit_code(self, log_path: str) -> int | None:
        raw = self.run(f"cat {shlex.quote(exit_file_for(log_path))} 2>/dev/null || true").strip()
        try:
            return int(raw) if raw else None
        except ValueError:
            return None

    def signal(self, pid: int, sig: str = "TERM") -> bool:
        script = (
            f"kill -{sig} -- -{pid} 2>/dev/null || kill -{sig} {pid} 2>/dev/null "
            "&& echo sent || true"
        )
        return self.run(script).strip() == "sent"

    def is_alive(self, pid: int) -> bool:
        return self.run(f"kill -0 {pid} 2>/dev/null && echo alive || true").strip() == "alive"

    def wait_for_bootstrap(
        self,
        timeout_seconds: int,
        *,
        poll_seconds: float = 5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        raise NotImplementedError


class LocalExecutor(RemoteExecutor):
    """Runs the remote protocol under a directory on this machine (sim provider)."""

    def __init__(self, root: Path):
        self.root = root
        self.home = str(root)

    def _exec(self, script: str, *, timeout: float | None = None) -> subprocess.CompletedProcess[bytes]:
        self.root.mkdir(parents=True, exist_ok=True)
        return subprocess.run(
            ["bash", "-c", script],
            check=False,
            capture_output=True,
            cwd=self.root,
            stdin=subprocess.DEVNULL,
            timeout=timeout,
        )

    def rsync_target(self) -> str:
        return f"{self.project_dir}/"

    def wait_for_bootstrap(
        self,
        timeout_seconds: int,
        *,
        poll_seconds: float = 5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        Path(self.project_dir).mkdir(parents=True, exist_ok=True)


class SSHExecutor(RemoteExecutor):
    def __init__(self, host: str, *, user: str, port: int = 22, key_path: str = ""):
        self.host = host
        self.user = user
        self.port = port
        self.key_path = key_path
        self.home = f"/home/{user}"

    def ssh_args(self) -> list[str]:
        args = ["ssh", *_SSH_OPTIONS, "-p", str(self.port)]
        if self.key_path:
            args.extend(["-i", str(Path(self.key_path).expanduser())])
        return args

    def _exec(self, script: str, *, timeout: float | None = None) -> subprocess.CompletedProcess[bytes]:
        args = [*self.ssh_args(), f"{self.user}@{self.host}", f"bash -c {shlex.quote(script)}"]
        try:
            return subprocess.run(
                args,
                check=False,
                capture_output=True,
                stdin=subprocess.DEVNULL,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise RemoteError("Error: Command not found: ssh") from exc

    def rsync_target(self) -> str:
        return f"{self.user}@{self.host}:{self.project_dir}/"

    def rsync_shell(self) -> str | None:
        return shlex.join(self.ssh_args())

    def wait_for_bootstrap(
        self,
        timeout_seconds: int,
        *,
        poll_seconds: float = 5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        marker = shlex.quote(BOOT_FINISHED_MARKER)
        deadline = time.monotonic() + timeout_seconds
        while True:
            if self.run(f"test -f {marker} && echo done || true", timeout=30).strip() == "done":
                return
            if time.monotonic() >= deadline:
                raise ProvisionTimeout(
                    f"Error: First-boot provisioning did not finish within {timeout_seconds}s "
                    f"on {self.host}.\nRerun the command to resume; inspect /var/log/cloud-init-output.log on the VM."
                )
            sleep(poll_seconds)


def open_session(
    host: str,
    *,
    ssh: SSHConfig,
    ports: Sequence[int] = SSH_PORTS,
    timeout: float = 15,
) -> SSHExecutor:
    """Return an executor bound to the first port that accepts a login."""
    if not host:
        raise RemoteError("Error: The instance has no public address yet.")
    for port in ports:
        executor = SSHExecutor(host, user=ssh.user, port=port, key_path=ssh.key_path)
        if executor.probe(timeout=timeout):
            return executor
    tried = ", ".join(str(port) for port in ports)
    raise RemoteError(f"Error: Could not open an SSH session to {ssh.user}@{host} (ports tried: {tried}).")


def connect(info: InstanceInfo, ssh: SSHConfig) -> RemoteExecutor:
    if info.transport == "local":
        return LocalExecutor(Path(info.root))
    return open_session(info.public_ip, ssh=ssh)
