from __future__ import annotations

import hashlib
import re
import shlex
from dataclasses import dataclass
from pathlib import Path

from remotebox.config import SetupConfig

BASE_PACKAGES = (
    "build-essential",
    "git",
    "rsync",
    "curl",
    "unzip",
    "jq",
    "htop",
    "tmux",
)
DEFAULT_GO_VERSION = "1.22.0"
NVM_VERSION = "v0.40.1"
_NVM_LOAD = 'export NVM_DIR="$HOME/.nvm" && . "$NVM_DIR/nvm.sh"'
_GO_VERSION_RE = re.compile(r"^go\s+(\d+\.\d+(?:\.\d+)?)\s*$", re.MULTILINE)


@dataclass(frozen=True)
class Language:
    name: str
    display_name: str
    runtime_install: tuple[str, ...]
    dep_install: tuple[str, ...]


def _go_version(project_dir: Path) -> str:
    try:
        content = (project_dir / "go.mod").read_text(encoding="utf-8")
    except OSError:
        return DEFAULT_GO_VERSION
    match = _GO_VERSION_RE.search(content)
    if match is None:
        return DEFAULT_GO_VERSION
    version = match.group(1)
    if version.count(".") == 1:
        version += ".0"
    return version


def _node(project_dir: Path) -> Language:
    version = "--lts"
    nvmrc = project_dir / ".nvmrc"
    if nvmrc.is_file():
        version = nvmrc.read_text(encoding="utf-8").strip() or "--lts"
    if (project_dir / "package-lock.json").exists():
        deps = f"{_NVM_LOAD} && npm ci"
    elif (project_dir / "yarn.lock").exists():
        deps = f"{_NVM_LOAD} && yarn install --frozen-lockfile"
    elif (project_dir / "pnpm-lock.yaml").exists():
        deps = f"{_NVM_LOAD} && npm install -g pnpm && pnpm install --frozen-lockfile"
    else:
        deps = f"{_NVM_LOAD} && npm install"
    return Language(
        name="node",
        display_name="Node (package.json)",
        runtime_install=(
            f"curl -o- https://raw.githubusercontent.com/nvm-sh/nvm/{NVM_VERSION}/install.sh | bash",
            f"{_NVM_LOAD} && nvm install {shlex.quote(version)}",
        ),
        dep_install=(deps,),
    )


def detect_languages(project_dir: Path) -> list[Language]:
    """Languages present in the project root, in a fixed order."""
    languages: list[Language] = []
    if (project_dir / "Cargo.toml").exists():
        languages.append(
            Language(
                name="rust",
                display_name="Rust (Cargo.toml)",
                runtime_install=(
                    "curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs | sh -s -- -y",
                    '. "$HOME/.cargo/env"',
                ),
                dep_install=('. "$HOME/.cargo/env" && cargo fetch',),
            )
        )
    if (project_dir / "package.json").exists():
        languages.append(_node(project_dir))
    if (project_dir / "go.mod").exists():
        version = _go_version(project_dir)
        languages.append(
            Language(
                name="go",
                display_name="Go (go.mod)",
                runtime_install=(
                    f"curl -fsSL https://go.dev/dl/go{version}.linux-arm64.tar.gz | tar -C /usr/local -xz",
                    "echo 'export PATH=$PATH:/usr/local/go/bin:$HOME/go/bin' >> $HOME/.bashrc",
                ),
                dep_install=("export PATH=$PATH:/usr/local/go/bin && go mod download",),
            )
        )
    manifest = ""
    if (project_dir / "pyproject.toml").exists():
        manifest = "pyproject.toml"
    elif (project_dir / "requirements.txt").exists():
        manifest = "requirements.txt"
    if manifest:
        deps = "python3 -m pip install -e ." if manifest == "pyproject.toml" else "python3 -m pip install -r requirements.txt"
        languages.append(
            Language(
                name="python",
                display_name=f"Python ({manifest})",
                runtime_install=("apt-get install -y python3 python3-pip python3-venv",),
                dep_install=(deps,),
            )
        )
    if (project_dir / "Gemfile").exists():
        languages.append(
            Language(
                name="ruby",
                display_name="Ruby (Gemfile)",
                runtime_install=("apt-get install -y ruby-full",),
                dep_install=("bundle install",),
            )
        )
    return languages


def render_cloud_config(languages: list[Language], setup: SetupConfig, *, user: str = "ubuntu") -> str:
    """First-boot document: packages, sshd on 22 and 443, language runtimes.

    Dependency installs and setup.run are left out; the project files are
    not on the VM until after the first sync.
    """
    packages = list(BASE_PACKAGES)
    packages.extend(pkg for pkg in setup.packages if pkg not in packages)
    runcmd = [
        "grep -q '^Port 22' /etc/ssh/sshd_config || sed -i 's/^#Port 22$/Port 22/' /etc/ssh/sshd_config",
        "grep -q '^Port 22' /etc/ssh/sshd_config || echo 'Port 22' >> /etc/ssh/sshd_config",
        "grep -q '^Port 443' /etc/ssh/sshd_config || echo 'Port 443' >> /etc/ssh/sshd_config",
        "systemctl restart ssh || systemctl restart sshd",
    ]
    for language in languages:
        runcmd.extend(language.runtime_install)
    runcmd.append(f"mkdir -p /home/{user}/project && chown {user}:{user} /home/{user}/project")

    lines = ["#cloud-config", "packages:"]
    lines.extend(f"  - {pkg}" for pkg in packages)
    lines.append("runcmd:")
    for cmd in runcmd:
        lines.append("  - |")
        lines.append(f"    {cmd}")
    return "\n".join(lines) + "\n"


def setup_hash(setup: SetupConfig) -> str:
    digest = hashlib.sha256()
    digest.update(b"packages:")
    for pkg in sorted(setup.packages):
        digest.update(pkg.encode("utf-8") + b"\0")
    digest.update(b"run:")
    for cmd in sorted(setup.run):
        digest.update(cmd.encode("utf-8") + b"\0")
    return digest.hexdigest()[:16]


def setup_commands(
    languages: list[Language],
    setup: SetupConfig,
    *,
    install_packages: bool,
) -> list[str]:
    """Post-sync steps, run from the project directory on the VM.

    ``install_packages`` is False right after first boot, where cloud-init
    already installed the configured packages.
    """
    commands: list[str] = []
    if install_packages and setup.packages:
        joined = " ".join(shlex.quote(pkg) for pkg in setup.packages)
        commands.append(f"sudo DEBIAN_FRONTEND=noninteractive apt-get install -y {joined}")
    for language in languages:
        commands.extend(language.dep_install)
    commands.extend(setup.run)
    return commands
