from __future__ import annotations

from pathlib import Path

from remotebox.config import SetupConfig
from remotebox.provision import (
    BASE_PACKAGES,
    DEFAULT_GO_VERSION,
    detect_languages,
    render_cloud_config,
    setup_commands,
    setup_hash,
)


def test_detect_languages_in_fixed_order(tmp_path: Path) -> None:
    for name in ("Gemfile", "requirements.txt", "go.mod", "package.json", "Cargo.toml"):
        (tmp_path / name).write_text("", encoding="utf-8")

    assert [lang.name for lang in detect_languages(tmp_path)] == ["rust", "node", "go", "python", "ruby"]


def test_detect_languages_empty_project(tmp_path: Path) -> None:
    assert detect_languages(tmp_path) == []


def test_node_uses_lockfile_specific_install(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text("{}", encoding="utf-8")
    (tmp_path / "yarn.lock").write_text("", encoding="utf-8")
    (tmp_path / ".nvmrc").write_text("20.11.1\n", encoding="utf-8")

    (node,) = detect_languages(tmp_path)

    assert node.dep_install[0].endswith("yarn install --frozen-lockfile")
    assert node.runtime_install[1].endswith("nvm install 20.11.1")


def test_go_version_comes_from_go_mod(tmp_path: Path) -> None:
    (tmp_path / "go.mod").write_text("module example.com/x\n\ngo 1.21\n", encoding="utf-8")
    (go,) = detect_languages(tmp_path)
    assert "go1.21.0.linux-arm64" in go.runtime_install[0]

    (tmp_path / "go.mod").write_text("module example.com/x\n", encoding="utf-8")
    (go,) = detect_languages(tmp_path)
    assert f"go{DEFAULT_GO_VERSION}.linux-arm64" in go.runtime_install[0]


def test_python_prefers_pyproject(tmp_path: Path) -> None:
    (tmp_path / "pyproject.toml").write_text("", encoding="utf-8")
    (tmp_path / "requirements.txt").write_text("", encoding="utf-8")
    (python,) = detect_languages(tmp_path)
    assert python.dep_install == ("python3 -m pip install -e .",)


def test_cloud_config_has_runtimes_but_no_project_steps(tmp_path: Path) -> None:
    (tmp_path / "Cargo.toml").write_text("", encoding="utf-8")
    setup = SetupConfig(packages=("libpq-dev", "git"), run=("make migrate",))

    document = render_cloud_config(detect_languages(tmp_path), setup, user="dev")

    assert document.startswith("#cloud-config\n")
    for pkg in BASE_PACKAGES:
        assert f"  - {pkg}\n" in document
    assert document.count("  - git\n") == 1
    assert "  - libpq-dev\n" in document
    assert "Port 443" in document
    assert "sh.rustup.rs" in document
    assert "cargo fetch" not in document
    assert "make migrate" not in document
    assert "mkdir -p /home/dev/project && chown dev:dev /home/dev/project" in document


def test_setup_hash_ignores_order_but_tracks_content() -> None:
    first = SetupConfig(packages=("a", "b"), run=("x", "y"))
    reordered = SetupConfig(packages=("b", "a"), run=("y", "x"))
    edited = SetupConfig(packages=("a", "b"), run=("x", "z"))
    moved = SetupConfig(packages=("a", "b", "x"), run=("y",))

    assert setup_hash(first) == setup_hash(reordered)
    assert setup_hash(first) != setup_hash(edited)
    assert setup_hash(first) != setup_hash(moved)
    assert len(setup_hash(first)) == 16


def test_setup_commands_order(tmp_path: Path) -> None:
    (tmp_path / "Gemfile").write_text("", encoding="utf-8")
    languages = detect_languages(tmp_path)
    setup = SetupConfig(packages=("redis-tools",), run=("bin/setup",))

    assert setup_commands(languages, setup, install_packages=True) == [
        "sudo DEBIAN_FRONTEND=noninteractive apt-get install -y redis-tools",
        "bundle install",
        "bin/setup",
    ]
    assert setup_commands(languages, setup, install_packages=False) == ["bundle install", "bin/setup"]
