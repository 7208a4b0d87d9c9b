from __future__ import annotations

import importlib
import tomllib
from pathlib import Path

PROJECT_DIR = Path(__file__).resolve().parents[2]


def _pyproject() -> dict:
    return tomllib.loads((PROJECT_DIR / "pyproject.toml").read_text(encoding="utf-8"))


def _resolve(target: str):
    module_name, _, attr = target.partition(":")
    return getattr(importlib.import_module(module_name), attr)


def test_console_scripts_reference_existing_callables() -> None:
    scripts = _pyproject()["project"]["scripts"]
    assert scripts["remotebox"] == "remotebox.main:main"
    for target in scripts.values():
        assert callable(_resolve(target))


def test_provider_entry_points_reference_existing_factories() -> None:
    groups = _pyproject()["project"]["entry-points"]
    providers = groups["remotebox.providers"]
    assert "sim" in providers
    for target in providers.values():
        assert callable(_resolve(target))


def test_declared_packages_exist() -> None:
    for package in _pyproject()["tool"]["setuptools"]["packages"]:
        assert (PROJECT_DIR / package.replace(".", "/") / "__init__.py").is_file()
