"""Fixtures for CLI tests: an isolated project directory with memsearch.yaml."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

PROJECT_CONFIG = {
    "memory_search": {
        "provider": "openai",
        "remote": {"batch": {"enabled": False}},
        "sync": {"watch": False},
    }
}


def write_project_config(root: Path, data: dict) -> None:
    (root / "memsearch.yaml").write_text(yaml.dump(data), encoding="utf-8")


@pytest.fixture
def project(tmp_path, monkeypatch, fake_embedding) -> Path:
    """cwd = tmp_path, OPENAI_API_KEY set, no global config, litellm patched."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("memsearch.config._GLOBAL_CONFIG_PATH", tmp_path / "missing" / "config.yaml")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    write_project_config(tmp_path, PROJECT_CONFIG)
    return tmp_path
