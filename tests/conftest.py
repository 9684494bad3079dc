"""Shared test fixtures."""

from __future__ import annotations

import os
import stat
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from agent_dispatch.config import CliAgentSettings, Settings

# Fake agent that echoes its argv as JSON, so tests can assert on the exact vector.
ARGV_ECHO_SCRIPT = """
import json
import sys

print(json.dumps(sys.argv[1:]))
"""


def write_fake_agent(bin_dir: Path, name: str, script: str) -> Path:
    """Install a Python-backed executable called ``name`` into ``bin_dir``."""

    implementation = bin_dir / f"{name}_impl.py"
    implementation.write_text(script.strip() + "\n", "utf-8")

    if os.name == "nt":
        launcher = bin_dir / f"{name}.cmd"
        launcher.write_text(
            f'@echo off\r\n"{sys.executable}" "{implementation}" %*\r\n',
            "utf-8",
        )
        return launcher

    launcher = bin_dir / name
    launcher.write_text(
        f'#!/usr/bin/env sh\nexec "{sys.executable}" "{implementation}" "$@"\n',
        "utf-8",
    )
    launcher.chmod(launcher.stat().st_mode | stat.S_IXUSR)
    return launcher


@pytest.fixture()
def agent_bin(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Callable[[str, str], Path]:
    """Return an installer for fake agent executables placed first on PATH."""

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    def _install(name: str, script: str = ARGV_ECHO_SCRIPT) -> Path:
        return write_fake_agent(bin_dir, name, script)

    return _install


@pytest.fixture()
def fast_settings() -> Settings:
    """Settings with short timeouts suited to subprocess tests."""

    return Settings(
        timeout_seconds=20.0,
        kill_grace_seconds=0.5,
        cli=CliAgentSettings(claude_binary="claude", cursor_binary="agent"),
    )


@pytest.fixture()
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path
