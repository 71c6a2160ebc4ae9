"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"

from procctl.config import Config  # noqa: E402
from procctl.escaping import join_command  # noqa: E402


@pytest.fixture
def fast_config() -> Config:
    """Config without output coalescing, for quick and deterministic tests."""
    return Config(coalesce_interval=0.0, start_settle=0.05)


@pytest.fixture
def python_command() -> Callable[[str], str]:
    """Build a shell command that runs a Python snippet with this interpreter."""

    def build(code: str, *args: str) -> str:
        return join_command([sys.executable, "-c", code, *args])

    return build


@pytest.fixture
def spawn_child_script() -> Path:
    """Script that starts a sleeping child, prints its pid, then sleeps."""
    return FIXTURES_DIR / "spawn_child.py"
