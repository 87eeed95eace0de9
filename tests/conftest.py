"""Shared pytest fixtures for CodexDock tests."""

import sys
from pathlib import Path

import pytest

from codexdock.app_server import AppServerConfig
from codexdock.models import RepoEntry

from tests.fakes import FakeRegistry, FakeSocket

FAKE_APP_SERVER = Path(__file__).parent / "fixtures" / "fake_app_server.py"


@pytest.fixture
def repo(tmp_path) -> RepoEntry:
    """A registered repository rooted in a temp directory."""
    return RepoEntry(repo_id="repo_test", name="test", path=str(tmp_path))


@pytest.fixture
def registry(repo) -> FakeRegistry:
    return FakeRegistry([repo])


@pytest.fixture
def socket() -> FakeSocket:
    return FakeSocket()


@pytest.fixture
def fake_server_config() -> AppServerConfig:
    """Config that spawns the scripted fake app-server with this interpreter."""
    return AppServerConfig(
        command=sys.executable,
        args=[str(FAKE_APP_SERVER)],
        request_timeout_seconds=2,
        connect_timeout_seconds=5,
        stop_grace_seconds=0.2,
    )
