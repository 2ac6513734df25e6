"""Shared test fixtures and configuration for homelab installer tests."""

import logging
from typing import Dict, List, Optional
from unittest import mock

import pytest

from homelab_installer.config import InstallPaths, Settings
from homelab_installer.pipeline import RunContext


class ScriptedPrompter:
    """Prompter replaying canned answers; fails loudly when it runs out."""

    def __init__(self, answers: Optional[List[str]] = None, secrets: Optional[List[str]] = None, confirm: bool = True):
        self.answers = list(answers or [])
        self.secrets = list(secrets or [])
        self.confirm_answer = confirm
        self.asked: List[str] = []

    def ask(self, text: str, default: str = "") -> str:
        self.asked.append(text)
        if not self.answers:
            raise AssertionError(f"Unexpected prompt: {text}")
        return self.answers.pop(0)

    def ask_secret(self, text: str) -> str:
        self.asked.append(text)
        if not self.secrets:
            raise AssertionError(f"Unexpected secret prompt: {text}")
        return self.secrets.pop(0)

    def confirm(self, text: str, default: bool = False) -> bool:
        self.asked.append(text)
        return self.confirm_answer


@pytest.fixture
def prompter():
    return ScriptedPrompter()


@pytest.fixture
def paths(tmp_path) -> InstallPaths:
    """Installation home under a temporary directory."""
    home = tmp_path / "homelab"
    home.mkdir()
    return InstallPaths(home)


@pytest.fixture
def clean_env() -> Dict[str, str]:
    """Empty process environment for resolver tests."""
    return {}


@pytest.fixture
def master_settings() -> Settings:
    return Settings.from_values({"NODE_TYPE": "master-node", "NODE_NAME": "master-node"})


@pytest.fixture
def slave_settings() -> Settings:
    return Settings.from_values(
        {"NODE_TYPE": "slave-node", "NODE_NAME": "slave-node-1", "MASTER_IP": "192.168.1.10"}
    )


@pytest.fixture
def slave_context(paths, slave_settings, tmp_path) -> RunContext:
    scripts = tmp_path / "scripts"
    scripts.mkdir()
    return RunContext.build(slave_settings, paths, scripts)


@pytest.fixture
def mock_ssh():
    """Mock paramiko SSH client with successful command execution by default."""
    with mock.patch("paramiko.SSHClient") as mock_ssh_class:
        ssh_client = mock.MagicMock()
        mock_ssh_class.return_value = ssh_client

        stdout = mock.MagicMock()
        stderr = mock.MagicMock()
        stdout.read.return_value = b""
        stdout.channel.recv_exit_status.return_value = 0
        stderr.read.return_value = b""

        ssh_client.exec_command.return_value = (None, stdout, stderr)

        yield ssh_client


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Keep handlers from one test's setup_logging out of the next."""
    yield
    logger = logging.getLogger("homelab_installer")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
