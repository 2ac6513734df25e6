"""Tests for environment module."""

import logging
import stat

import pytest

from homelab_installer.config import NodeRole
from homelab_installer.environment import EnvironmentResolver, check_ip, read_env_file
from homelab_installer.exceptions import ConfigError, ValidationError

from conftest import ScriptedPrompter


def _resolver(paths, prompter=None, environ=None, installer_dir=None):
    return EnvironmentResolver(paths, installer_dir, prompter or ScriptedPrompter(), environ or {})


class TestReadEnvFile:
    def test_missing_file(self, tmp_path):
        assert read_env_file(tmp_path / ".env") == {}

    def test_parses_values_without_executing(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("NODE_TYPE=master-node\nMASTER_IP=$(touch pwned)\n# comment\n")
        values = read_env_file(env)
        assert values["NODE_TYPE"] == "master-node"
        assert values["MASTER_IP"] == "$(touch pwned)"
        assert not (tmp_path / "pwned").exists()

    def test_unknown_key_warns(self, tmp_path, caplog):
        env = tmp_path / ".env"
        env.write_text("SOMETHING_ELSE=1\n")
        with caplog.at_level(logging.WARNING):
            values = read_env_file(env)
        assert values == {"SOMETHING_ELSE": "1"}
        assert "Unknown key SOMETHING_ELSE" in caplog.text


class TestPrecedence:
    """Process env > home .env > node.info > installer .env."""

    def test_order(self, paths, tmp_path):
        installer_dir = tmp_path / "installer"
        installer_dir.mkdir()
        (installer_dir / ".env").write_text("NODE_TYPE=slave-node\nMASTER_IP=10.0.0.1\nSERVICE_USER=a\nSSH_USER=x\n")
        paths.node_info.write_text("MASTER_IP=10.0.0.2\nSERVICE_USER=b\nSSH_USER=y\n")
        paths.env_file.write_text("MASTER_IP=10.0.0.3\nSSH_USER=z\n")

        resolver = _resolver(paths, environ={"MASTER_IP": "10.0.0.4", "PATH": "/bin"}, installer_dir=installer_dir)
        values = resolver.merged_values()

        assert values["NODE_TYPE"] == "slave-node"
        assert values["SERVICE_USER"] == "b"
        assert values["SSH_USER"] == "z"
        assert values["MASTER_IP"] == "10.0.0.4"
        assert "PATH" not in values

    def test_empty_environment_value_does_not_override(self, paths):
        paths.env_file.write_text("NODE_TYPE=master-node\n")
        resolver = _resolver(paths, environ={"NODE_TYPE": ""})
        assert resolver.load().role is NodeRole.MASTER


class TestResolve:
    """Test validation and interactive fallback."""

    def test_complete_configuration_needs_no_prompt(self, paths):
        paths.env_file.write_text("NODE_TYPE=slave-node\nMASTER_IP=192.168.1.10\n")
        settings = _resolver(paths).resolve()
        assert settings.role is NodeRole.SLAVE
        assert settings.master_ip == "192.168.1.10"

    def test_auto_confirm_missing_raises(self, paths):
        resolver = _resolver(paths, environ={"AUTO_CONFIRM": "true"})
        with pytest.raises(ConfigError, match="NODE_TYPE"):
            resolver.resolve()

    def test_auto_confirm_invalid_master_ip_raises(self, paths):
        paths.env_file.write_text("NODE_TYPE=slave-node\nMASTER_IP=300.1.1.1\nAUTO_CONFIRM=true\n")
        with pytest.raises(ConfigError, match="MASTER_IP"):
            _resolver(paths).resolve()

    def test_interactive_slave(self, paths):
        prompter = ScriptedPrompter(answers=["2", "3", "not-an-ip", "192.168.1.10"])
        settings = _resolver(paths, prompter=prompter).resolve()

        assert settings.role is NodeRole.SLAVE
        assert settings.node_name == "slave-node-3"
        assert settings.master_ip == "192.168.1.10"
        saved = read_env_file(paths.env_file)
        assert saved["NODE_TYPE"] == "slave-node"
        assert saved["NODE_NAME"] == "slave-node-3"
        assert saved["MASTER_IP"] == "192.168.1.10"

    def test_invalid_environment_master_ip_is_replaced_by_answer(self, paths):
        prompter = ScriptedPrompter(answers=["192.168.1.50"])
        environ = {"NODE_TYPE": "slave-node", "MASTER_IP": "master.local"}

        settings = _resolver(paths, prompter=prompter, environ=environ).resolve()

        assert settings.master_ip == "192.168.1.50"
        assert read_env_file(paths.env_file)["MASTER_IP"] == "192.168.1.50"

    def test_interactive_menu_reprompts(self, paths):
        prompter = ScriptedPrompter(answers=["7", "1"])
        settings = _resolver(paths, prompter=prompter).resolve()
        assert settings.role is NodeRole.MASTER
        assert settings.effective_node_name == "master-node"

    def test_creates_layout(self, paths):
        paths.env_file.write_text("NODE_TYPE=master-node\n")
        _resolver(paths).resolve()
        for directory in paths.standard_dirs():
            assert directory.is_dir()

    def test_new_env_file_is_private(self, paths):
        _resolver(paths).ensure_layout()
        assert stat.S_IMODE(paths.env_file.stat().st_mode) == 0o600


class TestNodeInfo:
    def test_write_node_info(self, paths, slave_settings):
        resolver = _resolver(paths)
        resolver.write_node_info(slave_settings)
        values = read_env_file(paths.node_info)
        assert values["NODE_TYPE"] == "slave-node"
        assert values["NODE_NAME"] == "slave-node-1"
        assert values["MASTER_IP"] == "192.168.1.10"
        assert "T" in values["INSTALL_DATE"]


def test_check_ip():
    assert check_ip("10.1.2.3") == "10.1.2.3"
    with pytest.raises(ValidationError):
        check_ip("10.1.2")
