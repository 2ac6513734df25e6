"""Tests for system, schedule and remote modules."""

import subprocess
from pathlib import Path
from unittest import mock

import pytest

from homelab_installer.exceptions import InstallerError
from homelab_installer.remote import RemoteSession
from homelab_installer.schedule import SSH_SYNC_MARKER, install_cron_job, read_crontab, ssh_sync_cron_line
from homelab_installer.system import get_primary_ip, ping


class TestPing:
    @mock.patch("subprocess.run")
    def test_alive(self, mock_run):
        mock_run.return_value = mock.MagicMock(returncode=0)
        assert ping("10.0.0.1") is True
        assert mock_run.call_args[0][0] == ["ping", "-c", "1", "-W", "1", "10.0.0.1"]

    @mock.patch("subprocess.run")
    def test_dead(self, mock_run):
        mock_run.return_value = mock.MagicMock(returncode=1)
        assert ping("10.0.0.1") is False

    @mock.patch("subprocess.run", side_effect=subprocess.TimeoutExpired("ping", 5))
    def test_timeout(self, mock_run):
        assert ping("10.0.0.1") is False


class TestPrimaryIp:
    @mock.patch("subprocess.run")
    def test_parses_src(self, mock_run):
        mock_run.return_value = mock.MagicMock(
            stdout="1.1.1.1 via 192.168.1.1 dev eth0 src 192.168.1.44 uid 1000\n    cache\n"
        )
        assert get_primary_ip() == "192.168.1.44"

    @mock.patch("subprocess.run", side_effect=FileNotFoundError("ip"))
    def test_missing_tool(self, mock_run):
        assert get_primary_ip() is None


class TestCron:
    """Test crontab management."""

    @mock.patch("homelab_installer.schedule.shutil.which", return_value="/usr/local/bin/homelab-installer")
    def test_cron_line(self, mock_which):
        line = ssh_sync_cron_line(3, Path("/home/u/homelab/logs"))
        assert line.startswith("0 3 * * * /usr/local/bin/homelab-installer ssh-keys sync")
        assert line.endswith(SSH_SYNC_MARKER)
        assert "/home/u/homelab/logs/ssh-key-updater-cron.log" in line

    def test_invalid_hour(self):
        with pytest.raises(ValueError):
            ssh_sync_cron_line(24, Path("/tmp"))

    @mock.patch("subprocess.run")
    def test_replaces_marked_entry(self, mock_run):
        existing = f"0 1 * * * backup.sh\n0 2 * * * old-sync {SSH_SYNC_MARKER}\n"
        mock_run.side_effect = [
            mock.MagicMock(returncode=0, stdout=existing),
            mock.MagicMock(returncode=0, stderr=""),
        ]

        install_cron_job(f"0 3 * * * new-sync {SSH_SYNC_MARKER}", SSH_SYNC_MARKER)

        written = mock_run.call_args_list[1][1]["input"]
        assert written == f"0 1 * * * backup.sh\n0 3 * * * new-sync {SSH_SYNC_MARKER}\n"

    @mock.patch("subprocess.run")
    def test_empty_crontab(self, mock_run):
        mock_run.side_effect = [
            mock.MagicMock(returncode=1, stdout="", stderr="no crontab for user"),
            mock.MagicMock(returncode=0, stderr=""),
        ]
        install_cron_job("0 3 * * * job", "# m")
        assert mock_run.call_args_list[1][1]["input"] == "0 3 * * * job\n"

    @mock.patch("subprocess.run")
    def test_write_failure(self, mock_run):
        mock_run.side_effect = [
            mock.MagicMock(returncode=0, stdout=""),
            mock.MagicMock(returncode=1, stderr="permission denied"),
        ]
        with pytest.raises(InstallerError, match="permission denied"):
            install_cron_job("0 3 * * * job", "# m")

    @mock.patch("subprocess.run", side_effect=FileNotFoundError("crontab"))
    def test_missing_crontab_binary(self, mock_run):
        with pytest.raises(InstallerError, match="Failed to read crontab"):
            read_crontab()

    @mock.patch("subprocess.run")
    def test_unreadable_crontab_is_not_overwritten(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired("crontab", 30)
        with pytest.raises(InstallerError):
            install_cron_job("0 3 * * * job", "# m")
        assert mock_run.call_count == 1


class TestRemoteSession:
    """Test paramiko-backed remote execution and upload."""

    def test_execute(self, mock_ssh):
        stdout = mock_ssh.exec_command.return_value[1]
        stdout.read.return_value = b"ok\n"

        with RemoteSession("10.0.0.61", "homelab", key_filename=Path("/nonexistent/key")) as session:
            out, err, code = session.execute("uptime")

        assert (out, err, code) == ("ok", "", 0)
        mock_ssh.connect.assert_called_once_with(hostname="10.0.0.61", username="homelab", key_filename=None, timeout=10)
        mock_ssh.close.assert_called_once()

    def test_put_file_sets_mode(self, mock_ssh, tmp_path):
        local = tmp_path / "authorized_keys"
        local.write_text("key\n")
        sftp = mock_ssh.open_sftp.return_value

        session = RemoteSession("10.0.0.61", "homelab")
        session.put_file(local, "/tmp/authorized_keys", mode=0o600)

        sftp.put.assert_called_once_with(str(local), "/tmp/authorized_keys")
        sftp.chmod.assert_called_once_with("/tmp/authorized_keys", 0o600)

    def test_put_dir_tolerates_existing_directory(self, mock_ssh, tmp_path):
        (tmp_path / "a").write_text("1")
        (tmp_path / "b.pub").write_text("2")
        (tmp_path / "sub").mkdir()
        sftp = mock_ssh.open_sftp.return_value
        sftp.mkdir.side_effect = IOError("exists")

        count = RemoteSession("10.0.0.61", "homelab").put_dir(tmp_path, "/tmp/ssh_keys")

        assert count == 2
        assert sftp.put.call_args_list[0][0][1] == "/tmp/ssh_keys/a"
