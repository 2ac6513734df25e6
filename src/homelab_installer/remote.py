"""SSH/SFTP sessions to other homelab nodes."""

import logging
import posixpath
from pathlib import Path
from typing import Optional, Tuple

import paramiko

logger = logging.getLogger(__name__)


class RemoteSession:
    """Authenticated SSH session used for remote copy and remote commands."""

    def __init__(
        self,
        host: str,
        username: str,
        key_filename: Optional[Path] = None,
        timeout: int = 10,
    ) -> None:
        self.host = host
        self.username = username
        self.key_filename = key_filename
        self.timeout = timeout
        self.ssh_client: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None

    def _get_ssh_client(self) -> paramiko.SSHClient:
        if not self.ssh_client:
            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            key = str(self.key_filename) if self.key_filename and Path(self.key_filename).exists() else None
            logger.debug(f"Connecting to {self.username}@{self.host} (key={key})")
            client.connect(
                hostname=self.host,
                username=self.username,
                key_filename=key,
                timeout=self.timeout,
            )
            self.ssh_client = client
        return self.ssh_client

    def _get_sftp(self) -> paramiko.SFTPClient:
        if not self._sftp:
            self._sftp = self._get_ssh_client().open_sftp()
        return self._sftp

    def execute(self, command: str) -> Tuple[str, str, int]:
        """Run a command and return stdout, stderr and exit code."""
        ssh = self._get_ssh_client()
        stdin, stdout, stderr = ssh.exec_command(command, timeout=300)
        exit_code = stdout.channel.recv_exit_status()
        return stdout.read().decode().strip(), stderr.read().decode().strip(), exit_code

    def put_file(self, local: Path, remote: str, mode: Optional[int] = None) -> None:
        sftp = self._get_sftp()
        sftp.put(str(local), remote)
        if mode is not None:
            sftp.chmod(remote, mode)

    def put_dir(self, local_dir: Path, remote_dir: str) -> int:
        """Copy the regular files of a directory (non-recursive). Returns file count."""
        sftp = self._get_sftp()
        try:
            sftp.mkdir(remote_dir, mode=0o700)
        except IOError:
            # Already present from an interrupted previous attempt
            pass
        count = 0
        for path in sorted(Path(local_dir).iterdir()):
            if path.is_file():
                sftp.put(str(path), posixpath.join(remote_dir, path.name))
                count += 1
        return count

    def close(self) -> None:
        if self._sftp:
            self._sftp.close()
            self._sftp = None
        if self.ssh_client:
            self.ssh_client.close()
            self.ssh_client = None

    def __enter__(self) -> "RemoteSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
