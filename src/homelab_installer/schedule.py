"""Recurring jobs installed into the user's crontab."""

import logging
import shlex
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List

from homelab_installer.exceptions import InstallerError

logger = logging.getLogger(__name__)

SSH_SYNC_MARKER = "# homelab-ssh-key-sync"


def installer_command() -> List[str]:
    """Command that re-invokes this installer from cron."""
    exe = shutil.which("homelab-installer")
    if exe:
        return [exe]
    return [sys.executable, "-m", "homelab_installer"]


def ssh_sync_cron_line(hour: int, logs_dir: Path) -> str:
    """Daily crontab entry running the same key sync as ``ssh-keys sync``."""
    if not 0 <= hour <= 23:
        raise ValueError(f"Invalid hour for SSH key sync: {hour}")
    command = " ".join(shlex.quote(part) for part in installer_command() + ["ssh-keys", "sync"])
    log_file = shlex.quote(str(logs_dir / "ssh-key-updater-cron.log"))
    return f"0 {hour} * * * {command} >> {log_file} 2>&1 {SSH_SYNC_MARKER}"


def read_crontab() -> str:
    """Current user crontab, empty when none is installed.

    Raises:
        InstallerError: If crontab cannot be run at all. Treating that as an
            empty crontab would drop the existing entries on the next write.
    """
    try:
        result = subprocess.run(["crontab", "-l"], capture_output=True, text=True, timeout=30)
    except (subprocess.TimeoutExpired, OSError) as e:
        raise InstallerError(f"Failed to read crontab: {e}") from e
    if result.returncode != 0:
        return ""
    return result.stdout


def install_cron_job(line: str, marker: str) -> None:
    """Install line, replacing any existing entry carrying the same marker.

    Raises:
        InstallerError: If the crontab cannot be written.
    """
    current = read_crontab()
    kept = [entry for entry in current.splitlines() if marker not in entry]
    kept.append(line)
    content = "\n".join(kept) + "\n"

    try:
        result = subprocess.run(["crontab", "-"], input=content, capture_output=True, text=True, timeout=30)
    except (subprocess.TimeoutExpired, OSError) as e:
        raise InstallerError(f"Failed to update crontab: {e}") from e
    if result.returncode != 0:
        raise InstallerError(f"Failed to update crontab: {result.stderr.strip()}")
    logger.info(f"Cron job installed: {line}")


def schedule_ssh_key_sync(hour: int, logs_dir: Path) -> str:
    """Install the daily SSH key sync job and return its crontab line."""
    line = ssh_sync_cron_line(hour, logs_dir)
    install_cron_job(line, SSH_SYNC_MARKER)
    logger.info(f"SSH key sync scheduled daily at {hour}:00")
    return line
