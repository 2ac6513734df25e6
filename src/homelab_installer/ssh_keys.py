#!/usr/bin/env python3
"""
src/homelab_installer/ssh_keys.py

SSH key management for homelab nodes.

Handles:
- Merging a remote authorized-keys list (e.g. https://github.com/<user>.keys)
  into the local authorized_keys file, append-only
- Dated backups of authorized_keys with 30-day retention
- First-time generation of the master, ArgoCD deploy and personal key pairs
- Pushing the merged key material to every registered worker node

Usage:
    sync = AuthorizedKeysSync(Path.home() / ".ssh" / "authorized_keys")
    result = sync.sync("https://github.com/someone.keys")

    distributor = KeyDistributor(paths, sync.authorized_keys)
    report = distributor.distribute(["10.0.0.60", "10.0.0.61"])

All operations are idempotent and safe to re-run.
"""

import logging
import re
import socket
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import paramiko
import requests

from homelab_installer.config import InstallPaths
from homelab_installer.exceptions import DistributionError, FetchError, InstallerError
from homelab_installer.ledger import ComponentKind, InstalledLedger
from homelab_installer.remote import RemoteSession
from homelab_installer.schedule import schedule_ssh_key_sync

logger = logging.getLogger(__name__)

BACKUP_RETENTION_DAYS = 30
BACKUP_PREFIX = "authorized_keys."
MASTER_KEY = "homelab-master"
DEPLOY_KEY = "argocd-deploy"
PERSONAL_KEY = "github-personal"

KNOWN_HOSTS = """\
# GitHub
github.com ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIOMqqnkVzrm0SdG6UOoqKLsabgH5C9okWi0dh2l9GKJl
github.com ecdsa-sha2-nistp256 AAAAE2VjZHNhLXNoYTItbmlzdHAyNTYAAAAIbmlzdHAyNTYAAABBBEmKSENjQEezOmxkZMy7opKgwFB9nkt5YRrYMjNuG5N87uRgg6CLrbo5wAdT/y6v0mKV0U2w0WZ2YB/++Tpockg=

# GitLab
gitlab.com ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIAfuCHKVTjquxvt6CM6tdG4SLp1Btn/nOeHHE5UOzRdf
gitlab.com ecdsa-sha2-nistp256 AAAAE2VjZHNhLXNoYTItbmlzdHAyNTYAAAAIbmlzdHAyNTYAAABBBFSMqzJeV9rUzU4kWitGjeR4PWSa29SPqJ1fVkhtj3Hw9xjLVXVYrU9QlYWrOLXBpQ6KWjbjTDTdDkoohFzgbEY=

# Bitbucket
bitbucket.org ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIIazEu89wgQZ4bqs3d63QSMzYVa0MuJ2e2gKTKqu+UUO
bitbucket.org ecdsa-sha2-nistp256 AAAAE2VjZHNhLXNoYTItbmlzdHAyNTYAAAAIbmlzdHAyNTYAAABBBPIQmuzMBuKdWeF4+a2sjSSpBK0iqitSQ+5BM9KhpexuGt20JpTVM7u5BDZngncgrqDMbWdxMWWOGtZ9UgbqgZE=
"""

# Runs on the worker with sudo. Merges authorized keys (never replaces) and
# installs the key pairs and client config with the right ownership.
WORKER_SETUP_SCRIPT = """\
#!/bin/bash
set -e

TARGET_USER="{user}"
TARGET_HOME="$(getent passwd "$TARGET_USER" | cut -d: -f6)"
SSH_DIR="$TARGET_HOME/.ssh"
CONFIG_DIR="$TARGET_HOME/homelab/configs/ssh"

mkdir -p "$SSH_DIR" "$CONFIG_DIR/keys"
chmod 700 "$SSH_DIR" "$CONFIG_DIR" "$CONFIG_DIR/keys"

if [[ -f /tmp/authorized_keys ]]; then
    touch "$SSH_DIR/authorized_keys"
    while IFS= read -r key || [[ -n "$key" ]]; do
        [[ -z "$key" ]] && continue
        grep -qxF "$key" "$SSH_DIR/authorized_keys" || echo "$key" >> "$SSH_DIR/authorized_keys"
    done < /tmp/authorized_keys
    chmod 600 "$SSH_DIR/authorized_keys"
fi

if [[ -d /tmp/ssh_keys ]]; then
    cp /tmp/ssh_keys/* "$CONFIG_DIR/keys/"
    chmod 600 "$CONFIG_DIR/keys"/*
    chmod 644 "$CONFIG_DIR/keys"/*.pub
fi

if [[ -f /tmp/ssh_config ]]; then
    cp /tmp/ssh_config "$CONFIG_DIR/config"
    chmod 600 "$CONFIG_DIR/config"
fi

if [[ -f /tmp/known_hosts ]]; then
    cp /tmp/known_hosts "$CONFIG_DIR/known_hosts"
    chmod 644 "$CONFIG_DIR/known_hosts"
fi

chown -R "$TARGET_USER:$TARGET_USER" "$SSH_DIR" "$CONFIG_DIR"
ln -sfn "$CONFIG_DIR" "$SSH_DIR/homelab"

echo "SSH keys distributed successfully"
"""

STAGING_FILES = "/tmp/setup_keys.sh /tmp/authorized_keys /tmp/ssh_config /tmp/known_hosts"
STAGING_DIR = "/tmp/ssh_keys"


def normalize_key(line: str) -> str:
    """Dedup identity of an authorized-keys line.

    Trailing whitespace is stripped and runs of whitespace collapse to one
    space. Comments are kept, so the same key with a different comment is a
    different entry.
    """
    return re.sub(r"\s+", " ", line.rstrip())


def github_user_from_url(url: str) -> str:
    """Extract the account name from a https://github.com/<user>.keys URL."""
    match = re.search(r"/([^/]+)\.keys$", url)
    return match.group(1) if match else "homelab"


@dataclass
class SyncResult:
    """Outcome of one authorized-keys sync."""

    added: int = 0
    already_present: int = 0
    backup: Optional[Path] = None
    added_keys: List[str] = field(default_factory=list)


class AuthorizedKeysSync:
    """Append-only merge of a remote key list into authorized_keys."""

    def __init__(
        self,
        authorized_keys: Path,
        backup_dir: Optional[Path] = None,
        http: Optional[requests.Session] = None,
        timeout: int = 30,
        retention_days: int = BACKUP_RETENTION_DAYS,
    ) -> None:
        """
        Args:
            authorized_keys: Working authorized_keys file.
            backup_dir: Where dated backups go (defaults to <ssh dir>/backups).
            http: requests session, mostly for tests.
            timeout: HTTP timeout in seconds.
            retention_days: Backups older than this are pruned.
        """
        self.authorized_keys = authorized_keys
        self.backup_dir = backup_dir or authorized_keys.parent / "backups"
        self.http = http or requests.Session()
        self.timeout = timeout
        self.retention_days = retention_days

    def ensure_files(self) -> None:
        """Create the ssh dir, authorized_keys and backup dir with tight modes."""
        ssh_dir = self.authorized_keys.parent
        if not ssh_dir.exists():
            ssh_dir.mkdir(parents=True)
            ssh_dir.chmod(0o700)
        if not self.authorized_keys.exists():
            logger.info(f"Creating new authorized_keys file {self.authorized_keys}")
            self.authorized_keys.touch()
        self.authorized_keys.chmod(0o600)
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    def fetch(self, url: str) -> List[str]:
        """Download the remote key list.

        Raises:
            FetchError: If the request fails or the body is empty. An empty
                body is never treated as "zero keys".
        """
        logger.info(f"Fetching keys from {url}")
        try:
            response = self.http.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise FetchError(f"Failed to fetch keys from {url}: {e}") from e

        body = response.text
        if not body.strip():
            raise FetchError(f"Downloaded keys from {url} are empty")
        return body.splitlines()

    def backup(self) -> Path:
        """Copy authorized_keys to a dated, private backup file."""
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        backup_file = self.backup_dir / f"{BACKUP_PREFIX}{timestamp}"
        suffix = 1
        while backup_file.exists():
            backup_file = self.backup_dir / f"{BACKUP_PREFIX}{timestamp}.{suffix}"
            suffix += 1

        backup_file.write_bytes(self.authorized_keys.read_bytes())
        backup_file.chmod(0o600)
        logger.info(f"Backup created: {backup_file}")
        return backup_file

    def prune_backups(self, keep: Path) -> int:
        """Delete backups older than the retention window, except keep."""
        cutoff = time.time() - self.retention_days * 86400
        removed = 0
        for old_backup in self.backup_dir.glob(f"{BACKUP_PREFIX}*"):
            if old_backup == keep:
                continue
            try:
                if old_backup.stat().st_mtime < cutoff:
                    old_backup.unlink()
                    removed += 1
                    logger.debug(f"Removed old backup: {old_backup}")
            except OSError as e:
                logger.warning(f"Failed to remove old backup {old_backup}: {e}")
        return removed

    def merge(self, remote_lines: Iterable[str]) -> SyncResult:
        """Append remote lines not already present, in source order."""
        content = self.authorized_keys.read_text()
        existing = [normalize_key(line) for line in content.splitlines() if line.strip()]
        result = SyncResult()
        new_lines: List[str] = []

        for line in remote_lines:
            if not line.strip():
                continue
            normalized = normalize_key(line)
            if normalized in existing:
                result.already_present += 1
                continue
            existing.append(normalized)
            new_lines.append(line.rstrip("\r\n"))
            logger.info(f"Added new key: {line[:50]}...")

        if new_lines:
            with open(self.authorized_keys, "a") as f:
                if content and not content.endswith("\n"):
                    f.write("\n")
                f.write("\n".join(new_lines) + "\n")

        result.added = len(new_lines)
        result.added_keys = new_lines
        return result

    def sync(self, source_url: str) -> SyncResult:
        """Back up, fetch and merge.

        Raises:
            FetchError: On an unreachable source or empty body; the
                authorized_keys file is left untouched.
        """
        logger.info("Starting smart SSH key update")
        self.ensure_files()
        backup_file = self.backup()
        try:
            self.prune_backups(keep=backup_file)
        except OSError as e:
            logger.warning(f"Backup pruning failed: {e}")

        remote_lines = self.fetch(source_url)
        result = self.merge(remote_lines)
        result.backup = backup_file
        logger.info(f"Summary: {result.added} new keys added, {result.already_present} keys already existed")
        return result


class KeyManager:
    """Creates the control node's key pairs and SSH client configuration."""

    def __init__(
        self,
        paths: InstallPaths,
        github_keys_url: str,
        ledger: Optional[InstalledLedger] = None,
    ) -> None:
        self.paths = paths
        self.github_keys_url = github_keys_url
        self.github_user = github_user_from_url(github_keys_url)
        self.ledger = ledger or InstalledLedger(paths.installed_csv)
        self.keys_dir = paths.ssh_keys_dir
        self.ssh_config = paths.ssh_config_dir / "config"
        self.known_hosts = paths.ssh_config_dir / "known_hosts"

    def key_path(self, name: str) -> Path:
        return self.keys_dir / name

    def create_directories(self) -> None:
        logger.info("Creating SSH directories structure...")
        self.keys_dir.mkdir(parents=True, exist_ok=True)
        self.paths.ssh_config_dir.chmod(0o700)
        self.keys_dir.chmod(0o700)

    def generate_key(self, name: str, comment: str) -> Path:
        """Generate an ed25519 key pair unless it already exists."""
        key = self.key_path(name)
        if key.exists():
            logger.info(f"SSH key {name} already exists")
            return key

        try:
            subprocess.run(
                ["ssh-keygen", "-t", "ed25519", "-C", comment, "-f", str(key), "-N", ""],
                capture_output=True,
                text=True,
                check=True,
                timeout=60,
            )
        except subprocess.CalledProcessError as e:
            raise RuntimeError(f"ssh-keygen failed for {name}: {e.stderr}") from e
        except subprocess.TimeoutExpired as e:
            raise RuntimeError(f"ssh-keygen timed out for {name}") from e

        key.chmod(0o600)
        key.with_name(f"{name}.pub").chmod(0o644)
        logger.info(f"SSH key generated: {key}.pub")
        return key

    def generate_all(self) -> Dict[str, Path]:
        return {
            MASTER_KEY: self.generate_key(MASTER_KEY, f"homelab-master@{socket.gethostname()}"),
            DEPLOY_KEY: self.generate_key(DEPLOY_KEY, "argocd-deploy@homelab"),
            PERSONAL_KEY: self.generate_key(PERSONAL_KEY, f"{self.github_user}@homelab"),
        }

    def write_ssh_config(self) -> Path:
        logger.info("Creating SSH configuration...")
        keys = self.keys_dir
        self.ssh_config.write_text(
            "# Homelab SSH Configuration\n"
            "Host github.com\n"
            "    HostName github.com\n"
            "    User git\n"
            f"    IdentityFile {keys / PERSONAL_KEY}\n"
            "    IdentitiesOnly yes\n"
            "\n"
            "Host argocd-github\n"
            "    HostName github.com\n"
            "    User git\n"
            f"    IdentityFile {keys / DEPLOY_KEY}\n"
            "    IdentitiesOnly yes\n"
            "\n"
            "Host gitlab.com\n"
            "    HostName gitlab.com\n"
            "    User git\n"
            f"    IdentityFile {keys / DEPLOY_KEY}\n"
            "    IdentitiesOnly yes\n"
            "\n"
            "Host bitbucket.org\n"
            "    HostName bitbucket.org\n"
            "    User git\n"
            f"    IdentityFile {keys / DEPLOY_KEY}\n"
            "    IdentitiesOnly yes\n"
            "\n"
            "Host homelab-*\n"
            f"    IdentityFile {keys / MASTER_KEY}\n"
            "    User homelab\n"
            "    StrictHostKeyChecking no\n"
            "    UserKnownHostsFile /dev/null\n"
        )
        self.ssh_config.chmod(0o600)
        self.ledger.record(
            ComponentKind.CONFIG, "ssh-config", "1.0", "file", str(self.ssh_config), "SSH configuration for homelab"
        )
        return self.ssh_config

    def write_known_hosts(self) -> Path:
        logger.info("Setting up SSH known hosts...")
        self.known_hosts.write_text(KNOWN_HOSTS)
        self.known_hosts.chmod(0o644)
        self.ledger.record(
            ComponentKind.CONFIG, "ssh-known-hosts", "1.0", "file", str(self.known_hosts), "SSH known hosts file"
        )
        return self.known_hosts

    def write_docs(self) -> Path:
        """Write a page with the public keys to paste into Git hosting."""

        def pub(name: str) -> str:
            path = self.key_path(name).with_name(f"{name}.pub")
            return path.read_text().strip() if path.exists() else "Key not generated yet"

        self.paths.docs_dir.mkdir(parents=True, exist_ok=True)
        doc = self.paths.docs_dir / "ssh-keys-info.txt"
        doc.write_text(
            "Homelab SSH Keys Management\n"
            "===========================\n\n"
            "## Key Locations:\n"
            f"Master Key:    {self.key_path(MASTER_KEY)}\n"
            f"ArgoCD Key:    {self.key_path(DEPLOY_KEY)}\n"
            f"GitHub Key:    {self.key_path(PERSONAL_KEY)}\n\n"
            "## ArgoCD Deploy Key (read-only access to private repos):\n"
            f"{pub(DEPLOY_KEY)}\n\n"
            "## GitHub Personal Key:\n"
            f"{pub(PERSONAL_KEY)}\n\n"
            "## SSH Access:\n"
            f"- Master node reaches workers with {self.key_path(MASTER_KEY)}\n"
            f"- Keys from {self.github_keys_url} are merged into authorized_keys daily\n"
            f"- SSH config: {self.ssh_config}\n"
        )
        logger.info(f"SSH documentation saved to {doc}")
        return doc

    def setup(
        self,
        sync: Optional[AuthorizedKeysSync] = None,
        schedule_hour: Optional[int] = None,
    ) -> Dict[str, Path]:
        """Full first-time setup on this node.

        Args:
            sync: Merges the remote key list once; a fetch failure is only a
                warning here since the daily job retries it.
            schedule_hour: Install the daily sync job at this hour, or skip
                scheduling when None.

        Returns:
            Mapping of key name to private key path.
        """
        logger.info("Setting up SSH keys management...")
        self.ledger.ensure_header()
        self.create_directories()
        keys = self.generate_all()
        for name, path in keys.items():
            self.ledger.record(ComponentKind.CONFIG, f"ssh-key-{name}", "ed25519", "file", str(path))

        if sync is not None:
            try:
                sync.sync(self.github_keys_url)
            except FetchError as e:
                logger.warning(f"Initial key sync failed: {e}")

        self.write_ssh_config()
        self.write_known_hosts()

        if schedule_hour is not None:
            try:
                line = schedule_ssh_key_sync(schedule_hour, self.paths.logs_dir)
            except (InstallerError, ValueError) as e:
                logger.warning(f"Could not schedule SSH key sync: {e}")
            else:
                self.ledger.record(ComponentKind.SERVICE, "ssh-key-sync-cron", "1.0", "crontab", line, "Daily key sync")

        self.write_docs()
        logger.info("SSH keys setup completed")
        return keys


@dataclass
class DistributionReport:
    """Per-worker outcome of a distribution pass."""

    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


SessionFactory = Callable[..., RemoteSession]


class KeyDistributor:
    """Pushes merged key material from the control node to workers."""

    def __init__(
        self,
        paths: InstallPaths,
        authorized_keys: Path,
        ssh_user: str = "homelab",
        session_factory: SessionFactory = RemoteSession,
    ) -> None:
        self.paths = paths
        self.authorized_keys = authorized_keys
        self.ssh_user = ssh_user
        self.session_factory = session_factory
        self.keys_dir = paths.ssh_keys_dir
        self.master_key = paths.ssh_keys_dir / MASTER_KEY

    def build_authorized_payload(self, target: Path) -> Path:
        """Merged authorized keys plus the master public key, deduplicated."""
        lines: List[str] = []
        seen: List[str] = []
        sources = [self.authorized_keys, self.master_key.with_name(f"{MASTER_KEY}.pub")]
        for source in sources:
            if not source.exists():
                continue
            for line in source.read_text().splitlines():
                if not line.strip():
                    continue
                normalized = normalize_key(line)
                if normalized not in seen:
                    seen.append(normalized)
                    lines.append(line.rstrip())
        target.write_text("\n".join(lines) + ("\n" if lines else ""))
        target.chmod(0o600)
        return target

    def distribute(self, nodes: Iterable[str]) -> DistributionReport:
        """Push key material to every node; one failure never stops the rest."""
        report = DistributionReport()
        nodes = list(nodes)
        if not nodes:
            logger.warning("No worker nodes registered, nothing to distribute")
            return report

        logger.info("Distributing SSH keys to slave nodes...")
        with tempfile.TemporaryDirectory(prefix="homelab-keys-") as staging:
            staging_dir = Path(staging)
            payload = self.build_authorized_payload(staging_dir / "authorized_keys")
            script = staging_dir / "setup_keys.sh"
            script.write_text(WORKER_SETUP_SCRIPT.format(user=self.ssh_user))

            for host in nodes:
                logger.info(f"Distributing keys to slave node: {host}")
                try:
                    self.distribute_to(host, payload, script)
                except DistributionError as e:
                    logger.warning(f"Failed to distribute keys to {e}")
                    report.failed[host] = str(e)
                else:
                    logger.info(f"Successfully distributed keys to {host}")
                    report.succeeded.append(host)

        return report

    def distribute_to(self, host: str, payload: Path, script: Path) -> None:
        """Copy material to one worker and run the setup script there.

        Raises:
            DistributionError: If the worker is unreachable or setup fails.
        """
        session = self.session_factory(host, self.ssh_user, key_filename=self.master_key)
        try:
            session.put_file(payload, "/tmp/authorized_keys", mode=0o600)
            if self.keys_dir.is_dir():
                session.put_dir(self.keys_dir, STAGING_DIR)
            ssh_config = self.paths.ssh_config_dir / "config"
            if ssh_config.exists():
                session.put_file(ssh_config, "/tmp/ssh_config", mode=0o600)
            known_hosts = self.paths.ssh_config_dir / "known_hosts"
            if known_hosts.exists():
                session.put_file(known_hosts, "/tmp/known_hosts", mode=0o644)
            session.put_file(script, "/tmp/setup_keys.sh", mode=0o700)

            stdout, stderr, exit_code = session.execute("sudo bash /tmp/setup_keys.sh")
            if exit_code != 0:
                raise DistributionError(host, f"setup script exited {exit_code}: {stderr}")
        except (paramiko.SSHException, OSError) as e:
            raise DistributionError(host, str(e)) from e
        finally:
            self._cleanup(session, host)
            session.close()

    def _cleanup(self, session: RemoteSession, host: str) -> None:
        try:
            session.execute(f"rm -f {STAGING_FILES} && rm -rf {STAGING_DIR}")
        except (paramiko.SSHException, OSError) as e:
            logger.debug(f"Cleanup of staging files on {host} failed: {e}")


def default_authorized_keys() -> Path:
    return Path.home() / ".ssh" / "authorized_keys"


def sync_and_distribute(
    sync: AuthorizedKeysSync,
    source_url: str,
    distributor: Optional[KeyDistributor] = None,
    nodes: Iterable[str] = (),
) -> Tuple[SyncResult, Optional[DistributionReport]]:
    """Merge the remote key list, then push to workers when a distributor is given.

    The daily cron job and ``ssh-keys sync`` both go through here.
    """
    result = sync.sync(source_url)
    report = None
    if distributor is not None:
        report = distributor.distribute(nodes)
    return result, report
