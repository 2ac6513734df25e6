"""Typed configuration for the homelab installer.

Values come from key=value sources (process environment, ``.env`` files,
``node.info``) merged by :mod:`homelab_installer.environment`. This module only
knows the recognized keys, their defaults, and the filesystem layout under the
installation home directory.
"""

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional

DEFAULT_HOME = Path(os.path.expanduser("~")) / "homelab"
DEFAULT_GITHUB_KEYS_URL = "https://github.com/razumnyak.keys"

# Matches the historical installer: decimal octets 0-255, no leading zeros.
_OCTET = r"(?:[0-9]|[1-9][0-9]|1[0-9]{2}|2[0-4][0-9]|25[0-5])"
_IPV4_RE = re.compile(rf"(?:{_OCTET}\.){{3}}{_OCTET}")

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}


class NodeRole(Enum):
    """Role this host plays in the cluster."""

    MASTER = "master-node"
    SLAVE = "slave-node"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["NodeRole"]:
        """Parse a role from its persisted, short or menu form.

        Returns None for empty or unrecognized input.
        """
        if not value:
            return None
        normalized = value.strip().lower()
        aliases = {
            "master-node": cls.MASTER,
            "master": cls.MASTER,
            "1": cls.MASTER,
            "slave-node": cls.SLAVE,
            "slave": cls.SLAVE,
            "worker": cls.SLAVE,
            "2": cls.SLAVE,
        }
        return aliases.get(normalized)

    @property
    def is_master(self) -> bool:
        return self is NodeRole.MASTER


def validate_ip(value: Optional[str]) -> bool:
    """Return True if value is a dotted-quad IPv4 address."""
    if not value:
        return False
    return bool(_IPV4_RE.fullmatch(value))


def parse_bool(value: Optional[str], default: bool = False) -> bool:
    """Interpret shell-style boolean strings."""
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


# Recognized keys and their defaults. None means "no default".
KNOWN_KEYS: Dict[str, Optional[str]] = {
    "NODE_TYPE": None,
    "NODE_NAME": None,
    "MASTER_IP": None,
    "INSTALL_DATE": None,
    "AUTO_CONFIRM": "false",
    "GITHUB_KEYS_URL": DEFAULT_GITHUB_KEYS_URL,
    "ENABLE_SSH_KEY_SYNC": "true",
    "SSH_KEY_SYNC_HOUR": "3",
    "HOMELAB_RESET": "false",
    "HOMELAB_FACTORY_RESET_DONE": "false",
    "SERVICE_USER": "mozg",
    "SSH_USER": "homelab",
    "ARGOCD_PASSWORD": None,
    "PI_HOLE_PASSWORD": None,
    "TRAEFIK_PASSWORD": None,
    "DEBUG": None,
    "HOMELAB_DIR": None,
}


@dataclass(frozen=True)
class InstallPaths:
    """Filesystem layout under the installation home directory."""

    home: Path

    @property
    def env_file(self) -> Path:
        return self.home / ".env"

    @property
    def node_info(self) -> Path:
        return self.home / "node.info"

    @property
    def installed_csv(self) -> Path:
        return self.home / "installed.csv"

    @property
    def run_state(self) -> Path:
        return self.home / "run-state.json"

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"

    @property
    def configs_dir(self) -> Path:
        return self.home / "configs"

    @property
    def scripts_dir(self) -> Path:
        return self.home / "scripts"

    @property
    def backups_dir(self) -> Path:
        return self.home / "backups"

    @property
    def docs_dir(self) -> Path:
        return self.home / "docs"

    @property
    def credentials_file(self) -> Path:
        return self.docs_dir / "credentials.txt"

    @property
    def nodes_list(self) -> Path:
        return self.configs_dir / "nodes.list"

    @property
    def ssh_config_dir(self) -> Path:
        return self.configs_dir / "ssh"

    @property
    def ssh_keys_dir(self) -> Path:
        return self.ssh_config_dir / "keys"

    def standard_dirs(self) -> list:
        """Directories every run expects to exist."""
        return [self.home, self.logs_dir, self.configs_dir, self.scripts_dir, self.backups_dir, self.docs_dir]

    @classmethod
    def from_environment(cls) -> "InstallPaths":
        """Resolve the home directory from HOMELAB_DIR, defaulting to ~/homelab."""
        home = os.getenv("HOMELAB_DIR")
        return cls(Path(home).expanduser() if home else DEFAULT_HOME)


@dataclass(frozen=True)
class Settings:
    """Effective configuration after all sources have been merged."""

    role: Optional[NodeRole] = None
    node_name: Optional[str] = None
    master_ip: Optional[str] = None
    install_date: Optional[str] = None
    auto_confirm: bool = False
    github_keys_url: str = DEFAULT_GITHUB_KEYS_URL
    ssh_key_sync_enabled: bool = True
    ssh_key_sync_hour: int = 3
    factory_reset_requested: bool = False
    factory_reset_done: bool = False
    service_user: str = "mozg"
    ssh_user: str = "homelab"
    debug: bool = False
    raw: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_values(cls, values: Mapping[str, str]) -> "Settings":
        """Build settings from a merged key/value mapping, applying defaults."""

        def get(key: str) -> Optional[str]:
            value = values.get(key)
            if value is None or value == "":
                return KNOWN_KEYS.get(key)
            return value

        hour_raw = get("SSH_KEY_SYNC_HOUR") or "3"
        try:
            hour = int(hour_raw)
        except ValueError:
            hour = -1
        if not 0 <= hour <= 23:
            hour = 3

        return cls(
            role=NodeRole.parse(get("NODE_TYPE")),
            node_name=get("NODE_NAME"),
            master_ip=(get("MASTER_IP") or "").strip() or None,
            install_date=get("INSTALL_DATE"),
            auto_confirm=parse_bool(get("AUTO_CONFIRM")),
            github_keys_url=get("GITHUB_KEYS_URL") or DEFAULT_GITHUB_KEYS_URL,
            ssh_key_sync_enabled=parse_bool(get("ENABLE_SSH_KEY_SYNC"), default=True),
            ssh_key_sync_hour=hour,
            factory_reset_requested=parse_bool(get("HOMELAB_RESET")),
            factory_reset_done=parse_bool(get("HOMELAB_FACTORY_RESET_DONE")),
            service_user=get("SERVICE_USER") or "mozg",
            ssh_user=get("SSH_USER") or "homelab",
            debug=parse_bool(get("DEBUG")),
            raw=dict(values),
        )

    def missing_required(self) -> list:
        """Names of required keys that are absent or invalid."""
        missing = []
        if self.role is None:
            missing.append("NODE_TYPE")
        elif self.role is NodeRole.SLAVE and not validate_ip(self.master_ip):
            missing.append("MASTER_IP")
        return missing

    @property
    def effective_node_name(self) -> str:
        if self.node_name:
            return self.node_name
        if self.role is NodeRole.SLAVE:
            return "slave-node"
        return "master-node"
