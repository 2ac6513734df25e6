"""Environment resolution: layered configuration with interactive fallback.

Sources, highest precedence first:

1. the calling process environment
2. ``<home>/.env``
3. ``<home>/node.info`` written by a previous run
4. ``<installer>/.env`` bundled next to the installer itself

Files are parsed as key=value data with python-dotenv, never sourced as code.
"""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Dict, Mapping, Optional

from dotenv import dotenv_values, set_key

from homelab_installer.config import KNOWN_KEYS, InstallPaths, NodeRole, Settings, validate_ip
from homelab_installer.exceptions import ConfigError, ValidationError
from homelab_installer.prompts import Prompter

logger = logging.getLogger(__name__)


def read_env_file(path: Path, warn_unknown: bool = True) -> Dict[str, str]:
    """Parse a key=value file, dropping bare keys and warning on unknown ones."""
    if not path.is_file():
        return {}
    values = {k: v for k, v in dotenv_values(path).items() if v is not None}
    if warn_unknown:
        for key in values:
            if key not in KNOWN_KEYS:
                logger.warning(f"Unknown key {key} in {path} (ignored)")
    return values


class EnvironmentResolver:
    """Builds the effective :class:`Settings` for one installer run."""

    def __init__(
        self,
        paths: InstallPaths,
        installer_dir: Optional[Path] = None,
        prompter: Optional[Prompter] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        """
        Args:
            paths: Layout of the installation home directory.
            installer_dir: Directory of the installer's own copy; its ``.env``
                is the lowest-precedence source.
            prompter: Used for the interactive fallback.
            environ: Process environment (defaults to ``os.environ``).
        """
        self.paths = paths
        self.installer_dir = installer_dir
        self.prompter = prompter or Prompter()
        self.environ = environ if environ is not None else os.environ

    def ensure_layout(self) -> None:
        """Create the home directory tree and an empty, private .env file."""
        for directory in self.paths.standard_dirs():
            directory.mkdir(parents=True, exist_ok=True)
        env_file = self.paths.env_file
        if not env_file.exists():
            logger.info(f"Creating {env_file}")
            env_file.touch()
            env_file.chmod(0o600)

    def merged_values(self) -> Dict[str, str]:
        """Merge all sources according to precedence."""
        merged: Dict[str, str] = {}
        if self.installer_dir is not None:
            merged.update(read_env_file(self.installer_dir / ".env"))
        merged.update(read_env_file(self.paths.node_info, warn_unknown=False))
        merged.update(read_env_file(self.paths.env_file))
        for key in KNOWN_KEYS:
            value = self.environ.get(key)
            if value:
                merged[key] = value
        return merged

    def load(self) -> Settings:
        """Load settings without validating or prompting."""
        return Settings.from_values(self.merged_values())

    def resolve(self) -> Settings:
        """Return validated settings, prompting once when allowed.

        Raises:
            ConfigError: If required values are missing and AUTO_CONFIRM is
                set, or if they are still missing after the interactive round.
        """
        self.ensure_layout()
        settings = self.load()
        missing = settings.missing_required()
        if not missing:
            self._log_settings(settings)
            return settings

        if settings.auto_confirm:
            raise ConfigError(
                f"Missing required variables: {', '.join(missing)}. "
                f"AUTO_CONFIRM is set, add them to {self.paths.env_file}"
            )

        logger.info(f"Missing required variables: {', '.join(missing)}")
        collected = self.collect_interactively(settings)
        for key, value in collected.items():
            self.persist(key, value)

        # Answers given just now beat whatever the layered sources held.
        settings = Settings.from_values({**self.merged_values(), **collected})
        missing = settings.missing_required()
        if missing:
            raise ConfigError(f"Missing required variables after setup: {', '.join(missing)}")
        self._log_settings(settings)
        return settings

    def collect_interactively(self, settings: Settings) -> Dict[str, str]:
        """One round of prompts for whatever is missing."""
        collected: Dict[str, str] = {}
        role = settings.role

        if role is None:
            role = self.prompt_role()
            collected["NODE_TYPE"] = role.value
            if role is NodeRole.SLAVE:
                number = self.prompter.ask("Enter slave node number (e.g., 1 for slave-node-1)").strip()
                collected["NODE_NAME"] = f"slave-node-{number}" if number else "slave-node"
            else:
                collected["NODE_NAME"] = "master-node"

        if role is NodeRole.SLAVE and not validate_ip(settings.master_ip):
            collected["MASTER_IP"] = self.prompt_master_ip()

        return collected

    def prompt_role(self) -> NodeRole:
        """Numeric two-choice role menu, repeated until the answer is valid."""
        while True:
            print("")
            print("Please select the node type to install:")
            print("1) master-node - Central management node (K3s server, ArgoCD, Pi-hole, Traefik)")
            print("2) slave-node  - Worker node (K3s agent only)")
            choice = self.prompter.ask("Enter your choice (1-2)").strip()
            if choice in ("1", "2"):
                role = NodeRole.parse(choice)
                logger.info(f"Selected: {role.value}")
                return role
            print("Invalid choice. Please enter 1 or 2.")

    def prompt_master_ip(self) -> str:
        """Ask for the master IP until a valid IPv4 address is given."""
        while True:
            value = self.prompter.ask("Enter master node IP address").strip()
            try:
                return check_ip(value)
            except ValidationError as e:
                logger.error(str(e))

    def persist(self, key: str, value: str) -> None:
        """Write one value back into the home .env file."""
        self.paths.env_file.touch(exist_ok=True)
        set_key(str(self.paths.env_file), key, value, quote_mode="never")
        logger.debug(f"Saved {key} to {self.paths.env_file}")

    def write_node_info(self, settings: Settings) -> Path:
        """Write the node info snapshot read by later steps and later runs."""
        install_date = datetime.now().astimezone().isoformat(timespec="seconds")
        lines = [
            f"NODE_TYPE={settings.role.value if settings.role else ''}",
            f"NODE_NAME={settings.effective_node_name}",
            f"INSTALL_DATE={install_date}",
            f"MASTER_IP={settings.master_ip or ''}",
        ]
        self.paths.node_info.write_text("\n".join(lines) + "\n")
        logger.info(f"Node info written to {self.paths.node_info}")
        return self.paths.node_info

    def _log_settings(self, settings: Settings) -> None:
        logger.info(f"Node type: {settings.role.value}")
        if settings.role is NodeRole.SLAVE:
            logger.info(f"Master IP: {settings.master_ip}")


def check_ip(value: str) -> str:
    """Return value if it is a valid IPv4 address.

    Raises:
        ValidationError: For anything that is not a dotted-quad address.
    """
    if not validate_ip(value):
        raise ValidationError(f"Invalid IP address format: {value!r}")
    return value
