"""Service credential collection for the control node.

Passwords already present in the environment (or in the credentials file left
by an interrupted run) are reused; only the missing ones are prompted for.
"""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Dict, List, MutableMapping, Optional, Sequence

from homelab_installer.exceptions import ConfigError, ValidationError
from homelab_installer.prompts import Prompter

logger = logging.getLogger(__name__)

MASTER_SERVICES = ["ArgoCD", "Pi-hole", "Traefik"]
MIN_PASSWORD_LENGTH = 8


def env_var_for(service: str) -> str:
    """Environment variable holding a service password, e.g. PI_HOLE_PASSWORD."""
    return f"{service.upper().replace('-', '_')}_PASSWORD"


def check_password(first: str, second: str) -> str:
    """Validate a password entered twice.

    Raises:
        ValidationError: If the entries differ or are too short.
    """
    if first != second:
        raise ValidationError("Passwords do not match. Please try again.")
    if len(first) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    return first


class CredentialCollector:
    """Collects, persists and exports service passwords."""

    def __init__(
        self,
        credentials_file: Path,
        prompter: Optional[Prompter] = None,
        environ: Optional[MutableMapping[str, str]] = None,
        service_user: str = "mozg",
        auto_confirm: bool = False,
    ):
        self.credentials_file = credentials_file
        self.prompter = prompter or Prompter()
        self.environ = environ if environ is not None else os.environ
        self.service_user = service_user
        self.auto_confirm = auto_confirm

    def _stored_values(self) -> Dict[str, str]:
        """Values already written to the credentials file by an earlier run."""
        stored: Dict[str, str] = {}
        if not self.credentials_file.is_file():
            return stored
        for line in self.credentials_file.read_text().splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            if value:
                stored[key.strip()] = value
        return stored

    def known_values(self, services: Sequence[str]) -> Dict[str, str]:
        """Map service -> password for services that already have one."""
        stored = self._stored_values()
        known = {}
        for service in services:
            var = env_var_for(service)
            value = self.environ.get(var) or stored.get(var)
            if value:
                known[service] = value
        return known

    def missing(self, services: Sequence[str]) -> List[str]:
        known = self.known_values(services)
        return [s for s in services if s not in known]

    def collect(self, required_services: Sequence[str] = MASTER_SERVICES) -> Dict[str, str]:
        """Ensure every required service has a password.

        Returns:
            Mapping of service name to password.

        Raises:
            ConfigError: If passwords are missing and prompting is disallowed.
        """
        known = self.known_values(required_services)
        missing = [s for s in required_services if s not in known]

        if not missing:
            logger.info("All service passwords found in environment")
            for service, value in known.items():
                self.environ[env_var_for(service)] = value
            return known

        if self.auto_confirm:
            names = ", ".join(env_var_for(s) for s in missing)
            raise ConfigError(f"AUTO_CONFIRM is set but passwords are missing: {names}")

        print("")
        print(f"Please provide credentials for services (username: {self.service_user})")
        print(f"Missing passwords for: {' '.join(missing)}")
        print("")

        self._write_header()
        for service in required_services:
            if service in known:
                self._accept(service, known[service])

        for service in missing:
            known[service] = self._accept(service, self._prompt_password(service))

        logger.info(f"Credentials saved to {self.credentials_file}")
        return known

    def _prompt_password(self, service: str) -> str:
        while True:
            first = self.prompter.ask_secret(f"Enter password for {service}")
            second = self.prompter.ask_secret(f"Confirm password for {service}")
            try:
                return check_password(first, second)
            except ValidationError as e:
                print(str(e))

    def _write_header(self) -> None:
        self.credentials_file.parent.mkdir(parents=True, exist_ok=True)
        self.credentials_file.write_text("")
        self.credentials_file.chmod(0o600)
        header = [
            "# Homelab Service Credentials",
            f"# Generated: {datetime.now():%Y-%m-%d %H:%M:%S}",
            f"# Username for all services: {self.service_user}",
            "",
        ]
        with open(self.credentials_file, "a") as f:
            f.write("\n".join(header) + "\n")

    def _accept(self, service: str, value: str) -> str:
        var = env_var_for(service)
        with open(self.credentials_file, "a") as f:
            f.write(f"{var}={value}\n")
        self.environ[var] = value
        return value
