"""Registry of worker nodes kept on the control node (``configs/nodes.list``)."""

import logging
import shlex
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import paramiko

from homelab_installer.exceptions import ValidationError
from homelab_installer.remote import RemoteSession
from homelab_installer.system import get_primary_ip, ping

logger = logging.getLogger(__name__)

HEADER_LINES = ["# Homelab worker nodes, one IP or hostname per line"]


class NodeRegistry:
    """Set of worker addresses persisted as a sorted text file."""

    def __init__(
        self,
        path: Path,
        on_added: Optional[Callable[[str], None]] = None,
        probe: Callable[[str], bool] = ping,
    ):
        """
        Args:
            path: The nodes.list file.
            on_added: Called with the address after a new entry is written.
                The control node uses it to push SSH keys to the new worker.
            probe: Liveness check used by :meth:`list`.
        """
        self.path = path
        self.on_added = on_added
        self.probe = probe

    def _read(self) -> Tuple[List[str], List[str]]:
        """Return (comment lines, entries) from the file."""
        if not self.path.exists():
            return list(HEADER_LINES), []
        comments, entries = [], []
        for line in self.path.read_text().splitlines():
            stripped = line.strip()
            if not stripped:
                continue
            if stripped.startswith("#"):
                comments.append(stripped)
            else:
                entries.append(stripped)
        return comments, entries

    def _write(self, comments: List[str], entries: List[str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lines = comments + sorted(set(entries))
        self.path.write_text("\n".join(lines) + "\n")

    def entries(self) -> List[str]:
        return sorted(set(self._read()[1]))

    def add(self, address: str) -> bool:
        """Register a worker. Returns False when it was already listed."""
        address = _check_address(address)
        comments, entries = self._read()
        if address in entries:
            logger.info(f"Node {address} already in list")
            return False

        entries.append(address)
        self._write(comments, entries)
        logger.info(f"Added node {address} to {self.path}")
        if self.on_added is not None:
            self.on_added(address)
        return True

    def remove(self, address: str) -> bool:
        """Unregister a worker. Returns False when it was not listed."""
        comments, entries = self._read()
        if address not in entries:
            logger.warning(f"Node {address} not found in list")
            return False

        self._write(comments, [e for e in entries if e != address])
        logger.info(f"Removed node {address}")
        return True

    def list(self) -> List[Tuple[str, bool]]:
        """Every registered worker with a fresh liveness probe."""
        return [(address, self.probe(address)) for address in self.entries()]


def _check_address(address: str) -> str:
    address = address.strip()
    if not address or address.startswith("#") or any(c.isspace() for c in address):
        raise ValidationError(f"Invalid node address: {address!r}")
    return address


def register_with_master(
    master_ip: str,
    slave_ip: Optional[str] = None,
    ssh_user: str = "homelab",
    key_filename: Optional[Path] = None,
    session_factory: Callable[..., RemoteSession] = RemoteSession,
) -> bool:
    """Ask the control node to add this worker to its registry.

    Failure is logged as a warning and reported as False; a worker can be
    registered later by hand with ``homelab-installer nodes add``.
    """
    slave_ip = slave_ip or get_primary_ip()
    if not slave_ip:
        logger.warning("Could not determine this node's IP, skipping registration")
        return False

    logger.info(f"Registering node {slave_ip} with master {master_ip}")
    command = f"homelab-installer nodes add {shlex.quote(slave_ip)}"
    session = session_factory(master_ip, ssh_user, key_filename=key_filename)
    try:
        stdout, stderr, exit_code = session.execute(command)
    except (paramiko.SSHException, OSError) as e:
        logger.warning(f"Failed to register with master {master_ip}: {e}")
        return False
    finally:
        session.close()

    if exit_code != 0:
        logger.warning(f"Master {master_ip} rejected registration: {stderr or stdout}")
        return False
    logger.info(f"Node {slave_ip} registered with master")
    return True
