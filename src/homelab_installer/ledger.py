"""Append-only ledger of installed components (``installed.csv``)."""

import csv
import logging
from dataclasses import astuple, dataclass, fields
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)

HEADER = ["timestamp", "type", "name", "version", "location", "config_path", "notes"]


class ComponentKind(Enum):
    """Kind of installed component."""

    PACKAGE = "package"
    SERVICE = "service"
    CONFIG = "config"
    DEPENDENCY = "dependency"


@dataclass(frozen=True)
class InstalledComponent:
    """One row of the installed-components ledger."""

    timestamp: str
    type: str
    name: str
    version: str
    location: str
    config_path: str
    notes: str = ""


class InstalledLedger:
    """Audit record of what was installed, where, and from which config."""

    def __init__(self, path: Path):
        self.path = path

    def ensure_header(self) -> None:
        """Create the file with its header row if it does not exist."""
        if self.path.exists():
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", newline="") as f:
            csv.writer(f).writerow(HEADER)

    def record(
        self,
        kind: ComponentKind,
        name: str,
        version: str,
        location: str,
        config_path: str,
        notes: str = "",
    ) -> InstalledComponent:
        """Append one row. Rows are never rewritten or removed."""
        self.ensure_header()
        row = InstalledComponent(
            timestamp=datetime.now().astimezone().isoformat(timespec="seconds"),
            type=kind.value,
            name=name,
            version=version,
            location=location,
            config_path=config_path,
            notes=notes,
        )
        with open(self.path, "a", newline="") as f:
            csv.writer(f).writerow(astuple(row))
        logger.debug(f"Recorded {kind.value} {name} in {self.path}")
        return row

    def rows(self) -> List[InstalledComponent]:
        """Read every data row."""
        if not self.path.exists():
            return []
        names = [f.name for f in fields(InstalledComponent)]
        with open(self.path, newline="") as f:
            reader = csv.DictReader(f)
            return [InstalledComponent(**{n: row.get(n) or "" for n in names}) for row in reader]
