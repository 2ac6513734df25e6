"""Small host probes shelled out to system tools."""

import logging
import os
import re
import subprocess
from typing import Optional

logger = logging.getLogger(__name__)


def ping(host: str, timeout: int = 1) -> bool:
    """Single ICMP liveness probe."""
    try:
        result = subprocess.run(
            ["ping", "-c", "1", "-W", str(timeout), host],
            capture_output=True,
            timeout=timeout + 4,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.debug(f"ping {host} failed: {e}")
        return False


def get_primary_ip() -> Optional[str]:
    """Source address the kernel would use to reach the internet."""
    try:
        result = subprocess.run(
            ["ip", "route", "get", "1.1.1.1"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.warning(f"Could not determine primary IP: {e}")
        return None

    match = re.search(r"\bsrc\s+(\S+)", result.stdout)
    return match.group(1) if match else None


def is_root() -> bool:
    return os.geteuid() == 0
