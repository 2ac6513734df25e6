"""Exceptions raised by the homelab installer."""


class InstallerError(Exception):
    """Base exception for installer errors."""

    pass


class ConfigError(InstallerError):
    """Raised when required configuration is missing and cannot be prompted for."""

    pass


class FetchError(InstallerError):
    """Raised when a remote resource is unreachable or returns empty content."""

    pass


class StepActionError(InstallerError):
    """Raised when an external step action exits non-zero."""

    def __init__(self, step: str, message: str, returncode: int = 1):
        super().__init__(f"{step}: {message}")
        self.step = step
        self.returncode = returncode


class DistributionError(InstallerError):
    """Raised when SSH material cannot be pushed to a single worker node."""

    def __init__(self, host: str, message: str):
        super().__init__(f"{host}: {message}")
        self.host = host


class ValidationError(InstallerError):
    """Raised for malformed operator input (IP format, password policy)."""

    pass
