"""Allow ``python -m homelab_installer``."""

from homelab_installer.cli import app

app()
