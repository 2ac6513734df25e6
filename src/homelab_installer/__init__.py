"""Homelab node installer: K3s master/worker provisioning pipeline."""

__version__ = "0.3.0"
