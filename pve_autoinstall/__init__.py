"""Bootable Proxmox VE install media, unattended answers and first-boot setup."""

from .__version__ import __version__

__all__ = ["__version__"]
