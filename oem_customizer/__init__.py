"""Disk layout and dm-verity sealing helpers for OEM partition customization."""

from oem_customizer.__version__ import __version__

__all__ = ["__version__"]
