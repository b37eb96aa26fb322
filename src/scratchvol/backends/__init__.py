"""
Disk-image backends.

hdiutil drives encrypted DMGs on macOS; luks drives LUKS2 image files on
loop devices on Linux.
"""

from __future__ import annotations

import sys
from typing import Optional

from ..config import Config
from .base import DiskImageBackend
from .hdiutil import HdiutilBackend
from .luks import LuksBackend

__all__ = ["DiskImageBackend", "HdiutilBackend", "LuksBackend", "get_backend"]


def get_backend(config: Config, platform: Optional[str] = None) -> DiskImageBackend:
    name = config.backend
    if name == "auto":
        name = "hdiutil" if (platform or sys.platform) == "darwin" else "luks"
    if name == "hdiutil":
        return HdiutilBackend()
    if name == "luks":
        return LuksBackend(
            mount_base=config.mount_base,
            fs_type=config.filesystem_type,
            mount_opts=config.mount_opts,
            kdf_opts=config.kdf,
            cipher_opts=config.cipher,
        )
    raise ValueError(f"unknown backend: {name}")
