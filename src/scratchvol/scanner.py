"""
scanner.py
Build the registry of attached volumes from live backend output.

There is no cache: every call re-queries the backend, and expiry is
classified against the clock at the moment a caller asks.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from . import expiry
from .backends.base import DiskImageBackend
from .models import EncryptedVolume

logger = logging.getLogger(__name__)


def scan(backend: DiskImageBackend) -> List[EncryptedVolume]:
    """Return every attached volume, ordered by mount point.

    Enumeration errors propagate; a partial view is never returned.
    """
    volumes = [
        EncryptedVolume(
            mount_point=image.mount_point,
            backing_image_path=image.image_path,
            label=image.label,
            expiry=expiry.decode(image.label),
        )
        for image in backend.list_attached()
    ]
    volumes.sort(key=lambda v: v.mount_point)
    logger.debug("scan found %d volume(s)", len(volumes))
    return volumes


def format_volume(volume: EncryptedVolume, now: Optional[datetime] = None, verbose: bool = False) -> str:
    status = volume.classification(now)
    when = volume.expiry.date().isoformat() if volume.expiry else "named"
    line = f"{volume.mount_point}\t{volume.label}\t{when}"
    if status == "expired":
        line += "\t(expired)"
    if verbose:
        line += f"\n  image: {volume.backing_image_path or '-'}"
        if volume.expiry:
            line += f"\n  expires: {volume.expiry.isoformat()}"
    return line
