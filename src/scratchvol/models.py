"""Dataclasses shared by the scanner, creator, importer and ejector."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from . import constants


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AttachedImage:
    """One attached image as reported by a disk-image backend."""

    mount_point: str
    image_path: Optional[str]
    label: str


@dataclass
class EncryptedVolume:
    mount_point: str
    backing_image_path: Optional[str]
    label: str
    expiry: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        # Evaluated on every call; the answer depends on the wall clock.
        if self.expiry is None:
            return False
        now = now or utcnow()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return self.expiry <= now

    def classification(self, now: Optional[datetime] = None) -> str:
        if self.expiry is None:
            return constants.NAMED
        return constants.EXPIRED if self.is_expired(now) else constants.ACTIVE

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        return {
            "mount_point": self.mount_point,
            "backing_image_path": self.backing_image_path,
            "label": self.label,
            "expiry": self.expiry.isoformat() if self.expiry else None,
            "classification": self.classification(now),
        }


# Volume specs for the creator
@dataclass(frozen=True)
class Sized:
    size_mb: int
    ttl_days: int


@dataclass(frozen=True)
class Named:
    display_name: str
    size_mb: int


VolumeSpec = Union[Sized, Named]


# Selection policies for the ejector
@dataclass(frozen=True)
class All:
    pass


@dataclass(frozen=True)
class ExpiredOnly:
    pass


@dataclass(frozen=True)
class ByTarget:
    target: str


SelectionPolicy = Union[All, ExpiredOnly, ByTarget]


@dataclass
class EjectOutcome:
    volume: EncryptedVolume
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None
