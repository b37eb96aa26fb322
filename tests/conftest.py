"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Generator, List, Optional, Set

import pytest

from scratchvol.archive import ArchiveBackend
from scratchvol.backends.base import DiskImageBackend
from scratchvol.errors import AttachError, BackendError
from scratchvol.models import AttachedImage


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def mock_config_file(temp_dir: Path) -> Path:
    """Create a test configuration file."""
    config_content = """
backend = "luks"
default_days = 3
default_size_mb = 250
image_dir = "/var/tmp/scratchvol"
import_extra_mb = 50
import_size_factor = 1.5
min_passphrase_length = 12
mount_base = "/mnt/scratch"
filesystem_type = "exfat"
mount_opts = ["nodev", "nosuid", "noexec", "rw"]
cron_schedule = "*/30 * * * *"

[kdf]
type = "pbkdf2"

[cipher]
type = "aes-xts-plain64"
key_size = 256
"""
    config_path = temp_dir / "config.toml"
    config_path.write_text(config_content)
    return config_path


@pytest.fixture
def mock_empty_config(temp_dir: Path) -> Path:
    """Create an empty configuration file."""
    config_path = temp_dir / "empty_config.toml"
    config_path.write_text("")
    return config_path


class FakeBackend(DiskImageBackend):
    """In-memory disk-image backend.

    Images are real (tiny) files and mount points are real directories under
    a temp dir, so deletion and backup markers can be checked on disk. Each
    step can be forced to fail.
    """

    name = "fake"
    image_suffix = ".img"

    def __init__(self, root: Path):
        self.mount_base = root / "mnt"
        self.images: Dict[str, tuple] = {}
        self.attached: Dict[str, AttachedImage] = {}
        self.ejected: List[str] = []
        self.fail_create: Optional[Exception] = None
        self.fail_attach: Optional[Exception] = None
        self.fail_exclude: Optional[Exception] = None
        self.fail_list: Optional[Exception] = None
        self.fail_eject: Set[str] = set()
        self.no_mount_point = False

    def ensure_available(self) -> None:
        pass

    def create_image(self, image_path: str, size_mb: int, password: str, volume_name: str) -> str:
        if self.fail_create:
            raise self.fail_create
        if size_mb <= 0:
            raise BackendError(f"invalid image size: {size_mb} MB")
        if not password:
            raise BackendError("an empty password is not allowed")
        Path(image_path).write_bytes(b"\0" * 16)
        self.images[image_path] = (password, volume_name, size_mb)
        return image_path

    def attach(self, image_path: str, password: str) -> str:
        if self.fail_attach:
            raise self.fail_attach
        stored_password, label, _ = self.images[image_path]
        if password != stored_password:
            raise AttachError(f"cannot attach {image_path}", "Authentication error")
        if self.no_mount_point:
            return ""
        return self.mount(label, image_path)

    def mount(self, label: str, image_path: Optional[str] = None) -> str:
        """Attach a volume directly, as if another invocation had created it."""
        mount_point = self.mount_base / label
        n = 1
        while str(mount_point) in self.attached:
            n += 1
            mount_point = self.mount_base / f"{label}-{n}"
        mount_point.mkdir(parents=True)
        self.attached[str(mount_point)] = AttachedImage(str(mount_point), image_path, label)
        return str(mount_point)

    def list_attached(self) -> List[AttachedImage]:
        if self.fail_list:
            raise self.fail_list
        return list(self.attached.values())

    def eject(self, target: str) -> None:
        if target in self.fail_eject:
            raise BackendError(f"hdiutil eject {target} failed", "Resource busy")
        if target not in self.attached:
            raise BackendError(f"{target} is not attached")
        del self.attached[target]
        shutil.rmtree(target, ignore_errors=True)
        self.ejected.append(target)

    def exclude_from_backup(self, mount_point: str) -> None:
        if self.fail_exclude:
            raise self.fail_exclude
        Path(mount_point, ".nobackup").write_text("")


class FakeArchive(ArchiveBackend):
    """Archive backend that "extracts" a dict of file names to contents."""

    def __init__(self, password: str = "hunter22", files: Optional[Dict[str, bytes]] = None, size: int = 5 * 1024 * 1024):
        self.password = password
        self.files = files if files is not None else {"notes.txt": b"top secret\n"}
        self.size = size
        self.fail_size: Optional[Exception] = None
        self.fail_check: Optional[Exception] = None
        self.fail_extract: Optional[Exception] = None
        self.extracted_to: Optional[str] = None

    def ensure_available(self) -> None:
        pass

    def uncompressed_size(self, archive_path: str, password: Optional[str] = None) -> int:
        if self.fail_size:
            raise self.fail_size
        return self.size

    def check_password(self, archive_path: str, password: str) -> bool:
        if self.fail_check:
            raise self.fail_check
        return password == self.password

    def extract(self, archive_path: str, password: str, dest_dir: str) -> None:
        if self.fail_extract:
            raise self.fail_extract
        for name, content in self.files.items():
            Path(dest_dir, name).write_bytes(content)
        self.extracted_to = dest_dir


@pytest.fixture
def fake_backend(temp_dir: Path) -> FakeBackend:
    return FakeBackend(temp_dir)


@pytest.fixture
def fake_archive() -> FakeArchive:
    return FakeArchive()


@pytest.fixture
def image_dir(temp_dir: Path) -> Path:
    path = temp_dir / "images"
    path.mkdir()
    return path


@pytest.fixture
def archive_file(temp_dir: Path) -> Path:
    path = temp_dir / "secrets.zip"
    path.write_bytes(b"PK\x03\x04 not really a zip")
    return path


@pytest.fixture
def jan_first() -> datetime:
    """2024-01-01 10:30 UTC"""
    return datetime(2024, 1, 1, 10, 30, tzinfo=timezone.utc)
