"""
Archive backends for imports.

SevenZipArchive supports anything the 7z tool can open (ZIP with ZipCrypto
or AES, 7z, ...). The password goes on the 7z command line, so command lines
shown in errors are redacted.

LibraryArchive works in-process: py7zr for 7z archives and zipfile for
ZIP archives (ZipCrypto only; AES-encrypted ZIPs need the 7z tool).
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import zipfile
from abc import ABC, abstractmethod
from typing import List, Optional

try:
    import py7zr
except ImportError:
    py7zr = None

from .errors import ArchiveListingFailed, BackendError, BackendUnavailable
from .backends.base import run_command

logger = logging.getLogger(__name__)

BUILTIN_ARCHIVER = "builtin"


def _redact(cmd: List[str]) -> str:
    return " ".join("-p***" if part.startswith("-p") else part for part in cmd)


def parse_slt_sizes(listing: str) -> int:
    """Sum the ``Size = N`` entries of a ``7z l -slt`` listing."""
    total = 0
    for line in listing.splitlines():
        key, sep, value = line.partition("=")
        if not sep or key.strip() != "Size":
            continue
        value = value.strip()
        if value.isdigit():
            total += int(value)
    return total


class ArchiveBackend(ABC):
    """Extracts password-protected archives into a directory."""

    @abstractmethod
    def ensure_available(self) -> None:
        pass

    @abstractmethod
    def uncompressed_size(self, archive_path: str, password: Optional[str] = None) -> int:
        """Total uncompressed size of the archive members in bytes."""

    @abstractmethod
    def check_password(self, archive_path: str, password: str) -> bool:
        pass

    @abstractmethod
    def extract(self, archive_path: str, password: str, dest_dir: str) -> None:
        """Extract into dest_dir, raising BackendError on failure."""


class SevenZipArchive(ArchiveBackend):
    def __init__(self, executable: str = "7z"):
        self.executable = executable

    def ensure_available(self) -> None:
        if not shutil.which(self.executable):
            raise BackendUnavailable(self.executable)

    def _password_flag(self, password: Optional[str]) -> str:
        # An explicit (possibly empty) -p keeps 7z from prompting on stdin
        return f"-p{password or ''}"

    def uncompressed_size(self, archive_path: str, password: Optional[str] = None) -> int:
        cmd = [self.executable, "l", "-slt", self._password_flag(password), archive_path]
        try:
            result = run_command(cmd, input_data=b"", display=_redact(cmd))
        except BackendError as exc:
            raise ArchiveListingFailed(archive_path, exc.stderr) from exc
        return parse_slt_sizes(result.stdout.decode(errors="replace"))

    def check_password(self, archive_path: str, password: str) -> bool:
        cmd = [self.executable, "t", self._password_flag(password), archive_path]
        try:
            result = subprocess.run(cmd, input=b"", capture_output=True, check=False)
        except FileNotFoundError as exc:
            raise BackendUnavailable(self.executable) from exc
        out = result.stdout.decode(errors="replace")
        err = result.stderr.decode(errors="replace")
        if "Wrong password" in err or "Wrong password" in out:
            return False
        return result.returncode == 0 and "Everything is Ok" in out

    def extract(self, archive_path: str, password: str, dest_dir: str) -> None:
        cmd = [
            self.executable,
            "x",
            "-bd",
            self._password_flag(password),
            "-y",
            f"-o{dest_dir}",
            archive_path,
        ]
        logger.debug("extracting %s into %s", archive_path, dest_dir)
        run_command(cmd, input_data=b"", display=_redact(cmd))


class LibraryArchive(ArchiveBackend):
    def ensure_available(self) -> None:
        if py7zr is None:
            raise BackendUnavailable("py7zr", "python module not installed")

    def _kind(self, archive_path: str) -> str:
        if zipfile.is_zipfile(archive_path):
            return "zip"
        if py7zr is not None and py7zr.is_7zfile(archive_path):
            return "7z"
        raise BackendError(f"unsupported archive format: {archive_path}")

    def uncompressed_size(self, archive_path: str, password: Optional[str] = None) -> int:
        kind = self._kind(archive_path)
        try:
            if kind == "zip":
                with zipfile.ZipFile(archive_path, "r") as zf:
                    return sum(info.file_size for info in zf.infolist())
            with py7zr.SevenZipFile(archive_path, "r", password=password) as archive:
                return sum(entry.uncompressed for entry in archive.list() if not entry.is_directory)
        except Exception as e:
            raise ArchiveListingFailed(archive_path, str(e)) from e

    def check_password(self, archive_path: str, password: str) -> bool:
        kind = self._kind(archive_path)
        try:
            if kind == "zip":
                with zipfile.ZipFile(archive_path, "r") as zf:
                    zf.setpassword(password.encode())
                    return zf.testzip() is None
            with py7zr.SevenZipFile(archive_path, "r", password=password) as archive:
                return archive.testzip() is None
        except NotImplementedError as e:
            # zipfile cannot decrypt AES entries
            raise BackendError(f"cannot decrypt {archive_path} in-process", str(e)) from e
        except Exception as e:
            logger.debug("password check failed for %s: %s", archive_path, e)
            return False

    def extract(self, archive_path: str, password: str, dest_dir: str) -> None:
        kind = self._kind(archive_path)
        logger.debug("extracting %s into %s", archive_path, dest_dir)
        try:
            if kind == "zip":
                with zipfile.ZipFile(archive_path, "r") as zf:
                    zf.extractall(dest_dir, pwd=password.encode())
                return
            with py7zr.SevenZipFile(archive_path, "r", password=password) as archive:
                archive.extractall(path=dest_dir)
        except Exception as e:
            raise BackendError(f"cannot extract {archive_path}", str(e)) from e


def get_archiver(name: str = "7z") -> ArchiveBackend:
    """``builtin`` selects the in-process backend; anything else names a 7z executable."""
    if name == BUILTIN_ARCHIVER:
        return LibraryArchive()
    return SevenZipArchive(name)
