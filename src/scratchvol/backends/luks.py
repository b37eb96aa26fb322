"""
luks.py
Linux backend: a sparse image file on a loop device, formatted as LUKS2.

create_image: truncate -> losetup -> luksFormat -> open -> mkfs -> close -> losetup -d
attach:       losetup -> open -> mount
eject:        umount -> close -> losetup -d

Mapper names start with the scratchvol- prefix; only those are listed or
ejected. Requires root.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import uuid
from pathlib import Path
from typing import Dict, List, Optional

try:
    import pyudev
except ImportError:
    pyudev = None

from .. import constants
from ..errors import AttachError, BackendError, BackendUnavailable
from ..models import AttachedImage
from .base import DiskImageBackend, run_command

logger = logging.getLogger(__name__)

# LUKS2 reserves 16 MiB for its header; leave room for the filesystem too.
MIN_SIZE_MB = 32
LABEL_LIMITS = {"ext4": 16, "exfat": 11}
DELETED_SUFFIX = " (deleted)"
CACHEDIR_TAG = (
    "Signature: 8a477f597d28d172789f06886806bc55\n"
    "# This file marks a scratchvol volume; backup tools should skip it.\n"
)


def _run(cmd: List[str], input_data: Optional[bytes] = None, error_cls=BackendError):
    return run_command(cmd, input_data=input_data, error_cls=error_cls)


def _unescape_mount_field(value: str) -> str:
    # /proc/mounts escapes space, tab, newline and backslash as octal
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), value)


def _decode_udev_label(value: str) -> str:
    # ID_FS_LABEL_ENC escapes unsafe bytes as \xNN
    raw = re.sub(rb"\\x([0-9a-fA-F]{2})", lambda m: bytes([int(m.group(1), 16)]), value.encode())
    return raw.decode(errors="replace")


def _get_mounted_devices() -> Dict[str, str]:
    """Read /proc/mounts and return a dict of device -> mountpoint."""
    mounted = {}
    try:
        with open("/proc/mounts", "r") as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2 and parts[0].startswith("/dev/"):
                    mounted[_unescape_mount_field(parts[0])] = _unescape_mount_field(parts[1])
    except OSError as exc:
        raise BackendError("cannot read /proc/mounts", str(exc)) from exc
    return mounted


def _slave_names(sys_path: str) -> List[str]:
    """Block devices underneath a device-mapper node (its loop device)."""
    slaves_dir = Path(sys_path) / "slaves"
    try:
        return sorted(os.listdir(slaves_dir))
    except OSError:
        return []


def _strip_deleted(path: str) -> str:
    if path.endswith(DELETED_SUFFIX):
        return path[: -len(DELETED_SUFFIX)]
    return path


def new_mapper_name() -> str:
    return f"{constants.OWNED_PREFIX}{uuid.uuid4().hex[:12]}"


def allocate_image(image_path: str, size_mb: int) -> None:
    """Create a sparse file of size_mb megabytes."""
    try:
        with open(image_path, "wb") as f:
            f.seek(size_mb * 1024 * 1024 - 1)
            f.write(b"\0")
    except OSError as exc:
        raise BackendError(f"cannot allocate image {image_path}", str(exc)) from exc


def setup_loop(image_path: str) -> str:
    result = _run(["losetup", "--find", "--show", image_path])
    loop = result.stdout.decode().strip()
    if not loop:
        raise BackendError(f"losetup returned no loop device for {image_path}")
    return loop


def detach_loop(loop: str) -> None:
    _run(["losetup", "--detach", loop])


def luks_format(devnode: str, passphrase: str, label: Optional[str] = None, kdf_opts: Optional[dict] = None, cipher_opts: Optional[dict] = None) -> None:
    pbkdf_type = (kdf_opts or {}).get("type", "argon2id")
    cipher_type = (cipher_opts or {}).get("type", "aes-xts-plain64")
    key_size = str((cipher_opts or {}).get("key_size", 512))
    cmd = [
        "cryptsetup",
        "luksFormat",
        "--batch-mode",
        "--type",
        "luks2",
        "--hash",
        "sha256",
        "--pbkdf",
        pbkdf_type,
        "--cipher",
        cipher_type,
        "--key-size",
        key_size,
    ]
    if label:
        cmd += ["--label", label]
    cmd.append(devnode)
    _run(cmd, input_data=passphrase.encode())


def unlock_luks(devnode: str, mapper_name: str, passphrase: str) -> str:
    cmd = ["cryptsetup", "open", "--type", "luks2", devnode, mapper_name]
    _run(cmd, input_data=passphrase.encode())
    return f"/dev/mapper/{mapper_name}"


def close_mapper(mapper_name: str) -> None:
    _run(["cryptsetup", "close", mapper_name])


def create_filesystem(devnode: str, fs_type: str = "ext4", label: Optional[str] = None, uid: Optional[int] = None, gid: Optional[int] = None) -> None:
    if fs_type == "ext4":
        cmd = ["mkfs.ext4", "-F", "-q"]
        if label:
            cmd += ["-L", label]
        # Set root directory ownership at filesystem creation time
        if uid is not None and gid is not None:
            cmd += ["-E", f"root_owner={uid}:{gid}"]
        cmd.append(devnode)
    elif fs_type == "exfat":
        cmd = ["mkfs.exfat"]
        if label:
            cmd += ["-n", label]
        cmd.append(devnode)
    else:
        raise BackendError(f"Unsupported filesystem: {fs_type}")
    _run(cmd)


def filesystem_label(devnode: str) -> str:
    result = _run(["blkid", "-s", "LABEL", "-o", "value", devnode])
    return result.stdout.decode().strip()


def mount_device(devnode: str, mountpoint: str, options: List[str], uid: Optional[int] = None, gid: Optional[int] = None) -> None:
    os.makedirs(mountpoint, exist_ok=True)
    opt_str = ",".join(options)
    _run(["mount", "-o", opt_str, devnode, mountpoint], error_cls=AttachError)
    if uid is not None and gid is not None:
        try:
            os.chown(mountpoint, uid, gid)
        except OSError as exc:
            logger.warning("could not chown %s to %s:%s: %s", mountpoint, uid, gid, exc)


def _invoking_user() -> tuple[Optional[int], Optional[int]]:
    """uid/gid of the user behind sudo, so they own the volume root."""
    uid = os.environ.get("SUDO_UID")
    gid = os.environ.get("SUDO_GID")
    if uid and gid and uid.isdigit() and gid.isdigit():
        return int(uid), int(gid)
    return None, None


class LuksBackend(DiskImageBackend):
    name = "luks"
    image_suffix = ".img"

    def __init__(
        self,
        mount_base: str = "/run/scratchvol",
        fs_type: str = "ext4",
        mount_opts: Optional[List[str]] = None,
        kdf_opts: Optional[dict] = None,
        cipher_opts: Optional[dict] = None,
    ):
        self.mount_base = mount_base
        self.fs_type = fs_type
        self.mount_opts = mount_opts or ["nodev", "nosuid", "rw"]
        self.kdf_opts = kdf_opts or {"type": "argon2id"}
        self.cipher_opts = cipher_opts or {"type": "aes-xts-plain64", "key_size": 512}

    def ensure_available(self) -> None:
        if pyudev is None:
            raise BackendUnavailable("pyudev", "python module not installed")
        for tool in ("cryptsetup", "losetup", "mount", "umount", "blkid", f"mkfs.{self.fs_type}"):
            if not shutil.which(tool):
                raise BackendUnavailable(tool)

    def _teardown(self, mapper_name: Optional[str], loop: Optional[str]) -> None:
        if mapper_name:
            try:
                close_mapper(mapper_name)
            except (BackendError, BackendUnavailable) as exc:
                logger.warning("could not close %s: %s", mapper_name, exc)
        if loop:
            try:
                detach_loop(loop)
            except (BackendError, BackendUnavailable) as exc:
                logger.warning("could not detach %s: %s", loop, exc)

    def create_image(self, image_path: str, size_mb: int, password: str, volume_name: str) -> str:
        if size_mb < MIN_SIZE_MB:
            raise BackendError(f"invalid image size: {size_mb} MB (minimum {MIN_SIZE_MB} MB)")
        limit = LABEL_LIMITS.get(self.fs_type)
        if limit is not None and len(volume_name.encode()) > limit:
            raise BackendError(f"volume name {volume_name!r} exceeds the {limit} byte {self.fs_type} label limit")
        if not password:
            raise BackendError("an empty password is not allowed")

        uid, gid = _invoking_user()
        allocate_image(image_path, size_mb)
        loop = None
        mapper_name = None
        try:
            loop = setup_loop(image_path)
            luks_format(loop, password, label=volume_name, kdf_opts=self.kdf_opts, cipher_opts=self.cipher_opts)
            name = new_mapper_name()
            mapper = unlock_luks(loop, name, password)
            mapper_name = name
            create_filesystem(mapper, fs_type=self.fs_type, label=volume_name, uid=uid, gid=gid)
        finally:
            self._teardown(mapper_name, loop)
        return image_path

    def _mount_point_for(self, label: str) -> str:
        base = Path(self.mount_base)
        candidate = base / label
        n = 1
        while os.path.ismount(candidate) or (candidate.exists() and any(candidate.iterdir())):
            n += 1
            candidate = base / f"{label}-{n}"
        return str(candidate)

    def attach(self, image_path: str, password: str) -> str:
        loop = setup_loop(image_path)
        mapper_name = None
        try:
            name = new_mapper_name()
            mapper = unlock_luks(loop, name, password)
            mapper_name = name
            label = filesystem_label(mapper) or Path(image_path).stem
            mount_point = self._mount_point_for(label)
            uid, gid = _invoking_user()
            mount_device(mapper, mount_point, self.mount_opts, uid=uid, gid=gid)
        except BackendError as exc:
            self._teardown(mapper_name, loop)
            if isinstance(exc, AttachError):
                raise
            raise AttachError(f"cannot attach {image_path}", exc.stderr) from exc
        except Exception:
            self._teardown(mapper_name, loop)
            raise
        return mount_point

    def _backing_image(self, context, device) -> Optional[str]:
        for slave in _slave_names(device.sys_path):
            try:
                loop_dev = pyudev.Devices.from_name(context, "block", slave)
            except Exception:
                continue
            backing = loop_dev.attributes.get("loop/backing_file")
            if backing:
                return _strip_deleted(backing.decode(errors="replace").strip())
        return None

    def list_attached(self) -> List[AttachedImage]:
        if pyudev is None:
            raise BackendUnavailable("pyudev", "python module not installed")
        mounted = _get_mounted_devices()
        try:
            context = pyudev.Context()
            devices = list(context.list_devices(subsystem="block", DEVTYPE="disk"))
        except Exception as exc:
            raise BackendError("failed to enumerate block devices", str(exc)) from exc

        attached = []
        for device in devices:
            props = device.properties
            dm_name = props.get("DM_NAME", "")
            dm_uuid = props.get("DM_UUID", "")
            if not dm_name.startswith(constants.OWNED_PREFIX) or not dm_uuid.startswith("CRYPT-"):
                continue
            mount_point = mounted.get(f"/dev/mapper/{dm_name}") or mounted.get(device.device_node or "")
            if not mount_point:
                continue
            encoded = props.get("ID_FS_LABEL_ENC")
            label = _decode_udev_label(encoded) if encoded else props.get("ID_FS_LABEL")
            label = label or Path(mount_point).name
            attached.append(AttachedImage(mount_point, self._backing_image(context, device), label))
        return attached

    def eject(self, target: str) -> None:
        target = os.path.realpath(target)
        by_mount = {mp: dev for dev, mp in _get_mounted_devices().items()}
        devnode = by_mount.get(target)
        mapper_name = Path(devnode).name if devnode else ""
        if not mapper_name.startswith(constants.OWNED_PREFIX):
            raise BackendError(f"{target} is not an attached scratchvol volume")

        dm_node = os.path.basename(os.path.realpath(f"/dev/mapper/{mapper_name}"))
        loops = _slave_names(f"/sys/block/{dm_node}")
        _run(["umount", target])
        close_mapper(mapper_name)
        for loop in loops:
            detach_loop(f"/dev/{loop}")
        try:
            os.rmdir(target)
        except OSError as exc:
            logger.debug("left mount point %s in place: %s", target, exc)

    def exclude_from_backup(self, mount_point: str) -> None:
        try:
            Path(mount_point, "CACHEDIR.TAG").write_text(CACHEDIR_TAG)
            Path(mount_point, ".nobackup").write_text("")
        except OSError as exc:
            raise BackendError(f"cannot write backup exclusion markers on {mount_point}", str(exc)) from exc
