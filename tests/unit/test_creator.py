"""Unit tests for the volume creator, including rollback on partial failure."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from scratchvol import creator
from scratchvol.errors import AttachError, BackendError, BackendUnavailable
from scratchvol.models import EncryptedVolume, Named, Sized


class TestLabels:
    """Test label and image naming."""

    def test_sized_label_encodes_expiry(self, jan_first):
        assert creator.label_for(Sized(100, 7), jan_first) == "EXPIRES-20240108"

    def test_named_label_is_display_name(self, jan_first):
        assert creator.label_for(Named("Notes", 100), jan_first) == "Notes"

    def test_named_label_rejects_expiry_lookalike(self, jan_first):
        """Test a name that would decode as an expiry is refused."""
        with pytest.raises(BackendError):
            creator.label_for(Named("EXPIRES-20240108", 100), jan_first)

    def test_named_label_rejects_empty(self, jan_first):
        with pytest.raises(BackendError):
            creator.label_for(Named("   ", 100), jan_first)

    def test_image_path_is_owned_and_unique(self, image_dir):
        first = creator.image_path_for(image_dir, "My Notes/..", ".dmg")
        second = creator.image_path_for(image_dir, "My Notes/..", ".dmg")

        assert first != second
        assert Path(first).parent == image_dir
        assert Path(first).name.startswith("scratchvol-")
        assert Path(first).name.endswith("-My_Notes.dmg")


class TestCreateVolume:
    """Test the create -> attach -> exclude sequence."""

    def test_create_sized_volume(self, fake_backend, image_dir, jan_first):
        volume = creator.create_volume(fake_backend, Sized(100, 7), "pw-123456", image_dir, now=jan_first)

        assert volume.label == "EXPIRES-20240108"
        assert volume.expiry == datetime(2024, 1, 8, tzinfo=timezone.utc)
        assert volume.mount_point in fake_backend.attached
        assert os.path.exists(volume.backing_image_path)
        assert Path(volume.mount_point, ".nobackup").exists()
        assert fake_backend.images[volume.backing_image_path][2] == 100

    def test_create_named_volume_has_no_expiry(self, fake_backend, image_dir):
        volume = creator.create_volume(fake_backend, Named("Notes", 50), "pw-123456", image_dir)

        assert volume.label == "Notes"
        assert volume.expiry is None

    def test_progress_stages_in_order(self, fake_backend, image_dir):
        stages = []

        creator.create_volume(
            fake_backend, Sized(100, 1), "pw-123456", image_dir, progress_cb=lambda stage, pct: stages.append(stage)
        )

        assert stages == ["create", "attach", "secure", "done"]

    def test_create_rejected_leaves_nothing(self, fake_backend, image_dir):
        with pytest.raises(BackendError):
            creator.create_volume(fake_backend, Sized(0, 7), "pw-123456", image_dir)

        assert os.listdir(image_dir) == []
        assert fake_backend.attached == {}

    def test_empty_password_rejected(self, fake_backend, image_dir):
        with pytest.raises(BackendError):
            creator.create_volume(fake_backend, Sized(100, 7), "", image_dir)
        assert os.listdir(image_dir) == []

    def test_attach_failure_removes_image(self, fake_backend, image_dir):
        fake_backend.fail_attach = AttachError("cannot attach", "hdiutil: attach failed")

        with pytest.raises(AttachError):
            creator.create_volume(fake_backend, Sized(100, 7), "pw-123456", image_dir)

        assert os.listdir(image_dir) == []
        assert fake_backend.attached == {}

    def test_missing_mount_point_is_attach_error(self, fake_backend, image_dir):
        fake_backend.no_mount_point = True

        with pytest.raises(AttachError):
            creator.create_volume(fake_backend, Sized(100, 7), "pw-123456", image_dir)

        assert os.listdir(image_dir) == []

    def test_exclude_failure_ejects_and_removes_image(self, fake_backend, image_dir):
        """Test no attached but unsecured volume survives a failed exclusion."""
        fake_backend.fail_exclude = BackendError("tmutil addexclusion failed")

        with pytest.raises(BackendError, match="tmutil"):
            creator.create_volume(fake_backend, Sized(100, 7), "pw-123456", image_dir)

        assert fake_backend.attached == {}
        assert len(fake_backend.ejected) == 1
        assert os.listdir(image_dir) == []

    def test_rollback_eject_failure_keeps_original_error(self, fake_backend, image_dir):
        fake_backend.fail_exclude = BackendError("tmutil addexclusion failed")
        fake_backend.fail_eject = {str(fake_backend.mount_base / "EXPIRES-20240108")}

        with pytest.raises(BackendError, match="tmutil"):
            creator.create_volume(
                fake_backend, Sized(100, 7), "pw-123456", image_dir, now=datetime(2024, 1, 1, tzinfo=timezone.utc)
            )

        assert os.listdir(image_dir) == []

    def test_backend_unavailable_propagates(self, fake_backend, image_dir):
        fake_backend.fail_create = BackendUnavailable("hdiutil")

        with pytest.raises(BackendUnavailable):
            creator.create_volume(fake_backend, Sized(100, 7), "pw-123456", image_dir)


class TestDiscardImage:
    """Test deleting the image of a mounted volume."""

    def test_discard_removes_file(self, temp_dir):
        image = temp_dir / "scratchvol-x.img"
        image.write_bytes(b"data")

        creator.discard_image(EncryptedVolume("/mnt/x", str(image), "Notes"))

        assert not image.exists()

    def test_discard_missing_file_is_ok(self, temp_dir):
        creator.discard_image(EncryptedVolume("/mnt/x", str(temp_dir / "gone.img"), "Notes"))

    def test_discard_without_image_is_noop(self):
        creator.discard_image(EncryptedVolume("/mnt/x", None, "Notes"))

    def test_discard_os_error_raises_backend_error(self, temp_dir):
        image = temp_dir / "scratchvol-x.img"
        image.write_bytes(b"data")

        with patch("scratchvol.creator.os.remove", side_effect=PermissionError("denied")):
            with pytest.raises(BackendError, match="cannot delete image"):
                creator.discard_image(EncryptedVolume("/mnt/x", str(image), "Notes"))
