"""Tests for vmm.storage module."""

from __future__ import annotations

import os
import threading
from unittest.mock import patch

import pytest

from vmm import storage as storage_module
from vmm.exceptions import DefaultImageMissing, ExternalToolFailure, ImageNotFound, ResourceBusy
from vmm.models import MountEntry
from vmm.storage import ImageLocks

MIB = 1024 * 1024


class TestMaterializeInstance:
    def test_copies_base_image(self, storage, base_images):
        path = storage.materialize_instance("web", "", 0)
        assert path == storage.instance_path("web")
        assert path.stat().st_size == 2 * MIB
        assert not path.with_name(".web.ext4.partial").exists()

    def test_second_call_reuses_existing_image(self, storage, base_images):
        storage.materialize_instance("web", "", 0)
        with patch("vmm.storage.copy_file", wraps=storage_module.copy_file) as mock_copy:
            storage.materialize_instance("web", "", 0)
        mock_copy.assert_not_called()

    def test_grows_to_requested_size(self, storage, resizer, base_images):
        path = storage.materialize_instance("web", "", 16)
        assert resizer.grown == [(".web.ext4.partial", 16)]
        assert path.stat().st_size == 16 * MIB

    def test_never_shrinks(self, storage, resizer, base_images):
        path = storage.materialize_instance("web", "", 1)
        assert resizer.grown == []
        assert path.stat().st_size == 2 * MIB

    def test_named_image_missing(self, storage):
        with pytest.raises(ImageNotFound):
            storage.materialize_instance("web", "ubuntu", 0)

    def test_default_image_missing(self, storage):
        with pytest.raises(DefaultImageMissing):
            storage.materialize_instance("web", "", 0)

    def test_failed_grow_leaves_no_partial_image(self, storage, resizer, base_images):
        with patch.object(resizer, "grow", side_effect=ExternalToolFailure("resize2fs", "boom", 1)):
            with pytest.raises(ExternalToolFailure):
                storage.materialize_instance("web", "", 64)
        assert list(storage.paths.vms.iterdir()) == []

    def test_delete_instance_is_idempotent(self, storage, base_images):
        storage.materialize_instance("web", "", 0)
        storage.delete_instance("web")
        storage.delete_instance("web")
        assert not storage.instance_path("web").exists()


class TestMountedImage:
    def test_unmounts_after_use(self, storage, mounter, base_images):
        _, rootfs = base_images
        with storage.mounted_image(rootfs) as root:
            (root / "marker").write_text("x")
            mount_point = root
        assert mounter.unmount_calls == [rootfs]
        assert not mount_point.exists()
        assert (mounter.backing_dir(rootfs) / "marker").exists()

    def test_unmounts_on_exception(self, storage, mounter, base_images):
        _, rootfs = base_images
        with pytest.raises(RuntimeError):
            with storage.mounted_image(rootfs):
                raise RuntimeError("customisation failed")
        assert mounter.unmount_calls == [rootfs]
        assert mounter.mounted == {}

    def test_lock_is_released(self, storage, base_images):
        _, rootfs = base_images
        with storage.mounted_image(rootfs):
            pass
        with storage.locks.hold(rootfs, timeout=0.1):
            pass


class TestImageLocks:
    def test_contended_lock_times_out(self, tmp_path):
        locks = ImageLocks(tmp_path / "locks", timeout=5)
        image = tmp_path / "rootfs.ext4"
        image.touch()
        acquired = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold(image):
                acquired.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert acquired.wait(5)
            with pytest.raises(ResourceBusy):
                with locks.hold(image, timeout=0.1):
                    pass
        finally:
            release.set()
            thread.join()

    def test_separate_images_do_not_contend(self, tmp_path):
        locks = ImageLocks(tmp_path / "locks", timeout=0.1)
        (tmp_path / "a.ext4").touch()
        (tmp_path / "b.ext4").touch()
        with locks.hold(tmp_path / "a.ext4"):
            with locks.hold(tmp_path / "b.ext4"):
                pass

    def test_lock_file_names_are_stable(self, tmp_path):
        locks = ImageLocks(tmp_path / "locks", timeout=1)
        first = locks.lock_file_for(tmp_path / "rootfs.ext4")
        assert first == locks.lock_file_for(tmp_path / "." / "rootfs.ext4")
        assert first.parent == tmp_path / "locks"


class TestCustomize:
    def _root(self, storage, mounter, image):
        return mounter.backing_dir(image)

    def test_ssh_key_permissions(self, storage, mounter, base_images):
        _, rootfs = base_images
        storage.inject_ssh_key(rootfs, "ssh-ed25519 AAAA user@host\n")
        root = self._root(storage, mounter, rootfs)
        keys = root / "root" / ".ssh" / "authorized_keys"
        assert keys.read_text() == "ssh-ed25519 AAAA user@host\n"
        assert keys.stat().st_mode & 0o777 == 0o600
        assert (root / "root" / ".ssh").stat().st_mode & 0o777 == 0o700

    def test_blank_key_does_not_mount(self, storage, mounter, base_images):
        _, rootfs = base_images
        storage.inject_ssh_key(rootfs, "   ")
        assert mounter.mount_calls == []

    def test_dns_replaces_symlink(self, storage, mounter, base_images):
        _, rootfs = base_images
        root = self._root(storage, mounter, rootfs)
        (root / "etc").mkdir()
        os.symlink("../run/systemd/resolve/stub-resolv.conf", root / "etc" / "resolv.conf")
        storage.inject_dns_config(rootfs, ["9.9.9.9"])
        resolv = root / "etc" / "resolv.conf"
        assert not resolv.is_symlink()
        assert resolv.read_text() == "# Generated by vmm\nnameserver 9.9.9.9\n"

    def test_dns_defaults(self, storage, mounter, base_images):
        _, rootfs = base_images
        storage.inject_dns_config(rootfs, [])
        text = (self._root(storage, mounter, rootfs) / "etc" / "resolv.conf").read_text()
        assert "nameserver 8.8.8.8" in text
        assert "nameserver 1.1.1.1" in text

    def test_mount_table_replaces_previous_entries(self, storage, mounter, base_images):
        _, rootfs = base_images
        root = self._root(storage, mounter, rootfs)
        (root / "etc").mkdir()
        (root / "etc" / "fstab").write_text("/dev/vda / ext4 defaults 0 1\n")
        storage.inject_mount_table(
            rootfs, [MountEntry("/dev/vdb", "/mnt/code", False), MountEntry("/dev/vdc", "/mnt/data", True)]
        )
        storage.inject_mount_table(rootfs, [MountEntry("/dev/vdb", "/mnt/logs", True)])
        lines = (root / "etc" / "fstab").read_text().splitlines()
        assert lines == [
            "/dev/vda / ext4 defaults 0 1",
            "/dev/vdb /mnt/logs ext4 defaults,nofail,ro 0 2 # vmm-mount",
        ]
        assert (root / "mnt" / "logs").is_dir()

    def test_empty_mount_table_removes_owned_lines(self, storage, mounter, base_images):
        _, rootfs = base_images
        root = self._root(storage, mounter, rootfs)
        storage.inject_mount_table(rootfs, [MountEntry("/dev/vdb", "/mnt/code", False)])
        storage.inject_mount_table(rootfs, [])
        assert (root / "etc" / "fstab").read_text() == ""

    def test_customize_uses_single_mount(self, storage, mounter, base_images):
        _, rootfs = base_images
        storage.customize_instance(rootfs, "ssh-rsa AAAA", ["1.1.1.1"], [MountEntry("/dev/vdb", "/mnt/code", False)])
        assert mounter.mount_calls == [rootfs]
        root = self._root(storage, mounter, rootfs)
        assert (root / "root" / ".ssh" / "authorized_keys").exists()
        assert "nameserver 1.1.1.1" in (root / "etc" / "resolv.conf").read_text()
        assert "/mnt/code" in (root / "etc" / "fstab").read_text()


class TestBuildImageFromTree:
    def test_copies_tree_into_new_image(self, storage, mounter, resizer, tmp_path):
        source = tmp_path / "src"
        (source / "docs").mkdir(parents=True)
        (source / "docs" / "readme.txt").write_text("hi")
        destination = tmp_path / "out" / "code.ext4"
        storage.build_image_from_tree(source, destination, 64, "code")
        assert resizer.created == [(".code.ext4.partial", 64, "code")]
        assert destination.exists()
        assert (mounter.backing_dir(destination) / "docs" / "readme.txt").read_text() == "hi"

    def test_failure_leaves_no_image(self, storage, mounter, tmp_path):
        destination = tmp_path / "out" / "code.ext4"
        with patch.object(mounter, "copy_tree", side_effect=ExternalToolFailure("tar", "broken pipe", 2)):
            with pytest.raises(ExternalToolFailure):
                storage.build_image_from_tree(tmp_path, destination, 64, "code")
        assert list(destination.parent.iterdir()) == []

    def test_concurrent_builds_of_same_image_are_serialised(self, storage, mounter, resizer, tmp_path):
        source = tmp_path / "src"
        source.mkdir()
        (source / "main.py").write_text("print()")
        destination = tmp_path / "out" / "code.ext4"
        errors = []
        filesystems_during_copy = []

        def build():
            try:
                storage.build_image_from_tree(source, destination, 64, "code")
            except Exception as exc:
                errors.append(exc)

        second = threading.Thread(target=build)
        copy_tree = mounter.copy_tree

        def first_copy(src, target):
            mounter.copy_tree = copy_tree
            second.start()
            second.join(0.3)
            filesystems_during_copy.append(len(resizer.created))
            copy_tree(src, target)

        mounter.copy_tree = first_copy
        build()
        second.join(5)
        assert errors == []
        assert filesystems_during_copy == [1]
        assert len(resizer.created) == 2
        assert (mounter.backing_dir(destination) / "main.py").read_text() == "print()"
        assert not destination.with_name(".code.ext4.partial").exists()
