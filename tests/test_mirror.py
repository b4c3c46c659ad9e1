import os
import pathlib
import shutil
import threading

import pytest

from conftest import write
from polyglot.errors import AlternativeNotFoundError, CrossDeviceError, PolyglotError, SyncCancelled
from polyglot.mirror import SyncAllStatus
from polyglot.models import SyncStatus


@pytest.fixture
def mirror(engine, source_library, portuguese):
    return engine.add_mirror(portuguese.id, source_library.id, os.path.join(portuguese.destination_base_path, "Movies"))


def same_inode(a, b):
    return os.stat(a).st_ino == os.stat(b).st_ino


def empty_folder(root):
    for child in list(root.iterdir()):
        shutil.rmtree(child)


class TestAddMirror:
    def test_defaults(self, store, mirror, portuguese):
        stored = store.get_mirror(mirror.id)
        assert stored.status is SyncStatus.PENDING
        assert stored.target_library_id is None
        assert stored.target_library_name == "Movies (Portuguese)"
        assert stored.collection_type == "movies"

    def test_rejects_duplicate(self, engine, mirror, portuguese, source_library, tmp_path):
        with pytest.raises(ValueError):
            engine.add_mirror(portuguese.id, source_library.id, str(tmp_path / "elsewhere"))

    def test_rejects_target_inside_source(self, engine, portuguese, source_library, media_root):
        with pytest.raises(ValueError):
            engine.add_mirror(portuguese.id, source_library.id, str(media_root / "mirror"))

    def test_rejects_mirror_of_mirror(self, engine, mirror, portuguese, spanish, source_library, libraries, tmp_path):
        engine.create_mirror(portuguese, mirror)
        target_id = engine.store.get_mirror(mirror.id).target_library_id
        with pytest.raises(ValueError):
            engine.add_mirror(spanish.id, target_id, str(tmp_path / "media" / "x"))

    def test_unknown_alternative(self, engine, source_library, tmp_path):
        with pytest.raises(AlternativeNotFoundError):
            engine.add_mirror("nope", source_library.id, str(tmp_path / "x"))

    def test_target_defaults_to_destination_base_path(self, engine, portuguese, source_library):
        mirror = engine.add_mirror(portuguese.id, source_library.id)
        assert mirror.target_path == os.path.join(portuguese.destination_base_path, "Movies")


class TestValidateMirrorConfiguration:
    def test_valid(self, engine, source_library, tmp_path):
        assert engine.validate_mirror_configuration(source_library.id, str(tmp_path / "media" / "pt")) == (True, None)

    @pytest.mark.parametrize("target", ["", "relative/path", "/media/../etc"])
    def test_invalid_targets(self, engine, source_library, target):
        ok, message = engine.validate_mirror_configuration(source_library.id, target)
        assert not ok
        assert message

    def test_unknown_source(self, engine, tmp_path):
        assert engine.validate_mirror_configuration("missing", str(tmp_path)) == (False, "Source library not found")


class TestCreateMirror:
    def test_links_media_and_registers_library(self, engine, store, libraries, mirror, portuguese, media_root):
        progress = []
        result = engine.create_mirror(portuguese, mirror, progress=progress.append)

        target = os.path.join(mirror.target_path, "Heat (1995)")
        assert same_inode(media_root / "Heat (1995)" / "Heat (1995).mkv", os.path.join(target, "Heat (1995).mkv"))
        assert os.path.exists(os.path.join(target, "Heat (1995).en.srt"))
        assert os.path.exists(os.path.join(target, ".trickplay", "320", "0.jpg"))
        assert not os.path.exists(os.path.join(target, "Heat (1995).nfo"))
        assert not os.path.exists(os.path.join(target, "poster.jpg"))
        assert not os.path.exists(os.path.join(target, "extrafanart"))

        stored = store.get_mirror(mirror.id)
        assert result.status is SyncStatus.SYNCED
        assert stored.status is SyncStatus.SYNCED
        assert stored.target_library_id == result.created_library_id
        assert stored.last_file_count == 4
        assert stored.last_synced_at is not None
        assert libraries.created[0]["metadata_language"] == "pt"
        assert libraries.created[0]["metadata_country"] == "PT"
        assert progress[-1] == 100
        assert all(0 <= p <= 100 for p in progress)

    def test_cross_device_fails_before_linking(self, engine, store, libraries, fs, mirror, portuguese, monkeypatch):
        def refuse(source_dir, target_dir):
            raise CrossDeviceError("different filesystems")

        monkeypatch.setattr(fs, "probe_hardlink", refuse)

        with pytest.raises(CrossDeviceError):
            engine.create_mirror(portuguese, mirror)

        stored = store.get_mirror(mirror.id)
        assert stored.status is SyncStatus.PENDING
        assert stored.last_error == "different filesystems"
        assert fs.operations == 0
        assert libraries.created == []

    def test_single_file_failure_ends_in_error(self, engine, store, fs, mirror, portuguese, monkeypatch):
        original = fs.create_hardlink

        def flaky(source, target):
            if str(target).endswith(".srt"):
                raise OSError("disk says no")
            original(source, target)

        monkeypatch.setattr(fs, "create_hardlink", flaky)
        result = engine.create_mirror(portuguese, mirror)

        stored = store.get_mirror(mirror.id)
        assert result.files_failed == 1
        assert stored.status is SyncStatus.ERROR
        assert stored.last_error == "1 file(s) failed to link"
        assert stored.target_library_id is not None
        assert os.path.exists(os.path.join(mirror.target_path, "Alien (1979)", "Alien (1979).mp4"))

    def test_failing_progress_sink_is_ignored(self, engine, store, mirror, portuguese):
        def broken(value):
            raise RuntimeError("sink down")

        result = engine.create_mirror(portuguese, mirror, progress=broken)
        assert result.status is SyncStatus.SYNCED


class TestSyncMirror:
    def test_second_sync_is_a_no_op(self, engine, store, fs, mirror, portuguese):
        engine.create_mirror(portuguese, mirror)
        engine.sync_mirror(mirror)
        fs.reset()

        result = engine.sync_mirror(mirror)

        assert fs.operations == 0
        assert result.operations == 0
        assert store.get_mirror(mirror.id).status is SyncStatus.SYNCED

    def test_incremental_changes(self, engine, store, fs, mirror, portuguese, media_root):
        engine.create_mirror(portuguese, mirror)
        target_root = mirror.target_path
        write(media_root / "Up (2009)" / "Up (2009).mkv")
        os.remove(media_root / "Alien (1979)" / "Alien (1979).mp4")
        fs.reset()

        result = engine.sync_mirror(mirror)

        assert result.files_linked == 1
        assert result.files_removed == 1
        assert os.path.exists(os.path.join(target_root, "Up (2009)", "Up (2009).mkv"))
        assert not os.path.exists(os.path.join(target_root, "Alien (1979)"))

    def test_replaced_source_file_is_relinked(self, engine, mirror, portuguese, media_root):
        engine.create_mirror(portuguese, mirror)
        source = media_root / "Heat (1995)" / "Heat (1995).mkv"
        source.unlink()
        write(source, "new encode")

        result = engine.sync_mirror(mirror)

        assert result.files_relinked == 1
        assert same_inode(source, os.path.join(mirror.target_path, "Heat (1995)", "Heat (1995).mkv"))

    def test_host_metadata_in_mirror_is_left_alone(self, engine, mirror, portuguese):
        engine.create_mirror(portuguese, mirror)
        nfo = write(pathlib.Path(mirror.target_path) / "Heat (1995)" / "Heat (1995).nfo", "<movie lang='pt'/>")

        result = engine.sync_mirror(mirror)

        assert result.files_removed == 0
        assert nfo.read_text() == "<movie lang='pt'/>"

    @pytest.mark.parametrize("unmount", [shutil.rmtree, empty_folder], ids=["missing", "empty"])
    def test_unmounted_source_keeps_mirror(self, engine, store, fs, mirror, portuguese, media_root, unmount):
        engine.create_mirror(portuguese, mirror)
        before = sorted(pathlib.Path(mirror.target_path).rglob("*.m*"))
        unmount(media_root)
        fs.reset()

        with pytest.raises(PolyglotError):
            engine.sync_mirror(mirror)

        stored = store.get_mirror(mirror.id)
        assert fs.operations == 0
        assert sorted(pathlib.Path(mirror.target_path).rglob("*.m*")) == before
        assert stored.status is SyncStatus.ERROR
        assert "empty or unmounted" in stored.last_error

    def test_mirror_without_library_is_created(self, engine, store, libraries, mirror):
        result = engine.sync_mirror(mirror)

        assert result.created_library_id is not None
        assert store.get_mirror(mirror.id).target_library_id == result.created_library_id
        assert len(libraries.created) == 1

    def test_cancelled_sync_can_be_retried(self, engine, store, mirror, portuguese):
        engine.create_mirror(portuguese, mirror)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(SyncCancelled):
            engine.sync_mirror(mirror, cancel=cancel)

        result = engine.sync_mirror(mirror)
        assert result.status is SyncStatus.SYNCED

    def test_cancelled_while_syncing_stays_syncing(self, engine, store, fs, mirror, portuguese, media_root, monkeypatch):
        engine.create_mirror(portuguese, mirror)
        write(media_root / "Up (2009)" / "Up (2009).mkv")
        cancel = threading.Event()
        original = fs.walk

        def walk_then_cancel(root, prune=None):
            for item in original(root, prune):
                cancel.set()
                yield item

        monkeypatch.setattr(fs, "walk", walk_then_cancel)
        with pytest.raises(SyncCancelled):
            engine.sync_mirror(mirror, cancel=cancel)

        assert store.get_mirror(mirror.id).status is SyncStatus.SYNCING

    def test_operations_on_one_mirror_are_serialized(self, engine, mirror, portuguese):
        engine.create_mirror(portuguese, mirror)
        lock = engine._locks[mirror.id]
        lock.acquire()
        cancel = threading.Event()
        errors = []

        def run():
            try:
                engine.sync_mirror(mirror, cancel=cancel)
            except SyncCancelled as e:
                errors.append(e)

        worker = threading.Thread(target=run)
        worker.start()
        worker.join(0.5)
        assert worker.is_alive()

        cancel.set()
        worker.join(5)
        lock.release()
        assert len(errors) == 1


class TestSyncAllMirrors:
    def test_unknown_alternative(self, engine):
        assert engine.sync_all_mirrors("missing").status is SyncAllStatus.ALTERNATIVE_NOT_FOUND

    def test_continues_after_failing_mirror(self, engine, libraries, portuguese, source_library, tmp_path):
        good = engine.add_mirror(portuguese.id, source_library.id)
        other_root = tmp_path / "media" / "shows"
        write(other_root / "Show" / "s01e01.mkv")
        libraries.add("s1", "Shows", [other_root], collection_type="tvshows")
        bad = engine.add_mirror(portuguese.id, "s1")
        del libraries.libraries["s1"]

        result = engine.sync_all_mirrors(portuguese.id)

        assert result.status is SyncAllStatus.COMPLETED_WITH_ERRORS
        assert result.total == 2
        assert result.synced == 1
        assert result.failed == 1
        assert engine.store.get_mirror(good.id).status is SyncStatus.SYNCED
        assert engine.store.get_mirror(bad.id).status is SyncStatus.ERROR

    def test_cancelled(self, engine, portuguese, mirror):
        cancel = threading.Event()
        cancel.set()
        assert engine.sync_all_mirrors(portuguese.id, cancel=cancel).status is SyncAllStatus.CANCELLED


class TestDeleteMirror:
    def test_removes_library_files_and_record(self, engine, store, libraries, mirror, portuguese, media_root):
        engine.create_mirror(portuguese, mirror)
        library_id = store.get_mirror(mirror.id).target_library_id

        result = engine.delete_mirror(mirror)

        assert result.ok
        assert result.record_removed
        assert library_id in libraries.deleted
        assert not os.path.exists(mirror.target_path)
        assert (media_root / "Heat (1995)" / "Heat (1995).mkv").read_text() == "video"
        assert store.get_mirror(mirror.id) is None

    def test_keep_record_resets_to_pending(self, engine, store, libraries, mirror, portuguese):
        engine.create_mirror(portuguese, mirror)

        result = engine.delete_mirror(mirror, delete_library=False, delete_files=False, keep_record=True)

        stored = store.get_mirror(mirror.id)
        assert not result.record_removed
        assert stored.target_library_id is None
        assert stored.status is SyncStatus.PENDING
        assert os.path.exists(mirror.target_path)
        assert libraries.deleted == []

    def test_refuses_to_delete_overlapping_source(self, engine, store, libraries, portuguese, mirror, media_root):
        store.update_mirror(mirror.id, lambda m: setattr(m, "target_path", str(media_root)))

        result = engine.delete_mirror(mirror, delete_library=False)

        assert not result.ok
        assert not result.record_removed
        assert store.get_mirror(mirror.id).status is SyncStatus.ERROR
        assert (media_root / "Alien (1979)" / "Alien (1979).mp4").exists()

    def test_delete_alternative(self, engine, store, mirror, portuguese):
        engine.create_mirror(portuguese, mirror)

        results = engine.delete_alternative(portuguese.id)

        assert [r.record_removed for r in results] == [True]
        assert store.get_alternative(portuguese.id) is None


def test_list_libraries_flags_mirrors(engine, store, mirror, portuguese, source_library):
    engine.create_mirror(portuguese, mirror)
    target_id = store.get_mirror(mirror.id).target_library_id

    libraries = {lib.id: lib for lib in engine.list_libraries()}

    assert not libraries[source_library.id].is_mirror
    assert libraries[target_id].is_mirror
    assert libraries[target_id].alternative_id == portuguese.id
