import contextlib
import enum
import logging
import os
import pathlib
import threading
from collections.abc import Generator, Iterable
from dataclasses import dataclass, field

from .classifier import FileClassifier
from .config import ConfigurationStore
from .errors import (
    AlternativeNotFoundError,
    CrossDeviceError,
    LibraryNotFoundError,
    LinkError,
    MirrorNotFoundError,
    PolyglotError,
    SyncCancelled,
)
from .interfaces import LibraryDirectory
from .links import LocalFileSystem, are_same_filesystem, is_source_empty_or_unmounted, paths_overlap
from .models import LanguageAlternative, LibraryInfo, LibraryMirror, SyncStatus, utcnow
from .utils import ProgressSink, acquire_lock, check_cancelled, safe_report, scaled_progress

log = logging.getLogger(__name__)


# ============================================================================
# Tree mirroring
# ============================================================================

@dataclass
class TreeStats:
    files_total: int = 0
    files_linked: int = 0
    files_relinked: int = 0
    files_removed: int = 0
    files_unchanged: int = 0
    files_failed: int = 0
    folders_removed: int = 0

    @property
    def operations(self) -> int:
        return self.files_linked + self.files_relinked + self.files_removed


@dataclass
class MirrorPlan:
    """Differences between a set of source roots and one mirror root.

    All paths are relative to the roots. ``sources`` maps every linkable
    relative path to the source file it must point at; with several roots the
    first root holding a path wins.
    """
    sources: dict[pathlib.PurePosixPath, pathlib.Path] = field(default_factory=dict)
    to_link: list[pathlib.PurePosixPath] = field(default_factory=list)
    to_relink: list[pathlib.PurePosixPath] = field(default_factory=list)
    to_remove: list[pathlib.PurePosixPath] = field(default_factory=list)
    unchanged: int = 0

    @property
    def operations(self) -> int:
        return len(self.to_link) + len(self.to_relink) + len(self.to_remove)


def plan_mirror(
    source_roots: Iterable[pathlib.Path],
    target_root: pathlib.Path,
    classifier: FileClassifier,
    fs: LocalFileSystem,
    *,
    delete: bool = True,
    cancel: threading.Event | None = None,
) -> MirrorPlan:
    """Compare source and mirror by relative path.

    Files the classifier rejects are ignored on both sides, so metadata the
    host writes into the mirror is never touched. A mirror file that exists
    but is not the same inode as its source is relinked.
    """
    plan = MirrorPlan()
    for root in source_roots:
        for relative in fs.walk(root, classifier.prune):
            check_cancelled(cancel)
            if classifier.should_link(relative):
                plan.sources.setdefault(relative, root / relative)

    existing = set()
    if os.path.isdir(target_root):
        for relative in fs.walk(target_root, classifier.prune):
            check_cancelled(cancel)
            if classifier.should_link(relative):
                existing.add(relative)

    for relative, source in plan.sources.items():
        if relative not in existing:
            plan.to_link.append(relative)
        elif fs.same_file(source, target_root / relative):
            plan.unchanged += 1
        else:
            plan.to_relink.append(relative)

    if delete:
        plan.to_remove = sorted(existing.difference(plan.sources))
    return plan


def apply_plan(
    plan: MirrorPlan,
    target_root: pathlib.Path,
    fs: LocalFileSystem,
    *,
    dry_run: bool = False,
    cancel: threading.Event | None = None,
    progress: ProgressSink | None = None,
) -> TreeStats:
    """Execute a plan. Single file failures are logged and counted, never raised."""
    stats = TreeStats(files_total=len(plan.sources), files_unchanged=plan.unchanged)
    total = plan.operations
    done = 0

    def step():
        nonlocal done
        done += 1
        safe_report(progress, done * 100.0 / total)

    for relative in plan.to_remove:
        check_cancelled(cancel)
        target = target_root / relative
        if dry_run:
            log.info("DELETE %s", target)
        else:
            log.info("Removing stray item '%s' in mirror", relative)
            try:
                fs.remove(target)
            except OSError as e:
                log.warning("Failed to remove '%s': %s", target, e)
                stats.files_failed += 1
                step()
                continue
            stats.folders_removed += fs.cleanup_empty_directories(target.parent, target_root)
        stats.files_removed += 1
        step()

    for relative in plan.to_relink:
        check_cancelled(cancel)
        source, target = plan.sources[relative], target_root / relative
        if dry_run:
            log.info("RELINK %s", target)
        else:
            log.debug("RELINK %s", target)
            try:
                fs.remove(target)
                fs.create_hardlink(source, target)
            except (LinkError, OSError) as e:
                log.warning("%s", e)
                stats.files_failed += 1
                step()
                continue
        stats.files_relinked += 1
        step()

    for relative in plan.to_link:
        check_cancelled(cancel)
        source, target = plan.sources[relative], target_root / relative
        if dry_run:
            log.info("LINK   %s", target)
        else:
            log.debug("LINK   %s", target)
            try:
                fs.create_hardlink(source, target)
            except (LinkError, OSError) as e:
                log.warning("%s", e)
                stats.files_failed += 1
                step()
                continue
        stats.files_linked += 1
        step()

    if total == 0:
        safe_report(progress, 100)
    return stats


def mirror_tree(
    source_roots: Iterable[pathlib.Path],
    target_root: pathlib.Path,
    classifier: FileClassifier,
    fs: LocalFileSystem | None = None,
    *,
    delete: bool = True,
    dry_run: bool = False,
    cancel: threading.Event | None = None,
    progress: ProgressSink | None = None,
) -> TreeStats:
    fs = fs or LocalFileSystem()
    plan = plan_mirror(source_roots, target_root, classifier, fs, delete=delete, cancel=cancel)
    log.debug(
        "Plan for '%s': %d to link, %d to relink, %d to remove, %d unchanged",
        target_root, len(plan.to_link), len(plan.to_relink), len(plan.to_remove), plan.unchanged,
    )
    return apply_plan(plan, target_root, fs, dry_run=dry_run, cancel=cancel, progress=progress)


# ============================================================================
# Engine results
# ============================================================================

@dataclass
class SyncResult:
    mirror_id: str
    status: SyncStatus
    files_total: int = 0
    files_linked: int = 0
    files_relinked: int = 0
    files_removed: int = 0
    files_failed: int = 0
    created_library_id: str | None = None
    error: str | None = None

    @property
    def operations(self) -> int:
        return self.files_linked + self.files_relinked + self.files_removed


@dataclass
class DeleteResult:
    mirror_id: str
    library_deleted: bool = False
    files_deleted: bool = False
    record_removed: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class SyncAllStatus(str, enum.Enum):
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    CANCELLED = "cancelled"
    ALTERNATIVE_NOT_FOUND = "alternative_not_found"


@dataclass
class SyncAllResult:
    alternative_id: str
    status: SyncAllStatus
    total: int = 0
    synced: int = 0
    failed: int = 0
    results: list[SyncResult] = field(default_factory=list)


# ============================================================================
# Engine
# ============================================================================

class MirrorSyncEngine:
    """Creates, synchronizes and deletes the mirrors stored in the configuration.

    Operations on the same mirror id are serialized; everything else runs
    concurrently. Every method re-reads the mirror from the store once it
    holds the mirror's lock, so callers may pass stale copies.
    """

    def __init__(
        self,
        store: ConfigurationStore,
        libraries: LibraryDirectory,
        fs: LocalFileSystem | None = None,
    ):
        self.store = store
        self.libraries = libraries
        self.fs = fs or LocalFileSystem()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @contextlib.contextmanager
    def _locked(self, mirror_id: str, cancel: threading.Event | None) -> Generator[None, None, None]:
        with self._locks_guard:
            lock = self._locks.setdefault(mirror_id, threading.Lock())
        acquire_lock(lock, cancel)
        try:
            yield
        finally:
            lock.release()

    def _forget_lock(self, mirror_id: str) -> None:
        with self._locks_guard:
            self._locks.pop(mirror_id, None)

    def _update(self, mirror_id: str, **changes) -> None:
        def change(mirror: LibraryMirror) -> None:
            for key, value in changes.items():
                setattr(mirror, key, value)

        self.store.update_mirror(mirror_id, change)

    def _load(self, mirror_id: str) -> tuple[LanguageAlternative, LibraryMirror]:
        found = self.store.get_mirror_with_alternative(mirror_id)
        if found is None:
            raise MirrorNotFoundError(f"Mirror {mirror_id} not found")
        return found

    def _host_libraries(self) -> dict[str, LibraryInfo]:
        return {library.id: library for library in self.libraries.list_libraries()}

    def _source_paths(self, mirror: LibraryMirror) -> list[pathlib.Path]:
        source = self._host_libraries().get(mirror.source_library_id)
        if source is None:
            raise LibraryNotFoundError(
                f"Source library {mirror.source_library_name or mirror.source_library_id} not found"
            )
        if not source.paths:
            raise PolyglotError(f"Source library {source.name} has no paths")
        return [pathlib.Path(p) for p in source.paths]

    # -- create / sync ------------------------------------------------------

    def create_mirror(
        self,
        alternative: LanguageAlternative,
        mirror: LibraryMirror,
        progress: ProgressSink | None = None,
        cancel: threading.Event | None = None,
    ) -> SyncResult:
        """Link the complete source tree and register the mirror with the host.

        Raises ``CrossDeviceError`` before anything is linked when the target
        cannot hold hardlinks to the source; the mirror then stays pending.
        """
        log.info("Creating mirror of '%s' in '%s'", mirror.source_library_name, mirror.target_path)
        with self._locked(mirror.id, cancel):
            return self._create_locked(mirror.id, progress, cancel)

    def _create_locked(self, mirror_id, progress, cancel) -> SyncResult:
        alternative, mirror = self._load(mirror_id)
        target_root = pathlib.Path(mirror.target_path)

        try:
            source_paths = self._source_paths(mirror)
            for source_path in source_paths:
                check_cancelled(cancel)
                self.fs.probe_hardlink(source_path, target_root)
        except CrossDeviceError as e:
            log.error("Cannot create mirror '%s': %s", mirror.target_library_name, e)
            self._update(mirror_id, status=SyncStatus.PENDING, last_error=str(e))
            raise
        except SyncCancelled:
            raise
        except Exception as e:
            log.error("Cannot create mirror '%s': %s", mirror.target_library_name, e)
            self._update(mirror_id, status=SyncStatus.ERROR, last_error=str(e))
            raise

        self._update(mirror_id, status=SyncStatus.SYNCING)
        safe_report(progress, 0)
        try:
            stats = mirror_tree(
                source_paths, target_root, self.store.classifier(), self.fs,
                cancel=cancel, progress=scaled_progress(progress, 0, 95),
            )
            check_cancelled(cancel)
            created_library_id = None
            if mirror.target_library_id is None:
                created_library_id = self.libraries.create_library(
                    mirror.target_library_name,
                    str(target_root),
                    alternative.metadata_language,
                    alternative.metadata_country,
                    mirror.collection_type,
                )
                log.info("Created library '%s' with id %s", mirror.target_library_name, created_library_id)
                self._update(mirror_id, target_library_id=created_library_id)
        except SyncCancelled:
            log.info("Creation of mirror '%s' cancelled", mirror.target_library_name)
            raise
        except Exception as e:
            log.error("Failed to create mirror '%s': %s", mirror.target_library_name, e)
            self._update(mirror_id, status=SyncStatus.ERROR, last_error=str(e))
            raise

        result = self._finish(mirror_id, stats)
        result.created_library_id = created_library_id
        safe_report(progress, 100)
        log.info(
            "Mirror '%s' created: %d file(s) linked, %d failed",
            mirror.target_library_name, stats.files_linked + stats.files_relinked, stats.files_failed,
        )
        return result

    def sync_mirror(
        self,
        mirror: LibraryMirror,
        progress: ProgressSink | None = None,
        cancel: threading.Event | None = None,
    ) -> SyncResult:
        """Bring an existing mirror up to date with its source.

        A mirror that has no host library yet is created instead.
        """
        log.info("Syncing mirror %s (%s)", mirror.id, mirror.source_library_name)
        with self._locked(mirror.id, cancel):
            _, current = self._load(mirror.id)
            if current.target_library_id is None:
                log.info("Mirror '%s' has no library yet, creating it", current.target_library_name)
                return self._create_locked(mirror.id, progress, cancel)
            return self._sync_locked(current, progress, cancel)

    def _sync_locked(self, mirror: LibraryMirror, progress, cancel) -> SyncResult:
        target_root = pathlib.Path(mirror.target_path)
        try:
            source_paths = self._source_paths(mirror)
            for source_path in source_paths:
                # An unmounted source would otherwise wipe the whole mirror
                if is_source_empty_or_unmounted(source_path):
                    raise PolyglotError(f"Source path '{source_path}' appears empty or unmounted")
        except PolyglotError as e:
            log.error("Cannot sync mirror '%s': %s", mirror.target_library_name, e)
            self._update(mirror.id, status=SyncStatus.ERROR, last_error=str(e))
            raise

        self._update(mirror.id, status=SyncStatus.SYNCING)
        try:
            if not target_root.is_dir():
                log.info("MKDIR  %s", target_root)
                target_root.mkdir(parents=True, exist_ok=True)
            stats = mirror_tree(
                source_paths, target_root, self.store.classifier(), self.fs,
                cancel=cancel, progress=progress,
            )
        except SyncCancelled:
            log.info("Sync of mirror '%s' cancelled", mirror.target_library_name)
            raise
        except Exception as e:
            log.error("Failed to sync mirror '%s': %s", mirror.target_library_name, e)
            self._update(mirror.id, status=SyncStatus.ERROR, last_error=str(e))
            raise

        log.info(
            "Mirror '%s' synced: %d linked, %d relinked, %d removed, %d failed",
            mirror.target_library_name, stats.files_linked, stats.files_relinked,
            stats.files_removed, stats.files_failed,
        )
        return self._finish(mirror.id, stats)

    def _finish(self, mirror_id: str, stats: TreeStats) -> SyncResult:
        if stats.files_failed:
            status = SyncStatus.ERROR
            error = f"{stats.files_failed} file(s) failed to link"
        else:
            status = SyncStatus.SYNCED
            error = None
        self._update(
            mirror_id,
            status=status,
            last_error=error,
            last_synced_at=utcnow(),
            last_file_count=stats.files_total,
        )
        return SyncResult(
            mirror_id=mirror_id,
            status=status,
            files_total=stats.files_total,
            files_linked=stats.files_linked,
            files_relinked=stats.files_relinked,
            files_removed=stats.files_removed,
            files_failed=stats.files_failed,
            error=error,
        )

    def sync_all_mirrors(
        self,
        alternative_id: str,
        progress: ProgressSink | None = None,
        cancel: threading.Event | None = None,
    ) -> SyncAllResult:
        alternative = self.store.get_alternative(alternative_id)
        if alternative is None:
            log.warning("Language alternative %s not found", alternative_id)
            return SyncAllResult(alternative_id, SyncAllStatus.ALTERNATIVE_NOT_FOUND)

        log.info("Syncing all mirrors of language alternative '%s'", alternative.name)
        result = SyncAllResult(alternative_id, SyncAllStatus.COMPLETED, total=len(alternative.mirrors))
        for index, mirror in enumerate(alternative.mirrors):
            if cancel is not None and cancel.is_set():
                result.status = SyncAllStatus.CANCELLED
                break
            share = 100.0 / result.total
            try:
                outcome = self.sync_mirror(
                    mirror,
                    progress=scaled_progress(progress, index * share, (index + 1) * share),
                    cancel=cancel,
                )
            except SyncCancelled:
                result.status = SyncAllStatus.CANCELLED
                break
            except Exception as e:
                log.error("Failed to sync mirror '%s': %s", mirror.target_library_name, e)
                result.failed += 1
                continue
            result.results.append(outcome)
            if outcome.status == SyncStatus.SYNCED:
                result.synced += 1
            else:
                result.failed += 1

        if result.status != SyncAllStatus.CANCELLED:
            if result.failed:
                result.status = SyncAllStatus.COMPLETED_WITH_ERRORS
            safe_report(progress, 100)
        return result

    # -- delete -------------------------------------------------------------

    def delete_mirror(
        self,
        mirror: LibraryMirror,
        delete_library: bool = True,
        delete_files: bool = True,
        keep_record: bool = False,
        force: bool = False,
        cancel: threading.Event | None = None,
    ) -> DeleteResult:
        """Remove a mirror's host library and/or its linked files.

        The source is never touched. With ``keep_record`` the configuration
        entry survives as a pending mirror without library; otherwise it is
        removed, unless something failed and ``force`` is not set.
        """
        log.info(
            "Deleting mirror %s (delete_library=%s, delete_files=%s)",
            mirror.id, delete_library, delete_files,
        )
        result = DeleteResult(mirror.id)
        with self._locked(mirror.id, cancel):
            found = self.store.get_mirror_with_alternative(mirror.id)
            current = found[1] if found else mirror

            if delete_library and current.target_library_id:
                try:
                    self.libraries.delete_library(current.target_library_id)
                    result.library_deleted = True
                    log.info("Removed library '%s'", current.target_library_name)
                except Exception as e:
                    log.warning("Failed to remove library '%s': %s", current.target_library_name, e)
                    result.errors.append(f"Failed to remove library: {e}")

            if delete_files and current.target_path:
                self._delete_tree(current, result)

            if found is None:
                log.debug("Mirror %s has no configuration record", mirror.id)
            elif keep_record:
                self._update(current.id, target_library_id=None, status=SyncStatus.PENDING, last_error=None)
            elif result.errors and not force:
                log.warning("Keeping mirror record %s because deletion was incomplete", current.id)
                self._update(current.id, status=SyncStatus.ERROR, last_error="; ".join(result.errors))
            else:
                result.record_removed = self.store.remove_mirror(current.id)

        if result.record_removed:
            self._forget_lock(mirror.id)
        return result

    def _delete_tree(self, mirror: LibraryMirror, result: DeleteResult) -> None:
        target_root = pathlib.Path(mirror.target_path)
        source = self._host_libraries().get(mirror.source_library_id)
        for source_path in source.paths if source else []:
            if paths_overlap(target_root, source_path):
                message = f"Refusing to delete '{target_root}': overlaps source path '{source_path}'"
                log.error(message)
                result.errors.append(message)
                return
        if not os.path.lexists(target_root):
            return
        try:
            self.fs.remove(target_root)
        except OSError as e:
            log.warning("Failed to delete mirror folder '%s': %s", target_root, e)
            result.errors.append(f"Failed to delete mirror folder: {e}")
            return
        result.files_deleted = True
        log.info("DELETE %s", target_root)

    def delete_alternative(
        self,
        alternative_id: str,
        delete_libraries: bool = True,
        delete_files: bool = True,
    ) -> list[DeleteResult]:
        """Delete every mirror of an alternative, then the alternative itself."""
        alternative = self.store.get_alternative(alternative_id)
        if alternative is None:
            raise AlternativeNotFoundError(f"Language alternative {alternative_id} not found")

        results = [
            self.delete_mirror(m, delete_library=delete_libraries, delete_files=delete_files, force=True)
            for m in alternative.mirrors
        ]
        failed = {r.mirror_id for r in results if not r.record_removed}
        if not self.store.remove_alternative(alternative_id, expected_mirror_ids=failed):
            log.warning("Language alternative '%s' was not removed", alternative.name)
        else:
            log.info("Deleted language alternative '%s'", alternative.name)
        return results

    # -- configuration helpers ----------------------------------------------

    def list_libraries(self) -> list[LibraryInfo]:
        """Host libraries, flagged when they are the target of a mirror."""
        owners = self.store.read(
            lambda c: {m.target_library_id: a.id for a in c.alternatives for m in a.mirrors if m.target_library_id}
        )
        libraries = self.libraries.list_libraries()
        for library in libraries:
            library.is_mirror = library.id in owners
            library.alternative_id = owners.get(library.id)
        return libraries

    def validate_mirror_configuration(self, source_library_id: str, target_path: str) -> tuple[bool, str | None]:
        source = self._host_libraries().get(source_library_id)
        if source is None:
            return False, "Source library not found"
        if not source.paths:
            return False, "Source library has no paths"
        if not target_path or not target_path.strip():
            return False, "Target path is required"
        target = pathlib.PurePath(target_path)
        if ".." in target.parts:
            return False, "Target path cannot contain path traversal sequences"
        if not target.is_absolute():
            return False, "Target path must be absolute"

        for source_path in source.paths:
            if paths_overlap(target_path, source_path):
                return False, f"Target path overlaps the source library path '{source_path}'"

        used_by = self.store.read(
            lambda c: [m.target_library_name for m in c.all_mirrors() if m.target_path and paths_overlap(m.target_path, target_path)]
        )
        if used_by:
            return False, f"Target path is already used by mirror '{used_by[0]}'"

        existing = pathlib.Path(target_path)
        while not existing.exists() and existing != existing.parent:
            existing = existing.parent
        for source_path in source.paths:
            if not are_same_filesystem(pathlib.Path(source_path), existing):
                return False, (
                    f"Source path '{source_path}' and target path are on different filesystems. "
                    "Hardlinks require the same filesystem."
                )
        return True, None

    def add_mirror(
        self,
        alternative_id: str,
        source_library_id: str,
        target_path: str | None = None,
        target_library_name: str | None = None,
    ) -> LibraryMirror:
        """Record a new pending mirror. Nothing is linked until it is created."""
        alternative = self.store.get_alternative(alternative_id)
        if alternative is None:
            raise AlternativeNotFoundError(f"Language alternative {alternative_id} not found")
        source = self._host_libraries().get(source_library_id)
        if source is None:
            raise LibraryNotFoundError(f"Library {source_library_id} not found")
        if self.store.read(lambda c: any(m.target_library_id == source_library_id for m in c.all_mirrors())):
            raise ValueError(f"Library '{source.name}' is a mirror and cannot be mirrored")

        if not target_path:
            if not alternative.destination_base_path:
                raise ValueError("Target path is required")
            target_path = os.path.join(alternative.destination_base_path, source.name)

        ok, message = self.validate_mirror_configuration(source_library_id, target_path)
        if not ok:
            raise ValueError(message)

        mirror = LibraryMirror(
            source_library_id=source.id,
            source_library_name=source.name,
            target_path=target_path,
            target_library_name=target_library_name or f"{source.name} ({alternative.name})",
            collection_type=source.collection_type,
        )
        if not self.store.add_mirror(alternative_id, mirror):
            raise ValueError(f"Library '{source.name}' is already mirrored in '{alternative.name}'")
        log.info("Added mirror '%s' -> '%s'", source.name, target_path)
        return mirror
