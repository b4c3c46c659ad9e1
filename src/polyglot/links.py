import errno
import logging
import os
import pathlib
import shutil
import uuid
from collections.abc import Callable, Generator

from .errors import CrossDeviceError, LinkError

# Optional xattr support for MergerFS branch detection
try:
    import xattr
    _XATTR_AVAILABLE = True
except ImportError:
    _XATTR_AVAILABLE = False

log = logging.getLogger(__name__)

PROBE_PREFIX = ".polyglot-probe-"


# ============================================================================
# MergerFS Support Functions
# ============================================================================

MERGERFS_XATTR_BASEPATH = b"user.mergerfs.basepath"
MERGERFS_XATTR_FULLPATH = b"user.mergerfs.fullpath"


def get_mergerfs_branch(filepath: pathlib.Path) -> str | None:
    """Returns the MergerFS branch holding ``filepath``, or None when unknown."""
    if not _XATTR_AVAILABLE:
        return None

    try:
        attrs = xattr.xattr(str(filepath))
        return attrs.get(MERGERFS_XATTR_BASEPATH).decode("utf-8").rstrip("\x00")
    except (KeyError, OSError, UnicodeDecodeError):
        return None


def get_physical_path(filepath: pathlib.Path) -> pathlib.Path:
    """Get the physical path on the underlying branch for a MergerFS path.

    Returns the original path if not MergerFS or if xattrs are unavailable.
    The merged mount virtualizes inode numbers, so comparing inodes is only
    meaningful on the physical paths.
    """
    if not _XATTR_AVAILABLE:
        return filepath

    try:
        attrs = xattr.xattr(str(filepath))
        fullpath = attrs.get(MERGERFS_XATTR_FULLPATH).decode("utf-8").rstrip("\x00")
    except (KeyError, OSError, UnicodeDecodeError):
        return filepath
    return pathlib.Path(fullpath) if fullpath else filepath


# ============================================================================
# Filesystem checks
# ============================================================================

# Minimum number of items expected in a source directory before stray items
# may be deleted from its mirror; protects against wiping the target when the
# source mount fails
MIN_SOURCE_ITEMS_FOR_DELETE = 1


def is_source_empty_or_unmounted(source_path: pathlib.Path) -> bool:
    """Check if source directory appears empty or unmounted."""
    try:
        with os.scandir(source_path) as entries:
            count = 0
            for _ in entries:
                count += 1
                if count >= MIN_SOURCE_ITEMS_FOR_DELETE:
                    return False
            return True
    except OSError as e:
        log.error("Cannot access source directory '%s': %s", source_path, e)
        return True


def are_same_filesystem(path1: pathlib.Path, path2: pathlib.Path) -> bool:
    """Compare ``st_dev`` of two existing paths.

    On MergerFS both paths report the device of the merged mount, so a
    matching device is necessary but not sufficient; ``probe_hardlink`` is the
    authoritative check.
    """
    try:
        return path1.stat().st_dev == path2.stat().st_dev
    except OSError:
        # If we can't stat, assume different filesystems to be safe
        return False


def is_path_inside(path: str | os.PathLike, parent: str | os.PathLike) -> bool:
    """True when ``path`` equals ``parent`` or lies below it, after resolving."""
    child = pathlib.Path(os.path.abspath(path))
    base = pathlib.Path(os.path.abspath(parent))
    try:
        child = child.resolve()
        base = base.resolve()
    except OSError:
        pass
    return child == base or base in child.parents


def paths_overlap(a: str | os.PathLike, b: str | os.PathLike) -> bool:
    return is_path_inside(a, b) or is_path_inside(b, a)


def verify_hardlink(source: pathlib.Path, target: pathlib.Path) -> bool:
    """Verify that target is a valid hard link to source by comparing physical inodes.

    Returns True if both files share the same physical inode, False otherwise
    (including when either side cannot be stat'ed).
    """
    try:
        source_stat = get_physical_path(source).stat()
        target_stat = get_physical_path(target).stat()
    except OSError:
        return False
    return (source_stat.st_dev, source_stat.st_ino) == (target_stat.st_dev, target_stat.st_ino)


# ============================================================================
# Mutating primitives
# ============================================================================

def create_hardlink(source: pathlib.Path, target: pathlib.Path) -> None:
    """Create ``target`` as a hard link to ``source``, creating parent folders.

    Raises ``CrossDeviceError`` on EXDEV and ``LinkError`` for every other
    failure.
    """
    try:
        if not target.parent.is_dir():
            log.debug("MKDIR  %s", target.parent)
            target.parent.mkdir(parents=True, exist_ok=True)
        target.hardlink_to(source)
    except OSError as e:
        if e.errno == errno.EXDEV:
            source_branch = get_mergerfs_branch(source)
            target_branch = get_mergerfs_branch(target.parent)
            if source_branch and target_branch and source_branch != target_branch:
                message = (
                    f"Cannot hardlink '{source}' -> '{target}': source on branch "
                    f"'{source_branch}', target folder on branch '{target_branch}'"
                )
            else:
                message = f"Cannot hardlink '{source}' -> '{target}': cross-device link"
            raise CrossDeviceError(message, e.errno) from e
        elif e.errno == errno.EACCES:
            message = f"Permission denied creating hardlink '{source}' -> '{target}'"
        elif e.errno == errno.EEXIST:
            message = f"Target file already exists: '{target}'"
        elif e.errno == errno.ENOENT:
            message = f"Source file not found: '{source}'"
        else:
            message = f"Failed to create hardlink '{source}' -> '{target}': {e}"
        raise LinkError(message, e.errno) from e


def remove_path(path: pathlib.Path) -> None:
    """Remove a file, symlink or complete folder. Missing paths are ignored."""
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
    elif path.is_dir():
        shutil.rmtree(path)


def probe_hardlink(source_dir: pathlib.Path, target_dir: pathlib.Path) -> None:
    """Prove that files below ``source_dir`` can be hard linked into ``target_dir``.

    Links one real source file to a throw-away name inside the target folder
    and removes it again. Without any source file the device ids are compared
    instead. Raises ``CrossDeviceError`` when linking is impossible.
    """
    target_dir.mkdir(parents=True, exist_ok=True)

    sample = next(walk_files(source_dir), None)
    if sample is None:
        if not are_same_filesystem(source_dir, target_dir):
            raise CrossDeviceError(
                f"'{source_dir}' and '{target_dir}' are on different filesystems"
            )
        return

    probe = target_dir / f"{PROBE_PREFIX}{uuid.uuid4().hex}"
    try:
        probe.hardlink_to(source_dir / sample)
    except OSError as e:
        if e.errno in (errno.EXDEV, errno.EPERM, errno.EMLINK, errno.ENOTSUP):
            raise CrossDeviceError(
                f"Cannot hardlink from '{source_dir}' into '{target_dir}': {e.strerror}",
                e.errno,
            ) from e
        raise LinkError(f"Hardlink probe in '{target_dir}' failed: {e}", e.errno) from e
    else:
        probe.unlink()
        log.debug("Hardlink probe '%s' -> '%s' succeeded", source_dir, target_dir)


def cleanup_empty_directories(start: pathlib.Path, stop_at: pathlib.Path) -> int:
    """Remove ``start`` and its parents while they are empty, never ``stop_at``.

    Returns the number of removed folders.
    """
    removed = 0
    current = start
    while current != stop_at and stop_at in current.parents:
        try:
            current.rmdir()
        except OSError:
            break
        log.debug("RMDIR  %s", current)
        removed += 1
        current = current.parent
    return removed


def walk_files(
    root: pathlib.Path,
    prune: Callable[[pathlib.PurePosixPath], bool] | None = None,
) -> Generator[pathlib.PurePosixPath, None, None]:
    """Yield the relative paths of all regular files below ``root``.

    Symlinks are skipped to avoid unexpected behavior. ``prune`` receives the
    relative path of every folder and stops the walk from descending into it
    when it returns True. Unreadable subfolders are logged and skipped; an
    unreadable ``root`` raises ``OSError``.
    """
    pending = [pathlib.PurePosixPath()]
    while pending:
        relative_dir = pending.pop()
        try:
            with os.scandir(root / relative_dir) as entries:
                children = sorted(entries, key=lambda e: e.name)
        except OSError as e:
            if not relative_dir.parts:
                raise
            log.warning("Cannot read folder '%s': %s", root / relative_dir, e)
            continue

        subdirs = []
        for entry in children:
            relative = relative_dir / entry.name
            if entry.is_symlink():
                log.debug("Skipping symlink '%s'", relative)
                continue
            if entry.is_dir():
                if prune and prune(relative):
                    continue
                subdirs.append(relative)
            elif entry.is_file():
                if entry.name.startswith(PROBE_PREFIX):
                    continue
                yield relative
        pending.extend(reversed(subdirs))


class LocalFileSystem:
    """Filesystem operations used by the mirror engine."""

    def walk(self, root, prune=None):
        return walk_files(pathlib.Path(root), prune)

    def create_hardlink(self, source, target):
        create_hardlink(pathlib.Path(source), pathlib.Path(target))

    def remove(self, path):
        remove_path(pathlib.Path(path))

    def same_file(self, a, b) -> bool:
        return verify_hardlink(pathlib.Path(a), pathlib.Path(b))

    def exists(self, path) -> bool:
        return os.path.lexists(path)

    def probe_hardlink(self, source_dir, target_dir):
        probe_hardlink(pathlib.Path(source_dir), pathlib.Path(target_dir))

    def cleanup_empty_directories(self, start, stop_at) -> int:
        return cleanup_empty_directories(pathlib.Path(start), pathlib.Path(stop_at))
