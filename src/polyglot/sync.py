import logging
import pathlib
from typing import Optional

from .config import PluginConfiguration, load_config
from .errors import CrossDeviceError, LinkError
from .links import LocalFileSystem, is_path_inside, is_source_empty_or_unmounted
from .mirror import mirror_tree

log = logging.getLogger(__name__)


def sync(
    source: str,
    target: str,
    *,
    dry_run: bool = False,
    delete: bool = False,
    create: bool = False,
    verbose: bool = False,
    debug: bool = False,
    config_path: Optional[str] = None,
) -> int:
    """Mirror one folder into another with hardlinks, outside of any host.

    Returns the process exit code: 0 on success, 1 when the folders cannot
    be mirrored, 2 when some files failed to link.
    """
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)

    source_path = pathlib.Path(source)
    target_path = pathlib.Path(target)
    classifier = PluginConfiguration.from_dict(load_config(config_path)).classifier()
    fs = LocalFileSystem()

    if dry_run:
        log.info("SOURCE %s", source_path)
        log.info("TARGET %s", target_path)
    else:
        log.info("Mirroring '%s' to '%s'", source_path, target_path)

    if not source_path.is_dir():
        log.error("Source directory '%s' does not exist", source_path)
        return 1

    if is_path_inside(target_path, source_path) or is_path_inside(source_path, target_path):
        log.error("Source '%s' and target '%s' overlap", source_path, target_path)
        return 1

    # Protects against wiping the target when the source mount failed
    if delete and is_source_empty_or_unmounted(source_path):
        log.error(
            "Source directory '%s' appears empty or unmounted. "
            "Aborting to prevent accidental deletion of target content.",
            source_path,
        )
        return 1

    if not target_path.is_dir():
        if not create:
            log.error("Target directory '%s' does not exist", target_path)
            return 1
        if dry_run:
            log.info("MKDIR  %s", target_path)
        else:
            target_path.mkdir(parents=True)

    if target_path.is_dir():
        try:
            fs.probe_hardlink(source_path, target_path)
        except CrossDeviceError as e:
            log.error(
                "%s. Hard links require source and target to be on the same filesystem.", e
            )
            return 1
        except LinkError as e:
            log.error("%s", e)
            return 1

    stats = mirror_tree([source_path], target_path, classifier, fs, delete=delete, dry_run=dry_run)

    summary = [
        f"Summary: {stats.files_total} files found",
        f"{stats.files_linked} linked",
        f"{stats.files_relinked} relinked",
        f"{stats.files_removed} removed",
    ]
    if verbose:
        summary.append(f"{stats.files_unchanged} unchanged")
    if stats.files_failed:
        summary.append(f"{stats.files_failed} failed")
    log.info(", ".join(summary) + ".")

    return 2 if stats.files_failed else 0
