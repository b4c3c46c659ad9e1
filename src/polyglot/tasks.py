import datetime
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from .access import AccessReconciler
from .config import ConfigurationStore
from .mirror import MirrorSyncEngine, SyncAllResult
from .orphans import OrphanDetector
from .utils import ProgressSink, check_cancelled, safe_report, scaled_progress

log = logging.getLogger(__name__)

DEFAULT_RECONCILIATION_TIME = datetime.time(3, 0)


@dataclass
class MirrorTaskResult:
    orphans_cleaned: int = 0
    alternatives: list[SyncAllResult] = field(default_factory=list)
    users_changed: int = 0


def _sync_alternatives(
    store: ConfigurationStore,
    engine: MirrorSyncEngine,
    result: MirrorTaskResult,
    progress: ProgressSink | None,
    cancel: threading.Event | None,
    start: float = 0.0,
) -> None:
    alternatives = store.get_alternatives()
    if not alternatives:
        log.info("No language alternatives configured, nothing to sync")
        return

    share = (100.0 - start) / len(alternatives)
    for index, alternative in enumerate(alternatives):
        check_cancelled(cancel)
        if not alternative.mirrors:
            continue
        log.info("Syncing mirrors of language alternative '%s'", alternative.name)
        begin = start + index * share
        result.alternatives.append(
            engine.sync_all_mirrors(alternative.id, scaled_progress(progress, begin, begin + share), cancel)
        )


def _reconcile_if_created(result: MirrorTaskResult, access: AccessReconciler | None, cancel) -> None:
    created = any(r.created_library_id for a in result.alternatives for r in a.results)
    if access is not None and created:
        result.users_changed = access.reconcile_all_users(cancel)


def run_mirror_sync(
    store: ConfigurationStore,
    engine: MirrorSyncEngine,
    detector: OrphanDetector,
    access: AccessReconciler | None = None,
    progress: ProgressSink | None = None,
    cancel: threading.Event | None = None,
) -> MirrorTaskResult:
    """Periodic task: clean orphaned mirrors, then sync every alternative.

    Library removals are not always announced by the host, so the orphan
    pass runs first. Its failure does not prevent the sync.
    """
    log.info("Starting mirror sync task")
    result = MirrorTaskResult()
    safe_report(progress, 0)

    try:
        cleanup = detector.detect_and_clean(cancel)
    except Exception as e:
        if cancel is not None and cancel.is_set():
            raise
        log.warning("Failed to clean up orphaned mirrors, continuing with sync: %s", e)
    else:
        result.orphans_cleaned = cleanup.total_cleaned
        if cleanup.total_cleaned:
            log.info("Cleaned up %d orphaned mirror(s) before sync", cleanup.total_cleaned)
        if access is not None and cleanup.sources_without_mirror:
            access.restore_sources(cleanup.sources_without_mirror)

    _sync_alternatives(store, engine, result, progress, cancel, start=5.0)
    _reconcile_if_created(result, access, cancel)
    safe_report(progress, 100)
    log.info("Mirror sync task completed")
    return result


def run_post_scan_sync(
    store: ConfigurationStore,
    engine: MirrorSyncEngine,
    access: AccessReconciler | None = None,
    progress: ProgressSink | None = None,
    cancel: threading.Event | None = None,
) -> MirrorTaskResult | None:
    """Sync all mirrors after a host library scan, when enabled."""
    if not store.read(lambda c: c.sync_mirrors_after_library_scan):
        log.debug("Sync after library scans is disabled, skipping")
        return None

    log.info("Library scan completed, syncing mirrors")
    result = MirrorTaskResult()
    _sync_alternatives(store, engine, result, progress, cancel)
    _reconcile_if_created(result, access, cancel)
    safe_report(progress, 100)
    log.info("Post-scan mirror sync completed")
    return result


def run_user_reconciliation(
    store: ConfigurationStore,
    access: AccessReconciler,
    progress: ProgressSink | None = None,
    cancel: threading.Event | None = None,
) -> int:
    """Reconcile the library access of every managed user. Returns changed users."""
    log.info("Starting user library reconciliation")
    users = [u for u in store.get_user_languages() if u.is_plugin_managed]
    safe_report(progress, 0)

    changed = 0
    for index, user in enumerate(users, start=1):
        check_cancelled(cancel)
        try:
            if access.reconcile_user_access(user.user_id):
                changed += 1
        except Exception:
            log.exception("Failed to reconcile user %s (%s)", user.username, user.user_id)
        safe_report(progress, index * 100.0 / len(users))

    safe_report(progress, 100)
    log.info("User reconciliation completed: %d user(s) processed, %d changed", len(users), changed)
    return changed


# ============================================================================
# Default triggers
# ============================================================================

@dataclass
class TaskDefinition:
    key: str
    name: str
    description: str
    run: Callable[..., object]
    interval: datetime.timedelta | None = None
    daily_at: datetime.time | None = None


def parse_time_of_day(value: str) -> datetime.time:
    try:
        return datetime.time.fromisoformat(value.strip())
    except (AttributeError, ValueError):
        log.warning("Invalid reconciliation time '%s', using %s", value, DEFAULT_RECONCILIATION_TIME)
        return DEFAULT_RECONCILIATION_TIME


def default_tasks(store: ConfigurationStore) -> list[TaskDefinition]:
    """Describe the scheduled tasks and their default triggers for the host scheduler."""
    hours, at = store.read(lambda c: (c.mirror_sync_interval_hours, c.user_reconciliation_time))
    if hours <= 0:
        log.warning("Invalid mirror sync interval %r, using 6 hours", hours)
        hours = 6
    return [
        TaskDefinition(
            key="PolyglotMirrorSync",
            name="Polyglot Mirror Sync",
            description="Synchronizes all language mirror libraries with their source libraries.",
            run=run_mirror_sync,
            interval=datetime.timedelta(hours=hours),
        ),
        TaskDefinition(
            key="PolyglotMirrorPostScan",
            name="Polyglot Post-Scan Mirror Sync",
            description="Synchronizes mirrors after a library scan.",
            run=run_post_scan_sync,
        ),
        TaskDefinition(
            key="PolyglotUserSync",
            name="Polyglot User Library Sync",
            description="Reconciles user library access with their language assignments.",
            run=run_user_reconciliation,
            daily_at=parse_time_of_day(at),
        ),
    ]
