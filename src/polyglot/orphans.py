import logging
import threading
from dataclasses import dataclass, field

from .config import ConfigurationStore
from .interfaces import LibraryDirectory
from .mirror import MirrorSyncEngine
from .models import LibraryMirror
from .utils import check_cancelled

log = logging.getLogger(__name__)

SOURCE_DELETED = "source deleted"
TARGET_DELETED = "target deleted"


@dataclass
class OrphanFinding:
    alternative_id: str
    mirror: LibraryMirror
    reason: str


@dataclass
class OrphanCleanupResult:
    cleaned: list[tuple[LibraryMirror, str]] = field(default_factory=list)
    failed: list[tuple[LibraryMirror, str]] = field(default_factory=list)
    # Existing sources that lost their only ready mirror in some alternative
    sources_without_mirror: set[str] = field(default_factory=set)

    @property
    def total_cleaned(self) -> int:
        return len(self.cleaned)


class OrphanDetector:
    """Finds mirrors whose source or target library vanished from the host."""

    def __init__(self, store: ConfigurationStore, libraries: LibraryDirectory, engine: MirrorSyncEngine):
        self.store = store
        self.libraries = libraries
        self.engine = engine

    def detect(self, existing_ids: set[str] | None = None) -> list[OrphanFinding]:
        if existing_ids is None:
            existing_ids = {library.id for library in self.libraries.list_libraries()}

        findings = []
        for alternative in self.store.get_alternatives():
            for mirror in alternative.mirrors:
                if mirror.source_library_id not in existing_ids:
                    log.warning(
                        "Source library %s of mirror '%s' no longer exists",
                        mirror.source_library_id, mirror.target_library_name,
                    )
                    findings.append(OrphanFinding(alternative.id, mirror, SOURCE_DELETED))
                elif mirror.target_library_id and mirror.target_library_id not in existing_ids:
                    log.warning(
                        "Library %s of mirror '%s' no longer exists",
                        mirror.target_library_id, mirror.target_library_name,
                    )
                    findings.append(OrphanFinding(alternative.id, mirror, TARGET_DELETED))
        return findings

    def detect_and_clean(self, cancel: threading.Event | None = None) -> OrphanCleanupResult:
        existing_ids = {library.id for library in self.libraries.list_libraries()}
        findings = self.detect(existing_ids)
        result = OrphanCleanupResult()

        for finding in findings:
            check_cancelled(cancel)
            mirror = finding.mirror
            try:
                if finding.reason == SOURCE_DELETED:
                    # Files are unreachable from any remaining library, reclaim them
                    outcome = self.engine.delete_mirror(
                        mirror,
                        delete_library=mirror.target_library_id in existing_ids,
                        delete_files=True,
                        cancel=cancel,
                    )
                    if not outcome.record_removed:
                        result.failed.append((mirror, "; ".join(outcome.errors) or "record not removed"))
                        continue
                else:
                    # The source still owns the data; the mirror can be recreated
                    self.engine.delete_mirror(
                        mirror,
                        delete_library=False,
                        delete_files=False,
                        keep_record=True,
                        cancel=cancel,
                    )
            except Exception as e:
                log.error("Failed to clean up orphaned mirror '%s': %s", mirror.target_library_name, e)
                result.failed.append((mirror, str(e)))
                continue

            log.info("Cleaned up orphaned mirror '%s' (%s)", mirror.target_library_name, finding.reason)
            result.cleaned.append((mirror, finding.reason))

        config = self.store.snapshot()
        for finding in findings:
            source_id = finding.mirror.source_library_id
            if source_id not in existing_ids:
                continue
            if (finding.mirror, finding.reason) not in result.cleaned:
                continue
            alternative = config.find_alternative(finding.alternative_id)
            replacement = alternative.mirror_for_source(source_id) if alternative else None
            if replacement is None or not replacement.is_ready:
                result.sources_without_mirror.add(source_id)
                log.info(
                    "Library '%s' has no ready mirror in alternative %s anymore",
                    finding.mirror.source_library_name, finding.alternative_id,
                )

        if result.cleaned or result.failed:
            log.info(
                "Orphan cleanup: %d cleaned, %d failed, %d source(s) to restore",
                len(result.cleaned), len(result.failed), len(result.sources_without_mirror),
            )
        return result
