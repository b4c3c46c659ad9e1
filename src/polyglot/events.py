import logging
import queue
import threading
from dataclasses import dataclass

from .access import AccessReconciler
from .config import ConfigurationStore
from .errors import SyncCancelled
from .interfaces import EventSource
from .ldap import LdapGroupResolver
from .orphans import OrphanDetector
from .users import UserLanguageService

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LibraryRemoved:
    library_id: str | None = None


@dataclass(frozen=True)
class UserCreated:
    user_id: str
    username: str


@dataclass(frozen=True)
class UserUpdated:
    user_id: str
    username: str


@dataclass(frozen=True)
class UserDeleted:
    user_id: str
    username: str = ""


_STOP = object()


class EventDispatcher:
    """Handles host events on a single worker thread.

    ``start`` launches the worker and subscribes to the event source. ``stop``
    cancels the handler in flight, waits for the worker to exit and only
    then unsubscribes, so no handler ever runs against a torn-down host.
    """

    def __init__(
        self,
        source: EventSource,
        store: ConfigurationStore,
        detector: OrphanDetector,
        access: AccessReconciler,
        users: UserLanguageService,
        ldap: LdapGroupResolver,
    ):
        self.source = source
        self.store = store
        self.detector = detector
        self.access = access
        self.users = users
        self.ldap = ldap
        self._queue: queue.Queue = queue.Queue()
        self._cancel = threading.Event()
        self._thread: threading.Thread | None = None
        self._handlers = {
            LibraryRemoved: self._on_library_removed,
            UserCreated: self._on_user_created,
            UserUpdated: self._on_user_updated,
            UserDeleted: self._on_user_deleted,
        }

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            raise RuntimeError("Event dispatcher already started")
        self._cancel = threading.Event()
        self._queue = queue.Queue()
        self._thread = threading.Thread(target=self._run, name="polyglot-events", daemon=True)
        self._thread.start()
        self.source.subscribe(self.publish)
        log.info("Event dispatcher started")

    def stop(self, timeout: float | None = None) -> None:
        if self._thread is None:
            return
        self._cancel.set()
        self._queue.put(_STOP)
        self._thread.join(timeout)
        if self._thread.is_alive():
            log.warning("Event worker did not stop within %s seconds", timeout)
        self.source.unsubscribe(self.publish)
        self._thread = None
        log.info("Event dispatcher stopped")

    def publish(self, event: object) -> None:
        if self._cancel.is_set() or self._thread is None:
            log.debug("Dispatcher stopped, dropping %r", event)
            return
        self._queue.put(event)

    def join(self) -> None:
        """Block until every queued event has been handled."""
        self._queue.join()

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                if self._cancel.is_set():
                    continue
                self.handle(event)
            finally:
                self._queue.task_done()

    def handle(self, event: object) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            log.debug("Ignoring event %r", event)
            return
        try:
            handler(event)
        except SyncCancelled:
            log.info("Handling of %s cancelled", type(event).__name__)
        except Exception:
            log.exception("Failed to handle %s", type(event).__name__)

    def _on_library_removed(self, event: LibraryRemoved) -> None:
        log.info("Library %s removed, checking for orphaned mirrors", event.library_id or "?")
        result = self.detector.detect_and_clean(cancel=self._cancel)
        if result.sources_without_mirror:
            self.access.restore_sources(result.sources_without_mirror)
        self.access.reconcile_all_users(cancel=self._cancel)

    def _on_user_created(self, event: UserCreated) -> None:
        log.info("User created: %s (%s)", event.username, event.user_id)

        if self.ldap.enabled:
            alternative_id = self.ldap.determine_language(event.username)
            if alternative_id is not None:
                self.users.assign_language(event.user_id, alternative_id, "ldap")
                log.info("Assigned language to new user %s based on LDAP groups", event.username)
                return
            log.debug("No LDAP group match for new user %s", event.username)

        auto_manage, default_id = self.store.read(
            lambda c: (c.auto_manage_new_users, c.default_alternative_id)
        )
        if auto_manage:
            self.users.assign_language(event.user_id, default_id, "auto")

    def _on_user_updated(self, event: UserUpdated) -> None:
        def rename(user) -> bool:
            if user.username == event.username:
                return False
            user.username = event.username
            return True

        self.store.update_user_language(event.user_id, rename)

        if not self.ldap.enabled or self.users.is_manually_set(event.user_id):
            return

        alternative_id = self.ldap.determine_language(event.username)
        current = self.users.get_user_language(event.user_id)
        current_id = current.selected_alternative_id if current else None
        if alternative_id == current_id:
            return
        if alternative_id is not None:
            self.users.assign_language(event.user_id, alternative_id, "ldap")
            log.info("Updated language of user %s based on LDAP groups", event.username)
        elif current_id is not None:
            self.users.clear_language(event.user_id, set_by="ldap")
            log.info("Cleared language of user %s, no LDAP group matches anymore", event.username)

    def _on_user_deleted(self, event: UserDeleted) -> None:
        log.info("User deleted: %s (%s)", event.username, event.user_id)
        self.users.remove_user(event.user_id)
