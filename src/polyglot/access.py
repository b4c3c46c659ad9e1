import logging
import threading
from collections.abc import Iterable

from .config import ConfigurationStore, PluginConfiguration
from .interfaces import LibraryDirectory, PermissionStore, UserDirectory
from .models import UserLanguageConfig, utcnow
from .utils import check_cancelled

log = logging.getLogger(__name__)


def expected_library_access(
    config: PluginConfiguration,
    user: UserLanguageConfig | None,
    host_library_ids: set[str],
) -> set[str]:
    """Managed libraries ``user`` should see, given a configuration snapshot.

    Empty for missing or unmanaged users; the caller must then leave their
    permissions alone. Libraries never referenced by a mirror are not part of
    the result. A mirror hides its source only while it is ready and its
    library still exists on the host.
    """
    if user is None or not user.is_plugin_managed:
        return set()

    managed = config.managed_library_ids()
    alternative = config.find_alternative(user.selected_alternative_id)
    own_mirrors = alternative.mirrors if alternative else []

    own_targets = {m.target_library_id for m in own_mirrors if m.is_ready}
    hidden_sources = {
        m.source_library_id
        for m in own_mirrors
        if m.is_ready and m.target_library_id in host_library_ids
    }
    all_targets = {m.target_library_id for m in config.all_mirrors() if m.target_library_id}

    expected = set()
    for library_id in host_library_ids & managed:
        if library_id in own_targets:
            expected.add(library_id)
        elif library_id in all_targets:
            continue
        elif library_id in hidden_sources:
            continue
        else:
            expected.add(library_id)
    return expected


class AccessReconciler:
    """Drives the host permission store toward the computed library access.

    Only managed libraries are ever granted or revoked; access to anything
    else is carried over unchanged.
    """

    def __init__(
        self,
        store: ConfigurationStore,
        libraries: LibraryDirectory,
        permissions: PermissionStore,
        users: UserDirectory,
    ):
        self.store = store
        self.libraries = libraries
        self.permissions = permissions
        self.users = users

    def _host_library_ids(self) -> set[str]:
        return {library.id for library in self.libraries.list_libraries()}

    def get_expected_library_access(self, user_id: str) -> set[str]:
        config = self.store.snapshot()
        return expected_library_access(config, config.find_user(user_id), self._host_library_ids())

    def _current_access(self, user_id: str, host_ids: set[str]) -> tuple[set[str], bool]:
        if self.permissions.is_all_folders_enabled(user_id):
            return set(host_ids), True
        return set(self.permissions.get_accessible_libraries(user_id)), False

    def _plan(self, user_id: str) -> tuple[set[str], set[str], bool] | None:
        """Return (final, current, all_folders) or None when the user is not ours."""
        host_user = self.users.get_user(user_id)
        if host_user is None:
            log.warning("User %s not found", user_id)
            return None

        config = self.store.snapshot()
        user = config.find_user(user_id)
        if user is None or not user.is_plugin_managed:
            log.debug("User %s is not managed, leaving library access alone", host_user.username)
            return None

        host_ids = self._host_library_ids()
        managed = config.managed_library_ids()
        current, all_folders = self._current_access(user_id, host_ids)

        if not managed:
            # Nothing configured yet, keep whatever the user sees now
            return current, current, all_folders

        expected = expected_library_access(config, user, host_ids)
        final = expected | (current - managed)
        return final, current, all_folders

    def _apply(self, user_id: str, final: set[str], all_folders: bool) -> None:
        if all_folders:
            self.permissions.set_all_folders_enabled(user_id, False)
        self.permissions.set_accessible_libraries(user_id, final)

    def update_user_library_access(self, user_id: str) -> bool:
        """Write the computed access for one user, even when nothing changed.

        Returns False when the user is unknown or unmanaged.
        """
        planned = self._plan(user_id)
        if planned is None:
            return False
        final, current, all_folders = planned
        self._apply(user_id, final, all_folders)
        log.info(
            "Library access of user %s updated: %d granted, %d revoked",
            user_id, len(final - current), len(current - final),
        )
        return True

    def reconcile_user_access(self, user_id: str) -> bool:
        """Apply the computed access only when it differs. Returns whether it did."""
        planned = self._plan(user_id)
        if planned is None:
            return False
        final, current, all_folders = planned
        if not all_folders and final == current:
            return False

        log.info(
            "Reconciling library access of user %s: +%d -%d%s",
            user_id, len(final - current), len(current - final),
            " (disabling access to all folders)" if all_folders else "",
        )
        self._apply(user_id, final, all_folders)
        return True

    def reconcile_all_users(self, cancel: threading.Event | None = None) -> int:
        changed = 0
        for user in self.store.get_user_languages():
            check_cancelled(cancel)
            if not user.is_plugin_managed:
                continue
            try:
                if self.reconcile_user_access(user.user_id):
                    changed += 1
            except Exception:
                log.exception("Failed to reconcile library access of user %s", user.username or user.user_id)
        if changed:
            log.info("Library access changed for %d user(s)", changed)
        return changed

    def add_libraries_to_user_access(self, user_id: str, library_ids: Iterable[str]) -> int:
        """Grant ``library_ids`` without revoking anything. Returns the number added."""
        wanted = set(library_ids)
        if not wanted:
            return 0
        if self.users.get_user(user_id) is None:
            log.warning("User %s not found when adding libraries", user_id)
            return 0

        current, all_folders = self._current_access(user_id, self._host_library_ids())
        added = wanted - current
        if not added:
            return 0

        self._apply(user_id, current | added, all_folders)
        log.info("Added %d library(ies) to access of user %s", len(added), user_id)
        return len(added)

    def restore_sources(self, source_ids: Iterable[str]) -> int:
        """Give source libraries back to every managed user that should see them now."""
        sources = set(source_ids)
        if not sources:
            return 0

        config = self.store.snapshot()
        host_ids = self._host_library_ids()
        restored = 0
        for user in config.user_languages:
            if not user.is_plugin_managed:
                continue
            wanted = sources & expected_library_access(config, user, host_ids)
            if not wanted:
                continue
            try:
                if self.add_libraries_to_user_access(user.user_id, wanted):
                    restored += 1
            except Exception:
                log.exception("Failed to restore source libraries for user %s", user.username or user.user_id)
        return restored

    def enable_all_users(self, cancel: threading.Event | None = None) -> int:
        """Put every host user under management. Returns how many were newly enabled."""
        enabled = 0
        for host_user in self.users.list_users():
            check_cancelled(cancel)
            switched = False

            def enable(user: UserLanguageConfig) -> None:
                nonlocal switched
                user.username = host_user.username
                if not user.is_plugin_managed:
                    user.is_plugin_managed = True
                    user.set_by = "bulk-enable"
                    user.set_at = utcnow()
                    switched = True

            try:
                self.store.upsert_user_language(host_user.id, enable)
                self.update_user_library_access(host_user.id)
            except Exception:
                log.exception("Failed to enable user %s", host_user.username)
                continue
            if switched:
                enabled += 1

        log.info("Enabled management for %d user(s)", enabled)
        return enabled

    def disable_user(self, user_id: str, restore_full_access: bool = False) -> bool:
        host_user = self.users.get_user(user_id)
        if host_user is None:
            log.warning("User %s not found", user_id)
            return False

        def disable(user: UserLanguageConfig) -> None:
            user.is_plugin_managed = False
            user.set_by = "admin-disabled"
            user.set_at = utcnow()

        self.store.update_user_language(user_id, disable)
        if restore_full_access:
            self.permissions.set_all_folders_enabled(user_id, True)
            log.info("Restored access to all folders for user %s", host_user.username)
        log.info("Disabled management for user %s", host_user.username)
        return True
