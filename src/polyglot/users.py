import logging

from .access import AccessReconciler
from .config import ConfigurationStore
from .errors import AlternativeNotFoundError, UserNotFoundError
from .interfaces import UserDirectory
from .models import LanguageAlternative, UserInfo, UserLanguageConfig, utcnow

log = logging.getLogger(__name__)


class UserLanguageService:
    def __init__(self, store: ConfigurationStore, users: UserDirectory, access: AccessReconciler):
        self.store = store
        self.users = users
        self.access = access

    def assign_language(
        self,
        user_id: str,
        alternative_id: str | None,
        set_by: str,
        manually_set: bool = False,
        is_plugin_managed: bool = True,
    ) -> None:
        """Assign ``alternative_id`` (None for the source libraries) to a host user.

        Creates the user's record on first use and updates it in place after
        that. Library access is rewritten right away for managed users.
        """
        host_user = self.users.get_user(user_id)
        if host_user is None:
            raise UserNotFoundError(f"User {user_id} not found")

        alternative_name = "default"
        if alternative_id is not None:
            alternative = self.store.get_alternative(alternative_id)
            if alternative is None:
                raise AlternativeNotFoundError(f"Language alternative {alternative_id} not found")
            alternative_name = alternative.name

        def assign(user: UserLanguageConfig) -> None:
            user.username = host_user.username
            user.selected_alternative_id = alternative_id
            user.manually_set = manually_set
            user.is_plugin_managed = is_plugin_managed
            user.set_by = set_by
            user.set_at = utcnow()

        self.store.upsert_user_language(user_id, assign)
        log.info(
            "Assigned language '%s' to user %s (by: %s, manual: %s, managed: %s)",
            alternative_name, host_user.username, set_by, manually_set, is_plugin_managed,
        )

        if is_plugin_managed:
            self.access.update_user_library_access(user_id)

    def clear_language(self, user_id: str, set_by: str = "admin") -> bool:
        def clear(user: UserLanguageConfig) -> None:
            user.selected_alternative_id = None
            user.set_by = set_by
            user.set_at = utcnow()

        if not self.store.update_user_language(user_id, clear):
            log.debug("No language assignment found for user %s", user_id)
            return False

        log.info("Cleared language assignment of user %s", user_id)
        self.access.update_user_library_access(user_id)
        return True

    def remove_user(self, user_id: str) -> bool:
        removed = self.store.remove_user_language(user_id)
        if removed:
            log.info("Removed language assignment of deleted user %s", user_id)
        return removed

    def get_user_language(self, user_id: str) -> UserLanguageConfig | None:
        return self.store.get_user_language(user_id)

    def get_user_alternative(self, user_id: str) -> LanguageAlternative | None:
        user = self.store.get_user_language(user_id)
        if user is None or user.selected_alternative_id is None:
            return None
        return self.store.get_alternative(user.selected_alternative_id)

    def is_manually_set(self, user_id: str) -> bool:
        user = self.store.get_user_language(user_id)
        return bool(user and user.manually_set)

    def list_users(self) -> list[UserInfo]:
        config = self.store.snapshot()
        result = []
        for host_user in self.users.list_users():
            info = UserInfo(
                id=host_user.id,
                username=host_user.username,
                is_administrator=host_user.is_administrator,
            )
            user = config.find_user(host_user.id)
            if user is not None:
                alternative = config.find_alternative(user.selected_alternative_id)
                info.is_plugin_managed = user.is_plugin_managed
                info.alternative_id = user.selected_alternative_id
                info.alternative_name = alternative.name if alternative else None
                info.manually_set = user.manually_set
                info.set_by = user.set_by
                info.set_at = user.set_at
            result.append(info)
        return result
