import copy
import logging
import os
import pathlib
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Optional, TypeVar

import yaml

from .classifier import (
    DEFAULT_EXCLUDED_DIRECTORIES,
    DEFAULT_EXCLUDED_EXTENSIONS,
    DEFAULT_INCLUDED_DIRECTORIES,
    FileClassifier,
)
from .models import (
    LanguageAlternative,
    LdapGroupMapping,
    LibraryMirror,
    UserLanguageConfig,
    utcnow,
)

log = logging.getLogger(__name__)

T = TypeVar("T")


def load_config(config_path: Optional[str] = None) -> dict:
    """Load config from explicit path or env var."""
    path = None

    if config_path:
        path = pathlib.Path(config_path)
    elif os.environ.get("POLYGLOT_CONFIG"):
        path = pathlib.Path(os.environ["POLYGLOT_CONFIG"])

    if path and path.exists():
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            log.warning("Failed to load config file %s: %s", path, e)
            return {}
        if not isinstance(data, dict):
            log.warning("Config file %s should contain a mapping, got %s", path, type(data).__name__)
            return {}
        return data

    return {}


@dataclass
class PluginConfiguration:
    alternatives: list[LanguageAlternative] = field(default_factory=list)
    user_languages: list[UserLanguageConfig] = field(default_factory=list)
    ldap_group_mappings: list[LdapGroupMapping] = field(default_factory=list)
    excluded_extensions: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDED_EXTENSIONS))
    excluded_directories: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDED_DIRECTORIES))
    included_directories: list[str] = field(default_factory=lambda: list(DEFAULT_INCLUDED_DIRECTORIES))
    enable_ldap_integration: bool = False
    auto_manage_new_users: bool = False
    default_alternative_id: str | None = None
    sync_mirrors_after_library_scan: bool = True
    mirror_sync_interval_hours: int = 6
    user_reconciliation_time: str = "03:00"

    def find_alternative(self, alternative_id: str | None) -> LanguageAlternative | None:
        if alternative_id is None:
            return None
        return next((a for a in self.alternatives if a.id == alternative_id), None)

    def find_mirror(self, mirror_id: str) -> tuple[LanguageAlternative, LibraryMirror] | None:
        for alternative in self.alternatives:
            mirror = alternative.find_mirror(mirror_id)
            if mirror is not None:
                return alternative, mirror
        return None

    def find_user(self, user_id: str) -> UserLanguageConfig | None:
        return next((u for u in self.user_languages if u.user_id == user_id), None)

    def all_mirrors(self) -> list[LibraryMirror]:
        return [m for a in self.alternatives for m in a.mirrors]

    def managed_library_ids(self) -> set[str]:
        """Every library referenced as a mirror source or target."""
        managed = set()
        for mirror in self.all_mirrors():
            managed.add(mirror.source_library_id)
            if mirror.target_library_id:
                managed.add(mirror.target_library_id)
        return managed

    def classifier(self) -> FileClassifier:
        return FileClassifier(
            excluded_extensions=self.excluded_extensions,
            excluded_directories=self.excluded_directories,
            included_directories=self.included_directories,
        )

    def to_dict(self) -> dict:
        return {
            "alternatives": [a.to_dict() for a in self.alternatives],
            "user_languages": [u.to_dict() for u in self.user_languages],
            "ldap_group_mappings": [m.to_dict() for m in self.ldap_group_mappings],
            "excluded_extensions": list(self.excluded_extensions),
            "excluded_directories": list(self.excluded_directories),
            "included_directories": list(self.included_directories),
            "enable_ldap_integration": self.enable_ldap_integration,
            "auto_manage_new_users": self.auto_manage_new_users,
            "default_alternative_id": self.default_alternative_id,
            "sync_mirrors_after_library_scan": self.sync_mirrors_after_library_scan,
            "mirror_sync_interval_hours": self.mirror_sync_interval_hours,
            "user_reconciliation_time": self.user_reconciliation_time,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PluginConfiguration":
        config = cls()
        config.alternatives = [LanguageAlternative.from_dict(a) for a in data.get("alternatives") or []]
        config.user_languages = [UserLanguageConfig.from_dict(u) for u in data.get("user_languages") or []]
        config.ldap_group_mappings = [LdapGroupMapping.from_dict(m) for m in data.get("ldap_group_mappings") or []]
        for key in ("excluded_extensions", "excluded_directories", "included_directories"):
            value = data.get(key)
            if value is None:
                continue
            if not isinstance(value, list):
                log.warning("%s should be a list, got %s", key, type(value).__name__)
                continue
            setattr(config, key, [str(v) for v in value])
        config.enable_ldap_integration = bool(data.get("enable_ldap_integration", False))
        config.auto_manage_new_users = bool(data.get("auto_manage_new_users", False))
        config.default_alternative_id = data.get("default_alternative_id")
        config.sync_mirrors_after_library_scan = bool(data.get("sync_mirrors_after_library_scan", True))
        config.mirror_sync_interval_hours = int(data.get("mirror_sync_interval_hours", 6))
        config.user_reconciliation_time = str(data.get("user_reconciliation_time", "03:00"))
        return config


class ConfigurationStore:
    """Copy-on-write holder of the plugin configuration.

    The published configuration object is never mutated. Readers take the
    current reference and deep-copy whatever they select from it, so they
    never share state with anybody. Writers are serialized: each one mutates
    a private deep copy and, if the mutation succeeds, swaps it in as the new
    published reference (and persists it when the store is file backed).
    A mutation that raises or returns ``False`` leaves the store untouched.
    """

    def __init__(self, config: PluginConfiguration | None = None, path: str | os.PathLike | None = None):
        self._config = config if config is not None else PluginConfiguration()
        self._path = pathlib.Path(path) if path else None
        self._write_lock = threading.Lock()

    @classmethod
    def from_file(cls, config_path: Optional[str] = None) -> "ConfigurationStore":
        data = load_config(config_path)
        path = config_path or os.environ.get("POLYGLOT_CONFIG")
        config = PluginConfiguration.from_dict(data)
        log.debug(
            "Loaded %d language alternative(s) and %d user assignment(s)",
            len(config.alternatives), len(config.user_languages),
        )
        return cls(config, path=path)

    def read(self, selector: Callable[[PluginConfiguration], T]) -> T:
        snapshot = self._config
        return copy.deepcopy(selector(snapshot))

    def snapshot(self) -> PluginConfiguration:
        return self.read(lambda c: c)

    def update(self, mutation: Callable[[PluginConfiguration], bool | None]) -> bool:
        """Apply ``mutation`` to a fresh copy and publish it.

        Returns ``False`` (and publishes nothing) when the mutation returns
        ``False``; a mutation returning ``None`` always commits. With a file
        behind the store the change is saved before it is published.
        """
        with self._write_lock:
            draft = copy.deepcopy(self._config)
            if mutation(draft) is False:
                log.debug("Configuration mutation declined, nothing saved")
                return False
            if self._path:
                self._save(draft)
            self._config = draft
        return True

    def _save(self, config: PluginConfiguration) -> None:
        tmp = self._path.with_name(self._path.name + ".tmp")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp, "w") as f:
            yaml.safe_dump(config.to_dict(), f, sort_keys=False, allow_unicode=True)
        os.replace(tmp, self._path)
        log.debug("Saved configuration to %s", self._path)

    # -- alternatives -------------------------------------------------------

    def get_alternative(self, alternative_id: str) -> LanguageAlternative | None:
        return self.read(lambda c: c.find_alternative(alternative_id))

    def get_alternatives(self) -> list[LanguageAlternative]:
        return self.read(lambda c: c.alternatives)

    def add_alternative(self, alternative: LanguageAlternative) -> bool:
        def mutate(c: PluginConfiguration) -> bool:
            if any(a.name.casefold() == alternative.name.casefold() for a in c.alternatives):
                log.warning("Language alternative named '%s' already exists", alternative.name)
                return False
            c.alternatives.append(copy.deepcopy(alternative))
            return True

        added = self.update(mutate)
        if added:
            log.info("Added language alternative '%s' (%s)", alternative.name, alternative.language_code)
        return added

    def update_alternative(self, alternative_id: str, change: Callable[[LanguageAlternative], None]) -> bool:
        def mutate(c: PluginConfiguration) -> bool:
            alternative = c.find_alternative(alternative_id)
            if alternative is None:
                return False
            change(alternative)
            alternative.modified_at = utcnow()
            return True

        return self.update(mutate)

    def remove_alternative(self, alternative_id: str, expected_mirror_ids: set[str] | None = None) -> bool:
        """Remove an alternative and every reference to it.

        With ``expected_mirror_ids`` the removal is refused when the
        alternative gained mirrors that the caller did not know about.
        """
        def mutate(c: PluginConfiguration) -> bool:
            alternative = c.find_alternative(alternative_id)
            if alternative is None:
                return False
            if expected_mirror_ids is not None:
                unexpected = {m.id for m in alternative.mirrors} - set(expected_mirror_ids)
                if unexpected:
                    log.warning(
                        "%d mirror(s) were added to alternative '%s' meanwhile, not removing it",
                        len(unexpected), alternative.name,
                    )
                    return False
            c.alternatives.remove(alternative)
            if c.default_alternative_id == alternative_id:
                log.info("Clearing default alternative (was '%s')", alternative.name)
                c.default_alternative_id = None
            before = len(c.ldap_group_mappings)
            c.ldap_group_mappings = [m for m in c.ldap_group_mappings if m.alternative_id != alternative_id]
            if len(c.ldap_group_mappings) != before:
                log.info("Removed %d LDAP mapping(s) pointing at '%s'", before - len(c.ldap_group_mappings), alternative.name)
            return True

        return self.update(mutate)

    # -- mirrors ------------------------------------------------------------

    def get_mirror(self, mirror_id: str) -> LibraryMirror | None:
        found = self.read(lambda c: c.find_mirror(mirror_id))
        return found[1] if found else None

    def get_mirror_with_alternative(self, mirror_id: str) -> tuple[LanguageAlternative, LibraryMirror] | None:
        return self.read(lambda c: c.find_mirror(mirror_id))

    def add_mirror(self, alternative_id: str, mirror: LibraryMirror) -> bool:
        def mutate(c: PluginConfiguration) -> bool:
            alternative = c.find_alternative(alternative_id)
            if alternative is None:
                log.warning("Cannot add mirror: alternative %s not found", alternative_id)
                return False
            if alternative.mirror_for_source(mirror.source_library_id) is not None:
                log.warning(
                    "Alternative '%s' already mirrors library '%s'",
                    alternative.name, mirror.source_library_name or mirror.source_library_id,
                )
                return False
            alternative.mirrors.append(copy.deepcopy(mirror))
            return True

        return self.update(mutate)

    def update_mirror(self, mirror_id: str, change: Callable[[LibraryMirror], None]) -> bool:
        def mutate(c: PluginConfiguration) -> bool:
            found = c.find_mirror(mirror_id)
            if found is None:
                log.debug("Mirror %s not found, update skipped", mirror_id)
                return False
            change(found[1])
            return True

        return self.update(mutate)

    def remove_mirror(self, mirror_id: str) -> bool:
        def mutate(c: PluginConfiguration) -> bool:
            found = c.find_mirror(mirror_id)
            if found is None:
                return False
            found[0].mirrors.remove(found[1])
            return True

        return self.update(mutate)

    # -- users --------------------------------------------------------------

    def get_user_language(self, user_id: str) -> UserLanguageConfig | None:
        return self.read(lambda c: c.find_user(user_id))

    def get_user_languages(self) -> list[UserLanguageConfig]:
        return self.read(lambda c: c.user_languages)

    def upsert_user_language(self, user_id: str, change: Callable[[UserLanguageConfig], None]) -> bool:
        """Update the user's record, creating it first if needed.

        Returns ``True`` when a new record was created.
        """
        created = False

        def mutate(c: PluginConfiguration) -> None:
            nonlocal created
            user = c.find_user(user_id)
            if user is None:
                user = UserLanguageConfig(user_id=user_id)
                c.user_languages.append(user)
                created = True
            change(user)

        self.update(mutate)
        return created

    def update_user_language(self, user_id: str, change: Callable[[UserLanguageConfig], bool | None]) -> bool:
        """Change an existing record; ``change`` may return False to abort."""
        def mutate(c: PluginConfiguration) -> bool:
            user = c.find_user(user_id)
            if user is None:
                return False
            return change(user) is not False

        return self.update(mutate)

    def remove_user_language(self, user_id: str) -> bool:
        def mutate(c: PluginConfiguration) -> bool:
            remaining = [u for u in c.user_languages if u.user_id != user_id]
            if len(remaining) == len(c.user_languages):
                return False
            c.user_languages = remaining
            return True

        return self.update(mutate)

    # -- LDAP ---------------------------------------------------------------

    def get_ldap_group_mappings(self) -> list[LdapGroupMapping]:
        return self.read(lambda c: c.ldap_group_mappings)

    def add_ldap_group_mapping(self, mapping: LdapGroupMapping) -> bool:
        def mutate(c: PluginConfiguration) -> bool:
            if any(m.group_dn.casefold() == mapping.group_dn.casefold() for m in c.ldap_group_mappings):
                log.warning("LDAP group '%s' is already mapped", mapping.group_dn)
                return False
            c.ldap_group_mappings.append(copy.deepcopy(mapping))
            return True

        return self.update(mutate)

    def remove_ldap_group_mapping(self, mapping_id: str) -> bool:
        def mutate(c: PluginConfiguration) -> bool:
            remaining = [m for m in c.ldap_group_mappings if m.id != mapping_id]
            if len(remaining) == len(c.ldap_group_mappings):
                return False
            c.ldap_group_mappings = remaining
            return True

        return self.update(mutate)

    # -- settings -----------------------------------------------------------

    def classifier(self) -> FileClassifier:
        return self.read(lambda c: c.classifier())
