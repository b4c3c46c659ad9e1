import datetime
import enum
import uuid
from dataclasses import dataclass, field
from typing import Any


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _dump_time(value: datetime.datetime | None) -> str | None:
    return value.isoformat() if value else None


def _load_time(value: Any) -> datetime.datetime | None:
    if not value:
        return None
    if isinstance(value, datetime.datetime):
        return value
    return datetime.datetime.fromisoformat(str(value))


class SyncStatus(str, enum.Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"


@dataclass
class LibraryMirror:
    """A hardlinked copy of one source library inside a language alternative."""
    source_library_id: str
    source_library_name: str = ""
    target_path: str = ""
    target_library_name: str = ""
    target_library_id: str | None = None
    collection_type: str | None = None
    status: SyncStatus = SyncStatus.PENDING
    last_synced_at: datetime.datetime | None = None
    last_error: str | None = None
    last_file_count: int = 0
    id: str = field(default_factory=new_id)

    @property
    def is_ready(self) -> bool:
        """The mirror library exists on the host and may replace its source."""
        return self.target_library_id is not None and self.status != SyncStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_library_id": self.source_library_id,
            "source_library_name": self.source_library_name,
            "target_library_id": self.target_library_id,
            "target_library_name": self.target_library_name,
            "target_path": self.target_path,
            "collection_type": self.collection_type,
            "status": self.status.value,
            "last_synced_at": _dump_time(self.last_synced_at),
            "last_error": self.last_error,
            "last_file_count": self.last_file_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LibraryMirror":
        return cls(
            id=data.get("id") or new_id(),
            source_library_id=str(data["source_library_id"]),
            source_library_name=data.get("source_library_name", ""),
            target_library_id=data.get("target_library_id"),
            target_library_name=data.get("target_library_name", ""),
            target_path=data.get("target_path", ""),
            collection_type=data.get("collection_type"),
            status=SyncStatus(data.get("status", SyncStatus.PENDING.value)),
            last_synced_at=_load_time(data.get("last_synced_at")),
            last_error=data.get("last_error"),
            last_file_count=int(data.get("last_file_count", 0)),
        )


@dataclass
class LanguageAlternative:
    name: str
    language_code: str
    metadata_language: str = ""
    metadata_country: str = ""
    destination_base_path: str = ""
    mirrors: list[LibraryMirror] = field(default_factory=list)
    created_at: datetime.datetime = field(default_factory=utcnow)
    modified_at: datetime.datetime | None = None
    id: str = field(default_factory=new_id)

    def find_mirror(self, mirror_id: str) -> LibraryMirror | None:
        return next((m for m in self.mirrors if m.id == mirror_id), None)

    def mirror_for_source(self, source_library_id: str) -> LibraryMirror | None:
        return next((m for m in self.mirrors if m.source_library_id == source_library_id), None)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "language_code": self.language_code,
            "metadata_language": self.metadata_language,
            "metadata_country": self.metadata_country,
            "destination_base_path": self.destination_base_path,
            "mirrors": [m.to_dict() for m in self.mirrors],
            "created_at": _dump_time(self.created_at),
            "modified_at": _dump_time(self.modified_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LanguageAlternative":
        return cls(
            id=data.get("id") or new_id(),
            name=data["name"],
            language_code=data.get("language_code", ""),
            metadata_language=data.get("metadata_language", ""),
            metadata_country=data.get("metadata_country", ""),
            destination_base_path=data.get("destination_base_path", ""),
            mirrors=[LibraryMirror.from_dict(m) for m in data.get("mirrors") or []],
            created_at=_load_time(data.get("created_at")) or utcnow(),
            modified_at=_load_time(data.get("modified_at")),
        )


@dataclass
class UserLanguageConfig:
    """Language assignment of one host user.

    ``selected_alternative_id`` of ``None`` means the user sees the source
    libraries. ``is_plugin_managed`` is the master switch: when it is off the
    user's library permissions are never touched. ``manually_set`` protects an
    admin choice from being overwritten by LDAP re-evaluation.
    """
    user_id: str
    username: str = ""
    selected_alternative_id: str | None = None
    is_plugin_managed: bool = False
    manually_set: bool = False
    set_by: str | None = None
    set_at: datetime.datetime | None = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "selected_alternative_id": self.selected_alternative_id,
            "is_plugin_managed": self.is_plugin_managed,
            "manually_set": self.manually_set,
            "set_by": self.set_by,
            "set_at": _dump_time(self.set_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UserLanguageConfig":
        return cls(
            user_id=str(data["user_id"]),
            username=data.get("username", ""),
            selected_alternative_id=data.get("selected_alternative_id"),
            is_plugin_managed=bool(data.get("is_plugin_managed", False)),
            manually_set=bool(data.get("manually_set", False)),
            set_by=data.get("set_by"),
            set_at=_load_time(data.get("set_at")),
        )


@dataclass
class LdapGroupMapping:
    group_dn: str
    alternative_id: str
    group_name: str = ""
    priority: int = 0
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "group_dn": self.group_dn,
            "group_name": self.group_name,
            "alternative_id": self.alternative_id,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LdapGroupMapping":
        return cls(
            id=data.get("id") or new_id(),
            group_dn=data["group_dn"],
            group_name=data.get("group_name", ""),
            alternative_id=str(data["alternative_id"]),
            priority=int(data.get("priority", 0)),
        )


@dataclass
class LibraryInfo:
    """A library as reported by the host."""
    id: str
    name: str
    collection_type: str | None = None
    paths: list[str] = field(default_factory=list)
    metadata_language: str | None = None
    metadata_country: str | None = None
    is_mirror: bool = False
    alternative_id: str | None = None


@dataclass
class HostUser:
    id: str
    username: str
    is_administrator: bool = False


@dataclass
class UserInfo:
    id: str
    username: str
    is_administrator: bool = False
    is_plugin_managed: bool = False
    alternative_id: str | None = None
    alternative_name: str | None = None
    manually_set: bool = False
    set_by: str | None = None
    set_at: datetime.datetime | None = None
