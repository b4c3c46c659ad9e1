"""Contracts of the host collaborators.

The host media server implements these; polyglot never talks to it in any
other way. Implementations are expected to be thread safe.
"""
from collections.abc import Callable, Iterable
from typing import Protocol, runtime_checkable

from .models import HostUser, LibraryInfo


@runtime_checkable
class LibraryDirectory(Protocol):
    def list_libraries(self) -> list[LibraryInfo]:
        ...

    def create_library(
        self,
        name: str,
        path: str,
        metadata_language: str,
        metadata_country: str,
        collection_type: str | None,
    ) -> str:
        """Register a library rooted at ``path`` and return its id."""
        ...

    def delete_library(self, library_id: str) -> None:
        ...


@runtime_checkable
class PermissionStore(Protocol):
    def get_accessible_libraries(self, user_id: str) -> set[str]:
        ...

    def set_accessible_libraries(self, user_id: str, library_ids: Iterable[str]) -> None:
        ...

    def is_all_folders_enabled(self, user_id: str) -> bool:
        ...

    def set_all_folders_enabled(self, user_id: str, enabled: bool) -> None:
        ...


@runtime_checkable
class UserDirectory(Protocol):
    def get_user(self, user_id: str) -> HostUser | None:
        ...

    def list_users(self) -> list[HostUser]:
        ...


@runtime_checkable
class GroupMembershipProvider(Protocol):
    available: bool

    def get_user_groups(self, username: str) -> list[str]:
        """Group DNs (or names) the user belongs to."""
        ...


@runtime_checkable
class EventSource(Protocol):
    def subscribe(self, handler: Callable[[object], None]) -> None:
        ...

    def unsubscribe(self, handler: Callable[[object], None]) -> None:
        ...
