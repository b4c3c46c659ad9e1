"""
Pytest fixtures and in-memory host collaborators for the test suite.

Filesystem tests run against real folders below ``tmp_path`` so hard link
behavior is exercised for real; the host (libraries, users, permissions,
events) is faked.
"""

import copy
import itertools
import pathlib

import pytest

from polyglot.access import AccessReconciler
from polyglot.config import ConfigurationStore
from polyglot.links import LocalFileSystem
from polyglot.mirror import MirrorSyncEngine
from polyglot.models import HostUser, LanguageAlternative, LibraryInfo
from polyglot.orphans import OrphanDetector
from polyglot.users import UserLanguageService


class FakeLibraryDirectory:
    def __init__(self):
        self.libraries: dict[str, LibraryInfo] = {}
        self.created: list[dict] = []
        self.deleted: list[str] = []
        self._ids = itertools.count(1)

    def add(self, library_id, name, paths=(), collection_type="movies"):
        library = LibraryInfo(id=library_id, name=name, collection_type=collection_type, paths=[str(p) for p in paths])
        self.libraries[library_id] = library
        return library

    def list_libraries(self):
        return [copy.deepcopy(lib) for lib in self.libraries.values()]

    def create_library(self, name, path, metadata_language, metadata_country, collection_type):
        library_id = f"created-{next(self._ids)}"
        self.libraries[library_id] = LibraryInfo(
            id=library_id,
            name=name,
            collection_type=collection_type,
            paths=[path],
            metadata_language=metadata_language,
            metadata_country=metadata_country,
        )
        self.created.append({
            "id": library_id,
            "name": name,
            "path": path,
            "metadata_language": metadata_language,
            "metadata_country": metadata_country,
            "collection_type": collection_type,
        })
        return library_id

    def delete_library(self, library_id):
        self.deleted.append(library_id)
        self.libraries.pop(library_id, None)


class FakePermissionStore:
    def __init__(self):
        self.access: dict[str, set[str]] = {}
        self.all_folders: dict[str, bool] = {}
        self.writes: list[tuple[str, set[str]]] = []

    def get_accessible_libraries(self, user_id):
        return set(self.access.get(user_id, set()))

    def set_accessible_libraries(self, user_id, library_ids):
        self.access[user_id] = set(library_ids)
        self.writes.append((user_id, set(library_ids)))

    def is_all_folders_enabled(self, user_id):
        return self.all_folders.get(user_id, False)

    def set_all_folders_enabled(self, user_id, enabled):
        self.all_folders[user_id] = enabled


class FakeUserDirectory:
    def __init__(self):
        self.users: dict[str, HostUser] = {}

    def add(self, user_id, username, is_administrator=False):
        self.users[user_id] = HostUser(id=user_id, username=username, is_administrator=is_administrator)
        return self.users[user_id]

    def get_user(self, user_id):
        return self.users.get(user_id)

    def list_users(self):
        return list(self.users.values())


class FakeEventSource:
    def __init__(self):
        self.handlers = []

    def subscribe(self, handler):
        self.handlers.append(handler)

    def unsubscribe(self, handler):
        self.handlers.remove(handler)

    def emit(self, event):
        for handler in list(self.handlers):
            handler(event)


class CountingFileSystem(LocalFileSystem):
    """Real filesystem that records every mutating call."""

    def __init__(self):
        self.links = []
        self.removals = []

    def create_hardlink(self, source, target):
        self.links.append(pathlib.Path(target))
        super().create_hardlink(source, target)

    def remove(self, path):
        self.removals.append(pathlib.Path(path))
        super().remove(path)

    @property
    def operations(self):
        return len(self.links) + len(self.removals)

    def reset(self):
        self.links.clear()
        self.removals.clear()


def write(path: pathlib.Path, content: str = "data") -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.fixture
def media_root(tmp_path):
    """Source library with media, metadata and language independent assets."""
    root = tmp_path / "media" / "movies"
    movie = root / "Heat (1995)"
    write(movie / "Heat (1995).mkv", "video")
    write(movie / "Heat (1995).en.srt", "subtitles")
    write(movie / "Heat (1995).nfo", "<movie/>")
    write(movie / "poster.jpg", "poster")
    write(movie / "extrafanart" / "fanart1.jpg", "fanart")
    write(movie / ".trickplay" / "320" / "0.jpg", "tile")
    write(root / "Alien (1979)" / "Alien (1979).mp4", "video")
    return root


@pytest.fixture
def libraries():
    return FakeLibraryDirectory()


@pytest.fixture
def permissions():
    return FakePermissionStore()


@pytest.fixture
def users():
    return FakeUserDirectory()


@pytest.fixture
def store():
    return ConfigurationStore()


@pytest.fixture
def fs():
    return CountingFileSystem()


@pytest.fixture
def engine(store, libraries, fs):
    return MirrorSyncEngine(store, libraries, fs)


@pytest.fixture
def detector(store, libraries, engine):
    return OrphanDetector(store, libraries, engine)


@pytest.fixture
def access(store, libraries, permissions, users):
    return AccessReconciler(store, libraries, permissions, users)


@pytest.fixture
def user_service(store, users, access):
    return UserLanguageService(store, users, access)


@pytest.fixture
def source_library(libraries, media_root):
    return libraries.add("m1", "Movies", [media_root])


@pytest.fixture
def portuguese(store, tmp_path):
    alternative = LanguageAlternative(
        name="Portuguese",
        language_code="pt-PT",
        metadata_language="pt",
        metadata_country="PT",
        destination_base_path=str(tmp_path / "media" / "mirrors" / "pt"),
    )
    store.add_alternative(alternative)
    return alternative


@pytest.fixture
def spanish(store, tmp_path):
    alternative = LanguageAlternative(
        name="Spanish",
        language_code="es-ES",
        metadata_language="es",
        metadata_country="ES",
        destination_base_path=str(tmp_path / "media" / "mirrors" / "es"),
    )
    store.add_alternative(alternative)
    return alternative
