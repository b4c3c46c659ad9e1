import enum
import pathlib
from collections.abc import Iterable

DEFAULT_EXCLUDED_EXTENSIONS = (
    ".nfo",
    ".jpg",
    ".jpeg",
    ".png",
    ".gif",
    ".webp",
    ".tbn",
    ".bmp",
)

DEFAULT_EXCLUDED_DIRECTORIES = (
    "extrafanart",
    "extrathumbs",
    ".trickplay",
    "metadata",
    ".actors",
)

# Language independent assets, linked even though they sit in excluded directories
DEFAULT_INCLUDED_DIRECTORIES = (
    ".trickplay",
    ".actors",
)


class Classification(enum.Enum):
    LINK = "link"
    SKIP = "skip"
    FORCE_LINK_ALL = "force_link_all"


def _normalize_extensions(values: Iterable[str]) -> frozenset[str]:
    result = set()
    for value in values:
        value = value.strip().lower()
        if not value:
            continue
        if not value.startswith("."):
            value = "." + value
        result.add(value)
    return frozenset(result)


def _normalize_names(values: Iterable[str]) -> frozenset[str]:
    return frozenset(v.strip().lower() for v in values if v and v.strip())


class FileClassifier:
    """Decides which entries of a source tree end up linked in a mirror.

    Metadata (``.nfo`` files, artwork, scraper directories) is language
    specific and gets regenerated by the host for every mirror, so it is kept
    out. Everything else is linked. A directory that appears in the included
    set is linked completely, extensions notwithstanding, even when it also
    appears in the excluded set.
    """

    def __init__(
        self,
        excluded_extensions: Iterable[str] = DEFAULT_EXCLUDED_EXTENSIONS,
        excluded_directories: Iterable[str] = DEFAULT_EXCLUDED_DIRECTORIES,
        included_directories: Iterable[str] = DEFAULT_INCLUDED_DIRECTORIES,
    ):
        self.excluded_extensions = _normalize_extensions(excluded_extensions)
        self.excluded_directories = _normalize_names(excluded_directories)
        self.included_directories = _normalize_names(included_directories)

    def classify(self, path: str | pathlib.PurePath, is_directory: bool) -> Classification:
        name = pathlib.PurePath(path).name.lower()
        if is_directory:
            if name in self.included_directories:
                return Classification.FORCE_LINK_ALL
            if name in self.excluded_directories:
                return Classification.SKIP
            return Classification.LINK
        if pathlib.PurePath(name).suffix in self.excluded_extensions:
            return Classification.SKIP
        return Classification.LINK

    def _ancestor_verdict(self, directories: Iterable[str]) -> Classification:
        # An excluded directory that is not itself included skips its whole
        # subtree, even below a force-included one.
        verdicts = {self.classify(directory, is_directory=True) for directory in directories}
        if Classification.SKIP in verdicts:
            return Classification.SKIP
        if Classification.FORCE_LINK_ALL in verdicts:
            return Classification.FORCE_LINK_ALL
        return Classification.LINK

    def should_link(self, relative_path: str | pathlib.PurePath) -> bool:
        """Classify a file by its path relative to the library root.

        Any excluded ancestor skips the file. Otherwise a force-included
        ancestor links it whatever its extension; without one the file's own
        extension decides.
        """
        parts = pathlib.PurePath(relative_path).parts
        verdict = self._ancestor_verdict(parts[:-1])
        if verdict is Classification.FORCE_LINK_ALL:
            return True
        if verdict is Classification.SKIP:
            return False
        return self.classify(relative_path, is_directory=False) is Classification.LINK

    def prune(self, relative_dir: str | pathlib.PurePath) -> bool:
        """Return True when a walk should not descend into ``relative_dir``."""
        return self._ancestor_verdict(pathlib.PurePath(relative_dir).parts) is Classification.SKIP
