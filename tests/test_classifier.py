import pytest

from polyglot.classifier import Classification, FileClassifier


@pytest.fixture
def classifier():
    return FileClassifier()


@pytest.mark.parametrize(
    "path, is_directory, expected",
    [
        ("Heat (1995)/Heat (1995).mkv", False, Classification.LINK),
        ("Heat (1995)/Heat (1995).en.srt", False, Classification.LINK),
        ("Heat (1995)/Heat (1995).nfo", False, Classification.SKIP),
        ("Heat (1995)/poster.JPG", False, Classification.SKIP),
        ("Heat (1995)/folder.webp", False, Classification.SKIP),
        ("Heat (1995)", True, Classification.LINK),
        ("Heat (1995)/extrafanart", True, Classification.SKIP),
        ("Heat (1995)/Metadata", True, Classification.SKIP),
        ("Heat (1995)/.trickplay", True, Classification.FORCE_LINK_ALL),
        ("Heat (1995)/.actors", True, Classification.FORCE_LINK_ALL),
    ],
)
def test_classify(classifier, path, is_directory, expected):
    assert classifier.classify(path, is_directory) is expected


def test_classify_is_total_and_pure(classifier):
    """Every input maps to exactly one verdict, the same one every time."""
    for path in ["a", "a.nfo", ".trickplay", "extrathumbs", "x/y/z.mkv", ""]:
        for is_directory in (True, False):
            first = classifier.classify(path, is_directory)
            assert first in set(Classification)
            assert classifier.classify(path, is_directory) is first


class TestShouldLink:
    def test_media_file(self, classifier):
        assert classifier.should_link("Heat (1995)/Heat (1995).mkv")

    def test_file_in_excluded_directory(self, classifier):
        assert not classifier.should_link("Heat (1995)/extrafanart/clip.mkv")

    def test_images_in_force_included_directory(self, classifier):
        assert classifier.should_link("Heat (1995)/.trickplay/320/0.jpg")

    def test_excluded_directory_wins_at_any_depth(self, classifier):
        assert not classifier.should_link("Show/.trickplay/metadata/0.jpg")
        assert not classifier.should_link("Show/.trickplay/metadata/clip.mkv")
        assert not classifier.should_link("Show/metadata/.trickplay/0.jpg")

    def test_prune(self, classifier):
        assert classifier.prune("Heat (1995)/extrafanart")
        assert not classifier.prune("Heat (1995)/.trickplay")
        assert not classifier.prune("Heat (1995)/.trickplay/320")
        assert classifier.prune("Heat (1995)/.trickplay/metadata")


class TestConfiguration:
    def test_sets_are_case_insensitive_and_deduplicated(self):
        classifier = FileClassifier(
            excluded_extensions=["NFO", ".nfo", " .Txt "],
            excluded_directories=["Extras", "extras"],
            included_directories=[],
        )
        assert classifier.excluded_extensions == frozenset({".nfo", ".txt"})
        assert classifier.excluded_directories == frozenset({"extras"})
        assert classifier.classify("readme.TXT", False) is Classification.SKIP
        assert classifier.classify("EXTRAS", True) is Classification.SKIP

    def test_without_included_directories_trickplay_is_skipped(self):
        classifier = FileClassifier(included_directories=[])
        assert classifier.classify(".trickplay", True) is Classification.SKIP
        assert not classifier.should_link("Heat/.trickplay/0.jpg")
