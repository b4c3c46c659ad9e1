class PolyglotError(Exception):
    """Base class for all errors raised by polyglot."""


class LinkError(PolyglotError):
    """A hardlink could not be created."""

    def __init__(self, message: str, errno: int | None = None):
        super().__init__(message)
        self.errno = errno


class CrossDeviceError(LinkError):
    """Source and target live on different filesystems (EXDEV)."""


class SyncCancelled(PolyglotError):
    """The operation observed its cancellation signal and stopped."""


class MirrorNotFoundError(PolyglotError, LookupError):
    pass


class LibraryNotFoundError(PolyglotError, LookupError):
    pass


class AlternativeNotFoundError(PolyglotError, LookupError):
    pass


class UserNotFoundError(PolyglotError, LookupError):
    pass
