from __future__ import annotations

from typing import Any


class CalmirrorError(Exception):
    """Base class for every error raised by calmirror."""


class FeedFetchError(CalmirrorError):
    pass


class FeedParseError(CalmirrorError):
    pass


class ParseError(CalmirrorError):
    """A single feed entry could not be normalised and was dropped."""


class ClassificationAmbiguity(CalmirrorError):
    """An occurrence reference could not be parsed; a fallback date was used."""


class OperationError(CalmirrorError):
    def __init__(self, label: str, cause: BaseException | None = None, message: str = "") -> None:
        self.label = label
        self.cause = cause
        text = message or (f"{type(cause).__name__}: {cause}" if cause is not None else "operation failed")
        super().__init__(f"{label}: {text}")

    @property
    def status(self) -> int | None:
        return status_of(self.cause) if self.cause is not None else None


class RemoteOperationError(OperationError):
    pass


class RetryableRemoteError(RemoteOperationError):
    pass


class PermanentRemoteError(RemoteOperationError):
    pass


class DeadlineExceeded(OperationError):
    pass


class TranslationError(CalmirrorError):
    pass


class MappingStoreError(CalmirrorError):
    pass


class MissingMasterError(CalmirrorError):
    pass


class AuthenticationError(CalmirrorError):
    pass


def status_of(exc: Any) -> int | None:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "resp", None), "status", None)
    if status is None and isinstance(exc, OperationError):
        return exc.status
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None
