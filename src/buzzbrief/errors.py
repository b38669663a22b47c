from __future__ import annotations


class BuzzbriefError(Exception):
    """Base class for every failure the pipeline surfaces to its caller."""


class ValidationError(BuzzbriefError, ValueError):
    """Bad caller input (topic, filename). Raised before any pipeline work."""


class ConfigurationError(BuzzbriefError):
    """Server-side misconfiguration, e.g. a missing API key."""


class CompletionTimeout(BuzzbriefError):
    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        super().__init__(f"API request timed out after {seconds:g} seconds")


class UpstreamError(BuzzbriefError):
    def __init__(self, status: int | None, body: str, reason: str = "") -> None:
        self.status = status
        self.body = body
        self.reason = reason
        head = f"API Error: {status}" if status is not None else "API Error"
        if reason:
            head = f"{head} {reason}"
        super().__init__(f"{head} - {body}" if body else head)


class StorageError(BuzzbriefError):
    """Read or write failure on the report store."""


class PathEscapeError(StorageError):
    """A report name resolved outside the store directory."""
