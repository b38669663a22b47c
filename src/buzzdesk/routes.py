from __future__ import annotations

from typing import Any, Callable, Protocol
from urllib.parse import unquote, urlparse

from buzzbrief.config import ResearchConfig, resolve_config
from buzzbrief.errors import (
    BuzzbriefError,
    CompletionTimeout,
    PathEscapeError,
    StorageError,
    UpstreamError,
    ValidationError,
)
from buzzbrief.metadata import is_valid_filename
from buzzbrief.pipeline import ResearchReport
from buzzbrief.templates import list_templates
from buzzbrief.versioning import VERSION

from .ratelimit import FixedWindowLimiter
from .storage import ReportStore

RATE_LIMITED_MESSAGE = "Too many requests. Please wait a moment."
HISTORY_PREFIX = "/api/history/"


class HandlerLike(Protocol):
    path: str
    headers: Any
    rfile: Any
    client_address: Any

    def _store(self) -> ReportStore: ...

    def _limiter(self) -> FixedWindowLimiter: ...

    def _log(self, message: str) -> None: ...

    def _send_json(self, payload: Any, status: int = 200, headers: dict[str, str] | None = None) -> None: ...

    def _read_json(self) -> dict[str, Any]: ...


def error_status(exc: BuzzbriefError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, PathEscapeError):
        return 403
    if isinstance(exc, CompletionTimeout):
        return 504
    if isinstance(exc, UpstreamError):
        return 502
    # Configuration and storage failures are server-side.
    return 500


def _client_key(handler: HandlerLike) -> str:
    forwarded = str(handler.headers.get("X-Forwarded-For") or "")
    if forwarded:
        return forwarded.split(",", 1)[0].strip()
    address = getattr(handler, "client_address", None)
    if isinstance(address, (tuple, list)) and address:
        return str(address[0])
    return "unknown"


def handle_api_get(handler: HandlerLike) -> None:
    path = urlparse(handler.path).path
    if path == "/api/health":
        handler._send_json({"status": "ok", "version": VERSION})
        return
    if path == "/api/templates":
        handler._send_json(list_templates())
        return
    if path in {"/api/history", "/api/history/"}:
        try:
            items = handler._store().list()
        except StorageError as exc:
            handler._log(f"history error: {exc}")
            handler._send_json({"error": "Failed to fetch history"}, status=500)
            return
        handler._send_json(items)
        return
    if path.startswith(HISTORY_PREFIX):
        filename = unquote(path[len(HISTORY_PREFIX) :])
        if not is_valid_filename(filename):
            handler._send_json({"error": "Invalid filename"}, status=400)
            return
        try:
            record = handler._store().get(filename)
        except BuzzbriefError as exc:
            status = error_status(exc)
            message = "Access denied" if status == 403 else str(exc)
            handler._log(f"history read error for {filename}: {exc}")
            handler._send_json({"error": message}, status=status)
            return
        if record is None:
            handler._send_json({"error": "Not found"}, status=404)
            return
        handler._send_json(record)
        return
    handler._send_json({"error": "unknown_endpoint"}, status=404)


def handle_api_post(
    handler: HandlerLike,
    *,
    run_pipeline: Callable[[ResearchConfig], ResearchReport],
) -> None:
    path = urlparse(handler.path).path
    if path != "/api/research":
        handler._send_json({"error": "unknown_endpoint"}, status=404)
        return

    client = _client_key(handler)
    limiter = handler._limiter()
    if not limiter.allow(client):
        retry = int(limiter.retry_after(client)) + 1
        handler._send_json({"error": RATE_LIMITED_MESSAGE}, status=429, headers={"Retry-After": str(retry)})
        return

    payload = handler._read_json()
    try:
        config = resolve_config(payload)
        handler._log(f"starting {config.depth} research for topic: {config.topic}")
        report = run_pipeline(config)
        handler._store().put(report.filename, report.to_record(), report.metadata.to_dict())
    except BuzzbriefError as exc:
        status = error_status(exc)
        handler._log(f"research error ({status}): {exc}")
        handler._send_json({"error": str(exc) or "Internal Server Error"}, status=status)
        return
    handler._log(f"research completed: {report.filename}")
    handler._send_json({"success": True, "filename": report.filename, "markdown": report.markdown})
