from __future__ import annotations

import json
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests
import urllib3

from .config import COMPLETION_TIMEOUT_SECONDS, DEFAULT_BASE_URL, DEFAULT_MODEL, ResearchConfig
from .errors import CompletionTimeout, ConfigurationError, UpstreamError
from .prompts import SYSTEM_PROMPT

_CHUNK_BYTES = 16_384
_MAX_CONNECT_SECONDS = 10.0
_MAX_ERROR_BODY = 4000


@dataclass(frozen=True)
class ContextResult:
    markdown: str
    json: Any
    raw: str

    def with_appended(self, text: str) -> "ContextResult":
        return ContextResult(markdown=self.markdown + text, json=self.json, raw=self.raw)


def chat_completion_url(base_url: str) -> str:
    base = (base_url or DEFAULT_BASE_URL).strip().rstrip("/")
    if base.lower().endswith("/chat/completions"):
        return base
    return f"{base}/chat/completions"


def extract_chat_content(body: Any, status: int | None = None) -> str:
    choices = body.get("choices") if isinstance(body, dict) else None
    if not isinstance(choices, list) or not choices:
        raise UpstreamError(status, "response contained no choices")
    first = choices[0] if isinstance(choices[0], dict) else {}
    message = first.get("message") if isinstance(first.get("message"), dict) else {}
    content = message.get("content")
    if not isinstance(content, str):
        raise UpstreamError(status, "first choice has no message content")
    return content


def _response_socket(resp: Any) -> Optional[socket.socket]:
    raw = getattr(resp, "raw", None)
    sock = getattr(getattr(raw, "_connection", None), "sock", None)
    if sock is None:
        fp = getattr(getattr(raw, "_fp", None), "fp", None)
        sock = getattr(getattr(fp, "raw", None), "_sock", None)
    return sock if isinstance(sock, socket.socket) else None


def _is_read_timeout(exc: BaseException) -> bool:
    # requests re-raises urllib3 read timeouts hit inside iter_content as ConnectionError.
    return any(isinstance(arg, urllib3.exceptions.ReadTimeoutError) for arg in getattr(exc, "args", ()))


class _Watchdog:
    """Shuts the response socket down once the deadline passes, unblocking any pending read."""

    def __init__(self, seconds: float, resp: Any) -> None:
        self.fired = threading.Event()
        self._resp = resp
        self._timer = threading.Timer(max(seconds, 0.0), self._fire)
        self._timer.daemon = True

    def start(self) -> "_Watchdog":
        self._timer.start()
        return self

    def cancel(self) -> None:
        self._timer.cancel()

    def _fire(self) -> None:
        self.fired.set()
        sock = _response_socket(self._resp)
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass


class CompletionClient:
    """Single-shot chat-completion caller with a wall-clock deadline.

    One ``fetch_context`` call is one POST. The deadline covers connect,
    headers and body; when it passes the call raises CompletionTimeout.
    Connect and header reads are bounded by the transport timeouts; the
    body read is cut off by a timer that shuts the socket down.
    The response and session are closed on every path.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        *,
        timeout: float = COMPLETION_TIMEOUT_SECONDS,
        session_factory: Callable[[], Any] = requests.Session,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not api_key:
            raise ConfigurationError("API key not configured")
        self.api_key = api_key
        self.url = chat_completion_url(base_url)
        self.model = model
        self.timeout = float(timeout)
        self._session_factory = session_factory
        self._clock = clock

    @classmethod
    def from_config(cls, config: ResearchConfig, **kwargs: Any) -> "CompletionClient":
        return cls(config.api_key, config.base_url, config.model, timeout=config.timeout, **kwargs)

    def build_payload(self, prompt: str) -> dict[str, Any]:
        return {
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "model": self.model,
            "stream": False,
            "temperature": 0,
        }

    def _remaining(self, deadline: float) -> float:
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise CompletionTimeout(self.timeout)
        return remaining

    def _read_body(self, resp: Any, deadline: float, watchdog: _Watchdog) -> bytes:
        chunks: list[bytes] = []
        for chunk in resp.iter_content(chunk_size=_CHUNK_BYTES):
            if chunk:
                chunks.append(chunk)
            if watchdog.fired.is_set():
                raise CompletionTimeout(self.timeout)
            self._remaining(deadline)
        if watchdog.fired.is_set():
            raise CompletionTimeout(self.timeout)
        return b"".join(chunks)

    def fetch_context(self, prompt: str) -> ContextResult:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        deadline = self._clock() + self.timeout
        watchdog: Optional[_Watchdog] = None
        try:
            with self._session_factory() as session:
                remaining = self._remaining(deadline)
                with session.post(
                    self.url,
                    headers=headers,
                    json=self.build_payload(prompt),
                    stream=True,
                    timeout=(min(_MAX_CONNECT_SECONDS, remaining), remaining),
                ) as resp:
                    watchdog = _Watchdog(self._remaining(deadline), resp).start()
                    try:
                        status = int(resp.status_code)
                        raw_body = self._read_body(resp, deadline, watchdog)
                    finally:
                        watchdog.cancel()
                    encoding = getattr(resp, "encoding", None) or "utf-8"
                    text = raw_body.decode(encoding, errors="replace")
                    if not 200 <= status < 300:
                        raise UpstreamError(
                            status,
                            text.strip()[:_MAX_ERROR_BODY],
                            reason=str(getattr(resp, "reason", "") or ""),
                        )
        except requests.exceptions.Timeout as exc:
            raise CompletionTimeout(self.timeout) from exc
        except requests.exceptions.RequestException as exc:
            if _is_read_timeout(exc) or (watchdog is not None and watchdog.fired.is_set()):
                raise CompletionTimeout(self.timeout) from exc
            raise UpstreamError(None, str(exc), reason="request failed") from exc

        try:
            data = json.loads(text)
        except ValueError as exc:
            raise UpstreamError(status, f"invalid JSON response: {text.strip()[:200]}") from exc
        markdown = extract_chat_content(data, status)
        return ContextResult(
            markdown=markdown,
            json=data,
            raw=json.dumps(data, ensure_ascii=False, indent=2),
        )
