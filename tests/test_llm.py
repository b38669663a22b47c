from __future__ import annotations

import json
import socket
import threading
import time
from typing import Any

import pytest
import requests
import urllib3

from buzzbrief.errors import CompletionTimeout, ConfigurationError, UpstreamError
from buzzbrief.llm import CompletionClient, ContextResult, chat_completion_url
from buzzbrief.prompts import SYSTEM_PROMPT


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class _FakeResponse:
    def __init__(
        self,
        status_code: int,
        chunks: list[bytes],
        *,
        reason: str = "OK",
        on_chunk=None,
    ) -> None:
        self.status_code = status_code
        self.reason = reason
        self.encoding = "utf-8"
        self.chunks = chunks
        self.on_chunk = on_chunk
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        for chunk in self.chunks:
            if self.on_chunk:
                self.on_chunk()
            yield chunk

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.closed = True


class _FakeSession:
    def __init__(self, response: _FakeResponse | None = None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def post(self, url: str, **kwargs: Any) -> _FakeResponse:
        self.calls.append({"url": url, **kwargs})
        if self.error is not None:
            raise self.error
        assert self.response is not None
        return self.response

    def __enter__(self) -> "_FakeSession":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.closed = True


def _ok_body(content: str = "# Title\nbody") -> bytes:
    return json.dumps({"id": "r1", "choices": [{"message": {"role": "assistant", "content": content}}]}).encode(
        "utf-8"
    )


def make_client(session: _FakeSession, clock: _Clock | None = None) -> CompletionClient:
    return CompletionClient(
        "secret",
        "https://api.example.test/v1/",
        "grok-test",
        session_factory=lambda: session,
        clock=clock or _Clock(),
    )


def test_chat_completion_url() -> None:
    assert chat_completion_url("https://api.x.ai/v1") == "https://api.x.ai/v1/chat/completions"
    assert chat_completion_url("https://h/v1/chat/completions/") == "https://h/v1/chat/completions"


def test_fetch_context_success_sends_deterministic_request() -> None:
    body = _ok_body("# 今日のレポート\n本文")
    response = _FakeResponse(200, [body[:10], body[10:]])
    session = _FakeSession(response)
    result = make_client(session).fetch_context("research prompt")

    assert isinstance(result, ContextResult)
    assert result.markdown == "# 今日のレポート\n本文"
    assert result.json["id"] == "r1"
    assert json.loads(result.raw) == result.json
    call = session.calls[0]
    assert call["url"] == "https://api.example.test/v1/chat/completions"
    assert call["headers"]["Authorization"] == "Bearer secret"
    assert call["json"]["temperature"] == 0
    assert call["json"]["stream"] is False
    assert call["json"]["model"] == "grok-test"
    assert call["json"]["messages"] == [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": "research prompt"},
    ]
    assert call["stream"] is True
    assert response.closed and session.closed


def test_fetch_context_non_success_status_raises_upstream_error() -> None:
    response = _FakeResponse(429, [b'{"error":"rate limited"}'], reason="Too Many Requests")
    session = _FakeSession(response)
    with pytest.raises(UpstreamError) as info:
        make_client(session).fetch_context("p")
    assert info.value.status == 429
    assert "rate limited" in info.value.body
    assert "429" in str(info.value)
    assert response.closed and session.closed


def test_fetch_context_empty_choices_is_upstream_error() -> None:
    session = _FakeSession(_FakeResponse(200, [b'{"choices": []}']))
    with pytest.raises(UpstreamError, match="no choices"):
        make_client(session).fetch_context("p")


def test_fetch_context_invalid_json_is_upstream_error() -> None:
    session = _FakeSession(_FakeResponse(200, [b"<html>gateway</html>"]))
    with pytest.raises(UpstreamError, match="invalid JSON"):
        make_client(session).fetch_context("p")


def test_fetch_context_deadline_during_body_raises_timeout_and_releases() -> None:
    clock = _Clock()

    def slow_chunk() -> None:
        clock.now += 35

    body = _ok_body()
    response = _FakeResponse(200, [body[:5], body[5:10], body[10:]], on_chunk=slow_chunk)
    session = _FakeSession(response)
    with pytest.raises(CompletionTimeout) as info:
        make_client(session, clock).fetch_context("p")
    assert info.value.seconds == 60
    assert "60 seconds" in str(info.value)
    assert response.closed and session.closed


def test_fetch_context_transport_timeout_is_classified() -> None:
    session = _FakeSession(error=requests.exceptions.ReadTimeout("read timed out"))
    with pytest.raises(CompletionTimeout):
        make_client(session).fetch_context("p")
    assert session.closed


def test_fetch_context_connection_error_is_upstream_error() -> None:
    session = _FakeSession(error=requests.exceptions.ConnectionError("refused"))
    with pytest.raises(UpstreamError) as info:
        make_client(session).fetch_context("p")
    assert info.value.status is None
    assert session.closed


def test_timeouts_passed_to_transport_are_bounded() -> None:
    session = _FakeSession(_FakeResponse(200, [_ok_body()]))
    make_client(session).fetch_context("p")
    connect, read = session.calls[0]["timeout"]
    assert connect <= 10
    assert read <= 60


def test_client_requires_api_key() -> None:
    with pytest.raises(ConfigurationError):
        CompletionClient("", "https://api.x.ai/v1", "grok-3")


def test_context_result_with_appended_returns_new_instance() -> None:
    original = ContextResult(markdown="a", json={}, raw="{}")
    extended = original.with_appended("b")
    assert extended.markdown == "ab"
    assert original.markdown == "a"


def test_fetch_context_wrapped_read_timeout_is_classified() -> None:
    wrapped = requests.exceptions.ConnectionError(
        urllib3.exceptions.ReadTimeoutError(None, "/v1/chat/completions", "Read timed out.")
    )
    session = _FakeSession(error=wrapped)
    with pytest.raises(CompletionTimeout):
        make_client(session).fetch_context("p")


class _SlowServer:
    """One-shot HTTP server that sends headers and ``{`` then stalls or trickles spaces."""

    def __init__(self, *, interval: float | None, total: float) -> None:
        self.interval = interval
        self.total = total
        self.stop = threading.Event()
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(1)
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.sock.getsockname()[1]}/v1"

    def _read_request(self, conn: socket.socket) -> None:
        data = b""
        while b"\r\n\r\n" not in data:
            chunk = conn.recv(4096)
            if not chunk:
                return
            data += chunk
        head, _, body = data.partition(b"\r\n\r\n")
        length = 0
        for line in head.split(b"\r\n"):
            if line.lower().startswith(b"content-length:"):
                length = int(line.split(b":", 1)[1].strip())
        while len(body) < length:
            chunk = conn.recv(4096)
            if not chunk:
                return
            body += chunk

    def _serve(self) -> None:
        try:
            conn, _ = self.sock.accept()
        except OSError:
            return
        with conn:
            try:
                conn.settimeout(5)
                self._read_request(conn)
                conn.sendall(
                    b"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\nContent-Length: 100000\r\n\r\n{"
                )
                started = time.monotonic()
                while not self.stop.is_set() and time.monotonic() - started < self.total:
                    if self.interval is None:
                        self.stop.wait(self.total)
                        continue
                    conn.sendall(b" ")
                    self.stop.wait(self.interval)
            except OSError:
                return

    def close(self) -> None:
        self.stop.set()
        self.sock.close()
        self.thread.join(timeout=2)


def _direct_session() -> requests.Session:
    session = requests.Session()
    session.trust_env = False
    return session


@pytest.mark.parametrize("interval", [None, 0.2], ids=["stalled-body", "trickled-body"])
def test_fetch_context_real_socket_body_respects_deadline(interval: float | None) -> None:
    server = _SlowServer(interval=interval, total=5.0)
    client = CompletionClient("secret", server.base_url, "grok-test", timeout=1.0, session_factory=_direct_session)
    started = time.monotonic()
    try:
        with pytest.raises(CompletionTimeout) as info:
            client.fetch_context("p")
    finally:
        server.close()
    elapsed = time.monotonic() - started
    assert info.value.seconds == 1.0
    assert elapsed < 2.5
