from __future__ import annotations

import datetime as dt
import io
import json
from pathlib import Path

import pytest

from buzzbrief.config import ResearchConfig
from buzzbrief.errors import CompletionTimeout, UpstreamError
from buzzbrief.llm import ContextResult
from buzzbrief.metadata import derive_metadata
from buzzbrief.pipeline import ResearchReport
from buzzbrief.versioning import VERSION
from buzzdesk.ratelimit import FixedWindowLimiter
from buzzdesk.routes import RATE_LIMITED_MESSAGE, handle_api_get, handle_api_post
from buzzdesk.storage import FileReportStore, KVReportStore, MemoryKV

CREATED = dt.datetime(2026, 2, 11, 9, 30, 5, tzinfo=dt.timezone.utc)


class DummyHandler:
    def __init__(self, store, path: str, payload: dict | None = None, limiter: FixedWindowLimiter | None = None) -> None:
        self._store_obj = store
        self._limiter_obj = limiter or FixedWindowLimiter(3, 60)
        self.path = path
        raw = json.dumps(payload or {}, ensure_ascii=False).encode("utf-8")
        self.headers = {"Content-Length": str(len(raw))}
        self.rfile = io.BytesIO(raw)
        self.client_address = ("10.0.0.1", 50000)
        self.json_response: tuple[int, object] | None = None
        self.response_headers: dict[str, str] = {}
        self.logs: list[str] = []

    def _store(self):
        return self._store_obj

    def _limiter(self) -> FixedWindowLimiter:
        return self._limiter_obj

    def _log(self, message: str) -> None:
        self.logs.append(message)

    def _send_json(self, payload: object, status: int = 200, headers: dict[str, str] | None = None) -> None:
        self.json_response = (status, payload)
        self.response_headers = dict(headers or {})

    def _read_json(self) -> dict:
        length = int(self.headers.get("Content-Length", "0") or "0")
        if length <= 0:
            return {}
        return json.loads(self.rfile.read(length).decode("utf-8"))


def _fake_report(config: ResearchConfig) -> ResearchReport:
    markdown = f"# Report on {config.topic}\nbody"
    meta = derive_metadata(topic=config.topic, depth=config.depth, markdown=markdown, created=CREATED)
    return ResearchReport(result=ContextResult(markdown=markdown, json={}, raw="{}"), metadata=meta)


@pytest.fixture(autouse=True)
def _api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("XAI_API_KEY", "test-key")


def test_health_reports_version() -> None:
    handler = DummyHandler(KVReportStore(MemoryKV()), "/api/health")
    handle_api_get(handler)
    assert handler.json_response == (200, {"status": "ok", "version": VERSION})


def test_templates_endpoint_lists_keys() -> None:
    handler = DummyHandler(KVReportStore(MemoryKV()), "/api/templates")
    handle_api_get(handler)
    assert handler.json_response == (200, ["general", "tutorial", "trend", "opinion"])


def test_research_success_saves_report(tmp_path: Path) -> None:
    store = FileReportStore(tmp_path)
    seen: list[ResearchConfig] = []

    def run_pipeline(config: ResearchConfig) -> ResearchReport:
        seen.append(config)
        return _fake_report(config)

    handler = DummyHandler(store, "/api/research", {"topic": "WebGPU", "depth": "deep", "topN": "6"})
    handle_api_post(handler, run_pipeline=run_pipeline)

    status, payload = handler.json_response
    assert status == 200
    assert payload == {
        "success": True,
        "filename": "20260211_093005_WebGPU.md",
        "markdown": "# Report on WebGPU\nbody",
    }
    assert seen[0].depth == "deep"
    assert seen[0].top_n == 6
    assert seen[0].api_key == "test-key"
    assert (tmp_path / "20260211_093005_WebGPU.md").exists()

    history = DummyHandler(store, "/api/history")
    handle_api_get(history)
    assert history.json_response[0] == 200
    assert history.json_response[1][0]["title"] == "Report on WebGPU"

    detail = DummyHandler(store, "/api/history/20260211_093005_WebGPU.md")
    handle_api_get(detail)
    assert detail.json_response[0] == 200
    assert detail.json_response[1]["markdown"] == "# Report on WebGPU\nbody"


def test_research_requires_topic() -> None:
    calls: list[ResearchConfig] = []
    handler = DummyHandler(KVReportStore(MemoryKV()), "/api/research", {"topic": "   "})
    handle_api_post(handler, run_pipeline=lambda config: calls.append(config))
    assert handler.json_response[0] == 400
    assert "error" in handler.json_response[1]
    assert calls == []


def test_research_without_api_key_is_server_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("XAI_API_KEY", raising=False)
    handler = DummyHandler(KVReportStore(MemoryKV()), "/api/research", {"topic": "WebGPU"})
    handle_api_post(handler, run_pipeline=_fake_report)
    assert handler.json_response[0] == 500
    assert handler.json_response[1] == {"error": "API key not configured on server"}


@pytest.mark.parametrize(
    ("error", "status"),
    [
        (CompletionTimeout(60), 504),
        (UpstreamError(429, "slow down", "Too Many Requests"), 502),
    ],
)
def test_research_maps_pipeline_errors(error: Exception, status: int) -> None:
    store = KVReportStore(MemoryKV())

    def run_pipeline(config: ResearchConfig) -> ResearchReport:
        raise error

    handler = DummyHandler(store, "/api/research", {"topic": "WebGPU"})
    handle_api_post(handler, run_pipeline=run_pipeline)
    assert handler.json_response == (status, {"error": str(error)})
    assert store.list() == []


def test_research_is_rate_limited_before_work() -> None:
    limiter = FixedWindowLimiter(3, 60, clock=lambda: 0.0)
    calls: list[str] = []

    def run_pipeline(config: ResearchConfig) -> ResearchReport:
        calls.append(config.topic)
        return _fake_report(config)

    store = KVReportStore(MemoryKV())
    statuses = []
    for _ in range(4):
        handler = DummyHandler(store, "/api/research", {"topic": "WebGPU"}, limiter=limiter)
        handle_api_post(handler, run_pipeline=run_pipeline)
        statuses.append(handler.json_response[0])
    assert statuses == [200, 200, 200, 429]
    assert handler.json_response[1] == {"error": RATE_LIMITED_MESSAGE}
    assert handler.response_headers == {"Retry-After": "61"}
    assert len(calls) == 3


def test_rate_limit_prefers_forwarded_address() -> None:
    limiter = FixedWindowLimiter(1, 60, clock=lambda: 0.0)
    store = KVReportStore(MemoryKV())
    first = DummyHandler(store, "/api/research", {"topic": "a"}, limiter=limiter)
    first.headers["X-Forwarded-For"] = "203.0.113.7, 10.0.0.1"
    handle_api_post(first, run_pipeline=_fake_report)
    second = DummyHandler(store, "/api/research", {"topic": "b"}, limiter=limiter)
    handle_api_post(second, run_pipeline=_fake_report)
    assert first.json_response[0] == 200
    assert second.json_response[0] == 200


def test_history_detail_rejects_invalid_name_before_lookup() -> None:
    class _ExplodingStore:
        def get(self, filename):
            raise AssertionError("lookup must not happen")

    for path in ("/api/history/..%2Fsecret.md", "/api/history/bad%20name.md"):
        handler = DummyHandler(_ExplodingStore(), path)
        handle_api_get(handler)
        assert handler.json_response == (400, {"error": "Invalid filename"})


def test_history_detail_missing_is_404() -> None:
    handler = DummyHandler(KVReportStore(MemoryKV()), "/api/history/20990101_000000_none.md")
    handle_api_get(handler)
    assert handler.json_response == (404, {"error": "Not found"})


def test_history_list_failure_is_500() -> None:
    class _BrokenKV:
        def list(self, limit=50):
            raise RuntimeError("kv down")

    handler = DummyHandler(KVReportStore(_BrokenKV()), "/api/history")
    handle_api_get(handler)
    assert handler.json_response == (500, {"error": "Failed to fetch history"})


def test_unknown_endpoints() -> None:
    store = KVReportStore(MemoryKV())
    getter = DummyHandler(store, "/api/nope")
    handle_api_get(getter)
    assert getter.json_response == (404, {"error": "unknown_endpoint"})
    poster = DummyHandler(store, "/api/history", {"topic": "x"})
    handle_api_post(poster, run_pipeline=_fake_report)
    assert poster.json_response == (404, {"error": "unknown_endpoint"})
