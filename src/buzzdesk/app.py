from __future__ import annotations

import argparse
import json
import mimetypes
import os
import sys
import traceback
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Iterable, Optional

from dotenv import load_dotenv

from buzzbrief.config import ResearchConfig
from buzzbrief.llm import CompletionClient
from buzzbrief.pipeline import ResearchReport, run_research
from buzzbrief.trace import RunLogger
from buzzbrief.versioning import VERSION as BUZZBRIEF_VERSION

from .config import (
    DEFAULT_DATA_DIR,
    DEFAULT_RATE_LIMIT,
    DEFAULT_RATE_WINDOW,
    DEFAULT_STATIC_DIR,
    STORAGE_BACKENDS,
    DeskConfig,
)
from .ratelimit import FixedWindowLimiter
from .routes import handle_api_get as _dispatch_api_get, handle_api_post as _dispatch_api_post
from .storage import ReportStore, create_store

REQUEST_TIMEOUT_SECONDS = 300


def _log(message: str) -> None:
    sys.stderr.write(f"[buzzdesk] {message}\n")


def run_pipeline(config: ResearchConfig) -> ResearchReport:
    client = CompletionClient.from_config(config)
    return run_research(config, client, logger=RunLogger())


class DeskHandler(BaseHTTPRequestHandler):
    server_version = f"buzzdesk/{BUZZBRIEF_VERSION}"
    # Deep runs make three sequential model calls.
    timeout = REQUEST_TIMEOUT_SECONDS

    def _cfg(self) -> DeskConfig:
        return self.server.cfg  # type: ignore[attr-defined]

    def _store(self) -> ReportStore:
        return self.server.store  # type: ignore[attr-defined]

    def _limiter(self) -> FixedWindowLimiter:
        return self.server.limiter  # type: ignore[attr-defined]

    def _log(self, message: str) -> None:
        _log(message)

    def log_message(self, format: str, *args: Any) -> None:
        _log(format % args)

    def _send_json(self, payload: Any, status: int = 200, headers: dict[str, str] | None = None) -> None:
        data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(data)))
        for key, value in (headers or {}).items():
            self.send_header(key, value)
        self.end_headers()
        self.wfile.write(data)

    def _read_json(self) -> dict[str, Any]:
        length = int(self.headers.get("Content-Length", "0") or "0")
        if length <= 0:
            return {}
        raw = self.rfile.read(length)
        try:
            parsed = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def do_GET(self) -> None:  # noqa: N802
        try:
            if self.path.startswith("/api/"):
                _dispatch_api_get(self)
                return
            self._serve_static()
        except Exception as exc:  # pragma: no cover - last-resort guard for the server thread
            _log(f"GET error: {exc}\n{traceback.format_exc()}")
            self._send_error_json()

    def do_POST(self) -> None:  # noqa: N802
        try:
            if not self.path.startswith("/api/"):
                self._send_json({"error": "unknown_endpoint"}, status=404)
                return
            _dispatch_api_post(self, run_pipeline=run_pipeline)
        except Exception as exc:  # pragma: no cover - last-resort guard for the server thread
            _log(f"POST error: {exc}\n{traceback.format_exc()}")
            self._send_error_json()

    def _send_error_json(self) -> None:
        try:
            self._send_json({"error": "Internal Server Error"}, status=500)
        except OSError:
            pass

    def _serve_static(self) -> None:
        static_dir = self._cfg().static_dir.resolve()
        rel = self.path.split("?", 1)[0].lstrip("/") or "index.html"
        target = (static_dir / rel).resolve()
        try:
            target.relative_to(static_dir)
        except ValueError:
            self.send_error(HTTPStatus.FORBIDDEN, "Invalid path")
            return
        if target.is_dir():
            target = target / "index.html"
        if not target.is_file():
            self.send_error(HTTPStatus.NOT_FOUND, "Not found")
            return
        ctype, _ = mimetypes.guess_type(str(target))
        data = target.read_bytes()
        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", (ctype or "text/html") + "; charset=utf-8")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)


class DeskHTTPServer(ThreadingHTTPServer):
    daemon_threads = True


def build_server(cfg: DeskConfig, host: str, port: int) -> DeskHTTPServer:
    server = DeskHTTPServer((host, port), DeskHandler)
    server.cfg = cfg  # type: ignore[attr-defined]
    server.store = create_store(cfg.storage, cfg.data_dir)  # type: ignore[attr-defined]
    server.limiter = FixedWindowLimiter(cfg.rate_limit, cfg.rate_window)  # type: ignore[attr-defined]
    return server


class _HelpFormatter(argparse.ArgumentDefaultsHelpFormatter, argparse.RawTextHelpFormatter):
    """Preserve example formatting while still showing defaults."""


def build_parser() -> argparse.ArgumentParser:
    examples = """Examples:
  # Local server, reports saved under ./data/context-research.
  buzzdesk --port 3000
  # Keep reports in memory only (lost on restart).
  buzzdesk --storage memory
  # Share on the LAN with a looser limit.
  buzzdesk --host 0.0.0.0 --rate-limit 10 --rate-window 60
  # Module entrypoint.
  python -m buzzdesk.app --root . --port 3000
"""
    ap = argparse.ArgumentParser(
        prog="buzzdesk",
        description="Buzzdesk: HTTP API for buzzbrief research runs and report history.",
        epilog=examples,
        formatter_class=_HelpFormatter,
    )
    ap.add_argument("--host", default="127.0.0.1", help="Host to bind.")
    ap.add_argument("--port", type=int, default=int(os.getenv("PORT") or 3000), help="Port to bind.")
    ap.add_argument("--root", default=".", help="Base directory for --data-dir and --static-dir.")
    ap.add_argument(
        "--data-dir",
        default=os.getenv("BUZZDESK_DATA_DIR") or DEFAULT_DATA_DIR,
        help="Report folder for the file store (relative to --root).",
    )
    ap.add_argument("--static-dir", default=DEFAULT_STATIC_DIR, help="Static UI folder (relative to --root).")
    ap.add_argument("--storage", choices=list(STORAGE_BACKENDS), default="file", help="Report store backend.")
    ap.add_argument("--rate-limit", type=int, default=DEFAULT_RATE_LIMIT, help="Research runs allowed per client per window.")
    ap.add_argument("--rate-window", type=float, default=DEFAULT_RATE_WINDOW, help="Rate-limit window in seconds.")
    return ap


def config_from_args(args: argparse.Namespace) -> DeskConfig:
    root = Path(args.root).resolve()
    return DeskConfig(
        data_dir=(root / args.data_dir).resolve(),
        static_dir=(root / args.static_dir).resolve(),
        storage=args.storage,
        rate_limit=args.rate_limit,
        rate_window=args.rate_window,
    )


def main(argv: Optional[Iterable[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    cfg = config_from_args(args)
    server = build_server(cfg, args.host, args.port)
    _log(f"Serving http://{args.host}:{args.port}/")
    _log(f"Storage: {cfg.storage} ({cfg.data_dir})")
    if not os.getenv("XAI_API_KEY"):
        _log("XAI_API_KEY is not set; research requests will fail until it is configured.")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        _log("Shutting down.")
    finally:
        server.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
