from __future__ import annotations

import datetime as dt
import json
import threading
from pathlib import Path
from typing import Any, Optional, Protocol

from buzzbrief.errors import PathEscapeError, StorageError
from buzzbrief.metadata import extract_title, validate_filename

from .config import HISTORY_LIMIT

METADATA_KEYS = ("filename", "title", "created", "topic", "depth")
_TITLE_SCAN_BYTES = 4096


class ReportStore(Protocol):
    def put(self, filename: str, record: dict[str, Any], metadata: dict[str, Any]) -> None: ...

    def list(self, limit: int = HISTORY_LIMIT) -> list[dict[str, Any]]: ...

    def get(self, filename: str) -> Optional[dict[str, Any]]: ...


def _sort_newest_first(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
    # ISO-8601 UTC strings order lexically; entries without a timestamp sink.
    return sorted(items, key=lambda item: str(item.get("created") or ""), reverse=True)


def _topic_from_filename(name: str) -> str:
    parts = Path(name).stem.split("_")
    if len(parts) >= 3 and parts[0].isdigit() and len(parts[0]) == 8 and parts[1].isdigit():
        parts = parts[2:]
    return " ".join(part for part in parts if part) or Path(name).stem


def _mtime_iso(path: Path) -> str:
    stamp = dt.datetime.fromtimestamp(path.stat().st_mtime, tz=dt.timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class FileReportStore:
    """Reports as ``<name>.md`` plus a ``<stem>.json`` record under one folder."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def _path(self, filename: str) -> Path:
        name = validate_filename(filename)
        # Names are single path segments, but a symlink can still point elsewhere.
        path = (self.directory / name).resolve()
        if path.parent != self.directory.resolve():
            raise PathEscapeError("Access denied")
        return path

    def put(self, filename: str, record: dict[str, Any], metadata: dict[str, Any]) -> None:
        path = self._path(filename)
        payload = {**record, **metadata}
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            path.write_text(str(record.get("markdown") or ""), encoding="utf-8")
            path.with_suffix(".json").write_text(
                json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8"
            )
        except OSError as exc:
            raise StorageError(f"Failed to save report {filename}: {exc}") from exc

    def _summarize(self, path: Path) -> dict[str, Any]:
        sidecar = path.with_suffix(".json")
        if sidecar.exists():
            try:
                data = json.loads(sidecar.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                data = None
            if isinstance(data, dict):
                item = {key: data.get(key) for key in METADATA_KEYS}
                item["filename"] = path.name
                return item
        head = ""
        try:
            with path.open("r", encoding="utf-8", errors="replace") as f:
                head = f.read(_TITLE_SCAN_BYTES)
        except OSError:
            head = ""
        topic = _topic_from_filename(path.name)
        return {
            "filename": path.name,
            "title": extract_title(head, topic),
            "created": _mtime_iso(path),
            "topic": topic,
            "depth": None,
        }

    def list(self, limit: int = HISTORY_LIMIT) -> list[dict[str, Any]]:
        if not self.directory.exists():
            return []
        try:
            items = [self._summarize(path) for path in self.directory.glob("*.md") if path.is_file()]
        except OSError as exc:
            raise StorageError(f"Failed to list reports: {exc}") from exc
        return _sort_newest_first(items)[:limit]

    def get(self, filename: str) -> Optional[dict[str, Any]]:
        path = self._path(filename)
        if not path.exists():
            return None
        try:
            sidecar = path.with_suffix(".json")
            if sidecar.exists():
                data = json.loads(sidecar.read_text(encoding="utf-8"))
                if isinstance(data, dict):
                    return data
            markdown = path.read_text(encoding="utf-8", errors="replace")
        except (OSError, ValueError) as exc:
            raise StorageError(f"Failed to read report {filename}: {exc}") from exc
        return {"filename": path.name, "markdown": markdown}


class MemoryKV:
    """In-process key-value backend with the put/get/list shape of a hosted KV."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self._metadata: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: str, metadata: Optional[dict[str, Any]] = None) -> None:
        with self._lock:
            self._values[key] = value
            self._metadata[key] = dict(metadata or {})

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def list(self, limit: int = HISTORY_LIMIT) -> list[dict[str, Any]]:
        # Report keys start with a UTC timestamp, so descending key order is newest first.
        with self._lock:
            keys = sorted(self._values, reverse=True)[:limit]
            return [{"name": key, "metadata": dict(self._metadata.get(key) or {})} for key in keys]


class KVReportStore:
    def __init__(self, kv: Any) -> None:
        self.kv = kv

    def put(self, filename: str, record: dict[str, Any], metadata: dict[str, Any]) -> None:
        name = validate_filename(filename)
        try:
            self.kv.put(name, json.dumps(record, ensure_ascii=False), metadata=metadata)
        except Exception as exc:
            raise StorageError(f"Failed to save report {filename}: {exc}") from exc

    def list(self, limit: int = HISTORY_LIMIT) -> list[dict[str, Any]]:
        try:
            keys = self.kv.list(limit=limit)
        except Exception as exc:
            raise StorageError(f"Failed to list reports: {exc}") from exc
        items = [{"filename": key["name"], **(key.get("metadata") or {})} for key in keys]
        return _sort_newest_first(items)

    def get(self, filename: str) -> Optional[dict[str, Any]]:
        name = validate_filename(filename)
        try:
            raw = self.kv.get(name)
        except Exception as exc:
            raise StorageError(f"Failed to read report {filename}: {exc}") from exc
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise StorageError(f"Stored report {filename} is not valid JSON") from exc
        return data if isinstance(data, dict) else {"filename": name, "markdown": str(data)}


def create_store(kind: str, data_dir: Path) -> ReportStore:
    if kind == "memory":
        return KVReportStore(MemoryKV())
    if kind == "file":
        return FileReportStore(data_dir)
    raise ValueError(f"Unknown storage backend: {kind}")
