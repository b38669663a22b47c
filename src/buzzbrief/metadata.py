from __future__ import annotations

import datetime as dt
import re
from dataclasses import asdict, dataclass
from typing import Any, Optional

from .errors import ValidationError

FILENAME_TOPIC_CHARS = 50
DEFAULT_EXTENSION = "md"

_UNSAFE_CHARS = re.compile(r'[\\/:*?"<>|\s]')
# Storage keys must stay inside the lookup allow-list, so anything else is folded too.
_OUTSIDE_ALLOW_LIST = re.compile(r"[^A-Za-z0-9_.\-]")
_ALLOWED_NAME = re.compile(r"^[A-Za-z0-9_.\-]+$")
_TITLE_LINE = re.compile(r"^#[ \t]+(.+?)[ \t]*\r?$", re.MULTILINE)


@dataclass(frozen=True)
class ReportMetadata:
    filename: str
    title: str
    created: str
    topic: str
    depth: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def sanitize_topic(topic: str, max_len: int = FILENAME_TOPIC_CHARS) -> str:
    safe = _UNSAFE_CHARS.sub("_", topic)
    safe = _OUTSIDE_ALLOW_LIST.sub("_", safe)
    return safe[:max_len]


def build_filename(topic: str, created: dt.datetime, ext: str = DEFAULT_EXTENSION) -> str:
    stamp = created.astimezone(dt.timezone.utc) if created.tzinfo else created
    return f"{stamp:%Y%m%d}_{stamp:%H%M%S}_{sanitize_topic(topic)}.{ext.lstrip('.')}"


def extract_title(markdown: str, fallback: str) -> str:
    match = _TITLE_LINE.search(markdown or "")
    if not match:
        return fallback
    title = match.group(1).strip().replace('"', "").replace("'", "")
    return title or fallback


def is_valid_filename(name: Optional[str]) -> bool:
    if not name or ".." in name:
        return False
    return bool(_ALLOWED_NAME.match(name))


def validate_filename(name: Optional[str]) -> str:
    if not is_valid_filename(name):
        raise ValidationError("Invalid filename")
    return str(name)


def derive_metadata(
    *,
    topic: str,
    depth: str,
    markdown: str,
    created: dt.datetime,
    ext: str = DEFAULT_EXTENSION,
) -> ReportMetadata:
    created_utc = created.astimezone(dt.timezone.utc) if created.tzinfo else created
    return ReportMetadata(
        filename=build_filename(topic, created_utc, ext),
        title=extract_title(markdown, topic),
        created=created_utc.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        topic=topic,
        depth=depth,
    )
