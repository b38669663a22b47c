from __future__ import annotations

import math
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .errors import ConfigurationError, ValidationError
from .templates import DEFAULT_TEMPLATE, resolve_template_key

DEFAULT_BASE_URL = "https://api.x.ai/v1"
DEFAULT_MODEL = "grok-3"
DEFAULT_LOCALE = "ja"
DEFAULT_AUDIENCE = "engineer"
DEFAULT_DEPTH = "simple"
DEFAULT_DAYS = 30
DEFAULT_TOP_N = 10
DEFAULT_BUZZ_THRESHOLD = 100
COMPLETION_TIMEOUT_SECONDS = 60.0
MAX_TOPIC_CHARS = 200

DEPTHS = ("simple", "deep")
LOCALES = ("ja", "en", "us", "global")

ENV_API_KEY = "XAI_API_KEY"
ENV_BASE_URL = "XAI_BASE_URL"
ENV_MODEL = "XAI_MODEL"


@dataclass(frozen=True)
class ResearchConfig:
    topic: str
    api_key: str = ""
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    locale: str = DEFAULT_LOCALE
    audience: str = DEFAULT_AUDIENCE
    depth: str = DEFAULT_DEPTH
    template: str = DEFAULT_TEMPLATE
    days: int = DEFAULT_DAYS
    top_n: int = DEFAULT_TOP_N
    buzz_threshold: int = DEFAULT_BUZZ_THRESHOLD
    primary_source_priority: bool = True
    goal: Optional[str] = None
    timeout: float = COMPLETION_TIMEOUT_SECONDS

    @property
    def is_deep(self) -> bool:
        return self.depth == "deep"


def parse_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return default


def parse_positive_int(value: Any, default: int) -> int:
    """Coerce loosely typed numbers; anything absent, non-numeric or < 1 falls back."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    number = int(math.floor(number))
    return number if number > 0 else default


def _clean_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def validate_topic(raw: Any) -> str:
    topic = _clean_str(raw)
    if not topic:
        raise ValidationError("Topic is required")
    if len(topic) > MAX_TOPIC_CHARS:
        raise ValidationError(f"Topic must be under {MAX_TOPIC_CHARS} chars")
    return topic


def resolve_config(
    payload: Mapping[str, Any],
    env: Optional[Mapping[str, str]] = None,
    *,
    require_api_key: bool = True,
) -> ResearchConfig:
    """Build a fully defaulted config from a request payload and the environment.

    Connection settings (key and base URL) only come from the environment;
    the payload may pick a model. Raises ValidationError for a bad topic and
    ConfigurationError when the API key is missing.
    """
    environ = os.environ if env is None else env
    topic = validate_topic(payload.get("topic"))

    api_key = _clean_str(environ.get(ENV_API_KEY))
    if require_api_key and not api_key:
        raise ConfigurationError("API key not configured on server")

    depth = _clean_str(payload.get("depth")).lower() or DEFAULT_DEPTH
    if depth not in DEPTHS:
        depth = DEFAULT_DEPTH
    goal = _clean_str(payload.get("goal")) or None

    return ResearchConfig(
        topic=topic,
        api_key=api_key,
        base_url=(_clean_str(environ.get(ENV_BASE_URL)) or DEFAULT_BASE_URL).rstrip("/"),
        model=_clean_str(payload.get("model")) or _clean_str(environ.get(ENV_MODEL)) or DEFAULT_MODEL,
        locale=_clean_str(payload.get("locale")).lower() or DEFAULT_LOCALE,
        audience=_clean_str(payload.get("audience")) or DEFAULT_AUDIENCE,
        depth=depth,
        template=resolve_template_key(_clean_str(payload.get("template")).lower()),
        days=parse_positive_int(payload.get("days"), DEFAULT_DAYS),
        top_n=parse_positive_int(payload.get("topN", payload.get("top_n")), DEFAULT_TOP_N),
        buzz_threshold=parse_positive_int(
            payload.get("buzzThreshold", payload.get("buzz_threshold")), DEFAULT_BUZZ_THRESHOLD
        ),
        primary_source_priority=parse_bool(
            payload.get("primarySourcePriority", payload.get("primary_source_priority")), True
        ),
        goal=goal,
    )
