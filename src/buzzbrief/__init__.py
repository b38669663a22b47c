"""Buzzbrief research pipeline package."""

from __future__ import annotations

from .versioning import VERSION as __version__

__all__ = [
    "CompletionClient",
    "ResearchConfig",
    "ResearchReport",
    "resolve_config",
    "run_research",
    "__version__",
]


def __getattr__(name: str):
    if name in {"ResearchConfig", "resolve_config"}:
        from . import config

        return getattr(config, name)
    if name == "CompletionClient":
        from .llm import CompletionClient

        return CompletionClient
    if name in {"ResearchReport", "run_research"}:
        from . import pipeline

        return getattr(pipeline, name)
    raise AttributeError(f"module 'buzzbrief' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(__all__)
