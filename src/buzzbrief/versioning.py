from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

DISTRIBUTION_NAME = "buzzbrief"
# Used when running from a source checkout (run.py) without an install.
SOURCE_VERSION = "0.3.0"


def resolve_version() -> str:
    try:
        return version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        return SOURCE_VERSION


VERSION = resolve_version()
