from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

DEFAULT_DATA_DIR = "data/context-research"
DEFAULT_STATIC_DIR = "public"
DEFAULT_RATE_LIMIT = 3
DEFAULT_RATE_WINDOW = 60.0
HISTORY_LIMIT = 50
STORAGE_BACKENDS = ("file", "memory")


@dataclass
class DeskConfig:
    data_dir: Path
    static_dir: Path
    storage: str = "file"
    rate_limit: int = DEFAULT_RATE_LIMIT
    rate_window: float = DEFAULT_RATE_WINDOW
