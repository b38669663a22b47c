from __future__ import annotations

import datetime as dt
import json
import sys
from pathlib import Path
from typing import Optional, TextIO


class RunLogger:
    def __init__(
        self,
        log_path: Optional[Path] = None,
        also_stderr: bool = True,
        stream: Optional[TextIO] = None,
    ) -> None:
        self.log_path = log_path
        self.also_stderr = also_stderr
        self.stream = stream

    def log(self, msg: str) -> None:
        stamp = dt.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        line = f"[{stamp}] {msg}"
        if self.log_path is not None:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        if self.also_stderr:
            print(line, file=self.stream or sys.stderr, flush=True)


class StageTrace:
    """Status per stage plus an ordered event timeline for one pipeline run."""

    def __init__(self, stage_order: list[str], logger: Optional[RunLogger] = None) -> None:
        self.stage_order = list(stage_order)
        self.logger = logger
        self.status: dict[str, dict[str, str]] = {
            name: {"status": "pending", "detail": ""} for name in self.stage_order
        }
        self.events: list[dict[str, str]] = []

    def record(self, name: str, status: str, detail: str = "") -> None:
        if name not in self.status:
            return
        self.status[name]["status"] = status
        if detail:
            self.status[name]["detail"] = detail
        self.events.append(
            {
                "index": str(len(self.events) + 1),
                "timestamp": dt.datetime.now().isoformat(timespec="seconds"),
                "stage": name,
                "status": status,
                "detail": detail,
            }
        )
        if self.logger is not None:
            suffix = f" ({detail})" if detail else ""
            self.logger.log(f"stage {name}: {status}{suffix}")

    def summary_lines(self) -> list[str]:
        lines: list[str] = []
        for idx, name in enumerate(self.stage_order, start=1):
            entry = self.status.get(name, {})
            line = f"{idx}. {name}: {entry.get('status', 'unknown')}"
            if entry.get("detail"):
                line = f"{line} ({entry['detail']})"
            lines.append(line)
        return lines

    def to_dict(self) -> dict[str, object]:
        return {
            "order": list(self.stage_order),
            "stages": self.status,
            "timeline": list(self.events),
        }

    def write(self, out_dir: Path, stem: str) -> Path:
        out_dir.mkdir(parents=True, exist_ok=True)
        lines = ["# Research Workflow", "", "## Stages", *self.summary_lines(), ""]
        if self.events:
            lines.extend(["## Timeline", ""])
            for idx, event in enumerate(self.events, start=1):
                detail = f" ({event['detail']})" if event.get("detail") else ""
                lines.append(f"{idx}. [{event['timestamp']}] {event['stage']}: {event['status']}{detail}")
            lines.append("")
        md_path = out_dir / f"{stem}_workflow.md"
        md_path.write_text("\n".join(lines).strip() + "\n", encoding="utf-8")
        payload = {"created_at": dt.datetime.now().isoformat(), **self.to_dict()}
        (out_dir / f"{stem}_workflow.json").write_text(
            json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8"
        )
        return md_path
