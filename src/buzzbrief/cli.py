from __future__ import annotations

import argparse
import json
import os
import shutil
import sys
from pathlib import Path
from typing import Iterable, Optional

from dotenv import load_dotenv

from .config import DEPTHS, ENV_BASE_URL, LOCALES, resolve_config
from .errors import BuzzbriefError
from .llm import CompletionClient
from .metadata import build_filename
from .pipeline import plan_for, preview_prompts, run_research
from .prompts import utc_now
from .templates import list_templates
from .trace import RunLogger, StageTrace
from .versioning import VERSION

DEFAULT_OUT_DIR = "data/context-research"


def build_parser() -> argparse.ArgumentParser:
    epilog = (
        "Examples:\n"
        "  buzzbrief \"Claude Code\" --depth simple\n"
        "  buzzbrief \"Rust async runtimes\" --depth deep --template trend --locale us\n"
        "  buzzbrief \"生成AI 規制\" --audience investor --top-n 6 --buzz-threshold 300\n"
        "  buzzbrief \"WebGPU\" --dry-run\n"
        "  buzzbrief \"WebGPU\" --out-dir ./reports --raw-json\n"
        "  python -m buzzbrief \"WebGPU\" --depth deep\n"
        "\n"
        "Environment:\n"
        "  XAI_API_KEY (required unless --dry-run), XAI_BASE_URL, XAI_MODEL. A .env file is read if present.\n"
    )

    class CleanHelpFormatter(argparse.RawDescriptionHelpFormatter):
        def __init__(self, prog: str) -> None:
            width = shutil.get_terminal_size((120, 20)).columns
            super().__init__(prog, width=width, max_help_position=32)

    ap = argparse.ArgumentParser(
        prog="buzzbrief",
        description="Buzzbrief: research reports on what is trending on X, written by an OpenAI-compatible model.",
        formatter_class=CleanHelpFormatter,
        epilog=epilog,
    )
    ap.add_argument("topic", help="Research topic (max 200 characters).")
    ap.add_argument("--depth", choices=list(DEPTHS), default="simple", help="simple = one call, deep = research/critique/synthesis.")
    ap.add_argument("--template", choices=list_templates(), default="general", help="Article structure for deep mode.")
    ap.add_argument("--locale", choices=list(LOCALES), default="ja", help="Output language and target market.")
    ap.add_argument("--audience", default="engineer", help="Audience label (investor switches to business framing).")
    ap.add_argument("--days", type=int, default=30, help="Lookback window (days).")
    ap.add_argument("--top-n", type=int, default=10, help="Number of buzzing posts to rank in simple mode.")
    ap.add_argument("--buzz-threshold", type=int, default=100, help="Preferred minimum likes per post.")
    ap.add_argument(
        "--primary-source-priority",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Rank official/original-author posts higher when engagement is comparable.",
    )
    ap.add_argument("--goal", help="Override the default research objective.")
    ap.add_argument("--model", help="Model name (defaults to XAI_MODEL or grok-3).")
    ap.add_argument("--base-url", help="API base URL (defaults to XAI_BASE_URL or https://api.x.ai/v1).")
    ap.add_argument("--out-dir", default=DEFAULT_OUT_DIR, help="Folder for the report, run log and workflow notes.")
    ap.add_argument("--dry-run", action="store_true", help="Print the prompts without calling the model.")
    ap.add_argument("--raw-json", action="store_true", help="Also write the full record with the raw API response as JSON.")
    ap.add_argument("--print", dest="echo", action="store_true", help="Echo the final markdown to stdout.")
    ap.add_argument("--version", action="version", version=f"buzzbrief {VERSION}")
    return ap


def _write_trace(trace: StageTrace, out_dir: Path, stem: str, logger: RunLogger) -> None:
    try:
        trace.write(out_dir, stem)
    except OSError as exc:
        logger.log(f"workflow notes not written: {exc}")


def main(argv: Optional[Iterable[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    env = dict(os.environ)
    if args.base_url:
        env[ENV_BASE_URL] = args.base_url
    payload = {
        "topic": args.topic,
        "depth": args.depth,
        "template": args.template,
        "locale": args.locale,
        "audience": args.audience,
        "days": args.days,
        "topN": args.top_n,
        "buzzThreshold": args.buzz_threshold,
        "primarySourcePriority": args.primary_source_priority,
        "goal": args.goal,
        "model": args.model,
    }
    try:
        config = resolve_config(payload, env, require_api_key=not args.dry_run)
    except BuzzbriefError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    if args.dry_run:
        for stage, prompt in preview_prompts(config):
            print(f"===== {stage} =====")
            print(prompt)
        return 0

    out_dir = Path(args.out_dir)
    logger = RunLogger(out_dir / "run.log")
    trace = StageTrace([spec.name for spec in plan_for(config)], logger=logger)
    # Failed runs have no report name; their trace is filed under the start time.
    stem = Path(build_filename(config.topic, utc_now())).stem
    try:
        client = CompletionClient.from_config(config)
        report = run_research(config, client, trace=trace, logger=logger)
        out_dir.mkdir(parents=True, exist_ok=True)
        report_path = out_dir / report.filename
        report_path.write_text(report.markdown, encoding="utf-8")
        stem = report_path.stem
        if args.raw_json:
            (out_dir / f"{stem}.json").write_text(
                json.dumps(report.to_record(), ensure_ascii=False, indent=2), encoding="utf-8"
            )
    except BuzzbriefError as exc:
        logger.log(f"research failed: {exc}")
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        logger.log(f"write failed: {exc}")
        print(f"error: could not write report: {exc}", file=sys.stderr)
        return 1
    finally:
        _write_trace(trace, out_dir, stem, logger)

    print(f"Wrote report: {report_path}")
    if args.echo:
        print(report.markdown)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
