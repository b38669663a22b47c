from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Protocol

from .config import ResearchConfig
from .llm import ContextResult
from .metadata import ReportMetadata, derive_metadata
from .prompts import (
    STAGE_CRITIQUE,
    STAGE_INITIAL,
    STAGE_SIMPLE,
    STAGE_SYNTHESIS,
    build_prompt,
    reference_dates,
    utc_now,
)
from .search_links import build_search_links
from .trace import RunLogger, StageTrace

PART_1_MARKER = "=== PART 1: INITIAL FINDINGS ==="
PART_2_MARKER = "=== PART 2: CRITICAL FINDINGS / COUNTER POINTS ==="
PREVIEW_CONTEXT = "<output of the previous stage>"

ContextBuilder = Callable[[Mapping[str, ContextResult]], Optional[str]]


class CompletionClientLike(Protocol):
    def fetch_context(self, prompt: str) -> ContextResult: ...


def _no_context(_results: Mapping[str, ContextResult]) -> Optional[str]:
    return None


def _initial_output(results: Mapping[str, ContextResult]) -> Optional[str]:
    return results[STAGE_INITIAL].markdown


def _combined_findings(results: Mapping[str, ContextResult]) -> Optional[str]:
    return (
        f"{PART_1_MARKER}\n{results[STAGE_INITIAL].markdown}\n\n"
        f"{PART_2_MARKER}\n{results[STAGE_CRITIQUE].markdown}"
    )


@dataclass(frozen=True)
class StageSpec:
    name: str
    context_builder: ContextBuilder = _no_context


SIMPLE_PLAN: tuple[StageSpec, ...] = (StageSpec(STAGE_SIMPLE),)
DEEP_PLAN: tuple[StageSpec, ...] = (
    StageSpec(STAGE_INITIAL),
    StageSpec(STAGE_CRITIQUE, _initial_output),
    StageSpec(STAGE_SYNTHESIS, _combined_findings),
)


def plan_for(config: ResearchConfig) -> tuple[StageSpec, ...]:
    return DEEP_PLAN if config.is_deep else SIMPLE_PLAN


@dataclass
class ResearchReport:
    result: ContextResult
    metadata: ReportMetadata
    stages: dict[str, ContextResult] = field(default_factory=dict)
    prompts: dict[str, str] = field(default_factory=dict)
    trace: Optional[StageTrace] = None

    @property
    def markdown(self) -> str:
        return self.result.markdown

    @property
    def filename(self) -> str:
        return self.metadata.filename

    def to_record(self) -> dict[str, Any]:
        return {**self.metadata.to_dict(), "markdown": self.result.markdown, "json": self.result.raw}


def run_research(
    config: ResearchConfig,
    client: CompletionClientLike,
    *,
    clock: Optional[Callable[[], dt.datetime]] = None,
    trace: Optional[StageTrace] = None,
    logger: Optional[RunLogger] = None,
) -> ResearchReport:
    """Run the simple or deep plan and return the finished report.

    The reference instant is read once here and shared by every prompt and
    by the search-link block. Any stage failure propagates; earlier stage
    results are dropped with it.
    """
    now_fn = clock or utc_now
    plan = plan_for(config)
    stage_names = [spec.name for spec in plan]
    if trace is None:
        trace = StageTrace(stage_names, logger=logger)
    reference = now_fn()
    dates = reference_dates(reference)
    if logger is not None:
        logger.log(f"{config.depth} research started: {config.topic} ({config.model})")

    results: dict[str, ContextResult] = {}
    prompts: dict[str, str] = {}
    for idx, spec in enumerate(plan):
        trace.record(spec.name, "running")
        try:
            prompt = build_prompt(spec.name, config, spec.context_builder(results), now=reference)
            prompts[spec.name] = prompt
            results[spec.name] = client.fetch_context(prompt)
        except Exception as exc:
            trace.record(spec.name, "error", str(exc))
            for skipped in plan[idx + 1 :]:
                trace.record(skipped.name, "skipped")
            raise
        trace.record(spec.name, "done", f"{len(results[spec.name].markdown)} chars")

    final = results[plan[-1].name].with_appended("\n\n" + build_search_links(config.topic, dates))
    metadata = derive_metadata(
        topic=config.topic,
        depth=config.depth,
        markdown=final.markdown,
        created=now_fn(),
    )
    if logger is not None:
        logger.log(f"research finished: {metadata.filename}")
    return ResearchReport(result=final, metadata=metadata, stages=results, prompts=prompts, trace=trace)


def preview_prompts(
    config: ResearchConfig,
    *,
    now: Optional[dt.datetime] = None,
) -> list[tuple[str, str]]:
    """Prompts a run would send, with a placeholder where model output would go."""
    reference = now or utc_now()
    previews: list[tuple[str, str]] = []
    for spec in plan_for(config):
        context = None if spec.context_builder is _no_context else PREVIEW_CONTEXT
        previews.append((spec.name, build_prompt(spec.name, config, context, now=reference)))
    return previews
