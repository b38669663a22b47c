from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class TemplateDescriptor:
    key: str
    name: str
    focus: str
    structure: str


DEFAULT_TEMPLATE = "general"

TEMPLATES: dict[str, TemplateDescriptor] = {
    "general": TemplateDescriptor(
        key="general",
        name="General Overview",
        focus="Balance between technical details and market trends.",
        structure="Overview -> Key Features -> Pros/Cons -> Use Cases",
    ),
    "tutorial": TemplateDescriptor(
        key="tutorial",
        name="Technical Tutorial",
        focus="Implementation details, code snippets, and common pitfalls (SOP style).",
        structure="Prerequisites -> Step-by-Step Implementation -> Gotchas -> Best Practices",
    ),
    "trend": TemplateDescriptor(
        key="trend",
        name="Trend Analysis",
        focus="Timeline of events, community reactions, and future outlook.",
        structure="Timeline -> Controversy Points -> Key Players' Opinions -> Future Prediction",
    ),
    "opinion": TemplateDescriptor(
        key="opinion",
        name="Thought Leadership",
        focus="Unique angle, strong claim, and 'What if' scenarios.",
        structure="Status Quo -> The Problem (Claim) -> Analysis (Logic) -> Proposal",
    ),
}


def resolve_template_key(key: Optional[str]) -> str:
    token = (key or "").strip().lower()
    return token if token in TEMPLATES else DEFAULT_TEMPLATE


def resolve_template(key: Optional[str]) -> TemplateDescriptor:
    """Unknown keys get the general template; a template is only prompt guidance."""
    return TEMPLATES[resolve_template_key(key)]


def list_templates() -> list[str]:
    return list(TEMPLATES)
