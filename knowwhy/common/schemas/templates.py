"""
Payload Text Templates

Renders DecisionBrief to Markdown for indexing. payload_text is what the
semantic search index embeds for a brief.
"""

from typing import TYPE_CHECKING

from ..rubric import format_confidence

if TYPE_CHECKING:
    from .decision_brief import DecisionBrief


PAYLOAD_TEMPLATE = """# Decision Brief: {title}
ID: {id}
Status: {status} | Confidence: {confidence} ({tier})

## Problem
{problem}

## Options Considered
{options}

## Rationale
{rationale}

## Participants
{participants}

## Sources
{sources}

## Tags
{tags}
"""


def _format_list(items: list) -> str:
    if not items:
        return "- (none documented)"
    return "\n".join(f"- {item}" for item in items)


def _format_sources(brief: "DecisionBrief") -> str:
    if not brief.source_references:
        return "- (no sources)"
    lines = []
    for ref in brief.source_references:
        line = f"- {ref.format()} [{ref.external_id}]"
        if ref.excerpt:
            line += f'\n  > "{ref.excerpt}"'
        lines.append(line)
    return "\n".join(lines)


def render_payload_text(brief: "DecisionBrief") -> str:
    """Render a brief to its Markdown payload."""
    confidence = format_confidence(brief.confidence)
    return PAYLOAD_TEMPLATE.format(
        title=brief.title or "(untitled)",
        id=brief.id,
        status=brief.status.value,
        confidence=confidence["percentage"],
        tier=confidence["tier"],
        problem=brief.problem or "(not documented)",
        options=_format_list(brief.options_considered),
        rationale=brief.rationale or "(not documented)",
        participants=_format_list(brief.participants),
        sources=_format_sources(brief),
        tags=", ".join(brief.tags) if brief.tags else "(none)",
    ).strip()


def render_display_text(brief: "DecisionBrief") -> str:
    """Short form for listings: title, status and first source."""
    first = brief.source_references[0].format() if brief.source_references else "no sources"
    return f"{brief.title} [{brief.status.value}, {format_confidence(brief.confidence)['percentage']}] ({first})"
