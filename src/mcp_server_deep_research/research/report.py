"""Final report writing and citation post-processing.

Citation ``[k]`` (or ``[k](url)``) refers to ``learnings[k - 1]``. Markers outside ``1..N`` are
removed and a Sources section is appended when the model did not write one.
"""

import logging
import re
from collections.abc import Sequence
from typing import Protocol

from .models import Learning

logger = logging.getLogger(__name__)

# [N] or the link form [N](url), removed whole when N is out of range
CITATION_RE = re.compile(r"\[(\d+)\](?:\([^)]*\))?")
SOURCES_HEADING_RE = re.compile(r"^#{1,6}\s*(sources|references)\b", re.IGNORECASE | re.MULTILINE)

PREAMBLE_PATTERNS = [
    re.compile(r"^Here is .*?(?=# )", re.IGNORECASE | re.DOTALL),
    re.compile(r"^Below is .*?(?=# )", re.IGNORECASE | re.DOTALL),
    re.compile(r"^I've prepared .*?(?=# )", re.IGNORECASE | re.DOTALL),
    re.compile(r"^This is .*?(?=# )", re.IGNORECASE | re.DOTALL),
    re.compile(r"^The following .*?(?=# )", re.IGNORECASE | re.DOTALL),
]


class ReportWriter(Protocol):
    async def synthesize_report(self, prompt: str, learnings: list[Learning], language: str = "en") -> str: ...


def extract_cited_numbers(report: str) -> set[int]:
    """All citation numbers referenced in the report."""
    return {int(m.group(1)) for m in CITATION_RE.finditer(report)}


def strip_invalid_citations(report: str, num_learnings: int) -> str:
    """Remove citation markers that do not point at a learning."""

    def _replace(match: re.Match[str]) -> str:
        k = int(match.group(1))
        return match.group(0) if 1 <= k <= num_learnings else ""

    cleaned = CITATION_RE.sub(_replace, report)
    if cleaned != report:
        logger.warning("Removed citations outside the learnings range")
    return cleaned


def strip_preamble(report: str) -> str:
    """Drop conversational text before the first heading and make sure there is one."""
    cleaned = report.strip()
    for pattern in PREAMBLE_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = cleaned.strip()
    if not cleaned.startswith("#"):
        cleaned = f"# Research Report\n\n{cleaned}"
    return cleaned


def format_sources(learnings: Sequence[Learning]) -> str:
    """Numbered Sources section; entry ``k`` is ``learnings[k - 1]``."""
    lines = ["## Sources", ""]
    for i, item in enumerate(learnings, start=1):
        label = item.title or item.url or "Unknown source"
        if item.url:
            lines.append(f"[{i}] [{label}]({item.url})")
        else:
            lines.append(f"[{i}] {label}")
    return "\n".join(lines)


def postprocess_report(report: str, learnings: Sequence[Learning]) -> str:
    """Clean a model-written report so every citation resolves to a learning."""
    cleaned = strip_invalid_citations(strip_preamble(report), len(learnings))
    if learnings and not SOURCES_HEADING_RE.search(cleaned):
        cleaned = f"{cleaned.rstrip()}\n\n{format_sources(learnings)}"
    return cleaned.strip() + "\n"


async def write_final_report(prompt: str, learnings: Sequence[Learning], language: str, gateway: ReportWriter) -> str:
    """Synthesize the cited markdown report for a finished research run.

    Args:
        prompt: The research query (including any clarifying answers).
        learnings: Learnings in citation order.
        language: Language code of the report.
        gateway: Anything with ``synthesize_report``.

    Returns:
        Markdown report whose citations all fall within ``1..len(learnings)``.
    """
    learnings = list(learnings)
    if not learnings:
        logger.warning("Writing report without learnings")
    raw = await gateway.synthesize_report(prompt, learnings, language)
    return postprocess_report(raw, learnings)
