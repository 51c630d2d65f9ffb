"""MCP server for recursive deep research."""

from .config import settings
from .exceptions import (
    DeepResearchError,
    LLMProviderError,
    ModelOutputError,
    ResearchNodeError,
    SearchProviderError,
)
from .research import ResearchResult, deep_research, write_final_report

__all__ = [
    "settings",
    "deep_research",
    "write_final_report",
    "ResearchResult",
    "DeepResearchError",
    "LLMProviderError",
    "ModelOutputError",
    "SearchProviderError",
    "ResearchNodeError",
]
