"""Recursive deep research: query expansion, search, learning extraction and reporting."""

from .engine import ResearchEngine, deep_research
from .events import ResearchStep, describe_step
from .gateway import LanguageModelGateway
from .language import ScriptRangeDetector, detect_language, get_language_instructions
from .learnings import merge_learnings
from .machine import ResearchMachine, generate_feedback
from .models import Learning, ProcessedSearchResult, ResearchResult, SearchQuery, SearchResult
from .report import write_final_report
from .search import BrowserSearchProvider, SearchProvider, TavilySearchProvider

__all__ = [
    "BrowserSearchProvider",
    "LanguageModelGateway",
    "Learning",
    "ProcessedSearchResult",
    "ResearchEngine",
    "ResearchMachine",
    "ResearchResult",
    "ResearchStep",
    "ScriptRangeDetector",
    "SearchProvider",
    "SearchQuery",
    "SearchResult",
    "TavilySearchProvider",
    "deep_research",
    "describe_step",
    "detect_language",
    "generate_feedback",
    "get_language_instructions",
    "merge_learnings",
    "write_final_report",
]
