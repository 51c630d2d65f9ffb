"""Pytest configuration and fixtures for mcp-server-deep-research tests."""

import asyncio
from collections.abc import Callable
from types import SimpleNamespace

import pytest

from mcp_server_deep_research.research.models import (
    FollowUpQuery,
    Learning,
    ProcessedSearchResult,
    SearchQuery,
    SearchResult,
)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "e2e: End-to-end tests requiring real API keys")
    config.addinivalue_line("markers", "integration: Integration tests through the in-memory MCP client")


def slug(text: str) -> str:
    return "-".join(text.lower().split())


class FakeGateway:
    """Scripted stand-in for the language model gateway.

    ``expansions`` maps a query to the sub-queries it expands into (default:
    ``"<query> / q<i>"`` for as many as requested). ``extractions`` maps a
    search query to its ProcessedSearchResult, or to an exception to raise
    (default: one learning per query plus ``follow_ups`` follow-up queries).
    """

    def __init__(
        self,
        expansions: dict[str, list[str] | Exception] | None = None,
        extractions: dict[str, ProcessedSearchResult | Exception] | None = None,
        follow_ups: int = 0,
        report: str = "# Report\n\nFinding [1].",
        questions: list[str] | None = None,
    ):
        self.expansions = expansions or {}
        self.extractions = extractions or {}
        self.follow_ups = follow_ups
        self.report = report
        self.questions = questions or []
        self.expand_calls: list[SimpleNamespace] = []
        self.extract_calls: list[SimpleNamespace] = []
        self.report_calls: list[SimpleNamespace] = []
        self.feedback_calls: list[SimpleNamespace] = []

    async def expand_query(self, query, num_queries, learnings=(), language="en", search_language=None):
        self.expand_calls.append(
            SimpleNamespace(query=query, num_queries=num_queries, learnings=tuple(learnings), language=language, search_language=search_language)
        )
        await asyncio.sleep(0)
        scripted = self.expansions.get(query)
        if isinstance(scripted, Exception):
            raise scripted
        queries = scripted if scripted is not None else [f"{query} / q{i}" for i in range(num_queries)]
        return [SearchQuery(query=q, research_goal=f"Learn about {q}") for q in queries]

    async def extract_learnings(self, query, results, language="en"):
        self.extract_calls.append(SimpleNamespace(query=query, results=results, language=language))
        await asyncio.sleep(0)
        scripted = self.extractions.get(query)
        if isinstance(scripted, Exception):
            raise scripted
        if scripted is not None:
            return scripted
        return ProcessedSearchResult(
            learnings=[Learning(learning=f"Fact about {query}", url=f"https://example.com/{slug(query)}")],
            follow_up_queries=[FollowUpQuery(query=f"{query} / f{j}") for j in range(self.follow_ups)],
        )

    async def synthesize_report(self, prompt, learnings, language="en"):
        self.report_calls.append(SimpleNamespace(prompt=prompt, learnings=list(learnings), language=language))
        return self.report

    async def generate_feedback(self, query, language="en", num_questions=3):
        self.feedback_calls.append(SimpleNamespace(query=query, language=language, num_questions=num_questions))
        return self.questions[:num_questions]


class FakeSearch:
    """Search provider returning one result per query; ``failures`` maps a query to an exception."""

    def __init__(self, failures: dict[str, Exception] | None = None, delay: float = 0):
        self.failures = failures or {}
        self.delay = delay
        self.queries: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def search(self, query):
        self.queries.append(query)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if query in self.failures:
                raise self.failures[query]
            return [SearchResult(title=f"Result for {query}", url=f"https://example.com/{slug(query)}", snippet=f"About {query}")]
        finally:
            self.in_flight -= 1


class EventRecorder:
    """Collects progress events in emission order."""

    def __init__(self):
        self.events = []

    def __call__(self, step):
        self.events.append(step)

    def of_type(self, event_type: str) -> list:
        return [e for e in self.events if e.type == event_type]

    def for_node(self, node_id: str) -> list[str]:
        return [e.type for e in self.events if getattr(e, "node_id", None) == node_id]


@pytest.fixture
def gateway_factory() -> Callable[..., FakeGateway]:
    return FakeGateway


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def search() -> FakeSearch:
    return FakeSearch()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def search_factory() -> Callable[..., FakeSearch]:
    return FakeSearch
