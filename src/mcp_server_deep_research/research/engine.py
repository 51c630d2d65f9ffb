"""Recursive research engine.

One research node expands its query into sub-queries, searches and extracts
learnings for every sub-query concurrently, then recurses on the follow-up
queries with half the breadth until ``max_depth`` is reached. Learnings are
threaded through the tree as immutable tuples and merged by identity at every
return point, so the final list is the deduplicated union of everything any
node found, ordered by tree traversal (inherited, branches, children).
"""

import asyncio
import logging
from collections.abc import Coroutine, Iterable, Sequence
from typing import Any, Protocol, TypeVar

from ..exceptions import ResearchNodeError
from .events import (
    ROOT_NODE_ID,
    Complete,
    Error,
    GeneratedQuery,
    GeneratingQuery,
    NodeComplete,
    ProcessingSearchResult,
    ProgressCallback,
    ResearchStep,
    SearchComplete,
    Searching,
    child_node_id,
    parent_node_id,
)
from .language import LanguageDetector, detect_language
from .learnings import coerce_learnings, merge_learnings
from .models import Learning, ProcessedSearchResult, ResearchResult, SearchQuery, SearchResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BREADTH = 2
DEFAULT_MAX_DEPTH = 2
DEFAULT_CONCURRENCY_LIMIT = 3


class ResearchGateway(Protocol):
    """The language model operations the engine depends on."""

    async def expand_query(
        self,
        query: str,
        num_queries: int,
        learnings: Sequence[Learning] = (),
        language: str = "en",
        search_language: str | None = None,
    ) -> list[SearchQuery]: ...

    async def extract_learnings(self, query: str, results: list[SearchResult], language: str = "en") -> ProcessedSearchResult: ...


class WebSearch(Protocol):
    async def search(self, query: str) -> list[SearchResult]: ...


class ResearchEngine:
    """Processes research nodes for a single run.

    Args:
        gateway: Query expansion and learning extraction.
        search_provider: Web search backend.
        on_progress: Observer called synchronously with every progress event.
        max_depth: Nodes at this depth or deeper do no work.
        concurrency_limit: Maximum child nodes of one parent in flight at once.
        language: Language the model answers in.
        search_language: Language of generated search queries.
        tolerate_branch_failures: Report a failed branch or child and continue
            without its learnings instead of aborting the run.
    """

    def __init__(
        self,
        gateway: ResearchGateway,
        search_provider: WebSearch,
        on_progress: ProgressCallback | None = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
        concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
        language: str = "en",
        search_language: str | None = None,
        tolerate_branch_failures: bool = False,
    ):
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        self.gateway = gateway
        self.search_provider = search_provider
        self.on_progress = on_progress
        self.max_depth = max_depth
        self.concurrency_limit = concurrency_limit
        self.language = language
        self.search_language = search_language or language
        self.tolerate_branch_failures = tolerate_branch_failures

    def emit(self, step: ResearchStep) -> None:
        """Deliver an event to the observer; observer failures never affect the run."""
        if self.on_progress is None:
            return
        try:
            self.on_progress(step)
        except Exception as e:
            logger.warning(f"Progress observer failed on {step.type}: {e}")

    async def process_node(
        self,
        query: str,
        depth: int,
        breadth: int,
        learnings: Iterable[Learning] = (),
        node_id: str = ROOT_NODE_ID,
    ) -> tuple[Learning, ...]:
        """Research ``query`` and everything below it, returning the subtree's learnings.

        At the depth limit ``learnings`` come back unchanged. Otherwise the
        returned tuple starts with ``learnings`` and holds no two learnings
        with the same ``(url, learning)`` identity.
        """
        if depth >= self.max_depth:
            return tuple(learnings)

        inherited = merge_learnings(tuple(learnings))
        if breadth < 1:
            logger.debug(f"Node {node_id} has no breadth left, pruning")
            return inherited

        queries = await self._expand(query, breadth, inherited, node_id)
        if not queries:
            logger.info(f"Node {node_id} produced no sub-queries")
            return inherited

        branch_ids = [child_node_id(node_id, i) for i in range(len(queries))]
        for search_query, branch_id in zip(queries, branch_ids, strict=True):
            self.emit(GeneratedQuery(node_id=branch_id, query=search_query.query, result=search_query))

        processed = await self._gather(self._run_branch(q, branch_id) for q, branch_id in zip(queries, branch_ids, strict=True))
        accumulated = merge_learnings(inherited, *(p.learnings for p in processed if p is not None))

        if depth + 1 >= self.max_depth:
            return accumulated

        children = [
            (follow_up.query, child_node_id(branch_id, j))
            for branch_id, result in zip(branch_ids, processed, strict=True)
            if result is not None
            for j, follow_up in enumerate(result.follow_up_queries)
        ]
        child_breadth = breadth // 2

        for start in range(0, len(children), self.concurrency_limit):
            batch = children[start : start + self.concurrency_limit]
            snapshot = accumulated
            subtree_learnings = await self._gather(
                self.process_node(child_query, depth + 1, child_breadth, snapshot, child_id) for child_query, child_id in batch
            )
            accumulated = merge_learnings(accumulated, *(r for r in subtree_learnings if r is not None))

        logger.debug(f"Node {node_id} finished with {len(accumulated)} learnings")
        return accumulated

    async def _expand(self, query: str, breadth: int, learnings: tuple[Learning, ...], node_id: str) -> list[SearchQuery]:
        self.emit(GeneratingQuery(node_id=node_id, query=query, parent_node_id=parent_node_id(node_id)))
        try:
            queries = await self.gateway.expand_query(
                query,
                breadth,
                learnings,
                language=self.language,
                search_language=self.search_language,
            )
        except Exception as e:
            raise self._report_failure(node_id, e) from e
        return list(queries)[:breadth]

    async def _run_branch(self, search_query: SearchQuery, branch_id: str) -> ProcessedSearchResult:
        query = search_query.query
        self.emit(Searching(node_id=branch_id, query=query))
        try:
            results = await self.search_provider.search(query)
            self.emit(SearchComplete(node_id=branch_id, results=results))

            self.emit(ProcessingSearchResult(node_id=branch_id, query=query))
            processed = await self.gateway.extract_learnings(query, results, language=self.language)
        except Exception as e:
            raise self._report_failure(branch_id, e) from e

        self.emit(NodeComplete(node_id=branch_id, result=processed))
        return processed

    def _report_failure(self, node_id: str, error: Exception) -> ResearchNodeError:
        message = str(error) or error.__class__.__name__
        logger.error(f"Research node {node_id} failed: {message}")
        self.emit(Error(node_id=node_id, message=message))
        return ResearchNodeError(node_id, message)

    async def _gather(self, coros: Iterable[Coroutine[Any, Any, T]]) -> list[T | None]:
        """Run coroutines concurrently in a task group, preserving input order.

        A failure cancels the remaining siblings and is re-raised unwrapped,
        unless branch failures are tolerated, in which case the failed slot is None.
        """
        pending = [self._contain(coro) if self.tolerate_branch_failures else coro for coro in coros]
        try:
            async with asyncio.TaskGroup() as tg:
                tasks = [tg.create_task(coro) for coro in pending]
        except BaseExceptionGroup as group:
            raise unwrap_exception_group(group)
        return [task.result() for task in tasks]

    async def _contain(self, coro: Coroutine[Any, Any, T]) -> T | None:
        try:
            return await coro
        except ResearchNodeError as e:
            logger.warning(f"Continuing without node {e.node_id}")
            return None


def unwrap_exception_group(group: BaseExceptionGroup) -> BaseException:
    """First leaf exception of a (possibly nested) exception group."""
    error: BaseException = group
    while isinstance(error, BaseExceptionGroup):
        error = error.exceptions[0]
    return error


async def deep_research(
    query: str,
    gateway: ResearchGateway,
    search_provider: WebSearch,
    breadth: int = DEFAULT_BREADTH,
    max_depth: int = DEFAULT_MAX_DEPTH,
    on_progress: ProgressCallback | None = None,
    language: str | None = None,
    search_language: str | None = None,
    learnings: Iterable[Learning | str | dict] | None = None,
    concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
    tolerate_branch_failures: bool = False,
    language_detector: LanguageDetector | None = None,
) -> ResearchResult:
    """Run a full research tree for ``query``.

    Emits exactly one ``complete`` event, always the last event of the run.
    On failure an ``error`` event is emitted (once per failure) and the
    exception is re-raised; nothing is retried here.

    Args:
        query: The user's research question.
        gateway: Query expansion and learning extraction.
        search_provider: Web search backend.
        breadth: Sub-queries at the root; halved at every level.
        max_depth: Number of tree levels that do work. 0 returns ``learnings`` unchanged.
        on_progress: Observer for progress events.
        language: Response language code; detected from ``query`` when omitted.
        search_language: Search query language; defaults to ``language``.
        learnings: Learnings from an earlier run to continue from.
        concurrency_limit: Child nodes of one parent in flight at once.
        tolerate_branch_failures: Keep going when a branch fails.
        language_detector: Strategy used when ``language`` is omitted.

    Returns:
        ResearchResult with the deduplicated learnings and the language used.
    """
    resolved_language = language or detect_language(query, language_detector)
    engine = ResearchEngine(
        gateway,
        search_provider,
        on_progress=on_progress,
        max_depth=max_depth,
        concurrency_limit=concurrency_limit,
        language=resolved_language,
        search_language=search_language,
        tolerate_branch_failures=tolerate_branch_failures,
    )

    logger.info(f"Starting deep research (breadth={breadth}, max_depth={max_depth}, language={resolved_language}): {query[:100]}")
    try:
        found = await engine.process_node(query, 0, breadth, coerce_learnings(learnings), ROOT_NODE_ID)
    except ResearchNodeError:
        raise
    except Exception as e:
        engine.emit(Error(node_id=ROOT_NODE_ID, message=str(e) or e.__class__.__name__))
        raise

    result = ResearchResult(learnings=list(found), language=resolved_language)
    engine.emit(Complete(learnings=result.learnings, language=resolved_language))
    logger.info(f"Deep research complete with {len(result.learnings)} learnings")
    return result
