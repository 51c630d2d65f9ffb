"""Progress events emitted while a research tree is processed.

Every event except ``complete`` carries the path-encoded id of the node it
belongs to: the root is ``"0"``, the i-th sub-query of node ``N`` is
``N-i`` and the j-th follow-up query of that branch is ``N-i-j``.
"""

from collections.abc import Callable
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .models import Learning, ProcessedSearchResult, SearchQuery, SearchResult

ROOT_NODE_ID = "0"


def child_node_id(parent_node_id: str, index: int) -> str:
    """Id of the ``index``-th child of ``parent_node_id``."""
    return f"{parent_node_id}-{index}"


def parent_node_id(node_id: str) -> str | None:
    """Id of the parent node, or None for the root."""
    if "-" not in node_id:
        return None
    return node_id.rsplit("-", 1)[0]


def node_level(node_id: str) -> int:
    """Distance of ``node_id`` from the root in the event tree."""
    return node_id.count("-")


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class GeneratingQuery(_Event):
    type: Literal["generating_query"] = "generating_query"
    node_id: str
    query: str
    parent_node_id: str | None = None


class GeneratedQuery(_Event):
    type: Literal["generated_query"] = "generated_query"
    node_id: str
    query: str
    result: SearchQuery


class Searching(_Event):
    type: Literal["searching"] = "searching"
    node_id: str
    query: str


class SearchComplete(_Event):
    type: Literal["search_complete"] = "search_complete"
    node_id: str
    results: list[SearchResult]


class ProcessingSearchResult(_Event):
    type: Literal["processing_search_result"] = "processing_search_result"
    node_id: str
    query: str


class NodeComplete(_Event):
    type: Literal["node_complete"] = "node_complete"
    node_id: str
    result: ProcessedSearchResult | None = None


class Error(_Event):
    type: Literal["error"] = "error"
    node_id: str
    message: str


class Complete(_Event):
    type: Literal["complete"] = "complete"
    learnings: list[Learning]
    language: str | None = None


ResearchStep = Annotated[
    Union[
        GeneratingQuery,
        GeneratedQuery,
        Searching,
        SearchComplete,
        ProcessingSearchResult,
        NodeComplete,
        Error,
        Complete,
    ],
    Field(discriminator="type"),
]

ProgressCallback = Callable[[ResearchStep], None]

research_step_adapter: TypeAdapter[ResearchStep] = TypeAdapter(ResearchStep)


def describe_step(step: ResearchStep) -> str:
    """One-line human readable summary of a progress event."""
    match step:
        case GeneratingQuery(node_id=node_id, query=query):
            return f"[{node_id}] Generating queries for: {query}"
        case GeneratedQuery(node_id=node_id, query=query):
            return f"[{node_id}] Generated query: {query}"
        case Searching(node_id=node_id, query=query):
            return f"[{node_id}] Searching: {query}"
        case SearchComplete(node_id=node_id, results=results):
            return f"[{node_id}] Found {len(results)} results"
        case ProcessingSearchResult(node_id=node_id, query=query):
            return f"[{node_id}] Extracting learnings for: {query}"
        case NodeComplete(node_id=node_id, result=result):
            count = len(result.learnings) if result else 0
            return f"[{node_id}] Extracted {count} learnings"
        case Error(node_id=node_id, message=message):
            return f"[{node_id}] Error: {message}"
        case Complete(learnings=learnings):
            return f"Research complete with {len(learnings)} learnings"
    raise ValueError(f"Unknown research step: {step!r}")
