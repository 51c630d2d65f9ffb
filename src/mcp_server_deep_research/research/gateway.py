"""Language model gateway for query expansion, learning extraction and report writing.

The gateway is the only component that talks to the LLM. It builds prompts,
strips thinking tags and code fences from completions, validates JSON output
against the expected pydantic model and performs one bounded repair round
when the model returns malformed JSON.
"""

import json
import logging
import re
from typing import TYPE_CHECKING, TypeVar

from pydantic import BaseModel, ValidationError

from ..exceptions import LLMProviderError, ModelOutputError
from .models import FeedbackQuestions, Learning, ProcessedSearchResult, SearchQueries, SearchQuery, SearchResult
from .prompts import (
    get_expand_prompt,
    get_extract_prompt,
    get_feedback_prompt,
    get_repair_prompt,
    get_report_prompt,
    get_system_prompt,
)

if TYPE_CHECKING:
    from browser_use.llm.base import BaseChatModel

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_THINK_RE = re.compile(r"<think>[\s\S]*?</think>")
_JSON_FENCE_RE = re.compile(r"```json\s*([\s\S]*?)```")
_FENCE_RE = re.compile(r"```\s*([\s\S]*?)```")


def strip_thinking(text: str) -> str:
    """Remove <think> blocks, including an unterminated leading one, from a completion."""
    result = str(text)
    if "</think>" in result:
        result = _THINK_RE.sub("", result)
        result = result.split("</think>")[-1]
    return result.strip()


def clean_completion(text: str) -> str:
    """Strip <think> blocks, code fences and runs of blank lines from a completion."""
    result = strip_thinking(text)
    result = _JSON_FENCE_RE.sub(r"\1", result)
    result = _FENCE_RE.sub(r"\1", result)
    result = re.sub(r"\n{3,}", "\n\n", result)
    return result.strip()


def _json_schema(model: type[BaseModel]) -> dict:
    return model.model_json_schema(by_alias=True)


class LanguageModelGateway:
    """Structured research operations backed by a browser-use chat model."""

    def __init__(
        self,
        llm: "BaseChatModel",
        num_learnings: int = 5,
        num_follow_up_questions: int = 1,
        repair_attempts: int = 1,
    ):
        self.llm = llm
        self.num_learnings = num_learnings
        self.num_follow_up_questions = num_follow_up_questions
        self.repair_attempts = repair_attempts

    async def expand_query(
        self,
        query: str,
        num_queries: int,
        learnings: list[Learning] | tuple[Learning, ...] = (),
        language: str = "en",
        search_language: str | None = None,
    ) -> list[SearchQuery]:
        """Generate up to ``num_queries`` search queries for ``query``."""
        prompt = get_expand_prompt(
            query,
            num_queries,
            list(learnings),
            _json_schema(SearchQueries),
            language,
            search_language,
        )
        parsed = await self._generate_structured(prompt, SearchQueries)
        queries = [q for q in parsed.queries if q.query.strip()]
        return queries[:num_queries]

    async def extract_learnings(
        self,
        query: str,
        results: list[SearchResult],
        language: str = "en",
        num_learnings: int | None = None,
        num_follow_up_questions: int | None = None,
    ) -> ProcessedSearchResult:
        """Reduce search results to learnings with sources plus follow-up queries."""
        prompt = get_extract_prompt(
            query,
            results,
            num_learnings if num_learnings is not None else self.num_learnings,
            num_follow_up_questions if num_follow_up_questions is not None else self.num_follow_up_questions,
            _json_schema(ProcessedSearchResult),
            language,
        )
        parsed = await self._generate_structured(prompt, ProcessedSearchResult)
        return ProcessedSearchResult(
            learnings=_attribute_sources(parsed.learnings, results),
            follow_up_queries=[f for f in parsed.follow_up_queries if f.query.strip()],
        )

    async def synthesize_report(self, prompt: str, learnings: list[Learning], language: str = "en") -> str:
        """Write a markdown report citing learnings by their 1-based position."""
        report = await self._generate_text(get_report_prompt(prompt, learnings, language))
        # Code fences are part of the markdown, only thinking is removed
        return strip_thinking(report)

    async def generate_feedback(self, query: str, language: str = "en", num_questions: int = 3) -> list[str]:
        """Ask clarifying questions about the research direction."""
        prompt = get_feedback_prompt(query, num_questions, _json_schema(FeedbackQuestions), language)
        parsed = await self._generate_structured(prompt, FeedbackQuestions)
        return [q.strip() for q in parsed.questions if q.strip()][:num_questions]

    async def _generate_text(self, prompt: str) -> str:
        from browser_use.llm.messages import SystemMessage, UserMessage

        messages = [SystemMessage(content=get_system_prompt()), UserMessage(content=prompt)]
        try:
            response = await self.llm.ainvoke(messages)
        except Exception as e:
            raise LLMProviderError(f"LLM call failed: {e}") from e
        return str(response.completion or "")

    async def _generate_structured(self, prompt: str, model: type[ModelT]) -> ModelT:
        content = await self._generate_text(prompt)
        try:
            return self._parse(content, model)
        except (json.JSONDecodeError, ValidationError) as first_error:
            error: Exception = first_error

        for attempt in range(self.repair_attempts):
            logger.warning(f"Invalid {model.__name__} output, asking the model to repair it (attempt {attempt + 1})")
            repaired = await self._generate_text(get_repair_prompt(clean_completion(content), _json_schema(model)))
            try:
                return self._parse(repaired, model)
            except (json.JSONDecodeError, ValidationError) as e:
                error = e

        raise ModelOutputError(f"Failed to parse {model.__name__} from model output: {error}", raw_output=content[:2000])

    @staticmethod
    def _parse(content: str, model: type[ModelT]) -> ModelT:
        data = json.loads(clean_completion(content))
        # Some models wrap a bare list instead of the expected object.
        if isinstance(data, list) and len(model.model_fields) == 1:
            data = {next(iter(model.model_fields)): data}
        return model.model_validate(data)


def _attribute_sources(learnings: list[Learning], results: list[SearchResult]) -> list[Learning]:
    """Fill in missing urls and titles from the search results the learnings came from."""
    titles = {r.url: r.title for r in results if r.url}
    fallback_url = results[0].url if results else ""

    attributed = []
    for item in learnings:
        url = item.url.strip() or fallback_url
        title = item.title or titles.get(url)
        if url != item.url or title != item.title:
            item = item.model_copy(update={"url": url, "title": title})
        attributed.append(item)
    return attributed
