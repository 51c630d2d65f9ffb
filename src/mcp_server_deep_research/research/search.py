"""Web search providers.

Every provider exposes ``search(query) -> list[SearchResult]`` and raises
``SearchProviderError`` on failure.
"""

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import httpx

from ..exceptions import SearchProviderError
from .models import SearchResult

if TYPE_CHECKING:
    from browser_use import BrowserProfile
    from browser_use.llm.base import BaseChatModel

logger = logging.getLogger(__name__)

TAVILY_API_BASE_URL = "https://api.tavily.com"
TAVILY_SEARCH_ENDPOINT = "/search"


class SearchProvider(ABC):
    """A ranked web search backend."""

    name: str = "search"

    @abstractmethod
    async def search(self, query: str) -> list[SearchResult]:
        """Search the web for ``query``."""

    def _check_query(self, query: str) -> str:
        cleaned = (query or "").strip()
        if not cleaned:
            raise SearchProviderError("Query parameter is required", provider=self.name)
        return cleaned


class TavilySearchProvider(SearchProvider):
    """Search provider backed by the Tavily Search API.

    Example usage:
        provider = TavilySearchProvider(api_key="tvly-...")
        results = await provider.search("photosynthesis light reactions")
    """

    name = "tavily"

    def __init__(
        self,
        api_key: str,
        max_results: int = 5,
        search_depth: str = "basic",
        timeout: float = 30.0,
        base_url: str = TAVILY_API_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not api_key:
            raise SearchProviderError("Tavily API key required. Set TAVILY_API_KEY or MCP_SEARCH_API_KEY.", provider=self.name)
        self._api_key = api_key
        self._max_results = min(max_results, 20)
        self._search_depth = search_depth
        self._timeout = timeout
        self._base_url = base_url.rstrip("/")
        self._transport = transport

    async def search(self, query: str) -> list[SearchResult]:
        query = self._check_query(query)
        payload: dict[str, Any] = {
            "api_key": self._api_key,
            "query": query,
            "search_depth": self._search_depth,
            "include_answer": True,
            "max_results": self._max_results,
        }
        data = await self._post(payload)
        results = self._parse_response(data)
        logger.debug(f"Tavily returned {len(results)} results for '{query[:80]}'")
        return results

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{TAVILY_SEARCH_ENDPOINT}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise SearchProviderError(f"Search request timed out after {self._timeout}s", provider=self.name) from e
        except httpx.HTTPError as e:
            raise SearchProviderError(f"Search request failed: {e}", provider=self.name) from e

        if response.status_code == 401:
            raise SearchProviderError("Invalid API key", provider=self.name, status_code=401)
        if response.status_code == 429:
            raise SearchProviderError("Rate limit exceeded", provider=self.name, status_code=429)
        if response.status_code >= 400:
            raise SearchProviderError(
                f"API error {response.status_code}: {_extract_error_message(response)}",
                provider=self.name,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise SearchProviderError("Search API returned invalid JSON", provider=self.name) from e

    @staticmethod
    def _parse_response(data: dict[str, Any]) -> list[SearchResult]:
        results = []
        for item in data.get("results", []) or []:
            url = item.get("url")
            if not url:
                continue
            results.append(SearchResult(title=item.get("title") or url, url=url, snippet=item.get("content") or ""))
        return results


def _extract_error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        detail = data.get("detail") or data.get("error") or data.get("message")
        if isinstance(detail, dict):
            detail = detail.get("error") or str(detail)
        if detail:
            return str(detail)
    return str(data)[:200]


class BrowserSearchProvider(SearchProvider):
    """Search provider that lets a browser-use agent search and read pages.

    Slower than an API search, but needs no search API key.
    """

    name = "browser"

    def __init__(self, llm: "BaseChatModel", browser_profile: "BrowserProfile", max_steps: int = 15, max_results: int = 5):
        self.llm = llm
        self.browser_profile = browser_profile
        self.max_steps = max_steps
        self.max_results = max_results

    async def search(self, query: str) -> list[SearchResult]:
        from browser_use import Agent

        query = self._check_query(query)
        task = f"""Research task: {query}

Instructions:
1. Search the web for information about this topic
2. Open and read up to {self.max_results} relevant pages
3. Extract key information and facts from each page

Provide a concise summary of what you found. End your response with: DONE"""

        try:
            agent = Agent(task=task, llm=self.llm, browser_profile=self.browser_profile, max_steps=self.max_steps)
            history = await agent.run()
        except Exception as e:
            raise SearchProviderError(f"Browser search failed: {e}", provider=self.name) from e

        summary = history.final_result() or ""
        return self._results_from_history(history, summary)

    def _results_from_history(self, history, summary: str) -> list[SearchResult]:
        results: list[SearchResult] = []
        seen: set[str] = set()

        for step in getattr(history, "history", None) or []:
            state = getattr(step, "state", None)
            url = getattr(state, "url", None)
            if not url or not url.startswith("http") or url in seen:
                continue
            # Search engine result pages are navigation, not sources.
            if any(engine in url for engine in ("google.com/search", "bing.com/search", "duckduckgo.com/?")):
                continue
            seen.add(url)
            title = getattr(state, "title", None) or url
            results.append(SearchResult(title=title, url=url, snippet=summary[:1000]))

        return results[: self.max_results]
