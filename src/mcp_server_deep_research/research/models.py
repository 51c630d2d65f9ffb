"""Data models for deep research runs."""

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Learning(BaseModel):
    """A single extracted fact with its source.

    Two learnings are the same learning when both ``url`` and ``learning``
    match exactly; ``title`` is informational only.
    """

    model_config = ConfigDict(frozen=True)

    learning: str
    url: str = ""
    title: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        """Identity of the learning."""
        return (self.url, self.learning)


class SearchQuery(BaseModel):
    """A search engine query produced by query expansion."""

    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(description="The SERP query.")
    research_goal: str = Field(
        default="",
        alias="researchGoal",
        description="The research goal this query is trying to achieve. This should be specific and detailed.",
    )


class SearchQueries(BaseModel):
    """Expected model output for query expansion."""

    queries: list[SearchQuery] = Field(default_factory=list, description="A list of search queries.")


class SearchResult(BaseModel):
    """One ranked web search hit."""

    title: str = ""
    url: str
    snippet: str = ""


class FollowUpQuery(BaseModel):
    """A query proposed to continue research at the next depth level."""

    query: str = Field(description="The follow-up search query.")
    reasoning: str = Field(default="", description="Why this follow-up query would be useful for the research.")


class ProcessedSearchResult(BaseModel):
    """Learnings and follow-up queries extracted from one set of search results."""

    model_config = ConfigDict(populate_by_name=True)

    learnings: list[Learning] = Field(
        default_factory=list,
        description="Key learnings from the search results. Each learning should be a complete, detailed sentence citing its source url.",
    )
    follow_up_queries: list[FollowUpQuery] = Field(
        default_factory=list,
        alias="followUpQueries",
        description="Follow-up queries that would help continue the research.",
    )

    @field_validator("learnings", mode="before")
    @classmethod
    def _coerce_plain_learnings(cls, value):
        # Models sometimes answer with bare strings instead of objects.
        if isinstance(value, list):
            return [{"learning": item} if isinstance(item, str) else item for item in value]
        return value


class FeedbackQuestions(BaseModel):
    """Expected model output for clarifying questions."""

    questions: list[str] = Field(
        default_factory=list,
        description="Follow up questions to clarify the research direction.",
    )


class ResearchResult(BaseModel):
    """Final output of a deep research run."""

    learnings: list[Learning] = Field(default_factory=list)
    language: str = "en"
