"""Custom exceptions for the MCP deep research server."""


class DeepResearchError(Exception):
    """Base exception for deep research errors."""

    pass


class LLMProviderError(DeepResearchError):
    """Raised when LLM provider configuration or invocation fails."""

    pass


class ModelOutputError(DeepResearchError):
    """Raised when the model returns output that cannot be parsed against its schema."""

    def __init__(self, message: str, raw_output: str = ""):
        super().__init__(message)
        self.raw_output = raw_output


class SearchProviderError(DeepResearchError):
    """Raised when a web search fails."""

    def __init__(self, message: str, provider: str = "search", status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ResearchNodeError(DeepResearchError):
    """Raised when a research node fails. The failure has already been reported as an error event."""

    def __init__(self, node_id: str, message: str):
        super().__init__(message)
        self.node_id = node_id
