"""Factories for the LLM, the web search provider and the research gateway."""

import logging
from typing import TYPE_CHECKING

from browser_use import BrowserProfile, ChatAnthropic, ChatAzureOpenAI, ChatGoogle, ChatGroq, ChatOllama, ChatOpenAI
from browser_use.browser.profile import ProxySettings

# These are available via direct import but not in __all__
from browser_use.llm.aws.chat_bedrock import ChatAWSBedrock
from browser_use.llm.deepseek.chat import ChatDeepSeek
from browser_use.llm.openrouter.chat import ChatOpenRouter

from .config import NO_KEY_PROVIDERS, STANDARD_ENV_VAR_NAMES, AppSettings
from .exceptions import LLMProviderError, SearchProviderError
from .research.gateway import LanguageModelGateway
from .research.search import BrowserSearchProvider, SearchProvider, TavilySearchProvider

if TYPE_CHECKING:
    from browser_use.llm.base import BaseChatModel

logger = logging.getLogger(__name__)


def get_llm(
    provider: str,
    model: str,
    api_key: str | None = None,
    base_url: str | None = None,
    **kwargs,
) -> "BaseChatModel":
    """Create LLM instance using browser-use native providers.

    Supported providers: openai, anthropic, google, azure_openai, groq,
    deepseek, openrouter, ollama (no API key) and bedrock (AWS credentials).

    Args:
        provider: LLM provider name
        model: Model name/identifier
        api_key: API key for the provider (not required for ollama/bedrock)
        base_url: Custom base URL for OpenAI-compatible APIs
        **kwargs: Provider-specific options:
            - azure_endpoint: Azure OpenAI endpoint URL
            - azure_api_version: Azure OpenAI API version (default: 2024-02-01)
            - aws_region: AWS region for Bedrock

    Returns:
        Configured BaseChatModel instance

    Raises:
        LLMProviderError: If provider is unsupported or API key is missing
    """
    requires_api_key = provider not in NO_KEY_PROVIDERS and not base_url
    if requires_api_key and not api_key:
        standard_var = STANDARD_ENV_VAR_NAMES.get(provider, "API key")
        raise LLMProviderError(f"API key required for provider '{provider}'. Set {standard_var} or MCP_LLM_API_KEY environment variable.")

    try:
        match provider:
            case "openai":
                return ChatOpenAI(model=model, api_key=api_key, base_url=base_url)

            case "anthropic":
                return ChatAnthropic(model=model, api_key=api_key)

            case "google":
                return ChatGoogle(model=model, api_key=api_key)

            case "azure_openai":
                azure_endpoint = kwargs.get("azure_endpoint")
                if not azure_endpoint:
                    raise LLMProviderError("Azure OpenAI requires AZURE_OPENAI_ENDPOINT or MCP_LLM_AZURE_ENDPOINT to be set.")
                return ChatAzureOpenAI(
                    model=model,
                    api_key=api_key,
                    azure_endpoint=azure_endpoint,
                    api_version=kwargs.get("azure_api_version") or "2024-02-01",
                )

            case "groq":
                return ChatGroq(model=model, api_key=api_key)

            case "deepseek":
                return ChatDeepSeek(model=model, api_key=api_key)

            case "openrouter":
                return ChatOpenRouter(model=model, api_key=api_key)

            case "ollama":
                return ChatOllama(model=model, host=base_url)

            case "bedrock":
                return ChatAWSBedrock(model=model, aws_region=kwargs.get("aws_region"))

            case _:
                raise LLMProviderError(f"Unsupported provider: {provider}")

    except LLMProviderError:
        raise
    except Exception as e:
        raise LLMProviderError(f"Failed to initialize {provider} LLM: {e}") from e


def get_llm_from_settings(app_settings: AppSettings) -> "BaseChatModel":
    """Build the configured LLM."""
    llm_settings = app_settings.llm
    return get_llm(
        provider=llm_settings.provider,
        model=llm_settings.model_name,
        api_key=llm_settings.get_api_key_for_provider(),
        base_url=llm_settings.base_url,
        azure_endpoint=llm_settings.azure_endpoint,
        azure_api_version=llm_settings.azure_api_version,
        aws_region=llm_settings.aws_region,
    )


def get_browser_profile(app_settings: AppSettings) -> BrowserProfile:
    proxy = None
    if app_settings.browser.proxy_server:
        proxy = ProxySettings(server=app_settings.browser.proxy_server, bypass=app_settings.browser.proxy_bypass)
    return BrowserProfile(headless=app_settings.browser.headless, proxy=proxy)


def get_search_provider(app_settings: AppSettings, llm: "BaseChatModel | None" = None) -> SearchProvider:
    """Create the configured web search provider.

    Raises:
        SearchProviderError: If the provider is misconfigured
    """
    search_settings = app_settings.search
    match search_settings.provider:
        case "tavily":
            return TavilySearchProvider(
                api_key=search_settings.get_api_key() or "",
                max_results=search_settings.max_results,
                search_depth=search_settings.search_depth,
                timeout=search_settings.timeout,
            )

        case "browser":
            if llm is None:
                raise SearchProviderError("Browser search needs an LLM to drive the browser agent", provider="browser")
            return BrowserSearchProvider(
                llm=llm,
                browser_profile=get_browser_profile(app_settings),
                max_steps=app_settings.browser.max_steps,
                max_results=search_settings.max_results,
            )

        case _:
            raise SearchProviderError(f"Unsupported search provider: {search_settings.provider}")


def get_gateway(app_settings: AppSettings, llm: "BaseChatModel") -> LanguageModelGateway:
    return LanguageModelGateway(
        llm,
        num_learnings=app_settings.research.num_learnings,
        num_follow_up_questions=app_settings.research.num_follow_up_questions,
    )
