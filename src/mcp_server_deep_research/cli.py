"""CLI interface for the deep research MCP server."""

import asyncio

import typer

from .config import settings
from .exceptions import DeepResearchError, LLMProviderError, SearchProviderError
from .observability.logging import configure_stderr_logging
from .providers import get_gateway, get_llm_from_settings, get_search_provider

app = typer.Typer(help="Recursive deep research CLI powered by browser-use LLMs")


@app.command()
def research(
    query: str = typer.Argument(..., help="Question to research"),
    breadth: int = typer.Option(None, "--breadth", "-b", min=1, help="Search queries at the top level"),
    depth: int = typer.Option(None, "--depth", "-d", min=0, help="Recursion depth"),
    language: str = typer.Option(None, "--language", "-l", help="Report language code (auto-detected when omitted)"),
    search_language: str = typer.Option(None, "--search-language", help="Language for search queries"),
    save_to: str = typer.Option(None, "--save", "-s", help="File path to save the report"),
    feedback: bool = typer.Option(False, "--feedback", "-f", help="Answer clarifying questions before researching"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log research progress to stderr"),
) -> None:
    """Research a question recursively and print a cited markdown report."""
    from .research.machine import ResearchMachine, generate_feedback

    if verbose:
        configure_stderr_logging("INFO")

    async def _research() -> str:
        try:
            llm = get_llm_from_settings(settings)
            search_provider = get_search_provider(settings, llm=llm)
        except (LLMProviderError, SearchProviderError) as e:
            return f"Error: {e}"
        gateway = get_gateway(settings, llm)
        research_language = language or settings.research.language

        questions: list[str] = []
        answers: list[str] = []
        if feedback:
            questions = await generate_feedback(
                query,
                gateway,
                language=research_language,
                num_questions=settings.research.num_feedback_questions,
            )
            answers = [typer.prompt(question) for question in questions]

        machine = ResearchMachine(
            query=query,
            gateway=gateway,
            search_provider=search_provider,
            breadth=breadth if breadth is not None else settings.research.breadth,
            max_depth=depth if depth is not None else settings.research.max_depth,
            concurrency_limit=settings.research.concurrency_limit,
            language=research_language,
            search_language=search_language or settings.research.search_language,
            questions=questions,
            answers=answers,
            tolerate_branch_failures=settings.research.tolerate_branch_failures,
            save_path=save_to,
        )
        return await machine.run()

    try:
        result = asyncio.run(_research())
    except DeepResearchError as e:
        typer.echo(f"Research failed: {e}", err=True)
        raise typer.Exit(code=1) from e
    print(result)


@app.command()
def feedback(
    query: str = typer.Argument(..., help="Question to clarify"),
    num_questions: int = typer.Option(None, "--num-questions", "-n", min=1, help="Maximum number of questions"),
    language: str = typer.Option(None, "--language", "-l", help="Question language code"),
) -> None:
    """Print clarifying questions for a research query."""
    from .research.machine import generate_feedback

    async def _feedback() -> list[str]:
        llm = get_llm_from_settings(settings)
        return await generate_feedback(
            query,
            get_gateway(settings, llm),
            language=language or settings.research.language,
            num_questions=num_questions or settings.research.num_feedback_questions,
        )

    try:
        questions = asyncio.run(_feedback())
    except DeepResearchError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e

    if not questions:
        print("The query is clear; no clarifying questions.")
    for i, question in enumerate(questions, start=1):
        print(f"{i}. {question}")


@app.command()
def config(
    save: bool = typer.Option(False, "--save", help="Write the current settings to the config file"),
) -> None:
    """Show current configuration."""
    print(f"LLM Provider: {settings.llm.provider}")
    print(f"Model: {settings.llm.model_name}")
    print(f"Base URL: {settings.llm.base_url or '(default)'}")
    print(f"Search Provider: {settings.search.provider}")
    print(f"Search API Key: {'(set)' if settings.search.get_api_key() else '(missing)'}")
    print(f"Breadth: {settings.research.breadth}")
    print(f"Max Depth: {settings.research.max_depth}")
    print(f"Concurrency Limit: {settings.research.concurrency_limit}")
    print(f"Language: {settings.research.language or '(auto)'}")
    print(f"Tolerate Branch Failures: {settings.research.tolerate_branch_failures}")
    print(f"Headless: {settings.browser.headless}")
    print(f"Proxy: {settings.browser.proxy_server or '(none)'}")
    if save:
        path = settings.save()
        print(f"Saved to {path}")


if __name__ == "__main__":
    app()
