"""MCP server exposing recursive deep research as tools with native background task support."""

import asyncio
import json
import logging
import time
import uuid
from pathlib import Path

from .observability.logging import configure_stderr_logging

# Logging must go to stderr before noisy dependencies are imported; stdout is the stdio protocol stream.
configure_stderr_logging()

# ruff: noqa: E402 - Intentional late imports after logging configuration
from fastmcp import FastMCP
from fastmcp.dependencies import CurrentContext, Progress
from fastmcp.server.context import Context
from fastmcp.server.tasks.config import TaskConfig

from .config import settings
from .exceptions import LLMProviderError, SearchProviderError
from .observability import TaskRecord, TaskStatus, bind_task_context, clear_task_context, get_task_logger, setup_structured_logging
from .observability.store import TaskStore, get_task_store
from .providers import get_gateway, get_llm_from_settings, get_search_provider
from .research.machine import ResearchMachine, generate_feedback
from .utils import save_report, slugify

logger = logging.getLogger("mcp_server_deep_research")
logger.setLevel(getattr(logging, settings.server.logging_level.upper()))

# Global registry of running asyncio tasks for cancellation support
_running_tasks: dict[str, asyncio.Task] = {}


def _get_research_components():
    """Build the gateway and search provider from current settings."""
    llm = get_llm_from_settings(settings)
    gateway = get_gateway(settings, llm)
    search_provider = get_search_provider(settings, llm=llm)
    return gateway, search_provider


async def _find_task(task_store: TaskStore, task_id: str) -> TaskRecord | None:
    """Exact match first, then the most recent task whose id starts with ``task_id``."""
    task = await task_store.get_task(task_id)
    if task:
        return task
    for candidate in await task_store.get_task_history(limit=100):
        if candidate.task_id.startswith(task_id):
            return candidate
    return None


def _default_save_path(query: str) -> Path | None:
    if not settings.research.save_directory:
        return None
    return Path(settings.research.save_directory).expanduser() / f"{slugify(query)}.md"


def serve() -> FastMCP:
    """Create and configure MCP server with background task support."""
    setup_structured_logging(settings.server.logging_level)

    server = FastMCP("mcp_server_deep_research")

    @server.tool(task=TaskConfig(mode="optional"))
    async def run_deep_research(
        query: str,
        breadth: int | None = None,
        depth: int | None = None,
        language: str | None = None,
        search_language: str | None = None,
        questions: list[str] | None = None,
        answers: list[str] | None = None,
        save_to_file: str | None = None,
        ctx: Context = CurrentContext(),
        progress: Progress = Progress(),
    ) -> str:
        """
        Research a question recursively and return a cited markdown report.

        The query is expanded into search queries, every query is searched and
        reduced to learnings, and follow-up questions are researched at half the
        breadth until the depth limit. Runs as a background task if the client
        requests it; progress is streamed via the MCP task protocol.

        Args:
            query: The research question
            breadth: Search queries at the top level (default from settings)
            depth: Recursion depth (default from settings)
            language: Report language code, auto-detected when omitted
            search_language: Language for search queries, defaults to language
            questions: Clarifying questions from research_feedback
            answers: The user's answers to those questions, in the same order
            save_to_file: Optional file path to save the report

        Returns:
            The research report as markdown
        """
        task_id = str(uuid.uuid4())
        task_store = get_task_store()
        research_breadth = breadth if breadth is not None else settings.research.breadth
        research_depth = depth if depth is not None else settings.research.max_depth
        task_record = TaskRecord(
            task_id=task_id,
            tool_name="run_deep_research",
            status=TaskStatus.PENDING,
            input_params={
                "query": query,
                "breadth": research_breadth,
                "depth": research_depth,
                "language": language,
                "save_to_file": save_to_file,
            },
        )
        await task_store.create_task(task_record)
        bind_task_context(task_id, "run_deep_research")
        task_logger = get_task_logger()

        logger.info(f"Starting deep research on: {query}")
        task_logger.info("task_created", query=query[:100])

        try:
            gateway, search_provider = _get_research_components()
        except (LLMProviderError, SearchProviderError) as e:
            logger.error(f"Research setup failed: {e}")
            await task_store.update_status(task_id, TaskStatus.FAILED, error=str(e))
            clear_task_context()
            return f"Error: {e}"

        await task_store.update_status(task_id, TaskStatus.RUNNING)
        task_logger.info("task_running")

        machine = ResearchMachine(
            query=query,
            gateway=gateway,
            search_provider=search_provider,
            breadth=research_breadth,
            max_depth=research_depth,
            concurrency_limit=settings.research.concurrency_limit,
            language=language or settings.research.language,
            search_language=search_language or settings.research.search_language,
            questions=questions or [],
            answers=answers or [],
            tolerate_branch_failures=settings.research.tolerate_branch_failures,
            save_path=save_to_file or _default_save_path(query),
            progress=progress,
            ctx=ctx,
            task_id=task_id,
            task_store=task_store,
        )

        try:
            research_task = asyncio.create_task(machine.run())
            _running_tasks[task_id] = research_task
            try:
                report = await research_task
            finally:
                _running_tasks.pop(task_id, None)

            if settings.server.results_dir and not save_to_file:
                saved_path = save_report(
                    report,
                    settings.get_results_dir(),
                    prefix=query,
                    metadata={
                        "query": query,
                        "breadth": research_breadth,
                        "depth": research_depth,
                        "learnings": len(machine.result.learnings) if machine.result else 0,
                    },
                )
                await ctx.info(f"Saved to: {saved_path.name}")

            await task_store.update_status(task_id, TaskStatus.COMPLETED, result=report)
            task_logger.info("task_completed", result_length=len(report))
            clear_task_context()
            return report

        except asyncio.CancelledError:
            await task_store.update_status(task_id, TaskStatus.CANCELLED, error="Cancelled by user")
            task_logger.info("task_cancelled")
            clear_task_context()
            raise

        except Exception as e:
            await task_store.update_status(task_id, TaskStatus.FAILED, error=str(e))
            task_logger.error("task_failed", error=str(e))
            clear_task_context()
            raise

    @server.tool()
    async def research_feedback(query: str, num_questions: int | None = None, language: str | None = None) -> str:
        """
        Ask clarifying questions before starting deep research.

        Pass the questions and the user's answers to run_deep_research.

        Args:
            query: The research question
            num_questions: Maximum number of questions (default from settings)
            language: Question language code, auto-detected when omitted

        Returns:
            JSON object with the list of questions (empty when the query is clear)
        """
        task_id = str(uuid.uuid4())
        task_store = get_task_store()
        count = num_questions if num_questions is not None else settings.research.num_feedback_questions
        await task_store.create_task(
            TaskRecord(task_id=task_id, tool_name="research_feedback", input_params={"query": query, "num_questions": count})
        )
        bind_task_context(task_id, "research_feedback")
        await task_store.update_status(task_id, TaskStatus.RUNNING)

        try:
            llm = get_llm_from_settings(settings)
            questions = await generate_feedback(
                query,
                get_gateway(settings, llm),
                language=language or settings.research.language,
                num_questions=count,
            )
        except LLMProviderError as e:
            logger.error(f"Feedback generation failed: {e}")
            await task_store.update_status(task_id, TaskStatus.FAILED, error=str(e))
            return f"Error: {e}"
        except Exception as e:
            await task_store.update_status(task_id, TaskStatus.FAILED, error=str(e))
            raise
        finally:
            clear_task_context()

        result = json.dumps({"query": query, "questions": questions}, indent=2, ensure_ascii=False)
        await task_store.update_status(task_id, TaskStatus.COMPLETED, result=result)
        return result

    # --- Observability Tools ---

    @server.tool()
    async def health_check() -> str:
        """
        Health check endpoint with system stats and running task information.

        Returns:
            JSON object with server health status, running tasks, and statistics
        """
        import psutil

        task_store = get_task_store()
        running_tasks = await task_store.get_running_tasks()
        stats = await task_store.get_stats()

        process = psutil.Process()
        memory_info = process.memory_info()

        return json.dumps(
            {
                "status": "healthy",
                "uptime_seconds": round(time.time() - _server_start_time, 1),
                "memory_mb": round(memory_info.rss / 1024 / 1024, 1),
                "llm_provider": settings.llm.provider,
                "search_provider": settings.search.provider,
                "running_tasks": len(running_tasks),
                "tasks": [
                    {
                        "task_id": t.task_id[:8],
                        "tool": t.tool_name,
                        "stage": t.stage.value if t.stage else None,
                        "progress": f"{t.progress_current}/{t.progress_total}",
                        "message": t.progress_message,
                    }
                    for t in running_tasks
                ],
                "stats": stats,
            },
            indent=2,
        )

    @server.tool()
    async def task_list(
        limit: int = 20,
        status_filter: str | None = None,
    ) -> str:
        """
        List recent tasks with optional filtering.

        Args:
            limit: Maximum number of tasks to return (default 20)
            status_filter: Optional status filter (running, completed, failed, cancelled, pending)

        Returns:
            JSON list of recent tasks
        """
        task_store = get_task_store()

        status = None
        if status_filter:
            try:
                status = TaskStatus(status_filter)
            except ValueError:
                return f"Error: Invalid status '{status_filter}'. Use: running, completed, failed, cancelled, pending"

        tasks = await task_store.get_task_history(limit=limit, status=status)

        return json.dumps(
            {
                "tasks": [
                    {
                        "task_id": t.task_id[:8],
                        "tool": t.tool_name,
                        "status": t.status.value,
                        "progress": f"{t.progress_current}/{t.progress_total}",
                        "created": t.created_at.isoformat(),
                        "duration_sec": round(t.duration_seconds, 1) if t.duration_seconds else None,
                    }
                    for t in tasks
                ],
                "count": len(tasks),
            },
            indent=2,
        )

    @server.tool()
    async def task_get(task_id: str) -> str:
        """
        Get full details of a specific task.

        Args:
            task_id: Task ID (full or prefix)

        Returns:
            JSON object with task details, input, and result/error
        """
        task = await _find_task(get_task_store(), task_id)
        if not task:
            return f"Error: Task '{task_id}' not found"

        return json.dumps(
            {
                "task_id": task.task_id,
                "tool": task.tool_name,
                "status": task.status.value,
                "stage": task.stage.value if task.stage else None,
                "progress": {
                    "current": task.progress_current,
                    "total": task.progress_total,
                    "message": task.progress_message,
                    "percent": task.progress_percent,
                },
                "timestamps": {
                    "created": task.created_at.isoformat(),
                    "started": task.started_at.isoformat() if task.started_at else None,
                    "completed": task.completed_at.isoformat() if task.completed_at else None,
                    "duration_sec": round(task.duration_seconds, 1) if task.duration_seconds else None,
                },
                "input": task.input_params,
                "result": task.result[:500] if task.result else None,
                "error": task.error,
            },
            indent=2,
        )

    @server.tool()
    async def task_events(task_id: str, after_seq: int = 0, limit: int = 100) -> str:
        """
        Get the research progress events recorded for a task.

        Args:
            task_id: Task ID (full or prefix)
            after_seq: Only return events with a sequence number above this (for polling)
            limit: Maximum number of events to return (default 100)

        Returns:
            JSON object with events in emission order
        """
        task_store = get_task_store()
        task = await _find_task(task_store, task_id)
        if not task:
            return f"Error: Task '{task_id}' not found"

        events = await task_store.get_events(task.task_id, after_seq=after_seq, limit=limit)
        return json.dumps(
            {
                "task_id": task.task_id,
                "status": task.status.value,
                "events": [
                    {
                        "seq": e.seq,
                        "type": e.event_type,
                        "node_id": e.node_id,
                        "created": e.created_at.isoformat(),
                        "payload": e.payload,
                    }
                    for e in events
                ],
                "count": len(events),
            },
            indent=2,
            ensure_ascii=False,
        )

    @server.tool()
    async def task_cancel(task_id: str) -> str:
        """
        Cancel a running research task.

        Args:
            task_id: Task ID (full or prefix match)

        Returns:
            JSON with success status and message
        """
        matched_id = next((full_id for full_id in _running_tasks if full_id.startswith(task_id)), None)
        if not matched_id:
            return json.dumps({"success": False, "error": f"Task '{task_id}' not found or not running"})

        _running_tasks[matched_id].cancel()
        await get_task_store().update_status(matched_id, TaskStatus.CANCELLED, error="Cancelled by user")

        return json.dumps({"success": True, "task_id": matched_id[:8], "message": "Task cancelled"})

    return server


# Track server start time for uptime calculation
_server_start_time = time.time()


server_instance = serve()


def main() -> None:
    """Entry point for MCP server."""
    transport = settings.server.transport
    logger.info(f"Starting MCP deep research server (llm: {settings.llm.provider}, search: {settings.search.provider}, transport: {transport})")

    if transport == "stdio":
        server_instance.run(transport="stdio")
    elif transport in ("streamable-http", "sse"):
        logger.info(f"HTTP server at http://{settings.server.host}:{settings.server.port}/mcp")
        server_instance.run(transport=transport, host=settings.server.host, port=settings.server.port)
    else:
        raise ValueError(f"Unknown transport: {transport}")


if __name__ == "__main__":
    main()
