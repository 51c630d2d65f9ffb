"""Research workflow: clarifying questions, deep research, report, save.

Progress events from the engine are pushed onto a queue and consumed by a
sibling task in the same task group. The consumer mirrors them to MCP
progress, to the task event log and to the structured log.
"""

import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Protocol

from ..observability.logging import get_task_logger
from ..observability.models import TaskStage
from .engine import (
    DEFAULT_BREADTH,
    DEFAULT_CONCURRENCY_LIMIT,
    DEFAULT_MAX_DEPTH,
    ResearchGateway,
    WebSearch,
    deep_research,
    unwrap_exception_group,
)
from .events import (
    Complete,
    Error,
    GeneratedQuery,
    GeneratingQuery,
    NodeComplete,
    ProcessingSearchResult,
    ResearchStep,
    Searching,
    describe_step,
)
from .language import LanguageDetector, detect_language
from .models import Learning, ResearchResult
from .prompts import combine_query_with_answers
from .report import ReportWriter, write_final_report

if TYPE_CHECKING:
    from fastmcp.dependencies import Progress
    from fastmcp.server.context import Context

    from ..observability.store import TaskStore

logger = logging.getLogger(__name__)

_STAGES: dict[type, TaskStage] = {
    GeneratingQuery: TaskStage.EXPANDING,
    Searching: TaskStage.SEARCHING,
    ProcessingSearchResult: TaskStage.EXTRACTING,
}


class FeedbackGateway(ReportWriter, ResearchGateway, Protocol):
    async def generate_feedback(self, query: str, language: str = "en", num_questions: int = 3) -> list[str]: ...


async def generate_feedback(
    query: str,
    gateway: FeedbackGateway,
    language: str | None = None,
    num_questions: int = 3,
    language_detector: LanguageDetector | None = None,
) -> list[str]:
    """Clarifying questions to ask before researching ``query``. May be empty."""
    resolved_language = language or detect_language(query, language_detector)
    questions = await gateway.generate_feedback(query, resolved_language, num_questions)
    logger.info(f"Generated {len(questions)} clarifying questions")
    return questions


class ResearchMachine:
    """One deep research task with native MCP progress reporting."""

    def __init__(
        self,
        query: str,
        gateway: FeedbackGateway,
        search_provider: WebSearch,
        breadth: int = DEFAULT_BREADTH,
        max_depth: int = DEFAULT_MAX_DEPTH,
        concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
        language: str | None = None,
        search_language: str | None = None,
        questions: Sequence[str] = (),
        answers: Sequence[str] = (),
        learnings: Sequence[Learning | str] | None = None,
        tolerate_branch_failures: bool = False,
        save_path: Path | str | None = None,
        progress: Optional["Progress"] = None,
        ctx: Optional["Context"] = None,
        task_id: str | None = None,
        task_store: Optional["TaskStore"] = None,
    ):
        self.query = query
        self.gateway = gateway
        self.search_provider = search_provider
        self.breadth = breadth
        self.max_depth = max_depth
        self.concurrency_limit = concurrency_limit
        self.language = language
        self.search_language = search_language
        self.questions = list(questions)
        self.answers = list(answers)
        self.learnings = learnings
        self.tolerate_branch_failures = tolerate_branch_failures
        self.save_path = Path(save_path) if save_path else None
        self.progress = progress
        self.ctx = ctx
        self.task_id = task_id
        self.task_store = task_store

        self.events: list[ResearchStep] = []
        self.result: ResearchResult | None = None
        self._branches_total = 0
        self._branches_done = 0
        self._stage: TaskStage | None = None
        self._task_logger = get_task_logger()

    @property
    def research_query(self) -> str:
        """The query actually researched, with clarifying answers folded in."""
        return combine_query_with_answers(self.query, self.questions, self.answers)

    async def run(self) -> str:
        """Execute the research workflow and return the markdown report."""
        prompt = self.research_query
        await self._set_stage(TaskStage.INITIALIZING, "Starting deep research...")
        if self.ctx:
            await self.ctx.info(f"Researching: {self.query}")

        self.result = await self._research(prompt)

        await self._set_stage(TaskStage.SYNTHESIZING, "Writing final report...")
        if self.ctx:
            await self.ctx.info(f"Writing report from {len(self.result.learnings)} learnings")
        report = await write_final_report(prompt, self.result.learnings, self.result.language, self.gateway)

        if self.save_path:
            await self._set_stage(TaskStage.FINALIZING, f"Saving report to {self.save_path}")
            self._save_report(report)

        await self._report_progress(increment=True)
        logger.info("Research completed")
        return report

    async def _research(self, prompt: str) -> ResearchResult:
        queue: asyncio.Queue[ResearchStep | None] = asyncio.Queue()
        try:
            async with asyncio.TaskGroup() as tg:
                consumer = tg.create_task(self._consume(queue))
                try:
                    return await deep_research(
                        prompt,
                        self.gateway,
                        self.search_provider,
                        breadth=self.breadth,
                        max_depth=self.max_depth,
                        on_progress=queue.put_nowait,
                        language=self.language,
                        search_language=self.search_language,
                        learnings=self.learnings,
                        concurrency_limit=self.concurrency_limit,
                        tolerate_branch_failures=self.tolerate_branch_failures,
                    )
                finally:
                    # Drain so error events are recorded before the failure propagates.
                    queue.put_nowait(None)
                    await consumer
        except BaseExceptionGroup as group:
            raise unwrap_exception_group(group)

    async def _consume(self, queue: "asyncio.Queue[ResearchStep | None]") -> None:
        while True:
            step = await queue.get()
            if step is None:
                return
            try:
                await self.handle_step(step)
            except Exception as e:
                logger.warning(f"Failed to record research step {step.type}: {e}")

    async def handle_step(self, step: ResearchStep) -> None:
        """Mirror one progress event to MCP progress, the task store and the log."""
        self.events.append(step)
        node_id = getattr(step, "node_id", None)
        message = describe_step(step)
        self._task_logger.info(step.type, node_id=node_id, detail=message)

        if isinstance(step, GeneratedQuery):
            self._branches_total += 1
            await self._report_progress(total=self._branches_total + 1)
        elif isinstance(step, NodeComplete):
            self._branches_done += 1
            await self._report_progress(increment=True)

        stage = _STAGES.get(type(step))
        if stage is not None:
            self._stage = stage
        await self._report_progress(message=message)

        if self.ctx and isinstance(step, Error):
            await self.ctx.warning(message)
        elif self.ctx and isinstance(step, GeneratingQuery | Complete):
            await self.ctx.info(message)

        if self.task_store and self.task_id:
            await self.task_store.append_event(self.task_id, step.type, step.model_dump(mode="json"), node_id=node_id)
            await self.task_store.update_progress(self.task_id, self._branches_done, self._branches_total + 1, message, self._stage)

    async def _set_stage(self, stage: TaskStage, message: str) -> None:
        self._stage = stage
        logger.info(message)
        await self._report_progress(message=message)
        if self.task_store and self.task_id:
            await self.task_store.update_progress(self.task_id, self._branches_done, self._branches_total + 1, message, stage)

    async def _report_progress(self, message: str | None = None, increment: bool = False, total: int | None = None) -> None:
        """Report progress if progress tracker is available."""
        if not self.progress:
            return
        if total is not None:
            await self.progress.set_total(total)
        if message:
            await self.progress.set_message(message)
        if increment:
            await self.progress.increment()

    def _save_report(self, report: str) -> None:
        try:
            self.save_path.parent.mkdir(parents=True, exist_ok=True)
            self.save_path.write_text(report, encoding="utf-8")
            logger.info(f"Report saved to {self.save_path}")
        except OSError as e:
            logger.error(f"Failed to save report: {e}")
