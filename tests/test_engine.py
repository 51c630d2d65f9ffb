"""Tests for the recursive research engine and the deep_research orchestrator."""

import asyncio

import pytest

from mcp_server_deep_research.exceptions import LLMProviderError, ResearchNodeError, SearchProviderError
from mcp_server_deep_research.research.engine import ResearchEngine, deep_research
from mcp_server_deep_research.research.models import FollowUpQuery, Learning, ProcessedSearchResult

BRANCH_SEQUENCE = ["generated_query", "searching", "search_complete", "processing_search_result", "node_complete"]


class TestPhotosynthesisScenario:
    """Breadth 2, max depth 1: one expansion, two branches, no recursion."""

    @pytest.fixture
    def photosynthesis_gateway(self, gateway_factory):
        return gateway_factory(
            expansions={"photosynthesis": ["light reactions", "calvin cycle"]},
            follow_ups=2,
        )

    async def test_single_expansion_for_root(self, photosynthesis_gateway, search, recorder):
        await deep_research("photosynthesis", photosynthesis_gateway, search, breadth=2, max_depth=1, on_progress=recorder)

        generating = recorder.of_type("generating_query")
        assert len(generating) == 1
        assert generating[0].node_id == "0"
        assert generating[0].parent_node_id is None
        assert len(photosynthesis_gateway.expand_calls) == 1

    async def test_branch_events_in_order(self, photosynthesis_gateway, search, recorder):
        await deep_research("photosynthesis", photosynthesis_gateway, search, breadth=2, max_depth=1, on_progress=recorder)

        assert recorder.for_node("0-0") == BRANCH_SEQUENCE
        assert recorder.for_node("0-1") == BRANCH_SEQUENCE
        assert [e.query for e in recorder.of_type("generated_query")] == ["light reactions", "calvin cycle"]

    async def test_no_recursion_at_depth_limit(self, photosynthesis_gateway, search, recorder):
        await deep_research("photosynthesis", photosynthesis_gateway, search, breadth=2, max_depth=1, on_progress=recorder)

        assert sorted(search.queries) == ["calvin cycle", "light reactions"]
        assert all(e.node_id.count("-") <= 1 for e in recorder.events if hasattr(e, "node_id"))

    async def test_complete_is_last_with_learnings(self, photosynthesis_gateway, search, recorder):
        result = await deep_research("photosynthesis", photosynthesis_gateway, search, breadth=2, max_depth=1, on_progress=recorder)

        assert len(recorder.of_type("complete")) == 1
        final = recorder.events[-1]
        assert final.type == "complete"
        assert final.learnings == result.learnings
        assert [item.learning for item in result.learnings] == ["Fact about light reactions", "Fact about calvin cycle"]


class TestLearningMerge:
    """Learnings are deduplicated by (url, learning) across the whole tree."""

    async def test_duplicate_across_branches_appears_once(self, gateway_factory, search):
        shared = Learning(learning="Chlorophyll absorbs light", url="https://example.com/chlorophyll")
        gateway = gateway_factory(
            extractions={
                "q / q0": ProcessedSearchResult(learnings=[shared, Learning(learning="A", url="https://a.example")]),
                "q / q1": ProcessedSearchResult(learnings=[Learning(learning="B", url="https://b.example"), shared]),
            }
        )

        result = await deep_research("q", gateway, search, breadth=2, max_depth=1)

        assert [item.learning for item in result.learnings] == ["Chlorophyll absorbs light", "A", "B"]

    async def test_same_text_different_url_kept(self, gateway_factory, search):
        gateway = gateway_factory(
            extractions={
                "q / q0": ProcessedSearchResult(learnings=[Learning(learning="Same", url="https://one.example")]),
                "q / q1": ProcessedSearchResult(learnings=[Learning(learning="Same", url="https://two.example")]),
            }
        )

        result = await deep_research("q", gateway, search, breadth=2, max_depth=1)

        assert [item.url for item in result.learnings] == ["https://one.example", "https://two.example"]

    async def test_inherited_learnings_come_first(self, gateway, search):
        result = await deep_research("q", gateway, search, breadth=1, max_depth=1, learnings=["Earlier finding"])

        assert result.learnings[0] == Learning(learning="Earlier finding", url="")
        assert len(result.learnings) == 2

    async def test_rediscovered_inherited_learning_not_duplicated(self, gateway_factory, search):
        known = Learning(learning="Known", url="https://known.example")
        gateway = gateway_factory(extractions={"q / q0": ProcessedSearchResult(learnings=[known])})

        result = await deep_research("q", gateway, search, breadth=1, max_depth=1, learnings=[known])

        assert result.learnings == [known]


class TestDepthAndBreadth:
    """Termination and breadth halving."""

    async def test_max_depth_zero_returns_input(self, gateway, search, recorder):
        result = await deep_research("q", gateway, search, breadth=4, max_depth=0, on_progress=recorder, learnings=["Prior"])

        assert result.learnings == [Learning(learning="Prior", url="")]
        assert [e.type for e in recorder.events] == ["complete"]
        assert gateway.expand_calls == []
        assert search.queries == []

    async def test_breadth_halves_per_level(self, gateway_factory, search):
        gateway = gateway_factory(follow_ups=1)

        result = await deep_research("q", gateway, search, breadth=2, max_depth=2)

        assert [call.num_queries for call in gateway.expand_calls] == [2, 1, 1]
        assert len(result.learnings) == 4

    async def test_breadth_one_children_never_expand(self, gateway_factory, search, recorder):
        gateway = gateway_factory(follow_ups=1)

        await deep_research("q", gateway, search, breadth=1, max_depth=3, on_progress=recorder)

        assert len(gateway.expand_calls) == 1
        assert [e.node_id for e in recorder.of_type("generating_query")] == ["0"]

    async def test_child_node_ids(self, gateway_factory, search, recorder):
        gateway = gateway_factory(follow_ups=1)

        await deep_research("q", gateway, search, breadth=2, max_depth=2, on_progress=recorder)

        generating = {e.node_id: e.parent_node_id for e in recorder.of_type("generating_query")}
        assert generating == {"0": None, "0-0-0": "0-0", "0-1-0": "0-1"}
        assert recorder.for_node("0-0-0-0") == BRANCH_SEQUENCE

    async def test_expansion_truncated_to_breadth(self, gateway_factory, search):
        gateway = gateway_factory(expansions={"q": ["a", "b", "c", "d"]})

        await deep_research("q", gateway, search, breadth=2, max_depth=1)

        assert sorted(search.queries) == ["a", "b"]

    async def test_no_sub_queries_is_a_leaf(self, gateway_factory, search, recorder):
        gateway = gateway_factory(expansions={"q": []})

        result = await deep_research("q", gateway, search, breadth=2, max_depth=2, on_progress=recorder)

        assert result.learnings == []
        assert [e.type for e in recorder.events] == ["generating_query", "complete"]

    async def test_process_node_at_depth_limit_emits_nothing(self, gateway, search, recorder):
        engine = ResearchEngine(gateway, search, on_progress=recorder, max_depth=2)
        inherited = (Learning(learning="x", url="u"),)

        result = await engine.process_node("q", depth=2, breadth=2, learnings=inherited, node_id="0-0-0")

        assert result == inherited
        assert recorder.events == []

    async def test_process_node_at_depth_limit_returns_learnings_unchanged(self, gateway, search):
        engine = ResearchEngine(gateway, search, max_depth=2)
        duplicate = Learning(learning="x", url="u")
        inherited = [duplicate, Learning(learning="y", url="u"), Learning(learning="x", url="u")]

        result = await engine.process_node("q", depth=2, breadth=2, learnings=inherited)

        assert result == tuple(inherited)
        assert len(result) == 3

    async def test_query_strings_not_deduplicated(self, gateway_factory, search):
        gateway = gateway_factory(expansions={"q": ["same", "same"]})

        await deep_research("q", gateway, search, breadth=2, max_depth=1)

        assert search.queries == ["same", "same"]


class TestConcurrency:
    """Children run in batches bounded by concurrency_limit."""

    async def test_children_capped_by_concurrency_limit(self, gateway_factory, search_factory):
        gateway = gateway_factory(follow_ups=5)
        search = search_factory(delay=0.01)

        await deep_research("q", gateway, search, breadth=2, max_depth=2, concurrency_limit=3)

        assert search.max_in_flight == 3
        assert len(search.queries) == 2 + 10

    async def test_later_batches_see_earlier_learnings(self, gateway_factory, search):
        gateway = gateway_factory(follow_ups=1)

        await deep_research("q", gateway, search, breadth=2, max_depth=2, concurrency_limit=1)

        second_child = gateway.expand_calls[2]
        assert second_child.query == "q / q1 / f0"
        assert "Fact about q / q0 / f0 / q0" in [item.learning for item in second_child.learnings]

    async def test_sibling_branches_run_concurrently(self, gateway, search_factory):
        search = search_factory(delay=0.01)

        await deep_research("q", gateway, search, breadth=4, max_depth=1, concurrency_limit=1)

        assert search.max_in_flight == 4

    async def test_cancellation_reaches_descendants(self, gateway_factory, search_factory, recorder):
        gateway = gateway_factory(follow_ups=2)
        search = search_factory(delay=0.05)
        before = asyncio.all_tasks()

        run = asyncio.create_task(deep_research("q", gateway, search, breadth=2, max_depth=3, on_progress=recorder))
        async with asyncio.timeout(5):
            while len(search.queries) <= 2 or search.in_flight == 0:
                await asyncio.sleep(0.005)
        run.cancel()

        with pytest.raises(asyncio.CancelledError):
            await run

        assert search.in_flight == 0
        assert asyncio.all_tasks() - before == set()
        assert recorder.of_type("complete") == []

    async def test_invalid_concurrency_limit(self, gateway, search):
        with pytest.raises(ValueError, match="concurrency_limit"):
            ResearchEngine(gateway, search, concurrency_limit=0)


class TestErrors:
    """A failure is reported once at the failing node and aborts the run."""

    async def test_search_failure_reported_at_branch(self, gateway, search_factory, recorder):
        search = search_factory(failures={"q / q1": SearchProviderError("Rate limit exceeded", provider="tavily", status_code=429)})

        with pytest.raises(ResearchNodeError) as exc_info:
            await deep_research("q", gateway, search, breadth=2, max_depth=2, on_progress=recorder)

        assert exc_info.value.node_id == "0-1"
        assert isinstance(exc_info.value.__cause__, SearchProviderError)
        errors = recorder.of_type("error")
        assert len(errors) == 1
        assert errors[0].node_id == "0-1"
        assert errors[0].message == "Rate limit exceeded"
        assert recorder.of_type("complete") == []

    async def test_expansion_failure_reported_at_node(self, gateway_factory, search, recorder):
        gateway = gateway_factory(expansions={"q": LLMProviderError("LLM call failed")})

        with pytest.raises(ResearchNodeError) as exc_info:
            await deep_research("q", gateway, search, breadth=2, max_depth=2, on_progress=recorder)

        assert exc_info.value.node_id == "0"
        assert [(e.node_id, e.message) for e in recorder.of_type("error")] == [("0", "LLM call failed")]

    async def test_child_failure_reported_once(self, gateway_factory, search, recorder):
        gateway = gateway_factory(follow_ups=1, expansions={"q / q0 / f0": LLMProviderError("child down")})

        with pytest.raises(ResearchNodeError) as exc_info:
            await deep_research("q", gateway, search, breadth=2, max_depth=3, on_progress=recorder)

        assert exc_info.value.node_id == "0-0-0"
        assert [e.node_id for e in recorder.of_type("error")] == ["0-0-0"]

    async def test_extract_failure_after_search(self, gateway_factory, search, recorder):
        gateway = gateway_factory(extractions={"q / q0": LLMProviderError("bad output")})

        with pytest.raises(ResearchNodeError):
            await deep_research("q", gateway, search, breadth=1, max_depth=1, on_progress=recorder)

        assert recorder.for_node("0-0") == ["generated_query", "searching", "search_complete", "processing_search_result", "error"]

    async def test_tolerated_branch_failure_continues(self, gateway, search_factory, recorder):
        search = search_factory(failures={"q / q1": SearchProviderError("Invalid API key", status_code=401)})

        result = await deep_research(
            "q", gateway, search, breadth=2, max_depth=1, on_progress=recorder, tolerate_branch_failures=True
        )

        assert [item.learning for item in result.learnings] == ["Fact about q / q0"]
        assert [e.node_id for e in recorder.of_type("error")] == ["0-1"]
        assert recorder.events[-1].type == "complete"

    async def test_tolerated_child_failure_keeps_siblings(self, gateway_factory, search, recorder):
        gateway = gateway_factory(follow_ups=1, extractions={"q / q0 / f0 / q0": LLMProviderError("nope")})

        result = await deep_research(
            "q", gateway, search, breadth=2, max_depth=2, on_progress=recorder, tolerate_branch_failures=True
        )

        learned = [item.learning for item in result.learnings]
        assert "Fact about q / q1 / f0 / q0" in learned
        assert "Fact about q / q0 / f0 / q0" not in learned
        assert len(recorder.of_type("complete")) == 1

    async def test_observer_failure_does_not_affect_run(self, gateway, search):
        def broken_observer(step):
            raise RuntimeError("observer broke")

        result = await deep_research("q", gateway, search, breadth=2, max_depth=1, on_progress=broken_observer)

        assert len(result.learnings) == 2


class TestLanguage:
    """Language is resolved once and passed to every gateway call."""

    async def test_language_detected_from_query(self, gateway, search):
        result = await deep_research("การสังเคราะห์แสงคืออะไร", gateway, search, breadth=1, max_depth=1)

        assert result.language == "th"
        assert gateway.expand_calls[0].language == "th"
        assert gateway.expand_calls[0].search_language == "th"
        assert gateway.extract_calls[0].language == "th"

    async def test_explicit_languages(self, gateway, search, recorder):
        result = await deep_research(
            "photosynthesis", gateway, search, breadth=1, max_depth=1, language="de", search_language="en", on_progress=recorder
        )

        assert result.language == "de"
        assert gateway.expand_calls[0].search_language == "en"
        assert recorder.events[-1].language == "de"


class TestFollowUpsFromModel:
    async def test_follow_up_queries_become_children(self, gateway_factory, search, recorder):
        gateway = gateway_factory(
            follow_ups=1,
            extractions={
                "q / q0": ProcessedSearchResult(
                    learnings=[Learning(learning="root fact", url="https://r.example")],
                    follow_up_queries=[FollowUpQuery(query="deeper question", reasoning="gap")],
                )
            }
        )

        await deep_research("q", gateway, search, breadth=2, max_depth=2, on_progress=recorder)

        child = next(e for e in recorder.of_type("generating_query") if e.node_id == "0-0-0")
        assert child.query == "deeper question"
        assert "0-1-0" in {e.node_id for e in recorder.of_type("generating_query")}
