"""Tests for search/merge, reranking, cited answers and the retrieval engine."""

import pytest

from conftest import ScriptedLLM, StubSearch
from knowwhy.common.errors import TransportError
from knowwhy.common.gateway import SearchHit
from knowwhy.common.observability import Metrics
from knowwhy.retriever import (
    ConversationHit,
    DecisionHit,
    Reranker,
    RetrievalEngine,
    RetrievalResult,
    Searcher,
    parse_citation_markers,
)
from knowwhy.retriever.engine import result_kind


def decision(id, score, confidence=None, title=None):
    metadata = {"type": "decision", "title": title or f"Decision {id}", "status": "pending",
                "timestamp": "2025-03-03T09:00:00+00:00"}
    if confidence is not None:
        metadata["confidence"] = confidence
    return SearchHit(id=id, text=f"# Decision Brief: {id}", score=score, source_id=f"cand_{id}", metadata=metadata)


def chat(id, score, author="bob"):
    return SearchHit(id=id, text=f"message {id}", score=score, source_id="conv-1",
                     metadata={"type": "conversation", "author": author, "conversation_id": "conv-1",
                               "source": "slack", "timestamp": "2025-03-03T09:05:00+00:00"})


@pytest.fixture
def search():
    return StubSearch({
        "decision": [decision("d1", 0.9, confidence=0.92), decision("d2", 0.5)],
        "conversation": [chat("c1", 0.6), chat("c2", 0.2)],
    })


class TestSearcher:
    def test_merge_ordering_with_thresholds(self, search):
        outcome = Searcher(search).search("why postgres")

        assert [item.score for item in outcome.items] == [0.9, 0.6, 0.5]
        assert [item.kind for item in outcome.items] == ["decision", "conversation", "decision"]
        assert outcome.decision_results == 2
        assert outcome.conversation_results == 1

    def test_fetch_budgets(self, search):
        Searcher(search, max_results=15).search("q")
        assert [(k, f) for _, k, f in search.calls] == [
            (10, {"type": "decision"}),
            (4, {"type": "conversation"}),
        ]

    def test_zero_budget_skips_call(self, search):
        Searcher(search, decision_weight=1.0, conversation_weight=0.0).search("q")
        assert len(search.calls) == 1

    def test_truncates_to_max_results(self, search):
        outcome = Searcher(search, max_results=2, decision_weight=1.0, conversation_weight=1.0).search("q")
        assert [item.id for item in outcome.items] == ["d1", "c1"]

    def test_item_confidences(self, search):
        items = {item.id: item for item in Searcher(search).search("q").items}
        assert isinstance(items["d1"], DecisionHit)
        assert items["d1"].confidence == 0.92
        assert items["d2"].confidence == 0.5
        assert isinstance(items["c1"], ConversationHit)
        assert items["c1"].confidence == 0.5
        assert items["c1"].author == "bob"


class TestReranker:
    @pytest.fixture
    def items(self, search):
        return Searcher(search).search("q").items

    def test_model_order_applied(self, items):
        llm = ScriptedLLM(default='["d2", "ghost", "d1"]')
        ranked, applied = Reranker(llm).rerank("q", items)

        assert applied
        assert [i.id for i in ranked] == ["d2", "d1", "c1"]
        assert "Decision: d1" in llm.prompts[0]
        assert "Conversation: c1" in llm.prompts[0]

    def test_parse_failure_keeps_order(self, items):
        ranked, applied = Reranker(ScriptedLLM(default="d2 first")).rerank("q", items)
        assert not applied
        assert [i.id for i in ranked] == ["d1", "c1", "d2"]

    def test_model_error_keeps_order(self, items):
        ranked, applied = Reranker(ScriptedLLM(default=TransportError("down"))).rerank("q", items)
        assert not applied
        assert [i.id for i in ranked] == ["d1", "c1", "d2"]

    def test_single_item_not_sent(self, items):
        llm = ScriptedLLM()
        ranked, applied = Reranker(llm).rerank("q", items[:1])
        assert len(ranked) == 1 and not applied
        assert llm.prompts == []


class TestCitationMarkers:
    @pytest.mark.parametrize("text,count,expected", [
        ("Postgres won [1].", 3, [1]),
        ("See [2, 1] and again [1].", 3, [2, 1]),
        ("Covered by [1-3].", 3, [1, 2, 3]),
        ("Mixed [3] then [1, 2-3]", 3, [3, 1, 2]),
        ("Out of range [4] and [0].", 3, []),
        ("No markers at all.", 3, []),
        ("Not a marker [a1] or [x].", 3, []),
    ])
    def test_parse(self, text, count, expected):
        assert parse_citation_markers(text, count) == expected


class TestRetrievalEngine:
    def test_full_flow(self, search):
        metrics = Metrics()
        llm = ScriptedLLM(default="We moved to Postgres [1], as discussed [2].")
        engine = RetrievalEngine(search, llm, metrics=metrics)

        result = engine.retrieve("why postgres?")

        assert isinstance(result, RetrievalResult)
        assert result.kind == "decision"
        assert result.total == 3
        assert result.confidence == pytest.approx((0.92 + 0.5 + 0.5) / 3)
        assert [c.id for c in result.citations] == ["d1", "c1"]
        assert result.citations[0].kind == "decision"
        assert result.citations[0].source == "cand_d1"
        assert result.citations[0].timestamp == "2025-03-03T09:00:00+00:00"
        assert result.citations[0].confidence == 0.92
        assert result.citations[1].source == "slack"
        assert result.citations[1].timestamp == "2025-03-03T09:05:00+00:00"
        assert result.citations[1].confidence == 0.5
        assert result.metadata.generation_ms is not None
        assert result.metadata.rerank_ms is None
        assert not result.degraded
        assert metrics.get("retrieval_calls_total") == 1

    def test_reranking_flag(self, search):
        llm = ScriptedLLM(routes=[("Rerank these search results", '["d2"]')], default="answer [1]")
        result = RetrievalEngine(search, llm, enable_reranking=True).retrieve("q")

        assert [i.id for i in result.items] == ["d2", "d1", "c1"]
        assert result.metadata.reranked
        assert [c.id for c in result.citations] == ["d2"]

    def test_answer_generation_disabled(self, search):
        llm = ScriptedLLM()
        result = RetrievalEngine(search, llm, enable_answer_generation=False).retrieve("q")
        assert result.answer is None
        assert result.citations == []
        assert llm.prompts == []

    def test_no_llm_still_searches(self, search):
        result = RetrievalEngine(search, None).retrieve("q")
        assert result.total == 3
        assert result.answer is None

    def test_search_failure_is_empty_result(self):
        metrics = Metrics()
        engine = RetrievalEngine(StubSearch(error=TransportError("index down")), ScriptedLLM(), metrics=metrics)

        result = engine.retrieve("q")

        assert result.kind == "empty"
        assert result.items == []
        assert result.confidence == 0.0
        assert result.degraded
        assert metrics.get("retrieval_failure_total") == 1

    def test_answer_failure_is_empty_result(self, search):
        engine = RetrievalEngine(search, ScriptedLLM(default=TransportError("llm down")))
        result = engine.retrieve("q")
        assert result.degraded
        assert result.total == 0

    def test_no_hits(self):
        result = RetrievalEngine(StubSearch(), ScriptedLLM()).retrieve("q")
        assert result.kind == "empty"
        assert result.confidence == 0.0
        assert not result.degraded

    def test_result_serializes_with_kind_tags(self, search):
        dumped = RetrievalEngine(search, None).retrieve("q").model_dump(mode="json")
        assert [i["kind"] for i in dumped["items"]] == ["decision", "conversation", "decision"]
        assert RetrievalResult.model_validate(dumped).items[1].kind == "conversation"


class TestResultKind:
    def test_kinds(self):
        d = DecisionHit(id="d", score=0.9, confidence=0.9)
        c = ConversationHit(id="c", score=0.9)
        assert result_kind([]) == "empty"
        assert result_kind([d, d, c]) == "decision"
        assert result_kind([c, c, d]) == "conversation"
        assert result_kind([d, c]) == "mixed"
