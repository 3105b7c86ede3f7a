"""Tests for query understanding and its use by the retrieval engine."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from conftest import ScriptedLLM, StubSearch
from knowwhy.common.config import RetrievalConfig
from knowwhy.common.errors import TransportError
from knowwhy.common.gateway import SearchHit
from knowwhy.retriever import QueryIntent, QueryProcessor, RetrievalEngine
from knowwhy.retriever.query_processor import detect_intent

NOW = datetime(2025, 3, 31, 12, 0, tzinfo=timezone.utc)

UNDERSTANDING = json.dumps({
    "intent": "decision_search",
    "entities": {
        "decisionTopic": "analytics database",
        "timeRange": {"start": "2025-01-01", "end": "2025-03-31T00:00:00Z"},
        "stakeholders": ["alice"],
        "tags": ["database"],
        "confidence": 0.8,
    },
    "queryType": "specific",
    "optimizedQuery": "analytics database PostgreSQL decision rationale",
})


def processor(reply, **kwargs):
    return QueryProcessor(ScriptedLLM(default=reply), clock=lambda: NOW, **kwargs)


class TestQueryProcessor:
    def test_model_understanding(self):
        result = processor(UNDERSTANDING).understand("Why did alice pick Postgres for analytics?")

        assert result.intent == QueryIntent.DECISION_SEARCH
        assert result.query_type == "specific"
        assert result.entities.topic == "analytics database"
        assert result.entities.stakeholders == ["alice"]
        assert result.entities.tags == ["database"]
        assert result.entities.confidence == 0.8
        assert result.entities.time_range.start == datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert result.search_query == "analytics database PostgreSQL decision rationale"
        assert not result.degraded

    def test_optimization_disabled_keeps_question(self):
        question = "Why did alice pick Postgres for analytics?"
        result = processor(UNDERSTANDING, optimize=False).understand(question)
        assert result.search_query == question
        assert result.intent == QueryIntent.DECISION_SEARCH

    def test_unparseable_reply_falls_back_to_raw_query(self):
        question = "Why did we choose Postgres last month?"
        result = processor("Sure! This is about databases.").understand(question)

        assert result.degraded
        assert result.search_query == question
        assert result.intent == QueryIntent.DECISION_SEARCH
        assert result.entities.confidence == 0.3
        assert result.entities.time_range.start == NOW - timedelta(days=30)

    def test_model_error_falls_back(self):
        result = processor(TransportError("down")).understand("what did bob say about the migration?")
        assert result.degraded
        assert result.intent == QueryIntent.CONTEXT_SEARCH
        assert result.search_query == "what did bob say about the migration?"

    def test_unknown_intent_label_uses_patterns(self):
        reply = json.dumps({"intent": "shopping", "optimizedQuery": "kafka"})
        result = processor(reply).understand("Which discussion covered Kafka?")
        assert result.intent == QueryIntent.CONTEXT_SEARCH
        assert result.search_query == "kafka"

    @pytest.mark.parametrize("question,intent", [
        ("Why did we go with Terraform?", QueryIntent.DECISION_SEARCH),
        ("Who mentioned the outage?", QueryIntent.CONTEXT_SEARCH),
        ("How many services are there?", QueryIntent.GENERAL),
    ])
    def test_detect_intent(self, question, intent):
        assert detect_intent(question) == intent


@pytest.fixture
def search():
    return StubSearch({
        "decision": [SearchHit(id="d1", text="# Decision Brief: d1", score=0.9,
                               metadata={"type": "decision", "title": "d1"})],
        "conversation": [SearchHit(id="c1", text="bob on kafka", score=0.7,
                                   metadata={"type": "conversation", "author": "bob"})],
    })


class TestEngineWithUnderstanding:
    def test_rewritten_query_is_searched(self, search):
        engine = RetrievalEngine(search, None, query_processor=processor(UNDERSTANDING))

        result = engine.retrieve("Why did alice pick Postgres for analytics?")

        assert {q for q, _, _ in search.calls} == {"analytics database PostgreSQL decision rationale"}
        assert result.metadata.search_query == "analytics database PostgreSQL decision rationale"
        assert result.understanding.intent == QueryIntent.DECISION_SEARCH
        assert [i.id for i in result.items] == ["d1", "c1"]

    def test_context_search_only_fetches_conversations(self, search):
        reply = json.dumps({"intent": "context_search", "optimizedQuery": "kafka discussion"})
        engine = RetrievalEngine(search, None, max_results=15, query_processor=processor(reply))

        result = engine.retrieve("What did people say about Kafka?")

        assert [(k, f) for _, k, f in search.calls] == [(15, {"type": "conversation"})]
        assert result.kind == "conversation"

    def test_failed_understanding_still_retrieves(self, search):
        engine = RetrievalEngine(search, None, query_processor=processor(TransportError("down")))
        result = engine.retrieve("postgres")

        assert not result.degraded
        assert result.understanding.degraded
        assert {q for q, _, _ in search.calls} == {"postgres"}

    def test_config_flag(self, search):
        llm = ScriptedLLM(routes=[("Analyze this question", UNDERSTANDING)], default="answer")

        off = RetrievalEngine.from_config(search, llm, RetrievalConfig()).retrieve("q")
        on = RetrievalEngine.from_config(
            search, llm, RetrievalConfig(enable_query_understanding=True)
        ).retrieve("q")

        assert off.understanding is None
        assert on.understanding.intent == QueryIntent.DECISION_SEARCH
        assert llm.calls_matching("Analyze this question") == 1
