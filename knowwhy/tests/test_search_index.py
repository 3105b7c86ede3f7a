"""Tests for the in-memory search index and indexing helpers."""

from conftest import KeywordEmbedder, make_messages
from knowwhy.common.schemas import DecisionBrief
from knowwhy.common.search_index import InMemorySearchIndex, index_brief, index_messages


class TestInMemorySearchIndex:
    def test_cosine_ranking(self):
        index = InMemorySearchIndex(KeywordEmbedder(["postgres", "redis", "kafka"]))
        index.upsert("a", "postgres and redis", {"type": "conversation"})
        index.upsert("b", "postgres only", {"type": "conversation"})
        index.upsert("c", "kafka only", {"type": "conversation"})

        hits = index.search("postgres", top_k=3)

        assert [h.id for h in hits] == ["b", "a", "c"]
        assert hits[0].score == 1.0
        assert hits[-1].score == 0.0

    def test_filter_is_exact_metadata_match(self):
        index = InMemorySearchIndex(KeywordEmbedder(["postgres"]))
        index.upsert("d1", "postgres decision", {"type": "decision"})
        index.upsert("c1", "postgres chat", {"type": "conversation"})

        assert [h.id for h in index.search("postgres", 5, filter={"type": "decision"})] == ["d1"]
        assert index.search("postgres", 5, filter={"type": "jira"}) == []

    def test_upsert_replaces_and_remove(self, hashing_embedder):
        index = InMemorySearchIndex(hashing_embedder)
        index.upsert("x", "first text")
        index.upsert("x", "second text", {"v": 2})
        assert len(index) == 1
        assert index.search("second text", 1)[0].metadata == {"v": 2}

        assert index.remove("x") is True
        assert index.remove("x") is False
        assert len(index) == 0
        assert index.search("second", 1) == []

    def test_empty_text_skipped(self, hashing_embedder):
        index = InMemorySearchIndex(hashing_embedder)
        assert index.upsert_many([("e", "", {}, "")]) == 0
        assert len(index) == 0


class TestIndexingHelpers:
    def test_index_messages(self, hashing_embedder):
        index = InMemorySearchIndex(hashing_embedder)
        assert index_messages(index, make_messages(4, texts={2: "kubernetes migration plan"})) == 4

        hit = index.search("kubernetes migration plan", 1, filter={"type": "conversation"})[0]
        assert hit.id == "conv-1-m2"
        assert hit.source_id == "conv-1"
        assert hit.metadata["author"] == "carol"

    def test_index_brief_carries_confidence(self, hashing_embedder):
        index = InMemorySearchIndex(hashing_embedder)
        brief = DecisionBrief(id="brief_1", title="Use PostgreSQL", confidence=0.83,
                              decision_candidate_id="cand_1")
        index_brief(index, brief)

        hit = index.search("Use PostgreSQL", 1, filter={"type": "decision"})[0]
        assert hit.id == "brief_1"
        assert hit.source_id == "cand_1"
        assert hit.metadata["confidence"] == 0.83
        assert hit.metadata["status"] == "pending"
        assert hit.text.startswith("# Decision Brief: Use PostgreSQL")
