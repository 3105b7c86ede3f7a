"""Tests for Stage B brief synthesis: validate, repair, fallback."""

import json
import random

import pytest

from conftest import ScriptedLLM, StubSearch, make_messages
from knowwhy.common.errors import TransportError
from knowwhy.common.gateway import SearchHit
from knowwhy.common.observability import Metrics
from knowwhy.common.schemas import (
    DecisionCandidate,
    EvidenceItem,
    ExtractedContext,
    brief_invariant_errors,
    brief_schema_errors,
)
from knowwhy.scribe.brief_synthesizer import FALLBACK_RATIONALE, BriefSynthesizer
from knowwhy.scribe.context_extractor import ContextExtractor

EVIDENCE_TEXT = (
    "alice: We compared MongoDB and PostgreSQL for the analytics service. Mongo keeps timing out "
    "on the reporting joins and the team already runs Postgres for billing, so operations know it. "
    "bob: Agreed, the migration is two sprints at most and we can reuse the billing backups. "
    "alice: Decision: we move analytics to PostgreSQL starting next sprint, bob owns the migration."
)


@pytest.fixture
def candidate():
    return DecisionCandidate(
        id="cand_00112233aabbccdd",
        conversation_id="conv-1",
        summary="Move analytics to PostgreSQL",
        confidence=0.92,
    )


@pytest.fixture
def context(candidate):
    return ExtractedContext(
        decision_id=candidate.id,
        problem_statement="Analytics queries time out on MongoDB",
        alternatives_considered=["MongoDB", "PostgreSQL"],
        stakeholders=["alice", "bob"],
        evidence=[EvidenceItem(id="m7", source_id="conv-1", content=EVIDENCE_TEXT, relevance=0.9,
                               metadata={"author": "alice", "source": "slack"})],
        confidence=0.9,
    )


def draft(**overrides):
    data = {
        "title": "Move analytics to PostgreSQL",
        "problem": "Analytics queries time out on MongoDB",
        "optionsConsidered": ["MongoDB", "PostgreSQL"],
        "rationale": "Postgres is already operated for billing",
        "participants": ["alice", "bob"],
        "sourceReferences": [{"externalId": "m7", "excerpt": "we move analytics to PostgreSQL"}],
        "confidence": 0.92,
        "tags": ["database"],
    }
    data.update(overrides)
    return json.dumps(data)


class TestGenerateBrief:
    def test_valid_draft(self, candidate, context):
        metrics = Metrics()
        llm = ScriptedLLM(default=draft())
        result = BriefSynthesizer(llm, metrics=metrics).generate_brief(candidate, context)

        assert result.validation.valid
        assert not result.is_fallback
        brief = result.brief
        assert brief.id == "brief_00112233aabbccdd"
        assert brief.decision_candidate_id == candidate.id
        assert len(brief.source_references) == 1
        assert brief.source_references[0].external_id == "m7"
        assert brief.source_references[0].type.value == "slack"
        assert brief.confidence == pytest.approx(0.92)
        assert brief.payload_text.startswith("# Decision Brief: Move analytics to PostgreSQL")
        assert result.repair_attempts == 0
        assert metrics.get("synthesis_valid_total") == 1
        assert "(id=m7" in llm.prompts[0]

    def test_invented_reference_is_repaired(self, candidate, context):
        bad = draft(sourceReferences=[{"externalId": "msg-999", "excerpt": "made up"}])
        llm = ScriptedLLM(routes=[("Repair this decision brief", draft())], default=bad)
        metrics = Metrics()
        result = BriefSynthesizer(llm, metrics=metrics).generate_brief(candidate, context)

        assert result.validation.valid
        assert result.repair_attempts == 1
        assert [r.external_id for r in result.brief.source_references] == ["m7"]
        assert "Missing citation" in llm.prompts[1]
        assert metrics.get("synthesis_repairs_total") == 1

    def test_invalid_json_bounded_calls_and_fallback(self, candidate, context):
        llm = ScriptedLLM(default="I cannot produce JSON today")
        metrics = Metrics()
        synthesizer = BriefSynthesizer(llm, validation_attempts=3, metrics=metrics)
        result = synthesizer.generate_brief(candidate, context)

        assert len(llm.prompts) <= 4
        assert len(llm.prompts) == synthesizer.validation_attempts + 1
        assert not result.validation.valid
        assert result.is_fallback
        brief = result.brief
        assert brief.rationale == FALLBACK_RATIONALE
        assert brief.options_considered == []
        assert brief.source_references == []
        assert brief_invariant_errors(brief) == ["sourceReferences must have at least 1 source"]
        assert metrics.get("synthesis_invalid_total") == 1

    def test_low_confidence_is_invalid(self, candidate, context):
        llm = ScriptedLLM(default=draft(confidence=0.4))
        result = BriefSynthesizer(llm, validation_attempts=1).generate_brief(candidate, context)
        assert not result.validation.valid
        assert any("below the required" in e for e in result.validation.errors)

    def test_oversized_draft_flagged_as_hallucination(self, candidate, context):
        bloated = draft(rationale="invented detail " * 200)
        synthesizer = BriefSynthesizer(ScriptedLLM())
        _, validation = synthesizer.validate(candidate, json.loads(bloated), context)

        assert validation.hallucinations
        assert validation.confidence == pytest.approx(0.92 * 0.5)

    def test_transport_error_falls_back(self, candidate, context):
        result = BriefSynthesizer(ScriptedLLM(default=TransportError("down"))).generate_brief(candidate, context)
        assert result.is_fallback
        assert any("down" in e for e in result.validation.errors)


class TestSynthesize:
    def test_runs_stage_a_then_b(self, candidate):
        search = StubSearch({"conversation": [
            SearchHit(id="m7", text=EVIDENCE_TEXT, score=0.9, source_id="conv-1",
                      metadata={"type": "conversation", "author": "alice"}),
        ]})
        context_reply = json.dumps({
            "problemStatement": "Analytics queries time out on MongoDB",
            "stakeholders": ["alice", "bob"],
            "confidence": 0.9,
        })
        llm = ScriptedLLM(routes=[
            ("Extract structured context", context_reply),
            ("Generate a structured decision brief", draft()),
        ])
        extractor = ContextExtractor(llm, search, include_related_decisions=False)
        result = BriefSynthesizer(llm, extractor=extractor).synthesize(candidate, make_messages(3))

        assert result.validation.valid
        assert result.context is not None and len(result.context.evidence) == 1
        assert [c.external_id for c in result.citations] == ["m7"]

    def test_missing_extractor_never_raises(self, candidate):
        result = BriefSynthesizer(ScriptedLLM()).synthesize(candidate, [])
        assert result.is_fallback
        assert result.brief.participants == ["unknown"]

    def test_always_invalid_json_fallback_keeps_participants(self, candidate):
        llm = ScriptedLLM(default="not json")
        extractor = ContextExtractor(llm, StubSearch(), include_related_decisions=False)
        synthesizer = BriefSynthesizer(llm, extractor=extractor, validation_attempts=3)

        result = synthesizer.synthesize(candidate, make_messages(4))

        assert result.context.degraded
        assert result.is_fallback
        assert len(llm.prompts) == 1 + synthesizer.validation_attempts + 1
        assert result.brief.participants == ["alice", "bob", "carol"]
        assert brief_invariant_errors(result.brief) == ["sourceReferences must have at least 1 source"]


def _random_draft(rng: random.Random) -> dict:
    """A draft that is valid or broken in one or more random ways."""
    data = json.loads(draft())
    mutations = rng.sample(
        ["drop_title", "long_title", "no_refs", "bogus_ref", "bad_confidence",
         "low_confidence", "no_options", "no_participants", "long_rationale", "none"],
        k=rng.randint(1, 3),
    )
    for mutation in mutations:
        if mutation == "drop_title":
            data.pop("title")
        elif mutation == "long_title":
            data["title"] = "T" * rng.randint(151, 300)
        elif mutation == "no_refs":
            data["sourceReferences"] = []
        elif mutation == "bogus_ref":
            data["sourceReferences"] = [{"externalId": f"x{rng.randint(0, 99)}"}]
        elif mutation == "bad_confidence":
            data["confidence"] = rng.choice([1.5, -0.2, "high", None, True])
        elif mutation == "low_confidence":
            data["confidence"] = rng.uniform(0.0, 0.69)
        elif mutation == "no_options":
            data["optionsConsidered"] = []
        elif mutation == "no_participants":
            data["participants"] = []
        elif mutation == "long_rationale":
            data["rationale"] = "r" * rng.randint(501, 520)
    return data


class TestSchemaRoundTrip:
    def test_valid_verdict_implies_every_invariant(self, candidate, context):
        rng = random.Random(20250303)
        synthesizer = BriefSynthesizer(ScriptedLLM(), hallucination_check_enabled=False)
        evidence_ids = {e.id for e in context.evidence}
        verdicts = []

        for _ in range(200):
            data = _random_draft(rng)
            brief, validation = synthesizer.validate(candidate, data, context)
            verdicts.append(validation.valid)
            if validation.valid:
                assert brief_schema_errors(brief) == []
                assert brief_invariant_errors(brief) == []
                assert {r.external_id for r in brief.source_references} <= evidence_ids
                assert 0.0 <= brief.confidence <= 1.0
            else:
                assert validation.errors

        assert any(verdicts) and not all(verdicts)
