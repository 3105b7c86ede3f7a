"""Tests for LLM response parsing."""

from knowwhy.common.llm_utils import Degraded, Parsed, lenient_parse, parse_llm_json, try_parse_llm_json


class TestTryParseLLMJson:
    def test_plain_json(self):
        assert try_parse_llm_json('{"a": 1}') == {"a": 1}

    def test_code_fence(self):
        raw = '```json\n{"isDecision": true}\n```'
        assert try_parse_llm_json(raw) == {"isDecision": True}

    def test_preamble_text(self):
        raw = 'Here is the result:\n{"summary": "Use Postgres"}\nHope that helps.'
        assert try_parse_llm_json(raw) == {"summary": "Use Postgres"}

    def test_array(self):
        assert try_parse_llm_json('Order: ["b", "a"]') == ["b", "a"]

    def test_garbage(self):
        assert try_parse_llm_json("no json here") is None
        assert try_parse_llm_json("") is None
        assert try_parse_llm_json(None) is None

    def test_parse_llm_json_always_dict(self):
        assert parse_llm_json('["x"]') == {}
        assert parse_llm_json("nope") == {}


class TestLenientParse:
    def test_parsed(self):
        outcome = lenient_parse('{"confidence": 0.8}', lambda raw: {"confidence": 0.0})
        assert isinstance(outcome, Parsed)
        assert outcome.data == {"confidence": 0.8}

    def test_degraded_uses_heuristics(self):
        outcome = lenient_parse("confidence: 0.8", lambda raw: {"seen": raw})
        assert isinstance(outcome, Degraded)
        assert outcome.data == {"seen": "confidence: 0.8"}
        assert outcome.reason == "unparseable"

    def test_empty_reply(self):
        outcome = lenient_parse("   ", lambda raw: {})
        match outcome:
            case Degraded(reason=reason):
                assert reason == "empty"
            case _:
                raise AssertionError("expected a degraded outcome")
