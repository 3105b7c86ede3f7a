"""
Query Processor

Understands a question before it is searched: classifies the intent,
extracts entities (topic, time range, stakeholders, tags) and rewrites the
question into a query tuned for semantic search.

One model call per query. When the model is unreachable or its reply cannot
be parsed, intent and time range come from local patterns and the raw
question is searched unchanged.
"""

import logging
import math
import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from ..common.gateway import LanguageModel
from ..common.llm_utils import Degraded, Parsed, lenient_parse

logger = logging.getLogger("knowwhy.retriever.query_processor")

FALLBACK_CONFIDENCE = 0.3
DEFAULT_CONFIDENCE = 0.5
MAX_SEARCH_QUERY_CHARS = 500


class QueryIntent(str, Enum):
    """What the asker is after"""
    DECISION_SEARCH = "decision_search"  # "Why did we choose X?"
    CONTEXT_SEARCH = "context_search"  # "What did people say about X?"
    GENERAL = "general_query"
    UNKNOWN = "unknown"


class TimeRange(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class QueryEntities(BaseModel):
    topic: Optional[str] = None
    time_range: Optional[TimeRange] = None
    stakeholders: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    confidence: float = DEFAULT_CONFIDENCE


class QueryUnderstanding(BaseModel):
    """Parsed form of one question"""
    original: str
    intent: QueryIntent = QueryIntent.GENERAL
    query_type: str = "broad"  # specific | broad | exploratory
    entities: QueryEntities = Field(default_factory=QueryEntities)
    search_query: str
    degraded: bool = False


QUERY_PROMPT = """Analyze this question about a team's past decisions and return structured information.

Question: "{query}"

Respond with a valid JSON object:
{{
    "intent": one of ["decision_search", "context_search", "general_query", "unknown"],
    "entities": {{
        "decisionTopic": "main subject of the decision, or null",
        "timeRange": {{"start": "ISO date or null", "end": "ISO date or null"}} or null,
        "stakeholders": ["people or teams mentioned"],
        "tags": ["categories mentioned"],
        "confidence": 0.0 to 1.0
    }},
    "queryType": one of ["specific", "broad", "exploratory"],
    "optimizedQuery": "the question rewritten for semantic search: main subject and keywords, no filler words"
}}

Intent:
- decision_search: looking for specific decisions or their rationale
- context_search: looking for discussions, conversations or background
- general_query: general questions
- unknown: cannot tell

Today is {today}.

JSON:"""


# Local fallback patterns, checked in order
INTENT_PATTERNS = {
    QueryIntent.DECISION_SEARCH: [
        r"why did we (choose|decide|go with|select|pick|adopt|move)",
        r"what (was|were) the (reasoning|rationale|reasons)",
        r"\b(decided|decision|chose|choose|approved)\b",
        r"why .+ over .+",
    ],
    QueryIntent.CONTEXT_SEARCH: [
        r"what did .+ (say|mention|think)",
        r"\b(discuss(ed|ion)?|conversation|thread|talk(ed)? about)\b",
        r"who (said|mentioned|raised)",
    ],
}

TIME_PATTERNS = {
    r"\b(last|past|this) week\b": timedelta(days=7),
    r"\b(last|past|this) month\b|\b30 days\b": timedelta(days=30),
    r"\b(last|past|this) quarter\b|\b3 months\b": timedelta(days=91),
    r"\b(last|past|this) year\b": timedelta(days=365),
}


def detect_intent(query: str) -> QueryIntent:
    lowered = query.lower()
    for intent, patterns in INTENT_PATTERNS.items():
        if any(re.search(p, lowered) for p in patterns):
            return intent
    return QueryIntent.GENERAL


def detect_time_range(query: str, now: datetime) -> Optional[TimeRange]:
    lowered = query.lower()
    for pattern, span in TIME_PATTERNS.items():
        if re.search(pattern, lowered):
            return TimeRange(start=now - span, end=now)
    return None


def _as_str_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    return []


def _as_datetime(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _as_time_range(value: Any) -> Optional[TimeRange]:
    if not isinstance(value, dict):
        return None
    start, end = _as_datetime(value.get("start")), _as_datetime(value.get("end"))
    if start is None and end is None:
        return None
    return TimeRange(start=start, end=end)


def _as_confidence(value: Any, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if math.isnan(value):
        return default
    return min(1.0, max(0.0, float(value)))


class QueryProcessor:
    """
    LLM query understanding with a pattern-based fallback.

    Args:
        llm: Language model (usually the runtime's guarded one)
        model: Optional model override
        optimize: Use the model's rewritten query for search
        clock: Current time, used for relative time ranges
    """

    def __init__(
        self,
        llm: LanguageModel,
        model: Optional[str] = None,
        optimize: bool = True,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._llm = llm
        self._model = model
        self._optimize = optimize
        self._clock = clock

    def build_prompt(self, query: str) -> str:
        return QUERY_PROMPT.format(query=query, today=self._clock().date().isoformat())

    def fallback(self, query: str) -> QueryUnderstanding:
        """Understanding built from local patterns; searches the raw query."""
        return QueryUnderstanding(
            original=query,
            intent=detect_intent(query),
            entities=QueryEntities(
                time_range=detect_time_range(query, self._clock()),
                confidence=FALLBACK_CONFIDENCE,
            ),
            search_query=query,
            degraded=True,
        )

    def _from_model(self, query: str, data: Dict[str, Any]) -> QueryUnderstanding:
        try:
            intent = QueryIntent(str(data.get("intent") or QueryIntent.GENERAL.value))
        except ValueError:
            intent = detect_intent(query)
        entities = data.get("entities") if isinstance(data.get("entities"), dict) else {}
        topic = entities.get("decisionTopic") or entities.get("topic")

        rewritten = str(data.get("optimizedQuery") or "").strip()
        search_query = rewritten[:MAX_SEARCH_QUERY_CHARS] if self._optimize and rewritten else query

        return QueryUnderstanding(
            original=query,
            intent=intent,
            query_type=str(data.get("queryType") or "broad"),
            entities=QueryEntities(
                topic=str(topic) if topic else None,
                time_range=_as_time_range(entities.get("timeRange"))
                or detect_time_range(query, self._clock()),
                stakeholders=_as_str_list(entities.get("stakeholders")),
                tags=_as_str_list(entities.get("tags")),
                confidence=_as_confidence(entities.get("confidence"), DEFAULT_CONFIDENCE),
            ),
            search_query=search_query,
        )

    def understand(self, query: str) -> QueryUnderstanding:
        """Classify and rewrite ``query``. Never raises."""
        try:
            raw = self._llm.complete(self.build_prompt(query), model=self._model)
        except Exception as e:
            logger.warning("Query understanding failed, using raw query: %s", e)
            return self.fallback(query)

        match lenient_parse(raw, lambda _: {}):
            case Parsed(data=data):
                return self._from_model(query, data)
            case Degraded(reason=reason):
                logger.info("Query understanding reply %s, using raw query", reason)
                return self.fallback(query)
