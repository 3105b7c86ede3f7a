"""
Configuration Management for KnowWhy

Loads configuration from ~/.knowwhy/config.json and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field, asdict

logger = logging.getLogger("knowwhy.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".knowwhy"
CONFIG_PATH = CONFIG_DIR / "config.json"
DEFAULT_STORE_PATH = CONFIG_DIR / "decisions.json"


@dataclass
class LLMConfig:
    """Shared LLM provider configuration across all components"""
    provider: str = "anthropic"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    google_api_key: str = ""
    google_model: str = "gemini-2.0-flash-exp"
    max_tokens: int = 2048
    timeout: float = 60.0


@dataclass
class EmbeddingConfig:
    """Embedding model configuration"""
    mode: str = "femb"  # fastembed (on-device)
    model: str = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2"


@dataclass
class DetectorConfig:
    """Decision detector configuration"""
    window_size: int = 10
    window_overlap: int = 0
    confidence_threshold: float = 0.7
    max_retries: int = 3  # total attempts per guarded call
    concurrency: int = 1
    agent_version: str = "detector-1.0"


@dataclass
class SynthesizerConfig:
    """Brief synthesizer configuration (context extraction + rationale generation)"""
    search_top_k: int = 10
    include_related_decisions: bool = True
    related_top_k: int = 5
    citation_threshold: float = 0.7
    max_citations: int = 10
    validation_attempts: int = 3
    hallucination_check_enabled: bool = True
    hallucination_ratio: float = 3.0


@dataclass
class RetrievalConfig:
    """Retrieval engine configuration"""
    decision_weight: float = 0.7
    conversation_weight: float = 0.3
    decision_threshold: float = 0.4
    conversation_threshold: float = 0.3
    max_results: int = 15
    enable_reranking: bool = False
    enable_answer_generation: bool = True
    enable_query_understanding: bool = False
    enable_query_optimization: bool = True


@dataclass
class RateLimitConfig:
    """Token bucket shared by every collaborator call"""
    max_calls: int = 20
    period_seconds: float = 60.0


@dataclass
class PipelineConfig:
    """Capture pipeline configuration"""
    concurrency: int = 4
    persist_invalid_briefs: bool = True
    index_conversations: bool = True


@dataclass
class StoreConfig:
    """Decision store configuration (empty path = in-memory)"""
    path: str = ""


@dataclass
class ServerConfig:
    """HTTP server configuration"""
    host: str = "0.0.0.0"
    port: int = 8090


@dataclass
class KnowWhyConfig:
    """Main KnowWhy configuration"""
    llm: LLMConfig = field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    synthesizer: SynthesizerConfig = field(default_factory=SynthesizerConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_section(cls, data: dict, name: str):
    """Build a section dataclass from config data, ignoring unknown keys"""
    section_data = data.get(name) or {}
    defaults = cls()
    kwargs = {}
    for key, default in asdict(defaults).items():
        if key in section_data:
            kwargs[key] = type(default)(section_data[key]) if default is not None else section_data[key]
    return cls(**kwargs)


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict"""
    return _parse_section(LLMConfig, data, "llm")


def _parse_detector_config(data: dict) -> DetectorConfig:
    """Parse detector section from config dict"""
    return _parse_section(DetectorConfig, data, "detector")


def _parse_synthesizer_config(data: dict) -> SynthesizerConfig:
    """Parse synthesizer section from config dict"""
    return _parse_section(SynthesizerConfig, data, "synthesizer")


def _parse_retrieval_config(data: dict) -> RetrievalConfig:
    """Parse retrieval section from config dict"""
    return _parse_section(RetrievalConfig, data, "retrieval")


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_config() -> KnowWhyConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.knowwhy/config.json)
    3. Default values
    """
    config = KnowWhyConfig()

    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.llm = _parse_llm_config(data)
            config.embedding = _parse_section(EmbeddingConfig, data, "embedding")
            config.detector = _parse_detector_config(data)
            config.synthesizer = _parse_synthesizer_config(data)
            config.retrieval = _parse_retrieval_config(data)
            config.rate_limit = _parse_section(RateLimitConfig, data, "rate_limit")
            config.pipeline = _parse_section(PipelineConfig, data, "pipeline")
            config.store = _parse_section(StoreConfig, data, "store")
            config.server = _parse_section(ServerConfig, data, "server")
        except (json.JSONDecodeError, IOError, TypeError, ValueError) as e:
            logger.warning("Failed to load config file %s: %s", CONFIG_PATH, e)

    if os.getenv("EMBEDDING_MODE"):
        config.embedding.mode = os.getenv("EMBEDDING_MODE")
    if os.getenv("EMBEDDING_MODEL"):
        config.embedding.model = os.getenv("EMBEDDING_MODEL")

    if os.getenv("KNOWWHY_CONFIDENCE_THRESHOLD"):
        config.detector.confidence_threshold = float(os.getenv("KNOWWHY_CONFIDENCE_THRESHOLD"))
    if os.getenv("KNOWWHY_WINDOW_SIZE"):
        config.detector.window_size = int(os.getenv("KNOWWHY_WINDOW_SIZE"))
    if os.getenv("KNOWWHY_ENABLE_RERANKING"):
        config.retrieval.enable_reranking = _env_flag(os.getenv("KNOWWHY_ENABLE_RERANKING"))
    if os.getenv("KNOWWHY_ENABLE_ANSWER_GENERATION"):
        config.retrieval.enable_answer_generation = _env_flag(
            os.getenv("KNOWWHY_ENABLE_ANSWER_GENERATION")
        )
    if os.getenv("KNOWWHY_ENABLE_QUERY_UNDERSTANDING"):
        config.retrieval.enable_query_understanding = _env_flag(
            os.getenv("KNOWWHY_ENABLE_QUERY_UNDERSTANDING")
        )
    if os.getenv("KNOWWHY_STORE_PATH"):
        config.store.path = os.getenv("KNOWWHY_STORE_PATH")
    if os.getenv("KNOWWHY_PORT"):
        config.server.port = int(os.getenv("KNOWWHY_PORT"))

    # LLM env var overrides (track env-sourced keys)
    _env_llm_map = {
        "ANTHROPIC_API_KEY": "anthropic_api_key",
        "ANTHROPIC_MODEL": "anthropic_model",
        "OPENAI_API_KEY": "openai_api_key",
        "OPENAI_MODEL": "openai_model",
        "GOOGLE_API_KEY": "google_api_key",
        "GEMINI_API_KEY": "google_api_key",
        "GOOGLE_MODEL": "google_model",
        "KNOWWHY_LLM_PROVIDER": "provider",
    }
    for env_var, attr in _env_llm_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(config.llm, attr, val)
            config._env_sourced_keys.add(attr)

    return config


def save_config(config: KnowWhyConfig) -> None:
    """Save configuration to file.

    API key fields that were sourced from environment variables are written
    as empty strings so that secrets are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    llm_section = asdict(config.llm)
    for key in ("anthropic_api_key", "openai_api_key", "google_api_key"):
        if key in env_sourced:
            llm_section[key] = ""

    data = {
        "llm": llm_section,
        "embedding": asdict(config.embedding),
        "detector": asdict(config.detector),
        "synthesizer": asdict(config.synthesizer),
        "retrieval": asdict(config.retrieval),
        "rate_limit": asdict(config.rate_limit),
        "pipeline": asdict(config.pipeline),
        "store": asdict(config.store),
        "server": asdict(config.server),
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)


def ensure_directories() -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
