"""
Configuration management for external services and memory engine tuning.
"""

import os
from dataclasses import dataclass
from typing import Tuple

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class BedrockLLMConfig:
    """Configuration for the Amazon Bedrock text completion model."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for the Amazon Bedrock embedding model."""
    region: str
    model_id: str
    dimension: int
    batch_size: int
    model_version: str  # Tag stored on memories to detect stale vectors
    retry_attempts: int
    retry_delay: float


@dataclass
class StorageConfig:
    """Configuration for the key/value persistence backend."""
    backend: str  # memory | file | dynamodb
    file_path: str
    dynamodb_table: str
    region: str
    key_prefix: str


@dataclass
class DecayConfig:
    """Configuration for importance decay and adaptive decay rates."""
    min_decay_rate: float
    max_decay_rate: float
    default_decay_rate: float
    positive_weight: float
    negative_weight: float
    usage_threshold: int
    usage_bonus_per_use: float
    max_usage_bonus: float
    stale_threshold_days: float
    stale_decay_multiplier: float
    rate_hysteresis: float
    feedback_weight: float
    verified_multiplier: float


@dataclass
class FeedbackConfig:
    """Configuration for feedback score adjustments."""
    engage_boost: float
    dismiss_penalty: float
    usage_boost: float


@dataclass
class ExtractionConfig:
    """Configuration for memory extraction scheduling and validation."""
    idle_delay_seconds: float
    batch_size: int
    min_interval_seconds: float
    max_extractions_per_hour: int
    timeout_seconds: float
    min_confidence: float
    max_content_length: int
    duplicate_similarity: float


@dataclass
class RetrievalConfig:
    """Configuration for hybrid retrieval ranking."""
    semantic_weight: float
    keyword_weight: float
    min_score: float
    limit: int
    max_memories: int
    min_importance: float
    min_confidence: float
    max_context_tokens: int


@dataclass
class MemoryConfig:
    """Configuration for memory storage limits and pruning."""
    max_total_memories: int
    max_memories_per_type: int
    max_storage_bytes: int
    prune_threshold: float
    prune_target: float


@dataclass
class LinkingConfig:
    """Configuration for entity and context linking."""
    semantic_threshold: float
    min_shared_keywords: int
    min_relevance: float
    max_results: int
    max_entities_per_memory: int
    min_entity_length: int
    max_related_memories: int


@dataclass
class SummaryConfig:
    """Configuration for conversation summaries."""
    min_messages: int
    max_summary_length: int
    max_key_topics: int


@dataclass
class ProactiveConfig:
    """Configuration for proactive engagement."""
    enabled: bool
    welcome_back_enabled: bool
    follow_up_enabled: bool
    context_match_enabled: bool
    random_recall_enabled: bool
    cooldown_minutes: float
    max_per_session: int
    memory_cooldown_hours: float
    dismissed_cooldown_hours: float
    ignored_cooldown_hours: float
    history_limit: int
    context_match_threshold: float
    short_absence_days: int  # Whole days away before a welcome-back greeting
    medium_absence_days: int
    long_absence_days: int
    extended_absence_days: int
    recall_base_probability: float
    recall_probability_per_hour: float
    recall_max_probability: float
    recall_min_importance: float
    recall_min_confidence: float
    recall_recency_days: float


@dataclass
class FollowUpConfig:
    """Configuration for follow-up question rules."""
    min_importance: float
    stale_project_days: int
    person_check_days: int
    skill_milestone_days: Tuple[int, ...]
    skill_milestone_window_days: int
    upcoming_window_hours: float
    event_passed_grace_hours: float


@dataclass
class ServiceConfig:
    """Configuration for the memory management facade."""
    request_timeout_seconds: float
    deadline_margin_seconds: float  # Kept free for storage writes after the last model call


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    storage: StorageConfig
    decay: DecayConfig
    feedback: FeedbackConfig
    extraction: ExtractionConfig
    retrieval: RetrievalConfig
    memory: MemoryConfig
    linking: LinkingConfig
    summary: SummaryConfig
    proactive: ProactiveConfig
    follow_up: FollowUpConfig
    service: ServiceConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '1024')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.2')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              batch_size=int(os.getenv('BEDROCK_EMBED_BATCH_SIZE', '10')),
                                              model_version=os.getenv('BEDROCK_EMBED_MODEL_VERSION', 'titan-embed-text-v2-1024'),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Persistence configuration
    storage_config = StorageConfig(backend=os.getenv('STORAGE_BACKEND', 'file'),
                                   file_path=os.getenv('STORAGE_FILE_PATH', 'companion_memory.json'),
                                   dynamodb_table=os.getenv('STORAGE_DYNAMODB_TABLE', 'companion-memory'),
                                   region=os.getenv('STORAGE_AWS_REGION', 'us-east-1'),
                                   key_prefix=os.getenv('STORAGE_KEY_PREFIX', 'companion'))

    # Decay configuration, stale and usage thresholds are empirically tuned
    decay_config = DecayConfig(min_decay_rate=float(os.getenv('DECAY_MIN_RATE', '0.5')),
                               max_decay_rate=float(os.getenv('DECAY_MAX_RATE', '2.0')),
                               default_decay_rate=float(os.getenv('DECAY_DEFAULT_RATE', '1.0')),
                               positive_weight=float(os.getenv('DECAY_POSITIVE_WEIGHT', '0.15')),
                               negative_weight=float(os.getenv('DECAY_NEGATIVE_WEIGHT', '0.1')),
                               usage_threshold=int(os.getenv('DECAY_USAGE_THRESHOLD', '3')),
                               usage_bonus_per_use=float(os.getenv('DECAY_USAGE_BONUS_PER_USE', '0.02')),
                               max_usage_bonus=float(os.getenv('DECAY_MAX_USAGE_BONUS', '0.3')),
                               stale_threshold_days=float(os.getenv('DECAY_STALE_THRESHOLD_DAYS', '30')),
                               stale_decay_multiplier=float(os.getenv('DECAY_STALE_MULTIPLIER', '1.5')),
                               rate_hysteresis=float(os.getenv('DECAY_RATE_HYSTERESIS', '0.05')),
                               feedback_weight=float(os.getenv('DECAY_FEEDBACK_WEIGHT', '0.2')),
                               verified_multiplier=float(os.getenv('DECAY_VERIFIED_MULTIPLIER', '1.5')))

    feedback_config = FeedbackConfig(engage_boost=float(os.getenv('FEEDBACK_ENGAGE_BOOST', '0.1')),
                                     dismiss_penalty=float(os.getenv('FEEDBACK_DISMISS_PENALTY', '-0.05')),
                                     usage_boost=float(os.getenv('FEEDBACK_USAGE_BOOST', '0.02')))

    # Extraction configuration
    extraction_config = ExtractionConfig(idle_delay_seconds=float(os.getenv('EXTRACTION_IDLE_DELAY_SECONDS', '30')),
                                         batch_size=int(os.getenv('EXTRACTION_BATCH_SIZE', '10')),
                                         min_interval_seconds=float(os.getenv('EXTRACTION_MIN_INTERVAL_SECONDS', '300')),
                                         max_extractions_per_hour=int(os.getenv('EXTRACTION_MAX_PER_HOUR', '12')),
                                         timeout_seconds=float(os.getenv('EXTRACTION_TIMEOUT_SECONDS', '30')),
                                         min_confidence=float(os.getenv('EXTRACTION_MIN_CONFIDENCE', '0.5')),
                                         max_content_length=int(os.getenv('EXTRACTION_MAX_CONTENT_LENGTH', '500')),
                                         duplicate_similarity=float(os.getenv('EXTRACTION_DUPLICATE_SIMILARITY', '0.6')))

    # Retrieval configuration
    retrieval_config = RetrievalConfig(semantic_weight=float(os.getenv('RETRIEVAL_SEMANTIC_WEIGHT', '0.6')),
                                       keyword_weight=float(os.getenv('RETRIEVAL_KEYWORD_WEIGHT', '0.4')),
                                       min_score=float(os.getenv('RETRIEVAL_MIN_SCORE', '0.3')),
                                       limit=int(os.getenv('RETRIEVAL_LIMIT', '20')),
                                       max_memories=int(os.getenv('RETRIEVAL_MAX_MEMORIES', '15')),
                                       min_importance=float(os.getenv('RETRIEVAL_MIN_IMPORTANCE', '0.3')),
                                       min_confidence=float(os.getenv('RETRIEVAL_MIN_CONFIDENCE', '0.5')),
                                       max_context_tokens=int(os.getenv('RETRIEVAL_MAX_CONTEXT_TOKENS', '500')))

    # Memory configuration
    memory_config = MemoryConfig(max_total_memories=int(os.getenv('MEMORY_MAX_TOTAL', '500')),
                                 max_memories_per_type=int(os.getenv('MEMORY_MAX_PER_TYPE', '100')),
                                 max_storage_bytes=int(os.getenv('MEMORY_MAX_STORAGE_BYTES', str(5 * 1024 * 1024))),
                                 prune_threshold=float(os.getenv('MEMORY_PRUNE_THRESHOLD', '0.9')),
                                 prune_target=float(os.getenv('MEMORY_PRUNE_TARGET', '0.7')))

    linking_config = LinkingConfig(semantic_threshold=float(os.getenv('LINKING_SEMANTIC_THRESHOLD', '0.5')),
                                   min_shared_keywords=int(os.getenv('LINKING_MIN_SHARED_KEYWORDS', '2')),
                                   min_relevance=float(os.getenv('LINKING_MIN_RELEVANCE', '0.3')),
                                   max_results=int(os.getenv('LINKING_MAX_RESULTS', '5')),
                                   max_entities_per_memory=int(os.getenv('LINKING_MAX_ENTITIES_PER_MEMORY', '10')),
                                   min_entity_length=int(os.getenv('LINKING_MIN_ENTITY_LENGTH', '2')),
                                   max_related_memories=int(os.getenv('LINKING_MAX_RELATED_MEMORIES', '10')))

    summary_config = SummaryConfig(min_messages=int(os.getenv('SUMMARY_MIN_MESSAGES', '10')),
                                   max_summary_length=int(os.getenv('SUMMARY_MAX_LENGTH', '500')),
                                   max_key_topics=int(os.getenv('SUMMARY_MAX_KEY_TOPICS', '5')))

    # Proactive configuration
    proactive_config = ProactiveConfig(enabled=_env_bool('PROACTIVE_ENABLED', 'true'),
                                       welcome_back_enabled=_env_bool('PROACTIVE_WELCOME_BACK_ENABLED', 'true'),
                                       follow_up_enabled=_env_bool('PROACTIVE_FOLLOW_UP_ENABLED', 'true'),
                                       context_match_enabled=_env_bool('PROACTIVE_CONTEXT_MATCH_ENABLED', 'true'),
                                       random_recall_enabled=_env_bool('PROACTIVE_RANDOM_RECALL_ENABLED', 'true'),
                                       cooldown_minutes=float(os.getenv('PROACTIVE_COOLDOWN_MINUTES', '10')),
                                       max_per_session=int(os.getenv('PROACTIVE_MAX_PER_SESSION', '10')),
                                       memory_cooldown_hours=float(os.getenv('PROACTIVE_MEMORY_COOLDOWN_HOURS', '24')),
                                       dismissed_cooldown_hours=float(os.getenv('PROACTIVE_DISMISSED_COOLDOWN_HOURS', '48')),
                                       ignored_cooldown_hours=float(os.getenv('PROACTIVE_IGNORED_COOLDOWN_HOURS', '24')),
                                       history_limit=int(os.getenv('PROACTIVE_HISTORY_LIMIT', '20')),
                                       context_match_threshold=float(os.getenv('PROACTIVE_CONTEXT_MATCH_THRESHOLD', '0.5')),
                                       short_absence_days=int(os.getenv('PROACTIVE_SHORT_ABSENCE_DAYS', '1')),
                                       medium_absence_days=int(os.getenv('PROACTIVE_MEDIUM_ABSENCE_DAYS', '3')),
                                       long_absence_days=int(os.getenv('PROACTIVE_LONG_ABSENCE_DAYS', '7')),
                                       extended_absence_days=int(os.getenv('PROACTIVE_EXTENDED_ABSENCE_DAYS', '30')),
                                       recall_base_probability=float(os.getenv('PROACTIVE_RECALL_BASE_PROBABILITY', '0.05')),
                                       recall_probability_per_hour=float(os.getenv('PROACTIVE_RECALL_PROBABILITY_PER_HOUR', '0.02')),
                                       recall_max_probability=float(os.getenv('PROACTIVE_RECALL_MAX_PROBABILITY', '0.3')),
                                       recall_min_importance=float(os.getenv('PROACTIVE_RECALL_MIN_IMPORTANCE', '0.5')),
                                       recall_min_confidence=float(os.getenv('PROACTIVE_RECALL_MIN_CONFIDENCE', '0.6')),
                                       recall_recency_days=float(os.getenv('PROACTIVE_RECALL_RECENCY_DAYS', '14')))

    milestone_days = os.getenv('FOLLOW_UP_SKILL_MILESTONE_DAYS', '7,30,90')
    follow_up_config = FollowUpConfig(min_importance=float(os.getenv('FOLLOW_UP_MIN_IMPORTANCE', '0.3')),
                                      stale_project_days=int(os.getenv('FOLLOW_UP_STALE_PROJECT_DAYS', '7')),
                                      person_check_days=int(os.getenv('FOLLOW_UP_PERSON_CHECK_DAYS', '14')),
                                      skill_milestone_days=tuple(int(d) for d in milestone_days.split(',') if d.strip()),
                                      skill_milestone_window_days=int(os.getenv('FOLLOW_UP_SKILL_MILESTONE_WINDOW_DAYS', '1')),
                                      upcoming_window_hours=float(os.getenv('FOLLOW_UP_UPCOMING_WINDOW_HOURS', '24')),
                                      event_passed_grace_hours=float(os.getenv('FOLLOW_UP_EVENT_PASSED_GRACE_HOURS', '24')))

    service_config = ServiceConfig(request_timeout_seconds=float(os.getenv('SERVICE_REQUEST_TIMEOUT_SECONDS', '45')),
                                   deadline_margin_seconds=float(os.getenv('SERVICE_DEADLINE_MARGIN_SECONDS', '0.5')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     storage=storage_config,
                     decay=decay_config,
                     feedback=feedback_config,
                     extraction=extraction_config,
                     retrieval=retrieval_config,
                     memory=memory_config,
                     linking=linking_config,
                     summary=summary_config,
                     proactive=proactive_config,
                     follow_up=follow_up_config,
                     service=service_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
