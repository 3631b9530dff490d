"""
Configuration management for AWS services and application settings.
"""

import os
from dataclasses import dataclass
from typing import Dict, List

from dotenv import load_dotenv

load_dotenv()

QUALITY_TIERS = ('low', 'regular', 'advanced')

DEFAULT_PERSONA_PROMPT = ('You are a friendly regular of this group chat. Keep answers short, '
                          'stay in character and pay attention to who is talking to you.')

DEFAULT_SUMMARIZER_PROMPT = ('You are a careful chat archivist. Split chat logs into separate conversations, '
                             'summarize them and rate the participants. Never invent facts.')

DEFAULT_STRATEGY_PROMPT = ('You decide how the chat character should react to the latest message. '
                           'Rate every fitting strategy, the best fitting one with the highest weight.')


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(',') if item.strip()]


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    models: Dict[str, str]
    temperatures: Dict[str, float]
    max_tokens: int
    retry_attempts: int
    retry_delay: float
    read_timeout: int
    chars_per_token: float


@dataclass
class BedrockBatchConfig:
    """Configuration for Amazon Bedrock batch inference jobs."""
    region: str
    model_id: str
    role_arn: str
    job_name_prefix: str
    timeout_hours: int
    retry_attempts: int
    retry_delay: float


@dataclass
class S3Config:
    """Configuration for the per-chat batch buckets."""
    region: str
    bucket_prefix: str


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_prefix: str
    service: str


@dataclass
class CacheConfig:
    """Configuration for prompt caches."""
    ttl_seconds: Dict[str, int]
    lookahead_margin_seconds: int
    min_tokens: int


@dataclass
class GenerationConfig:
    """Configuration for answer generation."""
    max_iterations: int
    turn_timeout_seconds: float
    short_window_messages: int
    extended_window_messages: int
    short_window_tokens: int
    extended_window_tokens: int
    min_gap_seconds: float
    classification_window_messages: int
    tool_tiers: List[str]
    disabled_tools: List[str]


@dataclass
class BatchConfig:
    """Configuration for batch summarization."""
    token_budget: int
    min_messages: int
    open_tail_window: int
    scan_limit: int
    max_age_hours: float
    poll_interval_seconds: int
    time_anchor_minutes: int
    max_workers: int
    submit_backoff_minutes: int


@dataclass
class PersonaConfig:
    """Prompts and identity of the chat character."""
    bot_user_id: int
    character_prompt: str
    summarizer_prompt: str
    strategy_prompt: str


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
    bedrock_batch: BedrockBatchConfig
    s3: S3Config
    opensearch: OpenSearchConfig
    cache: CacheConfig
    generation: GenerationConfig
    batch: BatchConfig
    persona: PersonaConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')
    region = os.getenv('AWS_REGION', 'us-east-1')

    # Bedrock configuration, one model per quality tier
    bedrock_llm_config = BedrockLLMConfig(
        region=os.getenv('BEDROCK_LLM_AWS_REGION', region),
        models={
            'low': os.getenv('BEDROCK_LLM_MODEL_LOW', 'anthropic.claude-3-haiku-20240307-v1:0'),
            'regular': os.getenv('BEDROCK_LLM_MODEL_REGULAR', 'anthropic.claude-3-5-haiku-20241022-v1:0'),
            'advanced': os.getenv('BEDROCK_LLM_MODEL_ADVANCED', 'anthropic.claude-3-7-sonnet-20250219-v1:0'),
        },
        temperatures={
            'low': float(os.getenv('BEDROCK_LLM_TEMPERATURE_LOW', '0.0')),
            'regular': float(os.getenv('BEDROCK_LLM_TEMPERATURE_REGULAR', '0.9')),
            'advanced': float(os.getenv('BEDROCK_LLM_TEMPERATURE_ADVANCED', '1.0')),
        },
        max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '2048')),
        retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
        retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
        read_timeout=int(os.getenv('BEDROCK_LLM_READ_TIMEOUT', '120')),
        chars_per_token=float(os.getenv('BEDROCK_LLM_CHARS_PER_TOKEN', '4.0')))

    bedrock_batch_config = BedrockBatchConfig(
        region=os.getenv('BEDROCK_BATCH_AWS_REGION', region),
        model_id=os.getenv('BEDROCK_BATCH_MODEL_ID', 'anthropic.claude-3-7-sonnet-20250219-v1:0'),
        role_arn=os.getenv('BEDROCK_BATCH_ROLE_ARN', ''),
        job_name_prefix=os.getenv('BEDROCK_BATCH_JOB_PREFIX', 'chatloom'),
        timeout_hours=int(os.getenv('BEDROCK_BATCH_TIMEOUT_HOURS', '72')),
        retry_attempts=int(os.getenv('BEDROCK_BATCH_RETRY_ATTEMPTS', '3')),
        retry_delay=float(os.getenv('BEDROCK_BATCH_RETRY_DELAY', '1.0')))

    s3_config = S3Config(region=os.getenv('S3_AWS_REGION', region), bucket_prefix=os.getenv('S3_BUCKET_PREFIX', 'chatloom'))

    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', region),
                                         index_prefix=os.getenv('OPENSEARCH_INDEX_PREFIX', 'chatloom'),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'aoss'))

    # Tier TTL of 0 disables caching for that tier
    cache_config = CacheConfig(ttl_seconds={
        'low': int(os.getenv('CACHE_TTL_LOW', '0')),
        'regular': int(os.getenv('CACHE_TTL_REGULAR', str(60 * 60 * 4))),
        'advanced': int(os.getenv('CACHE_TTL_ADVANCED', str(60 * 30))),
    },
                               lookahead_margin_seconds=int(os.getenv('CACHE_LOOKAHEAD_MARGIN_SECONDS', '300')),
                               min_tokens=int(os.getenv('CACHE_MIN_TOKENS', '1024')))

    generation_config = GenerationConfig(
        max_iterations=int(os.getenv('GENERATION_MAX_ITERATIONS', '8')),
        turn_timeout_seconds=float(os.getenv('GENERATION_TURN_TIMEOUT_SECONDS', '90')),
        short_window_messages=int(os.getenv('CONTEXT_SHORT_MESSAGES', '50')),
        extended_window_messages=int(os.getenv('CONTEXT_EXTENDED_MESSAGES', '3000')),
        short_window_tokens=int(os.getenv('CONTEXT_SHORT_TOKENS', '8000')),
        extended_window_tokens=int(os.getenv('CONTEXT_EXTENDED_TOKENS', '120000')),
        min_gap_seconds=float(os.getenv('CONTEXT_MIN_GAP_SECONDS', '60')),
        classification_window_messages=int(os.getenv('CLASSIFICATION_WINDOW_MESSAGES', '100')),
        tool_tiers=_env_list('GENERATION_TOOL_TIERS', 'regular,advanced'),
        disabled_tools=_env_list('GENERATION_DISABLED_TOOLS', ''))

    batch_config = BatchConfig(token_budget=int(os.getenv('BATCH_TOKEN_BUDGET', '500000')),
                               min_messages=int(os.getenv('BATCH_MIN_MESSAGES', '100')),
                               open_tail_window=int(os.getenv('BATCH_OPEN_TAIL_WINDOW', '100')),
                               scan_limit=int(os.getenv('BATCH_SCAN_LIMIT', '10000')),
                               max_age_hours=float(os.getenv('BATCH_MAX_AGE_HOURS', '48')),
                               poll_interval_seconds=int(os.getenv('BATCH_POLL_INTERVAL_SECONDS', '300')),
                               time_anchor_minutes=int(os.getenv('BATCH_TIME_ANCHOR_MINUTES', '15')),
                               max_workers=int(os.getenv('BATCH_MAX_WORKERS', '4')),
                               submit_backoff_minutes=int(os.getenv('BATCH_SUBMIT_BACKOFF_MINUTES', '30')))

    persona_config = PersonaConfig(bot_user_id=int(os.getenv('BOT_USER_ID', '0')),
                                   character_prompt=os.getenv('PERSONA_CHARACTER_PROMPT', DEFAULT_PERSONA_PROMPT),
                                   summarizer_prompt=os.getenv('PERSONA_SUMMARIZER_PROMPT', DEFAULT_SUMMARIZER_PROMPT),
                                   strategy_prompt=os.getenv('PERSONA_STRATEGY_PROMPT', DEFAULT_STRATEGY_PROMPT))

    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_batch=bedrock_batch_config,
                     s3=s3_config,
                     opensearch=opensearch_config,
                     cache=cache_config,
                     generation=generation_config,
                     batch=batch_config,
                     persona=persona_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
