"""
Service container: builds every service once from configuration.
"""

from dataclasses import dataclass
from typing import Optional

from .services.batch_summarization import BatchSummarizationPipeline
from .services.context_window import ContextWindowSegmenter
from .services.generation import GenerationOrchestrator
from .services.prompt_builder import PromptBuilder
from .services.prompt_cache import PromptCacheManager
from .services.record_store import ChatRecordStore
from .services.responder import ChatResponder, SituationalStatus
from .services.scheduler import BatchScheduler
from .services.strategy_selector import StrategySelector
from .services.tool_registry import ToolRegistry
from .services.tools import register_builtin_tools
from .utils.bedrock_batch import BedrockBatch
from .utils.bedrock_llm import BedrockLLM
from .utils.config import AppConfig
from .utils.logging_config import get_logger
from .utils.opensearch_client import OpenSearchClient, OpenSearchError
from .utils.s3_storage import S3Storage

logger = get_logger(__name__)


@dataclass
class Services:
    store: ChatRecordStore
    llm: BedrockLLM
    responder: ChatResponder
    pipeline: BatchSummarizationPipeline
    scheduler: BatchScheduler
    orchestrator: GenerationOrchestrator

    def shutdown(self) -> None:
        self.orchestrator.shutdown()


def build_services(app_config: Optional[AppConfig] = None, status: Optional[SituationalStatus] = None) -> Services:
    """
    Construct the engine.

    Args:
        app_config: AppConfig instance, uses default if None
        status: Situational status provider for replies

    Returns:
        Services bundle
    """
    if app_config is None:
        from .utils.config import config as default_config
        app_config = default_config

    store = ChatRecordStore(OpenSearchClient(app_config.opensearch))
    try:
        store.create_indexes()
    except OpenSearchError as e:
        logger.warning(f'Failed to create OpenSearch indexes: {e}')

    llm = BedrockLLM(app_config.bedrock_llm)
    prompts = PromptBuilder(app_config.persona.bot_user_id)
    segmenter = ContextWindowSegmenter(chars_per_token=app_config.bedrock_llm.chars_per_token)
    registry = register_builtin_tools(ToolRegistry(disabled=app_config.generation.disabled_tools), store)
    orchestrator = GenerationOrchestrator(llm, registry, app_config.generation)

    responder = ChatResponder(store=store,
                              selector=StrategySelector(store, llm, prompts, app_config.persona,
                                                        app_config.generation),
                              segmenter=segmenter,
                              prompts=prompts,
                              caches=PromptCacheManager(store, llm, app_config.cache),
                              registry=registry,
                              orchestrator=orchestrator,
                              generation=app_config.generation,
                              persona=app_config.persona,
                              status=status)

    pipeline = BatchSummarizationPipeline(store=store,
                                          storage=S3Storage(app_config.s3),
                                          batch_client=BedrockBatch(app_config.bedrock_batch),
                                          segmenter=segmenter,
                                          prompts=prompts,
                                          config=app_config.batch,
                                          batch_config=app_config.bedrock_batch,
                                          persona=app_config.persona)

    logger.info(f'Initialized chatloom services ({app_config.environment})')
    return Services(store=store,
                    llm=llm,
                    responder=responder,
                    pipeline=pipeline,
                    scheduler=BatchScheduler(store, pipeline, app_config.batch),
                    orchestrator=orchestrator)
