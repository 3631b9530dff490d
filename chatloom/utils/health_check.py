"""
Health check utilities for the application.
"""

from typing import Any, Dict, Optional

from .bedrock_batch import BedrockBatch
from .bedrock_llm import BedrockLLM
from .config import AppConfig, config
from .logging_config import get_logger
from .opensearch_client import OpenSearchClient
from .s3_storage import S3Storage

logger = get_logger(__name__)


def get_health_status(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Returns:
        Dictionary with health status of each component
    """
    app_config = app_config or config
    health_status = {}

    # Check Bedrock LLM
    try:
        llm = BedrockLLM(app_config.bedrock_llm)
        health_status['bedrock_llm'] = {
            'healthy': llm.health_check(),
            'service': 'Amazon Bedrock LLM',
            'models': dict(app_config.bedrock_llm.models)
        }
    except Exception as e:
        health_status['bedrock_llm'] = {'healthy': False, 'service': 'Amazon Bedrock LLM', 'error': str(e)}

    # Check Bedrock batch inference
    try:
        batch = BedrockBatch(app_config.bedrock_batch)
        health_status['bedrock_batch'] = {
            'healthy': batch.health_check(),
            'service': 'Amazon Bedrock Batch Inference',
            'model': app_config.bedrock_batch.model_id
        }
    except Exception as e:
        health_status['bedrock_batch'] = {
            'healthy': False,
            'service': 'Amazon Bedrock Batch Inference',
            'error': str(e)
        }

    # Check S3
    try:
        storage = S3Storage(app_config.s3)
        health_status['s3'] = {
            'healthy': storage.health_check(),
            'service': 'Amazon S3',
            'bucket_prefix': app_config.s3.bucket_prefix
        }
    except Exception as e:
        health_status['s3'] = {'healthy': False, 'service': 'Amazon S3', 'error': str(e)}

    # Check OpenSearch
    try:
        opensearch = OpenSearchClient(app_config.opensearch)
        health_status['opensearch'] = {
            'healthy': opensearch.health_check(),
            'service': 'Amazon OpenSearch',
            'endpoint': app_config.opensearch.endpoint
        }
    except Exception as e:
        health_status['opensearch'] = {'healthy': False, 'service': 'Amazon OpenSearch', 'error': str(e)}

    unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]
    if unhealthy:
        logger.warning(f'Unhealthy components: {", ".join(unhealthy)}')
    else:
        logger.info('All system components are healthy')

    return health_status


def get_system_info(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    app_config = app_config or config
    return {
        'service_name': 'chatloom',
        'version': '0.1.0',
        'configuration': {
            'models': dict(app_config.bedrock_llm.models),
            'batch_model': app_config.bedrock_batch.model_id,
            'cache_ttl_seconds': dict(app_config.cache.ttl_seconds),
            'aws_region': app_config.bedrock_llm.region
        },
        'health_status': get_health_status(app_config)
    }
