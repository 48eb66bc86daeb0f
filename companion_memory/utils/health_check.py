"""
Health check utilities for the application.
"""

from typing import Any, Dict

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import config
from .kv_store import create_kv_store
from .logging_config import get_logger

logger = get_logger(__name__)


async def get_health_status() -> Dict[str, Any]:
    """Get detailed health status of all components.

    Returns:
        Dictionary with health status of each component
    """
    health_status = {}

    # Check Bedrock LLM
    try:
        llm = BedrockLLM(config.bedrock_llm)
        health_status['bedrock_llm'] = {
            'healthy': llm.health_check(),
            'service': 'Amazon Bedrock LLM',
            'model': config.bedrock_llm.model_id
        }
    except Exception as e:
        health_status['bedrock_llm'] = {'healthy': False, 'service': 'Amazon Bedrock LLM', 'error': str(e)}

    # Check Bedrock Embed
    try:
        embed = BedrockEmbed(config.bedrock_embed)
        health_status['bedrock_embed'] = {
            'healthy': embed.health_check(),
            'service': 'Amazon Bedrock Embed',
            'model': config.bedrock_embed.model_id
        }
    except Exception as e:
        health_status['bedrock_embed'] = {'healthy': False, 'service': 'Amazon Bedrock Embed', 'error': str(e)}

    # Check storage backend
    try:
        store = create_kv_store(config.storage)
        health_status['storage'] = {
            'healthy': await store.health_check(),
            'service': 'Key/value storage',
            'backend': config.storage.backend
        }
    except Exception as e:
        health_status['storage'] = {'healthy': False, 'service': 'Key/value storage', 'error': str(e)}

    unhealthy = [name for name, status in health_status.items() if not status.get('healthy')]
    if unhealthy:
        logger.warning(f'Unhealthy components: {", ".join(unhealthy)}')
    return health_status


async def get_system_info() -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'CompanionMemory',
        'version': '1.0.0',
        'configuration': {
            'bedrock_llm_model': config.bedrock_llm.model_id,
            'bedrock_embed_model': config.bedrock_embed.model_id,
            'embedding_model_version': config.bedrock_embed.model_version,
            'storage_backend': config.storage.backend,
            'max_total_memories': config.memory.max_total_memories,
            'aws_region': config.bedrock_llm.region
        },
        'health_status': await get_health_status()
    }
