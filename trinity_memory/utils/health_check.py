"""
Health check utilities for the application.
"""

from typing import Any, Callable, Dict, Optional

from .config import AppConfig
from .config import config as default_config
from .logging_config import get_logger

logger = get_logger(__name__)


def _probe(name: str, service: str, check: Callable[[], bool], **details) -> Dict[str, Any]:
    try:
        return {'healthy': bool(check()), 'service': service, **details}
    except Exception as e:
        logger.error(f'{name} health check raised: {e}')
        return {'healthy': False, 'service': service, 'error': str(e)}


def get_health_status(system) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        system: MemorySystem built by bootstrap.build_memory_system

    Returns:
        Dictionary with health status of each component
    """
    config = system.config
    return {
        'catalog': _probe('catalog', 'Metadata catalog', system.catalog.health_check, dialect=system.catalog.engine.dialect.name),
        'blob_store': _probe('blob_store', 'File share', system.blob_store.health_check, mount=config.blob_store.mount_path),
        'opensearch': _probe('opensearch',
                             'Amazon OpenSearch',
                             system.vector_store.health_check,
                             endpoint=config.opensearch.endpoint),
        'bedrock_embed': _probe('bedrock_embed',
                                'Amazon Bedrock Embed',
                                system.embedder.health_check,
                                model=config.bedrock_embed.model_id),
        'bedrock_llm': _probe('bedrock_llm', 'Amazon Bedrock LLM', system.llm.health_check, model=config.bedrock_llm.model_id),
    }


def check_health(system) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    health_status = get_health_status(system)
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        unhealthy = [name for name, status in health_status.items() if not status.get('healthy')]
        logger.warning(f"Unhealthy components: {', '.join(unhealthy)}")

    return all_healthy


def get_system_info(config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get system information and configuration."""
    config = config or default_config
    return {
        'service_name': 'Trinity Memory',
        'version': '1.0.0',
        'environment': config.environment,
        'configuration': {
            'bedrock_llm_model': config.bedrock_llm.model_id,
            'bedrock_embed_model': config.bedrock_embed.model_id,
            'opensearch_index': config.opensearch.index_name,
            'blob_root_namespace': config.blob_store.root_namespace,
            'chunk_size': config.indexer.chunk_size,
            'aws_region': config.bedrock_llm.region
        }
    }
