"""
Builds the storage clients and services from configuration and wires them together.
"""

from dataclasses import dataclass
from typing import Optional

from .services.conversation_analysis import ConversationAnalysisService
from .services.file_indexer import FileIndexer
from .services.memory_service import MemoryService
from .services.proposal_agent import ProposalAgent
from .services.query_parser import QueryParser
from .services.search_service import SearchService
from .services.trigger_service import TriggerService
from .utils.bedrock_embed import BedrockEmbed
from .utils.bedrock_llm import BedrockLLM
from .utils.blob_store import LocalBlobStore
from .utils.catalog_client import CatalogClient
from .utils.config import AppConfig
from .utils.errors import DependencyError
from .utils.logging_config import get_logger
from .utils.opensearch_client import OpenSearchClient

logger = get_logger(__name__)


@dataclass
class MemorySystem:
    """Every client and service of one running backend."""
    config: AppConfig
    catalog: CatalogClient
    blob_store: LocalBlobStore
    vector_store: OpenSearchClient
    embedder: BedrockEmbed
    llm: BedrockLLM
    indexer: FileIndexer
    query_parser: QueryParser
    search: SearchService
    triggers: TriggerService
    analysis: ConversationAnalysisService
    memory: MemoryService
    proposals: ProposalAgent

    def close(self) -> None:
        self.query_parser.close()
        self.search.close()
        self.catalog.engine.dispose()


def build_memory_system(config: AppConfig,
                        catalog: Optional[CatalogClient] = None,
                        blob_store: Optional[LocalBlobStore] = None,
                        vector_store: Optional[OpenSearchClient] = None,
                        embedder: Optional[BedrockEmbed] = None,
                        llm: Optional[BedrockLLM] = None) -> MemorySystem:
    """
    Build the backend. Pre-built clients replace the ones that would be built from config.

    Args:
        config: Application configuration
        catalog: Metadata catalog client
        blob_store: File share
        vector_store: Vector index client
        embedder: Embedding client
        llm: Model client

    Returns:
        MemorySystem
    """
    catalog = catalog or CatalogClient(config.database)
    catalog.create_schema()

    blob_store = blob_store or LocalBlobStore(config.blob_store)
    vector_store = vector_store or OpenSearchClient(config.opensearch)
    embedder = embedder or BedrockEmbed(config.bedrock_embed)
    llm = llm or BedrockLLM(config.bedrock_llm)

    try:
        vector_store.create_index_if_not_exists()
    except DependencyError as e:
        logger.warning(f'Failed to create OpenSearch index: {e}')

    indexer = FileIndexer(catalog, blob_store, vector_store, embedder, config.indexer)
    query_parser = QueryParser(llm, config.search)
    search = SearchService(catalog, blob_store, vector_store, embedder, query_parser, config.search)
    triggers = TriggerService(catalog, config.trigger)
    analysis = ConversationAnalysisService(llm)
    memory = MemoryService(catalog, blob_store, indexer, triggers, analysis, config.blob_store)
    proposals = ProposalAgent(catalog, blob_store, indexer, llm, config.blob_store)

    logger.info(f'Memory system ready ({config.environment})')
    return MemorySystem(config=config,
                        catalog=catalog,
                        blob_store=blob_store,
                        vector_store=vector_store,
                        embedder=embedder,
                        llm=llm,
                        indexer=indexer,
                        query_parser=query_parser,
                        search=search,
                        triggers=triggers,
                        analysis=analysis,
                        memory=memory,
                        proposals=proposals)
