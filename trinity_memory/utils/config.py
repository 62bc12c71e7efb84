"""
Configuration management for storage backends, model services and application settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    connect_timeout: int
    read_timeout: int


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float
    connect_timeout: int
    read_timeout: int


@dataclass
class OpenSearchConfig:
    """Configuration for the OpenSearch vector index."""
    endpoint: str
    port: int
    region: str
    service: str
    use_ssl: bool
    index_name: str
    dimension: int
    timeout: int


@dataclass
class DatabaseConfig:
    """Configuration for the relational metadata catalog."""
    url: str
    echo: bool
    pool_timeout: int


@dataclass
class BlobStoreConfig:
    """Configuration for the network file share holding transcripts and documents."""
    mount_path: str
    root_namespace: str


@dataclass
class IndexerConfig:
    """Configuration for file chunking and vector upserts."""
    chunk_size: int
    batch_size: int
    summary_preview_chars: int


@dataclass
class SearchConfig:
    """Configuration for query routing and result ranking."""
    default_limit: int
    semantic_top_k: int
    semantic_weight: float
    structured_bonus: float
    excerpt_window: int
    classify_timeout: float


@dataclass
class TriggerConfig:
    """Configuration for memory rules and trigger actions."""
    default_backup_destination: str
    default_notify_method: str


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
    opensearch: OpenSearchConfig
    database: DatabaseConfig
    blob_store: BlobStoreConfig
    indexer: IndexerConfig
    search: SearchConfig
    trigger: TriggerConfig
    mcp: MCPConfig


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '4096')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
                                          connect_timeout=int(os.getenv('BEDROCK_LLM_CONNECT_TIMEOUT', '10')),
                                          read_timeout=int(os.getenv('BEDROCK_LLM_READ_TIMEOUT', '120')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')),
                                              connect_timeout=int(os.getenv('BEDROCK_EMBED_CONNECT_TIMEOUT', '10')),
                                              read_timeout=int(os.getenv('BEDROCK_EMBED_READ_TIMEOUT', '60')))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         service=os.getenv('OPENSEARCH_AWS_SERVICE', 'aoss'),
                                         use_ssl=_env_bool('OPENSEARCH_USE_SSL', 'true'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'trinity_memory_chunks'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         timeout=int(os.getenv('OPENSEARCH_TIMEOUT', '30')))

    # Metadata catalog configuration
    database_config = DatabaseConfig(url=os.getenv('DATABASE_URL', 'sqlite:///./data/trinity_memory.db'),
                                     echo=_env_bool('DATABASE_ECHO', 'false'),
                                     pool_timeout=int(os.getenv('DATABASE_POOL_TIMEOUT', '30')))

    # File share configuration
    blob_store_config = BlobStoreConfig(mount_path=os.getenv('BLOB_MOUNT_PATH', './data/nas'),
                                        root_namespace=os.getenv('BLOB_ROOT_NAMESPACE', 'trinity'))

    indexer_config = IndexerConfig(chunk_size=int(os.getenv('INDEXER_CHUNK_SIZE', '1000')),
                                   batch_size=int(os.getenv('INDEXER_BATCH_SIZE', '100')),
                                   summary_preview_chars=int(os.getenv('INDEXER_SUMMARY_PREVIEW_CHARS', '200')))

    search_config = SearchConfig(default_limit=int(os.getenv('SEARCH_DEFAULT_LIMIT', '10')),
                                 semantic_top_k=int(os.getenv('SEARCH_SEMANTIC_TOP_K', '20')),
                                 semantic_weight=float(os.getenv('SEARCH_SEMANTIC_WEIGHT', '1.5')),
                                 structured_bonus=float(os.getenv('SEARCH_STRUCTURED_BONUS', '0.5')),
                                 excerpt_window=int(os.getenv('SEARCH_EXCERPT_WINDOW', '500')),
                                 classify_timeout=float(os.getenv('SEARCH_CLASSIFY_TIMEOUT', '10.0')))

    trigger_config = TriggerConfig(default_backup_destination=os.getenv('TRIGGER_DEFAULT_BACKUP_DESTINATION', 'gdrive'),
                                   default_notify_method=os.getenv('TRIGGER_DEFAULT_NOTIFY_METHOD', 'email'))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     database=database_config,
                     blob_store=blob_store_config,
                     indexer=indexer_config,
                     search=search_config,
                     trigger=trigger_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
