"""
OpenSearch client wrapper for chunk embeddings and filtered vector similarity search.
"""

import time
from typing import Any, Dict, List, Optional, Sequence

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection, helpers
from opensearchpy.exceptions import NotFoundError as OpenSearchNotFoundError
from opensearchpy.exceptions import OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import VectorEntry, VectorHit
from .config import OpenSearchConfig
from .errors import DependencyError
from .logging_config import get_logger

logger = get_logger(__name__)

# Metadata fields stored next to each chunk embedding
METADATA_FIELDS = ('user_id', 'file_path', 'file_type', 'chunk_index', 'chunk_count', 'conversation_id', 'tags', 'preview',
                   'timestamp')


class OpenSearchError(DependencyError):
    """Custom exception for OpenSearch errors."""
    pass


def build_filter_clauses(filters: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Translate a metadata predicate into OpenSearch filter clauses.

    Args:
        filters: Mapping of field to a scalar (equality) or ``{'$in': [...]}``

    Returns:
        List of term/terms clauses
    """
    clauses = []
    for field_name, value in filters.items():
        if value is None:
            continue
        if isinstance(value, dict):
            values = value.get('$in')
            if values is None:
                raise OpenSearchError(f'Unsupported filter operator for {field_name}: {sorted(value)}')
            clauses.append({'terms': {field_name: list(values)}})
        else:
            clauses.append({'term': {field_name: value}})
    return clauses


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built opensearch-py client (built from config if None)
        """
        self.config = config
        self.index_name = config.index_name

        if client is None:
            # Parse endpoint to get host
            endpoint = config.endpoint
            if '://' in endpoint:
                # Remove protocol if present
                endpoint = endpoint.split('://', 1)[1]

            auth = None
            if config.use_ssl:
                credentials = boto3.Session().get_credentials()
                auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)

            client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                http_auth=auth,
                                use_ssl=config.use_ssl,
                                verify_certs=config.use_ssl,
                                connection_class=RequestsHttpConnection,
                                timeout=config.timeout)

        self.client = client
        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def create_index_if_not_exists(self, index_name: Optional[str] = None) -> str:
        """
        Create the chunk index if it doesn't exist.

        Args:
            index_name: Name of the index (uses config default if None)

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = index_name or self.index_name

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            index_body = {
                'mappings': {
                    'properties': {
                        'id': {
                            'type': 'keyword'
                        },
                        'user_id': {
                            'type': 'keyword'
                        },
                        'file_path': {
                            'type': 'keyword'
                        },
                        'file_type': {
                            'type': 'keyword'
                        },
                        'chunk_index': {
                            'type': 'integer'
                        },
                        'chunk_count': {
                            'type': 'integer'
                        },
                        'conversation_id': {
                            'type': 'keyword'
                        },
                        'tags': {
                            'type': 'keyword'
                        },
                        'content': {
                            'type': 'text'
                        },
                        'preview': {
                            'type': 'text',
                            'index': False
                        },
                        'embedding': {
                            'type': 'knn_vector',
                            'dimension': self.config.dimension,
                            'method': {
                                'name': 'hnsw',
                                'space_type': 'cosinesimil',
                                'engine': 'nmslib'
                            }
                        },
                        'timestamp': {
                            'type': 'date'
                        }
                    }
                },
                'settings': {
                    'index': {
                        'knn': True,
                        'knn.algo_param.ef_search': 100
                    }
                }
            }

            response = self.client.indices.create(index=index_name, body=index_body)
            logger.info(f'Created index {index_name}')
            if response.get('acknowledged', False):
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def upsert(self, entries: Sequence[VectorEntry], batch_size: int = 100) -> List[str]:
        """
        Write chunk entries, overwriting documents with the same id.

        Args:
            entries: Vector entries to write
            batch_size: Maximum number of documents per bulk request

        Returns:
            Ids of the written entries, in input order

        Raises:
            OpenSearchError: If any batch is rejected
        """
        written = []
        for start in range(0, len(entries), batch_size):
            batch = entries[start:start + batch_size]
            actions = [{
                '_op_type': 'index',
                '_index': self.index_name,
                '_id': entry.id,
                '_source': {
                    'id': entry.id,
                    'content': entry.content,
                    'embedding': entry.embedding,
                    **{key: entry.metadata.get(key)
                       for key in METADATA_FIELDS if entry.metadata.get(key) is not None}
                }
            } for entry in batch]

            try:
                success, errors = helpers.bulk(self.client, actions, raise_on_error=False, refresh='wait_for')
            except OpenSearchException as e:
                logger.error(f'Error upserting {len(batch)} vectors: {e}')
                raise OpenSearchError(f'Failed to upsert vectors: {e}')
            except Exception as e:
                logger.error(f'Unexpected error upserting vectors: {e}')
                raise OpenSearchError(f'Unexpected error upserting vectors: {e}')

            if errors:
                logger.error(f'Bulk upsert rejected {len(errors)} of {len(batch)} vectors: {errors[:3]}')
                raise OpenSearchError(f'Bulk upsert rejected {len(errors)} vectors')

            written.extend(entry.id for entry in batch)
            logger.debug(f'Upserted batch of {success} vectors into {self.index_name}')

        return written

    def similarity_search(self, query_vector: List[float], k: int, filters: Dict[str, Any]) -> List[VectorHit]:
        """
        Perform k-NN similarity search restricted by metadata filters.

        Args:
            query_vector: Query embedding
            k: Number of chunk hits to return
            filters: Metadata predicate; must contain ``user_id``

        Returns:
            List of VectorHit ordered by descending score
        """
        if not filters.get('user_id'):
            raise OpenSearchError('Vector search requires a user_id filter')

        search_body = {
            'size': k,
            'query': {
                'bool': {
                    'must': [{
                        'knn': {
                            'embedding': {
                                'vector': query_vector,
                                'k': k
                            }
                        }
                    }],
                    'filter': build_filter_clauses(filters)
                }
            },
            '_source': {
                'excludes': ['embedding']  # Don't return embedding in results
            }
        }

        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except OpenSearchNotFoundError:
            logger.warning(f'Index {self.index_name} does not exist yet')
            return []
        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in vector search: {e}')
            raise OpenSearchError(f'Unexpected error in vector search: {e}')

        hits = []
        for hit in response['hits']['hits']:
            source = hit['_source']
            hits.append(
                VectorHit(id=hit['_id'],
                          score=float(hit['_score'] or 0.0),
                          content=source.get('content', ''),
                          metadata={key: source.get(key)
                                    for key in METADATA_FIELDS}))

        logger.debug(f"Vector search returned {len(hits)} hits for user {filters['user_id']}")
        return hits

    def delete(self, ids: Sequence[str]) -> int:
        """
        Delete chunk entries by id; ids that no longer exist are ignored.

        Returns:
            Number of documents deleted
        """
        if not ids:
            return 0

        actions = [{'_op_type': 'delete', '_index': self.index_name, '_id': doc_id} for doc_id in ids]
        try:
            success, errors = helpers.bulk(self.client, actions, raise_on_error=False, refresh='wait_for')
        except OpenSearchException as e:
            logger.error(f'Error deleting {len(ids)} vectors: {e}')
            raise OpenSearchError(f'Failed to delete vectors: {e}')
        except Exception as e:
            logger.error(f'Unexpected error deleting vectors: {e}')
            raise OpenSearchError(f'Unexpected error deleting vectors: {e}')

        missing = [error for error in errors if error.get('delete', {}).get('status') == 404]
        if len(missing) != len(errors):
            logger.error(f'Failed to delete {len(errors) - len(missing)} vectors: {errors[:3]}')
            raise OpenSearchError(f'Failed to delete {len(errors) - len(missing)} vectors')
        if missing:
            logger.warning(f'{len(missing)} vectors were already absent from {self.index_name}')

        logger.debug(f'Deleted {success} vectors from {self.index_name}')
        return success

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            started = time.monotonic()
            response = self.client.indices.exists(index=self.index_name)
            logger.debug(f'OpenSearch answered in {time.monotonic() - started:.2f}s')
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
