"""
Search Engine executing query intents against the vector index and the metadata catalog.
"""

import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from ..models.catalog import FileRecord
from ..models.core import Intent, IntentFilters, SearchOptions, SearchResult
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.blob_store import BlobStore
from ..utils.catalog_client import CatalogClient
from ..utils.config import SearchConfig
from ..utils.errors import DependencyError, NotFoundError, TrinityMemoryError, ValidationError, best_effort
from ..utils.json_utils import try_parse_json
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient
from ..utils.text_chunker import split_sentences
from .query_parser import QueryParser

logger = get_logger(__name__)

_ROLE_PREFIX = re.compile(r'^(?:user|assistant):\s*', re.IGNORECASE)
PROBE_CHARS = 50


class SearchError(DependencyError):
    """Custom exception for search errors."""
    pass


@dataclass
class _Match:
    record: FileRecord
    score: float
    chunk: Optional[str] = None


def extract_excerpt(content: str, chunk: Optional[str], window: int) -> Optional[str]:
    """
    Locate the part of a file a matched chunk came from.

    For a JSON transcript this is the message containing the chunk's opening
    characters; for other text, a window of ``window`` characters around the
    match. Falls back to the chunk itself.
    """
    if not chunk:
        return None

    sentences = split_sentences(chunk)
    probe = _ROLE_PREFIX.sub('', sentences[0] if sentences else chunk)[:PROBE_CHARS].strip()
    if not probe:
        return chunk

    data = try_parse_json(content)
    if isinstance(data, dict) and isinstance(data.get('messages'), list):
        for message in data['messages']:
            text = str(message.get('content', '')) if isinstance(message, dict) else ''
            if probe in text:
                return text
        return chunk

    offset = content.find(probe)
    if offset < 0:
        return chunk
    half = window // 2
    return content[max(0, offset - half):offset + len(probe) + half]


def _to_result(record: FileRecord, content: str, score: float, relevant_section: Optional[str] = None) -> SearchResult:
    return SearchResult(id=record.id,
                        path=record.file_path,
                        file_name=record.file_name,
                        file_type=record.file_type or 'unknown',
                        content=content,
                        metadata=record.metadata_ or {},
                        tags=record.tags,
                        summary=record.summary,
                        created_at=record.created_at,
                        score=score,
                        relevant_section=relevant_section)


class SearchService:
    """Route queries to semantic, structured or hybrid search and assemble ranked results."""

    def __init__(self, catalog: CatalogClient, blob_store: BlobStore, vector_store: OpenSearchClient, embedder: BedrockEmbed,
                 query_parser: QueryParser, config: SearchConfig):
        """
        Initialize the search service.

        Args:
            catalog: Metadata catalog client
            blob_store: File share holding the content
            vector_store: Vector index of chunk embeddings
            embedder: Embedding client for query vectors
            query_parser: Intent classifier
            config: SearchConfig with ranking weights and limits
        """
        self.catalog = catalog
        self.blob_store = blob_store
        self.vector_store = vector_store
        self.embedder = embedder
        self.query_parser = query_parser
        self.config = config
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix='hybrid-search')

        logger.info('Initialized SearchService')

    def search(self, query: str, user_id: str, options: Optional[SearchOptions] = None) -> List[SearchResult]:
        """
        Search a user's files.

        Args:
            query: Natural-language query
            user_id: Requesting user; every lookup is scoped to it
            options: Paging and filters

        Returns:
            List of SearchResult ordered by descending score

        Raises:
            ValidationError: If the query or user id is empty
            SearchError: If the vector index, embedder or catalog fails
        """
        if not query or not query.strip():
            raise ValidationError('query must not be empty')
        if not user_id:
            raise ValidationError('user_id is required')

        options = options or SearchOptions(limit=self.config.default_limit)
        started = time.monotonic()
        logger.info(f'Searching for: "{query}" for user {user_id}')

        intent = self.query_parser.parse_query(query)

        try:
            if intent.type == 'semantic':
                matches = self._semantic_search(intent.query or query, intent.filters, user_id, options)
            elif intent.type == 'structured':
                matches = self._structured_search(intent.filters, user_id, options)
            else:
                matches = self._hybrid_search(intent, query, user_id, options)
        except TrinityMemoryError as e:
            logger.error(f'{intent.type} search failed for user {user_id}: {e}')
            raise SearchError(f'Search failed: {e.message}')
        except Exception as e:
            logger.error(f'Unexpected error in {intent.type} search: {e}')
            raise SearchError(f'Search failed: {e}')

        results = self._retrieve_contents(matches, user_id, 'search')

        elapsed_ms = int((time.monotonic() - started) * 1000)
        with best_effort(logger, 'log search query'):
            self.catalog.log_search_query(user_id, query, intent.type, [m.record.file_path for m in matches], elapsed_ms)

        logger.info(f'{intent.type} search returned {len(results)} results in {elapsed_ms}ms')
        return results

    def count(self, query: str, user_id: str, options: Optional[SearchOptions] = None) -> int:
        """
        Count the user's files matching a query's structured filters.

        Raises:
            SearchError: If the catalog fails
        """
        if not user_id:
            raise ValidationError('user_id is required')
        options = options or SearchOptions()
        intent = self.query_parser.parse_query(query)
        filters = intent.filters
        try:
            return self.catalog.count_files(user_id,
                                            file_types=[filters.file_type] if filters.file_type else options.file_types,
                                            tags=filters.tags or options.tags,
                                            date_range=filters.date_range or options.date_range,
                                            conversation_id=filters.conversation_id)
        except TrinityMemoryError as e:
            logger.error(f'Count failed for user {user_id}: {e}')
            raise SearchError(f'Count failed: {e.message}')

    def _semantic_search(self, query: str, filters: IntentFilters, user_id: str, options: SearchOptions) -> List[_Match]:
        logger.debug(f'Performing semantic search for: "{query}"')

        vector_filter: Dict[str, object] = {'user_id': user_id}
        file_types = [filters.file_type] if filters.file_type else options.file_types
        if file_types:
            vector_filter['file_type'] = {'$in': list(file_types)}

        top_k = max(self.config.semantic_top_k, options.limit)
        hits = self.vector_store.similarity_search(self.embedder.embed_query(query), top_k, vector_filter)

        # Best chunk per file
        best = {}
        for hit in hits:
            path = hit.metadata.get('file_path')
            if path and (path not in best or hit.score > best[path].score):
                best[path] = hit

        records = self.catalog.get_files_by_paths(user_id, best)
        matches = []
        for path, hit in best.items():
            record = records.get(path)
            if record is None:
                logger.debug(f'Skipping stale vector hit for {path}')
                continue
            matches.append(_Match(record=record, score=hit.score, chunk=hit.content))

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:options.limit]

    def _structured_search(self, filters: IntentFilters, user_id: str, options: SearchOptions) -> List[_Match]:
        logger.debug(f'Performing structured search with filters: {filters}')

        records = self.catalog.query_files(user_id,
                                           file_types=[filters.file_type] if filters.file_type else options.file_types,
                                           tags=filters.tags or options.tags,
                                           date_range=filters.date_range or options.date_range,
                                           conversation_id=filters.conversation_id,
                                           limit=options.limit,
                                           offset=options.offset)
        return [_Match(record=record, score=1.0) for record in records]

    def _hybrid_search(self, intent: Intent, query: str, user_id: str, options: SearchOptions) -> List[_Match]:
        logger.debug('Performing hybrid search')

        # Both legs rank from the top; the offset applies to the merged ranking
        window = replace(options, limit=options.offset + options.limit, offset=0)

        semantic_future = self._executor.submit(self._semantic_search, intent.query or query, intent.filters, user_id, window)
        structured_future = self._executor.submit(self._structured_search, intent.filters, user_id, window)
        semantic, structured = semantic_future.result(), structured_future.result()

        merged: Dict[str, _Match] = {}
        for match in semantic:
            merged[match.record.file_path] = _Match(record=match.record,
                                                    score=match.score * self.config.semantic_weight,
                                                    chunk=match.chunk)
        for match in structured:
            path = match.record.file_path
            if path in merged:
                merged[path].score += self.config.structured_bonus
            else:
                merged[path] = _Match(record=match.record, score=self.config.structured_bonus)

        ranked = sorted(merged.values(), key=lambda m: m.score, reverse=True)
        return ranked[options.offset:options.offset + options.limit]

    def _retrieve_contents(self, matches: List[_Match], user_id: str, access_type: str) -> List[SearchResult]:
        results = []
        for match in matches:
            record = match.record
            try:
                content = self.blob_store.read_file(record.file_path)
            except TrinityMemoryError as e:
                logger.warning(f'Failed to read file {record.file_path}: {e}')
                continue

            with best_effort(logger, f'log access to {record.file_path}'):
                self.catalog.log_file_access(record.id, user_id, access_type)

            section = extract_excerpt(content, match.chunk, self.config.excerpt_window)
            results.append(_to_result(record, content, match.score, section))
        return results

    def get_file_by_path(self, file_path: str, user_id: str) -> SearchResult:
        """
        Fetch a file the user owns by its share path.

        Raises:
            NotFoundError: If the user has no such file
        """
        record = self.catalog.get_file(user_id, file_path)
        if record is None:
            raise NotFoundError('File not found or access denied')

        content = self.blob_store.read_file(file_path)

        with best_effort(logger, f'log access to {file_path}'):
            self.catalog.log_file_access(record.id, user_id, 'direct')

        return _to_result(record, content, 1.0)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
