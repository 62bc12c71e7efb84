"""
File Indexer keeping the metadata catalog and the vector index in agreement for a path.
"""

import posixpath
from typing import List, Optional, Sequence

from ..models.catalog import FileRecord
from ..models.core import IndexSummary, VectorEntry
from ..utils.blob_store import BlobStore, content_checksum
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.catalog_client import CatalogClient
from ..utils.config import IndexerConfig
from ..utils.errors import DependencyError, NotFoundError, TrinityMemoryError, ValidationError, best_effort
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient
from ..utils.text_chunker import chunk_content
from ..utils.timestamp_utils import to_iso, utc_now
from .file_classifier import embeddable_text, extract_file_metadata

logger = get_logger(__name__)


class IndexingError(DependencyError):
    """Custom exception for file indexing errors."""
    pass


def owner_key(user_id: str) -> str:
    """Stable hex key of a user, used to scope vector ids to their owner."""
    return content_checksum(user_id)[:16]


def vector_id(user_id: str, checksum: str, chunk_index: int) -> str:
    return f'{owner_key(user_id)}_{checksum}_chunk_{chunk_index}'


def _content_checksum_of(vid: str) -> str:
    return vid.rsplit('_chunk_', 1)[0].split('_', 1)[-1]


def _checksums_of(vector_ids: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(_content_checksum_of(vid) for vid in vector_ids))


class FileIndexer:
    """Chunk, embed and register files from the file share."""

    def __init__(self, catalog: CatalogClient, blob_store: BlobStore, vector_store: OpenSearchClient, embedder: BedrockEmbed,
                 config: IndexerConfig):
        """
        Initialize the file indexer.

        Args:
            catalog: Metadata catalog client
            blob_store: File share holding the content
            vector_store: Vector index for chunk embeddings
            embedder: Embedding client
            config: IndexerConfig with chunk and batch sizes
        """
        self.catalog = catalog
        self.blob_store = blob_store
        self.vector_store = vector_store
        self.embedder = embedder
        self.config = config

        logger.info('Initialized FileIndexer')

    def index_file(self, file_path: str, user_id: str, conversation_id: Optional[str] = None) -> FileRecord:
        """
        Index a file: embed its chunks into the vector index, then register it in the catalog.

        The catalog row is written only after every vector batch succeeded.

        Args:
            file_path: Share path of the file
            user_id: Owning user
            conversation_id: Parent conversation, if any

        Returns:
            The upserted FileRecord

        Raises:
            NotFoundError: If the file does not exist on the share
            IndexingError: If reading, embedding or either store write fails
        """
        if not user_id:
            raise ValidationError('user_id is required')

        logger.info(f'Indexing file: {file_path}')

        try:
            content = self.blob_store.read_file(file_path)
            stats = self.blob_store.get_file_stats(file_path)

            checksum = content_checksum(content)
            metadata, data = extract_file_metadata(file_path, content, checksum, stats.size)
            if conversation_id:
                metadata.conversation_id = conversation_id

            chunks = chunk_content(embeddable_text(metadata.type, content, data), self.config.chunk_size)
            previous = self.catalog.get_file(user_id, file_path)
            previous_ids = list(previous.vector_ids or []) if previous else []

            written_ids = self._index_chunks(chunks, file_path, user_id, metadata)

            try:
                record = self.catalog.upsert_file(user_id=user_id,
                                                  file_path=file_path,
                                                  file_type=metadata.type,
                                                  file_size=stats.size,
                                                  checksum=checksum,
                                                  title=metadata.title,
                                                  summary=metadata.summary,
                                                  tags=metadata.tags,
                                                  metadata=metadata.metadata,
                                                  vector_ids=written_ids,
                                                  modified_at=stats.modified,
                                                  conversation_id=metadata.conversation_id)
            except Exception:
                # Do not leave vectors behind that no catalog row points to
                orphaned = [vid for vid in written_ids if vid not in set(previous_ids)]
                with best_effort(logger, f'roll back {len(orphaned)} vectors for {file_path}'):
                    self.vector_store.delete(self._unshared(orphaned, user_id, file_path))
                raise

            stale = [vid for vid in previous_ids if vid not in set(written_ids)]
            if stale:
                with best_effort(logger, f'delete {len(stale)} stale vectors for {file_path}'):
                    self.vector_store.delete(self._unshared(stale, user_id, file_path))

            logger.info(f'Successfully indexed {len(chunks)} chunks for {file_path}')
            return record

        except (NotFoundError, ValidationError):
            raise
        except TrinityMemoryError as e:
            logger.error(f'Failed to index file {file_path}: {e}')
            raise IndexingError(f'Failed to index {file_path}: {e.message}')
        except Exception as e:
            logger.error(f'Unexpected error indexing file {file_path}: {e}')
            raise IndexingError(f'Failed to index {file_path}: {e}')

    def _index_chunks(self, chunks: List[str], file_path: str, user_id: str, metadata) -> List[str]:
        if not chunks:
            logger.debug(f'No embeddable content in {file_path}')
            return []

        embeddings = self.embedder.embed_documents(chunks)
        timestamp = to_iso(utc_now())
        entries = [
            VectorEntry(id=vector_id(user_id, metadata.checksum, i),
                        embedding=embedding,
                        content=chunk,
                        metadata={
                            'user_id': user_id,
                            'file_path': file_path,
                            'file_type': metadata.type,
                            'chunk_index': i,
                            'chunk_count': len(chunks),
                            'conversation_id': metadata.conversation_id,
                            'tags': metadata.tags,
                            'preview': chunk[:200],
                            'timestamp': timestamp,
                        }) for i, (chunk, embedding) in enumerate(zip(chunks, embeddings))
        ]
        return self.vector_store.upsert(entries, batch_size=self.config.batch_size)

    def _unshared(self, ids: Sequence[str], user_id: str, file_path: str) -> List[str]:
        """Drop ids whose content another of the user's files still references."""
        if not ids:
            return []
        shared = set(self.catalog.shared_checksums(user_id, _checksums_of(ids), exclude_path=file_path))
        return [vid for vid in ids if _content_checksum_of(vid) not in shared]

    def remove_file_from_index(self, file_path: str, user_id: str) -> None:
        """
        Remove a file from the vector index and the catalog. Removing an unknown path is a no-op.

        Raises:
            IndexingError: If the vector delete or the catalog delete fails
        """
        record = self.catalog.get_file(user_id, file_path)
        if record is None:
            logger.debug(f'No index entry for {file_path}, nothing to remove')
            return

        try:
            if record.vector_ids:
                self.vector_store.delete(self._unshared(record.vector_ids, user_id, file_path))
            self.catalog.delete_file(record.id, user_id)
        except TrinityMemoryError as e:
            logger.error(f'Failed to remove file {file_path} from index: {e}')
            raise IndexingError(f'Failed to remove {file_path}: {e.message}')

        logger.info(f'Removed file from index: {file_path}')

    def sync_directory(self, directory: str, user_id: str) -> IndexSummary:
        """
        Walk a share directory and (re)index every file whose checksum differs from the catalog.

        Args:
            directory: Share path to walk recursively
            user_id: Owning user

        Returns:
            IndexSummary with indexed, unchanged and failed paths
        """
        summary = IndexSummary()
        pending = [directory]

        while pending:
            current = pending.pop()
            for entry in self.blob_store.list_directory(current):
                if entry.is_directory:
                    pending.append(entry.path)
                    continue
                try:
                    record = self.catalog.get_file(user_id, entry.path)
                    if record is not None and record.checksum == self.blob_store.get_file_checksum(entry.path):
                        summary.unchanged.append(entry.path)
                        continue
                    self.index_file(entry.path, user_id)
                    summary.indexed.append(entry.path)
                except TrinityMemoryError as e:
                    logger.warning(f'Failed to sync {entry.path}: {e}')
                    summary.failed[entry.path] = e.message

        logger.info(f'Synced {posixpath.normpath(directory)}: {len(summary.indexed)} indexed, '
                    f'{len(summary.unchanged)} unchanged, {len(summary.failed)} failed')
        return summary
