"""
Shared pytest fixtures for trinity_memory tests.

Provides deterministic stand-ins for Bedrock and OpenSearch so the services can
run against the real catalog (in-memory SQLite) and the real file share
(a tmp_path directory).
"""

import hashlib
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import pytest

from trinity_memory.models.core import VectorEntry, VectorHit
from trinity_memory.services.conversation_analysis import ConversationAnalysisService
from trinity_memory.services.file_indexer import FileIndexer
from trinity_memory.services.memory_service import MemoryService
from trinity_memory.services.proposal_agent import ProposalAgent
from trinity_memory.services.query_parser import QueryParser
from trinity_memory.services.search_service import SearchService
from trinity_memory.services.trigger_service import TriggerService
from trinity_memory.utils.bedrock_llm import BedrockLLMError
from trinity_memory.utils.blob_store import LocalBlobStore
from trinity_memory.utils.catalog_client import CatalogClient
from trinity_memory.utils.config import BlobStoreConfig, DatabaseConfig, IndexerConfig, SearchConfig, TriggerConfig
from trinity_memory.utils.opensearch_client import OpenSearchError

USER = 'user-1'
OTHER_USER = 'user-2'
FIXED_NOW = datetime(2025, 3, 12, 15, 30, 0)  # a Wednesday


class HashEmbedder:
    """
    Deterministic embedder: each text maps to a unit vector derived from its words.

    Texts sharing words get a positive cosine similarity, so semantic search
    ranks related chunks above unrelated ones.
    """

    dimension = 64

    def __init__(self):
        self.document_calls = 0
        self.query_calls = 0

    def _vector(self, text: str) -> List[float]:
        vector = [0.0] * self.dimension
        for word in text.lower().split():
            word = word.strip('.,!?:;"\'')
            if not word:
                continue
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimension
            vector[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector] if norm else vector

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        self.document_calls += 1
        return [self._vector(text) for text in texts]

    def embed_document(self, text: str) -> List[float]:
        return self.embed_documents([text])[0]

    def embed_query(self, text: str) -> List[float]:
        self.query_calls += 1
        return self._vector(text)

    def health_check(self) -> bool:
        return True


class ScriptedLLM:
    """Model stand-in answering from queued responses; an exhausted queue behaves like a failed call."""

    model_id = 'test-model'

    def __init__(self, json_responses: Optional[List[Any]] = None, completions: Optional[List[str]] = None):
        self.json_responses = list(json_responses or [])
        self.completions = list(completions or [])
        self.json_prompts: List[str] = []
        self.completion_prompts: List[str] = []

    def extract_json(self, prompt: str, system_prompt: str, max_tokens: Optional[int] = None) -> Any:
        self.json_prompts.append(prompt)
        if not self.json_responses:
            raise BedrockLLMError('no scripted JSON response')
        response = self.json_responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def complete(self, prompt: str, system_prompt: str, max_tokens: Optional[int] = None) -> str:
        self.completion_prompts.append(prompt)
        if not self.completions:
            raise BedrockLLMError('no scripted completion')
        return self.completions.pop(0)

    def health_check(self) -> bool:
        return True


def _matches(metadata: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, expected in filters.items():
        if expected is None:
            continue
        if isinstance(expected, dict):
            if metadata.get(key) not in expected['$in']:
                return False
        elif metadata.get(key) != expected:
            return False
    return True


class InMemoryVectorStore:
    """Vector index stand-in with the OpenSearchClient surface (cosine similarity, term and $in filters)."""

    def __init__(self):
        self.entries: Dict[str, VectorEntry] = {}
        self.upsert_calls = 0
        self.deleted: List[str] = []
        self.fail_upsert = False

    def create_index_if_not_exists(self, index_name: Optional[str] = None) -> str:
        return 'exists'

    def upsert(self, entries: Sequence[VectorEntry], batch_size: int = 100) -> List[str]:
        if self.fail_upsert:
            raise OpenSearchError('vector store unavailable')
        self.upsert_calls += 1
        for entry in entries:
            self.entries[entry.id] = entry
        return [entry.id for entry in entries]

    def similarity_search(self, query_vector: List[float], k: int, filters: Dict[str, Any]) -> List[VectorHit]:
        assert filters.get('user_id'), 'vector search must be scoped by user'
        hits = []
        for entry in self.entries.values():
            if not _matches(entry.metadata, filters):
                continue
            score = sum(a * b for a, b in zip(query_vector, entry.embedding))
            hits.append(VectorHit(id=entry.id, score=score, content=entry.content, metadata=dict(entry.metadata)))
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:k]

    def delete(self, ids: Sequence[str]) -> int:
        removed = 0
        for vid in ids:
            self.deleted.append(vid)
            if self.entries.pop(vid, None) is not None:
                removed += 1
        return removed

    def ids_for(self, file_path: str) -> List[str]:
        return sorted(vid for vid, entry in self.entries.items() if entry.metadata.get('file_path') == file_path)

    def health_check(self) -> bool:
        return True


@pytest.fixture
def catalog():
    client = CatalogClient(DatabaseConfig(url='sqlite://', echo=False, pool_timeout=30))
    client.create_schema()
    yield client
    client.engine.dispose()


@pytest.fixture
def blob_config(tmp_path):
    return BlobStoreConfig(mount_path=str(tmp_path / 'share'), root_namespace='trinity')


@pytest.fixture
def blob_store(blob_config):
    return LocalBlobStore(blob_config)


@pytest.fixture
def vector_store():
    return InMemoryVectorStore()


@pytest.fixture
def embedder():
    return HashEmbedder()


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def indexer_config():
    return IndexerConfig(chunk_size=200, batch_size=2, summary_preview_chars=200)


@pytest.fixture
def search_config():
    return SearchConfig(default_limit=10,
                        semantic_top_k=20,
                        semantic_weight=1.5,
                        structured_bonus=0.5,
                        excerpt_window=40,
                        classify_timeout=2.0)


@pytest.fixture
def trigger_config():
    return TriggerConfig(default_backup_destination='gdrive', default_notify_method='email')


@pytest.fixture
def indexer(catalog, blob_store, vector_store, embedder, indexer_config):
    return FileIndexer(catalog, blob_store, vector_store, embedder, indexer_config)


@pytest.fixture
def query_parser(llm, search_config):
    parser = QueryParser(llm, search_config, clock=lambda: FIXED_NOW)
    yield parser
    parser.close()


@pytest.fixture
def search_service(catalog, blob_store, vector_store, embedder, query_parser, search_config):
    service = SearchService(catalog, blob_store, vector_store, embedder, query_parser, search_config)
    yield service
    service.close()


@pytest.fixture
def trigger_service(catalog, trigger_config):
    return TriggerService(catalog, trigger_config, clock=lambda: FIXED_NOW)


@pytest.fixture
def memory_service(catalog, blob_store, indexer, trigger_service, llm, blob_config):
    return MemoryService(catalog, blob_store, indexer, trigger_service, ConversationAnalysisService(llm), blob_config)


@pytest.fixture
def proposal_agent(catalog, blob_store, indexer, llm, blob_config):
    return ProposalAgent(catalog, blob_store, indexer, llm, blob_config)


def make_messages(count: int, extra: str = '') -> List[Dict[str, str]]:
    """Alternating user/assistant turns; ``extra`` is appended to the last message."""
    messages = []
    for i in range(count):
        role = 'user' if i % 2 == 0 else 'assistant'
        messages.append({'role': role, 'content': f'Message number {i} about the quarterly roadmap.'})
    if extra:
        messages[-1]['content'] += f' {extra}'
    return messages
