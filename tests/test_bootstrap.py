"""Tests for wiring the backend together, health reporting and MCP serialization."""

from dataclasses import replace
from datetime import datetime
from decimal import Decimal

import pytest

from conftest import USER, HashEmbedder, InMemoryVectorStore, ScriptedLLM, make_messages
from trinity_memory import mcp_interface
from trinity_memory.bootstrap import build_memory_system
from trinity_memory.models.core import SearchResult
from trinity_memory.utils.catalog_client import CatalogClient
from trinity_memory.utils.config import DatabaseConfig, load_config
from trinity_memory.utils.errors import NotFoundError
from trinity_memory.utils.health_check import check_health, get_health_status, get_system_info
from trinity_memory.utils.opensearch_client import OpenSearchError


class UnreachableVectorStore(InMemoryVectorStore):

    def create_index_if_not_exists(self, index_name=None):
        raise OpenSearchError('connection refused')

    def health_check(self):
        return False


@pytest.fixture
def app_config(blob_config):
    base = load_config()
    return replace(base,
                   database=DatabaseConfig(url='sqlite://', echo=False, pool_timeout=30),
                   blob_store=blob_config)


@pytest.fixture
def system(app_config):
    built = build_memory_system(app_config,
                                vector_store=InMemoryVectorStore(),
                                embedder=HashEmbedder(),
                                llm=ScriptedLLM())
    yield built
    built.close()


def test_services_share_the_same_clients(system):
    assert system.memory.indexer is system.indexer
    assert system.search.catalog is system.catalog
    assert system.proposals.blob_store is system.blob_store


def test_saved_conversation_is_searchable(system):
    saved = system.memory.save_conversation(make_messages(2), USER)

    results = system.search.search('anything about the quarterly roadmap', USER)

    assert saved.file_path in [result.path for result in results]


def test_vector_index_outage_does_not_block_startup(app_config):
    built = build_memory_system(app_config,
                                vector_store=UnreachableVectorStore(),
                                embedder=HashEmbedder(),
                                llm=ScriptedLLM())
    try:
        status = get_health_status(built)
        assert status['opensearch']['healthy'] is False
        assert status['catalog']['healthy'] is True
        assert status['catalog']['dialect'] == 'sqlite'
        assert not check_health(built)
    finally:
        built.close()


def test_all_healthy(system):
    assert check_health(system)


def test_health_check_exceptions_are_reported(system, monkeypatch):

    def broken():
        raise RuntimeError('socket closed')

    monkeypatch.setattr(system.embedder, 'health_check', broken)

    status = get_health_status(system)
    assert status['bedrock_embed'] == {'healthy': False, 'service': 'Amazon Bedrock Embed', 'error': 'socket closed'}


def test_system_info(app_config):
    info = get_system_info(app_config)
    assert info['service_name'] == 'Trinity Memory'
    assert info['configuration']['blob_root_namespace'] == 'trinity'


def test_injected_catalog_is_used(app_config):
    catalog = CatalogClient(app_config.database)
    built = build_memory_system(app_config, catalog=catalog, vector_store=InMemoryVectorStore(), embedder=HashEmbedder(),
                                llm=ScriptedLLM())
    try:
        assert built.catalog is catalog
        assert catalog.list_rules(USER) == []
    finally:
        built.close()


class TestMCPSerialization:

    def test_plain_values(self):
        value = {'at': datetime(2025, 3, 12, 15, 30), 'budget': Decimal('12.50'), 'items': (1, 'a')}
        assert mcp_interface._plain(value) == {'at': '2025-03-12T15:30:00', 'budget': 12.5, 'items': [1, 'a']}

    def test_conversation_and_file(self, system):
        saved = system.memory.save_conversation(make_messages(2), USER, metadata={'tags': ['alpha']})
        system.memory.tag_conversation(saved.conversation_id, ['alpha'], USER)

        conversation = mcp_interface.conversation_to_dict(system.memory.get_conversation(saved.conversation_id, USER))
        record = mcp_interface.file_to_dict(system.catalog.get_file(USER, saved.file_path))

        assert conversation['tags'] == ['alpha']
        assert conversation['messageCount'] == 2
        assert isinstance(conversation['startedAt'], str)
        assert record['conversationId'] == saved.conversation_id
        assert record['fileType'] == 'conversation'

    def test_result_to_dict(self):
        result = SearchResult(id='f1',
                              path='/p.txt',
                              file_name='p.txt',
                              file_type='text',
                              content='text',
                              metadata={'modified': datetime(2025, 1, 1)},
                              tags=[],
                              summary=None,
                              created_at=datetime(2025, 1, 1),
                              score=1.0)
        plain = mcp_interface.result_to_dict(result)
        assert plain['metadata'] == {'modified': '2025-01-01T00:00:00'}
        assert plain['created_at'] == '2025-01-01T00:00:00'

    def test_search_options(self):
        options = mcp_interface._search_options(5, 0, ['text'], None, '2025-03-01', None)
        assert options.limit == 5
        assert options.date_range.start == datetime(2025, 3, 1)
        assert options.date_range.end is None
        assert mcp_interface._search_options(5, 0, None, None, None, None).date_range is None

    def test_errors_keep_their_kind(self):
        error = mcp_interface._fail('get_file', NotFoundError('File not found or access denied'))
        assert error.args[0] == {'kind': 'not_found', 'message': 'File not found or access denied'}
        assert str(mcp_interface._fail('get_file', RuntimeError('boom'))) == 'get_file failed: boom'
