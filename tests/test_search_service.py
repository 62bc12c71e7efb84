"""Tests for semantic, structured and hybrid search."""

import json
from datetime import datetime

import pytest

from conftest import OTHER_USER, USER, ScriptedLLM
from trinity_memory.models.core import DateRange, SearchOptions, VectorHit
from trinity_memory.services.query_parser import QueryParser
from trinity_memory.services.search_service import SearchError, SearchService, extract_excerpt
from trinity_memory.utils.errors import NotFoundError, ValidationError
from trinity_memory.utils.opensearch_client import OpenSearchError


class ScriptedVectorStore:
    """Returns fixed hits regardless of the query vector."""

    def __init__(self, hits):
        self.hits = hits
        self.filters = None

    def similarity_search(self, query_vector, k, filters):
        self.filters = filters
        return self.hits[:k]


def _index_text(indexer, blob_store, name, text, user_id=USER):
    path = f'/trinity/users/{user_id}/documents/2025/03/{name}'
    blob_store.write_file(path, text)
    return indexer.index_file(path, user_id)


@pytest.fixture
def indexed(indexer, blob_store):
    return {
        'garden': _index_text(indexer, blob_store, 'garden.txt', 'Tomatoes need full sun. Water the garden beds daily.'),
        'budget': _index_text(indexer, blob_store, 'budget.txt', 'The marketing budget grows next quarter.'),
    }


def test_semantic_search_ranks_related_file_first(search_service, indexed):
    results = search_service.search('tips about the garden tomatoes', USER)

    assert results[0].path == indexed['garden'].file_path
    assert results[0].score > results[-1].score
    assert results[0].content.startswith('Tomatoes')
    assert results[0].relevant_section is not None


def test_semantic_results_are_scoped_by_user(search_service, indexer, blob_store, indexed):
    _index_text(indexer, blob_store, 'secret.txt', 'Garden tomatoes secret plans.', user_id=OTHER_USER)

    results = search_service.search('talk about garden tomatoes', USER)

    assert all(result.path.startswith('/trinity/users/user-1/') for result in results)


def test_semantic_keeps_best_chunk_per_file(search_service, indexer, blob_store):
    text = ' '.join(f'Sentence {i} mentions the garden harvest plan in detail.' for i in range(12))
    record = _index_text(indexer, blob_store, 'long.txt', text)
    assert len(record.vector_ids) > 1

    results = search_service.search('anything regarding the garden harvest', USER)

    assert [result.path for result in results] == [record.file_path]


def test_stale_vector_hits_are_skipped(search_service, catalog, indexed):
    catalog.delete_file(indexed['garden'].id, USER)

    results = search_service.search('tips about garden tomatoes', USER)

    assert indexed['garden'].file_path not in [result.path for result in results]


def test_unreadable_blob_drops_only_that_file(search_service, blob_store, indexed):
    garden_local = blob_store.mount_path / indexed['garden'].file_path.lstrip('/')
    garden_local.unlink()

    results = search_service.search('tips about garden tomatoes', USER)

    assert [result.path for result in results] == [indexed['budget'].file_path]


def test_structured_search_by_tag(search_service, catalog, indexed):
    catalog.add_file_tags(indexed['budget'].id, USER, ['finance'])

    results = search_service.search('files tagged as "finance"', USER)

    assert [result.path for result in results] == [indexed['budget'].file_path]
    assert results[0].score == 1.0
    assert results[0].tags == ['finance']


def test_structured_search_honours_limit_and_offset(search_service, indexed):
    first = search_service.search('count my files', USER, SearchOptions(limit=1, offset=0))
    second = search_service.search('count my files', USER, SearchOptions(limit=1, offset=1))

    assert len(first) == 1 and len(second) == 1
    assert first[0].path != second[0].path


def test_structured_search_uses_option_filters(search_service, indexed):
    options = SearchOptions(date_range=DateRange(start=datetime(2000, 1, 1), end=datetime(2000, 1, 2)))
    assert search_service.search('how many files', USER, options) == []


def test_count_uses_structured_filters(search_service, catalog, indexed):
    catalog.add_file_tags(indexed['garden'].id, USER, ['home'])

    assert search_service.count('how many files', USER) == 2
    assert search_service.count('files tagged as "home"', USER) == 1


def test_hybrid_score_composition(catalog, blob_store, embedder, search_config, indexed):
    garden, budget = indexed['garden'], indexed['budget']
    vector_store = ScriptedVectorStore([
        VectorHit(id='g', score=0.8, content='Tomatoes need full sun.', metadata={'file_path': garden.file_path}),
    ])
    parser = QueryParser(ScriptedLLM(json_responses=[{'type': 'hybrid', 'query': 'sunny vegetables'}]), search_config)
    service = SearchService(catalog, blob_store, vector_store, embedder, parser, search_config)
    try:
        results = service.search('sunny vegetables for the plot', USER)
    finally:
        service.close()
        parser.close()

    scores = {result.path: result.score for result in results}
    assert scores[garden.file_path] == pytest.approx(0.8 * 1.5 + 0.5)
    assert scores[budget.file_path] == pytest.approx(0.5)
    assert results[0].path == garden.file_path
    assert vector_store.filters == {'user_id': USER}


def test_hybrid_offset_pages_the_merged_ranking(catalog, blob_store, embedder, search_config, indexed):
    garden, budget = indexed['garden'], indexed['budget']
    vector_store = ScriptedVectorStore([
        VectorHit(id='g', score=0.8, content='Tomatoes need full sun.', metadata={'file_path': garden.file_path}),
    ])
    intent = {'type': 'hybrid', 'query': 'sunny vegetables'}
    parser = QueryParser(ScriptedLLM(json_responses=[intent, intent]), search_config)
    service = SearchService(catalog, blob_store, vector_store, embedder, parser, search_config)
    try:
        first = service.search('sunny vegetables for the plot', USER, SearchOptions(limit=1))
        second = service.search('sunny vegetables for the plot', USER, SearchOptions(limit=1, offset=1))
    finally:
        service.close()
        parser.close()

    assert [result.path for result in first] == [garden.file_path]
    assert [result.path for result in second] == [budget.file_path]


def test_semantic_file_type_filter_is_passed(catalog, blob_store, embedder, query_parser, search_config):
    vector_store = ScriptedVectorStore([])
    service = SearchService(catalog, blob_store, vector_store, embedder, query_parser, search_config)
    try:
        service.search('notes about pricing', USER, SearchOptions(file_types=['conversation', 'summary']))
    finally:
        service.close()
    assert vector_store.filters == {'user_id': USER, 'file_type': {'$in': ['conversation', 'summary']}}


def test_vector_failure_raises_search_error(catalog, blob_store, embedder, query_parser, search_config):

    class BrokenVectorStore:

        def similarity_search(self, query_vector, k, filters):
            raise OpenSearchError('cluster red')

    service = SearchService(catalog, blob_store, BrokenVectorStore(), embedder, query_parser, search_config)
    try:
        with pytest.raises(SearchError):
            service.search('notes about pricing', USER)
    finally:
        service.close()


def test_search_writes_audit_rows(search_service, catalog, indexed):
    search_service.search('tips about garden tomatoes', USER)

    queries = catalog.list_search_queries(USER)
    assert len(queries) == 1
    assert queries[0].query_type == 'semantic'
    assert indexed['garden'].file_path in queries[0].file_paths
    assert catalog.list_file_access(indexed['garden'].id, USER)[0].access_type == 'search'
    assert catalog.get_file(USER, indexed['garden'].file_path).last_accessed is not None


def test_empty_query_is_rejected(search_service):
    with pytest.raises(ValidationError):
        search_service.search('  ', USER)


def test_get_file_by_path(search_service, catalog, indexed):
    result = search_service.get_file_by_path(indexed['budget'].file_path, USER)

    assert result.content == 'The marketing budget grows next quarter.'
    assert catalog.list_file_access(indexed['budget'].id, USER)[0].access_type == 'direct'


def test_get_file_by_path_denies_other_users(search_service, indexed):
    with pytest.raises(NotFoundError, match='File not found or access denied'):
        search_service.get_file_by_path(indexed['budget'].file_path, OTHER_USER)


class TestExcerpt:

    def test_conversation_excerpt_is_the_matching_message(self):
        content = json.dumps({
            'messages': [
                {'role': 'user', 'content': 'Where do we stand on hiring?'},
                {'role': 'assistant', 'content': 'Two offers went out this week.'},
            ]
        })
        chunk = 'assistant: Two offers went out this week.'
        assert extract_excerpt(content, chunk, 40) == 'Two offers went out this week.'

    def test_text_excerpt_is_a_window(self):
        content = 'a' * 100 + 'Needle sentence.' + 'b' * 100
        excerpt = extract_excerpt(content, 'Needle sentence. More text.', 20)
        assert excerpt == 'a' * 10 + 'Needle sentence.' + 'b' * 10

    def test_falls_back_to_chunk(self):
        assert extract_excerpt('unrelated', 'Missing text.', 20) == 'Missing text.'
        assert extract_excerpt('unrelated', None, 20) is None
