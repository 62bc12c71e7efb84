"""Tests for keeping the catalog and the vector index in agreement."""

import json

import pytest

from conftest import OTHER_USER, USER
from trinity_memory.services.file_indexer import IndexingError, vector_id
from trinity_memory.utils.blob_store import content_checksum
from trinity_memory.utils.catalog_client import CatalogError
from trinity_memory.utils.errors import NotFoundError

NOTES = '/trinity/users/user-1/documents/2025/03/notes.txt'
NOTES_TEXT = ('The launch is planned for April. Marketing owns the announcement. '
              'Engineering freezes the release branch a week earlier. Support needs updated runbooks. '
              'Sales will brief the top twenty accounts in person. Finance approves the final budget on Friday.')


def test_index_file_writes_vectors_then_catalog(indexer, blob_store, vector_store, catalog):
    blob_store.write_file(NOTES, NOTES_TEXT)

    record = indexer.index_file(NOTES, USER)

    checksum = content_checksum(NOTES_TEXT)
    assert record.checksum == checksum
    assert record.file_type == 'text'
    assert record.title == 'notes.txt'
    assert record.vector_ids == [vector_id(USER, checksum, i) for i in range(len(record.vector_ids))]
    assert vector_store.ids_for(NOTES) == sorted(record.vector_ids)

    entry = vector_store.entries[record.vector_ids[0]]
    assert entry.metadata['user_id'] == USER
    assert entry.metadata['chunk_index'] == 0
    assert entry.metadata['chunk_count'] == len(record.vector_ids)
    assert catalog.get_file(USER, NOTES).id == record.id


def test_chunks_are_upserted_in_batches(indexer, blob_store, vector_store):
    blob_store.write_file(NOTES, NOTES_TEXT)
    record = indexer.index_file(NOTES, USER)
    # chunk_size=200 yields two chunks; batch_size=2 keeps them in one call
    assert len(record.vector_ids) == 2
    assert vector_store.upsert_calls == 1


def test_reindex_is_idempotent(indexer, blob_store, vector_store, catalog):
    blob_store.write_file(NOTES, NOTES_TEXT)
    first = indexer.index_file(NOTES, USER)
    ids_after_first = vector_store.ids_for(NOTES)

    second = indexer.index_file(NOTES, USER)

    assert second.id == first.id
    assert second.vector_ids == first.vector_ids
    assert vector_store.ids_for(NOTES) == ids_after_first
    assert catalog.count_files(USER) == 1


def test_changed_content_replaces_stale_vectors(indexer, blob_store, vector_store):
    blob_store.write_file(NOTES, NOTES_TEXT)
    first = indexer.index_file(NOTES, USER)

    blob_store.write_file(NOTES, 'The launch moved to May.')
    second = indexer.index_file(NOTES, USER)

    assert second.checksum != first.checksum
    assert vector_store.ids_for(NOTES) == second.vector_ids
    assert not set(first.vector_ids) & set(vector_store.entries)


def test_identical_content_shares_vectors(indexer, blob_store, vector_store):
    copy = '/trinity/users/user-1/documents/2025/03/copy.txt'
    blob_store.write_file(NOTES, NOTES_TEXT)
    blob_store.write_file(copy, NOTES_TEXT)
    original = indexer.index_file(NOTES, USER)
    indexer.index_file(copy, USER)

    indexer.remove_file_from_index(copy, USER)

    # The remaining file still references the content-addressed chunks
    assert all(vid in vector_store.entries for vid in original.vector_ids)


class TestIdenticalContentAcrossUsers:

    MINE = '/trinity/users/user-1/documents/2025/03/plan.txt'
    THEIRS = '/trinity/users/user-2/documents/2025/03/plan.txt'
    PLAN = 'The quarterly roadmap ships in April. Budget review is on Friday.'

    @pytest.fixture
    def records(self, indexer, blob_store):
        blob_store.write_file(self.MINE, self.PLAN)
        blob_store.write_file(self.THEIRS, self.PLAN)
        return indexer.index_file(self.MINE, USER), indexer.index_file(self.THEIRS, OTHER_USER)

    def test_vectors_are_owned_per_user(self, records, vector_store):
        mine, theirs = records

        assert mine.checksum == theirs.checksum
        assert not set(mine.vector_ids) & set(theirs.vector_ids)
        assert all(vector_store.entries[vid].metadata['user_id'] == USER for vid in mine.vector_ids)

    def test_other_users_copy_stays_searchable(self, records, search_service):
        results = search_service.search('what about the quarterly roadmap', USER)
        assert [result.path for result in results] == [self.MINE]

    def test_removing_one_copy_keeps_the_others_vectors(self, records, indexer, vector_store):
        mine, _ = records

        indexer.remove_file_from_index(self.THEIRS, OTHER_USER)

        assert all(vid in vector_store.entries for vid in mine.vector_ids)
        assert vector_store.ids_for(self.THEIRS) == []


def test_conversation_transcript_is_linked(blob_store, catalog, memory_service):
    saved = memory_service.save_conversation([{'role': 'user', 'content': 'Hello.'}], USER)
    record = catalog.get_file(USER, saved.file_path)
    assert record.file_type == 'conversation'
    assert record.conversation_id == saved.conversation_id
    assert json.loads(blob_store.read_file(saved.file_path))['id'] == saved.conversation_id


def test_missing_file_raises_not_found(indexer):
    with pytest.raises(NotFoundError):
        indexer.index_file('/trinity/users/user-1/documents/2025/03/missing.txt', USER)


def test_vector_failure_leaves_catalog_untouched(indexer, blob_store, vector_store, catalog):
    blob_store.write_file(NOTES, NOTES_TEXT)
    vector_store.fail_upsert = True

    with pytest.raises(IndexingError):
        indexer.index_file(NOTES, USER)

    assert catalog.get_file(USER, NOTES) is None


def test_catalog_failure_rolls_back_new_vectors(indexer, blob_store, vector_store, catalog, monkeypatch):
    blob_store.write_file(NOTES, NOTES_TEXT)

    def broken_upsert(**kwargs):
        raise CatalogError('database is down')

    monkeypatch.setattr(catalog, 'upsert_file', broken_upsert)

    with pytest.raises(IndexingError):
        indexer.index_file(NOTES, USER)

    assert vector_store.ids_for(NOTES) == []


def test_remove_file_is_idempotent(indexer, blob_store, vector_store, catalog):
    blob_store.write_file(NOTES, NOTES_TEXT)
    record = indexer.index_file(NOTES, USER)

    indexer.remove_file_from_index(NOTES, USER)
    indexer.remove_file_from_index(NOTES, USER)

    assert catalog.get_file(USER, NOTES) is None
    assert not set(record.vector_ids) & set(vector_store.entries)


def test_remove_is_scoped_by_user(indexer, blob_store, catalog):
    blob_store.write_file(NOTES, NOTES_TEXT)
    indexer.index_file(NOTES, USER)

    indexer.remove_file_from_index(NOTES, 'intruder')

    assert catalog.get_file(USER, NOTES) is not None


def test_sync_directory_reports_changes(indexer, blob_store):
    root = '/trinity/users/user-1'
    blob_store.write_file(f'{root}/documents/2025/03/a.txt', 'Alpha notes.')
    blob_store.write_file(f'{root}/documents/2025/03/b.txt', 'Beta notes.')
    indexer.index_file(f'{root}/documents/2025/03/a.txt', USER)

    summary = indexer.sync_directory(root, USER)

    assert summary.indexed == [f'{root}/documents/2025/03/b.txt']
    assert summary.unchanged == [f'{root}/documents/2025/03/a.txt']
    assert summary.failed == {}

    blob_store.write_file(f'{root}/documents/2025/03/a.txt', 'Alpha notes, revised.')
    summary = indexer.sync_directory(root, USER)
    assert summary.indexed == [f'{root}/documents/2025/03/a.txt']
    assert summary.unchanged == [f'{root}/documents/2025/03/b.txt']


def test_transcript_with_plain_string_messages_is_indexed(indexer, blob_store):
    path = '/trinity/users/user-1/documents/2025/03/chat.json'
    blob_store.write_file(path, json.dumps({'messages': ['hello there', 'general kenobi']}))

    record = indexer.index_file(path, USER)

    assert record.file_type == 'conversation'
    assert record.metadata_['messageCount'] == 0
    assert record.summary == 'Empty conversation'
    assert record.vector_ids == []
