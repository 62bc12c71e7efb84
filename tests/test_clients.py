"""Tests for the Bedrock and OpenSearch client wrappers against mocked SDK clients."""

import io
import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from opensearchpy.exceptions import ConnectionError as OpenSearchConnectionError
from opensearchpy.exceptions import NotFoundError as OpenSearchNotFoundError

from trinity_memory.models.core import VectorEntry
from trinity_memory.utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from trinity_memory.utils.bedrock_llm import BedrockLLM, BedrockLLMError
from trinity_memory.utils.config import BedrockEmbedConfig, BedrockLLMConfig, OpenSearchConfig
from trinity_memory.utils.opensearch_client import OpenSearchClient, OpenSearchError, build_filter_clauses


def _throttled(operation):
    return ClientError({'Error': {'Code': 'ThrottlingException', 'Message': 'Rate exceeded'}}, operation)


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr('trinity_memory.utils.bedrock_llm.time.sleep', lambda seconds: None)


class TestBedrockLLM:

    @pytest.fixture
    def runtime(self):
        return MagicMock()

    @pytest.fixture
    def llm(self, runtime):
        config = BedrockLLMConfig(region='us-east-1',
                                  model_id='anthropic.claude-test',
                                  max_tokens=512,
                                  temperature=0.2,
                                  retry_attempts=3,
                                  retry_delay=0.0,
                                  connect_timeout=5,
                                  read_timeout=30)
        return BedrockLLM(config, client=runtime)

    @staticmethod
    def _stream(*chunks):
        events = [{'contentBlockDelta': {'delta': {'text': chunk}}} for chunk in chunks]
        events.append({'metadata': {'usage': {'inputTokens': 5, 'outputTokens': 7}, 'metrics': {'latencyMs': 12}}})
        return {'stream': events}

    def test_generate_response_joins_stream(self, llm, runtime):
        runtime.converse_stream.return_value = self._stream('Hello', ', world')

        text, metrics = llm.generate_response([{'role': 'user', 'content': [{'text': 'hi'}]}], 'Be brief.')

        assert text == 'Hello, world'
        assert metrics == {'inputTokens': 5, 'outputTokens': 7, 'latencyMs': 12}
        kwargs = runtime.converse_stream.call_args.kwargs
        assert kwargs['modelId'] == 'anthropic.claude-test'
        assert kwargs['inferenceConfig'] == {'maxTokens': 512, 'temperature': 0.2, 'stopSequences': []}

    def test_extract_json_prefills_fence(self, llm, runtime):
        runtime.converse_stream.return_value = self._stream('\n{"type": "semantic",', ' "query": "x"}\n')

        assert llm.extract_json('classify', 'system') == {'type': 'semantic', 'query': 'x'}
        kwargs = runtime.converse_stream.call_args.kwargs
        assert kwargs['messages'][-1] == {'role': 'assistant', 'content': [{'text': '```json'}]}
        assert kwargs['inferenceConfig']['stopSequences'] == ['```']

    def test_malformed_json_raises(self, llm, runtime):
        runtime.converse_stream.return_value = self._stream('not json at all')
        with pytest.raises(BedrockLLMError, match='Malformed JSON'):
            llm.extract_json('classify', 'system')

    def test_retries_throttling_then_succeeds(self, llm, runtime):
        runtime.converse_stream.side_effect = [_throttled('ConverseStream'), self._stream(' done ')]

        assert llm.complete('prompt', 'system') == 'done'
        assert runtime.converse_stream.call_count == 2

    def test_gives_up_after_retry_attempts(self, llm, runtime):
        runtime.converse_stream.side_effect = _throttled('ConverseStream')

        with pytest.raises(BedrockLLMError, match='after 3 attempts'):
            llm.complete('prompt', 'system')
        assert runtime.converse_stream.call_count == 3

    def test_health_check(self, llm, runtime):
        runtime.converse_stream.return_value = self._stream('OK')
        assert llm.health_check()

        runtime.converse_stream.side_effect = RuntimeError('boom')
        assert not llm.health_check()


class TestBedrockEmbed:

    @staticmethod
    def _config(model_id, dimension):
        return BedrockEmbedConfig(region='us-east-1',
                                  model_id=model_id,
                                  dimension=dimension,
                                  retry_attempts=2,
                                  retry_delay=0.0,
                                  connect_timeout=5,
                                  read_timeout=30)

    @staticmethod
    def _body(payload):
        return {'body': io.BytesIO(json.dumps(payload).encode())}

    def test_titan_embeds_one_text_per_call(self):
        runtime = MagicMock()
        runtime.invoke_model.side_effect = lambda **kwargs: self._body({'embedding': [0.1, 0.2, 0.3]})
        embedder = BedrockEmbed(self._config('amazon.titan-embed-text-v2:0', 3), client=runtime)

        assert embedder.embed_documents(['a', 'b']) == [[0.1, 0.2, 0.3], [0.1, 0.2, 0.3]]
        assert runtime.invoke_model.call_count == 2
        request = json.loads(runtime.invoke_model.call_args.kwargs['body'])
        assert request == {'inputText': 'b', 'dimensions': 3}

    def test_cohere_uses_input_type(self):
        runtime = MagicMock()
        runtime.invoke_model.return_value = self._body({'embeddings': [[1.0] * 1024]})
        embedder = BedrockEmbed(self._config('cohere.embed-english-v3', 1024), client=runtime)

        assert len(embedder.embed_query('find notes')) == 1024
        request = json.loads(runtime.invoke_model.call_args.kwargs['body'])
        assert request == {'input_type': 'search_query', 'texts': ['find notes']}

    def test_cohere_requires_1024_dimensions(self):
        with pytest.raises(BedrockEmbedError):
            BedrockEmbed(self._config('cohere.embed-english-v3', 256), client=MagicMock())

    def test_blank_chunks_keep_their_slot(self):
        runtime = MagicMock()
        runtime.invoke_model.side_effect = lambda **kwargs: self._body({'embedding': [0.5, 0.5]})
        embedder = BedrockEmbed(self._config('amazon.titan-embed-text-v2:0', 2), client=runtime)

        assert embedder.embed_documents(['text', '  ']) == [[0.5, 0.5], [0.0, 0.0]]
        assert embedder.embed_query('') == [0.0, 0.0]

    def test_throttling_exhausts_retries(self, monkeypatch):
        monkeypatch.setattr('trinity_memory.utils.bedrock_embed.time.sleep', lambda seconds: None)
        runtime = MagicMock()
        runtime.invoke_model.side_effect = _throttled('InvokeModel')
        embedder = BedrockEmbed(self._config('amazon.titan-embed-text-v2:0', 2), client=runtime)

        with pytest.raises(BedrockEmbedError):
            embedder.embed_document('text')
        assert runtime.invoke_model.call_count == 2
        assert not embedder.health_check()

    def test_unsupported_model(self):
        embedder = BedrockEmbed(self._config('mistral.unknown', 8), client=MagicMock())
        with pytest.raises(BedrockEmbedError, match='Unsupported'):
            embedder.embed_query('text')


class TestOpenSearchClient:

    @pytest.fixture
    def os_client(self):
        return MagicMock()

    @pytest.fixture
    def store(self, os_client):
        config = OpenSearchConfig(endpoint='https://search.example.com',
                                  port=443,
                                  region='us-east-1',
                                  service='es',
                                  use_ssl=True,
                                  index_name='trinity-chunks',
                                  dimension=3,
                                  timeout=10)
        return OpenSearchClient(config, client=os_client)

    def test_build_filter_clauses(self):
        clauses = build_filter_clauses({'user_id': 'u1', 'file_type': {'$in': ['text', 'markdown']}, 'tags': None})
        assert clauses == [{'term': {'user_id': 'u1'}}, {'terms': {'file_type': ['text', 'markdown']}}]

        with pytest.raises(OpenSearchError):
            build_filter_clauses({'chunk_index': {'$gt': 1}})

    def test_create_index_only_when_missing(self, store, os_client):
        os_client.indices.exists.return_value = True
        assert store.create_index_if_not_exists() == 'exists'
        os_client.indices.create.assert_not_called()

        os_client.indices.exists.return_value = False
        os_client.indices.create.return_value = {'acknowledged': True}
        assert store.create_index_if_not_exists() == 'created'
        body = os_client.indices.create.call_args.kwargs['body']
        assert body['mappings']['properties']['embedding']['dimension'] == 3

    def test_upsert_writes_bulk_actions(self, store, monkeypatch):
        calls = []

        def fake_bulk(client, actions, **kwargs):
            calls.append(list(actions))
            return len(calls[-1]), []

        monkeypatch.setattr('trinity_memory.utils.opensearch_client.helpers.bulk', fake_bulk)
        entries = [
            VectorEntry(id=f'abc_chunk_{i}', content=f'chunk {i}', embedding=[0.1, 0.2, 0.3],
                        metadata={'user_id': 'u1', 'file_path': '/f.txt', 'chunk_index': i, 'conversation_id': None})
            for i in range(3)
        ]

        assert store.upsert(entries, batch_size=2) == ['abc_chunk_0', 'abc_chunk_1', 'abc_chunk_2']
        assert [len(batch) for batch in calls] == [2, 1]
        source = calls[0][0]['_source']
        assert calls[0][0]['_id'] == 'abc_chunk_0'
        assert source['user_id'] == 'u1'
        assert 'conversation_id' not in source

    def test_upsert_rejections_raise(self, store, monkeypatch):
        monkeypatch.setattr('trinity_memory.utils.opensearch_client.helpers.bulk',
                            lambda client, actions, **kwargs: (0, [{'index': {'status': 400}}]))
        entry = VectorEntry(id='x', content='c', embedding=[0.0, 0.0, 0.0], metadata={'user_id': 'u1'})

        with pytest.raises(OpenSearchError):
            store.upsert([entry])

    def test_similarity_search_requires_user(self, store):
        with pytest.raises(OpenSearchError):
            store.similarity_search([0.1, 0.2, 0.3], 5, {'file_type': 'text'})

    def test_similarity_search_parses_hits(self, store, os_client):
        os_client.search.return_value = {
            'hits': {
                'hits': [{
                    '_id': 'abc_chunk_0',
                    '_score': 0.92,
                    '_source': {
                        'content': 'chunk text',
                        'user_id': 'u1',
                        'file_path': '/f.txt'
                    }
                }]
            }
        }

        hits = store.similarity_search([0.1, 0.2, 0.3], 5, {'user_id': 'u1'})

        assert hits[0].id == 'abc_chunk_0'
        assert hits[0].score == pytest.approx(0.92)
        assert hits[0].metadata['file_path'] == '/f.txt'
        query = os_client.search.call_args.kwargs['body']['query']['bool']
        assert query['filter'] == [{'term': {'user_id': 'u1'}}]
        assert query['must'][0]['knn']['embedding']['k'] == 5

    def test_missing_index_returns_no_hits(self, store, os_client):
        os_client.search.side_effect = OpenSearchNotFoundError(404, 'index_not_found_exception', {})
        assert store.similarity_search([0.1, 0.2, 0.3], 5, {'user_id': 'u1'}) == []

    def test_search_failures_raise(self, store, os_client):
        os_client.search.side_effect = OpenSearchConnectionError('N/A', 'refused', Exception('refused'))
        with pytest.raises(OpenSearchError):
            store.similarity_search([0.1, 0.2, 0.3], 5, {'user_id': 'u1'})

    def test_delete_tolerates_missing_documents(self, store, monkeypatch):
        monkeypatch.setattr('trinity_memory.utils.opensearch_client.helpers.bulk',
                            lambda client, actions, **kwargs: (1, [{'delete': {'status': 404, '_id': 'gone'}}]))
        assert store.delete(['present', 'gone']) == 1
        assert store.delete([]) == 0

    def test_delete_failures_raise(self, store, monkeypatch):
        monkeypatch.setattr('trinity_memory.utils.opensearch_client.helpers.bulk',
                            lambda client, actions, **kwargs: (0, [{'delete': {'status': 500, '_id': 'x'}}]))
        with pytest.raises(OpenSearchError):
            store.delete(['x'])
