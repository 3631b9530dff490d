"""Tests for the OpenSearch wrapper and the record store queries built on it."""

from unittest.mock import MagicMock

import pytest
from opensearchpy.exceptions import NotFoundError, TransportError

from chatloom.models.core import INGESTION_CLAIMED, User
from chatloom.services.record_store import ChatRecordStore
from chatloom.utils.config import OpenSearchConfig
from chatloom.utils.opensearch_client import OpenSearchClient, OpenSearchError

from fakes import make_message


def opensearch_config():
    return OpenSearchConfig(endpoint='https://search.example.com', port=443, region='us-east-1',
                            index_prefix='chatloom', service='es')


@pytest.fixture
def low_level():
    return MagicMock()


@pytest.fixture
def client(low_level):
    return OpenSearchClient(opensearch_config(), client=low_level)


class TestOpenSearchClient:

    def test_index_names_are_prefixed(self, client):
        assert client.index_name('message') == 'chatloom_message'

    def test_create_index_skips_existing(self, client, low_level):
        low_level.indices.exists.return_value = True

        assert client.create_index_if_not_exists('message') == 'exists'
        low_level.indices.create.assert_not_called()

    def test_create_only_uses_op_type(self, client, low_level):
        low_level.index.return_value = {'result': 'created'}

        assert client.index_document({'a': 1}, 'conversation', doc_id='1-1', create_only=True)
        assert low_level.index.call_args.kwargs['op_type'] == 'create'

    def test_missing_document_is_none(self, client, low_level):
        low_level.get.side_effect = NotFoundError(404, 'not_found', {})

        assert client.get_document('1-1', 'message') is None

    def test_transport_errors_are_wrapped(self, client, low_level):
        low_level.search.side_effect = TransportError(500, 'boom', {})

        with pytest.raises(OpenSearchError):
            client.search('message', {'match_all': {}})

    def test_next_sequence_reads_updated_source(self, client, low_level):
        low_level.update.return_value = {'result': 'updated', 'get': {'_source': {'name': 'batch-1', 'sequence': 4}}}

        assert client.next_sequence('batch-1') == 4
        body = low_level.update.call_args.kwargs['body']
        assert body['upsert'] == {'name': 'batch-1', 'sequence': 1}

    def test_next_sequence_without_source(self, client, low_level):
        low_level.update.return_value = {'result': 'noop'}

        with pytest.raises(OpenSearchError):
            client.next_sequence('batch-1')


class TestChatRecordStore:

    @pytest.fixture
    def opensearch(self):
        return MagicMock(spec=OpenSearchClient)

    def test_sequences_are_scoped_per_chat(self, opensearch):
        opensearch.next_sequence.return_value = 1

        ChatRecordStore(opensearch).next_sequence(1, 'batch')

        opensearch.next_sequence.assert_called_once_with('batch-1')

    def test_message_ids_are_deterministic(self, opensearch):
        ChatRecordStore(opensearch).save_message(make_message(42, 0, chat_id=-100))

        assert opensearch.index_document.call_args.kwargs['doc_id'] == '-100-42'

    def test_unprocessed_messages_exclude_covered_ones(self, opensearch):
        opensearch.search.return_value = [{'id': '1-5', 'document': make_message(5, 0).to_document()}]

        messages = ChatRecordStore(opensearch).get_oldest_unprocessed_messages(1, after_message_id=4)

        assert [m.message_id for m in messages] == [5]
        query = opensearch.search.call_args.args[1]
        assert query['bool']['must_not'] == [{'exists': {'field': 'conversation_ids'}}]
        assert {'range': {'message_id': {'gt': 4}}} in query['bool']['filter']

    def test_latest_messages_are_returned_oldest_first(self, opensearch):
        opensearch.search.return_value = [
            {'id': '1-3', 'document': make_message(3, 30).to_document()},
            {'id': '1-2', 'document': make_message(2, 20).to_document()},
        ]

        messages = ChatRecordStore(opensearch).get_latest_messages(1, 2)

        assert [m.message_id for m in messages] == [2, 3]

    def test_message_chain_stops_on_cycles(self, opensearch):
        documents = {
            '1-3': make_message(3, 30, reply_to=2).to_document(),
            '1-2': make_message(2, 20, reply_to=3).to_document(),
        }
        opensearch.get_document.side_effect = lambda doc_id, index_type: documents.get(doc_id)

        chain = ChatRecordStore(opensearch).get_message_chain(1, 3)

        assert [m.message_id for m in chain] == [2, 3]

    @pytest.mark.parametrize('result, claimed', [('updated', True), ('noop', False)])
    def test_ingestion_claim(self, opensearch, result, claimed):
        opensearch.update_document.return_value = {'result': result}

        assert ChatRecordStore(opensearch).claim_batch_ingestion(1, 7) is claimed
        script = opensearch.update_document.call_args.kwargs['script']
        assert script['params'] == {'claim': INGESTION_CLAIMED}

    def test_username_lookup_is_case_insensitive(self, opensearch):
        store = ChatRecordStore(opensearch)
        store.save_user(User(chat_id=1, user_id=5, username='Polly'))

        assert opensearch.index_document.call_args.args[0]['username_lower'] == 'polly'

        opensearch.search.return_value = []
        assert store.get_user_by_username(1, 'POLLY') is None
        query = opensearch.search.call_args.args[1]
        assert {'term': {'username_lower': 'polly'}} in query['bool']['filter']

    def test_recent_batches_are_newest_first(self, opensearch):
        opensearch.search.return_value = []

        assert ChatRecordStore(opensearch).get_recent_batch_jobs(1, limit=3) == []
        assert opensearch.search.call_args.kwargs == {'sort': [{'id': 'desc'}], 'size': 3}
