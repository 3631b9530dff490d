"""
OpenSearch client wrapper used as the engine's document store.
"""

from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)

_KEYWORD = {'type': 'keyword'}
_LONG = {'type': 'long'}
_DATE = {'type': 'date'}
_TEXT = {'type': 'text'}
_STORED = {'type': 'object', 'enabled': False}

INDEX_MAPPINGS: Dict[str, Dict[str, Any]] = {
    'message': {
        'chat_id': _LONG,
        'message_id': _LONG,
        'user_id': _LONG,
        'text': _TEXT,
        'date': _DATE,
        'reply_to_message_id': _LONG,
        'conversation_ids': _LONG,
    },
    'user': {
        'chat_id': _LONG,
        'user_id': _LONG,
        'username': _KEYWORD,
        'username_lower': _KEYWORD,
        'first_name': _TEXT,
    },
    'conversation': {
        'chat_id': _LONG,
        'conversation_id': _LONG,
        'title': _TEXT,
        'summary': _TEXT,
        'weight': {
            'type': 'integer'
        },
        'message_start_id': _LONG,
        'message_end_id': _LONG,
        'participant_ids': _LONG,
        'date': _DATE,
        'batch_id': _LONG,
    },
    'person': {
        'chat_id': _LONG,
        'user_id': _LONG,
        'characteristics': _TEXT,
        'thoughts': _STORED,
        'interactions_count': {
            'type': 'integer'
        },
    },
    'prompt_cache': {
        'chat_id': _LONG,
        'display_name': _KEYWORD,
        'provider_name': _KEYWORD,
        'model': _KEYWORD,
        'expires_at': _DATE,
        'start_message_id': _LONG,
        'end_message_id': _LONG,
        'system_prompt': _STORED,
        'contents': _STORED,
        'deleted': {
            'type': 'boolean'
        },
    },
    'batch_job': {
        'id': _LONG,
        'chat_id': _LONG,
        'input_location': _KEYWORD,
        'output_location': _KEYWORD,
        'start_message_id': _LONG,
        'end_message_id': _LONG,
        'state': _KEYWORD,
        'job': {
            'properties': {
                'provider_name': _KEYWORD,
                'display_name': _KEYWORD,
                'state': _KEYWORD,
                'started_at': _DATE,
                'completed_at': _DATE,
            }
        },
        'created_at': _DATE,
        'ingestion': _KEYWORD,
    },
    'strategy': {
        'chat_id': _LONG,
        'strategies': _STORED,
    },
    'counter': {
        'name': _KEYWORD,
        'sequence': _LONG,
    },
}


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Preconfigured low-level client, built from config if None
        """
        self.config = config

        if client is None:
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)
            endpoint = config.endpoint
            if '://' in endpoint:
                endpoint = endpoint.split('://', 1)[1]

            client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                http_auth=auth,
                                use_ssl=True,
                                verify_certs=True,
                                connection_class=RequestsHttpConnection)
        self.client = client

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_name(self, index_type: str) -> str:
        return f'{self.config.index_prefix}_{index_type}'

    def create_indexes(self) -> None:
        """Create every record index the engine uses."""
        for index_type in INDEX_MAPPINGS:
            self.create_index_if_not_exists(index_type)

    def create_index_if_not_exists(self, index_type: str) -> str:
        """
        Create index if it doesn't exist.

        Args:
            index_type: Record type, one of INDEX_MAPPINGS

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.index_name(index_type)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            index_body = {'mappings': {'properties': INDEX_MAPPINGS[index_type]}}
            response = self.client.indices.create(index=index_name, body=index_body)
            if response.get('acknowledged', False):
                logger.info(f'Created index {index_name}')
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def index_document(self,
                       document: Dict[str, Any],
                       index_type: str,
                       doc_id: Optional[str] = None,
                       create_only: bool = False) -> bool:
        """
        Index a document.

        Args:
            document: Document to index
            index_type: Record type
            doc_id: Deterministic document id, generated by OpenSearch if None
            create_only: Fail with a conflict instead of overwriting an existing id

        Returns:
            True if indexing was successful, False otherwise
        """
        index_name = self.index_name(index_type)
        kwargs: Dict[str, Any] = {'index': index_name, 'body': document, 'refresh': 'wait_for'}
        if doc_id is not None:
            kwargs['id'] = doc_id
        if create_only:
            kwargs['op_type'] = 'create'

        try:
            response = self.client.index(**kwargs)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed document in {index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')

            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing document in {index_name}: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error indexing document: {e}')
            raise OpenSearchError(f'Unexpected error indexing document: {e}')

    def get_document(self, doc_id: str, index_type: str) -> Optional[Dict[str, Any]]:
        """
        Get a document by id.

        Returns:
            Document source if found, None otherwise
        """
        index_name = self.index_name(index_type)

        try:
            response = self.client.get(index=index_name, id=doc_id)
            return response.get('_source') if response.get('found') else None
        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting document {doc_id} from {index_name}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error getting document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error getting document: {e}')

    def search(self,
               index_type: str,
               query: Dict[str, Any],
               sort: Optional[List[Dict[str, Any]]] = None,
               size: int = 100) -> List[Dict[str, Any]]:
        """
        Run a query and return hits.

        Args:
            index_type: Record type
            query: OpenSearch query DSL
            sort: Sort clauses
            size: Maximum number of hits

        Returns:
            List of {'id', 'document'} dicts
        """
        index_name = self.index_name(index_type)
        body: Dict[str, Any] = {'size': size, 'query': query}
        if sort:
            body['sort'] = sort

        try:
            response = self.client.search(index=index_name, body=body)
            results = [{'id': hit['_id'], 'document': hit['_source']} for hit in response['hits']['hits']]
            logger.debug(f'Search in {index_name} returned {len(results)} results')
            return results
        except NotFoundError:
            return []
        except OpenSearchException as e:
            logger.error(f'Error searching {index_name}: {e}')
            raise OpenSearchError(f'Search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error searching {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error in search: {e}')

    def distinct_values(self, index_type: str, field: str, size: int = 1000) -> List[Any]:
        """
        Collect distinct values of a keyword or numeric field.

        Returns:
            Values ordered by document count
        """
        index_name = self.index_name(index_type)
        body = {'size': 0, 'aggs': {'values': {'terms': {'field': field, 'size': size}}}}

        try:
            response = self.client.search(index=index_name, body=body)
            return [bucket['key'] for bucket in response['aggregations']['values']['buckets']]
        except NotFoundError:
            return []
        except OpenSearchException as e:
            logger.error(f'Error aggregating {field} in {index_name}: {e}')
            raise OpenSearchError(f'Aggregation failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error aggregating {field} in {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error in aggregation: {e}')

    def update_document(self,
                        doc_id: str,
                        index_type: str,
                        fields: Optional[Dict[str, Any]] = None,
                        script: Optional[Dict[str, Any]] = None,
                        upsert: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Partially update a document with fields or a painless script.

        Returns:
            Raw update response, `result` is 'updated', 'created' or 'noop'
        """
        index_name = self.index_name(index_type)
        body: Dict[str, Any] = {}
        if fields is not None:
            body['doc'] = fields
        if script is not None:
            body['script'] = script
        if upsert is not None:
            body['upsert'] = upsert

        try:
            return self.client.update(index=index_name,
                                      id=doc_id,
                                      body=body,
                                      refresh='wait_for',
                                      retry_on_conflict=5,
                                      _source=True)
        except OpenSearchException as e:
            logger.error(f'Error updating document {doc_id} in {index_name}: {e}')
            raise OpenSearchError(f'Failed to update document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error updating document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error updating document: {e}')

    def update_by_query(self, index_type: str, query: Dict[str, Any], script: Dict[str, Any]) -> int:
        """
        Apply a script to every matching document.

        Returns:
            Number of updated documents
        """
        index_name = self.index_name(index_type)

        try:
            response = self.client.update_by_query(index=index_name,
                                                   body={
                                                       'query': query,
                                                       'script': script
                                                   },
                                                   refresh=True,
                                                   conflicts='proceed')
            return int(response.get('updated', 0))
        except OpenSearchException as e:
            logger.error(f'Error in update by query on {index_name}: {e}')
            raise OpenSearchError(f'Update by query failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in update by query on {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error in update by query: {e}')

    def next_sequence(self, name: str) -> int:
        """
        Atomically increment and return a named counter, starting at 1.
        """
        response = self.update_document(doc_id=name,
                                        index_type='counter',
                                        script={
                                            'source': 'ctx._source.sequence += 1',
                                            'lang': 'painless'
                                        },
                                        upsert={
                                            'name': name,
                                            'sequence': 1
                                        })
        try:
            return int(response['get']['_source']['sequence'])
        except (KeyError, TypeError, ValueError) as e:
            raise OpenSearchError(f'Counter {name} returned no sequence: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name('counter'))

            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
