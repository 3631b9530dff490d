"""
Chat record store on top of OpenSearch.

Document ids are derived from the owning chat so repeated writes of the same
record are idempotent.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..models.core import (INGESTION_CLAIMED, INGESTION_DONE, JOB_STATES_PROGRESS, AnswerStrategy, BatchJob,
                           Conversation, JobState, Message, Person, PersonThought, PromptCacheRecord, User)
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient
from ..utils.timestamp_utils import to_iso

logger = get_logger(__name__)

CONVERSATION_SEQUENCE = 'conversation'
BATCH_SEQUENCE = 'batch'

MAX_REPLY_CHAIN = 20

_APPEND_CONVERSATION_SCRIPT = """
if (ctx._source.conversation_ids == null) { ctx._source.conversation_ids = []; }
if (ctx._source.conversation_ids.contains(params.conversation_id)) { ctx.op = 'noop'; }
else { ctx._source.conversation_ids.add(params.conversation_id); }
"""

_APPEND_PERSON_SCRIPT = """
if (ctx._source.thoughts == null) { ctx._source.thoughts = []; }
if (ctx._source.characteristics == null) { ctx._source.characteristics = []; }
if (ctx._source.interactions_count == null) { ctx._source.interactions_count = 0; }
ctx._source.thoughts.add(params.thought);
ctx._source.characteristics.addAll(params.facts);
ctx._source.interactions_count += 1;
"""

_CLAIM_INGESTION_SCRIPT = """
if (ctx._source.ingestion != null) { ctx.op = 'noop'; }
else { ctx._source.ingestion = params.claim; }
"""


def _chat(chat_id: int) -> Dict[str, Any]:
    return {'term': {'chat_id': chat_id}}


def _bool(*must: Dict[str, Any], must_not: Sequence[Dict[str, Any]] = ()) -> Dict[str, Any]:
    query: Dict[str, Any] = {'bool': {'filter': list(must)}}
    if must_not:
        query['bool']['must_not'] = list(must_not)
    return query


class ChatRecordStore:
    """Persistence of messages, users, memory, caches, batches and strategies."""

    def __init__(self, opensearch: OpenSearchClient):
        self.opensearch = opensearch

    def create_indexes(self) -> None:
        self.opensearch.create_indexes()

    def next_sequence(self, chat_id: int, name: str) -> int:
        """Allocate the next id of a per-chat sequence, starting at 1."""
        return self.opensearch.next_sequence(f'{name}-{chat_id}')

    def get_chat_ids(self, limit: int = 1000) -> List[int]:
        return [int(value) for value in self.opensearch.distinct_values('message', 'chat_id', size=limit)]

    # Messages

    def save_message(self, message: Message) -> None:
        self.opensearch.index_document(message.to_document(), 'message', doc_id=f'{message.chat_id}-{message.message_id}')

    def get_message(self, chat_id: int, message_id: int) -> Optional[Message]:
        doc = self.opensearch.get_document(f'{chat_id}-{message_id}', 'message')
        return Message.from_document(doc) if doc else None

    def get_messages(self, chat_id: int, start_message_id: int, end_message_id: int, limit: int = 10000) -> List[Message]:
        """Messages with ids in the inclusive range, oldest first."""
        hits = self.opensearch.search('message',
                                      _bool(_chat(chat_id),
                                            {'range': {
                                                'message_id': {
                                                    'gte': start_message_id,
                                                    'lte': end_message_id
                                                }
                                            }}),
                                      sort=[{'date': 'asc'}, {'message_id': 'asc'}],
                                      size=limit)
        return [Message.from_document(hit['document']) for hit in hits]

    def get_latest_messages(self, chat_id: int, limit: int) -> List[Message]:
        """The newest `limit` messages, oldest first."""
        hits = self.opensearch.search('message',
                                      _bool(_chat(chat_id)),
                                      sort=[{'date': 'desc'}, {'message_id': 'desc'}],
                                      size=limit)
        return [Message.from_document(hit['document']) for hit in reversed(hits)]

    def get_message_chain(self, chat_id: int, message_id: int) -> List[Message]:
        """Follow reply links from a message, returning the chain oldest first."""
        chain: List[Message] = []
        seen = set()
        current: Optional[int] = message_id
        while current is not None and current not in seen and len(chain) < MAX_REPLY_CHAIN:
            seen.add(current)
            message = self.get_message(chat_id, current)
            if message is None:
                break
            chain.append(message)
            current = message.reply_to_message_id
        chain.reverse()
        return chain

    def get_oldest_unprocessed_messages(self,
                                        chat_id: int,
                                        after_message_id: Optional[int] = None,
                                        limit: int = 10000) -> List[Message]:
        """Oldest messages not yet covered by any Conversation."""
        filters = [_chat(chat_id)]
        if after_message_id is not None:
            filters.append({'range': {'message_id': {'gt': after_message_id}}})

        hits = self.opensearch.search('message',
                                      _bool(*filters, must_not=[{
                                          'exists': {
                                              'field': 'conversation_ids'
                                          }
                                      }]),
                                      sort=[{'date': 'asc'}, {'message_id': 'asc'}],
                                      size=limit)
        return [Message.from_document(hit['document']) for hit in hits]

    def add_conversation_id_to_messages(self, chat_id: int, start_message_id: int, end_message_id: int,
                                        conversation_id: int) -> int:
        """Append a conversation id to every message of the range, skipping ones that have it."""
        return self.opensearch.update_by_query('message',
                                               _bool(_chat(chat_id),
                                                     {'range': {
                                                         'message_id': {
                                                             'gte': start_message_id,
                                                             'lte': end_message_id
                                                         }
                                                     }}),
                                               script={
                                                   'source': _APPEND_CONVERSATION_SCRIPT,
                                                   'lang': 'painless',
                                                   'params': {
                                                       'conversation_id': conversation_id
                                                   }
                                               })

    # Users

    def save_user(self, user: User) -> None:
        doc = user.to_document()
        doc['username_lower'] = user.username.lower() if user.username else None
        self.opensearch.index_document(doc, 'user', doc_id=f'{user.chat_id}-{user.user_id}')

    def get_user(self, chat_id: int, user_id: int) -> Optional[User]:
        doc = self.opensearch.get_document(f'{chat_id}-{user_id}', 'user')
        return User.from_document(doc) if doc else None

    def get_users(self, chat_id: int, user_ids: Sequence[int]) -> List[User]:
        if not user_ids:
            return []
        hits = self.opensearch.search('user',
                                      _bool(_chat(chat_id), {'terms': {
                                          'user_id': sorted(set(user_ids))
                                      }}),
                                      size=len(set(user_ids)))
        return [User.from_document(hit['document']) for hit in hits]

    def get_user_by_username(self, chat_id: int, username: str) -> Optional[User]:
        hits = self.opensearch.search('user',
                                      _bool(_chat(chat_id), {'term': {
                                          'username_lower': username.lower()
                                      }}),
                                      size=1)
        return User.from_document(hits[0]['document']) if hits else None

    # Long-term memory

    def get_person(self, chat_id: int, user_id: int) -> Optional[Person]:
        doc = self.opensearch.get_document(f'{chat_id}-{user_id}', 'person')
        return Person.from_document(doc) if doc else None

    def get_persons(self, chat_id: int, user_ids: Sequence[int]) -> List[Person]:
        if not user_ids:
            return []
        hits = self.opensearch.search('person',
                                      _bool(_chat(chat_id), {'terms': {
                                          'user_id': sorted(set(user_ids))
                                      }}),
                                      size=len(set(user_ids)))
        return [Person.from_document(hit['document']) for hit in hits]

    def append_person_memory(self, chat_id: int, user_id: int, thought: PersonThought, facts: List[str]) -> None:
        """Append a thought and facts to a participant, creating the record on first use."""
        thought_doc = thought.to_document()
        upsert = Person(chat_id=chat_id, user_id=user_id).to_document()
        upsert.update({'thoughts': [thought_doc], 'characteristics': list(facts), 'interactions_count': 1})

        self.opensearch.update_document(f'{chat_id}-{user_id}',
                                        'person',
                                        script={
                                            'source': _APPEND_PERSON_SCRIPT,
                                            'lang': 'painless',
                                            'params': {
                                                'thought': thought_doc,
                                                'facts': list(facts)
                                            }
                                        },
                                        upsert=upsert)

    def create_conversation(self, conversation: Conversation) -> None:
        self.opensearch.index_document(conversation.to_document(),
                                       'conversation',
                                       doc_id=f'{conversation.chat_id}-{conversation.conversation_id}',
                                       create_only=True)

    def get_conversation(self, chat_id: int, conversation_id: int) -> Optional[Conversation]:
        doc = self.opensearch.get_document(f'{chat_id}-{conversation_id}', 'conversation')
        return Conversation.from_document(doc) if doc else None

    def get_conversations_for_batch(self, chat_id: int, batch_id: int) -> List[Conversation]:
        hits = self.opensearch.search('conversation',
                                      _bool(_chat(chat_id), {'term': {
                                          'batch_id': batch_id
                                      }}),
                                      sort=[{'conversation_id': 'asc'}])
        return [Conversation.from_document(hit['document']) for hit in hits]

    def get_recent_conversations(self,
                                 chat_id: int,
                                 limit: int = 20,
                                 before_message_id: Optional[int] = None) -> List[Conversation]:
        """Latest conversations, optionally only those starting before a message, oldest first."""
        filters = [_chat(chat_id)]
        if before_message_id is not None:
            filters.append({'range': {'message_start_id': {'lt': before_message_id}}})
        hits = self.opensearch.search('conversation', _bool(*filters), sort=[{'date': 'desc'}], size=limit)
        return [Conversation.from_document(hit['document']) for hit in reversed(hits)]

    # Prompt caches

    def find_live_prompt_cache(self, chat_id: int, display_name: str, usable_after: datetime) -> Optional[PromptCacheRecord]:
        """Newest non-deleted cache record that stays valid past `usable_after`."""
        hits = self.opensearch.search('prompt_cache',
                                      _bool(_chat(chat_id), {'term': {
                                          'display_name': display_name
                                      }}, {'term': {
                                          'deleted': False
                                      }}, {'range': {
                                          'expires_at': {
                                              'gt': to_iso(usable_after)
                                          }
                                      }}),
                                      sort=[{'expires_at': 'desc'}],
                                      size=1)
        if not hits:
            return None
        return PromptCacheRecord.from_document(hits[0]['document'], record_id=hits[0]['id'])

    def create_prompt_cache(self, record: PromptCacheRecord) -> PromptCacheRecord:
        record.record_id = record.record_id or str(uuid.uuid4())
        self.opensearch.index_document(record.to_document(), 'prompt_cache', doc_id=record.record_id)
        return record

    def soft_delete_prompt_cache(self, chat_id: int, display_name: str) -> int:
        """Flag every live record of a cache as deleted."""
        return self.opensearch.update_by_query('prompt_cache',
                                               _bool(_chat(chat_id), {'term': {
                                                   'display_name': display_name
                                               }}, {'term': {
                                                   'deleted': False
                                               }}),
                                               script={
                                                   'source': 'ctx._source.deleted = true',
                                                   'lang': 'painless'
                                               })

    # Batches

    def create_batch_job(self, job: BatchJob) -> None:
        self.opensearch.index_document(job.to_document(), 'batch_job', doc_id=f'{job.chat_id}-{job.id}', create_only=True)

    def get_batch_job(self, chat_id: int, batch_id: int) -> Optional[BatchJob]:
        doc = self.opensearch.get_document(f'{chat_id}-{batch_id}', 'batch_job')
        return BatchJob.from_document(doc) if doc else None

    def get_pending_batch_jobs(self, chat_id: int) -> List[BatchJob]:
        """Batches still running or finished but not yet ingested."""
        query = _bool(_chat(chat_id))
        query['bool']['should'] = [
            {
                'terms': {
                    'state': sorted(state.value for state in JOB_STATES_PROGRESS)
                }
            },
            _bool({'term': {
                'state': JobState.SUCCEEDED.value
            }}, must_not=[{
                'term': {
                    'ingestion': INGESTION_DONE
                }
            }]),
        ]
        query['bool']['minimum_should_match'] = 1

        hits = self.opensearch.search('batch_job', query, sort=[{'end_message_id': 'asc'}])
        return [BatchJob.from_document(hit['document']) for hit in hits]

    def get_recent_batch_jobs(self, chat_id: int, limit: int = 10) -> List[BatchJob]:
        """Latest batches of a chat, newest first."""
        hits = self.opensearch.search('batch_job', _bool(_chat(chat_id)), sort=[{'id': 'desc'}], size=limit)
        return [BatchJob.from_document(hit['document']) for hit in hits]

    def update_batch_job_state(self, job: BatchJob) -> None:
        """Persist state and provider info without touching the ingestion flag."""
        self.opensearch.update_document(f'{job.chat_id}-{job.id}',
                                        'batch_job',
                                        fields={
                                            'state': job.state.value,
                                            'job': job.job.to_document() if job.job else None
                                        })

    def claim_batch_ingestion(self, chat_id: int, batch_id: int) -> bool:
        """Atomically take the ingestion of a batch. Only the first caller wins."""
        response = self.opensearch.update_document(f'{chat_id}-{batch_id}',
                                                   'batch_job',
                                                   script={
                                                       'source': _CLAIM_INGESTION_SCRIPT,
                                                       'lang': 'painless',
                                                       'params': {
                                                           'claim': INGESTION_CLAIMED
                                                       }
                                                   })
        return response.get('result') == 'updated'

    def complete_batch_ingestion(self, chat_id: int, batch_id: int) -> None:
        self.opensearch.update_document(f'{chat_id}-{batch_id}', 'batch_job', fields={'ingestion': INGESTION_DONE})

    # Strategies

    def get_strategies(self, chat_id: int) -> List[AnswerStrategy]:
        doc = self.opensearch.get_document(str(chat_id), 'strategy')
        if not doc:
            return []
        return [AnswerStrategy.from_document(item) for item in doc.get('strategies') or []]

    def save_strategies(self, chat_id: int, strategies: Sequence[AnswerStrategy]) -> None:
        self.opensearch.index_document({
            'chat_id': chat_id,
            'strategies': [strategy.to_document() for strategy in strategies]
        },
                                       'strategy',
                                       doc_id=str(chat_id))
