"""
Core data models for the conversation orchestration engine.

Every record is owned by a single chat, `chat_id` partitions all storage.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.timestamp_utils import to_datetime, to_iso

QUALITY_LOW = 'low'
QUALITY_REGULAR = 'regular'
QUALITY_ADVANCED = 'advanced'

CONTEXT_SHORT = 'short'
CONTEXT_EXTENDED = 'extended'

STRATEGY_CONVERSATION = 'conversation'
STRATEGY_IGNORE = 'ignore'

ATTITUDE_FACTORS = ('hostility', 'repetitiveness', 'engagement', 'kindness', 'playfulness')


def clamp_score(score: float) -> int:
    """Clamp a model-provided rating into the 1-10 range."""
    if score < 1:
        return 1
    if score > 10:
        return 10
    return int(round(score))


class JobState(str, Enum):
    """Lifecycle of a summarization batch."""
    SCANNED = 'SCANNED'
    PREPARED = 'PREPARED'
    SUBMITTED = 'SUBMITTED'
    QUEUED = 'QUEUED'
    RUNNING = 'RUNNING'
    SUCCEEDED = 'SUCCEEDED'
    FAILED = 'FAILED'
    CANCELLED = 'CANCELLED'
    EXPIRED = 'EXPIRED'

    @property
    def in_progress(self) -> bool:
        return self in JOB_STATES_PROGRESS

    @property
    def terminal(self) -> bool:
        return self in JOB_STATES_SUCCESS or self in JOB_STATES_FAILED


JOB_STATES_PROGRESS = frozenset({JobState.PREPARED, JobState.SUBMITTED, JobState.QUEUED, JobState.RUNNING})
JOB_STATES_SUCCESS = frozenset({JobState.SUCCEEDED})
JOB_STATES_FAILED = frozenset({JobState.FAILED, JobState.CANCELLED, JobState.EXPIRED})

INGESTION_CLAIMED = 'ingesting'
INGESTION_DONE = 'done'


@dataclass
class Message:
    """A chat message as delivered by the transport."""
    chat_id: int
    message_id: int
    user_id: int
    text: str
    date: datetime
    reply_to_message_id: Optional[int] = None
    conversation_ids: List[int] = field(default_factory=list)

    def to_document(self) -> Dict[str, Any]:
        return {
            'chat_id': self.chat_id,
            'message_id': self.message_id,
            'user_id': self.user_id,
            'text': self.text,
            'date': to_iso(self.date),
            'reply_to_message_id': self.reply_to_message_id,
            'conversation_ids': list(self.conversation_ids),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'Message':
        return cls(chat_id=int(doc['chat_id']),
                   message_id=int(doc['message_id']),
                   user_id=int(doc['user_id']),
                   text=doc.get('text') or '',
                   date=to_datetime(doc['date']),
                   reply_to_message_id=doc.get('reply_to_message_id'),
                   conversation_ids=list(doc.get('conversation_ids') or []))


@dataclass
class User:
    """A chat participant known to the transport."""
    chat_id: int
    user_id: int
    username: Optional[str] = None
    first_name: Optional[str] = None

    @property
    def handle(self) -> str:
        """Safe unique identifier used inside prompts."""
        if self.username:
            return f'@{self.username}'
        return f'ID:{self.user_id}'

    def to_document(self) -> Dict[str, Any]:
        return {
            'chat_id': self.chat_id,
            'user_id': self.user_id,
            'username': self.username,
            'first_name': self.first_name,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'User':
        return cls(chat_id=int(doc['chat_id']),
                   user_id=int(doc['user_id']),
                   username=doc.get('username'),
                   first_name=doc.get('first_name'))


@dataclass
class Conversation:
    """A summarized span of chat history. Immutable once created."""
    chat_id: int
    conversation_id: int
    title: str
    summary: str
    weight: int
    message_start_id: int
    message_end_id: int
    participant_ids: List[int]
    date: datetime
    batch_id: Optional[int] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            'chat_id': self.chat_id,
            'conversation_id': self.conversation_id,
            'title': self.title,
            'summary': self.summary,
            'weight': self.weight,
            'message_start_id': self.message_start_id,
            'message_end_id': self.message_end_id,
            'participant_ids': list(self.participant_ids),
            'date': to_iso(self.date),
            'batch_id': self.batch_id,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'Conversation':
        return cls(chat_id=int(doc['chat_id']),
                   conversation_id=int(doc['conversation_id']),
                   title=doc.get('title', ''),
                   summary=doc.get('summary', ''),
                   weight=int(doc.get('weight', 1)),
                   message_start_id=int(doc['message_start_id']),
                   message_end_id=int(doc['message_end_id']),
                   participant_ids=[int(i) for i in doc.get('participant_ids') or []],
                   date=to_datetime(doc['date']),
                   batch_id=doc.get('batch_id'))


@dataclass
class ThoughtFactor:
    name: str
    value: int


@dataclass
class PersonThought:
    """One impression of a participant, appended after a conversation."""
    thought: str
    opinion_modifier: int
    weight: int
    factors: List[ThoughtFactor]
    date: datetime

    def to_document(self) -> Dict[str, Any]:
        return {
            'thought': self.thought,
            'opinion_modifier': self.opinion_modifier,
            'weight': self.weight,
            'factors': [{
                'name': factor.name,
                'value': factor.value
            } for factor in self.factors],
            'date': to_iso(self.date),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'PersonThought':
        return cls(thought=doc.get('thought', ''),
                   opinion_modifier=int(doc.get('opinion_modifier', 0)),
                   weight=int(doc.get('weight', 1)),
                   factors=[ThoughtFactor(name=f['name'], value=int(f['value'])) for f in doc.get('factors') or []],
                   date=to_datetime(doc['date']))


@dataclass
class Person:
    """Long-term memory about one participant of a chat. Append only."""
    chat_id: int
    user_id: int
    characteristics: List[str] = field(default_factory=list)
    thoughts: List[PersonThought] = field(default_factory=list)
    interactions_count: int = 0

    def to_document(self) -> Dict[str, Any]:
        return {
            'chat_id': self.chat_id,
            'user_id': self.user_id,
            'characteristics': list(self.characteristics),
            'thoughts': [thought.to_document() for thought in self.thoughts],
            'interactions_count': self.interactions_count,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'Person':
        return cls(chat_id=int(doc['chat_id']),
                   user_id=int(doc['user_id']),
                   characteristics=list(doc.get('characteristics') or []),
                   thoughts=[PersonThought.from_document(t) for t in doc.get('thoughts') or []],
                   interactions_count=int(doc.get('interactions_count', 0)))


@dataclass
class PromptCacheRecord:
    """Tracks one provider-side prompt cache and the prefix it holds."""
    chat_id: int
    display_name: str
    provider_name: str
    model: str
    expires_at: datetime
    start_message_id: Optional[int]
    end_message_id: Optional[int]
    system_prompt: str = ''
    contents: List[Dict[str, Any]] = field(default_factory=list)
    deleted: bool = False
    record_id: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            'chat_id': self.chat_id,
            'display_name': self.display_name,
            'provider_name': self.provider_name,
            'model': self.model,
            'expires_at': to_iso(self.expires_at),
            'start_message_id': self.start_message_id,
            'end_message_id': self.end_message_id,
            'system_prompt': self.system_prompt,
            'contents': self.contents,
            'deleted': self.deleted,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any], record_id: Optional[str] = None) -> 'PromptCacheRecord':
        return cls(chat_id=int(doc['chat_id']),
                   display_name=doc['display_name'],
                   provider_name=doc.get('provider_name', ''),
                   model=doc.get('model', ''),
                   expires_at=to_datetime(doc['expires_at']),
                   start_message_id=doc.get('start_message_id'),
                   end_message_id=doc.get('end_message_id'),
                   system_prompt=doc.get('system_prompt', ''),
                   contents=list(doc.get('contents') or []),
                   deleted=bool(doc.get('deleted', False)),
                   record_id=record_id)


@dataclass
class BatchJobInfo:
    """Provider-side view of a batch job."""
    provider_name: str
    display_name: str
    state: JobState
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            'provider_name': self.provider_name,
            'display_name': self.display_name,
            'state': self.state.value,
            'started_at': to_iso(self.started_at),
            'completed_at': to_iso(self.completed_at),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'BatchJobInfo':
        return cls(provider_name=doc.get('provider_name', ''),
                   display_name=doc.get('display_name', ''),
                   state=JobState(doc.get('state', JobState.SUBMITTED.value)),
                   started_at=to_datetime(doc['started_at']) if doc.get('started_at') else None,
                   completed_at=to_datetime(doc['completed_at']) if doc.get('completed_at') else None)


@dataclass
class BatchJob:
    """A summarization batch over a contiguous message range of one chat."""
    id: int
    chat_id: int
    input_location: str
    output_location: str
    start_message_id: int
    end_message_id: int
    state: JobState = JobState.PREPARED
    job: Optional[BatchJobInfo] = None
    created_at: Optional[datetime] = None
    ingestion: Optional[str] = None

    @property
    def pending(self) -> bool:
        """Still owns its message range: running, or finished but not ingested."""
        if self.state.in_progress:
            return True
        return self.state == JobState.SUCCEEDED and self.ingestion != INGESTION_DONE

    def to_document(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'chat_id': self.chat_id,
            'input_location': self.input_location,
            'output_location': self.output_location,
            'start_message_id': self.start_message_id,
            'end_message_id': self.end_message_id,
            'state': self.state.value,
            'job': self.job.to_document() if self.job else None,
            'created_at': to_iso(self.created_at),
            'ingestion': self.ingestion,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'BatchJob':
        return cls(id=int(doc['id']),
                   chat_id=int(doc['chat_id']),
                   input_location=doc.get('input_location', ''),
                   output_location=doc.get('output_location', ''),
                   start_message_id=int(doc['start_message_id']),
                   end_message_id=int(doc['end_message_id']),
                   state=JobState(doc.get('state', JobState.PREPARED.value)),
                   job=BatchJobInfo.from_document(doc['job']) if doc.get('job') else None,
                   created_at=to_datetime(doc['created_at']) if doc.get('created_at') else None,
                   ingestion=doc.get('ingestion'))


@dataclass
class AnswerStrategy:
    """How to respond to a classified message."""
    strategy_code: str
    classification_description: str
    response_prompt: str
    quality: str = QUALITY_REGULAR

    def to_document(self) -> Dict[str, Any]:
        return {
            'strategy_code': self.strategy_code,
            'classification_description': self.classification_description,
            'response_prompt': self.response_prompt,
            'quality': self.quality,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'AnswerStrategy':
        return cls(strategy_code=doc['strategy_code'],
                   classification_description=doc.get('classification_description', ''),
                   response_prompt=doc.get('response_prompt', ''),
                   quality=doc.get('quality', QUALITY_REGULAR))


CONVERSATION_STRATEGY = AnswerStrategy(
    strategy_code=STRATEGY_CONVERSATION,
    classification_description='The message in question is a regular conversation or inquiry.',
    response_prompt=('Answer the following message briefly, just in a sentence or two. '
                     'Avoid using any specialized tools at your disposal unless absolutely required.'),
    quality=QUALITY_REGULAR)

# Never used as a prompt, selecting it stops the turn
IGNORE_STRATEGY = AnswerStrategy(
    strategy_code=STRATEGY_IGNORE,
    classification_description=('The message does not require a response. Use when conversation is complete, '
                                'there is nothing to add, or user is spamming the same messages repeatedly '
                                'without meaningfully contributing to the conversation.'),
    response_prompt='Do not answer the message.',
    quality=QUALITY_LOW)

DEFAULT_STRATEGIES = (
    CONVERSATION_STRATEGY,
    AnswerStrategy(strategy_code='question',
                   classification_description=('The message has a question that does not seem very important, '
                                               'but could spark a conversation.'),
                   response_prompt=('Answer the following message briefly, just in a few sentences. Stick to the role '
                                    "you're playing, and pay attention to the conversation context and users' "
                                    'personalities. Be creative and engaging to encourage further discussion.'),
                   quality=QUALITY_REGULAR),
    AnswerStrategy(strategy_code='feedback',
                   classification_description='The message is providing feedback, opinions, or suggestions.',
                   response_prompt=("Respond to the feedback or opinion expressed in the message. Acknowledge the "
                                    "user's input and provide a thoughtful response."),
                   quality=QUALITY_REGULAR),
    AnswerStrategy(strategy_code='research',
                   classification_description=('The message requires gathering information to provide a well-informed '
                                               'response: the user is genuinely seeking detailed information, the topic '
                                               'requires nuance, or the user asks for comparisons or analyses.'),
                   response_prompt=('Use your tools and the chat history to research the topic thoroughly before '
                                    'answering. If you cannot find sufficient information, clearly say so. '
                                    'Tone down the roleplay to keep the answer concise.'),
                   quality=QUALITY_ADVANCED),
    AnswerStrategy(strategy_code='annoyance',
                   classification_description='The message is annoying, provocative, or disruptive.',
                   response_prompt=('According to your role, respond in a way that de-escalates the situation and '
                                    'discourages further disruptive behavior.'),
                   quality=QUALITY_REGULAR),
    AnswerStrategy(strategy_code='overloaded',
                   classification_description='Use this when chat is overflown with your messages.',
                   response_prompt=('According to your role, encourage users to interact more among themselves by '
                                    'giving a short, uninterested response.'),
                   quality=QUALITY_REGULAR),
    IGNORE_STRATEGY,
)
