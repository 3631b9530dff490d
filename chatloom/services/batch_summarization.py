"""
Batch summarization pipeline.

Compresses old chat history into Conversation and Person memory through
Bedrock batch inference:

    SCANNED -> PREPARED -> SUBMITTED -> QUEUED/RUNNING -> SUCCEEDED | FAILED | CANCELLED | EXPIRED

prepare() selects the oldest unprocessed messages, uploads one summarization
request to the chat bucket and submits the job. poll() follows the job and,
once it succeeded, ingests the results exactly once.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, ValidationError

from ..models.core import (ATTITUDE_FACTORS, JOB_STATES_FAILED, INGESTION_DONE, BatchJob, Conversation, JobState,
                           Message, PersonThought, ThoughtFactor, User, clamp_score)
from ..utils.bedrock_batch import OUTPUT_SUFFIX, BedrockBatch, BedrockBatchError, build_record, extract_record_output
from ..utils.config import BatchConfig, BedrockBatchConfig, PersonaConfig
from ..utils.json_utils import iter_json_lines, to_json_lines
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchError
from ..utils.s3_storage import ObjectStorageError, S3Storage
from ..utils.timestamp_utils import midpoint, round_to_granularity, utc_now
from .context_window import ContextWindowSegmenter, open_tail_cut
from .prompt_builder import PromptBuilder, opinion_modifier
from .record_store import BATCH_SEQUENCE, CONVERSATION_SEQUENCE, ChatRecordStore

logger = get_logger(__name__)

SUMMARIZATION_TOOL = 'record_conversations'

# Consecutive submission failures double the wait before the next attempt, up to a day
SUBMIT_FAILURE_LOOKBACK = 10
MAX_SUBMIT_BACKOFF = timedelta(hours=24)

SUMMARIZATION_INSTRUCTIONS = (
    'You are analyzing a chat log from a cluster of messages.\n'
    'In that cluster, you need to identify separate conversations.\n'
    "Typically it's expected to have 1-5 conversations in the window.\n"
    'Some conversations are small, some are large and span many messages.\n'
    'Messages are starting with #Message ID [User Handle] (Time).\n'
    'User handle has the format of @nickname or ID:UserID. Keep [User Handle] formatting in the response.\n'
    "If message says that it's hidden by user preferences, avoid extracting any information about it "
    'from context from other users.\n')


class BatchPipelineError(Exception):
    """Custom exception for batch pipeline errors."""
    pass


class ParticipantAttitude(BaseModel):
    hostility: int = Field(1, description='How hostile or aggressive the person was, 1-10.')
    repetitiveness: int = Field(1, description='How repetitive or insistent the person was, 1-10.')
    engagement: int = Field(1,
                            description=('How much the messages of this participant interested other participants '
                                         'in a positive way, including research or genuine interest, 1-10.'))
    kindness: int = Field(1, description='How kind the person was, cheering up others, 1-10.')
    playfulness: int = Field(1, description='How playful or joking the person was, 1-10.')


class SummarizedParticipant(BaseModel):
    handle: str = Field(description='Handle of the participant as shown in the log, e.g. [@nickname] or [ID:123456].')
    weight: int = Field(1, description="How impactful this person's messages were on other users, 1-10.")
    attitude: ParticipantAttitude = Field(default_factory=ParticipantAttitude,
                                          description="Rate this person's attitude and behavior in the conversation.")
    facts: List[str] = Field(default_factory=list,
                             description='New lasting facts about the person revealed in the conversation.')


class SummarizedConversation(BaseModel):
    title: str = Field(description=('Short phrase to title the conversation as to fit in "Conversation about X" '
                                    'template. Do not include "Conversation about".'))
    summary: str = Field(description='A concise summary of the conversation in 2-5 sentences.')
    weight: int = Field(1, description='How impactful this conversation was, how important it is to remember, 1-10.')
    message_start: int = Field(description=('Id of the message with which the conversation began. Conversations can '
                                            'overlap by a few messages, but no messages should be left out.'))
    message_end: int = Field(description=('Id of the message with which the conversation ended. Conversations can '
                                          'overlap by a few messages, but no messages should be left out.'))
    participants: List[SummarizedParticipant] = Field(default_factory=list)


class SummarizationOutput(BaseModel):
    conversations: List[SummarizedConversation]


class _RawSummarizationOutput(BaseModel):
    conversations: List[Dict[str, Any]] = Field(default_factory=list)


def input_key(batch_id: int) -> str:
    return f'batch-{batch_id}-input.jsonl'


def output_prefix(batch_id: int) -> str:
    return f'batch-{batch_id}-output/'


class BatchSummarizationPipeline:
    """Prepares, follows and ingests summarization batches of a chat."""

    def __init__(self, store: ChatRecordStore, storage: S3Storage, batch_client: BedrockBatch,
                 segmenter: ContextWindowSegmenter, prompts: PromptBuilder, config: BatchConfig,
                 batch_config: BedrockBatchConfig, persona: PersonaConfig):
        self.store = store
        self.storage = storage
        self.batch_client = batch_client
        self.segmenter = segmenter
        self.prompts = prompts
        self.config = config
        self.batch_config = batch_config
        self.persona = persona

    # Preparation

    def select_messages(self, chat_id: int) -> List[Message]:
        """Oldest unprocessed messages after the newest pending batch, closed and within budget."""
        pending = self.store.get_pending_batch_jobs(chat_id)
        after = max((job.end_message_id for job in pending), default=None)

        messages = self.store.get_oldest_unprocessed_messages(chat_id, after, limit=self.config.scan_limit)
        messages = open_tail_cut(messages, self.config.open_tail_window)
        if len(messages) < self.config.min_messages:
            logger.info(f'Not enough unprocessed messages in chat {chat_id}: {len(messages)}')
            return []

        selected, gap = self.segmenter.segment(messages, self.config.token_budget)
        logger.info(f'Selected {len(selected)} of {len(messages)} messages in chat {chat_id} '
                    f'by gap of ~{round(gap / 60)}m to fit {self.config.token_budget} tokens')
        return selected

    def build_request(self, chat_id: int, batch_id: int, messages: Sequence[Message], users: Dict[int, User]) -> Dict:
        contents = [
            {
                'role': 'user',
                'content': [{
                    'text': SUMMARIZATION_INSTRUCTIONS
                }]
            },
            {
                'role': 'user',
                'content': [{
                    'text': ('Following is how your role is described in the chat, use it for better '
                             f'characterization and fact extraction:\n{self.persona.character_prompt}')
                }]
            },
        ]
        contents.extend(self.prompts.messages_to_contents(messages, users, separate_bot=False, with_ids=True,
                                                          absolute_time=True))

        return build_record(f'{chat_id}-{batch_id}', self.persona.summarizer_prompt, contents, SUMMARIZATION_TOOL,
                            'Record the conversations identified in the chat log.',
                            SummarizationOutput.model_json_schema())

    def _job_name(self, chat_id: int, batch_id: int) -> str:
        chat = str(chat_id).replace('-', 'n')
        return f'{self.batch_config.job_name_prefix}-chat{chat}-batch{batch_id}-{int(utc_now().timestamp())}'

    def submission_retry_at(self, chat_id: int) -> Optional[datetime]:
        """When the next batch may be prepared after failed submissions, None if not blocked."""
        failures = 0
        latest: Optional[BatchJob] = None
        for job in self.store.get_recent_batch_jobs(chat_id, SUBMIT_FAILURE_LOOKBACK):
            if job.state != JobState.FAILED or job.job is not None:
                break
            latest = latest or job
            failures += 1

        if latest is None or latest.created_at is None:
            return None
        delay = timedelta(minutes=self.config.submit_backoff_minutes * 2**(failures - 1))
        return latest.created_at + min(delay, MAX_SUBMIT_BACKOFF)

    def prepare(self, chat_id: int) -> Optional[BatchJob]:
        """
        Prepare and submit the next summarization batch of a chat.

        Returns:
            The recorded BatchJob, FAILED if submission failed, None if there is nothing to do

        Raises:
            BatchPipelineError: If storage or the record store fail before submission
        """
        try:
            retry_at = self.submission_retry_at(chat_id)
            if retry_at is not None and utc_now() < retry_at:
                logger.warning(f'Batch submission for chat {chat_id} keeps failing, next attempt after {retry_at}')
                return None

            messages = self.select_messages(chat_id)
            if not messages:
                return None

            users = {user.user_id: user for user in self.store.get_users(chat_id, self.prompts.participant_ids(messages))}
            batch_id = self.store.next_sequence(chat_id, BATCH_SEQUENCE)
            request = self.build_request(chat_id, batch_id, messages, users)

            input_uri = self.storage.put_text(chat_id, input_key(batch_id), to_json_lines([request]))
            job = BatchJob(id=batch_id,
                           chat_id=chat_id,
                           input_location=input_uri,
                           output_location=self.storage.uri(chat_id, output_prefix(batch_id)),
                           start_message_id=messages[0].message_id,
                           end_message_id=messages[-1].message_id,
                           state=JobState.PREPARED,
                           created_at=utc_now())
            self.store.create_batch_job(job)
        except (OpenSearchError, ObjectStorageError) as e:
            logger.error(f'Failed to prepare batch for chat {chat_id}: {e}')
            raise BatchPipelineError(f'Batch preparation failed: {e}')

        try:
            job.job = self.batch_client.submit(job.input_location, job.output_location, self._job_name(chat_id, job.id))
            job.state = job.job.state
            logger.info(f'Submitted batch {job.id} for chat {chat_id} covering messages '
                        f'{job.start_message_id}-{job.end_message_id}')
        except BedrockBatchError as e:
            logger.error(f'Failed to submit batch {job.id} for chat {chat_id}: {e}')
            job.state = JobState.FAILED
            try:
                self.storage.delete_keys(chat_id, [input_key(job.id)])
            except ObjectStorageError as delete_error:
                logger.warning(f'Failed to delete input of batch {job.id} for chat {chat_id}: {delete_error}')

        try:
            self.store.update_batch_job_state(job)
        except OpenSearchError as e:
            raise BatchPipelineError(f'Failed to record batch {job.id} state: {e}')
        return job

    # Polling

    def _expired(self, job: BatchJob) -> bool:
        if job.created_at is None:
            return False
        return utc_now() - job.created_at > timedelta(hours=self.config.max_age_hours)

    def _fail(self, job: BatchJob) -> JobState:
        job.state = JobState.FAILED
        self.store.update_batch_job_state(job)
        return job.state

    def poll(self, chat_id: int, batch_id: int) -> JobState:
        """
        Refresh a batch from the provider and ingest it once it succeeded.

        Polling a finished batch is a no-op, so repeated polls never
        duplicate memory records.

        Returns:
            Current state of the batch

        Raises:
            BatchPipelineError: If the batch does not exist or its record cannot be updated
        """
        try:
            job = self.store.get_batch_job(chat_id, batch_id)
        except OpenSearchError as e:
            raise BatchPipelineError(f'Failed to load batch {batch_id}: {e}')
        if job is None:
            raise BatchPipelineError(f'Batch {batch_id} for chat {chat_id} not found')

        if job.state in JOB_STATES_FAILED:
            return job.state
        if job.state == JobState.SUCCEEDED:
            if job.ingestion is None:
                return self._ingest_or_fail(job)
            return job.state

        try:
            if job.job is not None:
                try:
                    job.job = self.batch_client.get(job.job.provider_name)
                    job.state = job.job.state
                except BedrockBatchError as e:
                    logger.warning(f'Could not refresh batch {job.id} for chat {chat_id}: {e}')
                    if not self._expired(job):
                        return job.state

            if job.state.in_progress and self._expired(job):
                logger.warning(f'Batch {job.id} for chat {chat_id} exceeded {self.config.max_age_hours}h, failing it')
                if job.job is not None:
                    self.batch_client.stop(job.job.provider_name)
                return self._fail(job)

            if job.job is None:
                logger.debug(f'Batch {job.id} for chat {chat_id} has no provider job yet')
                return job.state

            self.store.update_batch_job_state(job)
        except OpenSearchError as e:
            raise BatchPipelineError(f'Failed to update batch {job.id}: {e}')

        if job.state.in_progress:
            logger.info(f'Batch {job.id} for chat {chat_id} is still in progress ({job.state.value})')
            return job.state
        if job.state in JOB_STATES_FAILED:
            logger.warning(f'Batch {job.id} for chat {chat_id} ended as {job.state.value}')
            return job.state

        return self._ingest_or_fail(job)

    def poll_pending(self, chat_id: int) -> Dict[int, JobState]:
        """Poll every pending batch of a chat."""
        states: Dict[int, JobState] = {}
        try:
            pending = self.store.get_pending_batch_jobs(chat_id)
        except OpenSearchError as e:
            raise BatchPipelineError(f'Failed to list pending batches: {e}')

        for job in pending:
            try:
                states[job.id] = self.poll(chat_id, job.id)
            except BatchPipelineError as e:
                logger.error(f'Polling batch {job.id} for chat {chat_id} failed: {e}')
        return states

    # Ingestion

    def _ingest_or_fail(self, job: BatchJob) -> JobState:
        try:
            self.ingest(job)
            return JobState.SUCCEEDED
        except BatchPipelineError as e:
            logger.error(f'Ingestion of batch {job.id} for chat {job.chat_id} failed: {e}')
            try:
                return self._fail(job)
            except OpenSearchError as update_error:
                raise BatchPipelineError(f'Failed to mark batch {job.id} failed: {update_error}')

    def ingest(self, job: BatchJob) -> int:
        """
        Turn the results of a succeeded batch into memory records, once.

        Returns:
            Number of created conversations, 0 if another caller owns the ingestion

        Raises:
            BatchPipelineError: If the results cannot be read or stored
        """
        chat_id = job.chat_id
        try:
            if not self.store.claim_batch_ingestion(chat_id, job.id):
                logger.info(f'Batch {job.id} for chat {chat_id} is already ingested or being ingested')
                return 0

            keys = self.storage.list_keys(chat_id, output_prefix(job.id), suffix=OUTPUT_SUFFIX)
            if not keys:
                raise BatchPipelineError(f'No results found in batch {job.id} for chat {chat_id}')

            messages = self.store.get_messages(chat_id, job.start_message_id, job.end_message_id,
                                               limit=self.config.scan_limit)
            participants = self.store.get_users(chat_id, self.prompts.participant_ids(messages))

            created = 0
            errors_occurred = False
            for key in keys:
                for line_number, record, error in iter_json_lines(self.storage.get_text(chat_id, key)):
                    if error:
                        logger.warning(f'Skipping malformed line {line_number} of {key}: {error}')
                        errors_occurred = True
                        continue
                    line_created, line_failed = self._ingest_record(job, record, messages, participants)
                    created += line_created
                    errors_occurred = errors_occurred or line_failed

            self.store.complete_batch_ingestion(chat_id, job.id)
            job.ingestion = INGESTION_DONE

            if errors_occurred:
                logger.warning(f'Batch {job.id} for chat {chat_id} ingested with errors, keeping its files')
            else:
                self.storage.delete_keys(chat_id, [input_key(job.id)] + keys)

            logger.info(f'Ingested batch {job.id} for chat {chat_id}: {created} conversations')
            return created

        except (OpenSearchError, ObjectStorageError) as e:
            raise BatchPipelineError(f'Failed to ingest batch {job.id}: {e}')

    def _ingest_record(self, job: BatchJob, record: Dict[str, Any], messages: List[Message],
                       participants: List[User]) -> Tuple[int, bool]:
        try:
            output = _RawSummarizationOutput.model_validate(extract_record_output(record, SUMMARIZATION_TOOL))
        except (BedrockBatchError, ValidationError) as e:
            logger.warning(f'Invalid result in batch {job.id} for chat {job.chat_id}: {e}')
            return 0, True

        created = 0
        failed = False
        for item in output.conversations:
            try:
                conversation = SummarizedConversation.model_validate(item)
            except ValidationError as e:
                logger.warning(f'Skipping invalid conversation in batch {job.id}: {e}')
                failed = True
                continue

            if self._ingest_conversation(job, conversation, messages, participants):
                created += 1
            else:
                failed = True
        return created, failed

    def _ingest_conversation(self, job: BatchJob, summarized: SummarizedConversation, messages: List[Message],
                             participants: List[User]) -> bool:
        chat_id = job.chat_id
        start, end = summarized.message_start, summarized.message_end
        known_ids = {message.message_id for message in messages}
        if start not in known_ids or end not in known_ids or start > end:
            logger.warning(f'Invalid message range {start}-{end} for conversation "{summarized.title}" '
                           f'in batch {job.id} for chat {chat_id}')
            return False

        covered = [message for message in messages if start <= message.message_id <= end]
        date = round_to_granularity(midpoint(covered[0].date, covered[-1].date), self.config.time_anchor_minutes)

        resolved: Dict[int, SummarizedParticipant] = {}
        for participant in summarized.participants:
            user_id = self.prompts.resolve_handle(participant.handle, participants)
            if user_id is None:
                logger.debug(f'Dropping unknown participant {participant.handle} in batch {job.id}')
                continue
            resolved.setdefault(user_id, participant)

        weight = clamp_score(summarized.weight)
        conversation = Conversation(chat_id=chat_id,
                                    conversation_id=self.store.next_sequence(chat_id, CONVERSATION_SEQUENCE),
                                    title=summarized.title,
                                    summary=summarized.summary,
                                    weight=weight,
                                    message_start_id=start,
                                    message_end_id=end,
                                    participant_ids=list(resolved),
                                    date=date,
                                    batch_id=job.id)
        self.store.create_conversation(conversation)
        self.store.add_conversation_id_to_messages(chat_id, start, end, conversation.conversation_id)

        for user_id, participant in resolved.items():
            if user_id == self.prompts.bot_user_id:
                continue
            factors = [
                ThoughtFactor(name=name, value=clamp_score(getattr(participant.attitude, name)))
                for name in ATTITUDE_FACTORS
            ]
            thought = PersonThought(thought=f'Conversation about {summarized.title}',
                                    opinion_modifier=opinion_modifier(factors),
                                    weight=clamp_score(round(weight / 10 * clamp_score(participant.weight))),
                                    factors=factors,
                                    date=date)
            self.store.append_person_memory(chat_id, user_id, thought, participant.facts)

        logger.debug(f'Created conversation {conversation.conversation_id} "{conversation.title}" '
                     f'for messages {start}-{end} in chat {chat_id}')
        return True
