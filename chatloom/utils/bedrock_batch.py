"""
Amazon Bedrock batch inference client.

Jobs read a JSON Lines file of model invocations from S3 and write one
`<input>.jsonl.out` file per input file under the output prefix.
"""

import json
import random
import time
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..models.core import BatchJobInfo, JobState
from .bedrock_llm import TRANSIENT_ERROR_CODES
from .config import BedrockBatchConfig
from .json_utils import clean_json_response
from .logging_config import get_logger
from .timestamp_utils import to_datetime

logger = get_logger(__name__)

PROVIDER_NAME = 'bedrock-batch'
ANTHROPIC_VERSION = 'bedrock-2023-05-31'
OUTPUT_SUFFIX = '.jsonl.out'

STATUS_MAP = {
    'Submitted': JobState.SUBMITTED,
    'Validating': JobState.QUEUED,
    'Scheduled': JobState.QUEUED,
    'InProgress': JobState.RUNNING,
    'Stopping': JobState.RUNNING,
    'Completed': JobState.SUCCEEDED,
    'PartiallyCompleted': JobState.FAILED,
    'Failed': JobState.FAILED,
    'Stopped': JobState.CANCELLED,
    'Expired': JobState.EXPIRED,
}


class BedrockBatchError(Exception):
    """Custom exception for Bedrock batch inference errors."""
    pass


def map_status(status: str) -> JobState:
    """Map a Bedrock job status onto the engine's job states."""
    try:
        return STATUS_MAP[status]
    except KeyError:
        logger.warning(f'Unknown batch job status {status}, treating as failed')
        return JobState.FAILED


def to_native_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Convert Converse-style text messages into the native Anthropic body format."""
    native = []
    for message in messages:
        blocks = [{'type': 'text', 'text': block['text']} for block in message.get('content', []) if block.get('text')]
        if not blocks:
            continue
        if native and native[-1]['role'] == message['role']:
            native[-1]['content'].extend(blocks)
        else:
            native.append({'role': message['role'], 'content': blocks})
    return native


def build_record(record_id: str,
                 system_prompt: str,
                 messages: List[Dict[str, Any]],
                 tool_name: str,
                 tool_description: str,
                 input_schema: Dict[str, Any],
                 max_tokens: int = 8192,
                 temperature: float = 0.5) -> Dict[str, Any]:
    """
    Build one batch input record that forces a structured tool answer.

    Args:
        record_id: Identifier echoed back in the output line
        system_prompt: System prompt
        messages: Converse-style messages
        tool_name: Name of the forced tool
        tool_description: Tool description shown to the model
        input_schema: JSON schema of the expected object

    Returns:
        JSON-serializable record
    """
    return {
        'recordId': record_id,
        'modelInput': {
            'anthropic_version': ANTHROPIC_VERSION,
            'max_tokens': max_tokens,
            'temperature': temperature,
            'system': system_prompt,
            'messages': to_native_messages(messages),
            'tools': [{
                'name': tool_name,
                'description': tool_description,
                'input_schema': input_schema
            }],
            'tool_choice': {
                'type': 'tool',
                'name': tool_name
            },
        },
    }


def extract_record_output(record: Dict[str, Any], tool_name: str) -> Dict[str, Any]:
    """
    Extract the structured object from one batch output line.

    Raises:
        BedrockBatchError: If the record failed or holds no structured answer
    """
    if record.get('error'):
        raise BedrockBatchError(f'Record {record.get("recordId")} failed: {record["error"]}')

    content = (record.get('modelOutput') or {}).get('content') or []
    for block in content:
        if block.get('type') == 'tool_use' and block.get('name') == tool_name:
            if isinstance(block.get('input'), dict):
                return block['input']

    text = ''.join(block.get('text', '') for block in content if block.get('type') == 'text')
    try:
        parsed = json.loads(clean_json_response(text))
    except json.JSONDecodeError:
        raise BedrockBatchError(f'Record {record.get("recordId")} has no structured output')
    if not isinstance(parsed, dict):
        raise BedrockBatchError(f'Record {record.get("recordId")} output is not an object')
    return parsed


class BedrockBatch:
    """Submits and tracks Bedrock model invocation jobs."""

    def __init__(self, config: BedrockBatchConfig, client=None):
        self.config = config
        self.bedrock = client or boto3.client('bedrock',
                                              region_name=config.region,
                                              config=BotoConfig(retries={'max_attempts': 0}))
        logger.info(f'Initialized Bedrock batch client with model: {config.model_id}')

    def submit(self, input_uri: str, output_uri: str, display_name: str) -> BatchJobInfo:
        """
        Submit a batch inference job.

        Args:
            input_uri: s3:// URI of the JSONL input file
            output_uri: s3:// prefix receiving the results
            display_name: Job name, unique per account and region

        Returns:
            Provider view of the created job
        """
        if not self.config.role_arn:
            raise BedrockBatchError('BEDROCK_BATCH_ROLE_ARN is not configured')

        response = self._call_with_retry('create_model_invocation_job',
                                         jobName=display_name,
                                         roleArn=self.config.role_arn,
                                         modelId=self.config.model_id,
                                         inputDataConfig={'s3InputDataConfig': {
                                             's3Uri': input_uri,
                                             's3InputFormat': 'JSONL'
                                         }},
                                         outputDataConfig={'s3OutputDataConfig': {
                                             's3Uri': output_uri
                                         }},
                                         timeoutDurationInHours=self.config.timeout_hours)

        job_arn = response['jobArn']
        logger.info(f'Submitted batch job {display_name}: {job_arn}')
        return BatchJobInfo(provider_name=job_arn, display_name=display_name, state=JobState.SUBMITTED)

    def get(self, provider_name: str) -> BatchJobInfo:
        """Fetch the current state of a job."""
        response = self._call_with_retry('get_model_invocation_job', jobIdentifier=provider_name)

        state = map_status(response.get('status', ''))
        if state == JobState.FAILED and response.get('message'):
            logger.warning(f'Batch job {provider_name} failed: {response["message"]}')

        return BatchJobInfo(provider_name=provider_name,
                            display_name=response.get('jobName', ''),
                            state=state,
                            started_at=to_datetime(response['submitTime']) if response.get('submitTime') else None,
                            completed_at=to_datetime(response['endTime']) if response.get('endTime') else None)

    def stop(self, provider_name: str) -> None:
        """Request a job stop. Jobs that already finished are left alone."""
        try:
            self._call_with_retry('stop_model_invocation_job', jobIdentifier=provider_name)
            logger.info(f'Requested stop of batch job {provider_name}')
        except BedrockBatchError as e:
            logger.warning(f'Could not stop batch job {provider_name}: {e}')

    def _call_with_retry(self, operation: str, **kwargs) -> Dict[str, Any]:
        fn = getattr(self.bedrock, operation)
        last_error: Optional[Exception] = None

        for attempt in range(self.config.retry_attempts):
            try:
                return fn(**kwargs)
            except ClientError as e:
                code = e.response.get('Error', {}).get('Code', '')
                if code not in TRANSIENT_ERROR_CODES:
                    logger.error(f'Bedrock {operation} rejected ({code}): {e}')
                    raise BedrockBatchError(f'Bedrock {operation} rejected: {e}')
                last_error = e
            except BotoCoreError as e:
                last_error = e

            logger.warning(f'Bedrock {operation} attempt {attempt + 1}/{self.config.retry_attempts} failed: '
                           f'{last_error}')
            if attempt < self.config.retry_attempts - 1:
                # Exponential backoff with jitter
                time.sleep(self.config.retry_delay * (2**attempt) + random.uniform(0, 1))

        raise BedrockBatchError(f'Bedrock {operation} failed after {self.config.retry_attempts} attempts: '
                                f'{last_error}')

    def health_check(self) -> bool:
        try:
            self.bedrock.list_model_invocation_jobs(maxResults=1)
            return True
        except Exception as e:
            logger.error(f'Bedrock batch health check failed: {e}')
            return False
