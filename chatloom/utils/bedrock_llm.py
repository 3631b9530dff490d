"""
Amazon Bedrock LLM client wrapper with retry logic and error handling.
"""

import copy
import json
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .json_utils import clean_json_response
from .logging_config import get_logger
from .timestamp_utils import utc_now

logger = get_logger(__name__)

PROVIDER_NAME = 'bedrock'

# Rate limits and 5xx class errors, everything else fails fast
TRANSIENT_ERROR_CODES = frozenset({
    'ThrottlingException',
    'TooManyRequestsException',
    'ServiceUnavailableException',
    'InternalServerException',
    'ModelNotReadyException',
    'ModelTimeoutException',
})

CACHE_POINT = {'cachePoint': {'type': 'default'}}


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


@dataclass
class ModelResponse:
    """One assistant turn returned by the Converse API."""
    content: List[Dict[str, Any]]
    stop_reason: str = ''
    usage: Dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return '\n'.join(block['text'] for block in self.content if block.get('text'))

    @property
    def tool_uses(self) -> List[Dict[str, Any]]:
        return [block['toolUse'] for block in self.content if 'toolUse' in block]

    def as_message(self) -> Dict[str, Any]:
        return {'role': 'assistant', 'content': self.content}


@dataclass
class CachedPrompt:
    """Provider-side handle of a primed prompt cache."""
    name: str
    model: str
    expires_at: datetime


def tool_spec(name: str, description: str, input_schema: Dict[str, Any]) -> Dict[str, Any]:
    """Build a Converse API tool specification."""
    return {'toolSpec': {'name': name, 'description': description, 'inputSchema': {'json': input_schema}}}


def merge_consecutive_roles(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Merge neighbouring messages of the same role.

    The Converse API requires strictly alternating roles starting with a user
    turn, while prompts are assembled from independent parts.
    """
    merged: List[Dict[str, Any]] = []
    for message in messages:
        content = list(message.get('content') or [])
        if not content:
            continue
        if merged and merged[-1]['role'] == message['role']:
            merged[-1]['content'].extend(content)
        else:
            merged.append({'role': message['role'], 'content': content})

    if merged and merged[0]['role'] != 'user':
        merged.insert(0, {'role': 'user', 'content': [{'text': '(chat history follows)'}]})
    return merged


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig, client=None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: bedrock-runtime client, created from config if None
        """
        self.config = config

        self.bedrock_runtime = client or boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=30,
                read_timeout=config.read_timeout,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with models: {config.models}')

    def model_for(self, quality: str) -> str:
        try:
            return self.config.models[quality]
        except KeyError:
            raise BedrockLLMError(f'Unknown quality tier: {quality}')

    def estimate_tokens(self, text: str) -> int:
        """Cheap token estimate from character count."""
        if not text:
            return 0
        return int(len(text) / self.config.chars_per_token) + 1

    def converse(self,
                 quality: str,
                 messages: List[Dict[str, Any]],
                 system_prompt: str,
                 tools: Optional[List[Dict[str, Any]]] = None,
                 tool_choice: Optional[Dict[str, Any]] = None,
                 cached_messages: Optional[List[Dict[str, Any]]] = None,
                 max_tokens: Optional[int] = None,
                 temperature: Optional[float] = None,
                 deadline: Optional[float] = None) -> ModelResponse:
        """
        Run a single Converse call with retries.

        Args:
            quality: Quality tier selecting the model
            messages: Live messages in Converse format
            system_prompt: System prompt
            tools: Tool specifications, see tool_spec()
            tool_choice: Converse toolChoice, e.g. to force structured output
            cached_messages: Prefix messages to mark with a cache point
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature (uses tier default if None)
            deadline: time.monotonic() value after which no retry is attempted

        Returns:
            ModelResponse of the assistant turn

        Raises:
            BedrockLLMError: If the call fails permanently
        """
        system: List[Dict[str, Any]] = [{'text': system_prompt}]
        prefix: List[Dict[str, Any]] = []
        if cached_messages:
            system.append(CACHE_POINT)
            prefix = copy.deepcopy(cached_messages)
            prefix[-1]['content'].append(CACHE_POINT)

        request: Dict[str, Any] = {
            'modelId': self.model_for(quality),
            'messages': merge_consecutive_roles(prefix + list(messages)),
            'system': system,
            'inferenceConfig': {
                'maxTokens': max_tokens or self.config.max_tokens,
                'temperature': self.config.temperatures.get(quality, 0.0) if temperature is None else temperature,
            },
        }
        if tools:
            request['toolConfig'] = {'tools': tools}
            if tool_choice:
                request['toolConfig']['toolChoice'] = tool_choice

        response = self._call_with_retry(self.bedrock_runtime.converse, request, deadline)

        message = response.get('output', {}).get('message', {})
        result = ModelResponse(content=message.get('content', []),
                               stop_reason=response.get('stopReason', ''),
                               usage=response.get('usage', {}))
        logger.debug(f'Bedrock {quality} response: stop={result.stop_reason}, usage={result.usage}')
        return result

    def generate_structured(self,
                            quality: str,
                            messages: List[Dict[str, Any]],
                            system_prompt: str,
                            schema: Dict[str, Any],
                            schema_name: str,
                            description: str,
                            deadline: Optional[float] = None) -> Dict[str, Any]:
        """
        Generate a JSON object constrained to a schema by forcing a tool call.

        Returns:
            Parsed object

        Raises:
            BedrockLLMError: If the call fails or the output is not an object
        """
        response = self.converse(quality,
                                 messages,
                                 system_prompt,
                                 tools=[tool_spec(schema_name, description, schema)],
                                 tool_choice={'tool': {
                                     'name': schema_name
                                 }},
                                 temperature=0.0,
                                 deadline=deadline)

        for tool_use in response.tool_uses:
            if tool_use.get('name') == schema_name and isinstance(tool_use.get('input'), dict):
                return tool_use['input']

        # Some models answer with plain JSON text despite the forced tool
        try:
            parsed = json.loads(clean_json_response(response.text))
        except json.JSONDecodeError:
            raise BedrockLLMError(f'Structured output missing for {schema_name}')
        if not isinstance(parsed, dict):
            raise BedrockLLMError(f'Structured output for {schema_name} is not an object')
        return parsed

    def prime_cache(self,
                    quality: str,
                    system_prompt: str,
                    contents: List[Dict[str, Any]],
                    tools: Optional[List[Dict[str, Any]]],
                    ttl_seconds: int,
                    display_name: str) -> CachedPrompt:
        """
        Write a prompt prefix into the provider cache.

        Bedrock keeps prefixes marked with cache points for a sliding window;
        the prime call is a one-token generation over the prefix. Our tracking
        record carries the tier TTL, re-sending the same prefix refreshes it.
        """
        if not contents:
            raise BedrockLLMError('Cannot cache an empty prompt')

        self.converse(quality,
                      messages=[],
                      system_prompt=system_prompt,
                      tools=tools,
                      cached_messages=contents,
                      max_tokens=1,
                      temperature=0.0)

        logger.debug(f'Primed prompt cache {display_name} for {ttl_seconds}s')
        return CachedPrompt(name=display_name,
                            model=self.model_for(quality),
                            expires_at=utc_now() + timedelta(seconds=ttl_seconds))

    def release_cache(self, name: str) -> None:
        """Release a provider cache.

        Bedrock has no explicit deletion, prefixes age out on their own once
        they are no longer re-sent.
        """
        logger.debug(f'Released prompt cache {name}')

    def _call_with_retry(self, fn: Callable[..., Dict[str, Any]], request: Dict[str, Any],
                         deadline: Optional[float]) -> Dict[str, Any]:
        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{self.config.retry_attempts}')
                return fn(**request)

            except ClientError as e:
                code = e.response.get('Error', {}).get('Code', '')
                if code not in TRANSIENT_ERROR_CODES:
                    logger.error(f'Bedrock LLM request rejected ({code}): {e}')
                    raise BedrockLLMError(f'Bedrock LLM request rejected: {e}')
                error = e
            except BotoCoreError as e:
                error = e
            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

            logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {error}')
            if attempt >= self.config.retry_attempts - 1:
                raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {error}')

            # Exponential backoff with jitter
            delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
            if deadline is not None and time.monotonic() + delay > deadline:
                raise BedrockLLMError(f'Bedrock LLM out of time after {attempt + 1} attempts: {error}')
            time.sleep(delay)

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_messages = [{'role': 'user', 'content': [{'text': 'Hi'}]}]
            response = self.converse('low',
                                     test_messages,
                                     system_prompt="You are a helpful assistant. Respond with just 'OK'.",
                                     max_tokens=10,
                                     temperature=0.0)
            return len(response.text.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
