"""
Generation orchestrator: drives the main model call and the tool-calling loop.

A turn moves BUILD_CONTEXT -> CALL_MODEL -> (EXECUTE_TOOLS -> CALL_MODEL)* -> DONE
and is bounded by an iteration cap, a deadline and a cancellation event.
Every failure degrades into a partial or empty result.
"""

import functools
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import GenerationConfig
from ..utils.logging_config import get_logger
from .prompt_cache import CacheHandle
from .tool_registry import ScopedToolFunction, ToolRegistry, ToolResult, ToolValidationError

logger = get_logger(__name__)

# Granularity of cancellation checks while waiting on a call
WAIT_SLICE_SECONDS = 0.25


class TurnState(str, Enum):
    BUILD_CONTEXT = 'BUILD_CONTEXT'
    CALL_MODEL = 'CALL_MODEL'
    EXECUTE_TOOLS = 'EXECUTE_TOOLS'
    DONE = 'DONE'


class TurnOutcome(str, Enum):
    COMPLETED = 'completed'
    MAX_ITERATIONS = 'max_iterations'
    TIMEOUT = 'timeout'
    CANCELLED = 'cancelled'
    MODEL_ERROR = 'model_error'


@dataclass
class GenerationResult:
    """Answer of one turn, possibly partial."""
    text: str
    outcome: TurnOutcome
    iterations: int = 0
    tool_calls: int = 0
    usage: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.outcome != TurnOutcome.COMPLETED


class _Aborted(Exception):

    def __init__(self, outcome: TurnOutcome):
        super().__init__(outcome.value)
        self.outcome = outcome


class GenerationOrchestrator:
    """Runs a bounded model/tool loop for one reply."""

    def __init__(self, llm: BedrockLLM, registry: ToolRegistry, config: GenerationConfig,
                 executor: Optional[ThreadPoolExecutor] = None):
        self.llm = llm
        self.registry = registry
        self.config = config
        self.executor = executor or ThreadPoolExecutor(max_workers=8, thread_name_prefix='chatloom-turn')

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False)

    def _wait(self, future: Future, deadline: float, cancel_event: Optional[threading.Event]) -> Any:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                future.cancel()
                raise _Aborted(TurnOutcome.CANCELLED)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                future.cancel()
                raise _Aborted(TurnOutcome.TIMEOUT)
            try:
                return future.result(timeout=min(WAIT_SLICE_SECONDS, remaining))
            except FutureTimeoutError:
                continue

    def _run(self, fn: Callable[..., Any], deadline: float, cancel_event: Optional[threading.Event], *args,
             **kwargs) -> Any:
        return self._wait(self.executor.submit(fn, *args, **kwargs), deadline, cancel_event)

    def _check(self, deadline: float, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise _Aborted(TurnOutcome.CANCELLED)
        if time.monotonic() >= deadline:
            raise _Aborted(TurnOutcome.TIMEOUT)

    def _execute_tool(self, chat_id: int, tools: Dict[str, ScopedToolFunction], tool_use: Dict[str, Any],
                      deadline: float, cancel_event: Optional[threading.Event]) -> Dict[str, Any]:
        name = tool_use.get('name', '')
        tool = tools.get(name)

        if tool is None:
            result = ToolResult(ok=False, error=f'Unknown tool: {name}')
        else:
            try:
                result = self._run(self.registry.invoke, deadline, cancel_event, chat_id, tool.tool_code,
                                   tool.function_name, tool_use.get('input'))
            except ToolValidationError as e:
                result = ToolResult(ok=False, error=str(e))
            except _Aborted as e:
                result = ToolResult(ok=False, error=f'Tool call aborted: {e.outcome.value}')

        if not result.ok:
            logger.debug(f'Tool {name} returned error in chat {chat_id}: {result.error}')

        return {
            'toolResult': {
                'toolUseId': tool_use.get('toolUseId'),
                'content': result.to_content(),
                'status': 'success' if result.ok else 'error',
            }
        }

    def generate(self,
                 chat_id: int,
                 quality: str,
                 system_prompt: str,
                 contents: Sequence[Dict[str, Any]],
                 tools: Sequence[ScopedToolFunction] = (),
                 cache_handle: Optional[CacheHandle] = None,
                 deadline: Optional[float] = None,
                 cancel_event: Optional[threading.Event] = None) -> GenerationResult:
        """
        Generate a reply, executing requested tool calls between model turns.

        Args:
            chat_id: Chat the turn belongs to, tools are bound to it
            quality: Quality tier of the model
            system_prompt: System prompt, must equal the cached one when a handle is used
            contents: Live messages following the cached prefix
            tools: Tool functions offered to the model
            cache_handle: Prefix to send ahead of `contents`
            deadline: time.monotonic() value bounding the whole turn
            cancel_event: Set to abort the turn

        Returns:
            GenerationResult, never raises on model or tool failures
        """
        state = TurnState.BUILD_CONTEXT
        deadline = deadline if deadline is not None else time.monotonic() + self.config.turn_timeout_seconds
        tool_map = {tool.name: tool for tool in tools}
        tool_specs = [tool.spec() for tool in tools] or None
        prefix = list(cache_handle.contents) if cache_handle and cache_handle.contents else []
        # Cache points only go on prefixes the provider actually holds
        cached_messages = prefix if prefix and cache_handle.cached else None

        buffer: List[Dict[str, Any]] = list(contents) if cached_messages else prefix + list(contents)
        texts: List[str] = []
        usage: List[Dict[str, Any]] = []
        iterations = 0
        tool_calls = 0
        outcome = TurnOutcome.COMPLETED
        state = TurnState.CALL_MODEL

        try:
            while state != TurnState.DONE:
                self._check(deadline, cancel_event)

                if state == TurnState.CALL_MODEL:
                    if iterations >= self.config.max_iterations:
                        logger.warning(f'Turn in chat {chat_id} stopped after {iterations} model calls')
                        outcome = TurnOutcome.MAX_ITERATIONS
                        break
                    iterations += 1

                    call = functools.partial(self.llm.converse,
                                             quality,
                                             buffer,
                                             system_prompt,
                                             tools=tool_specs,
                                             cached_messages=cached_messages,
                                             deadline=deadline)
                    response = self._run(call, deadline, cancel_event)
                    usage.append(response.usage)
                    if response.text:
                        texts.append(response.text)

                    if response.tool_uses:
                        buffer.append(response.as_message())
                        state = TurnState.EXECUTE_TOOLS
                    else:
                        state = TurnState.DONE

                elif state == TurnState.EXECUTE_TOOLS:
                    tool_uses = buffer[-1]['content']
                    results = []
                    for block in tool_uses:
                        if 'toolUse' not in block:
                            continue
                        tool_calls += 1
                        results.append(self._execute_tool(chat_id, tool_map, block['toolUse'], deadline, cancel_event))
                    buffer.append({'role': 'user', 'content': results})
                    state = TurnState.CALL_MODEL

        except _Aborted as e:
            logger.warning(f'Turn in chat {chat_id} aborted: {e.outcome.value}')
            outcome = e.outcome
        except BedrockLLMError as e:
            logger.error(f'Model call failed in chat {chat_id}: {e}')
            outcome = TurnOutcome.MODEL_ERROR
        except Exception as e:
            logger.exception(f'Unexpected error in turn for chat {chat_id}: {e}')
            outcome = TurnOutcome.MODEL_ERROR

        logger.debug(f'Turn in chat {chat_id} finished: {outcome.value}, {iterations} model calls, '
                     f'{tool_calls} tool calls')
        return GenerationResult(text='\n'.join(texts).strip(),
                                outcome=outcome,
                                iterations=iterations,
                                tool_calls=tool_calls,
                                usage=usage)
