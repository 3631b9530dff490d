"""
Registry of chat-scoped functions the model may call.

Tools are declared explicitly at startup: each function registers its ordered
argument list and a handler receiving `(chat_id, *args)`.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import TypeAdapter, ValidationError

from ..utils.bedrock_llm import tool_spec
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

NAME_SEPARATOR = '__'

# Bedrock tool names allow [a-zA-Z0-9_-]{1,64}
_CODE_PATTERN = re.compile(r'^[a-zA-Z0-9-]+(_[a-zA-Z0-9-]+)*$')


class ToolValidationError(Exception):
    """Raised when a tool call does not match the declared arguments."""
    pass


@dataclass(frozen=True)
class ToolArgument:
    """One positional argument of a tool function."""
    code: str
    type: Any
    description: str
    required: bool = True


@dataclass
class ToolResult:
    """Outcome of a tool call, fed back to the model either way."""
    ok: bool
    value: Any = None
    error: Optional[str] = None

    def to_content(self) -> List[Dict[str, Any]]:
        if self.ok:
            return [{'json': {'result': self.value}}]
        return [{'text': f'Error: {self.error}'}]


@dataclass
class _ToolFunction:
    tool_code: str
    function_name: str
    description: str
    arguments: Tuple[ToolArgument, ...]
    handler: Callable[..., Any]
    adapters: Dict[str, TypeAdapter] = field(default_factory=dict)
    input_schema: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ScopedToolFunction:
    """A tool function bound to one chat, ready to be offered to the model."""
    chat_id: int
    tool_code: str
    function_name: str
    description: str
    input_schema: Dict[str, Any]

    @property
    def name(self) -> str:
        return qualified_name(self.tool_code, self.function_name)

    def spec(self) -> Dict[str, Any]:
        return tool_spec(self.name, self.description, self.input_schema)


def qualified_name(tool_code: str, function_name: str) -> str:
    return f'{tool_code}{NAME_SEPARATOR}{function_name}'


def split_qualified_name(name: str) -> Tuple[str, str]:
    """Split a model-facing tool name into (tool_code, function_name)."""
    tool_code, separator, function_name = name.partition(NAME_SEPARATOR)
    if not separator or not tool_code or not function_name:
        raise ToolValidationError(f'Malformed tool name: {name}')
    return tool_code, function_name


class ToolRegistry:
    """Holds declared tool functions and invokes them with validated arguments."""

    def __init__(self, disabled: Sequence[str] = ()):
        """
        Args:
            disabled: Tool codes or qualified function names hidden from resolve()
        """
        self._functions: Dict[Tuple[str, str], _ToolFunction] = {}
        self.disabled = set(disabled)

    def register(self, tool_code: str, function_name: str, description: str, arguments: Sequence[ToolArgument],
                 handler: Callable[..., Any]) -> None:
        """
        Declare a tool function.

        Args:
            tool_code: Code of the tool grouping related functions
            function_name: Name of the function within the tool
            description: Description shown to the model
            arguments: Ordered arguments, mapped positionally onto the handler
            handler: Callable invoked as handler(chat_id, *args)
        """
        for code in (tool_code, function_name):
            if not _CODE_PATTERN.match(code) or NAME_SEPARATOR in code:
                raise ValueError(f'Invalid tool identifier: {code}')
        if len(qualified_name(tool_code, function_name)) > 64:
            raise ValueError(f'Tool name too long: {qualified_name(tool_code, function_name)}')
        if (tool_code, function_name) in self._functions:
            raise ValueError(f'Tool function already registered: {qualified_name(tool_code, function_name)}')

        adapters = {}
        properties = {}
        required = []
        for argument in arguments:
            adapter = TypeAdapter(argument.type)
            adapters[argument.code] = adapter
            schema = adapter.json_schema()
            schema['description'] = argument.description
            properties[argument.code] = schema
            if argument.required:
                required.append(argument.code)

        self._functions[(tool_code, function_name)] = _ToolFunction(tool_code=tool_code,
                                                                    function_name=function_name,
                                                                    description=description,
                                                                    arguments=tuple(arguments),
                                                                    handler=handler,
                                                                    adapters=adapters,
                                                                    input_schema={
                                                                        'type': 'object',
                                                                        'properties': properties,
                                                                        'required': required,
                                                                        'additionalProperties': False
                                                                    })
        logger.debug(f'Registered tool function {qualified_name(tool_code, function_name)}')

    def _is_enabled(self, function: _ToolFunction) -> bool:
        return (function.tool_code not in self.disabled
                and qualified_name(function.tool_code, function.function_name) not in self.disabled)

    def resolve(self, chat_id: int) -> List[ScopedToolFunction]:
        """Enabled tool functions bound to a chat, in a stable order."""
        return [
            ScopedToolFunction(chat_id=chat_id,
                               tool_code=function.tool_code,
                               function_name=function.function_name,
                               description=function.description,
                               input_schema=function.input_schema)
            for _, function in sorted(self._functions.items())
            if self._is_enabled(function)
        ]

    def validate(self, tool_code: str, function_name: str, raw_args: Optional[Dict[str, Any]]) -> List[Any]:
        """
        Validate and coerce raw arguments into the declared positional order.

        Raises:
            ToolValidationError: On unknown function, unknown field, missing or mismatching value
        """
        function = self._functions.get((tool_code, function_name))
        if function is None or not self._is_enabled(function):
            raise ToolValidationError(f'Unknown tool function: {qualified_name(tool_code, function_name)}')

        raw_args = raw_args or {}
        if not isinstance(raw_args, dict):
            raise ToolValidationError('Tool arguments must be an object')

        unknown = set(raw_args) - set(function.adapters)
        if unknown:
            raise ToolValidationError(f'Unknown arguments: {", ".join(sorted(unknown))}')

        ordered = []
        for argument in function.arguments:
            if argument.code not in raw_args:
                if argument.required:
                    raise ToolValidationError(f'Missing argument: {argument.code}')
                ordered.append(None)
                continue
            try:
                ordered.append(function.adapters[argument.code].validate_python(raw_args[argument.code]))
            except ValidationError as e:
                raise ToolValidationError(f'Invalid argument {argument.code}: {e.errors()[0]["msg"]}')
        return ordered

    def invoke(self, chat_id: int, tool_code: str, function_name: str, raw_args: Optional[Dict[str, Any]]) -> ToolResult:
        """
        Validate arguments and call the handler.

        Handler failures are returned as a failed ToolResult, validation
        failures raise.

        Raises:
            ToolValidationError: If the arguments do not match the declaration
        """
        args = self.validate(tool_code, function_name, raw_args)
        function = self._functions[(tool_code, function_name)]

        try:
            value = function.handler(chat_id, *args)
            logger.debug(f'Tool {qualified_name(tool_code, function_name)} succeeded in chat {chat_id}')
            return ToolResult(ok=True, value=value)
        except Exception as e:
            logger.warning(f'Tool {qualified_name(tool_code, function_name)} failed in chat {chat_id}: {e}')
            return ToolResult(ok=False, error=f'{type(e).__name__}: {e}')
