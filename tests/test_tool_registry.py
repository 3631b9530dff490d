"""Tests for chatloom.services.tool_registry and the built-in tools."""

from datetime import datetime, timezone

import pytest

from chatloom.models.core import Conversation
from chatloom.services.tool_registry import (ToolArgument, ToolRegistry, ToolResult, ToolValidationError,
                                             qualified_name, split_qualified_name)
from chatloom.services.tools import register_builtin_tools


def echo(chat_id, text, times):
    return f'{chat_id}:{text * (times or 1)}'


@pytest.fixture
def registry():
    registry = ToolRegistry()
    registry.register('echo', 'repeat', 'Repeat a text.', [
        ToolArgument('text', str, 'Text to repeat'),
        ToolArgument('times', int, 'How often', required=False),
    ], echo)
    return registry


class TestRegister:

    def test_schema_is_generated_from_arguments(self, registry):
        [tool] = registry.resolve(7)

        assert tool.name == 'echo__repeat'
        assert tool.chat_id == 7
        assert tool.input_schema['required'] == ['text']
        assert tool.input_schema['properties']['times']['type'] == 'integer'
        assert tool.input_schema['properties']['text']['description'] == 'Text to repeat'
        assert tool.spec()['toolSpec']['inputSchema']['json'] == tool.input_schema

    def test_rejects_duplicate(self, registry):
        with pytest.raises(ValueError):
            registry.register('echo', 'repeat', 'Again.', [], echo)

    @pytest.mark.parametrize('code', ['bad name', 'double__underscore', ''])
    def test_rejects_invalid_identifiers(self, code):
        with pytest.raises(ValueError):
            ToolRegistry().register(code, 'run', 'Run.', [], echo)

    def test_disabled_tools_are_hidden(self):
        registry = ToolRegistry(disabled=['echo'])
        registry.register('echo', 'repeat', 'Repeat.', [ToolArgument('text', str, 'Text')], echo)

        assert registry.resolve(1) == []
        with pytest.raises(ToolValidationError):
            registry.invoke(1, 'echo', 'repeat', {'text': 'a'})


class TestInvoke:

    def test_arguments_are_passed_in_declared_order(self, registry):
        result = registry.invoke(3, 'echo', 'repeat', {'times': 2, 'text': 'ab'})

        assert result == ToolResult(ok=True, value='3:abab')

    def test_optional_argument_defaults_to_none(self, registry):
        assert registry.invoke(3, 'echo', 'repeat', {'text': 'ab'}).value == '3:ab'

    def test_numeric_strings_are_coerced(self, registry):
        assert registry.invoke(3, 'echo', 'repeat', {'text': 'a', 'times': '3'}).value == '3:aaa'

    @pytest.mark.parametrize('raw_args', [
        {},
        {'text': 'a', 'extra': 1},
        {'text': 'a', 'times': 'many'},
        ['a'],
    ])
    def test_invalid_arguments_raise(self, registry, raw_args):
        with pytest.raises(ToolValidationError):
            registry.invoke(3, 'echo', 'repeat', raw_args)

    def test_unknown_function_raises(self, registry):
        with pytest.raises(ToolValidationError):
            registry.invoke(3, 'echo', 'shout', {'text': 'a'})

    def test_handler_failure_becomes_error_result(self):
        def broken(chat_id):
            raise RuntimeError('boom')

        registry = ToolRegistry()
        registry.register('broken', 'run', 'Fails.', [], broken)
        result = registry.invoke(1, 'broken', 'run', None)

        assert not result.ok
        assert 'boom' in result.error
        assert result.to_content() == [{'text': 'Error: RuntimeError: boom'}]


def test_qualified_names_round_trip():
    assert split_qualified_name(qualified_name('memory', 'recall_conversation')) == ('memory', 'recall_conversation')
    with pytest.raises(ToolValidationError):
        split_qualified_name('memory')


class TestBuiltinTools:

    def test_random_number_respects_bounds(self, store):
        registry = register_builtin_tools(ToolRegistry(), store)

        for _ in range(20):
            value = int(registry.invoke(1, 'random_choice', 'pick_random_number', {'options_count': 3}).value)
            assert 1 <= value <= 3

        with pytest.raises(ToolValidationError):
            registry.invoke(1, 'random_choice', 'pick_random_number', {'options_count': 1})

    def test_recall_conversation(self, store):
        store.create_conversation(
            Conversation(chat_id=1,
                         conversation_id=4,
                         title='parrots',
                         summary='Everyone talked about parrots.',
                         weight=5,
                         message_start_id=10,
                         message_end_id=20,
                         participant_ids=[1],
                         date=datetime(2024, 5, 1, tzinfo=timezone.utc)))
        registry = register_builtin_tools(ToolRegistry(), store)

        found = registry.invoke(1, 'memory', 'recall_conversation', {'conversation_id': 4})
        missing = registry.invoke(2, 'memory', 'recall_conversation', {'conversation_id': 4})

        assert found.ok and found.value['title'] == 'parrots'
        assert not missing.ok
