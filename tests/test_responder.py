"""Tests for chatloom.services.responder."""

import pytest

from chatloom.models.core import STRATEGY_IGNORE, User
from chatloom.services.context_window import ContextWindowSegmenter
from chatloom.services.generation import GenerationOrchestrator
from chatloom.services.prompt_cache import PromptCacheManager
from chatloom.services.responder import CONTEXT_INTRO, ChatResponder, Reply, SituationalStatus
from chatloom.services.strategy_selector import StrategySelector
from chatloom.services.tool_registry import ToolRegistry
from chatloom.services.tools import register_builtin_tools
from chatloom.utils.bedrock_llm import BedrockLLMError

from fakes import FakeLLM, cache_config, generation_config, make_message, persona_config, text_response

POLLY = User(chat_id=1, user_id=1, username='polly')


def classification(code, extra=False):
    return {'candidates': [{'strategy_code': code, 'weight': 8}], 'needs_extra_context': extra}


class Muted(SituationalStatus):

    def describe(self, chat_id, user_id):
        return 'This user was warned for spamming an hour ago.'


def make_responder(store, prompts, llm, status=None, cache=None, **generation_overrides):
    generation = generation_config(**generation_overrides)
    persona = persona_config()
    registry = register_builtin_tools(ToolRegistry(), store)
    return ChatResponder(store=store,
                         selector=StrategySelector(store, llm, prompts, persona, generation),
                         segmenter=ContextWindowSegmenter(),
                         prompts=prompts,
                         caches=PromptCacheManager(store, llm, cache or cache_config()),
                         registry=registry,
                         orchestrator=GenerationOrchestrator(llm, registry, generation),
                         generation=generation,
                         persona=persona,
                         status=status)


@pytest.fixture
def chat(store):
    store.save_user(POLLY)
    store.add_messages([make_message(i, i * 10, text=f'chirp {i}') for i in range(1, 12)])
    return store


def test_ignore_produces_no_generation(chat, prompts):
    llm = FakeLLM(structured=classification(STRATEGY_IGNORE))

    assert make_responder(chat, prompts, llm).respond(1, 11, 'spam', POLLY) is None
    assert llm.converse_calls == []
    assert llm.primed == []


def test_reply_uses_cached_prefix_and_strategy_prompt(chat, prompts):
    llm = FakeLLM([text_response('Squawk!')], structured=classification('question'))

    reply = make_responder(chat, prompts, llm).respond(1, 11, 'what do parrots eat?', POLLY)

    assert reply == Reply(text='Squawk!', reply_to_message_id=11)
    [call] = llm.converse_calls
    assert call['system_prompt'] == 'You are a cheerful parrot.'
    assert call['quality'] == 'regular'
    assert call['tools']
    prefix_text = '\n'.join(block['text'] for message in call['cached_messages'] for block in message['content'])
    assert CONTEXT_INTRO in prefix_text
    assert 'chirp 10' in prefix_text
    assert 'chirp 11' not in prefix_text
    live_text = call['messages'][-1]['content'][0]['text']
    assert live_text.endswith('Reply to following message from [@polly]:\nwhat do parrots eat?')
    assert 'Be creative and engaging' in live_text


def test_second_turn_reuses_cache_and_sends_new_messages(chat, prompts):
    llm = FakeLLM([text_response('Squawk!')], structured=classification('question'))
    responder = make_responder(chat, prompts, llm)
    responder.respond(1, 11, 'what do parrots eat?', POLLY)

    chat.add_messages([make_message(12, 130, text='seeds maybe'), make_message(13, 140, text='or crackers?')])
    responder.respond(1, 13, 'or crackers?', POLLY)

    assert len(llm.primed) == 1
    second = llm.converse_calls[-1]
    assert second['cached_messages'] == llm.converse_calls[0]['cached_messages']
    live_text = '\n'.join(block['text'] for message in second['messages'] for block in message['content'])
    assert 'chirp 11' in live_text
    assert 'seeds maybe' in live_text


def test_tools_follow_tier_toggle(chat, prompts):
    llm = FakeLLM([text_response('Squawk!')], structured=classification('question'))

    make_responder(chat, prompts, llm, tool_tiers=['advanced']).respond(1, 11, 'hi', POLLY)

    assert llm.converse_calls[0]['tools'] is None


def test_extended_context_uses_extended_cache(chat, prompts):
    llm = FakeLLM([text_response('Squawk!')], structured=classification('research', extra=True))

    make_responder(chat, prompts, llm).respond(1, 11, 'tell me everything about parrots', POLLY)

    assert llm.converse_calls[0]['quality'] == 'advanced'
    assert '_advanced_extended_' in llm.primed[0]


def test_model_failure_returns_nothing(chat, prompts):
    llm = FakeLLM([BedrockLLMError('rejected')], structured=classification('question'))

    assert make_responder(chat, prompts, llm).respond(1, 11, 'hi', POLLY) is None


def test_situational_status_reaches_the_prompt(chat, prompts):
    llm = FakeLLM([text_response('Squawk!')], structured=classification('annoyance'))

    make_responder(chat, prompts, llm, status=Muted()).respond(1, 11, 'hi', POLLY)

    live_text = '\n'.join(block['text'] for message in llm.converse_calls[0]['messages'] for block in message['content'])
    assert 'warned for spamming' in live_text


def test_uncached_context_is_sent_inline(chat, prompts):
    llm = FakeLLM([text_response('Squawk!')], structured=classification('question'))

    reply = make_responder(chat, prompts, llm, cache=cache_config(min_tokens=10**6)).respond(1, 11, 'hi', POLLY)

    assert reply.text == 'Squawk!'
    [call] = llm.converse_calls
    assert call['cached_messages'] is None
    sent = '\n'.join(block['text'] for message in call['messages'] for block in message['content'])
    assert CONTEXT_INTRO in sent
    assert sent.endswith('Reply to following message from [@polly]:\nhi')
    assert llm.primed == []
