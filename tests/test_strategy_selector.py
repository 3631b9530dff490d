"""Tests for chatloom.services.strategy_selector."""

import pytest

from chatloom.models.core import DEFAULT_STRATEGIES, STRATEGY_CONVERSATION, STRATEGY_IGNORE, QUALITY_LOW, User
from chatloom.services.strategy_selector import (Classification, StrategyCandidate, StrategySelectionError,
                                                 StrategySelector, classification_schema)
from chatloom.utils.bedrock_llm import BedrockLLMError

from fakes import FakeLLM, generation_config, make_message, persona_config


def make_selector(store, prompts, structured):
    llm = FakeLLM(structured=structured)
    return StrategySelector(store, llm, prompts, persona_config(), generation_config()), llm


@pytest.fixture
def chat(store):
    store.save_user(User(chat_id=1, user_id=1, username='polly'))
    store.add_messages([make_message(i, i * 10, text=f'message {i}') for i in range(1, 6)])
    return store


class TestClassify:

    def test_uses_low_tier_with_strategy_enum(self, chat, prompts):
        selector, llm = make_selector(chat, prompts, {
            'candidates': [{'strategy_code': 'question', 'weight': 7}],
            'needs_extra_context': True
        })

        classification = selector.classify(1, 5, 'why is the sky blue?')

        assert classification.needs_extra_context
        assert classification.candidates == [StrategyCandidate(strategy_code='question', weight=7)]
        [call] = llm.structured_calls
        assert call['quality'] == QUALITY_LOW
        enum = call['schema']['properties']['candidates']['items']['properties']['strategy_code']['enum']
        assert set(enum) == {s.strategy_code for s in DEFAULT_STRATEGIES}
        assert 'why is the sky blue?' in call['messages'][-1]['content'][0]['text']

    def test_seeds_default_strategies(self, chat, prompts):
        selector, _ = make_selector(chat, prompts, {'candidates': []})
        selector.classify(1, 5, 'hi')

        assert [s.strategy_code for s in chat.get_strategies(1)] == [s.strategy_code for s in DEFAULT_STRATEGIES]

    def test_model_error_raises(self, chat, prompts):
        selector, _ = make_selector(chat, prompts, BedrockLLMError('down'))

        with pytest.raises(StrategySelectionError):
            selector.classify(1, 5, 'hi')

    def test_malformed_output_raises(self, chat, prompts):
        selector, _ = make_selector(chat, prompts, {'candidates': 'question'})

        with pytest.raises(StrategySelectionError):
            selector.classify(1, 5, 'hi')


class TestSelect:

    def test_highest_weight_wins(self, chat, prompts):
        selector, _ = make_selector(chat, prompts, None)
        classification = Classification(candidates=[
            StrategyCandidate(strategy_code='question', weight=3),
            StrategyCandidate(strategy_code='research', weight=9),
            StrategyCandidate(strategy_code='feedback', weight=9),
        ])

        assert selector.select(1, classification).strategy_code == 'research'

    @pytest.mark.parametrize('classification', [
        None,
        Classification(candidates=[]),
        Classification(candidates=[StrategyCandidate(strategy_code='dance', weight=10)]),
    ])
    def test_falls_back_to_conversation(self, chat, prompts, classification):
        selector, _ = make_selector(chat, prompts, None)

        assert selector.select(1, classification).strategy_code == STRATEGY_CONVERSATION


class TestSolve:

    def test_failure_falls_back_to_conversation(self, chat, prompts):
        selector, _ = make_selector(chat, prompts, BedrockLLMError('down'))

        decision = selector.solve(1, 5, 'hi')

        assert decision.strategy.strategy_code == STRATEGY_CONVERSATION
        assert not decision.needs_extra_context

    def test_ignore_is_selected(self, chat, prompts):
        selector, _ = make_selector(chat, prompts, {
            'candidates': [{
                'strategy_code': STRATEGY_IGNORE,
                'weight': 10
            }],
            'needs_extra_context': False
        })

        assert selector.solve(1, 5, 'spam spam spam').strategy.strategy_code == STRATEGY_IGNORE


def test_collect_context_merges_reply_chain(store, prompts):
    store.add_messages([make_message(i, i * 10) for i in range(1, 201)])
    store.save_message(make_message(201, 5000, reply_to=3))
    selector, _ = make_selector(store, prompts, None)

    context = selector.collect_context(1, 201)
    ids = [m.message_id for m in context]

    assert 3 in ids
    assert len(ids) == len(set(ids))
    assert ids == sorted(ids, key=lambda i: store.get_message(1, i).date)


def test_classification_schema_requires_fields():
    schema = classification_schema(['a', 'b'])
    assert schema['required'] == ['candidates', 'needs_extra_context']
