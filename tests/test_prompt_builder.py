"""Tests for chatloom.services.prompt_builder."""

from datetime import timedelta

import pytest

from chatloom.models.core import Person, PersonThought, ThoughtFactor, User
from chatloom.services.prompt_builder import decayed_opinion, opinion_modifier

from fakes import BASE_TIME, BOT_ID, make_message

POLLY = User(chat_id=1, user_id=1, username='Polly')
NAMELESS = User(chat_id=1, user_id=2)
PARTICIPANTS = [POLLY, NAMELESS]


class TestHandles:

    def test_handles(self, prompts):
        assert prompts.wrap_handle(BOT_ID) == '[You]'
        assert prompts.wrap_handle(1, POLLY) == '[@Polly]'
        assert prompts.wrap_handle(2, NAMELESS) == '[ID:2]'
        assert prompts.wrap_handle(3) == '[ID:3]'

    @pytest.mark.parametrize('handle, expected', [
        ('[@Polly]', 1),
        ('@polly', 1),
        ('POLLY', 1),
        ('[ID:2]', 2),
        ('id:2', 2),
        ('[You]', BOT_ID),
        (f'ID:{BOT_ID}', BOT_ID),
        ('[ID:3]', None),
        ('[@ghost]', None),
        ('[]', None),
        ('', None),
    ])
    def test_resolve_handle(self, prompts, handle, expected):
        assert prompts.resolve_handle(handle, PARTICIPANTS) == expected


class TestMessages:

    def test_bot_messages_become_assistant_turns(self, prompts):
        messages = [
            make_message(1, 0, user_id=1, text='hi parrot'),
            make_message(2, 5, user_id=BOT_ID, text='squawk'),
            make_message(3, 10, user_id=2, text='hello', reply_to=2),
        ]
        contents = prompts.messages_to_contents(messages, {1: POLLY, 2: NAMELESS}, now=BASE_TIME + timedelta(hours=1))

        assert [c['role'] for c in contents] == ['user', 'assistant', 'user']
        assert contents[0]['content'][0]['text'] == '[@Polly] (1 hour ago):\nhi parrot\n\n'
        assert contents[1]['content'][0]['text'] == 'squawk'
        assert contents[2]['content'][0]['text'].startswith('[ID:2] to [You] (59 minutes ago):\n')

    def test_consecutive_messages_share_header(self, prompts):
        messages = [make_message(1, 0, text='one'), make_message(2, 30, text='two')]
        text = prompts.format_message_group(messages, {1: POLLY}, absolute_time=True)

        assert text == '[@Polly] (2024-05-01 12:00):\none\n\ntwo\n\n'

    def test_ids_keep_every_header(self, prompts):
        messages = [make_message(1, 0, text='one'), make_message(2, 30, text='two')]
        [content] = prompts.messages_to_contents(messages, {1: POLLY}, separate_bot=False, with_ids=True,
                                                 absolute_time=True)

        assert content['content'][0]['text'] == ('#1 [@Polly] (2024-05-01 12:00):\none\n\n'
                                                 '#2 [@Polly] (2024-05-01 12:00):\ntwo\n\n')


class TestOpinion:

    def test_modifier(self):
        factors = [ThoughtFactor('hostility', 6), ThoughtFactor('repetitiveness', 5), ThoughtFactor('kindness', 9)]
        assert opinion_modifier(factors) == -15

    def test_decay_halves_every_four_days(self):
        thought = PersonThought(thought='t', opinion_modifier=-20, weight=5, factors=[], date=BASE_TIME)

        assert decayed_opinion(thought, BASE_TIME) == -20
        assert decayed_opinion(thought, BASE_TIME + timedelta(days=4)) == -10
        assert decayed_opinion(thought, BASE_TIME + timedelta(days=8)) == -5

    def test_profiles_skip_the_bot(self, prompts):
        persons = [
            Person(chat_id=1,
                   user_id=1,
                   characteristics=['Likes crackers'],
                   thoughts=[PersonThought('Conversation about seeds', -4, 6, [], BASE_TIME)]),
            Person(chat_id=1, user_id=BOT_ID, characteristics=['Is a bot']),
        ]
        text = prompts.participant_profiles({1: POLLY}, persons, now=BASE_TIME)

        assert '[@Polly]' in text
        assert '- Likes crackers' in text
        assert 'Your opinion modifier: -4' in text
        assert 'Is a bot' not in text
