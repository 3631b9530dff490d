"""
Prompt building: message rendering, user handles and participant profiles.
"""

import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from ..models.core import Conversation, Message, Person, PersonThought, ThoughtFactor, User
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import format_absolute, format_relative, to_datetime, utc_now

logger = get_logger(__name__)

BOT_HANDLE = 'You'

THOUGHT_HALF_LIFE_DAYS = 4
PROFILE_THOUGHTS = 5
PROFILE_FACTS = 15

_NUMERIC_HANDLE = re.compile(r'^ID:(\d+)$', re.IGNORECASE)


def opinion_modifier(factors: Sequence[ThoughtFactor]) -> int:
    """Opinion penalty of a thought, hostile persistence weighs the most."""
    values = {factor.name: factor.value for factor in factors}
    hostility = values.get('hostility', 0)
    repetitiveness = values.get('repetitiveness', 0)
    return -int(round(hostility * repetitiveness / 2))


def decayed_opinion(thought: PersonThought, now: Optional[datetime] = None) -> int:
    """Opinion modifier halved every THOUGHT_HALF_LIFE_DAYS since the thought."""
    days = max(0.0, ((now or utc_now()) - to_datetime(thought.date)).total_seconds() / 86400)
    return int(round(thought.opinion_modifier / 2**(days / THOUGHT_HALF_LIFE_DAYS)))


class PromptBuilder:
    """Renders chat records into model-facing prompt text."""

    def __init__(self, bot_user_id: int, join_window_seconds: int = 300):
        """
        Args:
            bot_user_id: User id of the character itself
            join_window_seconds: Consecutive messages of one user within this window share a header
        """
        self.bot_user_id = bot_user_id
        self.join_window_seconds = join_window_seconds

    def handle(self, user_id: int, user: Optional[User] = None) -> str:
        if user_id == self.bot_user_id:
            return BOT_HANDLE
        if user is not None:
            return user.handle
        return f'ID:{user_id}'

    def wrap_handle(self, user_id: int, user: Optional[User] = None) -> str:
        return f'[{self.handle(user_id, user)}]'

    def resolve_handle(self, handle: str, participants: Iterable[User]) -> Optional[int]:
        """
        Resolve a handle written by the model back to a user id.

        Accepts `[@name]`, `@name`, `name`, `ID:123` and the bot's own handle.
        Unknown handles resolve to None.
        """
        candidate = (handle or '').strip()
        if candidate.startswith('['):
            candidate = candidate[1:]
        if candidate.endswith(']'):
            candidate = candidate[:-1]
        candidate = candidate.strip()
        if candidate.startswith('@'):
            candidate = candidate[1:]
        if not candidate:
            return None

        if candidate.lower() == BOT_HANDLE.lower():
            return self.bot_user_id

        participants = list(participants)
        match = _NUMERIC_HANDLE.match(candidate)
        if match:
            user_id = int(match.group(1))
            if user_id == self.bot_user_id or any(user.user_id == user_id for user in participants):
                return user_id
            return None

        lowered = candidate.lower()
        for user in participants:
            if user.username and user.username.lower() == lowered:
                return user.user_id

        logger.debug(f'Unresolved user handle: {handle}')
        return None

    def can_join(self, first: Optional[Message], second: Message) -> bool:
        if first is None or first.user_id != second.user_id:
            return False
        return (second.date - first.date).total_seconds() <= self.join_window_seconds

    def message_header(self,
                       message: Message,
                       users: Dict[int, User],
                       reply_to_user_id: Optional[int] = None,
                       with_id: bool = False,
                       absolute_time: bool = False,
                       now: Optional[datetime] = None) -> str:
        if message.user_id not in users and message.user_id != self.bot_user_id:
            logger.debug(f'User not found for message {message.message_id} in chat {message.chat_id}')
        handle = self.wrap_handle(message.user_id, users.get(message.user_id))

        header = f'#{message.message_id} {handle}' if with_id else handle
        if reply_to_user_id is not None:
            header += f' to {self.wrap_handle(reply_to_user_id, users.get(reply_to_user_id))}'

        when = format_absolute(message.date) if absolute_time else format_relative(message.date, now)
        return f'{header} ({when}):\n'

    def format_message_group(self,
                             messages: Sequence[Message],
                             users: Dict[int, User],
                             with_ids: bool = False,
                             absolute_time: bool = False,
                             now: Optional[datetime] = None,
                             by_id: Optional[Dict[int, Message]] = None) -> str:
        if by_id is None:
            by_id = {message.message_id: message for message in messages}
        parts = []
        previous = None
        for message in messages:
            replied = by_id.get(message.reply_to_message_id) if message.reply_to_message_id else None
            if self.can_join(previous, message) and not with_ids:
                parts.append(f'{message.text}\n\n')
            else:
                parts.append(self.message_header(message, users, replied.user_id if replied else None, with_ids,
                                                 absolute_time, now) + f'{message.text}\n\n')
            previous = message
        return ''.join(parts)

    def messages_to_contents(self,
                             messages: Sequence[Message],
                             users: Dict[int, User],
                             separate_bot: bool = True,
                             with_ids: bool = False,
                             absolute_time: bool = False,
                             now: Optional[datetime] = None) -> List[Dict]:
        """
        Render messages as Converse turns.

        With `separate_bot` the character's own messages become assistant
        turns and everything between them is grouped into user turns.
        """
        if not separate_bot:
            text = self.format_message_group(messages, users, with_ids, absolute_time, now)
            return [{'role': 'user', 'content': [{'text': text}]}] if text else []

        by_id = {message.message_id: message for message in messages}
        contents: List[Dict] = []
        group: List[Message] = []
        for message in messages:
            if message.user_id != self.bot_user_id:
                group.append(message)
                continue
            if group:
                contents.append({
                    'role': 'user',
                    'content': [{
                        'text': self.format_message_group(group, users, with_ids, absolute_time, now, by_id)
                    }]
                })
                group = []
            contents.append({'role': 'assistant', 'content': [{'text': message.text or '...'}]})

        if group:
            contents.append({
                'role': 'user',
                'content': [{
                    'text': self.format_message_group(group, users, with_ids, absolute_time, now, by_id)
                }]
            })
        return contents

    def participant_profiles(self, users: Dict[int, User], persons: Sequence[Person],
                             now: Optional[datetime] = None) -> str:
        """Describe what the character remembers about each participant."""
        sections = []
        for person in sorted(persons, key=lambda p: p.user_id):
            if person.user_id == self.bot_user_id:
                continue
            lines = [f'{self.wrap_handle(person.user_id, users.get(person.user_id))}']
            user = users.get(person.user_id)
            if user and user.first_name:
                lines.append(f'Name: {user.first_name}')
            if person.characteristics:
                lines.append('Known facts:')
                lines.extend(f'- {fact}' for fact in person.characteristics[-PROFILE_FACTS:])

            thoughts = sorted(person.thoughts, key=lambda t: t.date)[-PROFILE_THOUGHTS:]
            if thoughts:
                opinion = sum(decayed_opinion(thought, now) for thought in person.thoughts)
                lines.append(f'Your opinion modifier: {opinion}')
                lines.append('Recent impressions:')
                lines.extend(f'- {thought.thought} (weight {thought.weight})' for thought in thoughts)
            sections.append('\n'.join(lines))

        if not sections:
            return ''
        return 'What you know about the participants:\n\n' + '\n\n'.join(sections)

    def conversation_history(self, conversations: Sequence[Conversation]) -> str:
        """Summaries of earlier conversations, oldest first."""
        if not conversations:
            return ''
        lines = ['Summaries of earlier conversations in this chat:']
        for conversation in conversations:
            lines.append(f'#{conversation.conversation_id} ({format_absolute(conversation.date)}) '
                         f'{conversation.title}: {conversation.summary}')
        return '\n'.join(lines)

    @staticmethod
    def participant_ids(messages: Iterable[Message]) -> List[int]:
        seen: Dict[int, None] = {}
        for message in messages:
            seen.setdefault(message.user_id, None)
        return list(seen)
