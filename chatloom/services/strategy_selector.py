"""
Answer strategy selection: classifies an incoming message with a cheap model
call over a compact recent context.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError

from ..models.core import (CONVERSATION_STRATEGY, DEFAULT_STRATEGIES, QUALITY_LOW, STRATEGY_CONVERSATION,
                           AnswerStrategy, Message, User)
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import GenerationConfig, PersonaConfig
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchError
from .prompt_builder import PromptBuilder
from .record_store import ChatRecordStore

logger = get_logger(__name__)

CLASSIFICATION_TOOL = 'classify_strategy'


class StrategySelectionError(Exception):
    """Custom exception for strategy classification errors."""
    pass


class StrategyCandidate(BaseModel):
    strategy_code: str
    weight: int = 0


class Classification(BaseModel):
    candidates: List[StrategyCandidate] = Field(default_factory=list)
    needs_extra_context: bool = False


@dataclass
class StrategyDecision:
    strategy: AnswerStrategy
    needs_extra_context: bool = False


def classification_schema(strategy_codes: Sequence[str]) -> Dict[str, Any]:
    return {
        'type': 'object',
        'properties': {
            'candidates': {
                'type': 'array',
                'description': 'Fitting strategies, the best fitting one with the highest weight.',
                'items': {
                    'type': 'object',
                    'properties': {
                        'strategy_code': {
                            'type': 'string',
                            'enum': list(strategy_codes)
                        },
                        'weight': {
                            'type': 'integer',
                            'minimum': 1,
                            'maximum': 10,
                            'description': 'How well the strategy fits, 1-10.'
                        },
                    },
                    'required': ['strategy_code', 'weight'],
                },
            },
            'needs_extra_context': {
                'type': 'boolean',
                'description': 'True if answering well requires the long chat history.'
            },
        },
        'required': ['candidates', 'needs_extra_context'],
    }


class StrategySelector:
    """Decides how the character reacts to a message."""

    def __init__(self, store: ChatRecordStore, llm: BedrockLLM, prompts: PromptBuilder, persona: PersonaConfig,
                 generation: GenerationConfig):
        self.store = store
        self.llm = llm
        self.prompts = prompts
        self.persona = persona
        self.generation = generation

    def ensure_chat_strategies(self, chat_id: int) -> List[AnswerStrategy]:
        """Seed the default strategy set for a chat that has none."""
        strategies = self.store.get_strategies(chat_id)
        if strategies:
            return strategies

        logger.debug(f'No answer strategies found for chat {chat_id}, setting up defaults')
        strategies = list(DEFAULT_STRATEGIES)
        self.store.save_strategies(chat_id, strategies)
        return strategies

    def collect_context(self, chat_id: int, message_id: int) -> List[Message]:
        """Latest messages merged with the reply chain of the target message, oldest first."""
        latest = self.store.get_latest_messages(chat_id, self.generation.classification_window_messages)
        chain = self.store.get_message_chain(chat_id, message_id)

        merged: Dict[int, Message] = {}
        for message in chain + latest:
            merged.setdefault(message.message_id, message)
        return sorted(merged.values(), key=lambda m: (m.date, m.message_id))

    def classify(self,
                 chat_id: int,
                 message_id: int,
                 text: str,
                 participants: Optional[Sequence[User]] = None,
                 deadline: Optional[float] = None) -> Classification:
        """
        Rate the chat's strategies for a message.

        Raises:
            StrategySelectionError: If the context cannot be loaded or the model output is unusable
        """
        try:
            strategies = self.ensure_chat_strategies(chat_id)
            context = self.collect_context(chat_id, message_id)
            if participants is None:
                participants = self.store.get_users(chat_id, self.prompts.participant_ids(context))
            users = {user.user_id: user for user in participants}
            persons = self.store.get_persons(chat_id, list(users))
        except OpenSearchError as e:
            raise StrategySelectionError(f'Failed to load classification context: {e}')

        descriptions = '\n'.join(f'- {s.strategy_code}: {s.classification_description}' for s in strategies)
        messages = [{
            'role': 'user',
            'content': [{
                'text': f'Your role in the chat:\n{self.persona.character_prompt}'
            }]
        }]
        profiles = self.prompts.participant_profiles(users, persons)
        if profiles:
            messages.append({'role': 'user', 'content': [{'text': profiles}]})
        messages.extend(self.prompts.messages_to_contents(context, users, separate_bot=False))
        messages.append({
            'role': 'user',
            'content': [{
                'text': (f'Available strategies:\n{descriptions}\n\n'
                         f'Classify the best possible strategy to respond to the following message:\n"{text}"')
            }]
        })

        try:
            raw = self.llm.generate_structured(QUALITY_LOW,
                                               messages,
                                               self.persona.strategy_prompt,
                                               classification_schema([s.strategy_code for s in strategies]),
                                               CLASSIFICATION_TOOL,
                                               'Record the strategy classification of the message.',
                                               deadline=deadline)
            classification = Classification.model_validate(raw)
        except (BedrockLLMError, ValidationError) as e:
            raise StrategySelectionError(f'Strategy classification failed: {e}')

        logger.debug(f'Strategy classification for chat {chat_id}: {classification}')
        return classification

    def select(self, chat_id: int, classification: Optional[Classification]) -> AnswerStrategy:
        """Pick the highest weighted known strategy, `conversation` otherwise."""
        try:
            strategies = {s.strategy_code: s for s in self.ensure_chat_strategies(chat_id)}
        except OpenSearchError as e:
            logger.warning(f'Failed to load strategies for chat {chat_id}: {e}')
            strategies = {}
        fallback = strategies.get(STRATEGY_CONVERSATION, CONVERSATION_STRATEGY)

        if classification is None or not classification.candidates:
            return fallback

        best = max(classification.candidates, key=lambda candidate: candidate.weight)
        strategy = strategies.get(best.strategy_code)
        if strategy is None:
            logger.warning(f'Strategy {best.strategy_code} not found for chat {chat_id}')
            return fallback
        return strategy

    def solve(self,
              chat_id: int,
              message_id: int,
              text: str,
              participants: Optional[Sequence[User]] = None,
              deadline: Optional[float] = None) -> StrategyDecision:
        """Classify and select, falling back to `conversation` on any classification failure."""
        try:
            classification = self.classify(chat_id, message_id, text, participants, deadline)
        except StrategySelectionError as e:
            logger.warning(f'Falling back to conversation strategy in chat {chat_id}: {e}')
            classification = None
        return StrategyDecision(strategy=self.select(chat_id, classification),
                                needs_extra_context=bool(classification and classification.needs_extra_context))
