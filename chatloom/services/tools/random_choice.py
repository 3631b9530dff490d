"""
Random choice tool, lets the character roll a die for a decision.
"""

import random
from typing import Annotated

from pydantic import Field

from ..tool_registry import ToolArgument, ToolRegistry

TOOL_CODE = 'random_choice'

OptionsCount = Annotated[int, Field(ge=2, le=64)]


def pick_random_number(chat_id: int, options_count: int) -> str:
    """Pick one of `options_count` options, numbered from 1."""
    return str(random.randint(1, options_count))


def register(registry: ToolRegistry) -> None:
    registry.register(TOOL_CODE, 'pick_random_number',
                      'Choose a random option from a given number of options. Returns the chosen option number.',
                      [ToolArgument('options_count', OptionsCount, 'Number of options to choose from')],
                      pick_random_number)
