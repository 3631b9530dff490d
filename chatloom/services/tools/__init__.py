"""
Built-in chat tools.
"""

from ..record_store import ChatRecordStore
from ..tool_registry import ToolRegistry
from . import random_choice
from .memory import ConversationRecallTool


def register_builtin_tools(registry: ToolRegistry, store: ChatRecordStore) -> ToolRegistry:
    random_choice.register(registry)
    ConversationRecallTool(store).register(registry)
    return registry
