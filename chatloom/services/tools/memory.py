"""
Memory tool: recall the summary of an earlier conversation of the chat.
"""

from typing import Any, Dict

from ..record_store import ChatRecordStore
from ..tool_registry import ToolArgument, ToolRegistry

TOOL_CODE = 'memory'


class ConversationRecallTool:

    def __init__(self, store: ChatRecordStore):
        self.store = store

    def recall_conversation(self, chat_id: int, conversation_id: int) -> Dict[str, Any]:
        conversation = self.store.get_conversation(chat_id, conversation_id)
        if conversation is None:
            raise LookupError(f'Conversation {conversation_id} does not exist')

        return {
            'title': conversation.title,
            'summary': conversation.summary,
            'date': conversation.date.isoformat(),
            'message_start_id': conversation.message_start_id,
            'message_end_id': conversation.message_end_id,
        }

    def register(self, registry: ToolRegistry) -> None:
        registry.register(TOOL_CODE, 'recall_conversation',
                          'Recall the stored summary of an earlier conversation by its id.',
                          [ToolArgument('conversation_id', int, 'Id of the conversation, as shown in the history')],
                          self.recall_conversation)
