"""
MCP Interface Layer using fastmcp for the chat transport process.
"""
import threading
from typing import Any, Dict, Optional

from fastmcp import FastMCP

from chatloom.container import build_services
from chatloom.models.core import User
from chatloom.services.batch_summarization import BatchPipelineError
from chatloom.utils.config import config
from chatloom.utils.health_check import get_system_info
from chatloom.utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Chatloom')
services = build_services(config)


@mcp.tool()
def respond_to_message(chat_id: int,
                       message_id: int,
                       text: str,
                       user_id: int,
                       username: Optional[str] = None,
                       first_name: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Produce the character's reply to a chat message.

    Args:
        chat_id: Chat the message was posted in
        message_id: Id of the stored message
        text: Message text
        user_id: Author id
        username: Author username, if any
        first_name: Author first name, if any

    Returns:
        {'text', 'reply_to_message_id'} or None when the character stays silent
    """
    if not text or not text.strip():
        return None

    user = User(chat_id=chat_id, user_id=user_id, username=username, first_name=first_name)
    reply = services.responder.respond(chat_id, message_id, text, user)
    if reply is None:
        return None

    logger.debug(f'MCP reply to message {message_id} in chat {chat_id}')
    return {'text': reply.text, 'reply_to_message_id': reply.reply_to_message_id}


@mcp.tool()
def prepare_batch(chat_id: int) -> Optional[Dict[str, Any]]:
    """Prepare and submit the next summarization batch of a chat.

    Args:
        chat_id: Chat to summarize

    Returns:
        {'batch_id', 'state', 'start_message_id', 'end_message_id'} or None if nothing to do

    Raises:
        Exception: If preparation fails
    """
    try:
        job = services.pipeline.prepare(chat_id)
    except BatchPipelineError as e:
        logger.error(f'Batch pipeline error in MCP prepare: {e}')
        raise Exception(f'Batch preparation failed: {e}')

    if job is None:
        return None
    return {
        'batch_id': job.id,
        'state': job.state.value,
        'start_message_id': job.start_message_id,
        'end_message_id': job.end_message_id,
    }


@mcp.tool()
def poll_batches(chat_id: int) -> Dict[str, str]:
    """Poll every pending summarization batch of a chat.

    Args:
        chat_id: Chat to poll

    Returns:
        Mapping of batch id to its current state

    Raises:
        Exception: If the pending batches cannot be listed
    """
    try:
        states = services.pipeline.poll_pending(chat_id)
    except BatchPipelineError as e:
        logger.error(f'Batch pipeline error in MCP poll: {e}')
        raise Exception(f'Batch polling failed: {e}')

    return {str(batch_id): state.value for batch_id, state in states.items()}


@mcp.tool()
def health() -> Dict[str, Any]:
    """Report configuration and the health of the model, storage and search backends."""
    return get_system_info(config)


if __name__ == '__main__':
    stop_event = threading.Event()
    scheduler_thread = threading.Thread(target=services.scheduler.run_forever,
                                        args=(stop_event, ),
                                        name='chatloom-scheduler',
                                        daemon=True)
    scheduler_thread.start()

    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    try:
        mcp.run(transport=transport, host=host, port=port)
    finally:
        stop_event.set()
        services.shutdown()
