"""
Periodic batch summarization across chats.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional

from ..models.core import BatchJob, JobState
from ..utils.config import BatchConfig
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchError
from .batch_summarization import BatchPipelineError, BatchSummarizationPipeline
from .record_store import ChatRecordStore

logger = get_logger(__name__)


class BatchScheduler:
    """Polls pending batches and prepares new ones for every known chat."""

    def __init__(self, store: ChatRecordStore, pipeline: BatchSummarizationPipeline, config: BatchConfig):
        self.store = store
        self.pipeline = pipeline
        self.config = config

    def process_chat(self, chat_id: int) -> Dict[str, object]:
        states: Dict[int, JobState] = {}
        prepared: Optional[BatchJob] = None
        try:
            states = self.pipeline.poll_pending(chat_id)
            prepared = self.pipeline.prepare(chat_id)
        except BatchPipelineError as e:
            logger.error(f'Batch processing failed for chat {chat_id}: {e}')
        return {'polled': states, 'prepared': prepared}

    def tick(self) -> Dict[int, Dict[str, object]]:
        """Run one scheduling round over all chats."""
        try:
            chat_ids = self.store.get_chat_ids()
        except OpenSearchError as e:
            logger.error(f'Failed to list chats: {e}')
            return {}

        if not chat_ids:
            return {}

        with ThreadPoolExecutor(max_workers=max(1, self.config.max_workers),
                                thread_name_prefix='chatloom-batch') as executor:
            results = dict(zip(chat_ids, executor.map(self.process_chat, chat_ids)))

        logger.info(f'Batch round finished for {len(chat_ids)} chats')
        return results

    def run_forever(self, stop_event: threading.Event) -> None:
        """Tick every poll interval until `stop_event` is set."""
        logger.info(f'Batch scheduler started, interval {self.config.poll_interval_seconds}s')
        while not stop_event.is_set():
            self.tick()
            stop_event.wait(self.config.poll_interval_seconds)
        logger.info('Batch scheduler stopped')
