"""
Prompt cache management.

A cache is identified by a deterministic display name built from the chat,
quality tier, context flavor and the set of offered tools. Its tracking
record keeps the materialized prefix so a hit never rebuilds the prompt.
"""

import base64
import hashlib
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from ..models.core import PromptCacheRecord
from ..utils.bedrock_llm import PROVIDER_NAME, BedrockLLM, BedrockLLMError
from ..utils.config import CacheConfig
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchError
from ..utils.timestamp_utils import utc_now
from .record_store import ChatRecordStore

logger = get_logger(__name__)


@dataclass
class CacheContents:
    """Prompt prefix produced by a build function."""
    system_prompt: str
    contents: List[Dict[str, Any]]
    start_message_id: Optional[int] = None
    end_message_id: Optional[int] = None


@dataclass
class CacheHandle:
    """Prefix to send ahead of the live turn, cached on the provider or not."""
    display_name: str
    system_prompt: str
    contents: List[Dict[str, Any]]
    cached: bool = False
    model: Optional[str] = None
    expires_at: Optional[datetime] = None
    start_message_id: Optional[int] = None
    end_message_id: Optional[int] = None
    record_id: Optional[str] = None

    @classmethod
    def from_record(cls, record: PromptCacheRecord) -> 'CacheHandle':
        return cls(display_name=record.display_name,
                   system_prompt=record.system_prompt,
                   contents=record.contents,
                   cached=True,
                   model=record.model,
                   expires_at=record.expires_at,
                   start_message_id=record.start_message_id,
                   end_message_id=record.end_message_id,
                   record_id=record.record_id)


def tools_fingerprint(tool_names: Sequence[str]) -> str:
    """Short deterministic digest of a tool set, independent of order."""
    digest = hashlib.sha256('\n'.join(sorted(set(tool_names))).encode('utf-8')).digest()
    return base64.urlsafe_b64encode(digest).decode('ascii').rstrip('=')[:16]


def cache_display_name(chat_id: int, quality: str, context_flavor: str, tool_names: Sequence[str] = ()) -> str:
    tooled = f'tooled_{tools_fingerprint(tool_names)}' if tool_names else 'untooled'
    return f'ChatCache_{chat_id}_{quality}_{context_flavor}_{tooled}'


class KeyedLock:
    """One mutex per key, dropped once nobody holds or waits for it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List[Any]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class PromptCacheManager:
    """Reuses or creates provider prompt caches per chat, tier, flavor and tool set."""

    def __init__(self, store: ChatRecordStore, llm: BedrockLLM, config: CacheConfig):
        self.store = store
        self.llm = llm
        self.config = config
        self._locks = KeyedLock()

    def _find_live(self, chat_id: int, display_name: str) -> Optional[PromptCacheRecord]:
        usable_after = utc_now() + timedelta(seconds=self.config.lookahead_margin_seconds)
        try:
            return self.store.find_live_prompt_cache(chat_id, display_name, usable_after)
        except OpenSearchError as e:
            logger.warning(f'Prompt cache lookup for {display_name} failed: {e}')
            return None

    def _estimate_tokens(self, built: CacheContents) -> int:
        text = [built.system_prompt]
        for message in built.contents:
            text.extend(block.get('text', '') for block in message.get('content', []))
        return self.llm.estimate_tokens('\n'.join(text))

    def get_or_create(self,
                      chat_id: int,
                      quality: str,
                      context_flavor: str,
                      tool_names: Sequence[str],
                      build_contents_fn: Callable[[], CacheContents],
                      tool_specs: Optional[List[Dict[str, Any]]] = None) -> CacheHandle:
        """
        Return a usable cache handle, building and caching the prefix on a miss.

        Concurrent misses for the same cache are serialized: the first caller
        builds, later callers find its record after acquiring the lock.

        Args:
            chat_id: Chat the cache belongs to
            quality: Quality tier, selects model and TTL
            context_flavor: short or extended
            tool_names: Names of the tools offered with the prefix
            build_contents_fn: Materializes the prefix, called only on a miss
            tool_specs: Tool specifications sent with the priming call

        Returns:
            CacheHandle, uncached when caching is disabled, not worth it or failed
        """
        display_name = cache_display_name(chat_id, quality, context_flavor, tool_names)

        record = self._find_live(chat_id, display_name)
        if record:
            logger.debug(f'Prompt cache hit: {display_name}')
            return CacheHandle.from_record(record)

        with self._locks.hold(display_name):
            record = self._find_live(chat_id, display_name)
            if record:
                logger.debug(f'Prompt cache hit after wait: {display_name}')
                return CacheHandle.from_record(record)

            built = build_contents_fn()
            handle = CacheHandle(display_name=display_name,
                                 system_prompt=built.system_prompt,
                                 contents=built.contents,
                                 start_message_id=built.start_message_id,
                                 end_message_id=built.end_message_id)

            ttl_seconds = self.config.ttl_seconds.get(quality, 0)
            if ttl_seconds <= 0:
                logger.debug(f'Prompt caching disabled for {quality} tier')
                return handle

            tokens = self._estimate_tokens(built)
            if tokens < self.config.min_tokens:
                logger.debug(f'Prompt of ~{tokens} tokens too small to cache: {display_name}')
                return handle

            try:
                cached = self.llm.prime_cache(quality, built.system_prompt, built.contents, tool_specs, ttl_seconds,
                                              display_name)
                # One live record per display name
                replaced = self.store.soft_delete_prompt_cache(chat_id, display_name)
                if replaced:
                    logger.debug(f'Retired {replaced} expiring record(s) of {display_name}')
                record = self.store.create_prompt_cache(
                    PromptCacheRecord(chat_id=chat_id,
                                      display_name=display_name,
                                      provider_name=f'{PROVIDER_NAME}/{cached.name}',
                                      model=cached.model,
                                      expires_at=cached.expires_at,
                                      start_message_id=built.start_message_id,
                                      end_message_id=built.end_message_id,
                                      system_prompt=built.system_prompt,
                                      contents=built.contents))
            except (BedrockLLMError, OpenSearchError) as e:
                logger.warning(f'Failed to create prompt cache {display_name}, continuing uncached: {e}')
                return handle

            logger.info(f'Created prompt cache {display_name} (~{tokens} tokens, ttl {ttl_seconds}s)')
            return CacheHandle.from_record(record)

    def delete(self, chat_id: int, quality: str, context_flavor: str, tool_names: Sequence[str] = ()) -> bool:
        """
        Invalidate a cache. Safe to call when no live cache exists.

        Returns:
            True if a live record was deleted
        """
        display_name = cache_display_name(chat_id, quality, context_flavor, tool_names)

        with self._locks.hold(display_name):
            try:
                deleted = self.store.soft_delete_prompt_cache(chat_id, display_name)
            except OpenSearchError as e:
                logger.warning(f'Failed to delete prompt cache record {display_name}: {e}')
                return False

            if deleted:
                try:
                    self.llm.release_cache(display_name)
                except BedrockLLMError as e:
                    logger.warning(f'Failed to release provider cache {display_name}: {e}')
                logger.info(f'Soft-deleted prompt cache record {display_name}')
            return deleted > 0
