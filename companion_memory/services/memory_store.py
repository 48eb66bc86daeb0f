"""
Persistent memory store: the single owner of memories and conversation summaries.

Every mutation runs under one asyncio lock and works against the latest
in-memory state, then writes the whole collection back through the key/value
store. Persistence failures surface as StorageError for the caller to convert.
"""

import asyncio
import json
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..models.core import MEMORY_TYPES, ConversationSummary, ExtractedMemory, Memory, MemorySource
from ..models.proactive import DISMISSED, ENGAGED, FEEDBACK_OUTCOMES
from ..utils.config import DecayConfig, FeedbackConfig, MemoryConfig, config
from ..utils.kv_store import KeyValueStore
from ..utils.logging_config import get_logger, preview
from ..utils.timestamp_utils import resolve_now
from .decay import (adjust_feedback_score, effective_importance, record_negative_interaction,
                    record_positive_interaction, refresh_decay_rate)
from .extraction import is_sensitive_candidate

logger = get_logger(__name__)

MEMORIES_KEY = 'memories'
SUMMARIES_KEY = 'conversation-summaries'


def generate_memory_id() -> str:
    return f'mem-{uuid.uuid4().hex}'


def memory_size_bytes(memory: Memory) -> int:
    return len(json.dumps(memory.to_dict()).encode('utf-8'))


class MemoryStore:
    """Authoritative in-process copy of memories and summaries, persisted through a KeyValueStore."""

    def __init__(self,
                 kv_store: KeyValueStore,
                 memory_config: Optional[MemoryConfig] = None,
                 decay_config: Optional[DecayConfig] = None,
                 feedback_config: Optional[FeedbackConfig] = None):
        """
        Initialize memory store.

        Args:
            kv_store: Persistence backend
            memory_config: Storage limits, uses global config if None
            decay_config: Decay tuning used for pruning and rate refresh, uses global config if None
            feedback_config: Feedback score steps, uses global config if None
        """
        self.kv_store = kv_store
        self.config = memory_config or config.memory
        self.decay_config = decay_config or config.decay
        self.feedback_config = feedback_config or config.feedback
        self._memories: Dict[str, Memory] = {}
        self._summaries: Dict[str, ConversationSummary] = {}
        self._lock = asyncio.Lock()
        self.loaded = False

    async def load(self, now: Optional[datetime] = None) -> None:
        """Load memories and summaries. Malformed records are skipped, a malformed blob loads as empty."""
        now = resolve_now(now)
        raw_memories = await self.kv_store.get(MEMORIES_KEY)
        raw_summaries = await self.kv_store.get(SUMMARIES_KEY)

        memories = [Memory.from_dict(item, now) for item in raw_memories] if isinstance(raw_memories, list) else []
        summaries = [ConversationSummary.from_dict(item, now)
                     for item in raw_summaries] if isinstance(raw_summaries, list) else []

        async with self._lock:
            self._memories = {m.id: m for m in memories if m is not None}
            self._summaries = {s.conversation_id: s for s in summaries if s is not None}
            self.loaded = True

        skipped = sum(1 for m in memories if m is None)
        if skipped:
            logger.warning(f'Skipped {skipped} malformed memory records')
        logger.info(f'Loaded {len(self._memories)} memories and {len(self._summaries)} conversation summaries')

    async def _save_memories(self) -> None:
        await self.kv_store.set(MEMORIES_KEY, [m.to_dict() for m in self._memories.values()])

    async def _save_summaries(self) -> None:
        await self.kv_store.set(SUMMARIES_KEY, [s.to_dict() for s in self._summaries.values()])

    @property
    def memories(self) -> List[Memory]:
        return list(self._memories.values())

    def active_memories(self, now: Optional[datetime] = None) -> List[Memory]:
        """Memories whose expiry has not passed."""
        now = resolve_now(now)
        return [m for m in self._memories.values() if not m.is_expired(now)]

    def get(self, memory_id: str) -> Optional[Memory]:
        return self._memories.get(memory_id)

    def _find_same(self, memory_type: str, content: str) -> Optional[Memory]:
        normalized = content.strip().lower()
        for memory in self._memories.values():
            if memory.type == memory_type and memory.content.strip().lower() == normalized:
                return memory
        return None

    async def add_memories(self,
                           candidates: Sequence[ExtractedMemory],
                           source: MemorySource,
                           now: Optional[datetime] = None,
                           expires_at: Optional[datetime] = None) -> List[Memory]:
        """
        Store validated candidates, merging those already known.

        A candidate with the same type and content (ignoring case) as a stored
        memory is merged into it: importance and confidence keep the higher
        value and the memory counts as accessed. Sensitive candidates are never
        stored.

        Args:
            candidates: Validated candidates
            source: Where they were learned
            now: Time of storage
            expires_at: Optional hard deletion time for the new memories

        Returns:
            New and merged memories
        """
        if not candidates:
            return []
        now = resolve_now(now)

        async with self._lock:
            stored: List[Memory] = []
            created = merged = 0
            for candidate in candidates:
                if candidate.type not in MEMORY_TYPES:
                    logger.debug(f'Rejecting memory of unknown type: {candidate.type}')
                    continue
                if is_sensitive_candidate(candidate.content, candidate.context):
                    logger.info(f'Rejecting sensitive memory: {preview(candidate.content)}')
                    continue

                existing = self._find_same(candidate.type, candidate.content)
                if existing is not None:
                    existing.importance = max(existing.importance, candidate.importance)
                    existing.confidence = max(existing.confidence, candidate.confidence)
                    existing.last_accessed = now
                    existing.access_count += 1
                    if existing not in stored:
                        stored.append(existing)
                    merged += 1
                    continue

                memory = Memory(id=generate_memory_id(),
                                type=candidate.type,
                                content=candidate.content.strip(),
                                context=candidate.context,
                                source=source,
                                importance=candidate.importance,
                                confidence=candidate.confidence,
                                created_at=now,
                                last_accessed=now,
                                expires_at=expires_at)
                self._memories[memory.id] = memory
                stored.append(memory)
                created += 1

            if stored:
                self._prune(now)
                await self._save_memories()
            logger.info(f'Added {created} new, merged {merged} existing memories')
            return [m for m in stored if m.id in self._memories]

    async def apply_embeddings(self, embedded: Iterable[Memory]) -> int:
        """
        Copy embeddings computed on detached copies onto the live memories.

        Memories deleted or edited since the copy was taken are left alone.
        """
        async with self._lock:
            applied = 0
            for copy in embedded:
                live = self._memories.get(copy.id)
                if live is None or live.content != copy.content or live.context != copy.context:
                    continue
                live.embedding = copy.embedding
                live.embedding_model = copy.embedding_model
                applied += 1
            if applied:
                await self._save_memories()
            return applied

    async def mark_accessed(self, memory_ids: Iterable[str], now: Optional[datetime] = None) -> int:
        """Bump access bookkeeping for memories surfaced by retrieval."""
        now = resolve_now(now)
        async with self._lock:
            touched = 0
            for memory_id in memory_ids:
                memory = self._memories.get(memory_id)
                if memory is None:
                    continue
                memory.access_count += 1
                memory.last_accessed = now
                touched += 1
            if touched:
                await self._save_memories()
            return touched

    async def record_usage(self, memory_ids: Iterable[str], now: Optional[datetime] = None) -> int:
        """Memories that made it into a response: usage counters, a positive interaction and a small feedback boost."""
        now = resolve_now(now)
        async with self._lock:
            used = 0
            for memory_id in memory_ids:
                memory = self._memories.get(memory_id)
                if memory is None:
                    continue
                memory.usage_count += 1
                record_positive_interaction(memory, now)
                memory.feedback_score = memory.feedback_score + self.feedback_config.usage_boost
                refresh_decay_rate(memory, now, self.decay_config)
                used += 1
            if used:
                await self._save_memories()
            return used

    async def apply_feedback(self, memory_id: str, outcome: str, now: Optional[datetime] = None) -> Optional[Memory]:
        """
        Feed a proactive feedback outcome into the decay model.

        engaged counts as a positive interaction and raises the feedback score,
        dismissed counts as negative and lowers it, ignored only counts as negative.

        Returns:
            The updated memory, None if it no longer exists

        Raises:
            ValueError: If the outcome is unknown
        """
        if outcome not in FEEDBACK_OUTCOMES:
            raise ValueError(f'Unknown feedback outcome: {outcome}')
        now = resolve_now(now)

        async with self._lock:
            memory = self._memories.get(memory_id)
            if memory is None:
                return None

            if outcome == ENGAGED:
                record_positive_interaction(memory, now)
                adjust_feedback_score(memory, True, self.feedback_config)
            else:
                record_negative_interaction(memory)
                if outcome == DISMISSED:
                    adjust_feedback_score(memory, False, self.feedback_config)

            refresh_decay_rate(memory, now, self.decay_config)
            await self._save_memories()
            logger.debug(f'Feedback {outcome} on {memory_id}: score {memory.feedback_score:.2f}')
            return memory

    async def edit_memory(self, memory_id: str, updates: Dict[str, Any], now: Optional[datetime] = None) -> Optional[Memory]:
        """
        Apply a user edit. Edited memories are marked user-verified.

        Args:
            memory_id: Memory to edit
            updates: Any of content, context, type, importance, confidence
            now: Time of the edit

        Returns:
            The edited memory, None if it does not exist

        Raises:
            ValueError: If the edit is invalid or would store sensitive content
        """
        now = resolve_now(now)
        async with self._lock:
            memory = self._memories.get(memory_id)
            if memory is None:
                return None

            content = updates.get('content', memory.content)
            context = updates.get('context', memory.context)
            memory_type = updates.get('type', memory.type)
            if not isinstance(content, str) or not content.strip():
                raise ValueError('Memory content must be a non-empty string')
            if memory_type not in MEMORY_TYPES:
                raise ValueError(f'Unknown memory type: {memory_type}')
            if context is not None and not isinstance(context, str):
                raise ValueError('Memory context must be a string')
            if is_sensitive_candidate(content, context):
                raise ValueError('Memory content looks sensitive and cannot be stored')

            if content.strip() != memory.content or (context or None) != memory.context:
                memory.embedding = None
                memory.embedding_model = None
            memory.content = content.strip()
            memory.context = context or None
            memory.type = memory_type
            if 'importance' in updates:
                memory.importance = updates['importance']
            if 'confidence' in updates:
                memory.confidence = updates['confidence']
            memory.user_verified = True
            memory.last_accessed = now

            await self._save_memories()
            logger.info(f'Edited memory {memory_id}')
            return memory

    async def delete_memory(self, memory_id: str) -> bool:
        async with self._lock:
            if self._memories.pop(memory_id, None) is None:
                return False
            await self._save_memories()
            logger.info(f'Deleted memory {memory_id}')
            return True

    async def delete_expired(self, now: Optional[datetime] = None) -> int:
        now = resolve_now(now)
        async with self._lock:
            expired = [m.id for m in self._memories.values() if m.is_expired(now)]
            for memory_id in expired:
                del self._memories[memory_id]
            if expired:
                await self._save_memories()
                logger.info(f'Deleted {len(expired)} expired memories')
            return len(expired)

    async def prune(self, now: Optional[datetime] = None) -> List[str]:
        """Enforce storage limits now. Returns the ids removed."""
        async with self._lock:
            removed = self._prune(resolve_now(now))
            if removed:
                await self._save_memories()
            return removed

    def _prune(self, now: datetime) -> List[str]:
        """
        Drop the least important memories until every limit holds.

        Order of checks: per-type cap, total count (pruning to the target
        fraction once the trigger fraction is reached), then serialized size.
        Callers hold the lock.
        """
        cfg = self.config
        removed: List[str] = []
        scores = {m.id: effective_importance(m, now, self.decay_config) for m in self._memories.values()}

        def drop(victims: Iterable[Memory]) -> None:
            for victim in victims:
                self._memories.pop(victim.id, None)
                removed.append(victim.id)

        for memory_type in MEMORY_TYPES:
            typed = [m for m in self._memories.values() if m.type == memory_type]
            if len(typed) > cfg.max_memories_per_type:
                typed.sort(key=lambda m: scores[m.id])
                drop(typed[:len(typed) - cfg.max_memories_per_type])

        count = len(self._memories)
        if count >= cfg.max_total_memories * cfg.prune_threshold:
            target = int(cfg.max_total_memories * cfg.prune_target)
            ranked = sorted(self._memories.values(), key=lambda m: scores[m.id])
            drop(ranked[:max(0, count - target)])

        sizes = {m.id: memory_size_bytes(m) for m in self._memories.values()}
        total_size = sum(sizes.values())
        if total_size > cfg.max_storage_bytes:
            for memory in sorted(self._memories.values(), key=lambda m: scores[m.id]):
                if total_size <= cfg.max_storage_bytes:
                    break
                total_size -= sizes[memory.id]
                drop([memory])

        if removed:
            logger.info(f'Pruned {len(removed)} memories, {len(self._memories)} remain')
        return removed

    @property
    def summaries(self) -> List[ConversationSummary]:
        return list(self._summaries.values())

    def get_summary(self, conversation_id: str) -> Optional[ConversationSummary]:
        return self._summaries.get(conversation_id)

    async def save_summary(self, summary: ConversationSummary) -> None:
        async with self._lock:
            self._summaries[summary.conversation_id] = summary
            await self._save_summaries()
            logger.info(f'Saved summary for conversation {summary.conversation_id}')

    def stats(self) -> Dict[str, Any]:
        memories = list(self._memories.values())
        by_type = {memory_type: 0 for memory_type in MEMORY_TYPES}
        for memory in memories:
            by_type[memory.type] += 1
        return {
            'total': len(memories),
            'by_type': by_type,
            'oldest_memory': min((m.created_at for m in memories), default=None),
            'newest_memory': max((m.created_at for m in memories), default=None),
            'summaries': len(self._summaries),
        }
