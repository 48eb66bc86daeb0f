"""
Memory Management Service: the request/response surface of the memory engine.

Every public operation returns an OperationResult and is bounded by the
configured request timeout. Nothing raised by storage, the Bedrock clients or a
malformed request escapes this layer.
"""

import asyncio
import copy
import random
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..models.core import MemorySource, OperationResult
from ..models.proactive import FEEDBACK_OUTCOMES, PageContext
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig, config
from ..utils.kv_store import KeyValueStore, StorageError, create_kv_store
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import Deadline, parse_datetime, resolve_now, to_iso
from .embedding import EmbeddingService
from .entity_linking import EntityIndex, detect_page_type, find_related_conversations
from .extraction import (USER, ExtractionRateLimiter, MemoryExtractionService, get_unprocessed_messages,
                         validate_candidate)
from .hybrid_search import HybridRanker
from .memory_store import MemoryStore
from .proactive import ProactiveController
from .retrieval import build_memory_context, retrieve_relevant_memories, select_memories_for_context, url_origin
from .summaries import (ConversationSummaryService, conversation_messages, format_related_conversations_context,
                        should_generate_summary)

logger = get_logger(__name__)

PAGE_TEXT_LIMIT = 1000


class MemoryManagementError(Exception):
    """Custom exception for memory management errors."""
    pass


class MemoryManagementService:
    """Unified service for memory operations: extraction, retrieval, feedback, editing and proactive engagement."""

    def __init__(self,
                 kv_store: Optional[KeyValueStore] = None,
                 llm: Optional[Any] = None,
                 embedder: Optional[Any] = None,
                 rng: Optional[random.Random] = None,
                 app_config: Optional[AppConfig] = None):
        """
        Initialize the memory management service.

        Args:
            kv_store: Persistence backend, built from the storage config if None
            llm: Completion client for extraction and summaries, Bedrock if None
            embedder: Embedding client, Bedrock if None
            rng: Random source for proactive decisions
            app_config: Configuration, global config if None
        """
        self.config = app_config or config
        self.kv_store = kv_store or create_kv_store(self.config.storage)
        self.llm = llm or BedrockLLM(self.config.bedrock_llm)
        self.timeout_seconds = self.config.service.request_timeout_seconds

        self.store = MemoryStore(self.kv_store, self.config.memory, self.config.decay, self.config.feedback)
        self.extraction = MemoryExtractionService(self.llm, self.config.extraction)
        self.rate_limiter = ExtractionRateLimiter(self.config.extraction)
        self.embedding = EmbeddingService(embedder, self.config.bedrock_embed, self.config.extraction.timeout_seconds)
        self.summaries = ConversationSummaryService(self.llm,
                                                    self.embedding.embedder,
                                                    self.config.summary,
                                                    self.config.extraction.timeout_seconds)
        self.proactive = ProactiveController(self.kv_store,
                                            self.config.proactive,
                                            self.config.linking,
                                            rng,
                                            follow_up_config=self.config.follow_up)
        self.ranker = HybridRanker(self.config.retrieval)

        self._last_processed_at: Dict[str, datetime] = {}
        self._initialized = False
        self._init_lock = asyncio.Lock()

        logger.info('Initialized MemoryManagementService')

    async def initialize(self, now: Optional[datetime] = None) -> None:
        """Load persisted state once. Safe to call repeatedly."""
        async with self._init_lock:
            if self._initialized:
                return
            now = resolve_now(now)
            await self.store.load(now)
            await self.store.delete_expired(now)
            await self.proactive.initialize(now)
            self._initialized = True

    async def _run(self,
                   operation: str,
                   work: Callable[[], Awaitable[OperationResult]],
                   now: Optional[datetime] = None) -> OperationResult:
        """Run one operation under the request timeout, converting every failure into an OperationResult."""
        async def guarded() -> OperationResult:
            await self.initialize(now)
            return await work()

        try:
            return await asyncio.wait_for(guarded(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.error(f'{operation} timed out after {self.timeout_seconds}s')
            return OperationResult.fail(f'{operation} timed out', e)
        except StorageError as e:
            logger.error(f'Storage error during {operation}: {e}')
            return OperationResult.fail(f'{operation} failed: storage unavailable', e)
        except (MemoryManagementError, ValueError) as e:
            logger.warning(f'{operation} rejected: {e}')
            return OperationResult.fail(str(e), e)
        except Exception as e:
            logger.error(f'Unexpected error during {operation}: {e}')
            return OperationResult.fail(f'{operation} failed: {e}', e)

    async def _embed_new(self, memories: Sequence[Any], deadline: Optional[Deadline] = None) -> None:
        """Embed detached copies so no live memory is touched across the await."""
        pending = [copy.deepcopy(m) for m in memories if self.embedding.needs_embedding(m)]
        if not pending:
            return
        embedded = await self.embedding.embed_memories(pending, deadline)
        if embedded:
            await self.store.apply_embeddings(embedded)

    async def get_all_memories(self, now: Optional[datetime] = None) -> OperationResult:
        """All unexpired memories."""
        async def op() -> OperationResult:
            memories = self.store.active_memories(now)
            return OperationResult.ok([m.to_dict() for m in memories])

        return await self._run('get_all_memories', op, now)

    async def add_memory(self, memory: Dict[str, Any], now: Optional[datetime] = None) -> OperationResult:
        """
        Store one memory supplied by the caller.

        Args:
            memory: Dict with type, content, importance, confidence and optional
                context, url, conversation_id, message_id, expires_at
            now: Time of storage

        Returns:
            OperationResult with the stored (or merged) memory
        """
        async def op() -> OperationResult:
            candidate = validate_candidate(memory, self.config.extraction)
            if candidate is None:
                raise MemoryManagementError('Invalid memory: needs a known type, content and sufficient confidence')

            stamp = resolve_now(now)
            source = MemorySource(conversation_id=str(memory.get('conversation_id') or 'manual'),
                                  message_id=str(memory.get('message_id') or ''),
                                  timestamp=stamp,
                                  url=memory.get('url') or None)
            stored = await self.store.add_memories([candidate], source, stamp, parse_datetime(memory.get('expires_at')))
            if not stored:
                raise MemoryManagementError('Memory was rejected')

            await self._embed_new(stored)
            return OperationResult.ok(stored[0].to_dict())

        return await self._run('add_memory', op, now)

    async def extract_from_conversation(self,
                                        conversation_id: str,
                                        messages: List[Dict[str, Any]],
                                        url: Optional[str] = None,
                                        force: bool = False,
                                        now: Optional[datetime] = None) -> OperationResult:
        """
        Extract and store memories from a conversation, then summarize it when long enough.

        Args:
            conversation_id: Conversation the messages belong to
            messages: Dicts with role, content and optional id and ts
            url: Page the conversation happened on
            force: Skip the idle delay and rate limits
            now: Time of extraction

        Returns:
            OperationResult with the stored memories and the summary, if one was generated
        """
        # Model calls share what is left of the request timeout, minus room for the final writes
        deadline = Deadline(self.timeout_seconds - self.config.service.deadline_margin_seconds)

        async def op() -> OperationResult:
            stamp = resolve_now(now)
            user_times = [parse_datetime(m.get('ts')) for m in messages if m.get('role') == USER]
            user_times = [t for t in user_times if t is not None]
            last_user_at = max(user_times) if user_times else None

            if not force and not self.rate_limiter.can_extract(last_user_at, stamp):
                return OperationResult.ok({'memories': [], 'summary': None}, message='Extraction deferred')

            window = get_unprocessed_messages(messages, self._last_processed_at.get(conversation_id))
            window = window[-self.config.extraction.batch_size:]
            result = await self.extraction.extract(window, self.store.active_memories(stamp), deadline)
            self.rate_limiter.record(stamp)
            if not result.success:
                return OperationResult.fail(result.error or 'Extraction failed')
            if window:
                self._last_processed_at[conversation_id] = stamp

            last_message_id = next((str(m.get('id')) for m in reversed(window) if m.get('id')), '')
            source = MemorySource(conversation_id=conversation_id, message_id=last_message_id, timestamp=stamp, url=url)
            stored = await self.store.add_memories(result.memories, source, stamp)
            await self._embed_new(stored, deadline)

            summary = None
            if should_generate_summary(len(conversation_messages(messages)),
                                       self.store.get_summary(conversation_id) is not None,
                                       self.config.summary):
                if deadline.expired:
                    # No summary is stored, so the next extraction for this conversation retries it
                    logger.warning(f'Skipping summary for conversation {conversation_id}: request deadline reached')
                else:
                    summary = await self.summaries.generate(conversation_id,
                                                            messages,
                                                            memory_ids=[m.id for m in stored],
                                                            url=url,
                                                            ended_at=stamp,
                                                            now=stamp,
                                                            deadline=deadline)
                if summary is not None:
                    await self.store.save_summary(summary)

            return OperationResult.ok({
                'memories': [m.to_dict() for m in stored],
                'summary': summary.to_dict() if summary else None
            })

        return await self._run('extract_from_conversation', op, now)

    async def get_proactive_action(self,
                                   context: Optional[Dict[str, Any]] = None,
                                   is_session_start: bool = False,
                                   now: Optional[datetime] = None) -> OperationResult:
        """
        Ask whether the companion should say something unprompted right now.

        Args:
            context: Page the user is on (url, origin, title, main_content, page_type, topics)
            is_session_start: Whether this moment opens a session
            now: Evaluation time

        Returns:
            OperationResult whose data is the action dict, or None when nothing should be said
        """
        async def op() -> OperationResult:
            stamp = resolve_now(now)
            page = PageContext.from_dict(context) if context else None
            if page is not None and page.page_type is None and page.url:
                page.page_type = detect_page_type(page.url, page.title)

            query_embedding = None
            if page is not None and self.proactive.can_be_proactive(stamp):
                page_text = f'{page.title} {page.main_content or ""}'.strip()[:PAGE_TEXT_LIMIT]
                query_embedding = await self.embedding.embed_query(page_text)

            action = await self.proactive.get_proactive_action(self.store.active_memories(stamp),
                                                               context=page,
                                                               is_session_start=is_session_start,
                                                               now=stamp,
                                                               query_embedding=query_embedding,
                                                               embedding_model=self.embedding.model_version)
            return OperationResult.ok(action.to_dict() if action else None)

        return await self._run('get_proactive_action', op, now)

    async def record_feedback(self, memory_id: str, outcome: str, now: Optional[datetime] = None) -> OperationResult:
        """
        Record the user's reaction to a proactive message about a memory.

        Updates the proactive history and cooldowns, and feeds the memory's
        interaction counters and feedback score.
        """
        async def op() -> OperationResult:
            if outcome not in FEEDBACK_OUTCOMES:
                raise MemoryManagementError(f'Unknown feedback outcome: {outcome}')
            stamp = resolve_now(now)
            entry = await self.proactive.record_feedback(memory_id, outcome, stamp)
            memory = await self.store.apply_feedback(memory_id, outcome, stamp)
            return OperationResult.ok({
                'memory': memory.to_dict() if memory else None,
                'history_entry': entry.to_dict() if entry else None,
                'cooldown_until': to_iso(self.proactive.cooldown_expiry(memory_id))
            })

        return await self._run('record_feedback', op, now)

    async def search_memories(self,
                              query: str,
                              limit: Optional[int] = None,
                              url: Optional[str] = None,
                              scope_to_site: bool = False,
                              now: Optional[datetime] = None) -> OperationResult:
        """
        Memories relevant to a chat turn, plus the prompt block built from those that fit the token budget.

        Args:
            query: Current user message
            limit: Maximum memories (config default if None)
            url: Page the chat happens on
            scope_to_site: Keep only memories learned on this site (identity and preference always pass)
            now: Evaluation time
        """
        async def op() -> OperationResult:
            stamp = resolve_now(now)
            query_embedding = await self.embedding.embed_query(query)
            relevant = retrieve_relevant_memories(self.store.active_memories(stamp),
                                                  query_text=query,
                                                  query_embedding=query_embedding,
                                                  site_origin=url_origin(url),
                                                  scope_to_site=scope_to_site,
                                                  limit=limit,
                                                  embedding_model=self.embedding.model_version,
                                                  ranker=self.ranker,
                                                  now=stamp,
                                                  retrieval_config=self.config.retrieval)
            selected = select_memories_for_context(relevant, self.config.retrieval.max_context_tokens)
            await self.store.mark_accessed([m.id for m in relevant], stamp)
            return OperationResult.ok({
                'memories': [m.to_dict() for m in relevant],
                'context': build_memory_context(selected)
            })

        return await self._run('search_memories', op, now)

    async def record_memory_usage(self, memory_ids: List[str], now: Optional[datetime] = None) -> OperationResult:
        """Mark memories as used in a response."""
        async def op() -> OperationResult:
            used = await self.store.record_usage(memory_ids, now)
            return OperationResult.ok({'updated': used})

        return await self._run('record_memory_usage', op, now)

    async def delete_memory(self, memory_id: str, now: Optional[datetime] = None) -> OperationResult:
        async def op() -> OperationResult:
            if not await self.store.delete_memory(memory_id):
                raise MemoryManagementError(f'Memory not found: {memory_id}')
            return OperationResult.ok({'deleted': memory_id})

        return await self._run('delete_memory', op, now)

    async def edit_memory(self, memory_id: str, updates: Dict[str, Any], now: Optional[datetime] = None) -> OperationResult:
        """Apply a user edit; the memory becomes user-verified and is re-embedded if its text changed."""
        async def op() -> OperationResult:
            memory = await self.store.edit_memory(memory_id, updates, now)
            if memory is None:
                raise MemoryManagementError(f'Memory not found: {memory_id}')
            await self._embed_new([memory])
            return OperationResult.ok(memory.to_dict())

        return await self._run('edit_memory', op, now)

    async def get_related_conversations(self,
                                        query: Optional[str] = None,
                                        url: Optional[str] = None,
                                        topics: Optional[List[str]] = None,
                                        memory_ids: Optional[List[str]] = None,
                                        now: Optional[datetime] = None) -> OperationResult:
        """
        Past conversations related to the current one.

        Args:
            query: Current query or conversation text
            url: Page of the current conversation
            topics: Topics of the current conversation
            memory_ids: Memories involved in the current conversation
            now: Evaluation time

        Returns:
            OperationResult with the related conversations and a prompt block describing them
        """
        async def op() -> OperationResult:
            summaries = self.store.summaries
            if not summaries:
                return OperationResult.ok({'conversations': [], 'context': ''})

            current = [m for m in (self.store.get(i) for i in memory_ids or []) if m is not None]
            query_embedding = await self.embedding.embed_query(query) if query else None
            related = find_related_conversations(summaries,
                                                 current_memories=current,
                                                 current_topics=topics,
                                                 query_embedding=query_embedding,
                                                 query_text=query,
                                                 origin=url_origin(url),
                                                 linking_config=self.config.linking)
            return OperationResult.ok({
                'conversations': [r.to_dict() for r in related],
                'context': format_related_conversations_context(related)
            })

        return await self._run('get_related_conversations', op, now)

    async def get_related_memories(self, memory_id: str, limit: Optional[int] = None,
                                   now: Optional[datetime] = None) -> OperationResult:
        """Memories sharing entities (people, projects, skills, technologies) with the given one."""
        async def op() -> OperationResult:
            if self.store.get(memory_id) is None:
                raise MemoryManagementError(f'Memory not found: {memory_id}')
            memories = self.store.active_memories(now)
            index = EntityIndex.build(memories, now, self.config.linking)
            related = index.find_related_memories(memory_id, {m.id: m for m in memories}, limit)
            return OperationResult.ok([{
                'memory': r.memory.to_dict(),
                'relevance_score': r.relevance_score,
                'shared_entities': [link.display_name for link in r.shared_entities]
            } for r in related])

        return await self._run('get_related_memories', op, now)

    async def get_proactive_history(self, now: Optional[datetime] = None) -> OperationResult:
        async def op() -> OperationResult:
            return OperationResult.ok([entry.to_dict() for entry in self.proactive.get_history()])

        return await self._run('get_proactive_history', op, now)

    async def get_stats(self, now: Optional[datetime] = None) -> OperationResult:
        async def op() -> OperationResult:
            stats = self.store.stats()
            stats['oldest_memory'] = to_iso(stats['oldest_memory'])
            stats['newest_memory'] = to_iso(stats['newest_memory'])
            return OperationResult.ok(stats)

        return await self._run('get_stats', op, now)

    async def end_session(self, now: Optional[datetime] = None) -> OperationResult:
        """Close the session so the next one can be greeted according to the absence."""
        async def op() -> OperationResult:
            await self.proactive.end_session(now)
            return OperationResult.ok()

        return await self._run('end_session', op, now)
