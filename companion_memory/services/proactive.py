"""
Proactive engagement: decides when the companion speaks unprompted and what
it says, under global and per-memory cooldowns.
"""

import math
import random
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from ..models.core import IDENTITY, Memory
from ..models.proactive import (DISMISSED, ENGAGED, FEEDBACK_OUTCOMES, IGNORED, ContextMatchAction, FollowUpAction,
                                PageContext, ProactiveAction, ProactiveHistoryEntry, ProactiveState, RandomRecallAction,
                                WelcomeBackAction)
from ..utils.config import FollowUpConfig, LinkingConfig, ProactiveConfig, config
from ..utils.kv_store import KeyValueStore, StorageError
from ..utils.logging_config import get_logger, preview
from ..utils.timestamp_utils import days_between, hours_between, resolve_now
from .entity_linking import find_context_matches
from .follow_up import FollowUpCandidate, extract_subject, get_follow_up_candidates, is_on_cooldown

logger = get_logger(__name__)

STATE_KEY = 'proactive-state'

RECALL_TEMPLATES = {
    'project': ["How's {content} coming along?", 'Any updates on {content}?', 'Still working on {content}?'],
    'skill': ["How's learning {content} going?", 'Getting better at {content}?', 'Still practicing {content}?'],
    'person': ["How's {content} doing?", 'Heard from {content} lately?'],
    'preference': ['Still into {content}?'],
    'opinion': ['Still feel that way about {content}?'],
    'event': ['Remember {content}?'],
}
DEFAULT_RECALL_TEMPLATES = ['Thinking about {content}...']


class ProactiveController:
    """
    Owns proactive state and produces at most one action per eligible moment.

    State is loaded from and saved to the injected key/value store. The
    decision step records the emitted action before awaiting persistence, so a
    second call inside the cooldown sees the updated state and returns None.
    """

    def __init__(self,
                 kv_store: KeyValueStore,
                 proactive_config: Optional[ProactiveConfig] = None,
                 linking_config: Optional[LinkingConfig] = None,
                 rng: Optional[random.Random] = None,
                 state_key: str = STATE_KEY,
                 follow_up_config: Optional[FollowUpConfig] = None):
        """
        Initialize proactive controller.

        Args:
            kv_store: Persistence for the proactive state
            proactive_config: Cooldowns and feature switches, uses global config if None
            linking_config: Context matching thresholds, uses global config if None
            rng: Random source for recall draws and template choice
            state_key: Key the state is stored under
            follow_up_config: Follow-up rule thresholds, uses global config if None
        """
        self.kv_store = kv_store
        self.config = proactive_config or config.proactive
        self.linking_config = linking_config or config.linking
        self.follow_up_config = follow_up_config or config.follow_up
        self.rng = rng or random.Random()
        self.state_key = state_key
        self.state = ProactiveState()
        self.loaded = False

    async def initialize(self, now: Optional[datetime] = None) -> None:
        """Load persisted state, drop expired cooldowns and start a session."""
        now = resolve_now(now)
        try:
            raw = await self.kv_store.get(self.state_key)
        except StorageError as e:
            logger.warning(f'Failed to load proactive state, starting fresh: {e}')
            raw = None

        try:
            self.state = ProactiveState.from_dict(raw, self.config.history_limit)
        except (TypeError, ValueError, OverflowError) as e:
            logger.warning(f'Corrupt proactive state, starting fresh: {e!r}')
            self.state = ProactiveState()
        self.prune_expired_cooldowns(now)
        self.start_session(now)
        self.loaded = True
        logger.info(f'Proactive state loaded ({len(self.state.memory_cooldowns)} cooldowns, '
                    f'{len(self.state.history)} history entries)')

    async def save(self) -> None:
        try:
            await self.kv_store.set(self.state_key, self.state.to_dict(self.config.history_limit))
        except StorageError as e:
            logger.warning(f'Failed to save proactive state: {e}')

    def start_session(self, now: Optional[datetime] = None) -> None:
        self.state.session_count = 0
        self.state.session_started_at = resolve_now(now)

    async def end_session(self, now: Optional[datetime] = None) -> None:
        """Remember when the session ended so the next one can greet accordingly."""
        self.state.last_session_ended_at = resolve_now(now)
        await self.save()

    def prune_expired_cooldowns(self, now: Optional[datetime] = None) -> None:
        now = resolve_now(now)
        self.state.memory_cooldowns = {
            memory_id: expiry for memory_id, expiry in self.state.memory_cooldowns.items() if expiry > now
        }

    def can_be_proactive(self, now: Optional[datetime] = None) -> bool:
        """Global gate: enabled, loaded, outside the cooldown and under the session cap."""
        if not self.config.enabled or not self.loaded:
            return False

        now = resolve_now(now)
        last = self.state.last_proactive_at
        if last is not None and (now - last) < timedelta(minutes=self.config.cooldown_minutes):
            return False
        return self.state.session_count < self.config.max_per_session

    async def get_proactive_action(self,
                                   memories: Sequence[Memory],
                                   context: Optional[PageContext] = None,
                                   is_session_start: bool = False,
                                   now: Optional[datetime] = None,
                                   query_embedding: Optional[Sequence[float]] = None,
                                   embedding_model: Optional[str] = None) -> Optional[ProactiveAction]:
        """
        Pick the proactive action for this moment, if any, and record it.

        Candidate sources are tried in order and the first to produce an action
        wins: welcome-back (session start only), follow-up, context match,
        random recall.

        Args:
            memories: Current memories
            context: Page the user is on, enables context matching
            is_session_start: Whether this moment opens a session
            now: Evaluation time
            query_embedding: Optional embedding of the page text for semantic context matching
            embedding_model: Active embedding model tag

        Returns:
            The emitted action, or None when suppressed or nothing qualifies
        """
        now = resolve_now(now)
        if not self.can_be_proactive(now):
            return None

        cooldowns = dict(self.state.memory_cooldowns)
        sources: List[Callable[[], Optional[ProactiveAction]]] = []
        if is_session_start and self.config.welcome_back_enabled:
            sources.append(lambda: self._welcome_back(memories, cooldowns, now))
        if self.config.follow_up_enabled:
            sources.append(lambda: self._follow_up(memories, cooldowns, now))
        if self.config.context_match_enabled and context is not None:
            sources.append(lambda: self._context_match(context, memories, cooldowns, now, query_embedding,
                                                       embedding_model))
        if self.config.random_recall_enabled:
            sources.append(lambda: self._random_recall(memories, cooldowns, now))

        action = next((a for a in (source() for source in sources) if a is not None), None)
        if action is None:
            return None

        self._record(action, now)
        await self.save()
        logger.info(f'Proactive {action.type}: {preview(action.message, 60)}')
        return action

    def _welcome_back(self, memories: Sequence[Memory], cooldowns: Dict[str, datetime],
                      now: datetime) -> Optional[WelcomeBackAction]:
        ended = self.state.last_session_ended_at
        if ended is None:
            return None

        absence_days = math.floor(days_between(ended, now))
        if absence_days < self.config.short_absence_days:
            return None

        top: Optional[FollowUpCandidate] = None
        if absence_days >= self.config.medium_absence_days:
            candidates = get_follow_up_candidates(memories, cooldowns, now, self.rng, self.follow_up_config)
            top = candidates[0] if candidates else None

        if absence_days >= self.config.extended_absence_days:
            message = f"It's been a while! {top.suggested_question}" if top else 'Hey, long time no see!'
        elif absence_days >= self.config.long_absence_days:
            message = f'Welcome back! By the way, {top.suggested_question.lower()}' if top else 'Welcome back!'
        elif absence_days >= self.config.medium_absence_days:
            message = f'Hey again! {top.suggested_question}' if top else 'Hey, good to see you!'
        else:
            message = 'Hey!'

        return WelcomeBackAction(message=message, memory=top.memory if top else None, absence_days=absence_days)

    def _follow_up(self, memories: Sequence[Memory], cooldowns: Dict[str, datetime],
                   now: datetime) -> Optional[FollowUpAction]:
        candidates = get_follow_up_candidates(memories, cooldowns, now, self.rng, self.follow_up_config)
        if not candidates:
            return None
        top = candidates[0]
        return FollowUpAction(message=top.suggested_question, memory=top.memory, reason=top.reason)

    def _context_match(self, context: PageContext, memories: Sequence[Memory], cooldowns: Dict[str, datetime],
                       now: datetime, query_embedding: Optional[Sequence[float]],
                       embedding_model: Optional[str]) -> Optional[ContextMatchAction]:
        matches = find_context_matches(context,
                                       memories,
                                       cooldowns,
                                       now,
                                       query_embedding=query_embedding,
                                       embedding_model=embedding_model,
                                       linking_config=self.linking_config)
        if not matches or matches[0].relevance <= self.config.context_match_threshold:
            return None
        top = matches[0]
        return ContextMatchAction(message=f'Hey, {top.explanations[0]}!',
                                  memory=top.memory,
                                  match_type=top.match_type,
                                  relevance=top.relevance)

    def recall_probability(self, now: datetime) -> float:
        last = self.state.last_proactive_at
        if last is None:
            return self.config.recall_max_probability
        hours = max(0.0, hours_between(last, now))
        return min(self.config.recall_base_probability + hours * self.config.recall_probability_per_hour,
                   self.config.recall_max_probability)

    def recall_weight(self, memory: Memory, now: datetime) -> float:
        """Importance, confidence, time since access and past engagement, blended."""
        recency = min(max(0.0, days_between(memory.last_accessed, now)) / self.config.recall_recency_days, 1.0)
        engagement = min(memory.access_count * 0.1, 0.5)
        return memory.importance * 0.5 + memory.confidence * 0.2 + recency * 0.2 + engagement * 0.1

    def _random_recall(self, memories: Sequence[Memory], cooldowns: Dict[str, datetime],
                       now: datetime) -> Optional[RandomRecallAction]:
        if self.rng.random() > self.recall_probability(now):
            return None

        eligible = [
            m for m in memories if m.type != IDENTITY and m.importance >= self.config.recall_min_importance and
            m.confidence >= self.config.recall_min_confidence and not is_on_cooldown(m.id, cooldowns, now)
        ]
        if not eligible:
            return None

        weights = [self.recall_weight(m, now) for m in eligible]
        total = sum(weights)
        if total <= 0:
            return None

        # Cumulative-weight draw; float drift falls through to the last memory
        draw = self.rng.random() * total
        chosen = eligible[-1]
        for memory, weight in zip(eligible, weights):
            draw -= weight
            if draw <= 0:
                chosen = memory
                break

        template = self.rng.choice(RECALL_TEMPLATES.get(chosen.type, DEFAULT_RECALL_TEMPLATES))
        return RandomRecallAction(message=template.replace('{content}', extract_subject(chosen.content)),
                                  memory=chosen)

    def _record(self, action: ProactiveAction, now: datetime) -> None:
        """Bookkeeping for an emitted action. Synchronous so no other decision can interleave."""
        self.state.last_proactive_at = now
        self.state.session_count += 1
        if action.memory is not None:
            self.state.memory_cooldowns[action.memory.id] = now + timedelta(hours=self.config.memory_cooldown_hours)

        self.state.history.append(ProactiveHistoryEntry(id=str(uuid.uuid4()),
                                                        type=action.type,
                                                        message=action.message,
                                                        memory_id=action.memory.id if action.memory else None,
                                                        timestamp=now,
                                                        engaged=None))
        self.state.history = self.state.history[-self.config.history_limit:]

    async def record_feedback(self, memory_id: str, outcome: str,
                              now: Optional[datetime] = None) -> Optional[ProactiveHistoryEntry]:
        """
        Apply the user's reaction to a proactive message about a memory.

        Args:
            memory_id: Memory the message was about
            outcome: engaged, dismissed or ignored
            now: Time of the reaction

        Returns:
            The history entry that was resolved, None if no pending entry existed

        Raises:
            ValueError: If the outcome is unknown
        """
        if outcome not in FEEDBACK_OUTCOMES:
            raise ValueError(f'Unknown feedback outcome: {outcome}')
        now = resolve_now(now)

        entry = next((h for h in reversed(self.state.history) if h.memory_id == memory_id and h.engaged is None), None)
        if entry is not None:
            entry.engaged = outcome == ENGAGED

        if outcome == DISMISSED:
            self.state.memory_cooldowns[memory_id] = now + timedelta(hours=self.config.dismissed_cooldown_hours)
        elif outcome == IGNORED:
            self.state.memory_cooldowns[memory_id] = now + timedelta(hours=self.config.ignored_cooldown_hours)

        await self.save()
        return entry

    def cooldown_expiry(self, memory_id: str) -> Optional[datetime]:
        return self.state.memory_cooldowns.get(memory_id)

    def get_history(self) -> List[ProactiveHistoryEntry]:
        """History, newest first."""
        return list(reversed(self.state.history))

    async def clear_history(self) -> None:
        self.state.history = []
        await self.save()
