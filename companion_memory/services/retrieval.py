"""
Prompt-side retrieval: pick the memories worth injecting into a chat turn and
format them for a system prompt.
"""

import math
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from ..models.core import IDENTITY, MEMORY_TYPES, PREFERENCE, Memory
from ..utils.config import RetrievalConfig, config
from ..utils.timestamp_utils import hours_between, resolve_now
from .decay import calculate_decayed_importance, effective_importance
from .hybrid_search import HybridRanker

# Personal facts that apply on every site
CROSS_SITE_TYPES = (IDENTITY, PREFERENCE)

TYPE_RELEVANCE = {
    'identity': 0.1,
    'preference': 0.08,
    'skill': 0.08,
    'project': 0.08,
    'person': 0.06,
    'event': 0.04,
    'opinion': 0.04,
}

TYPE_LABELS = {
    'identity': 'About them',
    'skill': 'Their skills',
    'project': 'Their projects',
    'preference': 'Their preferences',
    'person': 'People they know',
    'event': 'Recent events',
    'opinion': 'Their views',
}

TYPE_ORDER = ('identity', 'skill', 'project', 'preference', 'person', 'event', 'opinion')

CHARS_PER_TOKEN = 4
RECENCY_HALF_WINDOW_HOURS = 48.0


def url_origin(url: Optional[str]) -> Optional[str]:
    """scheme://host[:port] of a URL, None when it has no scheme or host."""
    if not url:
        return None
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return None
    return f'{parts.scheme}://{parts.netloc}'


def relevance_score(memory: Memory, hybrid_score: float, now: datetime) -> float:
    """Blend of effective importance, confidence, access recency, query match and type prior."""
    score = effective_importance(memory, now) * 0.2
    score += memory.confidence * 0.1
    hours_since_access = max(0.0, hours_between(memory.last_accessed, now))
    score += math.exp(-hours_since_access / RECENCY_HALF_WINDOW_HOURS) * 0.1
    score += hybrid_score * 0.5
    score += TYPE_RELEVANCE.get(memory.type, 0.0)
    return min(score, 1.0)


def retrieve_relevant_memories(memories: Sequence[Memory],
                               query_text: str = '',
                               query_embedding: Optional[Sequence[float]] = None,
                               types: Optional[Sequence[str]] = None,
                               site_origin: Optional[str] = None,
                               scope_to_site: bool = False,
                               limit: Optional[int] = None,
                               apply_decay: bool = True,
                               embedding_model: Optional[str] = None,
                               ranker: Optional[HybridRanker] = None,
                               now: Optional[datetime] = None,
                               retrieval_config: Optional[RetrievalConfig] = None) -> List[Memory]:
    """
    Select memories relevant to the current chat turn.

    Args:
        memories: All stored memories
        query_text: Current user message
        query_embedding: Optional embedding of the user message
        types: Restrict to these memory types
        site_origin: Origin of the page the chat happens on
        scope_to_site: Keep only memories learned on site_origin (identity and preference always pass)
        limit: Maximum memories to return
        apply_decay: Filter on decayed importance rather than static importance
        embedding_model: Active embedding model tag
        ranker: Shared ranker so the keyword index is reused across turns
        now: Evaluation time
        retrieval_config: Retrieval thresholds, uses global config if None

    Returns:
        Memories sorted by relevance, most relevant first
    """
    cfg = retrieval_config or config.retrieval
    now = resolve_now(now)
    limit = cfg.max_memories if limit is None else limit
    ranker = ranker or HybridRanker(cfg)

    candidates = [m for m in memories if m.type in (types or MEMORY_TYPES)]

    if scope_to_site and site_origin:
        candidates = [
            m for m in candidates if m.type in CROSS_SITE_TYPES or url_origin(m.source.url) == site_origin
        ]

    candidates = [m for m in candidates if m.confidence >= cfg.min_confidence]
    candidates = [
        m for m in candidates
        if (calculate_decayed_importance(m, now) if apply_decay else m.importance) >= cfg.min_importance
    ]
    if not candidates:
        return []

    hybrid_scores: Dict[str, float] = {}
    if query_text:
        ranked = ranker.rank(query_text,
                             candidates,
                             query_embedding=query_embedding,
                             limit=len(candidates),
                             min_score=0.0,
                             embedding_model=embedding_model)
        hybrid_scores = {result.memory.id: result.score for result in ranked}

    scored = [(relevance_score(m, hybrid_scores.get(m.id, 0.0), now), m) for m in candidates]
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [memory for _, memory in scored[:limit]]


def build_memory_context(memories: Sequence[Memory]) -> str:
    """Group memories by type into a natural-language block for the system prompt."""
    if not memories:
        return ''

    grouped: Dict[str, List[Memory]] = {}
    for memory in memories:
        grouped.setdefault(memory.type, []).append(memory)

    sections = []
    for memory_type in TYPE_ORDER:
        typed = grouped.get(memory_type)
        if not typed:
            continue
        items = '\n'.join(f'- {m.content}' for m in typed)
        sections.append(f'{TYPE_LABELS[memory_type]}:\n{items}')

    return 'What I remember about this person:\n\n' + '\n\n'.join(sections)


def estimate_token_count(memories: Sequence[Memory]) -> int:
    text = ' '.join(m.content + (m.context or '') for m in memories)
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def select_memories_for_context(memories: Sequence[Memory], max_tokens: Optional[int] = None) -> List[Memory]:
    """Longest relevance-ordered prefix that fits the token budget."""
    max_tokens = config.retrieval.max_context_tokens if max_tokens is None else max_tokens
    selected = []
    used = 0
    for memory in memories:
        cost = estimate_token_count([memory])
        if used + cost > max_tokens:
            break
        selected.append(memory)
        used += cost
    return selected


def get_memories_for_prompt(memories: Sequence[Memory],
                            query_text: str,
                            query_embedding: Optional[Sequence[float]] = None,
                            max_tokens: Optional[int] = None,
                            ranker: Optional[HybridRanker] = None,
                            now: Optional[datetime] = None) -> Tuple[List[Memory], str]:
    """Relevant memories within the token budget and their formatted prompt block."""
    relevant = retrieve_relevant_memories(memories,
                                          query_text=query_text,
                                          query_embedding=query_embedding,
                                          ranker=ranker,
                                          now=now)
    selected = select_memories_for_context(relevant, max_tokens)
    return selected, build_memory_context(selected)
