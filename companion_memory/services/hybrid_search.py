"""
Hybrid retrieval ranking: cosine similarity fused with weighted keyword overlap.
"""

import hashlib
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from ..models.core import Memory
from ..utils.config import RetrievalConfig, config
from ..utils.logging_config import get_logger
from ..utils.vector_utils import comparable, cosine_similarity
from .keywords import KeywordIndex, extract_keywords, memory_text, weighted_keyword_score

logger = get_logger(__name__)


@dataclass
class RankedMemory:
    """A memory scored against a query."""
    memory: Memory
    score: float
    semantic_score: float
    keyword_score: float

    def to_dict(self) -> Dict:
        return {
            'memory': self.memory.to_dict(),
            'score': self.score,
            'semantic_score': self.semantic_score,
            'keyword_score': self.keyword_score,
        }


def has_usable_embedding(memory: Memory,
                         query_embedding: Optional[Sequence[float]],
                         embedding_model: Optional[str] = None) -> bool:
    """Both vectors exist, share a dimension, and the memory was embedded by the active model."""
    if not comparable(query_embedding, memory.embedding):
        return False
    return embedding_model is None or memory.embedding_model == embedding_model


def _sort_key(result: RankedMemory) -> Tuple[float, int, float]:
    return (result.score, result.memory.access_count, result.memory.last_accessed.timestamp())


def score_memory(memory: Memory,
                 query_keywords: Sequence[str],
                 memory_keywords: Sequence[str],
                 index: KeywordIndex,
                 query_embedding: Optional[Sequence[float]] = None,
                 semantic_weight: float = 0.6,
                 keyword_weight: float = 0.4,
                 embedding_model: Optional[str] = None) -> RankedMemory:
    """Score one memory; falls back to keyword-only when no usable embedding pair exists."""
    keyword_score = weighted_keyword_score(query_keywords, memory_keywords, index)

    if has_usable_embedding(memory, query_embedding, embedding_model):
        semantic_score = cosine_similarity(query_embedding, memory.embedding)
        score = semantic_score * semantic_weight + keyword_score * keyword_weight
    else:
        semantic_score = 0.0
        score = keyword_score

    return RankedMemory(memory=memory, score=score, semantic_score=semantic_score, keyword_score=keyword_score)


def rank_memories(query_text: str,
                  memories: Sequence[Memory],
                  query_embedding: Optional[Sequence[float]] = None,
                  limit: Optional[int] = None,
                  min_score: Optional[float] = None,
                  semantic_weight: Optional[float] = None,
                  keyword_weight: Optional[float] = None,
                  embedding_model: Optional[str] = None,
                  retrieval_config: Optional[RetrievalConfig] = None) -> List[RankedMemory]:
    """
    Rank memories against a query without any cached state.

    Args:
        query_text: Query text to extract keywords from
        memories: Candidate memories
        query_embedding: Optional query vector
        limit: Maximum results (config default if None)
        min_score: Minimum fused score to keep (config default if None)
        semantic_weight: Weight of cosine similarity when available
        keyword_weight: Weight of keyword score when semantic is available
        embedding_model: Active embedding model tag, memories embedded by another model are keyword-only
        retrieval_config: Retrieval defaults, uses global config if None

    Returns:
        Results sorted by score, then access count, then recency
    """
    return HybridRanker(retrieval_config).rank(query_text,
                                               memories,
                                               query_embedding=query_embedding,
                                               limit=limit,
                                               min_score=min_score,
                                               semantic_weight=semantic_weight,
                                               keyword_weight=keyword_weight,
                                               embedding_model=embedding_model)


class HybridRanker:
    """Ranks memories against queries, reusing the keyword index while the candidate set is unchanged."""

    def __init__(self, retrieval_config: Optional[RetrievalConfig] = None):
        self.config = retrieval_config or config.retrieval
        self._fingerprint: Optional[str] = None
        self._index = KeywordIndex()
        self._memory_keywords: Dict[str, List[str]] = {}

    @staticmethod
    def fingerprint(memories: Sequence[Memory]) -> str:
        """Digest of the id and indexed text of every candidate."""
        digest = hashlib.sha1()
        for memory in memories:
            digest.update(memory.id.encode('utf-8'))
            digest.update(b'\x00')
            digest.update(memory_text(memory.content, memory.context).encode('utf-8'))
            digest.update(b'\x01')
        return digest.hexdigest()

    def _ensure_index(self, memories: Sequence[Memory]) -> None:
        fingerprint = self.fingerprint(memories)
        if fingerprint == self._fingerprint:
            return

        self._memory_keywords = {
            memory.id: extract_keywords(memory_text(memory.content, memory.context))
            for memory in memories
        }
        self._index = KeywordIndex.build(self._memory_keywords.values())
        self._fingerprint = fingerprint
        logger.debug(f'Rebuilt keyword index over {len(memories)} memories')

    @property
    def index(self) -> KeywordIndex:
        return self._index

    def rank(self,
             query_text: str,
             memories: Sequence[Memory],
             query_embedding: Optional[Sequence[float]] = None,
             limit: Optional[int] = None,
             min_score: Optional[float] = None,
             semantic_weight: Optional[float] = None,
             keyword_weight: Optional[float] = None,
             embedding_model: Optional[str] = None) -> List[RankedMemory]:
        """Score, filter and sort candidates. See rank_memories for argument details."""
        limit = self.config.limit if limit is None else limit
        min_score = self.config.min_score if min_score is None else min_score
        semantic_weight = self.config.semantic_weight if semantic_weight is None else semantic_weight
        keyword_weight = self.config.keyword_weight if keyword_weight is None else keyword_weight

        if not memories or limit <= 0:
            return []

        self._ensure_index(memories)
        query_keywords = extract_keywords(query_text or '')

        results = []
        for memory in memories:
            result = score_memory(memory,
                                  query_keywords,
                                  self._memory_keywords.get(memory.id, []),
                                  self._index,
                                  query_embedding=query_embedding,
                                  semantic_weight=semantic_weight,
                                  keyword_weight=keyword_weight,
                                  embedding_model=embedding_model)
            if result.score >= min_score:
                results.append(result)

        results.sort(key=_sort_key, reverse=True)
        return results[:limit]
