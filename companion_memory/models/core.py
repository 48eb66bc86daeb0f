"""
Core data models for the companion memory system.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..utils.timestamp_utils import parse_datetime, to_iso, to_naive_utc, utc_now

IDENTITY = 'identity'
PREFERENCE = 'preference'
SKILL = 'skill'
PROJECT = 'project'
PERSON = 'person'
EVENT = 'event'
OPINION = 'opinion'

MEMORY_TYPES = (IDENTITY, PREFERENCE, SKILL, PROJECT, PERSON, EVENT, OPINION)

# Days for importance to halve, per memory type
MEMORY_HALF_LIFE_DAYS = {
    IDENTITY: math.inf,
    PREFERENCE: 90.0,
    SKILL: 60.0,
    PROJECT: 30.0,
    PERSON: 60.0,
    EVENT: 7.0,
    OPINION: 14.0,
}

ENTITY_TYPES = ('person', 'project', 'skill', 'technology')

# Closed intervals enforced on every write to a Memory attribute
_CLAMPED_FIELDS = {
    'importance': (0.0, 1.0),
    'confidence': (0.0, 1.0),
    'feedback_score': (-1.0, 1.0),
    'adaptive_decay_rate': (0.5, 2.0),
}


def clamp(value: float, low: float, high: float) -> float:
    """Clamp value into [low, high]; NaN collapses to low."""
    if value != value:
        return low
    return max(low, min(high, value))


def _to_float(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if result != result or result in (math.inf, -math.inf):
        return default
    return result


def _to_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        return max(0, int(value))
    except (TypeError, ValueError, OverflowError):
        return default


def _to_vector(value: Any) -> Optional[List[float]]:
    if not isinstance(value, list) or not value:
        return None
    try:
        return [float(x) for x in value]
    except (TypeError, ValueError):
        return None


@dataclass
class MemorySource:
    """Where a memory was learned."""
    conversation_id: str
    message_id: str
    timestamp: datetime
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'conversation_id': self.conversation_id,
            'message_id': self.message_id,
            'url': self.url,
            'timestamp': to_iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Any, fallback_time: datetime) -> 'MemorySource':
        if not isinstance(data, dict):
            data = {}
        url = data.get('url')
        return cls(conversation_id=str(data.get('conversation_id') or ''),
                   message_id=str(data.get('message_id') or ''),
                   timestamp=parse_datetime(data.get('timestamp'), fallback_time),
                   url=url if isinstance(url, str) and url else None)


@dataclass
class Memory:
    """A single remembered fact about the user.

    importance, confidence, feedback_score and adaptive_decay_rate are clamped
    to their ranges whenever they are assigned, including at construction.
    Datetime fields are kept as naive UTC.
    """
    id: str
    type: str
    content: str
    source: MemorySource
    importance: float
    confidence: float
    created_at: datetime
    last_accessed: datetime
    access_count: int = 0
    context: Optional[str] = None
    expires_at: Optional[datetime] = None
    usage_count: int = 0
    last_used_at: Optional[datetime] = None
    feedback_score: float = 0.0
    user_verified: bool = False
    embedding: Optional[List[float]] = None  # For semantic search
    embedding_model: Optional[str] = None  # Model tag the embedding was produced with
    adaptive_decay_rate: Optional[float] = None  # None means not yet computed
    positive_interactions: int = 0
    negative_interactions: int = 0

    def __setattr__(self, name: str, value: Any) -> None:
        bounds = _CLAMPED_FIELDS.get(name)
        if bounds is not None and value is not None:
            value = clamp(_to_float(value, bounds[0]), *bounds)
        elif isinstance(value, datetime):
            value = to_naive_utc(value)
        super().__setattr__(name, value)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'content': self.content,
            'context': self.context,
            'source': self.source.to_dict(),
            'importance': self.importance,
            'confidence': self.confidence,
            'last_accessed': to_iso(self.last_accessed),
            'access_count': self.access_count,
            'created_at': to_iso(self.created_at),
            'expires_at': to_iso(self.expires_at),
            'usage_count': self.usage_count,
            'last_used_at': to_iso(self.last_used_at),
            'feedback_score': self.feedback_score,
            'user_verified': self.user_verified,
            'embedding': self.embedding,
            'embedding_model': self.embedding_model,
            'adaptive_decay_rate': self.adaptive_decay_rate,
            'positive_interactions': self.positive_interactions,
            'negative_interactions': self.negative_interactions,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], now: Optional[datetime] = None) -> Optional['Memory']:
        """Rebuild a memory from its persisted shape.

        Returns None when the record lacks an id, a known type or content;
        every other field falls back to a type-correct default.
        """
        if not isinstance(data, dict):
            return None

        memory_id = data.get('id')
        memory_type = data.get('type')
        content = data.get('content')
        if not memory_id or memory_type not in MEMORY_TYPES or not isinstance(content, str) or not content.strip():
            return None

        fallback_time = now or utc_now()
        created_at = parse_datetime(data.get('created_at'), fallback_time)
        context = data.get('context')
        embedding_model = data.get('embedding_model')
        rate = data.get('adaptive_decay_rate')

        return cls(id=str(memory_id),
                   type=memory_type,
                   content=content,
                   context=context if isinstance(context, str) and context else None,
                   source=MemorySource.from_dict(data.get('source'), created_at),
                   importance=_to_float(data.get('importance'), 0.5),
                   confidence=_to_float(data.get('confidence'), 0.5),
                   created_at=created_at,
                   last_accessed=parse_datetime(data.get('last_accessed'), created_at),
                   access_count=_to_int(data.get('access_count')),
                   expires_at=parse_datetime(data.get('expires_at')),
                   usage_count=_to_int(data.get('usage_count')),
                   last_used_at=parse_datetime(data.get('last_used_at')),
                   feedback_score=_to_float(data.get('feedback_score'), 0.0),
                   user_verified=data.get('user_verified') is True,
                   embedding=_to_vector(data.get('embedding')),
                   embedding_model=embedding_model if isinstance(embedding_model, str) else None,
                   adaptive_decay_rate=_to_float(rate, 1.0) if rate is not None else None,
                   positive_interactions=_to_int(data.get('positive_interactions')),
                   negative_interactions=_to_int(data.get('negative_interactions')))


@dataclass
class ExtractedMemory:
    """A validated memory candidate, before ids and timestamps are assigned."""
    type: str
    content: str
    importance: float
    confidence: float
    context: Optional[str] = None


@dataclass
class ExtractionResult:
    """Outcome of one extraction cycle."""
    memories: List[ExtractedMemory] = field(default_factory=list)
    success: bool = True
    error: Optional[str] = None
    raw: Optional[str] = None


@dataclass
class ConversationSummary:
    """A short summary of a past conversation used for cross-context lookups."""
    id: str
    conversation_id: str
    summary: str
    key_topics: List[str]
    memory_ids: List[str]
    message_count: int
    conversation_started_at: datetime
    conversation_ended_at: datetime
    created_at: datetime
    url: Optional[str] = None
    embedding: Optional[List[float]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'conversation_id': self.conversation_id,
            'summary': self.summary,
            'key_topics': list(self.key_topics),
            'memory_ids': list(self.memory_ids),
            'message_count': self.message_count,
            'url': self.url,
            'conversation_started_at': to_iso(self.conversation_started_at),
            'conversation_ended_at': to_iso(self.conversation_ended_at),
            'created_at': to_iso(self.created_at),
            'embedding': self.embedding,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], now: Optional[datetime] = None) -> Optional['ConversationSummary']:
        if not isinstance(data, dict) or not data.get('id') or not isinstance(data.get('summary'), str):
            return None

        fallback_time = now or utc_now()
        topics = data.get('key_topics')
        memory_ids = data.get('memory_ids')
        url = data.get('url')
        created_at = parse_datetime(data.get('created_at'), fallback_time)
        return cls(id=str(data['id']),
                   conversation_id=str(data.get('conversation_id') or ''),
                   summary=data['summary'],
                   key_topics=[str(t) for t in topics] if isinstance(topics, list) else [],
                   memory_ids=[str(m) for m in memory_ids] if isinstance(memory_ids, list) else [],
                   message_count=_to_int(data.get('message_count')),
                   url=url if isinstance(url, str) and url else None,
                   conversation_started_at=parse_datetime(data.get('conversation_started_at'), created_at),
                   conversation_ended_at=parse_datetime(data.get('conversation_ended_at'), created_at),
                   created_at=created_at,
                   embedding=_to_vector(data.get('embedding')))


@dataclass
class EntityLink:
    """A normalized entity and the memories that mention it. Derived, never authoritative."""
    entity_id: str
    entity_type: str  # person | project | skill | technology
    entity_name: str  # Normalized, e.g. "react", "john smith"
    display_name: str
    memory_ids: List[str]
    created_at: datetime
    updated_at: datetime


@dataclass
class OperationResult:
    """Typed outcome returned across the store/engine boundary instead of raising."""
    success: bool
    message: Optional[str] = None
    cause: Optional[str] = None
    data: Any = None

    @classmethod
    def ok(cls, data: Any = None, message: Optional[str] = None) -> 'OperationResult':
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, message: str, cause: Optional[BaseException] = None) -> 'OperationResult':
        return cls(success=False, message=message, cause=repr(cause) if cause is not None else None)

    def to_dict(self) -> Dict[str, Any]:
        return {'success': self.success, 'message': self.message, 'cause': self.cause, 'data': self.data}
