"""
Data models for proactive engagement: persisted state, page context and actions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional
from urllib.parse import urlsplit

from ..utils.timestamp_utils import parse_datetime, to_iso
from .core import Memory

WELCOME_BACK = 'welcome_back'
FOLLOW_UP = 'follow_up'
CONTEXT_MATCH = 'context_match'
RANDOM_RECALL = 'random_recall'

ACTION_TYPES = (WELCOME_BACK, FOLLOW_UP, CONTEXT_MATCH, RANDOM_RECALL)

ENGAGED = 'engaged'
DISMISSED = 'dismissed'
IGNORED = 'ignored'

FEEDBACK_OUTCOMES = (ENGAGED, DISMISSED, IGNORED)

PAGE_TYPES = ('code', 'article', 'social', 'shopping', 'video', 'other')


@dataclass
class ProactiveHistoryEntry:
    """One emitted proactive message and how the user reacted to it."""
    id: str
    type: str
    message: str
    timestamp: datetime
    memory_id: Optional[str] = None
    engaged: Optional[bool] = None  # None = pending, True = positive, False = negative

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'message': self.message,
            'memory_id': self.memory_id,
            'timestamp': to_iso(self.timestamp),
            'engaged': self.engaged,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Optional['ProactiveHistoryEntry']:
        if not isinstance(data, dict) or not data.get('id') or data.get('type') not in ACTION_TYPES:
            return None
        timestamp = parse_datetime(data.get('timestamp'))
        if timestamp is None:
            return None
        engaged = data.get('engaged')
        memory_id = data.get('memory_id')
        return cls(id=str(data['id']),
                   type=data['type'],
                   message=str(data.get('message') or ''),
                   timestamp=timestamp,
                   memory_id=str(memory_id) if memory_id else None,
                   engaged=engaged if isinstance(engaged, bool) else None)


@dataclass
class ProactiveState:
    """Process-wide proactive bookkeeping, persisted between sessions."""
    last_proactive_at: Optional[datetime] = None
    session_count: int = 0
    session_started_at: Optional[datetime] = None
    last_session_ended_at: Optional[datetime] = None
    memory_cooldowns: Dict[str, datetime] = field(default_factory=dict)  # memory id -> cooldown expiry
    history: List[ProactiveHistoryEntry] = field(default_factory=list)

    def to_dict(self, history_limit: int = 20) -> Dict[str, Any]:
        return {
            'last_proactive_at': to_iso(self.last_proactive_at),
            'session_count': self.session_count,
            'session_started_at': to_iso(self.session_started_at),
            'last_session_ended_at': to_iso(self.last_session_ended_at),
            'memory_cooldowns': {memory_id: to_iso(expiry) for memory_id, expiry in self.memory_cooldowns.items()},
            'history': [entry.to_dict() for entry in self.history[-history_limit:]],
        }

    @classmethod
    def from_dict(cls, data: Any, history_limit: int = 20) -> 'ProactiveState':
        """Anything malformed falls back to an empty default."""
        if not isinstance(data, dict):
            return cls()

        cooldowns = {}
        raw_cooldowns = data.get('memory_cooldowns')
        if isinstance(raw_cooldowns, dict):
            for memory_id, expiry in raw_cooldowns.items():
                parsed = parse_datetime(expiry)
                if parsed is not None:
                    cooldowns[str(memory_id)] = parsed

        history = []
        raw_history = data.get('history')
        if isinstance(raw_history, list):
            for item in raw_history:
                entry = ProactiveHistoryEntry.from_dict(item)
                if entry is not None:
                    history.append(entry)

        session_count = data.get('session_count')
        return cls(last_proactive_at=parse_datetime(data.get('last_proactive_at')),
                   session_count=session_count if isinstance(session_count, int) and session_count >= 0 else 0,
                   session_started_at=parse_datetime(data.get('session_started_at')),
                   last_session_ended_at=parse_datetime(data.get('last_session_ended_at')),
                   memory_cooldowns=cooldowns,
                   history=history[-history_limit:])


@dataclass
class PageContext:
    """What the user is currently looking at."""
    url: str
    origin: str
    title: str
    main_content: Optional[str] = None
    page_type: Optional[str] = None
    topics: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> Optional['PageContext']:
        if not isinstance(data, dict):
            return None
        url = str(data.get('url') or '')
        origin = str(data.get('origin') or '')
        if not origin and url:
            parts = urlsplit(url)
            if parts.scheme and parts.netloc:
                origin = f'{parts.scheme}://{parts.netloc}'
        page_type = data.get('page_type')
        topics = data.get('topics')
        return cls(url=url,
                   origin=origin,
                   title=str(data.get('title') or ''),
                   main_content=data.get('main_content') if isinstance(data.get('main_content'), str) else None,
                   page_type=page_type if page_type in PAGE_TYPES else None,
                   topics=[str(t) for t in topics] if isinstance(topics, list) else [])


@dataclass
class ProactiveAction:
    """Base of the proactive action variants; `type` tags the variant."""
    type: ClassVar[str] = ''
    message: str
    memory: Optional[Memory] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'message': self.message,
            'memory_id': self.memory.id if self.memory else None,
            'metadata': self.metadata(),
        }

    def metadata(self) -> Dict[str, Any]:
        return {}


@dataclass
class WelcomeBackAction(ProactiveAction):
    type: ClassVar[str] = WELCOME_BACK
    absence_days: int = 0

    def metadata(self) -> Dict[str, Any]:
        return {'absence_days': self.absence_days}


@dataclass
class FollowUpAction(ProactiveAction):
    type: ClassVar[str] = FOLLOW_UP
    reason: str = ''

    def metadata(self) -> Dict[str, Any]:
        return {'reason': self.reason}


@dataclass
class ContextMatchAction(ProactiveAction):
    type: ClassVar[str] = CONTEXT_MATCH
    match_type: str = ''
    relevance: float = 0.0

    def metadata(self) -> Dict[str, Any]:
        return {'match_type': self.match_type, 'relevance': self.relevance}


@dataclass
class RandomRecallAction(ProactiveAction):
    type: ClassVar[str] = RANDOM_RECALL
