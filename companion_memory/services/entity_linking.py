"""
Entity and context linking.

Derives an entity index (people, projects, skills, technologies) from memory
text, and matches past conversation summaries and stored memories against the
current conversation or page. Everything here is rebuildable from the memory
set and never authoritative.
"""

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence
from urllib.parse import urlsplit

from ..models.core import IDENTITY, ConversationSummary, EntityLink, Memory
from ..models.proactive import PageContext
from ..utils.config import LinkingConfig, config
from ..utils.logging_config import get_logger, preview
from ..utils.timestamp_utils import resolve_now
from ..utils.vector_utils import comparable, cosine_similarity
from .follow_up import extract_subject, is_on_cooldown
from .hybrid_search import has_usable_embedding
from .keywords import extract_keywords, jaccard_similarity, matching_keywords, memory_text
from .retrieval import url_origin

logger = get_logger(__name__)

MEMORY_MATCH = 'memory'
DOMAIN_MATCH = 'domain'
SEMANTIC_MATCH = 'semantic'
TOPIC_MATCH = 'topic'
PAGE_TYPE_MATCH = 'page_type'
KEYWORD_MATCH = 'keyword'

# Higher wins when one target matches several strategies
MATCH_PRECEDENCE = {
    MEMORY_MATCH: 6,
    DOMAIN_MATCH: 5,
    SEMANTIC_MATCH: 4,
    TOPIC_MATCH: 3,
    PAGE_TYPE_MATCH: 2,
    KEYWORD_MATCH: 1,
}

ENTITY_WEIGHTS = {
    'person': 1.5,
    'project': 1.3,
    'skill': 1.0,
    'technology': 0.8,
}

PAGE_TYPE_MEMORY_TYPES = {
    'code': ('project', 'skill'),
    'article': ('skill', 'opinion'),
    'social': ('person', ),
    'shopping': ('preference', ),
    'video': ('preference', 'skill'),
}

CONTEXT_MIN_IMPORTANCE = 0.4
CONTEXT_MIN_CONFIDENCE = 0.5
DOMAIN_BASE_RELEVANCE = 0.6
DOMAIN_IMPORTANCE_BOOST = 0.2
PAGE_TYPE_RELEVANCE = 0.5
TOPIC_BASE_RELEVANCE = 0.45
TOPIC_RELEVANCE_PER_MATCH = 0.1
TOPIC_MAX_RELEVANCE = 0.8
KEYWORD_MIN_RELEVANCE = 0.4
SHARED_MEMORY_BONUS = 0.3
TOPIC_OVERLAP_SCALE = 0.8
CONVERSATION_KEYWORD_BASE = 0.3
CONVERSATION_KEYWORD_STEP = 0.1
CONVERSATION_KEYWORD_MAX = 0.6

TECHNOLOGY_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r'\b(react|vue|angular|svelte|next\.?js|nuxt|gatsby|remix)\b',
        r'(?<![\w+#])(typescript|javascript|python|rust|go|java|c\+\+|c#|ruby|php|swift|kotlin)(?![\w+#])',
        r'\b(node\.?js|deno|bun|express|fastify|nest\.?js|django|flask|fastapi|rails|spring)\b',
        r'\b(mongodb|postgres|postgresql|mysql|redis|elasticsearch|dynamodb|supabase|firebase)\b',
        r'\b(aws|gcp|azure|vercel|netlify|cloudflare|docker|kubernetes|k8s)\b',
        r'\b(graphql|rest|grpc|websocket|webrtc)\b',
        r'\b(tailwind|sass|less|styled-components|emotion)\b',
        r'\b(webpack|vite|rollup|esbuild|turbopack|parcel)\b',
        r'\b(jest|vitest|cypress|playwright|mocha|pytest)\b',
        r'\b(git|github|gitlab|bitbucket|jira|confluence|notion)\b',
        r'\b(figma|sketch|photoshop|illustrator)\b',
        r'\b(openai|anthropic|claude|gpt|llm|langchain|llamaindex)\b',
        r'\b(tensorflow|pytorch|keras|scikit-learn|pandas|numpy)\b',
        r'\b(linux|ubuntu|macos|windows|ios|android)\b',
        r'\b(vim|neovim|emacs|vscode|intellij|webstorm)\b',
    )
]

SKILL_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r'\b(frontend|backend|fullstack|full-stack|devops|sre|data science|machine learning|ml|ai)\b',
        r'\b(web development|mobile development|game development|embedded|systems programming)\b',
        r'\b(ux design|ui design|product design|graphic design)\b',
        r'\b(project management|agile|scrum|kanban)\b',
        r'\b(teaching|mentoring|technical writing|public speaking)\b',
        r'\b(security|penetration testing|cryptography)\b',
        r'\b(database design|api design|system design|architecture)\b',
    )
]

_PROJECT_NOUNS = r'(?:app|project|tool|website|platform|service|api|extension|plugin|library|framework)'
PROJECT_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r'working on\s+(?:a\s+)?([^,.]+' + _PROJECT_NOUNS + r')',
        r'building\s+(?:a\s+)?([^,.]+' + _PROJECT_NOUNS + r')',
        r'developing\s+(?:a\s+)?([^,.]+)',
        r'my\s+([^,.]+(?:project|app|startup|company|side project))',
        r'called\s+"?([^",.]+)"?',
        r'named\s+"?([^",.]+)"?',
    )
]

_NAME = r'([A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)'
PERSON_PATTERNS = [
    re.compile(r'(?:[Mm]y\s+)?(?:friend|colleague|coworker|boss|manager|mentor|partner|wife|husband|girlfriend|'
               r'boyfriend|brother|sister|mom|dad|mother|father)\s+' + _NAME),
    re.compile(_NAME + r'\s+(?:is my|is a|works|lives|helps|teaches|mentors)'),
    re.compile(r'working with\s+' + _NAME),
    re.compile(r'(?:met|know|talked to|spoke with)\s+' + _NAME),
]

COMMON_WORDS = frozenset([
    'the', 'a', 'an', 'and', 'or', 'but', 'is', 'are', 'was', 'were', 'be', 'been', 'being', 'have', 'has', 'had',
    'do', 'does', 'did', 'will', 'would', 'could', 'should', 'may', 'might', 'must', 'can', 'that', 'this', 'these',
    'those', 'what', 'which', 'who', 'whom', 'i', 'me', 'my', 'we', 'us', 'our', 'you', 'your', 'he', 'she', 'it',
    'they', 'them', 'their', 'user', 'person', 'people', 'someone'
])

MAX_ENTITY_NAME_LENGTH = 50


@dataclass
class ExtractedEntity:
    entity_type: str
    entity_name: str
    display_name: str


@dataclass
class RelatedMemory:
    """A memory sharing entities with another, scored by entity-type weight."""
    memory: Memory
    relevance_score: float
    shared_entities: List[EntityLink]


@dataclass
class RelatedConversation:
    summary: ConversationSummary
    relevance: float
    match_type: str
    explanations: List[str] = field(default_factory=list)

    @property
    def explanation(self) -> str:
        return '; '.join(self.explanations)

    def to_dict(self) -> Dict:
        return {
            'summary': self.summary.to_dict(),
            'relevance': self.relevance,
            'match_type': self.match_type,
            'explanation': self.explanation,
        }


@dataclass
class ContextMatch:
    memory: Memory
    relevance: float
    match_type: str
    explanations: List[str] = field(default_factory=list)

    @property
    def explanation(self) -> str:
        return '; '.join(self.explanations)

    def to_dict(self) -> Dict:
        return {
            'memory': self.memory.to_dict(),
            'relevance': self.relevance,
            'match_type': self.match_type,
            'explanation': self.explanation,
        }


def normalize_entity_name(name: str) -> str:
    normalized = re.sub(r'\s+', ' ', name.lower().strip())
    return re.sub(r'[^\w\s.+#-]', '', normalized)


def generate_entity_id(entity_type: str, normalized_name: str) -> str:
    """Stable id derived from type and normalized name."""
    digest = hashlib.sha1(f'{entity_type}:{normalized_name}'.encode('utf-8')).hexdigest()[:12]
    return f'entity-{entity_type}-{digest}'


def _collect(patterns: Sequence[re.Pattern], text: str, entity_type: str, min_length: int,
             reject_common: bool = False) -> List[ExtractedEntity]:
    entities = []
    seen = set()
    for pattern in patterns:
        for match in pattern.finditer(text):
            display_name = (match.group(1) or match.group(0)).strip()
            normalized = normalize_entity_name(display_name)
            if len(normalized) < min_length or len(normalized) > MAX_ENTITY_NAME_LENGTH or normalized in seen:
                continue
            if reject_common and normalized in COMMON_WORDS:
                continue
            seen.add(normalized)
            entities.append(ExtractedEntity(entity_type, normalized, display_name))
    return entities


def extract_entities_from_memory(memory: Memory, linking_config: Optional[LinkingConfig] = None) -> List[ExtractedEntity]:
    """
    Pattern-based entities mentioned by a memory.

    The memory type decides which extractors run; technologies are extracted
    from every memory.

    Args:
        memory: Memory to analyze
        linking_config: Entity limits, uses global config if None

    Returns:
        Entities de-duplicated by (type, name), capped per memory
    """
    cfg = linking_config or config.linking
    text = memory_text(memory.content, memory.context)
    min_length = cfg.min_entity_length

    technologies = _collect(TECHNOLOGY_PATTERNS, text, 'technology', min_length)
    if memory.type == 'skill':
        entities = _collect(SKILL_PATTERNS, text, 'skill', min_length) + technologies
    elif memory.type == 'project':
        entities = _collect(PROJECT_PATTERNS, text, 'project', min_length) + technologies
    elif memory.type == 'person':
        entities = _collect(PERSON_PATTERNS, text, 'person', min_length, reject_common=True) + technologies
    else:
        entities = (technologies + _collect(SKILL_PATTERNS, text, 'skill', min_length) +
                    _collect(PERSON_PATTERNS, text, 'person', min_length, reject_common=True) +
                    _collect(PROJECT_PATTERNS, text, 'project', min_length))

    deduped = []
    seen = set()
    for entity in entities:
        key = (entity.entity_type, entity.entity_name)
        if key not in seen:
            seen.add(key)
            deduped.append(entity)

    return deduped[:cfg.max_entities_per_memory]


class EntityIndex:
    """Entity links derived from a memory set."""

    def __init__(self, linking_config: Optional[LinkingConfig] = None):
        self.config = linking_config or config.linking
        self.entities: Dict[str, EntityLink] = {}
        self.memory_entities: Dict[str, List[str]] = {}

    @classmethod
    def build(cls, memories: Iterable[Memory], now: Optional[datetime] = None,
              linking_config: Optional[LinkingConfig] = None) -> 'EntityIndex':
        index = cls(linking_config)
        for memory in memories:
            index.add_memory(memory, now)
        return index

    def add_memory(self, memory: Memory, now: Optional[datetime] = None) -> List[EntityLink]:
        """Link a memory to its entities, creating entity links as needed."""
        now = resolve_now(now)
        linked = []
        for extracted in extract_entities_from_memory(memory, self.config):
            entity_id = generate_entity_id(extracted.entity_type, extracted.entity_name)
            link = self.entities.get(entity_id)
            if link is None:
                link = EntityLink(entity_id=entity_id,
                                  entity_type=extracted.entity_type,
                                  entity_name=extracted.entity_name,
                                  display_name=extracted.display_name,
                                  memory_ids=[],
                                  created_at=now,
                                  updated_at=now)
                self.entities[entity_id] = link
            if memory.id not in link.memory_ids:
                link.memory_ids.append(memory.id)
                link.updated_at = now
            linked.append(link)

        self.memory_entities[memory.id] = [link.entity_id for link in linked]
        if linked:
            logger.debug(f'Linked {len(linked)} entities to memory: {preview(memory.content, 40)}')
        return linked

    def remove_memory(self, memory_id: str) -> None:
        for entity_id in self.memory_entities.pop(memory_id, []):
            link = self.entities.get(entity_id)
            if link is None:
                continue
            if memory_id in link.memory_ids:
                link.memory_ids.remove(memory_id)
            if not link.memory_ids:
                del self.entities[entity_id]

    def entities_for_memory(self, memory_id: str) -> List[EntityLink]:
        return [self.entities[e] for e in self.memory_entities.get(memory_id, []) if e in self.entities]

    def find_related_memories(self, memory_id: str, memories_by_id: Mapping[str, Memory],
                              limit: Optional[int] = None) -> List[RelatedMemory]:
        """
        Memories sharing entities with the given one.

        Args:
            memory_id: Memory to find relatives of
            memories_by_id: Live memories, ids missing here are skipped
            limit: Maximum results (config default if None)

        Returns:
            Related memories by summed entity-type weight, highest first
        """
        limit = self.config.max_related_memories if limit is None else limit
        scores: Dict[str, float] = {}
        shared: Dict[str, List[EntityLink]] = {}

        for link in self.entities_for_memory(memory_id):
            weight = ENTITY_WEIGHTS.get(link.entity_type, 1.0)
            for related_id in link.memory_ids:
                if related_id == memory_id or related_id not in memories_by_id:
                    continue
                scores[related_id] = scores.get(related_id, 0.0) + weight
                shared.setdefault(related_id, []).append(link)

        ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)[:limit]
        return [
            RelatedMemory(memory=memories_by_id[related_id], relevance_score=score, shared_entities=shared[related_id])
            for related_id, score in ranked
        ]

    def clusters(self, memories_by_id: Mapping[str, Memory], min_size: int = 2) -> List[Dict]:
        """Entities linking at least min_size live memories, by total importance."""
        clusters = []
        for link in self.entities.values():
            members = [memories_by_id[m] for m in link.memory_ids if m in memories_by_id]
            if len(members) >= min_size:
                clusters.append({
                    'entity': link,
                    'memories': members,
                    'total_score': sum(m.importance for m in members)
                })
        clusters.sort(key=lambda c: c['total_score'], reverse=True)
        return clusters


def _merge_match(existing, match_type: str, relevance: float, explanation: str) -> None:
    """Fold another strategy's result into an existing match for the same target."""
    existing.relevance = max(existing.relevance, relevance)
    if MATCH_PRECEDENCE[match_type] > MATCH_PRECEDENCE[existing.match_type]:
        existing.match_type = match_type
        existing.explanations.insert(0, explanation)
    elif explanation not in existing.explanations:
        existing.explanations.append(explanation)


def find_related_conversations(summaries: Sequence[ConversationSummary],
                               current_memories: Optional[Sequence[Memory]] = None,
                               current_topics: Optional[Sequence[str]] = None,
                               query_embedding: Optional[Sequence[float]] = None,
                               query_text: Optional[str] = None,
                               origin: Optional[str] = None,
                               linking_config: Optional[LinkingConfig] = None) -> List[RelatedConversation]:
    """
    Past conversations related to the current one.

    Strategies: shared memory ids, same site origin, summary embedding
    similarity, key-topic substring overlap and shared keywords. A summary
    matched by several strategies appears once, with the best relevance and the
    highest-precedence match type.

    Args:
        summaries: Stored conversation summaries
        current_memories: Memories involved in the current conversation
        current_topics: Topics of the current conversation
        query_embedding: Embedding of the current conversation or query
        query_text: Current query text for keyword matching
        origin: Site origin of the current conversation
        linking_config: Thresholds, uses global config if None

    Returns:
        Up to max_results conversations with relevance >= min_relevance, best first
    """
    cfg = linking_config or config.linking
    results: Dict[str, RelatedConversation] = {}

    def add(summary: ConversationSummary, match_type: str, relevance: float, explanation: str) -> None:
        relevance = min(1.0, max(0.0, relevance))
        existing = results.get(summary.id)
        if existing is None:
            results[summary.id] = RelatedConversation(summary, relevance, match_type, [explanation])
        else:
            _merge_match(existing, match_type, relevance, explanation)

    memory_ids = [m.id for m in current_memories or []]
    topics = [t.lower().strip() for t in current_topics or [] if t and t.strip()]
    query_keywords = extract_keywords(query_text) if query_text else []

    for summary in summaries:
        if memory_ids:
            shared = [m for m in summary.memory_ids if m in memory_ids]
            if shared:
                relevance = len(shared) / max(len(memory_ids), len(summary.memory_ids)) + SHARED_MEMORY_BONUS
                add(summary, MEMORY_MATCH, relevance, f'{len(shared)} shared memories')

        if origin and url_origin(summary.url) == origin:
            add(summary, DOMAIN_MATCH, DOMAIN_BASE_RELEVANCE, 'same site')

        if query_embedding is not None and comparable(query_embedding, summary.embedding):
            similarity = cosine_similarity(query_embedding, summary.embedding)
            if similarity >= cfg.semantic_threshold:
                add(summary, SEMANTIC_MATCH, similarity, f'{similarity * 100:.0f}% semantic match')

        if topics and summary.key_topics:
            summary_topics = [t.lower().strip() for t in summary.key_topics]
            matched = [t for t in topics if any(t in st or st in t for st in summary_topics)]
            if matched:
                relevance = len(matched) / max(len(topics), len(summary_topics)) * TOPIC_OVERLAP_SCALE
                add(summary, TOPIC_MATCH, relevance, f"Topics: {', '.join(matched)}")

        if query_keywords:
            summary_keywords = extract_keywords(' '.join([summary.summary] + summary.key_topics))
            shared_keywords = matching_keywords(query_keywords, summary_keywords)
            if len(shared_keywords) >= cfg.min_shared_keywords:
                relevance = min(CONVERSATION_KEYWORD_BASE + CONVERSATION_KEYWORD_STEP * len(shared_keywords),
                                CONVERSATION_KEYWORD_MAX)
                add(summary, KEYWORD_MATCH, relevance, f"Keywords: {', '.join(shared_keywords[:3])}")

    related = [r for r in results.values() if r.relevance >= cfg.min_relevance]
    related.sort(key=lambda r: r.relevance, reverse=True)
    return related[:cfg.max_results]


def find_context_matches(context: PageContext,
                         memories: Sequence[Memory],
                         cooldowns: Optional[Mapping[str, datetime]] = None,
                         now: Optional[datetime] = None,
                         query_embedding: Optional[Sequence[float]] = None,
                         embedding_model: Optional[str] = None,
                         limit: int = 3,
                         linking_config: Optional[LinkingConfig] = None) -> List[ContextMatch]:
    """
    Memories relevant to the page the user is looking at.

    Identity memories, low-importance or low-confidence memories and memories
    on cooldown are never matched.

    Args:
        context: Current page
        memories: Stored memories
        cooldowns: Memory id -> cooldown expiry
        now: Evaluation time
        query_embedding: Optional embedding of the page text
        embedding_model: Active embedding model tag
        limit: Maximum matches
        linking_config: Thresholds, uses global config if None

    Returns:
        One match per memory, highest relevance first
    """
    cfg = linking_config or config.linking
    now = resolve_now(now)
    cooldowns = cooldowns or {}

    page_text = f'{context.title} {context.main_content or ""}'.lower()
    page_keywords = extract_keywords(page_text)
    page_topics = [t.lower().strip() for t in context.topics if t and t.strip()]
    page_memory_types = PAGE_TYPE_MEMORY_TYPES.get(context.page_type or '', ())

    matches: Dict[str, ContextMatch] = {}

    def add(memory: Memory, match_type: str, relevance: float, explanation: str) -> None:
        relevance = min(1.0, max(0.0, relevance))
        existing = matches.get(memory.id)
        if existing is None:
            matches[memory.id] = ContextMatch(memory, relevance, match_type, [explanation])
        else:
            _merge_match(existing, match_type, relevance, explanation)

    for memory in memories:
        if memory.type == IDENTITY or memory.importance < CONTEXT_MIN_IMPORTANCE:
            continue
        if memory.confidence < CONTEXT_MIN_CONFIDENCE or is_on_cooldown(memory.id, cooldowns, now):
            continue

        subject = extract_subject(memory.content)
        text = memory_text(memory.content, memory.context)

        if context.origin and url_origin(memory.source.url) == context.origin:
            add(memory, DOMAIN_MATCH, DOMAIN_BASE_RELEVANCE + memory.importance * DOMAIN_IMPORTANCE_BOOST,
                f'you mentioned "{subject}" here before')

        if query_embedding is not None and has_usable_embedding(memory, query_embedding, embedding_model):
            similarity = cosine_similarity(query_embedding, memory.embedding)
            if similarity >= cfg.semantic_threshold:
                add(memory, SEMANTIC_MATCH, similarity, f'this looks related to {subject}')

        if page_topics:
            lowered = text.lower()
            matched_topics = [t for t in page_topics if t in lowered]
            if matched_topics:
                relevance = min(TOPIC_BASE_RELEVANCE + TOPIC_RELEVANCE_PER_MATCH * len(matched_topics),
                                TOPIC_MAX_RELEVANCE)
                add(memory, TOPIC_MATCH, relevance, f"this page is about {', '.join(matched_topics[:2])}")

        if memory.type in page_memory_types:
            add(memory, PAGE_TYPE_MATCH, PAGE_TYPE_RELEVANCE, f'this might relate to {subject}')

        memory_keywords = extract_keywords(text)
        shared = matching_keywords(page_keywords, memory_keywords)
        if len(shared) >= cfg.min_shared_keywords:
            relevance = min(jaccard_similarity(page_keywords, memory_keywords) + min(len(shared) * 0.12, 0.4) +
                            min(memory.access_count * 0.03, 0.15), 1.0)
            if relevance > KEYWORD_MIN_RELEVANCE:
                add(memory, KEYWORD_MATCH, relevance, f"page mentions {', '.join(shared[:2])}")

    ranked = sorted(matches.values(), key=lambda m: m.relevance, reverse=True)
    return ranked[:limit]


_CODE_HOSTS = ('github.com', 'gitlab.com', 'bitbucket.org', 'stackoverflow.com', 'dev.to', 'npmjs.com', 'crates.io',
               'pypi.org')
_VIDEO_HOSTS = ('youtube.com', 'vimeo.com', 'twitch.tv', 'netflix.com')
_SOCIAL_HOSTS = ('twitter.com', 'x.com', 'facebook.com', 'instagram.com', 'linkedin.com', 'reddit.com', 'discord.com')
_SHOPPING_HOSTS = ('amazon.com', 'ebay.com', 'etsy.com')
_ARTICLE_HOSTS = ('medium.com', 'substack.com')
_ARTICLE_PATHS = ('/blog', '/article', '/news', '/post')


def _host_matches(host: str, domains: Sequence[str]) -> bool:
    return any(host == d or host.endswith('.' + d) for d in domains)


def detect_page_type(url: str, title: str = '') -> str:
    """Coarse page category from URL and title: code, video, social, shopping, article or other."""
    url_lower = (url or '').lower()
    title_lower = (title or '').lower()
    host = urlsplit(url_lower).hostname or ''

    if _host_matches(host, _CODE_HOSTS):
        return 'code'
    if _host_matches(host, _VIDEO_HOSTS):
        return 'video'
    if _host_matches(host, _SOCIAL_HOSTS):
        return 'social'
    if (_host_matches(host, _SHOPPING_HOSTS) or 'shop' in url_lower or 'store' in url_lower or
            'buy' in title_lower or 'cart' in title_lower):
        return 'shopping'
    if _host_matches(host, _ARTICLE_HOSTS) or any(p in url_lower for p in _ARTICLE_PATHS):
        return 'article'
    return 'other'
