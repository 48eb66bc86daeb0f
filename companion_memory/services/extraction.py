"""
Memory extraction: prompt a completion model with the recent conversation and
turn its raw answer into validated, non-sensitive, de-duplicated candidates.
"""

import asyncio
import math
import re
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional, Sequence

from ..models.core import MEMORY_TYPES, ExtractedMemory, ExtractionResult, Memory, clamp
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import ExtractionConfig, config
from ..utils.json_utils import find_json_array
from ..utils.logging_config import get_logger, preview
from ..utils.timestamp_utils import Deadline, parse_datetime, resolve_now, step_timeout

logger = get_logger(__name__)

USER = 'user'
ASSISTANT = 'assistant'

SENSITIVE_PATTERNS = (
    re.compile(r'password', re.IGNORECASE),
    re.compile(r'api[_-]?key', re.IGNORECASE),
    re.compile(r'secret', re.IGNORECASE),
    re.compile(r'token', re.IGNORECASE),
    re.compile(r'credential', re.IGNORECASE),
    re.compile(r'\b\d{4}[- ]?\d{4}[- ]?\d{4}[- ]?\d{4}\b'),  # Card number
    re.compile(r'\b\d{3}-\d{2}-\d{4}\b'),  # SSN
)

EXTRACTION_SYSTEM_PROMPT = """You are a memory extraction system. Your job is to analyze conversations and extract facts worth remembering about the user.

RULES:
1. Only extract FACTS about the USER, not general knowledge or conversation topics
2. Be specific and concise - each memory should be a single clear fact
3. Only extract information the user explicitly stated or strongly implied
4. Never infer or assume facts not clearly present in the conversation
5. If unsure, don't extract

MEMORY TYPES:
- identity: Name, job title, location, company, role (e.g., "User works as a frontend developer")
- preference: Likes, dislikes, preferred tools and styles (e.g., "User prefers TypeScript over JavaScript")
- skill: Technologies they know or are learning (e.g., "User is learning Rust")
- project: Things they're working on (e.g., "User is building a browser extension")
- person: People they mention - colleagues, family, friends, pets (e.g., "User has a cat named Luna")
- event: Recent or upcoming happenings (e.g., "User has a job interview on Friday")
- opinion: Views and stances (e.g., "User believes in test-driven development")

SCORING:
- confidence (0.0-1.0): how explicitly it was stated. 1.0 = directly stated, 0.5-0.7 = reasonably inferred. Below 0.5, don't extract.
- importance (0.0-1.0): how useful it is for future conversations. 1.0 = core identity, 0.3-0.5 = minor details.

SENSITIVE CONTENT - NEVER EXTRACT:
- Passwords, API keys, tokens, secrets, credentials
- Credit card numbers, bank details, social security or ID numbers
- Private health information

OUTPUT FORMAT:
Return only a JSON array of objects with "type", "content", "context", "confidence" and "importance".
If nothing is worth remembering, return []."""


def build_extraction_prompt(messages: Sequence[Dict[str, Any]], existing_memories: Sequence[Memory]) -> str:
    """User prompt listing what is already known followed by the conversation window."""
    conversation = '\n\n'.join(f"{str(m.get('role', '')).upper()}: {m.get('content', '')}" for m in messages)
    known = '\n'.join(f'- [{m.type}] {m.content}' for m in existing_memories) or 'None yet'

    return f"""Analyze this conversation and extract NEW facts worth remembering about the user.

ALREADY KNOWN ABOUT USER:
{known}

CONVERSATION:
{conversation}

Extract NEW memorable facts as a JSON array. Do NOT repeat facts we already know. If there are no new facts, return []."""


def contains_sensitive_content(text: Optional[str]) -> bool:
    if not text:
        return False
    return any(pattern.search(text) for pattern in SENSITIVE_PATTERNS)


def is_sensitive_candidate(content: str, context: Optional[str] = None) -> bool:
    """True when either the content or its context matches a sensitive pattern."""
    return contains_sensitive_content(content) or contains_sensitive_content(context)


def filter_sensitive_memories(candidates: Sequence[ExtractedMemory]) -> List[ExtractedMemory]:
    kept = []
    for candidate in candidates:
        if is_sensitive_candidate(candidate.content, candidate.context):
            logger.info(f'Filtered sensitive memory: {preview(candidate.content)}')
            continue
        kept.append(candidate)
    return kept


def _coerce_score(value: Any, default: float = 0.5) -> float:
    if isinstance(value, bool) or value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number


def validate_candidate(item: Any, extraction_config: Optional[ExtractionConfig] = None) -> Optional[ExtractedMemory]:
    """
    Validate one raw memory object.

    Items with an unknown type, empty or oversized content, or confidence
    below the minimum are rejected. Importance and confidence are clamped to
    [0, 1]; non-numeric values default to 0.5.

    Returns:
        The candidate, or None when rejected
    """
    cfg = extraction_config or config.extraction

    if not isinstance(item, dict):
        logger.debug('Skipping non-object extraction item')
        return None

    memory_type = item.get('type')
    content = item.get('content')
    if not isinstance(content, str) or not content.strip() or not memory_type:
        logger.debug('Skipping memory with missing type or content')
        return None
    if memory_type not in MEMORY_TYPES:
        logger.debug(f'Skipping unknown memory type: {memory_type}')
        return None

    content = content.strip()
    if len(content) > cfg.max_content_length:
        logger.debug(f'Skipping oversized memory: {preview(content)}')
        return None

    importance = clamp(_coerce_score(item.get('importance')), 0.0, 1.0)
    confidence = clamp(_coerce_score(item.get('confidence')), 0.0, 1.0)
    if confidence < cfg.min_confidence:
        logger.debug(f'Skipping low confidence memory: {preview(content)} ({confidence})')
        return None

    context = item.get('context')
    context = context.strip() if isinstance(context, str) and context.strip() else None

    return ExtractedMemory(type=memory_type, content=content, importance=importance, confidence=confidence, context=context)


def parse_extraction_response(raw: str, extraction_config: Optional[ExtractionConfig] = None) -> List[ExtractedMemory]:
    """
    Parse a raw completion into validated candidates.

    Tolerates code fences and surrounding prose. Each array element goes
    through validate_candidate; rejected elements are dropped silently.

    Args:
        raw: Raw model output
        extraction_config: Validation limits, uses global config if None

    Returns:
        Accepted candidates, empty when no JSON array can be found
    """
    items = find_json_array(raw)
    if items is None:
        logger.info('No JSON array found in extraction response')
        return []

    candidates = []
    for item in items:
        candidate = validate_candidate(item, extraction_config)
        if candidate is not None:
            candidates.append(candidate)
    return candidates


def _words(text: str) -> set:
    return set(re.findall(r'\w+', text.lower()))


def find_similar_memory(content: str,
                        memory_type: str,
                        existing: Sequence[Any],
                        threshold: Optional[float] = None) -> Optional[Any]:
    """
    Find an existing memory of the same type that says essentially the same thing.

    Matches on case-insensitive equality, containment either way, or word
    Jaccard similarity at or above the threshold.

    Args:
        content: Candidate content
        memory_type: Candidate type, only same-type memories are compared
        existing: Memories or candidates with `type` and `content`
        threshold: Jaccard threshold (config default if None)

    Returns:
        The first similar item, or None
    """
    threshold = config.extraction.duplicate_similarity if threshold is None else threshold
    normalized = content.strip().lower()
    words = _words(normalized)

    for item in existing:
        if item.type != memory_type:
            continue
        other = item.content.strip().lower()
        if other == normalized or normalized in other or other in normalized:
            return item
        other_words = _words(other)
        union = words | other_words
        if union and len(words & other_words) / len(union) >= threshold:
            return item
    return None


def drop_duplicates(candidates: Sequence[ExtractedMemory], existing: Sequence[Memory]) -> List[ExtractedMemory]:
    """Drop candidates already known, or repeated earlier in the same batch."""
    kept: List[ExtractedMemory] = []
    for candidate in candidates:
        if find_similar_memory(candidate.content, candidate.type, existing) is not None:
            logger.debug(f'Skipping already known memory: {preview(candidate.content)}')
            continue
        if find_similar_memory(candidate.content, candidate.type, kept) is not None:
            continue
        kept.append(candidate)
    return kept


def get_unprocessed_messages(messages: Sequence[Dict[str, Any]], last_processed_at: Optional[datetime]) -> List[Dict[str, Any]]:
    """Messages stamped after last_processed_at; messages without a timestamp count as already processed."""
    if last_processed_at is None:
        return list(messages)
    unprocessed = []
    for message in messages:
        ts = parse_datetime(message.get('ts'))
        if ts is not None and ts > last_processed_at:
            unprocessed.append(message)
    return unprocessed


class ExtractionRateLimiter:
    """Idle delay, minimum interval and hourly cap for extraction runs."""

    def __init__(self, extraction_config: Optional[ExtractionConfig] = None):
        self.config = extraction_config or config.extraction
        self.last_extraction_at: Optional[datetime] = None
        self._recent: Deque[datetime] = deque()

    def _trim(self, now: datetime) -> None:
        window_start = now - timedelta(hours=1)
        while self._recent and self._recent[0] <= window_start:
            self._recent.popleft()

    def can_extract(self, last_user_message_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
        now = resolve_now(now)
        self._trim(now)

        if last_user_message_at is not None and (now - last_user_message_at).total_seconds() < self.config.idle_delay_seconds:
            return False
        if self.last_extraction_at is not None and (now - self.last_extraction_at).total_seconds() < self.config.min_interval_seconds:
            return False
        return len(self._recent) < self.config.max_extractions_per_hour

    def record(self, now: Optional[datetime] = None) -> None:
        now = resolve_now(now)
        self.last_extraction_at = now
        self._recent.append(now)
        self._trim(now)


class MemoryExtractionService:
    """Runs extraction against a completion model, bounded by a timeout."""

    def __init__(self, llm: Optional[Any] = None, extraction_config: Optional[ExtractionConfig] = None):
        """
        Initialize extraction service.

        Args:
            llm: Object with complete(system_prompt, user_prompt) -> str, Bedrock client if None
            extraction_config: Extraction settings, uses global config if None
        """
        self.config = extraction_config or config.extraction
        self.llm = llm or BedrockLLM(config.bedrock_llm)
        logger.info('Initialized MemoryExtractionService')

    async def extract(self,
                      messages: Sequence[Dict[str, Any]],
                      existing_memories: Sequence[Memory],
                      deadline: Optional[Deadline] = None) -> ExtractionResult:
        """
        Extract new candidate memories from a conversation window.

        Args:
            messages: Dicts with `role` and `content`
            existing_memories: Memories already stored, listed in the prompt and used for de-duplication
            deadline: Request deadline; the model call gets at most the time left on it

        Returns:
            ExtractionResult; timeouts and client errors yield success=False with no memories
        """
        relevant = [m for m in messages if m.get('role') in (USER, ASSISTANT)]
        if not any(m.get('role') == USER for m in relevant):
            return ExtractionResult()

        user_prompt = build_extraction_prompt(relevant, existing_memories)
        timeout = step_timeout(self.config.timeout_seconds, deadline)

        try:
            raw = await asyncio.wait_for(asyncio.to_thread(self.llm.complete, EXTRACTION_SYSTEM_PROMPT, user_prompt),
                                         timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f'Extraction timed out after {timeout:.1f}s')
            return ExtractionResult(success=False, error='Extraction request timed out')
        except BedrockLLMError as e:
            logger.error(f'Extraction request failed: {e}')
            return ExtractionResult(success=False, error=str(e))
        except Exception as e:
            logger.error(f'Unexpected error during extraction: {e}')
            return ExtractionResult(success=False, error=f'Unexpected extraction error: {e}')

        candidates = parse_extraction_response(raw or '', self.config)
        candidates = filter_sensitive_memories(candidates)
        candidates = drop_duplicates(candidates, existing_memories)

        logger.info(f'Extracted {len(candidates)} memories from conversation')
        return ExtractionResult(memories=candidates, success=True, raw=raw)
