"""
Conversation summaries used for "related conversations" lookups.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..models.core import ConversationSummary
from ..utils.bedrock_embed import BedrockEmbedError
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import SummaryConfig, config
from ..utils.json_utils import find_json_object
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import Deadline, resolve_now, step_timeout

logger = get_logger(__name__)

SUMMARY_SYSTEM_PROMPT = """You summarize conversations between a user and their AI companion so the companion can recall them later.

Return only a JSON object:
{"summary": "<two or three sentences about what was discussed and any outcome>", "keyTopics": ["<short topic>", ...]}

Focus on the user's goals, problems and decisions. Never include passwords, keys, tokens or other credentials."""


def conversation_messages(messages: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """User and assistant turns; system and tool messages do not count toward a summary."""
    return [m for m in messages if m.get('role') in ('user', 'assistant')]


def should_generate_summary(message_count: int, has_existing: bool, summary_config: Optional[SummaryConfig] = None) -> bool:
    """A conversation gets one summary, once it has enough user and assistant turns."""
    cfg = summary_config or config.summary
    return not has_existing and message_count >= cfg.min_messages


def build_summary_prompt(messages: Sequence[Dict[str, Any]], max_length: int, max_topics: int) -> str:
    conversation = '\n\n'.join(f"{str(m.get('role', '')).upper()}: {m.get('content', '')}" for m in messages)
    return (f'Summarize this conversation in at most {max_length} characters and list at most {max_topics} key topics.'
            f'\n\nCONVERSATION:\n{conversation}')


def parse_summary_response(raw: str, summary_config: Optional[SummaryConfig] = None) -> Optional[Dict[str, Any]]:
    """Pull `summary` and `keyTopics` out of the model output, enforcing length limits."""
    cfg = summary_config or config.summary
    data = find_json_object(raw or '')
    if not data:
        return None

    summary = data.get('summary')
    if not isinstance(summary, str) or not summary.strip():
        return None
    summary = summary.strip()
    if len(summary) > cfg.max_summary_length:
        summary = summary[:cfg.max_summary_length - 3] + '...'

    topics = data.get('keyTopics', data.get('key_topics'))
    key_topics = [t.strip() for t in topics if isinstance(t, str) and t.strip()] if isinstance(topics, list) else []
    return {'summary': summary, 'key_topics': key_topics[:cfg.max_key_topics]}


def format_related_conversations_context(related: Sequence[Any], max_length: int = 500) -> str:
    """Prompt block listing related past conversations."""
    if not related:
        return ''

    lines = ['Related past conversations:']
    for item in related:
        summary = item.summary
        date = summary.conversation_ended_at.strftime('%Y-%m-%d')
        text = summary.summary if len(summary.summary) <= 100 else f'{summary.summary[:100]}...'
        lines.append(f'- [{date}] {text}')
        topics = ', '.join(summary.key_topics[:3])
        if topics:
            lines.append(f'  Topics: {topics}')

    result = '\n'.join(lines)
    if len(result) > max_length:
        return result[:max_length - 3] + '...'
    return result


class ConversationSummaryService:
    """Generates conversation summaries with a completion model and optionally embeds them."""

    def __init__(self,
                 llm: Optional[Any] = None,
                 embedder: Optional[Any] = None,
                 summary_config: Optional[SummaryConfig] = None,
                 timeout_seconds: Optional[float] = None):
        """
        Initialize summary service.

        Args:
            llm: Object with complete(system_prompt, user_prompt) -> str, Bedrock client if None
            embedder: Object with embed_document(text) -> List[float]; summaries are not embedded if None
            summary_config: Summary limits, uses global config if None
            timeout_seconds: Bound on the completion call, extraction timeout if None
        """
        self.config = summary_config or config.summary
        self.llm = llm or BedrockLLM(config.bedrock_llm)
        self.embedder = embedder
        self.timeout_seconds = timeout_seconds or config.extraction.timeout_seconds
        logger.info('Initialized ConversationSummaryService')

    async def generate(self,
                       conversation_id: str,
                       messages: Sequence[Dict[str, Any]],
                       memory_ids: Optional[List[str]] = None,
                       url: Optional[str] = None,
                       started_at: Optional[datetime] = None,
                       ended_at: Optional[datetime] = None,
                       now: Optional[datetime] = None,
                       deadline: Optional[Deadline] = None) -> Optional[ConversationSummary]:
        """
        Summarize a conversation.

        Args:
            deadline: Request deadline; each model call gets at most the time left on it

        Returns:
            The summary, or None when the conversation is too short or generation fails
        """
        now = resolve_now(now)
        relevant = conversation_messages(messages)
        if len(relevant) < self.config.min_messages:
            logger.debug(f'Conversation {conversation_id} too short for summary ({len(relevant)} messages)')
            return None

        prompt = build_summary_prompt(relevant, self.config.max_summary_length, self.config.max_key_topics)
        try:
            raw = await asyncio.wait_for(asyncio.to_thread(self.llm.complete, SUMMARY_SYSTEM_PROMPT, prompt),
                                         timeout=step_timeout(self.timeout_seconds, deadline))
        except asyncio.TimeoutError:
            logger.error(f'Summary generation timed out for conversation {conversation_id}')
            return None
        except BedrockLLMError as e:
            logger.error(f'Summary generation failed for conversation {conversation_id}: {e}')
            return None

        parsed = parse_summary_response(raw, self.config)
        if parsed is None:
            logger.warning(f'Unparsable summary response for conversation {conversation_id}')
            return None

        embedding = None
        if self.embedder is not None:
            try:
                embedding = await asyncio.wait_for(asyncio.to_thread(self.embedder.embed_document, parsed['summary']),
                                                   timeout=step_timeout(self.timeout_seconds, deadline))
            except (asyncio.TimeoutError, BedrockEmbedError) as e:
                logger.warning(f'Summary embedding failed for conversation {conversation_id}: {e!r}')

        return ConversationSummary(id=f'summary-{conversation_id}',
                                   conversation_id=conversation_id,
                                   summary=parsed['summary'],
                                   key_topics=parsed['key_topics'],
                                   memory_ids=list(memory_ids or []),
                                   message_count=len(relevant),
                                   url=url,
                                   conversation_started_at=started_at or now,
                                   conversation_ended_at=ended_at or now,
                                   created_at=now,
                                   embedding=embedding or None)
