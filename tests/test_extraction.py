import asyncio
import json
import time
from dataclasses import replace
from datetime import timedelta

import pytest

from companion_memory.models.core import ExtractedMemory
from companion_memory.services.extraction import (ExtractionRateLimiter, MemoryExtractionService, build_extraction_prompt,
                                                  contains_sensitive_content, drop_duplicates, find_similar_memory,
                                                  get_unprocessed_messages, parse_extraction_response,
                                                  validate_candidate)
from companion_memory.utils.config import config

from conftest import NOW, FakeLLM, build_memory

CONVERSATION = [
    {'role': 'user', 'content': "I'm learning Rust to rewrite my CLI tool"},
    {'role': 'assistant', 'content': 'Nice! What part are you starting with?'},
]


def run(coro):
    return asyncio.run(coro)


def test_parses_array_surrounded_by_prose():
    raw = ('Sure, here is what I found:\n'
           '[{"type": "skill", "content": "Learning Rust", "importance": 0.7, "confidence": 0.9}]\n'
           'Let me know if you need anything else.')

    memories = parse_extraction_response(raw)

    assert memories == [ExtractedMemory(type='skill', content='Learning Rust', importance=0.7, confidence=0.9)]


def test_parses_code_fenced_array():
    raw = '```json\n[{"type": "project", "content": "Building a CLI tool", "confidence": 0.8, "context": " rewrite "}]\n```'

    memories = parse_extraction_response(raw)

    assert len(memories) == 1
    assert memories[0].context == 'rewrite'
    assert memories[0].importance == 0.5


def test_array_after_bracketed_prose_is_found():
    raw = 'Result [see below]: [{"type": "person", "content": "Sister named Ana", "confidence": 0.9}]'

    assert [m.content for m in parse_extraction_response(raw)] == ['Sister named Ana']


@pytest.mark.parametrize('raw', ['', 'no json here', '[{"type": "skill", "content": ', '{"type": "skill"}'])
def test_malformed_responses_yield_nothing(raw):
    assert parse_extraction_response(raw) == []


def test_scores_are_clamped():
    raw = json.dumps([
        {'type': 'identity', 'content': 'Name is Sam', 'importance': 1.5, 'confidence': 0.9},
        {'type': 'preference', 'content': 'Prefers dark mode', 'importance': -0.5, 'confidence': 3},
    ])

    memories = parse_extraction_response(raw)

    assert memories[0].importance == 1
    assert memories[1].importance == 0
    assert memories[1].confidence == 1


def test_non_numeric_scores_default():
    candidate = validate_candidate({'type': 'skill', 'content': 'Knows Go', 'importance': 'high', 'confidence': True})

    assert candidate.importance == 0.5
    assert candidate.confidence == 0.5


def test_zero_importance_is_kept_as_zero():
    candidate = validate_candidate({'type': 'skill', 'content': 'Knows Go', 'importance': 0, 'confidence': 0.9})

    assert candidate.importance == 0


@pytest.mark.parametrize('item', [
    {'type': 'hobby', 'content': 'Plays chess', 'confidence': 0.9},
    {'type': 'skill', 'confidence': 0.9},
    {'content': 'Plays chess', 'confidence': 0.9},
    {'type': 'skill', 'content': '   ', 'confidence': 0.9},
    {'type': 'skill', 'content': 'x' * 501, 'confidence': 0.9},
    {'type': 'skill', 'content': 'Plays chess', 'confidence': 0.4},
    'Plays chess',
])
def test_invalid_items_are_dropped(item):
    assert validate_candidate(item) is None


def test_sensitive_content_is_detected():
    assert contains_sensitive_content('password: abc123')
    assert contains_sensitive_content('my API_KEY is in the env')
    assert contains_sensitive_content('Card 4111 1111 1111 1111')
    assert contains_sensitive_content('SSN 123-45-6789')
    assert not contains_sensitive_content('Enjoys hiking in the Alps')
    assert not contains_sensitive_content(None)


def test_sensitive_memory_is_never_extracted():
    llm = FakeLLM(['[{"content": "password: abc123", "type": "identity", "importance": 0.8, "confidence": 0.9}]'])

    result = run(MemoryExtractionService(llm).extract(CONVERSATION, []))

    assert result.success
    assert result.memories == []


def test_sensitive_context_also_filters():
    llm = FakeLLM([json.dumps([
        {'type': 'project', 'content': 'Payment integration', 'confidence': 0.9, 'context': 'uses card 4111-1111-1111-1111'},
        {'type': 'skill', 'content': 'Knows TypeScript', 'confidence': 0.9},
    ])])

    result = run(MemoryExtractionService(llm).extract(CONVERSATION, []))

    assert [m.content for m in result.memories] == ['Knows TypeScript']


def test_extract_requires_a_user_message():
    llm = FakeLLM()

    result = run(MemoryExtractionService(llm).extract([{'role': 'assistant', 'content': 'Hello!'}], []))

    assert result.success
    assert result.memories == []
    assert llm.calls == []


def test_prompt_lists_known_memories():
    existing = [build_memory(content='Learning Rust', type='skill')]

    prompt = build_extraction_prompt(CONVERSATION, existing)

    assert '- [skill] Learning Rust' in prompt
    assert "USER: I'm learning Rust" in prompt


def test_extract_drops_known_facts():
    existing = [build_memory(content='Learning Rust', type='skill')]
    llm = FakeLLM([json.dumps([
        {'type': 'skill', 'content': 'learning rust', 'confidence': 0.9},
        {'type': 'project', 'content': 'Rewriting a CLI tool in Rust', 'confidence': 0.9},
    ])])

    result = run(MemoryExtractionService(llm).extract(CONVERSATION, existing))

    assert [m.content for m in result.memories] == ['Rewriting a CLI tool in Rust']
    assert 'Learning Rust' in llm.calls[0]['user']


def test_client_failure_degrades_to_unsuccessful_result(failing_llm):
    result = run(MemoryExtractionService(failing_llm).extract(CONVERSATION, []))

    assert not result.success
    assert result.memories == []
    assert 'model unavailable' in result.error


def test_timeout_degrades_to_unsuccessful_result():
    class SlowLLM(FakeLLM):
        def complete(self, system_prompt, user_prompt):
            time.sleep(0.3)
            return '[]'

    cfg = replace(config.extraction, timeout_seconds=0.05)

    result = run(MemoryExtractionService(SlowLLM(), cfg).extract(CONVERSATION, []))

    assert not result.success
    assert 'timed out' in result.error


def test_similarity_matches_same_type_only():
    existing = [build_memory(content='Working on a budgeting app in React', type='project')]

    assert find_similar_memory('budgeting app', 'project', existing) is existing[0]
    assert find_similar_memory('Working on the budgeting app in React', 'project', existing) is existing[0]
    assert find_similar_memory('budgeting app', 'skill', existing) is None
    assert find_similar_memory('Training for a marathon', 'project', existing) is None


def test_duplicates_within_batch_are_dropped():
    candidates = [
        ExtractedMemory(type='skill', content='Knows Python', importance=0.5, confidence=0.9),
        ExtractedMemory(type='skill', content='knows python', importance=0.6, confidence=0.9),
    ]

    assert len(drop_duplicates(candidates, [])) == 1


def test_unprocessed_messages_after_watermark():
    messages = [
        {'role': 'user', 'content': 'old', 'ts': (NOW - timedelta(minutes=10)).isoformat()},
        {'role': 'user', 'content': 'new', 'ts': (NOW + timedelta(minutes=1)).isoformat()},
        {'role': 'user', 'content': 'undated'},
    ]

    assert get_unprocessed_messages(messages, None) == messages
    assert [m['content'] for m in get_unprocessed_messages(messages, NOW)] == ['new']


def test_rate_limiter_enforces_idle_delay_interval_and_hourly_cap():
    cfg = replace(config.extraction, idle_delay_seconds=30, min_interval_seconds=300, max_extractions_per_hour=3)
    limiter = ExtractionRateLimiter(cfg)

    assert not limiter.can_extract(NOW - timedelta(seconds=10), NOW)
    assert limiter.can_extract(NOW - timedelta(seconds=31), NOW)

    limiter.record(NOW)
    assert not limiter.can_extract(None, NOW + timedelta(minutes=4))
    assert limiter.can_extract(None, NOW + timedelta(minutes=5))

    limiter.record(NOW + timedelta(minutes=5))
    limiter.record(NOW + timedelta(minutes=10))
    assert not limiter.can_extract(None, NOW + timedelta(minutes=20))
    assert limiter.can_extract(None, NOW + timedelta(minutes=61))
