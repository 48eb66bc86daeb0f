"""
Shared fixtures: a fixed clock, a memory factory and in-process fakes for the
completion model, the embedding model, storage and the random source.
"""

import itertools
import random
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest

from companion_memory.models.core import Memory, MemorySource
from companion_memory.utils.bedrock_embed import BedrockEmbedError
from companion_memory.utils.bedrock_llm import BedrockLLMError
from companion_memory.utils.kv_store import InMemoryKeyValueStore, StorageError

# A Wednesday
NOW = datetime(2025, 6, 11, 12, 0, 0)

_ids = itertools.count(1)


def build_memory(content: str = 'User is learning Rust',
                 type: str = 'skill',
                 importance: float = 0.7,
                 confidence: float = 0.8,
                 age_days: float = 0,
                 accessed_days_ago: Optional[float] = None,
                 now: datetime = NOW,
                 url: Optional[str] = None,
                 **fields) -> Memory:
    created_at = now - timedelta(days=age_days)
    accessed_days_ago = age_days if accessed_days_ago is None else accessed_days_ago
    memory_id = fields.pop('id', f'mem-{next(_ids)}')
    return Memory(id=memory_id,
                  type=type,
                  content=content,
                  source=MemorySource(conversation_id='conv-1', message_id='msg-1', timestamp=created_at, url=url),
                  importance=importance,
                  confidence=confidence,
                  created_at=created_at,
                  last_accessed=now - timedelta(days=accessed_days_ago),
                  **fields)


class FakeLLM:
    """Completion client returning canned responses in order; the last one repeats."""

    def __init__(self, responses: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.responses = list(responses or ['[]'])
        self.error = error
        self.calls: List[Dict[str, str]] = []

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append({'system': system_prompt, 'user': user_prompt})
        if self.error is not None:
            raise self.error
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    def health_check(self) -> bool:
        return self.error is None


class ScriptedRandom(random.Random):
    """Returns queued values from random(), then 0.99; choice() always takes the first option."""

    def __init__(self, values=()):
        super().__init__(0)
        self.values = list(values)

    def random(self):
        return self.values.pop(0) if self.values else 0.99

    def choice(self, seq):
        return seq[0]


class FakeEmbedder:
    """Embedding client mapping text to fixed vectors; unknown text gets the default vector."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, default: Optional[List[float]] = None,
                 fail: bool = False):
        self.vectors = vectors or {}
        self.default = default if default is not None else [1.0, 0.0, 0.0]
        self.fail = fail
        self.document_calls: List[List[str]] = []
        self.query_calls: List[str] = []

    def _vector(self, text: str) -> List[float]:
        for needle, vector in self.vectors.items():
            if needle in text:
                return list(vector)
        return list(self.default)

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        self.document_calls.append(list(texts))
        if self.fail:
            raise BedrockEmbedError('embedding unavailable')
        return [self._vector(t) for t in texts]

    def embed_document(self, text: str) -> List[float]:
        return self.embed_documents([text])[0]

    def embed_query(self, text: str) -> List[float]:
        self.query_calls.append(text)
        if self.fail:
            raise BedrockEmbedError('embedding unavailable')
        return self._vector(text)

    def health_check(self) -> bool:
        return not self.fail


class BrokenStore(InMemoryKeyValueStore):
    """Storage whose every read and write fails."""

    async def get(self, key):
        raise StorageError('table missing')

    async def set(self, key, value):
        raise StorageError('table missing')


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def memory_factory():
    return build_memory


@pytest.fixture
def kv_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def failing_llm() -> FakeLLM:
    return FakeLLM(error=BedrockLLMError('model unavailable'))


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()
