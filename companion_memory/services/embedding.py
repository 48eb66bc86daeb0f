"""
Embedding upkeep for memories and queries.
"""

import asyncio
from typing import Any, List, Optional, Sequence

from ..models.core import Memory
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.config import BedrockEmbedConfig, config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import Deadline, step_timeout
from .keywords import memory_text

logger = get_logger(__name__)


class EmbeddingService:
    """Keeps memory embeddings current for the active model and embeds queries.

    Failures never raise: memories keep whatever embedding they had and
    queries fall back to keyword-only ranking.
    """

    def __init__(self,
                 embedder: Optional[Any] = None,
                 embed_config: Optional[BedrockEmbedConfig] = None,
                 timeout_seconds: Optional[float] = None):
        """
        Initialize embedding service.

        Args:
            embedder: Object with embed_documents(texts) and embed_query(text), Bedrock client if None
            embed_config: Embedding settings, uses global config if None
            timeout_seconds: Bound on each embedding call, extraction timeout if None
        """
        self.config = embed_config or config.bedrock_embed
        self.embedder = embedder or BedrockEmbed(self.config)
        self.timeout_seconds = timeout_seconds or config.extraction.timeout_seconds
        logger.info(f'Initialized EmbeddingService ({self.model_version})')

    @property
    def model_version(self) -> str:
        return self.config.model_version

    def needs_embedding(self, memory: Memory) -> bool:
        return not memory.embedding or memory.embedding_model != self.model_version

    async def embed_memories(self, memories: Sequence[Memory], deadline: Optional[Deadline] = None) -> List[Memory]:
        """
        Embed memories lacking a current embedding, in batches.

        Args:
            memories: Candidates, memories already embedded by the active model are skipped
            deadline: Request deadline; each batch gets at most the time left on it

        Returns:
            The memories that received a new embedding
        """
        pending = [m for m in memories if self.needs_embedding(m)]
        updated: List[Memory] = []
        batch_size = max(1, self.config.batch_size)

        for start in range(0, len(pending), batch_size):
            batch = pending[start:start + batch_size]
            texts = [memory_text(m.content, m.context) for m in batch]
            try:
                vectors = await asyncio.wait_for(asyncio.to_thread(self.embedder.embed_documents, texts),
                                                 timeout=step_timeout(self.timeout_seconds, deadline))
            except (asyncio.TimeoutError, BedrockEmbedError) as e:
                logger.warning(f'Embedding batch of {len(batch)} memories failed: {e!r}')
                continue

            if len(vectors) != len(batch):
                logger.warning(f'Embedding batch returned {len(vectors)} vectors for {len(batch)} memories')
                continue

            for memory, vector in zip(batch, vectors):
                if vector:
                    memory.embedding = [float(x) for x in vector]
                    memory.embedding_model = self.model_version
                    updated.append(memory)

        if updated:
            logger.info(f'Embedded {len(updated)} memories with {self.model_version}')
        return updated

    async def embed_query(self, text: str) -> Optional[List[float]]:
        """Query vector, or None when the text is empty or the call fails."""
        if not text or not text.strip():
            return None
        try:
            vector = await asyncio.wait_for(asyncio.to_thread(self.embedder.embed_query, text),
                                            timeout=self.timeout_seconds)
        except (asyncio.TimeoutError, BedrockEmbedError) as e:
            logger.warning(f'Query embedding failed, falling back to keywords: {e!r}')
            return None
        return list(vector) if vector else None

    def health_check(self) -> bool:
        return self.embedder.health_check()
