"""
Amazon Bedrock embedding client for memory and query vectors.
"""

import json
import random
import time
from typing import Any, List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)

SEARCH_DOCUMENT = 'search_document'
SEARCH_QUERY = 'search_query'


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client supporting Titan and Cohere models."""

    def __init__(self, config: BedrockEmbedConfig, client: Any = None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Pre-built bedrock-runtime client, created from config if None
        """
        self.config = config
        self.model_id = config.model_id
        self.model_version = config.model_version
        self.dimension = config.dimension

        if 'cohere' in self.model_id.lower() and self.dimension != 1024:
            raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.dimension}')

        self.bedrock = client or boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id} ({self.model_version})')

    @property
    def is_cohere(self) -> bool:
        return 'cohere' in self.model_id.lower()

    def _invoke(self, payload: dict) -> dict:
        """
        Invoke the embedding model, retrying throttles and transient failures.

        Raises:
            BedrockEmbedError: If all retry attempts fail
        """
        body = json.dumps(payload)

        for attempt in range(self.config.retry_attempts):
            try:
                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')
                return json.loads(response.get('body').read())

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}')

            except (ValueError, AttributeError) as e:
                logger.error(f'Malformed Bedrock Embed response: {e}')
                raise BedrockEmbedError(f'Malformed Bedrock Embed response: {e}')

        raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

    def _embed_batch(self, texts: List[str], input_type: str) -> List[List[float]]:
        if self.is_cohere:
            response = self._invoke({'input_type': input_type, 'texts': texts})
            embeddings = response.get('embeddings') or []
            if len(embeddings) != len(texts):
                raise BedrockEmbedError(f'Expected {len(texts)} embeddings, got {len(embeddings)}')
            return embeddings

        if 'titan' in self.model_id.lower():
            # Titan embeds one text per request
            vectors = []
            for text in texts:
                response = self._invoke({'inputText': text, 'dimensions': self.dimension})
                vector = response.get('embedding')
                if not vector:
                    raise BedrockEmbedError('Titan response contained no embedding')
                vectors.append(vector)
            return vectors

        raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        """
        Embed memory contents in batches of config.batch_size.

        Args:
            texts: Non-empty texts to embed

        Returns:
            One vector per input text, in order

        Raises:
            BedrockEmbedError: If any batch fails
        """
        vectors: List[List[float]] = []
        batch_size = max(1, self.config.batch_size)
        for start in range(0, len(texts), batch_size):
            batch = texts[start:start + batch_size]
            vectors.extend(self._embed_batch(batch, SEARCH_DOCUMENT))
        logger.debug(f'Embedded {len(texts)} documents')
        return vectors

    def embed_document(self, text: str) -> List[float]:
        """Embed a single memory or summary text; empty text yields an empty vector."""
        if not text or not text.strip():
            logger.warning('Empty text provided for document embedding')
            return []
        return self._embed_batch([text], SEARCH_DOCUMENT)[0]

    def embed_query(self, text: str) -> List[float]:
        """Embed retrieval query text; empty text yields an empty vector."""
        if not text or not text.strip():
            logger.warning('Empty text provided for query embedding')
            return []
        return self._embed_batch([text], SEARCH_QUERY)[0]

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return len(self.embed_document('test')) == self.dimension
        except BedrockEmbedError as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
