"""
Amazon Bedrock embedding client wrapper with retry logic and error handling.
"""

import json
import random
import time
from typing import Any, List, Optional, Sequence

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .errors import DependencyError
from .logging_config import get_logger

logger = get_logger(__name__)

# Cohere embed models accept at most 96 texts per request
COHERE_BATCH_SIZE = 96


class BedrockEmbedError(DependencyError):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig, client: Optional[Any] = None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (built from config if None)
        """
        self.config = config
        self.model_id = config.model_id
        self.output_embedding_length = config.dimension

        if 'cohere' in self.model_id.lower() and self.output_embedding_length != 1024:
            raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.output_embedding_length}')

        # Create Bedrock runtime client
        self.bedrock = client or boto3.client(service_name='bedrock-runtime',
                                              region_name=config.region,
                                              config=BotoConfig(connect_timeout=config.connect_timeout,
                                                                read_timeout=config.read_timeout,
                                                                retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with retry logic.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            BedrockEmbedError: If all retry attempts fail
        """
        body = json.dumps(data)

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock Embed request attempt {attempt + 1}/{self.config.retry_attempts}')

                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')

                result = json.loads(response.get('body').read())
                logger.debug('Bedrock Embed request successful')
                return result

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}')

        raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

    def _embed(self, texts: Sequence[str], input_type: str) -> List[List[float]]:
        model = self.model_id.lower()

        if 'titan' in model:
            embeddings = []
            for text in texts:
                response = self._call_with_retry({'inputText': text, 'dimensions': self.output_embedding_length})
                embedding = response.get('embedding')
                if not embedding:
                    raise BedrockEmbedError('Titan response contained no embedding')
                embeddings.append(embedding)
            return embeddings

        if 'cohere' in model:
            embeddings = []
            for start in range(0, len(texts), COHERE_BATCH_SIZE):
                batch = list(texts[start:start + COHERE_BATCH_SIZE])
                response = self._call_with_retry({'input_type': input_type, 'texts': batch})
                batch_embeddings = response.get('embeddings') or []
                if len(batch_embeddings) != len(batch):
                    raise BedrockEmbedError(f'Expected {len(batch)} embeddings, got {len(batch_embeddings)}')
                embeddings.extend(batch_embeddings)
            return embeddings

        raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Generate embeddings for a batch of document chunks.

        Args:
            texts: Chunk texts to embed

        Returns:
            One embedding per input text, in input order

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        if not texts:
            return []

        # Blank chunks still occupy a slot so ids stay aligned with chunk indexes
        if any(not text or not text.strip() for text in texts):
            logger.warning('Empty text provided for document embedding')
            present = [i for i, text in enumerate(texts) if text and text.strip()]
            embedded = self._embed([texts[i] for i in present], 'search_document') if present else []
            result = [[0.0] * self.output_embedding_length for _ in texts]
            for i, embedding in zip(present, embedded):
                result[i] = embedding
            return result

        try:
            embeddings = self._embed(texts, 'search_document')
            logger.debug(f'Generated {len(embeddings)} document embeddings')
            return embeddings
        except BedrockEmbedError:
            raise
        except Exception as e:
            logger.error(f'Error generating document embeddings: {e}')
            raise BedrockEmbedError(f'Document embedding failed: {e}')

    def embed_document(self, text: str) -> List[float]:
        """Generate the embedding of a single document text."""
        return self.embed_documents([text])[0]

    def embed_query(self, text: str) -> List[float]:
        """
        Generate embeddings for query text.

        Args:
            text: Query text to embed

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        if not text or not text.strip():
            logger.warning('Empty text provided for query embedding')
            return [0.0] * self.output_embedding_length

        try:
            return self._embed([text], 'search_query')[0]
        except BedrockEmbedError:
            raise
        except Exception as e:
            logger.error(f'Error generating query embedding: {e}')
            raise BedrockEmbedError(f'Query embedding failed: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_embedding = self.embed_document('test')
            return len(test_embedding) == self.output_embedding_length

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
