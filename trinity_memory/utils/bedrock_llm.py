"""
Amazon Bedrock LLM client wrapper with retry logic and error handling.
"""

import json
import random
import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .errors import DependencyError
from .json_utils import clean_json_response
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockLLMError(DependencyError):
    """Custom exception for Bedrock LLM errors."""
    pass


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig, client: Optional[Any] = None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (built from config if None)
        """
        self.config = config
        self.model_id = config.model_id

        # Create Bedrock runtime client with timeout configuration
        self.bedrock_runtime = client or boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=config.connect_timeout,
                read_timeout=config.read_timeout,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate response using Bedrock LLM with retry logic.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        max_tokens = max_tokens or self.config.max_tokens
        temperature = self.config.temperature if temperature is None else temperature
        stop_sequences = stop_sequences or []

        system = [{'text': system_prompt}]
        inf_params = {
            'maxTokens': max_tokens,
            'temperature': temperature,
            'stopSequences': stop_sequences,
        }

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{self.config.retry_attempts}')

                stream = self.bedrock_runtime.converse_stream(modelId=self.model_id,
                                                              messages=messages,
                                                              system=system,
                                                              inferenceConfig=inf_params).get('stream')

                msg = ''
                invoke_metrics = None

                if stream:
                    for event in stream:
                        if 'contentBlockDelta' in event:
                            msg += event['contentBlockDelta']['delta']['text']
                        if 'metadata' in event:
                            invoke_metrics = {**event['metadata']['usage'], **event['metadata']['metrics']}

                logger.debug(f'Bedrock LLM response generated successfully (length: {len(msg)})')
                return msg, invoke_metrics

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts')

    def complete(self, prompt: str, system_prompt: str, max_tokens: Optional[int] = None) -> str:
        """
        Single-turn text completion.

        Args:
            prompt: User prompt
            system_prompt: System prompt
            max_tokens: Maximum tokens to generate (uses config default if None)

        Returns:
            Generated text, stripped
        """
        messages = [{'role': 'user', 'content': [{'text': prompt}]}]
        response, _ = self.generate_response(messages=messages, system_prompt=system_prompt, max_tokens=max_tokens)
        return response.strip()

    def extract_json(self, prompt: str, system_prompt: str, max_tokens: Optional[int] = None) -> Any:
        """
        Ask the model for a JSON document and parse it.

        The assistant turn is prefilled with a json code fence and generation stops
        at the closing fence.

        Returns:
            Parsed JSON value

        Raises:
            BedrockLLMError: If the call fails or the answer is not valid JSON
        """
        messages = [{
            'role': 'user',
            'content': [{
                'text': prompt
            }]
        }, {
            'role': 'assistant',
            'content': [{
                'text': '```json'
            }]
        }]

        response, _ = self.generate_response(messages=messages,
                                             system_prompt=system_prompt,
                                             max_tokens=max_tokens,
                                             stop_sequences=['```'])
        try:
            return json.loads(clean_json_response(response))
        except json.JSONDecodeError as e:
            logger.warning(f'Model returned malformed JSON: {e}')
            raise BedrockLLMError(f'Malformed JSON in model response: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_messages = [{'role': 'user', 'content': [{'text': 'Hi'}]}]
            response, _ = self.generate_response(messages=test_messages,
                                                 system_prompt="You are a helpful assistant. Respond with just 'OK'.",
                                                 max_tokens=10,
                                                 temperature=0.0)
            return len(response.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
