"""
Amazon Bedrock Runtime inference module.

This module provides the narrow text-in/text-out inference capability used by
the classification engine. Callers are expected to treat every failure as
transient and fall back to heuristic defaults.

Usage:
    from integrations import bedrock_inference

    if bedrock_inference.is_configured():
        category = bedrock_inference.run(prompt="Classify ...", max_tokens=10)
"""

import logging
import os
import time

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

# Configure logging
logger = logging.getLogger(__name__)


# ============================================================================
# Custom Exception Classes
# ============================================================================

class ConfigurationError(Exception):
    """Raised when module configuration is invalid or missing."""
    pass


class InferenceError(Exception):
    """Raised when the model call fails or returns an unusable response."""
    pass


class ThrottlingException(InferenceError):
    """Raised when Bedrock API requests are throttled."""
    pass


class ValidationException(Exception):
    """Raised when input validation fails."""
    pass


# ============================================================================
# Module-Level Configuration and Initialization
# ============================================================================

MODEL_ID = os.environ.get('BEDROCK_MODEL_ID', '')


def _initialize_bedrock_client():
    """
    Initialize boto3 Bedrock Runtime client with timeout configuration.

    Returns:
        boto3.client: Configured Bedrock Runtime client
    """
    # Classification calls are short; fail fast and let the caller fall back
    client_config = Config(
        retries={
            'max_attempts': 0,  # 0 attempts = 1 total call, NO retries
            'mode': 'standard'
        },
        connect_timeout=5,
        read_timeout=20
    )

    region = os.environ.get('AWS_REGION', os.environ.get('AWS_DEFAULT_REGION', 'us-west-2'))

    client = boto3.client(
        'bedrock-runtime',
        region_name=region,
        config=client_config
    )

    logger.info(
        f"Bedrock Runtime client initialized: region={region}, "
        f"connect_timeout=5s, read_timeout=20s, max_attempts=0 (no retries)"
    )
    return client


# Initialize at module import time (thread-safe, reused across invocations)
bedrock_client = _initialize_bedrock_client()


def is_configured() -> bool:
    """True if a model ID is configured."""
    return bool(MODEL_ID)


# ============================================================================
# Core Inference Function
# ============================================================================

def run(prompt: str, max_tokens: int) -> str:
    """
    Run a single-turn prompt against the configured model.

    Args:
        prompt: The prompt text (required, non-empty string)
        max_tokens: Upper bound on generated tokens

    Returns:
        str: The model's response text (stripped)

    Raises:
        ValidationException: If prompt or max_tokens is invalid
        ConfigurationError: If BEDROCK_MODEL_ID is not set
        ThrottlingException: If the request is throttled
        InferenceError: For any other service or transport failure
    """
    if not prompt or not isinstance(prompt, str):
        raise ValidationException(
            f"Prompt must be a non-empty string. Got: {type(prompt).__name__}"
        )
    if max_tokens <= 0:
        raise ValidationException(f"max_tokens must be positive. Got: {max_tokens}")

    if not is_configured():
        raise ConfigurationError(
            "BEDROCK_MODEL_ID environment variable is required but not set."
        )

    start_time = time.time()

    try:
        response = bedrock_client.converse(
            modelId=MODEL_ID,
            messages=[{'role': 'user', 'content': [{'text': prompt}]}],
            inferenceConfig={'maxTokens': max_tokens, 'temperature': 0}
        )
    except ClientError as e:
        error_code = e.response.get('Error', {}).get('Code', 'Unknown')
        error_message = e.response.get('Error', {}).get('Message', str(e))

        if error_code == 'ThrottlingException':
            logger.error(f"Request throttled: {error_message}")
            raise ThrottlingException(f"Request throttled by Bedrock service: {error_message}")

        logger.error(
            f"Inference failed: error_code={error_code}, "
            f"error_message={error_message}, model_id={MODEL_ID}"
        )
        raise InferenceError(f"{error_code}: {error_message}")
    except BotoCoreError as e:
        logger.error(f"Inference transport error: {e}")
        raise InferenceError(str(e))

    try:
        content = response['output']['message']['content']
        text = ''.join(block.get('text', '') for block in content)
    except (KeyError, TypeError) as e:
        raise InferenceError(f"Unexpected converse response shape: missing {e}")

    execution_time = time.time() - start_time
    logger.info(
        f"Inference succeeded: prompt_length={len(prompt)}, "
        f"response_length={len(text)}, execution_time={execution_time:.2f}s"
    )

    return text.strip()
