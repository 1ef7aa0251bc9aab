"""
Classification prompt templates.

Templates are loaded with the following priority:
1. S3 override (optional, lets prompts be tuned without redeploying)
2. Local filesystem (prompts/ directory packaged with the Lambda)

Loaded templates are cached in memory for warm invocations with a TTL. The
cache is shared by the classifier's worker threads; a lock keeps concurrent
first loads from racing.
"""

import logging
import os
import threading
import time
from pathlib import Path
from typing import Dict, Tuple

from botocore.exceptions import ClientError

from services import s3 as s3_service

logger = logging.getLogger(__name__)

# Cache TTL in seconds (default: 5 minutes)
CACHE_TTL_SECONDS = int(os.environ.get('PROMPT_CACHE_TTL', '300'))

# Module-level cache: {cache_key: (prompt_content, timestamp)}
_prompt_cache: Dict[str, Tuple[str, float]] = {}
_cache_lock = threading.Lock()

PROMPT_BUCKET = os.environ.get('PROMPT_BUCKET')
PROMPT_KEY_PREFIX = os.environ.get('PROMPT_KEY_PREFIX', 'prompts/')

# src/services/prompts.py -> src/prompts/
PROMPTS_DIR = Path(__file__).parent.parent / 'prompts'


def _load_from_filesystem(prompt_name: str) -> str:
    prompt_path = PROMPTS_DIR / prompt_name
    with open(prompt_path, 'r', encoding='utf-8') as f:
        content = f.read()

    logger.info(f"Loaded prompt from filesystem: {prompt_name} ({len(content)} characters)")
    return content


def _load_from_s3(prompt_name: str) -> str:
    """
    Load prompt from the S3 override location.

    Raises:
        ValueError: If PROMPT_BUCKET not set or prompt not found
    """
    if not PROMPT_BUCKET:
        raise ValueError("PROMPT_BUCKET environment variable not set")

    s3_key = f"{PROMPT_KEY_PREFIX}{prompt_name}"
    content = s3_service.fetch_object(PROMPT_BUCKET, s3_key).decode('utf-8')
    logger.info(f"Loaded prompt from S3: s3://{PROMPT_BUCKET}/{s3_key} ({len(content)} characters)")
    return content


def load_prompt(prompt_name: str, use_cache: bool = True) -> str:
    """
    Load a prompt template with caching and fallback.

    Priority: Cache -> S3 override -> Local filesystem

    Args:
        prompt_name: Prompt file name (e.g., "category.txt")
        use_cache: Use cached version if available (default: True)

    Returns:
        str: Prompt template content

    Raises:
        ValueError: If prompt not found
    """
    cache_key = f"prompt:{prompt_name}"

    with _cache_lock:
        current_time = time.time()

        if use_cache and cache_key in _prompt_cache:
            cached_content, cached_time = _prompt_cache[cache_key]
            if current_time - cached_time < CACHE_TTL_SECONDS:
                return cached_content
            logger.info(f"Cache expired for prompt: {prompt_name}, reloading...")

        prompt_content = None

        if PROMPT_BUCKET:
            try:
                prompt_content = _load_from_s3(prompt_name)
            except (ClientError, ValueError) as e:
                logger.info(
                    f"S3 override not available ({e.__class__.__name__}), "
                    f"falling back to local filesystem"
                )

        if prompt_content is None:
            try:
                prompt_content = _load_from_filesystem(prompt_name)
            except FileNotFoundError:
                logger.error(
                    f"Prompt not found: {prompt_name}. "
                    f"Expected location: {PROMPTS_DIR / prompt_name}"
                )
                raise ValueError(
                    f"Prompt '{prompt_name}' not found in S3 or local filesystem"
                )

        _prompt_cache[cache_key] = (prompt_content, current_time)

    return prompt_content


def format_prompt(template: str, **variables) -> str:
    """
    Format prompt template with variables.

    Substituted values are inserted verbatim; braces inside email content
    are not interpreted as placeholders.

    Args:
        template: The prompt template string (with {variable} placeholders)
        **variables: Variables to substitute in the template

    Returns:
        str: Formatted prompt

    Raises:
        ValueError: If a required variable is missing from the template

    Example:
        >>> format_prompt("Subject: {subject}", subject="Invoice {42}")
        'Subject: Invoice {42}'
    """
    try:
        return template.format(**variables)
    except KeyError as e:
        missing_var = str(e).strip("'")
        logger.error(f"Missing variable in prompt template: {missing_var}")
        raise ValueError(f"Missing required variable in prompt: {missing_var}")


def clear_cache() -> None:
    """Clear the prompt cache (forces a reload on next use)."""
    with _cache_lock:
        _prompt_cache.clear()
    logger.info("Prompt cache cleared")
