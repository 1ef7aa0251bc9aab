"""
Content classification on top of an opaque inference capability.

Four independent analyses (category, sentiment, urgency, entities) are issued
concurrently and joined, so latency is bounded by the slowest call. Each one
degrades to its own default on failure; classify() itself never raises.

Fallback contract (inference failure or timeout):
    category=general, sentiment=neutral, entities=[]
    urgency=high when an urgency keyword is present, otherwise normal
"""

import concurrent.futures
import logging
from typing import Callable, Dict, Optional, Tuple

from .models import (
    CATEGORIES,
    SENTIMENTS,
    URGENCIES,
    MAX_ENTITIES,
    ClassificationResult,
    Entity,
)
from services import prompts as prompt_service

logger = logging.getLogger(__name__)

# run(prompt, max_tokens) -> response text
InferenceFn = Callable[[str, int], str]

BODY_LIMIT = 500

URGENCY_KEYWORDS = (
    'urgent',
    'asap',
    'emergency',
    'critical',
    'immediately',
    'deadline',
    'expire',
    'final notice',
    'action required',
)

MAX_TOKENS = {
    'category': 10,
    'sentiment': 10,
    'urgency': 10,
    'entities': 100,
}


def has_urgency_keyword(subject: str, body: str) -> bool:
    text = f"{subject} {body}".lower()
    return any(keyword in text for keyword in URGENCY_KEYWORDS)


def parse_entities(response: str) -> Tuple[Entity, ...]:
    """Parse "type:value" lines, dropping lines without a colon."""
    entities = []
    for line in response.splitlines():
        if ':' not in line:
            continue
        entity_type, value = line.split(':', 1)
        entity_type = entity_type.strip().lstrip('-* ').strip()
        value = value.strip()
        if entity_type and value:
            entities.append(Entity(type=entity_type.lower(), value=value))
        if len(entities) == MAX_ENTITIES:
            break
    return tuple(entities)


def _normalize_token(response: str) -> str:
    return response.strip().strip('.').lower()


class ClassificationEngine:
    """
    Wraps an inference function with bounded prompts and validated outputs.

    Args:
        inference: Callable ``run(prompt, max_tokens) -> str``; may raise
        max_workers: Thread pool size for the concurrent analyses
    """

    def __init__(self, inference: InferenceFn, max_workers: int = 4):
        self.inference = inference
        self.max_workers = max_workers

    def classify(
        self,
        subject: str,
        body: str,
        timeout: Optional[float] = None
    ) -> ClassificationResult:
        """
        Classify a message.

        Args:
            subject: Subject line
            body: Body text (truncated to 500 characters for prompts)
            timeout: Seconds to wait for the analyses; unfinished ones fall back

        Returns:
            ClassificationResult (never raises)
        """
        subject = subject or ''
        urgent_keyword = has_urgency_keyword(subject, body or '')
        body = (body or '')[:BODY_LIMIT]

        fallbacks = {
            'category': 'general',
            'sentiment': 'neutral',
            'urgency': 'high' if urgent_keyword else 'normal',
            'entities': (),
        }
        results: Dict[str, object] = dict(fallbacks)

        analyses = {
            'category': self._category,
            'sentiment': self._sentiment,
            'entities': self._entities,
        }
        if urgent_keyword:
            analyses['urgency'] = self._urgency
        else:
            # No keyword: skip the model call entirely
            results['urgency'] = 'normal'

        executor = concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers)
        try:
            future_to_name = {
                executor.submit(analysis, subject, body): name
                for name, analysis in analyses.items()
            }
            done, not_done = concurrent.futures.wait(future_to_name, timeout=timeout)

            for future in done:
                name = future_to_name[future]
                try:
                    results[name] = future.result()
                except Exception as e:
                    logger.warning(f"{name} analysis failed, using fallback: {e}")

            for future in not_done:
                logger.warning(f"{future_to_name[future]} analysis timed out, using fallback")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return ClassificationResult(
            category=results['category'],
            sentiment=results['sentiment'],
            urgency=results['urgency'],
            entities=tuple(results['entities']),
        )

    def _ask(self, prompt_name: str, subject: str, body: str, max_tokens: int) -> str:
        template = prompt_service.load_prompt(prompt_name)
        prompt = prompt_service.format_prompt(template, subject=subject, body=body)
        return self.inference(prompt, max_tokens)

    def _category(self, subject: str, body: str) -> str:
        try:
            category = _normalize_token(self._ask('category.txt', subject, body, MAX_TOKENS['category']))
        except Exception as e:
            logger.error(f"Classification failed: {e}")
            return 'general'
        return category if category in CATEGORIES else 'general'

    def _sentiment(self, subject: str, body: str) -> str:
        try:
            sentiment = _normalize_token(self._ask('sentiment.txt', subject, body, MAX_TOKENS['sentiment']))
        except Exception as e:
            logger.error(f"Sentiment analysis failed: {e}")
            return 'neutral'
        return sentiment if sentiment in SENTIMENTS else 'neutral'

    def _urgency(self, subject: str, body: str) -> str:
        # Only called when an urgency keyword is present
        try:
            urgency = _normalize_token(self._ask('urgency.txt', subject, body, MAX_TOKENS['urgency']))
        except Exception as e:
            logger.error(f"Urgency check failed: {e}")
            return 'high'
        return urgency if urgency in URGENCIES else 'normal'

    def _entities(self, subject: str, body: str) -> Tuple[Entity, ...]:
        try:
            response = self._ask('entities.txt', subject, body, MAX_TOKENS['entities'])
        except Exception as e:
            logger.error(f"Entity extraction failed: {e}")
            return ()
        return parse_entities(response)
