"""
Best-effort analytics recording and webhook alerts.

Nothing here may affect a routing decision: every failure is logged and
swallowed. Side tasks are only started after the decision has been carried
out, and run_all() joins them before the invocation returns (a frozen Lambda
would otherwise never finish them).
"""

import concurrent.futures
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
from botocore.exceptions import ClientError

from domain.models import ClassificationResult, Entity, entities_of_type

logger = logging.getLogger(__name__)

ANALYTICS_TTL_SECONDS = 86400 * 30
INSIGHTS_TTL_SECONDS = 86400 * 90
FINANCIAL_TTL_SECONDS = 86400 * 30

HTTP_TIMEOUT_SECONDS = float(os.environ.get('HTTP_TIMEOUT_SECONDS', '10'))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Notifier:
    """
    Analytics recorder and webhook notifier.

    Args:
        store: Key-value store (get/put with TTL); None disables recording
        webhook_url: Webhook endpoint; None disables notifications
        session: requests.Session for webhook calls
        timeout: Webhook timeout in seconds
    """

    def __init__(
        self,
        store: Optional[Any] = None,
        webhook_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS
    ):
        self.store = store
        self.webhook_url = webhook_url
        self.session = session or requests.Session()
        self.timeout = timeout

    def record(self, event: Dict[str, Any]) -> None:
        """
        Store an analytics event under email:<domain>:<transactionId> (30 days).
        """
        key = f"email:{event.get('domain', 'unknown')}:{event.get('transactionId', 'unknown')}"
        self._put(key, {**event, 'timestamp': _now_iso()}, ANALYTICS_TTL_SECONDS)

    def record_insights(
        self,
        transaction_id: str,
        domain: str,
        classification: ClassificationResult,
        extra: Optional[Dict[str, Any]] = None
    ) -> None:
        """Store AI insights under ai:<domain>:<transactionId> (90 days)."""
        insights = {
            'transactionId': transaction_id,
            'domain': domain,
            **classification.to_dict(),
            **(extra or {}),
        }
        self._put(f"ai:{domain}:{transaction_id}", insights, INSIGHTS_TTL_SECONDS)

    def record_financial(
        self,
        transaction_id: str,
        sender: str,
        subject: str,
        entities: Iterable[Entity]
    ) -> None:
        """Store amounts and dates from a financial email for accounting."""
        entities = list(entities)
        amounts = [
            e for e in entities
            if e.type.lower() == 'amount' or '$' in e.value
        ]
        dates = entities_of_type(entities, 'date')
        logger.info(f"[{transaction_id}] Financial email: amounts={len(amounts)}, dates={len(dates)}")

        self._put(f"financial:{transaction_id}", {
            'from': sender,
            'subject': subject,
            'amounts': [{'type': e.type, 'value': e.value} for e in amounts],
            'dates': [{'type': e.type, 'value': e.value} for e in dates],
            'timestamp': _now_iso(),
        }, FINANCIAL_TTL_SECONDS)

    def notify(self, event: Dict[str, Any], extra_headers: Optional[Dict[str, str]] = None) -> None:
        """POST an event to the webhook."""
        if not self.webhook_url:
            return

        headers = {
            'Content-Type': 'application/json',
            'X-Email-Router-Event': 'email',
            **(extra_headers or {}),
        }
        try:
            response = self.session.post(
                self.webhook_url,
                json={**event, 'timestamp': _now_iso()},
                headers=headers,
                timeout=self.timeout
            )
            if not response.ok:
                logger.warning(f"Webhook returned {response.status_code} for event {event.get('event')}")
        except requests.RequestException as e:
            logger.error(f"Webhook failed: {e}")

    def notify_priority(self, event: Dict[str, Any]) -> None:
        self.notify({**event, 'event': 'priority_email'})

    def notify_urgent(self, event: Dict[str, Any], urgency: str) -> None:
        self.notify({**event, 'alert': 'URGENT_EMAIL'}, {'X-Urgency': urgency})

    def _put(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        if self.store is None:
            return
        try:
            self.store.put(key, json.dumps(value, default=str).encode('utf-8'), ttl_seconds)
        except (ClientError, ValueError) as e:
            logger.error(f"Analytics logging failed for {key}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error logging analytics for {key}: {e}")


def run_all(tasks: List[Callable[[], None]], max_workers: int = 4) -> None:
    """
    Run side tasks concurrently and wait for all of them.

    Failures are logged; none propagate.
    """
    if not tasks:
        return
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(task) for task in tasks]
        for future in concurrent.futures.as_completed(futures):
            try:
                future.result()
            except Exception as e:
                logger.error(f"Side task failed: {e}", exc_info=True)
