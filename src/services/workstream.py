"""
Workstream dispatch.

Qualifying messages (litigation/evidence, finance, compliance intake) are
POSTed to a dedicated intake service instead of being forwarded. If the
intake service does not accept the message, the original message is
forwarded to the fallback (management) address so nothing is lost.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

import requests

from domain.models import ClassificationResult, DispatchOutcome, InboundMessage, MessageSource

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = float(os.environ.get('HTTP_TIMEOUT_SECONDS', '10'))


def build_payload(
    message: InboundMessage,
    classification: ClassificationResult,
    workstream: str,
    transaction_id: str
) -> Dict[str, Any]:
    """JSON body for the intake service."""
    return {
        'transactionId': transaction_id,
        'from': message.sender,
        'to': message.recipient,
        'subject': message.subject,
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'workstream': workstream,
        'aiInsights': classification.to_dict(),
        'rawEmail': message.raw.decode('utf-8', errors='replace'),
    }


class WorkstreamDispatcher:
    """
    Posts messages to workstream intake endpoints.

    Args:
        endpoints: Workstream name -> intake URL
        session: requests.Session (one per dispatcher, reused across calls)
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        endpoints: Mapping[str, str],
        session: Optional[requests.Session] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS
    ):
        self.endpoints = endpoints
        self.session = session or requests.Session()
        self.timeout = timeout

    def dispatch(
        self,
        source: MessageSource,
        classification: ClassificationResult,
        workstream: str,
        transaction_id: str,
        fallback_address: str,
        headers: Optional[Dict[str, str]] = None
    ) -> DispatchOutcome:
        """
        Submit the message to a workstream, forwarding to fallback_address on failure.

        Args:
            source: Message source (used for the fallback forward)
            classification: Classification to include in the payload
            workstream: Workstream name ("litigation", "finance", "compliance")
            transaction_id: Router transaction ID
            fallback_address: Destination if submission fails
            headers: Tracking/priority headers for the fallback forward

        Returns:
            DispatchOutcome

        Raises:
            Exceptions from the fallback forward itself propagate to the caller,
            whose top-level handler makes a last-resort forward attempt.
        """
        message = source.message
        url = self.endpoints.get(workstream)

        if not url:
            error = f"No router URL configured for {workstream} workstream"
            return self._fall_back(source, workstream, transaction_id, fallback_address, headers, error)

        payload = build_payload(message, classification, workstream, transaction_id)
        request_headers = {
            'Content-Type': 'application/json',
            'X-Transaction-ID': transaction_id,
            'X-Email-Router-Event': f"{workstream}-intake",
            'X-Workstream': workstream,
        }

        try:
            response = self.session.post(url, json=payload, headers=request_headers, timeout=self.timeout)
        except requests.RequestException as e:
            return self._fall_back(source, workstream, transaction_id, fallback_address, headers, str(e))

        if not response.ok:
            error = f"{workstream} router returned {response.status_code}: {response.text[:200]}"
            return self._fall_back(
                source, workstream, transaction_id, fallback_address, headers, error, response.status_code
            )

        logger.info(f"[{transaction_id}] Successfully sent to {workstream} router")
        return DispatchOutcome(workstream=workstream, delivered=True, status_code=response.status_code)

    def _fall_back(
        self,
        source: MessageSource,
        workstream: str,
        transaction_id: str,
        fallback_address: str,
        headers: Optional[Dict[str, str]],
        error: str,
        status_code: Optional[int] = None
    ) -> DispatchOutcome:
        logger.error(
            f"[{transaction_id}] Failed to send to {workstream} router: {error}; "
            f"forwarding to {fallback_address}"
        )
        source.forward(fallback_address, {
            **(headers or {}),
            'X-Transaction-ID': transaction_id,
            'X-Workstream-Fallback': workstream,
        })
        return DispatchOutcome(
            workstream=workstream,
            delivered=False,
            status_code=status_code,
            fallback_address=fallback_address,
            error=error,
        )
