"""
Email routing pipeline - core business logic.

This module handles the end-to-end processing of SES email notifications:
1. Parse SES notification from SQS record
2. Fetch raw email from S3
3. For each envelope recipient, run the routing pipeline:
   Rate Limiter -> Spam Filter -> Classification -> Routing Resolver
   -> (Workstream Dispatcher | forward | discard | reject)
   -> analytics and webhooks (best-effort, after the decision is carried out)
4. Return one ProcessingResult per recipient

All errors are caught and returned as ProcessingResult with success=False.
On an unexpected error the message is forwarded to the safe fallback address
so it is never silently dropped. No exceptions propagate out of the public
methods.
"""

import json
import logging
import random
import string
import time
from typing import Any, Callable, Dict, List, Optional

from .classifier import ClassificationEngine
from .config import RoutingConfig, load_routing_config
from .models import (
    ClassificationResult,
    DispatchOutcome,
    EmailMetadata,
    InboundMessage,
    MessageSource,
    ProcessingResult,
    RoutingDecision,
)
from .rate_limiter import RateLimiter
from .spam_filter import SPAM_REASON, SpamFilter
from . import router
from services import email as email_service
from services import s3 as s3_service
from services import kv_store
from services.notifier import Notifier, run_all
from services.ses_delivery import SesMessageSource
from services.workstream import WorkstreamDispatcher
from integrations import bedrock_inference

logger = logging.getLogger(__name__)

RATE_LIMIT_REASON = 'Rate limit exceeded - please try again later'

# Analytics action per reject rule
_REJECT_ACTIONS = {
    'rate-limit': 'rate_limited',
    'spam:heuristic': 'spam_blocked',
    'spam:ai': 'spam_blocked',
}

_TXID_ALPHABET = string.ascii_lowercase + string.digits


def generate_transaction_id() -> str:
    """EMAIL-<epoch ms>-<9 random base36 chars>."""
    suffix = ''.join(random.choices(_TXID_ALPHABET, k=9))
    return f"EMAIL-{int(time.time() * 1000)}-{suffix}"


class EmailProcessor:
    """
    Routes SES-received messages to their destination.

    Collaborators are injected so the pipeline can be exercised with stubs;
    from_environment() wires the production services.

    Args:
        config: Frozen routing configuration
        spam_filter: Spam heuristics
        dispatcher: Workstream dispatcher
        notifier: Analytics/webhook notifier
        rate_limiter: Rate limiter (None disables rate limiting)
        classifier: Classification engine (None when no inference is configured)
        deadline_margin_ms: Time kept in reserve for delivery after classification
    """

    def __init__(
        self,
        config: RoutingConfig,
        spam_filter: SpamFilter,
        dispatcher: WorkstreamDispatcher,
        notifier: Notifier,
        rate_limiter: Optional[RateLimiter] = None,
        classifier: Optional[ClassificationEngine] = None,
        deadline_margin_ms: int = 5000
    ):
        self.config = config
        self.spam_filter = spam_filter
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.rate_limiter = rate_limiter
        self.classifier = classifier
        self.deadline_margin_ms = deadline_margin_ms

    @classmethod
    def from_environment(cls, deadline_margin_ms: int = 5000) -> 'EmailProcessor':
        """Build a processor from environment configuration and AWS services."""
        config = load_routing_config()
        store = kv_store if kv_store.is_configured() else None

        if store is None:
            logger.info("KV_TABLE_NAME not set: rate limiting and analytics disabled")
        classifier = None
        if bedrock_inference.is_configured():
            classifier = ClassificationEngine(bedrock_inference.run)
        else:
            logger.info("BEDROCK_MODEL_ID not set: classification disabled")

        return cls(
            config=config,
            spam_filter=SpamFilter(),
            dispatcher=WorkstreamDispatcher(config.workstream_endpoints),
            notifier=Notifier(store=store, webhook_url=config.webhook_url),
            rate_limiter=RateLimiter(store) if store is not None else None,
            classifier=classifier,
            deadline_margin_ms=deadline_margin_ms,
        )

    def process_ses_record(
        self,
        record: Dict[str, Any],
        remaining_time_ms: Optional[Callable[[], int]] = None
    ) -> List[ProcessingResult]:
        """
        Process a single SQS record containing an SES notification.

        Args:
            record: SQS record dict containing SES notification
            remaining_time_ms: Callable returning the invocation's remaining time

        Returns:
            One ProcessingResult per routed recipient (errors logged)
        """
        message_id = record.get('messageId', 'UNKNOWN')
        logger.info(f"Processing SQS message: {message_id}")

        try:
            metadata = self._parse_ses_notification(record)
            logger.info(
                f"Parsed: from={metadata.source}, recipients={metadata.recipients}, "
                f"subject={metadata.subject}"
            )

            raw_email = s3_service.fetch_object(metadata.bucket_name, metadata.object_key)
            logger.info(f"Fetched {len(raw_email):,} bytes from S3")
        except Exception as e:
            logger.error(f"Failed to process {message_id}: {e}", exc_info=True)
            return [ProcessingResult(success=False, message_id=message_id, error_message=str(e))]

        results = []
        for recipient in metadata.recipients:
            try:
                message = email_service.build_inbound_message(raw_email, metadata.source, recipient)
            except Exception as e:
                results.append(self._forward_unparsed(raw_email, metadata, recipient, message_id, e))
                continue

            source = SesMessageSource(message, metadata.ses_message_id)
            result = self.route(source, remaining_time_ms)
            result.message_id = message_id
            results.append(result)

        return results

    def route(
        self,
        source: MessageSource,
        remaining_time_ms: Optional[Callable[[], int]] = None
    ) -> ProcessingResult:
        """
        Decide and carry out the routing of one message.

        Args:
            source: Message source with forward/reject actions
            remaining_time_ms: Callable returning the invocation's remaining time

        Returns:
            ProcessingResult (never raises)
        """
        message = source.message
        transaction_id = generate_transaction_id()
        started = time.time()

        logger.info(
            f"[{transaction_id}] Email received: from={message.sender}, "
            f"to={message.recipient}, domain={message.domain}, size={message.raw_size}"
        )

        try:
            classification, classified, decision = self._decide(
                message, transaction_id, self._classify_timeout(remaining_time_ms)
            )
            priority = (
                decision.action != RoutingDecision.REJECT
                and router.is_priority(message, self.config, classification)
            )
            logger.info(
                f"[{transaction_id}] Decision: {decision} (rule={decision.rule}, priority={priority})"
            )

            outcome = self._carry_out(
                source, decision, classification, classified, priority, transaction_id, started
            )
        except Exception as e:
            logger.error(f"[{transaction_id}] Error: {e}", exc_info=True)
            return self._fail(source, transaction_id, e)

        # Decision is final and delivered; side effects cannot change it
        run_all(self._side_tasks(
            source, decision, classification, classified, priority, outcome, transaction_id, started
        ))

        return ProcessingResult(
            success=True,
            message_id='',
            transaction_id=transaction_id,
            recipient=message.recipient,
            decision=decision,
            priority=priority,
            classification=classification,
        )

    def _classify_timeout(self, remaining_time_ms: Optional[Callable[[], int]]) -> Optional[float]:
        if remaining_time_ms is None:
            return None
        return max(0.0, (remaining_time_ms() - self.deadline_margin_ms) / 1000.0)

    def _decide(self, message, transaction_id: str, timeout: Optional[float]):
        """Run the admission checks and the resolver. Returns (classification, classified, decision)."""
        default = ClassificationResult.default()

        if self.rate_limiter is not None:
            # Count first, so the send that crosses the threshold is itself rejected
            self.rate_limiter.record_send(message.sender)
            if self.rate_limiter.should_reject(message.sender):
                logger.info(f"[{transaction_id}] Rate limited: {message.sender}")
                return default, False, RoutingDecision.reject(RATE_LIMIT_REASON, 'rate-limit')

        if self.spam_filter.is_obvious_spam(message):
            logger.info(f"[{transaction_id}] Quick spam check failed from {message.sender}")
            return default, False, RoutingDecision.reject(SPAM_REASON, 'spam:heuristic')

        if self.classifier is None:
            return default, False, router.resolve(message, self.config, default)

        classification = self.classifier.classify(message.subject, message.body, timeout=timeout)
        logger.info(
            f"[{transaction_id}] AI Analysis: classification={classification.category}, "
            f"sentiment={classification.sentiment}, urgency={classification.urgency}, "
            f"entities={len(classification.entities)}"
        )

        if self.spam_filter.is_ai_spam(classification):
            logger.info(f"[{transaction_id}] AI detected spam, rejecting")
            return classification, True, RoutingDecision.reject(SPAM_REASON, 'spam:ai')

        return classification, True, router.resolve(message, self.config, classification)

    def _carry_out(
        self,
        source: MessageSource,
        decision: RoutingDecision,
        classification: ClassificationResult,
        classified: bool,
        priority: bool,
        transaction_id: str,
        started: float
    ) -> Optional[DispatchOutcome]:
        """Execute exactly one terminal path for the decision."""
        message = source.message
        headers = router.tracking_headers(
            message,
            transaction_id,
            classification,
            priority,
            elapsed_ms=int((time.time() - started) * 1000),
            classified=classified,
        )

        if decision.action == RoutingDecision.FORWARD:
            logger.info(f"[{transaction_id}] Forwarding to {decision.address} (priority: {priority})")
            source.forward(decision.address, headers)
            return None

        if decision.action == RoutingDecision.DISPATCH:
            # Headers only reach the recipient if the dispatch falls back to a forward
            outcome = self.dispatcher.dispatch(
                source,
                classification,
                decision.workstream,
                transaction_id,
                decision.fallback_address,
                headers=headers,
            )
            if outcome.delivered:
                logger.info(f"[{transaction_id}] Sent to {decision.workstream} workstream")
            return outcome

        if decision.action == RoutingDecision.REJECT:
            source.reject(decision.reason)
            return None

        logger.info(f"[{transaction_id}] Discarding email to {message.recipient}")
        return None

    def _side_tasks(
        self,
        source: MessageSource,
        decision: RoutingDecision,
        classification: ClassificationResult,
        classified: bool,
        priority: bool,
        outcome: Optional[DispatchOutcome],
        transaction_id: str,
        started: float
    ) -> List[Callable[[], None]]:
        message = source.message
        delivered = decision.action in (RoutingDecision.FORWARD, RoutingDecision.DISPATCH)

        if decision.action == RoutingDecision.REJECT:
            action = _REJECT_ACTIONS.get(decision.rule, 'rejected')
        elif decision.action == RoutingDecision.DISPATCH:
            action = 'dispatch_fallback' if outcome is not None and outcome.used_fallback else 'dispatched'
        elif decision.action == RoutingDecision.FORWARD:
            action = 'forwarded'
        else:
            action = 'discarded'

        event = {
            'transactionId': transaction_id,
            'action': action,
            'rule': decision.rule,
            'from': message.sender,
            'to': message.recipient,
            'domain': message.domain,
            'forwardedTo': source.forwarded_to,
            'workstream': decision.workstream,
            'processingTime': int((time.time() - started) * 1000),
            'priority': priority,
            'size': message.raw_size,
        }
        alert = {
            'transactionId': transaction_id,
            'from': message.sender,
            'to': message.recipient,
            'subject': message.subject,
            'domain': message.domain,
            'urgency': classification.urgency,
            'classification': classification.category,
        }

        tasks = [lambda: self.notifier.record(event)]

        if classified:
            tasks.append(lambda: self.notifier.record_insights(
                transaction_id, message.domain, classification,
                {'forwardedTo': source.forwarded_to, 'workstream': decision.workstream}
            ))
        if decision.record_entities:
            tasks.append(lambda: self.notifier.record_financial(
                transaction_id, message.sender, message.subject, classification.entities
            ))
        if delivered and priority:
            tasks.append(lambda: self.notifier.notify_priority(alert))
        if delivered and classification.is_urgent:
            tasks.append(lambda: self.notifier.notify_urgent(alert, classification.urgency))

        return tasks

    def _forward_unparsed(
        self,
        raw_email: bytes,
        metadata: EmailMetadata,
        recipient: str,
        message_id: str,
        error: Exception
    ) -> ProcessingResult:
        """Send a message whose MIME could not be parsed straight to the fallback address."""
        transaction_id = generate_transaction_id()
        logger.error(
            f"[{transaction_id}] Failed to parse message for {recipient}: {error}", exc_info=True
        )
        message = InboundMessage(
            sender=metadata.source,
            recipient=recipient,
            raw_size=len(raw_email),
            raw=raw_email,
        )
        result = self._fail(SesMessageSource(message, metadata.ses_message_id), transaction_id, error)
        result.message_id = message_id
        return result

    def _fail(self, source: MessageSource, transaction_id: str, error: Exception) -> ProcessingResult:
        """Fallback forward plus a 'fallback' analytics event."""
        message = source.message
        self._fallback_forward(source, transaction_id)
        run_all([lambda: self.notifier.record({
            'transactionId': transaction_id,
            'action': 'fallback',
            'from': message.sender,
            'to': message.recipient,
            'domain': message.domain,
            'forwardedTo': source.forwarded_to,
            'error': str(error),
        })])
        return ProcessingResult(
            success=False,
            message_id='',
            transaction_id=transaction_id,
            recipient=message.recipient,
            error_message=str(error),
        )

    def _fallback_forward(self, source: MessageSource, transaction_id: str) -> None:
        """Last resort: forward to the safe default. Failures are logged, not retried."""
        if source.handled:
            logger.error(
                f"[{transaction_id}] Message already handled ({source.outcome}); "
                f"skipping fallback forward"
            )
            return

        try:
            source.forward(self.config.fallback_forward, {
                'X-Transaction-ID': transaction_id,
                'X-Email-Router-Fallback': 'true',
            })
            logger.warning(f"[{transaction_id}] Fallback forward to {self.config.fallback_forward}")
        except Exception as fallback_error:
            logger.error(f"[{transaction_id}] Fallback failed: {fallback_error}", exc_info=True)

    def _parse_ses_notification(self, record: Dict[str, Any]) -> EmailMetadata:
        """
        Parse SQS record and extract SES notification metadata.

        Handles both direct SES->SQS and SNS-wrapped notifications.

        Args:
            record: SQS record dict

        Returns:
            EmailMetadata: Structured email metadata

        Raises:
            ValueError: If notification structure is invalid
            json.JSONDecodeError: If JSON parsing fails
        """
        message_id = record.get('messageId', 'UNKNOWN')

        sqs_body = json.loads(record['body'])

        # Optional setup: SES -> SNS -> SQS
        if sqs_body.get('Type') == 'Notification' and 'Message' in sqs_body:
            logger.info("Unwrapping SNS message (SES -> SNS -> SQS)")
            ses_notification = json.loads(sqs_body['Message'])
        else:
            ses_notification = sqs_body

        if 'mail' not in ses_notification or 'receipt' not in ses_notification:
            raise ValueError("SES notification missing 'mail' or 'receipt' fields")

        mail = ses_notification['mail']
        receipt = ses_notification['receipt']
        common_headers = mail.get('commonHeaders', {})

        # Envelope sender, falling back to the header From
        source = mail.get('source') or mail.get('returnPath')
        if not source:
            from_field = common_headers.get('from', [])
            if isinstance(from_field, list) and from_field:
                source = from_field[0]
            elif isinstance(from_field, str) and from_field:
                source = from_field
        if not source:
            raise ValueError("SES notification has no sender")

        # Receipt recipients are the envelope recipients matched by our rule
        recipients = receipt.get('recipients') or mail.get('destination') or []
        if isinstance(recipients, str):
            recipients = [recipients]
        if not recipients:
            raise ValueError("SES notification has no recipients")

        action = receipt.get('action', {})
        bucket_name = action.get('bucketName')
        object_key = action.get('objectKey')

        if not bucket_name or not object_key:
            raise ValueError("Missing S3 location in SES notification")

        return EmailMetadata(
            message_id=message_id,
            ses_message_id=mail.get('messageId', ''),
            source=source,
            recipients=list(recipients),
            subject=common_headers.get('subject', ''),
            timestamp=mail.get('timestamp', ''),
            bucket_name=bucket_name,
            object_key=object_key
        )
