"""
AWS Lambda handler for routing SES-received email delivered through SQS.

Thin orchestration layer that delegates to EmailProcessor.
Policy: Always delete messages (no retries). Errors logged to CloudWatch.
"""

import logging
import os
from typing import Dict, Any

from domain.email_processor import EmailProcessor

# Configure logging
logger = logging.getLogger()
logger.setLevel(logging.INFO)

# Add console handler for local testing (AWS Lambda provides handlers automatically)
if not logger.handlers:
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter('%(levelname)s - %(message)s')
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

# Time kept in reserve after classification for delivery and analytics
DEADLINE_MARGIN_MS = int(os.environ.get('DEADLINE_MARGIN_MS', '5000'))

# Initialize processor once at module level (reused across invocations)
email_processor = EmailProcessor.from_environment(deadline_margin_ms=DEADLINE_MARGIN_MS)


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Route SES email notifications from SQS.

    Args:
        event: Lambda event with SQS records
        context: Lambda context (remaining time bounds classification)

    Returns:
        Dict with batchItemFailures (always empty - no retries)
    """
    logger.info("=" * 70)
    logger.info("SES Email Router - Started")
    logger.info("=" * 70)

    records = event.get('Records', [])
    logger.info(f"Processing batch of {len(records)} message(s)")

    remaining_time_ms = getattr(context, 'get_remaining_time_in_millis', None)

    results = []
    for record in records:
        record_results = email_processor.process_ses_record(record, remaining_time_ms)
        results.extend(record_results)

        for result in record_results:
            if result.success:
                logger.info(f"Routed {result.message_id} -> {result.recipient}: {result.decision}")
            else:
                logger.warning(
                    f"Processed message {result.message_id} with ERRORS: "
                    f"{result.error_message}"
                )

    logger.info("=" * 70)
    logger.info(f"Batch processing complete: {len(records)} message(s), {len(results)} recipient(s)")
    success_count = sum(1 for r in results if r.success)
    error_count = len(results) - success_count
    logger.info(f"  Success: {success_count}")
    logger.info(f"  Errors: {error_count}")
    logger.info("=" * 70)

    return {"batchItemFailures": []}
