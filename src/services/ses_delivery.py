"""
SES implementation of the message source terminal actions.

forward() re-sends the raw message with send_raw_email; reject() returns a
delivery-failure notice to the sender with send_bounce, carrying the reason.
"""

import logging
import os
from typing import Dict

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from domain.models import InboundMessage, MessageSource
from services import email as email_service

logger = logging.getLogger(__name__)

ses_config = Config(
    retries={
        'max_attempts': 1,  # 1 attempt total (no retries)
        'mode': 'standard'
    },
    connect_timeout=5,
    read_timeout=30
)

REGION = os.environ.get('AWS_REGION', os.environ.get('AWS_DEFAULT_REGION', 'us-west-2'))

# Initialize SES client at module level (thread-safe, reused across invocations)
ses_client = boto3.client('ses', region_name=REGION, config=ses_config)

# Verified identities; default to an address on the receiving domain
FORWARD_FROM = os.environ.get('FORWARD_FROM', '')
BOUNCE_SENDER = os.environ.get('BOUNCE_SENDER', '')


class SesMessageSource(MessageSource):
    """
    A message received by SES, with forward/bounce actions.

    Args:
        message: Parsed inbound message
        ses_message_id: SES mail.messageId (required for bounces)
    """

    def __init__(self, message: InboundMessage, ses_message_id: str):
        super().__init__(message)
        self.ses_message_id = ses_message_id

    def _do_forward(self, address: str, headers: Dict[str, str]) -> None:
        forward_from = FORWARD_FROM or f"forwarder@{self.message.domain}"
        raw = email_service.prepare_forward(
            self.message.raw,
            forward_from=forward_from,
            original_sender=self.message.sender,
            extra_headers=headers
        )

        try:
            response = ses_client.send_raw_email(
                Source=forward_from,
                Destinations=[address],
                RawMessage={'Data': raw}
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            logger.error(f"Forward to {address} failed: error_code={error_code}")
            raise

        logger.info(f"Forwarded {self.message.recipient} -> {address} (ses_id={response.get('MessageId')})")

    def _do_reject(self, reason: str) -> None:
        bounce_sender = BOUNCE_SENDER or f"mailer-daemon@{self.message.domain}"

        try:
            ses_client.send_bounce(
                OriginalMessageId=self.ses_message_id,
                BounceSender=bounce_sender,
                Explanation=reason,
                BouncedRecipientInfoList=[{
                    'Recipient': self.message.recipient,
                    'BounceType': 'ContentRejected',
                }]
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            logger.error(f"Bounce for {self.message.recipient} failed: error_code={error_code}")
            raise

        logger.info(f"Rejected {self.message.recipient}: {reason}")
