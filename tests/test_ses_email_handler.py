"""
Tests for the SES email router Lambda handler.
"""

import json
import pytest
from unittest.mock import Mock, patch, MagicMock
from botocore.exceptions import ClientError
import sys
import os

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

# Import the handler and dependencies
import ses_email_handler


@pytest.fixture
def sqs_event():
    """Load sample SQS event from test data."""
    with open(os.path.join(os.path.dirname(__file__), 'events', 'sqs-event.json')) as f:
        return json.load(f)


@pytest.fixture
def mock_context():
    """Mock Lambda context."""
    context = Mock()
    context.aws_request_id = "test-request-id"
    context.function_name = "ses-email-router-test"
    context.get_remaining_time_in_millis.return_value = 60000
    return context


@pytest.fixture
def sample_email_content():
    """Sample raw email content in MIME format."""
    return b"""From: someone@partner.org
To: info@example.net
Subject: Hello
MIME-Version: 1.0
Content-Type: text/plain; charset="UTF-8"

Just checking in.
"""


class TestLambdaHandler:
    """Test the main Lambda handler function."""

    @patch('services.ses_delivery.ses_client')
    @patch('services.s3.s3_client')
    def test_lambda_handler_forwards(self, mock_s3_client, mock_ses_client, sqs_event, mock_context,
                                     sample_email_content):
        mock_s3_client.get_object.return_value = {
            'Body': MagicMock(read=lambda: sample_email_content)
        }
        mock_ses_client.send_raw_email.return_value = {'MessageId': 'out-1'}

        result = ses_email_handler.lambda_handler(sqs_event, mock_context)

        assert result == {"batchItemFailures": []}
        mock_s3_client.get_object.assert_called_once_with(
            Bucket='ses-inbound-123456789012',
            Key='inbound/o3vrnil0e2ic28trm7dfhrc2v0clambda4nbp0g1'
        )
        mock_ses_client.send_raw_email.assert_called_once()
        assert mock_ses_client.send_raw_email.call_args[1]['Destinations'] == [
            ses_email_handler.email_processor.config.default_for('example.net')
        ]

    @patch('services.s3.s3_client')
    def test_lambda_handler_s3_error(self, mock_s3_client, sqs_event, mock_context):
        """S3 fetch fails - message is still deleted."""
        mock_s3_client.get_object.side_effect = ClientError(
            {'Error': {'Code': 'NoSuchKey', 'Message': 'The specified key does not exist.'}},
            'GetObject'
        )

        result = ses_email_handler.lambda_handler(sqs_event, mock_context)

        assert result["batchItemFailures"] == []

    def test_lambda_handler_invalid_ses_notification(self, mock_context):
        """Invalid SES notification - message is still deleted."""
        invalid_event = {
            "Records": [{
                "messageId": "test-message-id",
                "body": json.dumps({"invalid": "data"})
            }]
        }

        result = ses_email_handler.lambda_handler(invalid_event, mock_context)

        assert result["batchItemFailures"] == []

    @patch('services.ses_delivery.ses_client')
    @patch('services.s3.s3_client')
    def test_lambda_handler_forward_failure(self, mock_s3_client, mock_ses_client, sqs_event, mock_context,
                                            sample_email_content):
        """SES rejects every send - fallback is attempted and the message is still deleted."""
        mock_s3_client.get_object.return_value = {
            'Body': MagicMock(read=lambda: sample_email_content)
        }
        mock_ses_client.send_raw_email.side_effect = ClientError(
            {'Error': {'Code': 'MessageRejected', 'Message': 'Email address is not verified.'}},
            'SendRawEmail'
        )

        result = ses_email_handler.lambda_handler(sqs_event, mock_context)

        assert result == {"batchItemFailures": []}
        assert mock_ses_client.send_raw_email.call_count == 2

    def test_lambda_handler_passes_remaining_time(self, sqs_event, mock_context):
        with patch.object(ses_email_handler, 'email_processor') as mock_processor:
            mock_processor.process_ses_record.return_value = []

            ses_email_handler.lambda_handler(sqs_event, mock_context)

            record, remaining = mock_processor.process_ses_record.call_args[0]
            assert record['messageId'] == '2e1424d4-f796-459a-8184-9c92662be6da'
            assert remaining() == 60000

    def test_lambda_handler_context_without_deadline(self, sqs_event):
        with patch.object(ses_email_handler, 'email_processor') as mock_processor:
            mock_processor.process_ses_record.return_value = []

            ses_email_handler.lambda_handler(sqs_event, object())

            assert mock_processor.process_ses_record.call_args[0][1] is None

    def test_lambda_handler_multiple_records(self, mock_context):
        event = {"Records": [{"messageId": f"msg-{i}", "body": "{}"} for i in range(3)]}

        with patch.object(ses_email_handler, 'email_processor') as mock_processor:
            mock_processor.process_ses_record.return_value = []

            result = ses_email_handler.lambda_handler(event, mock_context)

        assert result == {"batchItemFailures": []}
        assert mock_processor.process_ses_record.call_count == 3

    def test_lambda_handler_empty_event(self, mock_context):
        assert ses_email_handler.lambda_handler({}, mock_context) == {"batchItemFailures": []}
