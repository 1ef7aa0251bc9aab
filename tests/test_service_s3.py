"""
Tests for S3 service operations.
"""

import pytest
from unittest.mock import patch, MagicMock
from botocore.exceptions import ClientError
import sys
import os

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

from services import s3


class TestFetchObject:
    """Test fetching objects from S3."""

    @patch('services.s3.s3_client')
    def test_fetch_success(self, mock_s3_client):
        """Test successful raw email fetch from S3."""
        # Setup
        sample_email = b"From: test@example.com\r\nSubject: Test\r\n\r\nBody content"
        mock_s3_client.get_object.return_value = {
            'Body': MagicMock(read=lambda: sample_email)
        }

        # Execute
        result = s3.fetch_object('test-bucket', 'inbound/abc123')

        # Assert
        assert result == sample_email
        mock_s3_client.get_object.assert_called_once_with(
            Bucket='test-bucket',
            Key='inbound/abc123'
        )

    @pytest.mark.parametrize('code', ['NoSuchKey', 'NoSuchBucket'])
    @patch('services.s3.s3_client')
    def test_fetch_missing_raises_value_error(self, mock_s3_client, code):
        mock_s3_client.get_object.side_effect = ClientError(
            {'Error': {'Code': code, 'Message': 'not found'}},
            'GetObject'
        )

        with pytest.raises(ValueError):
            s3.fetch_object('test-bucket', 'inbound/missing')

    @patch('services.s3.s3_client')
    def test_fetch_other_client_error_propagates(self, mock_s3_client):
        mock_s3_client.get_object.side_effect = ClientError(
            {'Error': {'Code': 'AccessDenied', 'Message': 'Access Denied'}},
            'GetObject'
        )

        with pytest.raises(ClientError):
            s3.fetch_object('test-bucket', 'inbound/abc123')
