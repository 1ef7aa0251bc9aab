"""
Pytest configuration and fixtures for all tests.
"""

import os
import sys
import time
from typing import Dict, List, Optional, Tuple

import pytest

# Add src to Python path before any imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

# Set up test environment variables before importing any modules
os.environ.setdefault('AWS_DEFAULT_REGION', 'us-west-2')
os.environ.setdefault('ENVIRONMENT', 'test')
os.environ.setdefault('LOG_LEVEL', 'INFO')

from domain.config import RoutingConfig  # noqa: E402
from domain.models import InboundMessage, MessageSource, HeaderMap  # noqa: E402


class FakeKVStore:
    """In-memory get/put-with-TTL store driven by an injectable clock."""

    def __init__(self, clock=time.time):
        self.clock = clock
        self.items: Dict[str, Tuple[bytes, float]] = {}
        self.puts: List[str] = []

    def get(self, key: str) -> Optional[bytes]:
        if key not in self.items:
            return None
        value, expires_at = self.items[key]
        if expires_at <= self.clock():
            return None
        return value

    def put(self, key: str, value: bytes, ttl_seconds: int) -> None:
        self.puts.append(key)
        self.items[key] = (value, self.clock() + ttl_seconds)


class RecordingMessageSource(MessageSource):
    """Message source that records terminal actions instead of sending."""

    def __init__(self, message: InboundMessage, fail_forward: bool = False, fail_reject: bool = False):
        super().__init__(message)
        self.fail_forward = fail_forward
        self.fail_reject = fail_reject
        self.forwards: List[Tuple[str, Dict[str, str]]] = []
        self.rejects: List[str] = []

    def _do_forward(self, address, headers):
        if self.fail_forward:
            raise RuntimeError('forward failed')
        self.forwards.append((address, dict(headers)))

    def _do_reject(self, reason):
        if self.fail_reject:
            raise RuntimeError('bounce failed')
        self.rejects.append(reason)


class FakeClock:

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_message(recipient='info@example.com', sender='someone@partner.org', subject='Hello',
                 body='Just checking in.', headers=None, raw=None) -> InboundMessage:
    raw = raw if raw is not None else (
        f"From: {sender}\r\nTo: {recipient}\r\nSubject: {subject}\r\n\r\n{body}"
    ).encode('utf-8')
    return InboundMessage(
        sender=sender,
        recipient=recipient,
        subject=subject,
        headers=HeaderMap(headers or {'From': sender, 'To': recipient, 'Subject': subject}),
        body=body,
        raw_size=len(raw),
        raw=raw,
    )


CONFIG_DATA = {
    'management_forward': 'mgmt@example.org',
    'default_forward': 'inbox@example.org',
    'fallback_forward': 'postmaster@example.org',
    'domains': {
        'example.com': {'priority': True},
        'example.net': {'priority': False},
        'example.io': {'priority': True, 'default_forward': 'ops@example.org'},
    },
    'routes': {
        'admin': 'management',
        'support': 'management',
        'alex': 'alex@example.org',
        'info': 'default',
        'noreply': None,
        'archive': 'workstream:litigation',
    },
    'personal_local_parts': ['alex'],
    'priority_local_parts': ['legal', 'security', 'abuse'],
    'trusted_senders': ['@github.com', '@stripe.com'],
    'workstreams': {
        'triggers': {
            'litigation': ['evidence', 'litigation', 'intake'],
            'finance': ['finance', 'invoice', 'billing'],
            'compliance': ['compliance', 'audit'],
        },
        'endpoints': {},
    },
}


def make_config(env=None, **overrides) -> RoutingConfig:
    data = {**CONFIG_DATA, **overrides}
    return RoutingConfig.from_dict(data, env=env or {})


@pytest.fixture
def kv_store():
    return FakeKVStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    """Routing config with no workstream endpoints configured."""
    return make_config()


@pytest.fixture
def config_with_workstreams():
    return make_config(env={
        'EVIDENCE_ROUTER_URL': 'https://evidence.internal/intake',
        'FINANCE_ROUTER_URL': 'https://finance.internal/intake',
        'COMPLIANCE_ROUTER_URL': 'https://compliance.internal/intake',
    })


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables for all tests."""
    # Environment variables are already set above
    yield
