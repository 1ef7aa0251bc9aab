"""
Tests for the routing resolver, priority marking and tracking headers.
"""

import pytest
import sys
import os

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

from domain import router
from domain.models import ClassificationResult, Entity, RoutingDecision
from conftest import make_config, make_message

DEFAULT = ClassificationResult.default()


def resolve(recipient, config, classification=DEFAULT, **message_fields):
    return router.resolve(make_message(recipient=recipient, **message_fields), config, classification)


class TestNoReplyRule:

    @pytest.mark.parametrize('recipient', [
        'noreply@example.com',
        'no-reply@example.net',
        'billing-noreply@example.com',
        'NoReply@unknown-domain.org',
    ])
    def test_discarded(self, config, recipient):
        decision = resolve(recipient, config)

        assert decision.action == RoutingDecision.DISCARD
        assert decision.rule == 'no-reply'

    def test_beats_workstream_trigger_and_classification(self, config_with_workstreams):
        decision = resolve(
            'noreply@example.com', config_with_workstreams, ClassificationResult(category='legal')
        )
        assert decision.action == RoutingDecision.DISCARD


class TestDomainGate:

    def test_unconfigured_domain_without_global_default_is_rejected(self):
        config = make_config(default_forward=None)

        decision = resolve('info@unknown.org', config)

        assert decision.action == RoutingDecision.REJECT
        assert decision.reason == router.DOMAIN_NOT_CONFIGURED

    def test_unconfigured_domain_with_global_default_is_forwarded(self, config):
        decision = resolve('whoever@unknown.org', config)

        assert decision == RoutingDecision.forward('inbox@example.org', 'default')


class TestWorkstreamTriggers:

    @pytest.mark.parametrize('local,workstream', [
        ('evidence', 'litigation'),
        ('intake', 'litigation'),
        ('invoice', 'finance'),
        ('audit', 'compliance'),
    ])
    def test_configured_workstream_dispatches(self, config_with_workstreams, local, workstream):
        decision = resolve(f"{local}@example.com", config_with_workstreams)

        assert decision.action == RoutingDecision.DISPATCH
        assert decision.workstream == workstream
        assert decision.fallback_address == 'mgmt@example.org'
        assert decision.rule == f"trigger:{workstream}"

    def test_unconfigured_workstream_forwards_to_management(self, config):
        decision = resolve('evidence@example.com', config)

        assert decision.action == RoutingDecision.FORWARD
        assert decision.address == 'mgmt@example.org'
        assert decision.rule == 'trigger:litigation:unconfigured'

    def test_trigger_beats_classification(self, config_with_workstreams):
        decision = resolve(
            'finance@example.com', config_with_workstreams, ClassificationResult(category='legal')
        )
        assert decision.workstream == 'finance'


class TestRouteTable:

    def test_management_alias(self, config):
        assert resolve('support@example.com', config) == RoutingDecision.forward(
            'mgmt@example.org', 'route-table'
        )

    def test_default_alias_uses_domain_default(self, config):
        assert resolve('info@example.io', config).address == 'ops@example.org'

    def test_explicit_address(self, config):
        assert resolve('alex@example.net', config).address == 'alex@example.org'

    def test_workstream_entry(self, config_with_workstreams):
        decision = resolve('archive@example.com', config_with_workstreams)

        assert decision.action == RoutingDecision.DISPATCH
        assert decision.workstream == 'litigation'

    def test_route_table_wins_over_classification(self, config):
        decision = resolve(
            'support@example.com', config,
            ClassificationResult(category='invoice', urgency='critical')
        )
        assert decision == RoutingDecision.forward('mgmt@example.org', 'route-table')

    def test_local_part_match_is_case_insensitive(self, config):
        assert resolve('Support@Example.com', config).address == 'mgmt@example.org'


class TestClassificationOverrides:

    @pytest.mark.parametrize('category', ['legal', 'contract'])
    def test_legal_dispatches_to_litigation(self, config_with_workstreams, category):
        decision = resolve(
            'bob@example.com', config_with_workstreams, ClassificationResult(category=category)
        )

        assert decision == RoutingDecision.dispatch('litigation', 'mgmt@example.org', 'ai:legal')

    def test_legal_without_litigation_goes_to_management(self, config):
        decision = resolve('bob@example.com', config, ClassificationResult(category='legal'))

        assert decision.address == 'mgmt@example.org'
        assert decision.rule == 'ai:legal:unconfigured'

    def test_angry_complaint(self, config):
        decision = resolve(
            'bob@example.com', config, ClassificationResult(category='complaint', sentiment='angry')
        )
        assert decision == RoutingDecision.forward('mgmt@example.org', 'ai:angry-complaint')

    def test_calm_complaint_uses_default(self, config):
        decision = resolve(
            'bob@example.com', config, ClassificationResult(category='complaint', sentiment='negative')
        )
        assert decision.rule == 'default'

    @pytest.mark.parametrize('urgency', ['high', 'critical'])
    def test_urgent_goes_to_management(self, config, urgency):
        decision = resolve('bob@example.com', config, ClassificationResult(urgency=urgency))

        assert decision.address == 'mgmt@example.org'
        assert decision.rule == f"ai:urgency-{urgency}"

    def test_urgent_personal_address_not_rerouted(self):
        config = make_config(routes={})

        decision = resolve('alex@example.com', config, ClassificationResult(urgency='critical'))

        assert decision.rule == 'default'

    @pytest.mark.parametrize('category', ['invoice', 'receipt'])
    def test_finance_dispatch(self, config_with_workstreams, category):
        decision = resolve(
            'bob@example.com', config_with_workstreams, ClassificationResult(category=category)
        )
        assert decision == RoutingDecision.dispatch('finance', 'mgmt@example.org', 'ai:finance')

    def test_finance_unconfigured_forwards_default_and_records_entities(self, config):
        decision = resolve('bob@example.io', config, ClassificationResult(category='invoice'))

        assert decision.address == 'ops@example.org'
        assert decision.record_entities is True

    @pytest.mark.parametrize('category', ['compliance', 'audit', 'regulatory', 'governance'])
    def test_compliance_dispatch(self, config_with_workstreams, category):
        decision = resolve(
            'bob@example.com', config_with_workstreams, ClassificationResult(category=category)
        )
        assert decision == RoutingDecision.dispatch('compliance', 'mgmt@example.org', 'ai:compliance')

    def test_compliance_unconfigured_falls_through_to_default(self, config):
        decision = resolve('bob@example.com', config, ClassificationResult(category='audit'))

        assert decision == RoutingDecision.forward('inbox@example.org', 'default')


class TestDefaultRule:

    def test_domain_default(self, config):
        assert resolve('bob@example.io', config) == RoutingDecision.forward('ops@example.org', 'default')

    def test_global_default(self, config):
        assert resolve('bob@example.net', config) == RoutingDecision.forward('inbox@example.org', 'default')


class TestScenarios:
    """End-to-end resolver scenarios over a realistic configuration."""

    def test_contract_to_personal_address(self, config_with_workstreams):
        decision = resolve(
            'alex@example.com', config_with_workstreams,
            ClassificationResult(category='contract', urgency='high')
        )
        # Route table entry for the personal address wins
        assert decision.address == 'alex@example.org'

    def test_angry_customer_urgent(self, config):
        decision = resolve(
            'bob@example.com', config,
            ClassificationResult(category='complaint', sentiment='angry', urgency='critical')
        )
        assert decision.rule == 'ai:angry-complaint'

    def test_stripe_receipt(self, config_with_workstreams):
        decision = resolve(
            'bob@example.com', config_with_workstreams,
            ClassificationResult(category='receipt', entities=(Entity('amount', '$49.00'),)),
            sender='receipts@stripe.com'
        )
        assert decision.workstream == 'finance'

    def test_resolver_is_deterministic(self, config):
        classification = ClassificationResult(category='complaint', sentiment='angry')
        message = make_message(recipient='bob@example.com')

        decisions = {router.resolve(message, config, classification) for _ in range(10)}

        assert len(decisions) == 1


class TestIsPriority:

    def test_priority_domain(self, config):
        assert router.is_priority(make_message(recipient='bob@example.com'), config, DEFAULT)

    def test_priority_local_part(self, config):
        assert router.is_priority(make_message(recipient='security@example.net'), config, DEFAULT)

    def test_trusted_sender(self, config):
        message = make_message(recipient='bob@example.net', sender='noreply@GitHub.com')
        assert router.is_priority(message, config, DEFAULT)

    def test_urgent_classification(self, config):
        message = make_message(recipient='bob@example.net')
        assert router.is_priority(message, config, ClassificationResult(urgency='high'))

    def test_not_priority(self, config):
        message = make_message(recipient='bob@example.net')
        assert not router.is_priority(message, config, ClassificationResult(urgency='low'))

    def test_priority_does_not_change_destination(self, config):
        plain = resolve('bob@example.net', config)
        priority = resolve('bob@example.net', config, sender='billing@stripe.com')

        assert plain.address == priority.address


class TestTrackingHeaders:

    def test_classified_priority_headers(self):
        message = make_message(recipient='Bob@Example.com')
        classification = ClassificationResult(
            category='invoice', sentiment='neutral', urgency='high',
            entities=(Entity('amount', '$5'), Entity('date', 'Friday')),
        )

        headers = router.tracking_headers(message, 'EMAIL-1-abc', classification, True, 42)

        assert headers == {
            'X-Email-Router': router.WORKER_NAME,
            'X-Transaction-ID': 'EMAIL-1-abc',
            'X-Original-To': 'Bob@Example.com',
            'X-Routed-Domain': 'example.com',
            'X-Processing-Time': '42ms',
            'X-AI-Classification': 'invoice',
            'X-AI-Sentiment': 'neutral',
            'X-AI-Urgency': 'high',
            'X-AI-Entities': '2',
            'X-Priority': 'High',
            'Importance': 'high',
        }

    def test_unclassified_has_no_ai_headers(self):
        headers = router.tracking_headers(make_message(), 'EMAIL-1-abc', DEFAULT, False, 3, classified=False)

        assert not any(name.startswith('X-AI-') for name in headers)
        assert 'X-Priority' not in headers
        assert headers['X-Transaction-ID'] == 'EMAIL-1-abc'

    def test_no_entities_header_when_empty(self):
        headers = router.tracking_headers(make_message(), 'EMAIL-1-abc', DEFAULT, False, 3)

        assert headers['X-AI-Classification'] == 'general'
        assert 'X-AI-Entities' not in headers
