"""
Routing resolver.

resolve() maps (message, routing config, classification) to exactly one
RoutingDecision. It is a pure function: no I/O, no clock, no globals, so the
whole precedence table can be unit tested without any network dependency.

Rules are evaluated in order and the first match wins:

1. no-reply local-parts are discarded (any domain)
   - unconfigured domain without a global default is rejected
2. workstream trigger local-parts dispatch to their workstream
3. static route table entries
4. classification overrides
   a. legal/contract       -> litigation workstream, else management
   b. angry complaint      -> management
   c. high/critical urgency (non-personal local-part) -> management
   d. invoice/receipt      -> finance workstream, else default (+ entity record)
   e. compliance family    -> compliance workstream, else continue
5. domain default, else global default
"""

from typing import Callable, Dict, Optional, Sequence

from .config import RoutingConfig
from .models import ClassificationResult, InboundMessage, RouteEntry, RoutingDecision

DOMAIN_NOT_CONFIGURED = 'domain not configured'

WORKER_NAME = 'ses-email-router'

LEGAL_CATEGORIES = frozenset(['legal', 'contract'])
FINANCE_CATEGORIES = frozenset(['invoice', 'receipt'])
COMPLIANCE_CATEGORIES = frozenset(['compliance', 'audit', 'regulatory', 'governance'])

Rule = Callable[[InboundMessage, RoutingConfig, ClassificationResult], Optional[RoutingDecision]]


def _to_workstream(workstream: str, config: RoutingConfig, rule: str) -> RoutingDecision:
    """Dispatch if the workstream endpoint is configured, else forward to management."""
    if config.workstream_configured(workstream):
        return RoutingDecision.dispatch(workstream, config.management_forward, rule)
    return RoutingDecision.forward(config.management_forward, f"{rule}:unconfigured")


def rule_no_reply(message, config, classification):
    local = message.local_part
    if 'noreply' in local or 'no-reply' in local:
        return RoutingDecision.discard('no-reply')
    return None


def rule_domain_gate(message, config, classification):
    if config.domain(message.domain) is None and not config.default_forward:
        return RoutingDecision.reject(DOMAIN_NOT_CONFIGURED, 'domain-gate')
    return None


def rule_workstream_trigger(message, config, classification):
    workstream = config.workstream_triggers.get(message.local_part)
    if workstream is None:
        return None
    return _to_workstream(workstream, config, f"trigger:{workstream}")


def rule_route_table(message, config, classification):
    entry = config.routes.get(message.local_part)
    if entry is None:
        return None
    if entry.kind == RouteEntry.DISCARD:
        return RoutingDecision.discard('route-table')
    if entry.kind == RouteEntry.WORKSTREAM:
        return _to_workstream(entry.value, config, f"route-table:{entry.value}")
    return RoutingDecision.forward(config.resolve_address(entry.value, message.domain), 'route-table')


def rule_legal(message, config, classification):
    if classification.category in LEGAL_CATEGORIES:
        return _to_workstream('litigation', config, 'ai:legal')
    return None


def rule_angry_complaint(message, config, classification):
    if classification.category == 'complaint' and classification.sentiment == 'angry':
        return RoutingDecision.forward(config.management_forward, 'ai:angry-complaint')
    return None


def rule_urgent(message, config, classification):
    if classification.is_urgent and message.local_part not in config.personal_local_parts:
        return RoutingDecision.forward(config.management_forward, f"ai:urgency-{classification.urgency}")
    return None


def rule_finance(message, config, classification):
    if classification.category not in FINANCE_CATEGORIES:
        return None
    if config.workstream_configured('finance'):
        return RoutingDecision.dispatch('finance', config.management_forward, 'ai:finance')
    return RoutingDecision.forward(
        config.default_for(message.domain), 'ai:finance:unconfigured', record_entities=True
    )


def rule_compliance(message, config, classification):
    if classification.category in COMPLIANCE_CATEGORIES and config.workstream_configured('compliance'):
        return RoutingDecision.dispatch('compliance', config.management_forward, 'ai:compliance')
    return None


def rule_default(message, config, classification):
    return RoutingDecision.forward(config.default_for(message.domain), 'default')


RULES: Sequence[Rule] = (
    rule_no_reply,
    rule_domain_gate,
    rule_workstream_trigger,
    rule_route_table,
    rule_legal,
    rule_angry_complaint,
    rule_urgent,
    rule_finance,
    rule_compliance,
    rule_default,
)


def resolve(
    message: InboundMessage,
    config: RoutingConfig,
    classification: ClassificationResult
) -> RoutingDecision:
    """
    Compute the routing decision for a message.

    Args:
        message: The received message
        config: Frozen routing configuration
        classification: Classification (defaults when AI is unavailable)

    Returns:
        RoutingDecision from the first matching rule
    """
    for rule in RULES:
        decision = rule(message, config, classification)
        if decision is not None:
            return decision
    # rule_default always matches
    raise AssertionError('no routing rule matched')


def is_priority(
    message: InboundMessage,
    config: RoutingConfig,
    classification: ClassificationResult
) -> bool:
    """
    Priority is outbound metadata only; it never changes the destination.
    """
    domain = config.domain(message.domain)
    if domain is not None and domain.priority:
        return True
    if message.local_part in config.priority_local_parts:
        return True
    sender = message.sender.lower()
    if any(trusted in sender for trusted in config.trusted_senders):
        return True
    return classification.is_urgent


def tracking_headers(
    message: InboundMessage,
    transaction_id: str,
    classification: ClassificationResult,
    priority: bool,
    elapsed_ms: int,
    classified: bool = True
) -> Dict[str, str]:
    """
    Build the annotation headers added to forwarded mail.

    Args:
        message: The received message
        transaction_id: Router transaction ID
        classification: Classification result
        priority: Whether the message is priority
        elapsed_ms: Processing time so far
        classified: False when classification did not run (no AI headers)

    Returns:
        Dict of header name -> value
    """
    headers = {
        'X-Email-Router': WORKER_NAME,
        'X-Transaction-ID': transaction_id,
        'X-Original-To': message.recipient,
        'X-Routed-Domain': message.domain,
        'X-Processing-Time': f"{elapsed_ms}ms",
    }

    if classified:
        headers['X-AI-Classification'] = classification.category
        headers['X-AI-Sentiment'] = classification.sentiment
        headers['X-AI-Urgency'] = classification.urgency
        if classification.entities:
            headers['X-AI-Entities'] = str(len(classification.entities))

    if priority:
        headers['X-Priority'] = 'High'
        headers['Importance'] = 'high'

    return headers
