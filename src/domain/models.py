"""
Data models for the email routing domain.

These type-safe data structures define clear contracts between components.
Everything that describes a received message or a routing outcome is frozen:
a message is immutable once received and a decision is never revised.
"""

from dataclasses import dataclass, field, asdict
from typing import Dict, Any, List, Mapping, Optional, Tuple


CATEGORIES = frozenset([
    'invoice', 'receipt', 'contract', 'legal', 'support', 'complaint',
    'meeting', 'calendar', 'newsletter', 'marketing', 'personal', 'business',
    'api-notification', 'security-alert', 'compliance', 'audit', 'regulatory',
    'governance', 'spam', 'general',
])

SENTIMENTS = frozenset(['positive', 'negative', 'neutral', 'urgent', 'angry'])

URGENCIES = frozenset(['critical', 'high', 'normal', 'low'])

MAX_ENTITIES = 5


class TerminalActionError(Exception):
    """Raised when a second terminal action is attempted on a message."""
    pass


class HeaderMap(Mapping[str, str]):
    """Read-only header mapping with case-insensitive keys."""

    def __init__(self, headers: Optional[Mapping[str, str]] = None):
        self._items: Dict[str, Tuple[str, str]] = {}
        for name, value in (headers or {}).items():
            self._items[name.lower()] = (name, value)

    def __getitem__(self, name: str) -> str:
        return self._items[name.lower()][1]

    def __iter__(self):
        return (original for original, _ in self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._items

    def __repr__(self) -> str:
        return f"HeaderMap({dict(self.items())!r})"


@dataclass
class EmailMetadata:
    """
    Structured metadata extracted from an SES receipt notification.

    Attributes:
        message_id: Unique SQS message identifier
        ses_message_id: SES mail.messageId (needed to bounce)
        source: Envelope sender address
        recipients: Envelope recipients matched by the receipt rule
        subject: Email subject line
        timestamp: ISO 8601 timestamp when email was received
        bucket_name: S3 bucket containing the raw email
        object_key: S3 object key for the raw email
    """
    message_id: str
    ses_message_id: str
    source: str
    recipients: List[str]
    subject: str
    timestamp: str
    bucket_name: str
    object_key: str


@dataclass(frozen=True)
class InboundMessage:
    """
    A received message addressed to one managed recipient.

    Attributes:
        sender: Envelope sender address
        recipient: Envelope recipient address (one of our managed domains)
        subject: Subject line (empty string if absent)
        headers: Case-insensitive header map
        body: Best available body text (plain text preferred over HTML)
        raw_size: Size of the raw MIME message in bytes
        raw: Raw MIME bytes (needed for forwarding and workstream payloads)
    """
    sender: str
    recipient: str
    subject: str = ''
    headers: HeaderMap = field(default_factory=HeaderMap)
    body: str = ''
    raw_size: int = 0
    raw: bytes = b''

    @property
    def local_part(self) -> str:
        """Lowercased recipient local-part."""
        return self.recipient.lower().partition('@')[0]

    @property
    def domain(self) -> str:
        """Lowercased recipient domain."""
        return self.recipient.lower().partition('@')[2]

    def header(self, name: str, default: str = '') -> str:
        """Case-insensitive header lookup."""
        return self.headers.get(name, default)


class MessageSource:
    """
    A received message plus the two terminal delivery actions.

    Subclasses implement ``_do_forward`` and ``_do_reject``. Each message may
    be forwarded or rejected at most once; doing neither is an implicit drop
    (which is how a discard is carried out). An action that raises does not
    count, so a failed forward can still be followed by a fallback forward.
    """

    def __init__(self, message: InboundMessage):
        self.message = message
        self.outcome: Optional[str] = None
        self.forwarded_to: Optional[str] = None

    def forward(self, address: str, headers: Optional[Dict[str, str]] = None) -> None:
        self._ensure_unhandled('forward')
        self._do_forward(address, headers or {})
        self.outcome = 'forward'
        self.forwarded_to = address

    def reject(self, reason: str) -> None:
        self._ensure_unhandled('reject')
        self._do_reject(reason)
        self.outcome = 'reject'

    @property
    def handled(self) -> bool:
        return self.outcome is not None

    def _ensure_unhandled(self, action: str) -> None:
        if self.outcome is not None:
            raise TerminalActionError(
                f"Cannot {action} message to {self.message.recipient}: "
                f"already handled ({self.outcome})"
            )

    def _do_forward(self, address: str, headers: Dict[str, str]) -> None:
        raise NotImplementedError

    def _do_reject(self, reason: str) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class DomainConfig:
    """
    Static per-domain settings.

    Attributes:
        name: Domain name (lowercase)
        priority: Every message to this domain is marked priority
        default_forward: Domain default destination (None uses the global default)
    """
    name: str
    priority: bool = False
    default_forward: Optional[str] = None


@dataclass(frozen=True)
class RouteEntry:
    """
    Route table value for one local-part.

    kind is one of 'forward', 'discard' or 'workstream'; value holds the
    address (forward) or workstream name (workstream).
    """
    kind: str
    value: Optional[str] = None

    FORWARD = 'forward'
    DISCARD = 'discard'
    WORKSTREAM = 'workstream'

    @classmethod
    def parse(cls, raw: Optional[str]) -> 'RouteEntry':
        """
        Parse a route table value.

        None is the discard marker, "workstream:<name>" is a workstream tag,
        anything else is a forward destination (an address, or one of the
        symbolic names "management" / "default").
        """
        if raw is None:
            return cls(cls.DISCARD)
        if not isinstance(raw, str) or not raw.strip():
            raise ValueError(f"Invalid route entry: {raw!r}")
        raw = raw.strip()
        if raw.lower().startswith('workstream:'):
            name = raw.split(':', 1)[1].strip().lower()
            if not name:
                raise ValueError(f"Route entry is missing a workstream name: {raw!r}")
            return cls(cls.WORKSTREAM, name)
        return cls(cls.FORWARD, raw)


@dataclass(frozen=True)
class Entity:
    type: str
    value: str


@dataclass(frozen=True)
class ClassificationResult:
    """
    Outcome of content classification for one message.

    Attributes:
        category: One of CATEGORIES
        sentiment: One of SENTIMENTS
        urgency: One of URGENCIES
        entities: At most MAX_ENTITIES extracted (type, value) pairs
    """
    category: str = 'general'
    sentiment: str = 'neutral'
    urgency: str = 'normal'
    entities: Tuple[Entity, ...] = ()

    @classmethod
    def default(cls, urgency: str = 'normal') -> 'ClassificationResult':
        """Result used when classification is unavailable or has failed."""
        return cls(urgency=urgency)

    @property
    def is_urgent(self) -> bool:
        return self.urgency in ('high', 'critical')

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form used for payloads, analytics and logs."""
        return {
            'classification': self.category,
            'sentiment': self.sentiment,
            'urgency': self.urgency,
            'entities': [asdict(e) for e in self.entities],
        }


@dataclass(frozen=True)
class RoutingDecision:
    """
    Final destination for a message: exactly one of forward, discard,
    dispatch (to a workstream) or reject.

    This explicit tagged result keeps the resolver a pure function and makes
    the delivery step a simple switch on ``action``.

    Attributes:
        action: 'forward', 'discard', 'dispatch' or 'reject'
        address: Destination for forward
        workstream: Workstream name for dispatch
        fallback_address: Where a failed dispatch is forwarded
        reason: Reject reason
        rule: Name of the rule that produced the decision
        record_entities: Record extracted entities for accounting
    """
    action: str
    address: Optional[str] = None
    workstream: Optional[str] = None
    fallback_address: Optional[str] = None
    reason: Optional[str] = None
    rule: str = ''
    record_entities: bool = False

    FORWARD = 'forward'
    DISCARD = 'discard'
    DISPATCH = 'dispatch'
    REJECT = 'reject'

    @classmethod
    def forward(cls, address: str, rule: str, record_entities: bool = False) -> 'RoutingDecision':
        return cls(cls.FORWARD, address=address, rule=rule, record_entities=record_entities)

    @classmethod
    def discard(cls, rule: str) -> 'RoutingDecision':
        return cls(cls.DISCARD, rule=rule)

    @classmethod
    def dispatch(cls, workstream: str, fallback_address: str, rule: str) -> 'RoutingDecision':
        return cls(cls.DISPATCH, workstream=workstream, fallback_address=fallback_address, rule=rule)

    @classmethod
    def reject(cls, reason: str, rule: str) -> 'RoutingDecision':
        return cls(cls.REJECT, reason=reason, rule=rule)

    def __str__(self) -> str:
        if self.action == self.FORWARD:
            return f"forward({self.address})"
        if self.action == self.DISPATCH:
            return f"dispatch({self.workstream})"
        if self.action == self.REJECT:
            return f"reject({self.reason})"
        return "discard"


@dataclass
class DispatchOutcome:
    """
    Result of submitting a message to a workstream intake service.

    Attributes:
        workstream: Workstream name
        delivered: True if the intake service accepted the message
        status_code: HTTP status (None on transport error or missing endpoint)
        fallback_address: Set when the message was forwarded instead
        error: Failure description
    """
    workstream: str
    delivered: bool
    status_code: Optional[int] = None
    fallback_address: Optional[str] = None
    error: Optional[str] = None

    @property
    def used_fallback(self) -> bool:
        return self.fallback_address is not None


@dataclass
class ProcessingResult:
    """
    Result of routing one message to one recipient.

    This explicit result type makes success/failure handling clear
    and prevents exceptions from being used for control flow.

    Attributes:
        success: Whether processing completed without an internal error
        message_id: SQS message identifier
        transaction_id: Router transaction identifier
        recipient: Recipient this result is for
        decision: Routing decision (None if processing failed before deciding)
        priority: Whether the message was marked priority
        classification: Classification used for the decision
        error_message: Error description (if processing failed)
    """
    success: bool
    message_id: str
    transaction_id: str = ''
    recipient: str = ''
    decision: Optional[RoutingDecision] = None
    priority: bool = False
    classification: Optional[ClassificationResult] = None
    error_message: Optional[str] = None

    def __repr__(self) -> str:
        """Human-readable representation for logging."""
        if self.success:
            return (
                f"ProcessingResult(success=True, message_id={self.message_id}, "
                f"recipient={self.recipient}, decision={self.decision})"
            )
        else:
            return f"ProcessingResult(success=False, message_id={self.message_id}, error={self.error_message})"


def entities_of_type(entities: List[Entity], *types: str) -> List[Entity]:
    """Filter entities by (case-insensitive) type."""
    wanted = {t.lower() for t in types}
    return [e for e in entities if e.type.lower() in wanted]
