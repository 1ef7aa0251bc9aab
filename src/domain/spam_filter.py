"""
Spam heuristics.

The obvious-spam pass is cheap and runs before any inference call; the AI
pass reuses the classification result and only applies when an inference
capability is configured.
"""

import re
from typing import Iterable, Optional

from .models import ClassificationResult, InboundMessage

SPAM_KEYWORDS = (
    'viagra',
    'casino',
    'lottery',
    'inheritance',
    'prince',
    'click here now',
    'act now',
    'limited time',
    'you have won',
    'bitcoin mining',
    'forex',
    'make money fast',
    'guarantee',
)

# Five or more digits right before the @, e.g. 8812345@example.com
_NUMERIC_SENDER = re.compile(r'\d{5,}@')

SPAM_REASON = 'spam'


class SpamFilter:

    def __init__(self, keywords: Optional[Iterable[str]] = None):
        self.keywords = tuple(k.lower() for k in (keywords or SPAM_KEYWORDS))

    def is_obvious_spam(self, message: InboundMessage) -> bool:
        """Keyword match on the subject, or a suspicious sender address."""
        subject = (message.subject or '').lower()
        if any(keyword in subject for keyword in self.keywords):
            return True

        sender = message.sender.lower()
        return bool(_NUMERIC_SENDER.search(sender)) or '..' in sender

    def is_ai_spam(self, classification: ClassificationResult) -> bool:
        return classification.category == 'spam'
