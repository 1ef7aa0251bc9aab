"""
MIME parsing and rewriting utilities.

Turns the raw message SES stored in S3 into an InboundMessage, and prepares a
raw message for re-sending when it is forwarded.
"""

import logging
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from typing import Dict, Any, Optional

from domain.models import HeaderMap, InboundMessage

logger = logging.getLogger(__name__)

# Headers SES refuses or rewrites on send_raw_email
_STRIP_ON_FORWARD = ('Return-Path', 'Sender', 'DKIM-Signature', 'Message-ID')


def _part_text(part) -> str:
    try:
        # get_content() handles quoted-printable, base64, etc automatically
        return part.get_content()
    except Exception as e:
        logger.warning(f"Failed to decode {part.get_content_type()} with get_content(): {e}")
        payload = part.get_payload(decode=True)
        return payload.decode('utf-8', errors='ignore') if payload else ''


def extract_email_body(email_content: bytes) -> Dict[str, Any]:
    """
    Parse raw email (MIME format) and extract headers and body text.

    Args:
        email_content: Raw email bytes from S3

    Returns:
        Dictionary with headers, subject, text_body and html_body

    Example:
        >>> result = extract_email_body(b"Subject: Hi\\r\\n\\r\\nHello World")
        >>> result['text_body']
        'Hello World'
    """
    msg = BytesParser(policy=policy.default).parsebytes(email_content)

    result = {
        'headers': {name: str(value) for name, value in msg.items()},
        'subject': str(msg.get('Subject', '') or ''),
        'text_body': '',
        'html_body': '',
    }

    if msg.is_multipart():
        for part in msg.walk():
            if part.is_multipart():
                continue
            content_disposition = str(part.get('Content-Disposition', ''))
            if 'attachment' in content_disposition or part.get_filename():
                continue

            content_type = part.get_content_type()
            if content_type == 'text/plain' and not result['text_body']:
                result['text_body'] = _part_text(part)
            elif content_type == 'text/html' and not result['html_body']:
                result['html_body'] = _part_text(part)
    else:
        content_type = msg.get_content_type()
        if content_type == 'text/plain':
            result['text_body'] = _part_text(msg)
        elif content_type == 'text/html':
            result['html_body'] = _part_text(msg)
        else:
            logger.warning(
                f"Unknown content type for non-multipart email: {content_type}. "
                f"Email body will be empty."
            )

    return result


def build_inbound_message(raw: bytes, sender: str, recipient: str) -> InboundMessage:
    """
    Build an InboundMessage for one envelope recipient.

    Args:
        raw: Raw MIME bytes
        sender: Envelope sender (SES mail.source)
        recipient: Envelope recipient being routed

    Returns:
        InboundMessage
    """
    parsed = extract_email_body(raw)
    return InboundMessage(
        sender=sender,
        recipient=recipient,
        subject=parsed['subject'],
        headers=HeaderMap(parsed['headers']),
        body=parsed['text_body'] or parsed['html_body'] or '',
        raw_size=len(raw),
        raw=raw,
    )


def prepare_forward(
    raw: bytes,
    forward_from: str,
    original_sender: str,
    extra_headers: Optional[Dict[str, str]] = None
) -> bytes:
    """
    Rewrite a received message so it can be re-sent through SES.

    SES only sends from verified identities, so From becomes the forwarder
    address and Reply-To points back at the original sender.

    Args:
        raw: Raw MIME bytes as received
        forward_from: Verified sender identity
        original_sender: Original From address (kept as Reply-To)
        extra_headers: Tracking/priority headers to add

    Returns:
        bytes: Rewritten raw MIME
    """
    try:
        return _rewrite_parsed(raw, forward_from, original_sender, extra_headers)
    except Exception as e:
        logger.warning(f"MIME rewrite failed ({e}); rewriting header lines directly")
        return _rewrite_header_lines(raw, forward_from, original_sender, extra_headers)


def _rewrite_parsed(
    raw: bytes,
    forward_from: str,
    original_sender: str,
    extra_headers: Optional[Dict[str, str]]
) -> bytes:
    msg: EmailMessage = BytesParser(policy=policy.SMTP).parsebytes(raw)

    original_from = str(msg.get('From', '') or original_sender)
    for name in _STRIP_ON_FORWARD:
        del msg[name]

    del msg['From']
    msg['From'] = forward_from
    if 'Reply-To' not in msg:
        msg['Reply-To'] = original_from

    for name, value in (extra_headers or {}).items():
        del msg[name]
        msg[name] = value

    return msg.as_bytes()


def _rewrite_header_lines(
    raw: bytes,
    forward_from: str,
    original_sender: str,
    extra_headers: Optional[Dict[str, str]]
) -> bytes:
    """
    Rewrite the header block line by line, without parsing header values.

    Used for messages the MIME parser cannot handle. The body is passed
    through untouched.
    """
    newline = b'\r\n' if b'\r\n' in raw else b'\n'
    head, separator, body = raw.partition(newline + newline)
    if not separator:
        head, body = raw, b''

    extra_headers = extra_headers or {}
    dropped = {name.lower() for name in _STRIP_ON_FORWARD + ('From',) + tuple(extra_headers)}

    kept = []
    has_reply_to = False
    skipping = False
    for line in head.split(newline):
        if not line:
            continue
        if line[:1] in (b' ', b'\t'):
            # Folded continuation of the previous header
            if not skipping:
                kept.append(line)
            continue
        name = line.split(b':', 1)[0].strip().decode('ascii', errors='replace').lower()
        skipping = name in dropped
        if name == 'reply-to':
            has_reply_to = True
        if not skipping:
            kept.append(line)

    added = [f"From: {forward_from}"]
    if not has_reply_to:
        added.append(f"Reply-To: {original_sender}")
    added.extend(f"{name}: {value}" for name, value in extra_headers.items())

    lines = [line.encode('utf-8') for line in added] + kept
    return newline.join(lines) + newline + newline + body
