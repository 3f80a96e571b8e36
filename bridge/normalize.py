"""
WhatsApp address normalization.

PURE CONVERSION - NO I/O

- Recipients: group JIDs pass through, anything else becomes
  <digits>@s.whatsapp.net
- Identities: "5511999998888:1@s.whatsapp.net" -> "5511999998888"
"""

import re
from typing import Optional

GROUP_SUFFIX = "@g.us"
INDIVIDUAL_SUFFIX = "@s.whatsapp.net"

_NON_DIGITS_RE = re.compile(r"\D")


def normalize_recipient(to: str) -> str:
    """
    Turn a caller-supplied recipient into a JID.

    Examples:
        "120363041234567890@g.us" -> "120363041234567890@g.us"
        "+1 (555) 123-4567"       -> "15551234567@s.whatsapp.net"
    """
    if GROUP_SUFFIX in to:
        return to
    return f"{_NON_DIGITS_RE.sub('', to)}{INDIVIDUAL_SUFFIX}"


def phone_from_identity(identity: Optional[str]) -> str:
    """
    Extract the bare phone number from a session's own JID.

    The device suffix (":<n>") and the server part are dropped.
    Returns "" when the identity is unknown.
    """
    if not identity:
        return ""
    user = identity.split("@", 1)[0]
    return user.split(":", 1)[0]


def contact_phone_from_jid(jid: Optional[str]) -> Optional[str]:
    """User part of a chat JID ("5511...@s.whatsapp.net" -> "5511...")."""
    if not jid:
        return None
    return jid.split("@", 1)[0]


def format_phone(phone: str) -> Optional[str]:
    """E.164-style display form stored in the devices table."""
    return f"+{phone}" if phone else None
