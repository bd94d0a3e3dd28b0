"""Identity normalization for network addresses and protocol identifiers.

Pure functions, no state. Every function is total: invalid input yields an
empty address or ``None`` rather than raising.

Examples:
    087712345678                  -> 87712345678
    +1 (281) 788-2316             -> 12817882316
    2348012345678:12@s.whatsapp.net -> 2348012345678@s.whatsapp.net
    98765432101@lid               -> 98765432101@lid
"""

import re

DEFAULT_DOMAIN = "s.whatsapp.net"
ALIAS_DOMAIN = "lid"
GROUP_DOMAIN = "g.us"
BROADCAST_DOMAIN = "broadcast"
NEWSLETTER_DOMAIN = "newsletter"
STATUS_BROADCAST_ID = "status@broadcast"

DIRECT_DOMAINS = (DEFAULT_DOMAIN, ALIAS_DOMAIN)

MIN_ADDRESS_LENGTH = 7
MAX_ADDRESS_LENGTH = 15
TRUNK_PREFIX_THRESHOLD = 10

_NON_DIGITS = re.compile(r"\D")


def normalize_address(raw: str | None) -> str:
    """Normalize a raw address to digits only.

    Strips anything after an ``@`` or ``:`` separator, drops non-digits,
    drops a leading trunk zero while more than 10 digits remain, and rejects
    results outside 7..15 digits.

    Args:
        raw: Phone number, protocol id or address in any format

    Returns:
        Canonical address, or "" when the input cannot be an address
    """
    if not raw:
        return ""
    value = str(raw).split("@", 1)[0].split(":", 1)[0]
    digits = _NON_DIGITS.sub("", value)
    # Repeated so that normalizing twice never strips a second zero
    while len(digits) > TRUNK_PREFIX_THRESHOLD and digits.startswith("0"):
        digits = digits[1:]
    if len(digits) < MIN_ADDRESS_LENGTH or len(digits) > MAX_ADDRESS_LENGTH:
        return ""
    return digits


def split_protocol_id(raw: str | None) -> tuple[str, str] | None:
    """Split a protocol id into (user part, domain), dropping the device suffix."""
    if not raw or "@" not in raw:
        return None
    user, domain = str(raw).split("@", 1)
    if not domain:
        return None
    return user.split(":", 1)[0], domain


def normalize_protocol_id(raw: str | None) -> str | None:
    """Normalize a protocol id, keeping its domain verbatim.

    Standard and alias namespaces are different domains and are never
    conflated; only the device suffix of the user part is stripped.

    Args:
        raw: Protocol id such as ``123:4@s.whatsapp.net`` or ``123@lid``

    Returns:
        ``address@domain`` or None when the id has no valid address or domain
    """
    parts = split_protocol_id(raw)
    if parts is None:
        return None
    user, domain = parts
    address = normalize_address(user)
    if not address:
        return None
    return f"{address}@{domain}"


def canonical_protocol_id(
    address: str | None,
    existing_id: str | None = None,
    default_domain: str = DEFAULT_DOMAIN,
) -> str | None:
    """Build the protocol id for an address.

    The domain of ``existing_id`` wins when it is supplied and valid, so a
    Contact keeps whichever namespace the network already associated with it.

    Args:
        address: Raw or normalized address
        existing_id: Protocol id already known for the Contact
        default_domain: Domain used when there is no existing id

    Returns:
        Canonical protocol id, or None when the address is invalid
    """
    normalized = normalize_address(address)
    if not normalized:
        return None
    if existing_id:
        parts = split_protocol_id(existing_id)
        if parts is not None:
            return f"{normalized}@{parts[1]}"
    return f"{normalized}@{default_domain}"


def protocol_domain(raw: str | None) -> str | None:
    """Return the domain part of a protocol id."""
    parts = split_protocol_id(raw)
    return parts[1] if parts else None


def is_group_id(raw: str | None) -> bool:
    """Check whether the id addresses a group conversation."""
    return protocol_domain(raw) == GROUP_DOMAIN


def is_broadcast_id(raw: str | None) -> bool:
    """Check whether the id is a status/broadcast/newsletter address."""
    if raw == STATUS_BROADCAST_ID:
        return True
    return protocol_domain(raw) in (BROADCAST_DOMAIN, NEWSLETTER_DOMAIN)


def is_direct_chat_id(raw: str | None) -> bool:
    """Check whether the id is a 1:1 conversation in a known namespace."""
    return protocol_domain(raw) in DIRECT_DOMAINS


def addresses_match(left: str | None, right: str | None) -> bool:
    """Match two addresses exactly or when one is a suffix of the other.

    Tolerates historical records stored with or without a country code.
    """
    a = normalize_address(left)
    b = normalize_address(right)
    if not a or not b:
        return False
    return a == b or a.endswith(b) or b.endswith(a)
