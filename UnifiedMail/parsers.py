"""Pure helpers that turn provider payloads into domain values.

None of these raise on malformed input: the worst case is a degraded value
(an address made of the raw text, an empty body, ``False``).
"""

from __future__ import annotations

import base64
import binascii
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .models import EmailAddress, EmailBody

AddressLike = Union[str, EmailAddress]
AddressListLike = Union[str, Sequence[AddressLike]]

# `"Name" <addr>` (quoted-string, backslash escapes allowed) or `Name <addr>`;
# the display name is optional and stray unbalanced quotes around it are dropped.
_ANGLE_ADDRESS = re.compile(r'^(?:"((?:[^"\\]|\\.)*)"|"?([^"<]*?)"?)\s*<([^>]+)>\s*$')
_QUOTED_PAIR = re.compile(r"\\(.)")


def parse_email_address(raw: Optional[str]) -> EmailAddress:
    value = (raw or "").strip()
    match = _ANGLE_ADDRESS.match(value)
    if not match:
        return EmailAddress(address=value)
    quoted, bare, address = match.groups()
    name = _QUOTED_PAIR.sub(r"\1", quoted) if quoted is not None else bare
    return EmailAddress(address=address.strip(), name=(name or "").strip() or None)


def parse_email_addresses(raw: Optional[str]) -> List[EmailAddress]:
    """Split a header value on commas and parse each segment.

    A quoted display name that itself contains a comma (``"Doe, John" <j@x>``)
    is split in two; existing callers rely on this exact behaviour.
    """
    if not raw or not raw.strip():
        return []
    return [parse_email_address(part) for part in raw.split(",") if part.strip()]


def coerce_addresses(value: Optional[AddressListLike]) -> List[EmailAddress]:
    """Accept a header string, an EmailAddress, or a sequence of either."""
    if value is None:
        return []
    if isinstance(value, EmailAddress):
        return [value]
    if isinstance(value, str):
        return parse_email_addresses(value)
    out: List[EmailAddress] = []
    for item in value:
        if isinstance(item, EmailAddress):
            out.append(item)
        elif isinstance(item, dict):
            out.append(EmailAddress(address=str(item.get("address", "")).strip(), name=item.get("name") or None))
        else:
            out.append(parse_email_address(str(item)))
    return [a for a in out if a.address]


def format_address_header(addresses: Iterable[EmailAddress]) -> str:
    return ", ".join(a.format() for a in addresses)


# ----------------------------------------------------------------------
# Gmail payload trees
# ----------------------------------------------------------------------
def decode_base64url(data: Optional[str]) -> str:
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        return ""
    return raw.decode("utf-8", errors="replace")


def base64url_to_standard(data: Optional[str]) -> str:
    """Gmail hands out attachment bytes as unpadded base64url."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    return padded.replace("-", "+").replace("_", "/")


def _part_data(part: Dict[str, Any]) -> Optional[str]:
    return (part.get("body") or {}).get("data")


def extract_body(payload: Optional[Dict[str, Any]]) -> EmailBody:
    """Depth-first walk: the first text/plain and first text/html parts win."""
    body = EmailBody()
    if not payload:
        return body

    if _part_data(payload) and not payload.get("parts"):
        content = decode_base64url(_part_data(payload))
        if payload.get("mimeType") == "text/html":
            body.html = content
        else:
            body.text = content
        return body

    def walk(part: Dict[str, Any]) -> None:
        mime = part.get("mimeType")
        data = _part_data(part)
        if mime == "text/plain" and data:
            if body.text is None:
                body.text = decode_base64url(data)
        elif mime == "text/html" and data:
            if body.html is None:
                body.html = decode_base64url(data)
        elif part.get("parts"):
            for child in part["parts"]:
                walk(child)

    walk(payload)
    return body


def check_has_attachments(payload: Optional[Dict[str, Any]]) -> bool:
    if not payload:
        return False
    if payload.get("filename"):
        return True
    return any(check_has_attachments(part) for part in payload.get("parts") or [])


def iter_parts(payload: Optional[Dict[str, Any]]) -> Iterable[Dict[str, Any]]:
    """Yield every part of the tree, root first."""
    if not payload:
        return
    yield payload
    for part in payload.get("parts") or []:
        yield from iter_parts(part)


def header_map(payload: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Lower-cased header name -> first value."""
    out: Dict[str, str] = {}
    for h in (payload or {}).get("headers") or []:
        name = (h.get("name") or "").lower()
        if name and name not in out:
            out[name] = h.get("value") or ""
    return out
