from __future__ import annotations

from email.utils import getaddresses, parseaddr
from typing import Any, Dict, List, Optional


def header_map(msg: Dict[str, Any]) -> Dict[str, str]:
    """Gmail message resource headers as a lower-cased name -> value dict."""
    payload = msg.get("payload") or {}
    headers_list: List[Dict[str, str]] = payload.get("headers") or []
    return {h.get("name", "").lower(): h.get("value", "") for h in headers_list}


def extract_address(value: Optional[str]) -> Optional[str]:
    """Address part of ``"Name <addr>"`` or a bare ``addr``; None if nothing usable."""
    if not value or not value.strip():
        return None
    _, address = parseaddr(value)
    address = address.strip()
    return address or None


def recipient_addresses(headers: Dict[str, str]) -> List[str]:
    """All addresses in the To and Cc headers, in order."""
    values = [headers.get("to", ""), headers.get("cc", "")]
    return [addr.strip() for _, addr in getaddresses([v for v in values if v]) if addr.strip()]


def extract_email_details(msg: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a Gmail message resource to the fields the toll engine reads."""
    headers = header_map(msg)
    return {
        "id": msg.get("id"),
        "threadId": msg.get("threadId"),
        "internalDate": msg.get("internalDate"),
        "subject": headers.get("subject", ""),
        "from": headers.get("from", ""),
        "sender": extract_address(headers.get("from")),
        "headers": headers,
    }
