from __future__ import annotations

import logging
from typing import Iterable, Mapping, Optional

from service.email_service import recipient_addresses
from service.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


def extract_domain(address: Optional[str]) -> Optional[str]:
    """Lower-cased part after the last '@', or None when there is no usable domain."""
    if not address or not address.strip():
        return None
    address = address.strip()
    at = address.rfind("@")
    if 0 < at < len(address) - 1:
        return address[at + 1:].lower()
    return None


class WhitelistService:
    """Decides whether a sender is exempt from the toll.

    Rules are checked in order and the first match wins:
      1. sender shares the operator mailbox domain
      2. sender domain is in the trusted-domain list
      3. a To/Cc recipient is in a trusted domain (warm introductions)
      4. the operator has written to the sender before (sent-folder lookup)

    A failing sent-folder lookup counts as "not whitelisted"; the toll is the safe default.
    """

    def __init__(
        self,
        gmail_client,
        operator_email: str,
        trusted_domains: Iterable[str] = (),
        automated_subject_marker: str = "[toll]",
    ) -> None:
        self.gmail = gmail_client
        self.operator_domain = extract_domain(operator_email)
        self.trusted_domains = frozenset(d.strip().lower() for d in trusted_domains if d and d.strip())
        self.automated_subject_marker = automated_subject_marker

    def is_whitelisted(self, sender_address: str, headers: Mapping[str, str]) -> bool:
        if self.is_hosted_domain(sender_address):
            logger.debug("Sender %s is whitelisted (hosted domain match)", sender_address)
            return True
        if self.is_trusted_domain(sender_address):
            logger.debug("Sender %s is whitelisted (trusted domain)", sender_address)
            return True
        if self.has_trusted_recipient(headers):
            logger.debug("Sender %s is whitelisted (recipient from trusted domain)", sender_address)
            return True
        if self.is_known_sender(sender_address):
            logger.debug("Sender %s is whitelisted (known sender)", sender_address)
            return True
        return False

    def is_hosted_domain(self, sender_address: str) -> bool:
        sender_domain = extract_domain(sender_address)
        return bool(self.operator_domain and sender_domain and sender_domain == self.operator_domain)

    def is_trusted_domain(self, address: str) -> bool:
        domain = extract_domain(address)
        return domain is not None and domain in self.trusted_domains

    def has_trusted_recipient(self, headers: Mapping[str, str]) -> bool:
        if not self.trusted_domains:
            return False
        normalized = {str(k).lower(): v for k, v in (headers or {}).items()}
        for recipient in recipient_addresses(normalized):
            if self.is_trusted_domain(recipient):
                logger.debug("Recipient %s is from a trusted domain", recipient)
                return True
        return False

    def is_known_sender(self, sender_address: str) -> bool:
        try:
            known = self.gmail.has_sent_to(sender_address, self.automated_subject_marker)
        except UpstreamUnavailable:
            logger.exception("Known-sender lookup failed for %s; treating as not whitelisted", sender_address)
            return False
        logger.debug("Checked if sender %s is a known sender (sent folder): %s", sender_address, known)
        return known
