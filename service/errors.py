from __future__ import annotations


class TollError(Exception):
    """Base class for errors raised by the toll engine and its collaborators."""


class RecordNotFound(TollError):
    """No processing record exists for the given key."""


class DuplicateIdempotencyKey(TollError):
    """A record for this external message id already exists."""

    def __init__(self, external_message_id: str) -> None:
        super().__init__(f"record already exists for message {external_message_id}")
        self.external_message_id = external_message_id


class UpstreamUnavailable(TollError):
    """A Gmail, Stripe or database call failed."""


class SignatureInvalid(TollError):
    """Webhook payload failed signature verification."""


class MalformedInput(TollError):
    """Sender or recipient headers could not be parsed."""


class ReconciliationError(TollError):
    """Ledger was charged but the local record could not be brought in line.

    Needs an operator: the ledger side effect already happened.
    """
