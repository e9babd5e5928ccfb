from __future__ import annotations

import dataclasses
import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_RECORD_NAMESPACE = uuid.UUID("5b0c3c1e-6f4d-4a57-9d7e-2f1f8a9c4e11")


def new_record_id(external_message_id: str) -> str:
    """Record id for a message, stable across retries of the same decision.

    The id doubles as the ledger tag for the debit, so a retried decision
    presents the same idempotency key to Stripe.
    """
    return str(uuid.uuid5(_RECORD_NAMESPACE, external_message_id))


@dataclass(frozen=True)
class ProcessingRecord:
    """One row per inbound message the toll engine has decided.

    ``created_at`` does not take part in equality so records read back from
    the database compare equal regardless of timestamp precision.
    """

    id: str
    external_message_id: str
    sender_address: str = ""
    toll_paid: bool = False
    ledger_customer_ref: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow, compare=False)

    def __post_init__(self) -> None:
        if not self.external_message_id:
            raise ValueError("external_message_id is required")
        if self.toll_paid and not self.ledger_customer_ref:
            raise ValueError("a paid record must reference a ledger customer")


def mark_paid(record: ProcessingRecord) -> ProcessingRecord:
    """The only legal mutation of a record: flip ``toll_paid`` to True."""
    if record.toll_paid:
        raise ValueError(f"record {record.id} is already paid")
    return dataclasses.replace(record, toll_paid=True)


class OutcomeKind(str, enum.Enum):
    ALREADY_PROCESSED = "already_processed"
    WHITELISTED = "whitelisted"
    DEBITED = "debited"
    PARKED = "parked"


@dataclass
class Outcome:
    """Result of a toll decision for one message."""

    kind: OutcomeKind
    record: Optional[ProcessingRecord] = None
    top_up_link: Optional[str] = None

    @property
    def admitted(self) -> bool:
        return self.kind in (OutcomeKind.WHITELISTED, OutcomeKind.DEBITED)


class ReconciliationResult(str, enum.Enum):
    DUPLICATE_EVENT = "duplicate_event"
    ORPHANED = "orphaned"
    ALREADY_PAID = "already_paid"
    NOT_TOLLED = "not_tolled"
    PAID = "paid"
    STILL_SHORT = "still_short"


@dataclass(frozen=True)
class TopUpCompletion:
    """A verified ``checkout.session.completed`` event for a toll top-up."""

    event_id: str
    session_id: str
    external_message_id: str
    customer_ref: str
    sender_address: str
    toll_amount: Decimal
    gross_amount_cents: int


@dataclass(frozen=True)
class TopUpSession:
    url: str
    session_id: str
