from __future__ import annotations

import logging

from service import fees
from service.errors import TollError, ReconciliationError
from service.models import ReconciliationResult, TopUpCompletion, mark_paid

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Finalizes a parked message once its sender's top-up payment completes.

    Completion events arrive at least once. The event id guards the credit:
    it is checked against the store before crediting and used as the ledger
    idempotency key, and recorded once the outcome is settled.
    """

    def __init__(self, gmail_client, db_service, ledger_service, awaiting_label: str, paid_label: str) -> None:
        self.gmail = gmail_client
        self.db = db_service
        self.ledger = ledger_service
        self.awaiting_label = awaiting_label
        self.paid_label = paid_label

    def complete_top_up(self, completion: TopUpCompletion) -> ReconciliationResult:
        if self.db.has_processed_event(completion.event_id):
            logger.info("Top-up event %s already handled, skipping", completion.event_id)
            return ReconciliationResult.DUPLICATE_EVENT

        net_cents = fees.net_after_fee_cents(completion.gross_amount_cents)
        if net_cents > 0:
            self.ledger.credit(completion.customer_ref, net_cents, tag=completion.event_id)
            logger.info(
                "Credited %s cents (net) to sender %s from session %s",
                net_cents,
                completion.sender_address,
                completion.session_id,
            )
        else:
            logger.warning(
                "Top-up session %s paid %s cents, nothing left after fees",
                completion.session_id,
                completion.gross_amount_cents,
            )

        result = self._settle(completion)
        self.db.mark_event_processed(completion.event_id)
        return result

    def _settle(self, completion: TopUpCompletion) -> ReconciliationResult:
        message_id = completion.external_message_id
        record = self.db.get_by_external_id(message_id)
        if record is None:
            logger.warning("No record for message %s during top-up %s; nothing to release", message_id, completion.event_id)
            return ReconciliationResult.ORPHANED

        if record.toll_paid:
            logger.info("Toll for message %s was already paid", message_id)
            return ReconciliationResult.ALREADY_PAID

        customer_ref = record.ledger_customer_ref
        if customer_ref is None:
            # Whitelisted records never touch the ledger
            logger.warning("Message %s was admitted without a toll; top-up %s stays as credit", message_id, completion.event_id)
            return ReconciliationResult.NOT_TOLLED

        if self.ledger.has_debit(customer_ref, tag=record.id):
            logger.warning("Toll for message %s was already debited, resuming release", message_id)
        elif not self.ledger.has_sufficient_balance(customer_ref, completion.toll_amount):
            logger.warning("Sender still has insufficient balance after top-up for message %s", message_id)
            return ReconciliationResult.STILL_SHORT
        else:
            self.ledger.debit(customer_ref, fees.to_minor_units(completion.toll_amount), tag=record.id)

        try:
            awaiting_label_id = self.gmail.ensure_label(self.awaiting_label)
            paid_label_id = self.gmail.ensure_label(self.paid_label)
            self.gmail.unarchive_and_label(message_id, awaiting_label_id, paid_label_id)
            self.db.update(mark_paid(record))
        except TollError as exc:
            logger.critical(
                "Debited toll for message %s (record %s) but could not release it: %s",
                message_id,
                record.id,
                exc,
            )
            raise ReconciliationError(f"ledger debited for record {record.id} but local state not updated") from exc

        logger.info("Processed toll payment after top-up for message %s", message_id)
        return ReconciliationResult.PAID
