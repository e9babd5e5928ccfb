from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from service import fees
from service.email_service import extract_email_details
from service.errors import DuplicateIdempotencyKey, MalformedInput, ReconciliationError, TollError
from service.models import Outcome, OutcomeKind, ProcessingRecord, new_record_id
from service.whitelist_service import extract_domain


class TollService:
    """Decides, once per inbound message, whether it is admitted, exempt or parked.

    Nothing is written to the store until every external side effect of the
    decision has succeeded, so a failure at any step leaves the message
    undecided and the next poll pass re-drives it from scratch.
    """

    def __init__(
        self,
        gmail_client,
        db_service,
        whitelist_service,
        ledger_service,
        template_service,
        toll_amount: Decimal,
        awaiting_label: str = "Awaiting Toll",
        paid_label: str = "Toll Paid",
    ) -> None:
        self.gmail = gmail_client
        self.db = db_service
        self.whitelist = whitelist_service
        self.ledger = ledger_service
        self.templates = template_service
        self.toll_amount = Decimal(toll_amount)
        self.awaiting_label = awaiting_label
        self.paid_label = paid_label
        self._logger = logging.getLogger("services.toll_service")

    def process_message(self, msg: Dict[str, Any]) -> Outcome:
        """Run ``decide`` for a Gmail message resource."""
        details = extract_email_details(msg)
        if not details["id"]:
            raise MalformedInput("Gmail message resource has no id")
        self._logger.debug("Deciding message %s from %s: %s", details["id"], details["from"], details["subject"])
        return self.decide(details["id"], details["sender"] or "", details["headers"])

    def decide(self, external_message_id: str, sender_address: str, headers: Mapping[str, str]) -> Outcome:
        existing = self.db.get_by_external_id(external_message_id)
        if existing is not None:
            self._logger.debug("Email %s already processed, skipping", external_message_id)
            return Outcome(OutcomeKind.ALREADY_PROCESSED, record=existing)

        sender = (sender_address or "").strip()
        if extract_domain(sender) is None:
            raise MalformedInput(f"could not extract sender address from message {external_message_id}")

        record_id = new_record_id(external_message_id)

        if self.whitelist.is_whitelisted(sender, headers or {}):
            self._logger.info("Sender %s is whitelisted, no toll for message %s", sender, external_message_id)
            record = ProcessingRecord(id=record_id, external_message_id=external_message_id, sender_address=sender)
            return self._persist(record, Outcome(OutcomeKind.WHITELISTED, record=record))

        awaiting_label_id = self.gmail.ensure_label(self.awaiting_label)
        customer_ref = self.ledger.find_or_create_customer(sender)

        # A debit left by an earlier pass that failed before persisting is resumed, not re-checked
        already_debited = self.ledger.has_debit(customer_ref, tag=record_id)
        if already_debited or self.ledger.has_sufficient_balance(customer_ref, self.toll_amount):
            return self._admit_from_balance(
                record_id, external_message_id, sender, customer_ref, awaiting_label_id, already_debited
            )
        return self._park(record_id, external_message_id, sender, customer_ref, awaiting_label_id)

    def _admit_from_balance(
        self,
        record_id: str,
        external_message_id: str,
        sender: str,
        customer_ref: str,
        awaiting_label_id: str,
        already_debited: bool = False,
    ) -> Outcome:
        if already_debited:
            self._logger.warning("Toll for message %s was already debited, resuming release", external_message_id)
        else:
            self.ledger.debit(customer_ref, fees.to_minor_units(self.toll_amount), tag=record_id)

        record = ProcessingRecord(
            id=record_id,
            external_message_id=external_message_id,
            sender_address=sender,
            toll_paid=True,
            ledger_customer_ref=customer_ref,
        )
        try:
            paid_label_id = self.gmail.ensure_label(self.paid_label)
            self.gmail.unarchive_and_label(external_message_id, awaiting_label_id, paid_label_id)
            outcome = self._persist(record, Outcome(OutcomeKind.DEBITED, record=record))
        except TollError as exc:
            self._logger.critical(
                "Debited toll for message %s (record %s) but could not release it: %s",
                external_message_id,
                record_id,
                exc,
            )
            raise ReconciliationError(f"ledger debited for record {record_id} but local state not updated") from exc
        if outcome.kind is OutcomeKind.DEBITED:
            self._logger.info(
                "Collected toll ($%s) for message %s from %s using balance",
                self.toll_amount,
                external_message_id,
                sender,
            )
        return outcome

    def _park(
        self,
        record_id: str,
        external_message_id: str,
        sender: str,
        customer_ref: str,
        awaiting_label_id: str,
    ) -> Outcome:
        session = self.ledger.create_top_up_session(
            customer_ref,
            metadata={
                "emailMetaId": record_id,
                "messageId": external_message_id,
                "senderEmail": sender,
                "senderCustomerId": customer_ref,
                "tollAmountAtTopUp": str(self.toll_amount),
            },
            toll_amount=self.toll_amount,
        )

        self.gmail.archive_and_label(external_message_id, awaiting_label_id)
        self.gmail.send_notification(
            sender,
            self.templates.render_subject(self.toll_amount),
            self.templates.render_body(self.toll_amount, session.url, sender),
            from_name=self.templates.from_name,
        )

        record = ProcessingRecord(
            id=record_id,
            external_message_id=external_message_id,
            sender_address=sender,
            toll_paid=False,
            ledger_customer_ref=customer_ref,
        )
        outcome = self._persist(record, Outcome(OutcomeKind.PARKED, record=record, top_up_link=session.url))
        if outcome.kind is OutcomeKind.PARKED:
            self._logger.info(
                "Insufficient balance for sender %s, sent top-up link for message %s",
                sender,
                external_message_id,
            )
        return outcome

    def _persist(self, record: ProcessingRecord, outcome: Outcome) -> Outcome:
        try:
            self.db.create(record)
        except DuplicateIdempotencyKey:
            # A concurrent decision for the same message won the insert.
            self._logger.warning(
                "Message %s was decided concurrently; keeping the existing record",
                record.external_message_id,
            )
            existing: Optional[ProcessingRecord] = self.db.get_by_external_id(record.external_message_id)
            return Outcome(OutcomeKind.ALREADY_PROCESSED, record=existing)
        return outcome
