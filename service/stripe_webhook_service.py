from __future__ import annotations

import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import stripe

from service.errors import MalformedInput, SignatureInvalid
from service.ledger_service import TOP_UP_SESSION_TYPE
from service.models import TopUpCompletion

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


class StripeWebhookService:
    """Verifies Stripe webhook deliveries and routes toll top-ups to reconciliation."""

    def __init__(self, webhook_secret: str, reconciliation_service) -> None:
        self._webhook_secret = webhook_secret
        self.reconciliation = reconciliation_service

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Parse the event only after its signature checks out against the shared secret."""
        if not signature:
            raise SignatureInvalid("missing Stripe-Signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self._webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except stripe.SignatureVerificationError as exc:
            raise SignatureInvalid(str(exc)) from exc
        except UnicodeDecodeError as exc:
            raise SignatureInvalid(f"payload is not UTF-8: {exc}") from exc
        try:
            return json.loads(payload)
        except ValueError as exc:
            raise MalformedInput(f"unparseable event payload: {exc}") from exc

    def handle(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        event = self.verify(payload, signature)
        event_type = event["type"]
        event_id = event["id"]
        logger.info("Processing Stripe webhook event: %s (%s)", event_type, event_id)

        if event_type != CHECKOUT_COMPLETED:
            logger.debug("Unhandled Stripe event type: %s", event_type)
            return {"status": "ignored", "event_id": event_id}

        try:
            completion = self.parse_completion(event)
        except MalformedInput as exc:
            # Redelivery cannot fix a bad session; acknowledge so Stripe stops retrying
            logger.warning("Ignoring top-up event %s: %s", event_id, exc)
            return {"status": "ignored", "event_id": event_id}
        if completion is None:
            return {"status": "ignored", "event_id": event_id}

        result = self.reconciliation.complete_top_up(completion)
        return {"status": result.value, "event_id": event_id}

    @staticmethod
    def parse_completion(event: Any) -> Optional[TopUpCompletion]:
        """Extract a toll top-up from a checkout event; None if the session is not one."""
        session = event["data"]["object"]
        metadata = session.get("metadata") or {}
        if metadata.get("sessionType") != TOP_UP_SESSION_TYPE:
            logger.debug("Session %s is not a toll top-up, skipping", session.get("id"))
            return None

        customer_ref = metadata.get("senderCustomerId")
        message_id = metadata.get("messageId")
        raw_toll = metadata.get("tollAmountAtTopUp")
        if not customer_ref or not message_id or not raw_toll:
            raise MalformedInput(f"missing required metadata on top-up session {session.get('id')}")
        try:
            toll_amount = Decimal(raw_toll)
        except InvalidOperation as exc:
            raise MalformedInput(f"bad tollAmountAtTopUp {raw_toll!r} on session {session.get('id')}") from exc

        return TopUpCompletion(
            event_id=event["id"],
            session_id=session.get("id") or "",
            external_message_id=message_id,
            customer_ref=customer_ref,
            sender_address=metadata.get("senderEmail") or "",
            toll_amount=toll_amount,
            gross_amount_cents=int(session.get("amount_total") or 0),
        )
