from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe

from service import fees
from service.errors import UpstreamUnavailable
from service.models import TopUpSession

logger = logging.getLogger(__name__)

TOP_UP_SESSION_TYPE = "inbox_toll_topup"
CURRENCY = "usd"


def _debit_description(tag: str) -> str:
    return f"Inbox toll payment: {tag}"


class LedgerService:
    """Sender balances kept on Stripe customers.

    Stripe customer balances are in cents and negative when the customer holds
    credit, so a debit is a positive balance transaction and a credit a
    negative one. Every Stripe error is re-raised as ``UpstreamUnavailable``.
    """

    def __init__(
        self,
        api_key: str,
        success_url: str,
        cancel_url: str,
        top_up_floor: Decimal = fees.DEFAULT_TOP_UP_FLOOR,
    ) -> None:
        self._api_key = api_key
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.top_up_floor = top_up_floor

    def find_or_create_customer(self, email: str) -> str:
        try:
            existing = stripe.Customer.list(email=email, limit=1, api_key=self._api_key)
            if existing.data:
                customer_id = existing.data[0].id
                logger.debug("Found existing customer %s for sender %s", customer_id, email)
                return customer_id

            customer = stripe.Customer.create(
                email=email,
                name=email,
                metadata={"inbox_toll_customer": "true"},
                api_key=self._api_key,
            )
        except stripe.StripeError as exc:
            raise UpstreamUnavailable(f"Stripe: failed to get or create customer for {email}: {exc}") from exc
        logger.info("Created new customer %s for sender %s", customer.id, email)
        return customer.id

    def get_balance(self, customer_ref: str) -> int:
        """Raw Stripe balance in cents; negative means the sender holds credit."""
        try:
            customer = stripe.Customer.retrieve(customer_ref, api_key=self._api_key)
        except stripe.StripeError as exc:
            raise UpstreamUnavailable(f"Stripe: failed to read balance for {customer_ref}: {exc}") from exc
        return int(customer.balance or 0)

    def has_sufficient_balance(self, customer_ref: str, toll_amount: Decimal) -> bool:
        toll_cents = fees.to_minor_units(toll_amount)
        balance = self.get_balance(customer_ref)
        sufficient = balance <= -toll_cents
        logger.debug(
            "Sender %s balance: %s cents, toll: %s cents, sufficient: %s",
            customer_ref,
            balance,
            toll_cents,
            sufficient,
        )
        return sufficient

    def debit(self, customer_ref: str, amount_cents: int, tag: str) -> str:
        """Charge ``amount_cents`` against the sender's credit. Returns the transaction id."""
        txn = self._balance_transaction(
            customer_ref,
            amount_cents,
            description=_debit_description(tag),
            idempotency_key=f"toll-debit-{tag}",
        )
        logger.info("Debited %s cents from customer %s (transaction: %s)", amount_cents, customer_ref, txn)
        return txn

    def has_debit(self, customer_ref: str, tag: str) -> bool:
        """True if a toll debit tagged ``tag`` is already on the customer's ledger."""
        description = _debit_description(tag)
        try:
            transactions = stripe.Customer.list_balance_transactions(customer_ref, limit=100, api_key=self._api_key)
            for txn in transactions.auto_paging_iter():
                if txn.description == description:
                    return True
        except stripe.StripeError as exc:
            raise UpstreamUnavailable(f"Stripe: failed to list balance transactions for {customer_ref}: {exc}") from exc
        return False

    def credit(self, customer_ref: str, amount_cents: int, tag: str) -> str:
        txn = self._balance_transaction(
            customer_ref,
            -amount_cents,
            description=f"Balance top-up: {tag}",
            idempotency_key=f"toll-credit-{tag}",
        )
        logger.info("Credited %s cents to customer %s (transaction: %s)", amount_cents, customer_ref, txn)
        return txn

    def create_top_up_session(self, customer_ref: str, metadata: Dict[str, str], toll_amount: Decimal) -> TopUpSession:
        """Hosted checkout that tops up the sender's balance by at least max(toll, floor) net of fees."""
        net_cents = fees.top_up_net_target_cents(toll_amount, self.top_up_floor)
        gross_cents = fees.top_up_gross_cents(toll_amount, self.top_up_floor)
        session_metadata = {"sessionType": TOP_UP_SESSION_TYPE, **metadata}
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                customer=customer_ref,
                success_url=self.success_url,
                cancel_url=self.cancel_url,
                line_items=[
                    {
                        "price_data": {
                            "currency": CURRENCY,
                            "unit_amount": gross_cents,
                            "product_data": {
                                "name": "Inbox Toll Balance Top-up",
                                "description": (
                                    f"Add funds to your inbox toll balance "
                                    f"(minimum: ${fees.from_minor_units(net_cents)}) + Stripe fees"
                                ),
                            },
                        },
                        "quantity": 1,
                        "adjustable_quantity": {"enabled": True, "minimum": 1, "maximum": 1000},
                    }
                ],
                metadata=session_metadata,
                api_key=self._api_key,
            )
        except stripe.StripeError as exc:
            raise UpstreamUnavailable(f"Stripe: failed to create top-up session for {customer_ref}: {exc}") from exc
        logger.info(
            "Created top-up session %s for customer %s (gross %s cents, net target %s cents)",
            session.id,
            customer_ref,
            gross_cents,
            net_cents,
        )
        return TopUpSession(url=session.url, session_id=session.id)

    def _balance_transaction(
        self,
        customer_ref: str,
        amount: int,
        description: str,
        idempotency_key: Optional[str],
    ) -> str:
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": CURRENCY,
            "description": description,
            "api_key": self._api_key,
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            txn = stripe.Customer.create_balance_transaction(customer_ref, **params)
        except stripe.StripeError as exc:
            raise UpstreamUnavailable(f"Stripe: balance transaction failed for {customer_ref}: {exc}") from exc
        return txn.id
