"""
Pytest configuration and fixtures shared by all tests.
"""

import os
import sys
import threading
from decimal import Decimal
from unittest.mock import Mock

import pytest

# Add repository root to Python path before any imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Keep app import side effects quiet and offline
os.environ.setdefault("LOG_LEVEL", "INFO")
os.environ.setdefault("RUN_STARTUP_DIAGNOSTICS", "false")
os.environ.setdefault("RUN_POLLER", "false")

from service import fees  # noqa: E402
from service.db_service import InMemoryDbService  # noqa: E402
from service.errors import UpstreamUnavailable  # noqa: E402
from service.gmail_client import GmailApiClient  # noqa: E402
from service.models import TopUpSession  # noqa: E402
from service.template_service import TemplateService  # noqa: E402
from service.toll_service import TollService  # noqa: E402
from service.whitelist_service import WhitelistService  # noqa: E402

OPERATOR = "me@mybox.com"
LABEL_IDS = {"Awaiting Toll": "Label_awaiting", "Toll Paid": "Label_paid"}


class FakeLedger:
    """In-memory stand-in for LedgerService with Stripe's balance sign convention.

    Balances are in cents, negative when the customer holds credit. Debits and
    credits are deduplicated by tag the way Stripe idempotency keys are.
    """

    def __init__(self, balances=None):
        self.balances = dict(balances or {})
        self.customers = {}
        self.debits = []
        self.credits = []
        self.sessions = []
        self.fail_debit = False
        self.fail_session = False
        self._lock = threading.Lock()
        self._debit_tags = set()
        self._credit_tags = set()

    def find_or_create_customer(self, email):
        with self._lock:
            if email not in self.customers:
                self.customers[email] = f"cus_{len(self.customers) + 1}"
            return self.customers[email]

    def get_balance(self, customer_ref):
        return self.balances.get(customer_ref, 0)

    def has_sufficient_balance(self, customer_ref, toll_amount):
        return self.get_balance(customer_ref) <= -fees.to_minor_units(toll_amount)

    def debit(self, customer_ref, amount_cents, tag):
        if self.fail_debit:
            raise UpstreamUnavailable("Stripe: balance transaction failed")
        with self._lock:
            if tag not in self._debit_tags:
                self._debit_tags.add(tag)
                self.balances[customer_ref] = self.get_balance(customer_ref) + amount_cents
                self.debits.append((customer_ref, amount_cents, tag))
        return f"cbtxn_debit_{tag}"

    def has_debit(self, customer_ref, tag):
        with self._lock:
            return any(ref == customer_ref and t == tag for ref, _, t in self.debits)

    def credit(self, customer_ref, amount_cents, tag):
        with self._lock:
            if tag not in self._credit_tags:
                self._credit_tags.add(tag)
                self.balances[customer_ref] = self.get_balance(customer_ref) - amount_cents
                self.credits.append((customer_ref, amount_cents, tag))
        return f"cbtxn_credit_{tag}"

    def create_top_up_session(self, customer_ref, metadata, toll_amount):
        if self.fail_session:
            raise UpstreamUnavailable("Stripe: failed to create top-up session")
        self.sessions.append({"customer": customer_ref, "metadata": metadata, "toll_amount": toll_amount})
        n = len(self.sessions)
        return TopUpSession(url=f"https://checkout.test/s/{n}", session_id=f"cs_test_{n}")


@pytest.fixture
def gmail():
    """Mock Gmail client: labels resolve to fixed ids, nobody is a known sender."""
    client = Mock(spec=GmailApiClient)
    client.email_address = OPERATOR
    client.ensure_label.side_effect = lambda name: LABEL_IDS[name]
    client.has_sent_to.return_value = False
    return client


@pytest.fixture
def db():
    return InMemoryDbService()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def whitelist(gmail):
    return WhitelistService(gmail, operator_email=OPERATOR, trusted_domains=["trusted.com"])


@pytest.fixture
def toll_service(gmail, db, whitelist, ledger):
    return TollService(
        gmail,
        db,
        whitelist,
        ledger,
        TemplateService(),
        toll_amount=Decimal("0.25"),
    )
