"""
Tests for record and outcome types.
"""

from datetime import datetime, timezone

import pytest

from service.models import Outcome, OutcomeKind, ProcessingRecord, mark_paid, new_record_id


class TestProcessingRecord:
    def test_equality_ignores_created_at(self):
        a = ProcessingRecord(id="r1", external_message_id="m1", created_at=datetime(2020, 1, 1, tzinfo=timezone.utc))
        b = ProcessingRecord(id="r1", external_message_id="m1")
        assert a == b

    def test_requires_external_message_id(self):
        with pytest.raises(ValueError):
            ProcessingRecord(id="r1", external_message_id="")

    def test_paid_record_needs_customer(self):
        with pytest.raises(ValueError):
            ProcessingRecord(id="r1", external_message_id="m1", toll_paid=True)

    def test_mark_paid_flips_flag_once(self):
        record = ProcessingRecord(id="r1", external_message_id="m1", ledger_customer_ref="cus_1")

        paid = mark_paid(record)

        assert paid.toll_paid is True
        assert record.toll_paid is False
        with pytest.raises(ValueError):
            mark_paid(paid)

    def test_record_id_is_stable_per_message(self):
        assert new_record_id("m1") == new_record_id("m1")
        assert new_record_id("m1") != new_record_id("m2")


class TestOutcome:
    @pytest.mark.parametrize(
        "kind,admitted",
        [
            (OutcomeKind.WHITELISTED, True),
            (OutcomeKind.DEBITED, True),
            (OutcomeKind.PARKED, False),
            (OutcomeKind.ALREADY_PROCESSED, False),
        ],
    )
    def test_admitted(self, kind, admitted):
        assert Outcome(kind).admitted is admitted
