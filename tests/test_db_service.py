"""
Tests for the record store (in-memory and Oracle-backed).
"""

from datetime import datetime
from unittest.mock import MagicMock

import oracledb
import pytest

from service.db_service import DbService, InMemoryDbService
from service.errors import DuplicateIdempotencyKey, RecordNotFound, UpstreamUnavailable
from service.models import ProcessingRecord, mark_paid


def _record(**overrides):
    values = {"id": "r1", "external_message_id": "m1", "sender_address": "a@b.com"}
    values.update(overrides)
    return ProcessingRecord(**values)


class TestInMemoryDbService:
    def test_create_then_lookup_both_ways(self):
        db = InMemoryDbService()
        record = _record()
        db.create(record)

        assert db.get_by_id("r1") == record
        assert db.get_by_external_id("m1") == record
        assert db.has_processed("m1")
        assert not db.has_processed("m2")
        assert db.get_by_id("missing") is None

    def test_duplicate_external_id_is_rejected(self):
        db = InMemoryDbService()
        db.create(_record())

        with pytest.raises(DuplicateIdempotencyKey) as exc_info:
            db.create(_record(id="r2"))

        assert exc_info.value.external_message_id == "m1"
        assert db.get_by_id("r2") is None

    def test_update_only_flips_paid_flag(self):
        db = InMemoryDbService()
        db.create(_record(ledger_customer_ref="cus_1"))

        db.update(mark_paid(db.get_by_id("r1")))

        stored = db.get_by_id("r1")
        assert stored.toll_paid is True
        assert stored.sender_address == "a@b.com"

    def test_update_unknown_record_raises(self):
        with pytest.raises(RecordNotFound):
            InMemoryDbService().update(_record(id="ghost"))

    def test_event_markers(self):
        db = InMemoryDbService()
        assert not db.has_processed_event("evt_1")
        assert db.mark_event_processed("evt_1") is True
        assert db.mark_event_processed("evt_1") is False
        assert db.has_processed_event("evt_1")


def _oracle_pool():
    """MagicMock pool -> connection -> cursor wired for ``with`` blocks."""
    pool = MagicMock()
    connection = MagicMock()
    cursor = MagicMock()
    pool.acquire.return_value.__enter__.return_value = connection
    connection.cursor.return_value.__enter__.return_value = cursor
    return pool, connection, cursor


class TestOracleDbService:
    def test_create_inserts_and_commits(self):
        pool, connection, cursor = _oracle_pool()
        record = _record(ledger_customer_ref="cus_1", toll_paid=True)

        DbService(pool).create(record)

        sql, params = cursor.execute.call_args.args
        assert "INSERT INTO toll_email_meta" in sql
        assert params["gmail_id"] == "m1"
        assert params["toll_paid"] == 1
        assert params["stripe_customer_id"] == "cus_1"
        connection.commit.assert_called_once()

    def test_unique_violation_maps_to_duplicate(self):
        pool, _, cursor = _oracle_pool()
        cursor.execute.side_effect = oracledb.IntegrityError("ORA-00001: unique constraint violated")

        with pytest.raises(DuplicateIdempotencyKey):
            DbService(pool).create(_record())

    def test_other_database_errors_map_to_upstream(self):
        pool, _, cursor = _oracle_pool()
        cursor.execute.side_effect = oracledb.DatabaseError("ORA-12541: no listener")

        with pytest.raises(UpstreamUnavailable):
            DbService(pool).get_by_external_id("m1")

    def test_row_is_mapped_to_record(self):
        pool, _, cursor = _oracle_pool()
        cursor.fetchone.return_value = ("r1", "m1", "a@b.com", 1, "cus_1", datetime(2024, 5, 1, 12, 0))

        record = DbService(pool).get_by_external_id("m1")

        assert record == ProcessingRecord(
            id="r1", external_message_id="m1", sender_address="a@b.com", toll_paid=True, ledger_customer_ref="cus_1"
        )
        assert record.created_at.tzinfo is not None
        assert cursor.execute.call_args.args[1] == {"key": "m1"}

    def test_missing_row_returns_none(self):
        pool, _, cursor = _oracle_pool()
        cursor.fetchone.return_value = None

        assert DbService(pool).get_by_id("nope") is None

    def test_update_with_no_rows_raises_not_found(self):
        pool, _, cursor = _oracle_pool()
        cursor.rowcount = 0

        with pytest.raises(RecordNotFound):
            DbService(pool).update(_record())

    def test_duplicate_event_marker_returns_false(self):
        pool, _, cursor = _oracle_pool()
        cursor.execute.side_effect = oracledb.IntegrityError("ORA-00001")

        assert DbService(pool).mark_event_processed("evt_1") is False

    def test_from_env_requires_credentials(self, monkeypatch):
        monkeypatch.delenv("DB_APP_USER", raising=False)
        monkeypatch.delenv("DB_APP_USER_PASSWORD", raising=False)

        with pytest.raises(ValueError, match="DB_APP_USER"):
            DbService.from_env()
