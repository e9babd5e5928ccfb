from __future__ import annotations

import dataclasses
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Optional

import oracledb

from service.errors import DuplicateIdempotencyKey, RecordNotFound, UpstreamUnavailable
from service.models import ProcessingRecord

logger = logging.getLogger(__name__)

_SELECT_COLUMNS = "id, gmail_id, sender_email, toll_paid, stripe_customer_id, created_at"


def _row_to_record(row: tuple[Any, ...]) -> ProcessingRecord:
    record_id, gmail_id, sender_email, toll_paid, customer_ref, created_at = row
    if created_at is not None and created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return ProcessingRecord(
        id=record_id,
        external_message_id=gmail_id,
        sender_address=sender_email or "",
        toll_paid=bool(toll_paid),
        ledger_customer_ref=customer_ref,
        created_at=created_at or datetime.now(timezone.utc),
    )


class DbService:
    """Oracle-backed store for toll processing records and handled webhook events.

    The unique constraint on ``toll_email_meta.gmail_id`` is what settles a
    race between two writers deciding the same message; the loser gets
    ``DuplicateIdempotencyKey``.
    """

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    @classmethod
    def from_env(cls) -> "DbService":
        db_user = os.getenv("DB_APP_USER")
        db_password = os.getenv("DB_APP_USER_PASSWORD")
        missing = [k for k in ["DB_APP_USER", "DB_APP_USER_PASSWORD"] if not os.getenv(k)]
        if missing:
            raise ValueError(f"Missing required DB env vars: {', '.join(missing)}")

        dsn = os.getenv("DB_DNS") or os.getenv("DB_TNS_ALIAS")
        if not dsn:
            raise ValueError("Provide either DB_DNS or DB_TNS_ALIAS")

        wallet_location = os.getenv("DB_WALLET_DIR")
        params: dict[str, Any] = {}
        if wallet_location:
            if not os.path.isdir(wallet_location):
                raise ValueError(f"Wallet directory not found at: {wallet_location}")
            params.update(
                config_dir=wallet_location,
                wallet_location=wallet_location,
                wallet_password=os.getenv("DB_WALLET_PASSWORD"),
            )

        pool = oracledb.create_pool(
            user=db_user,
            password=db_password,
            dsn=dsn,
            min=1,
            max=int(os.getenv("DB_POOL_MAX", "4")),
            **params,
        )
        logger.info("Oracle connection pool created for dsn=%s", dsn)
        return cls(pool)

    def ping(self) -> str:
        """Return the server version; raises UpstreamUnavailable when unreachable."""
        try:
            with self._pool.acquire() as connection:
                return connection.version
        except oracledb.Error as exc:
            raise UpstreamUnavailable(f"database unreachable: {exc}") from exc

    def has_processed(self, external_message_id: str) -> bool:
        return self.get_by_external_id(external_message_id) is not None

    def create(self, record: ProcessingRecord) -> ProcessingRecord:
        sql = (
            "INSERT INTO toll_email_meta (id, gmail_id, sender_email, toll_paid, stripe_customer_id, created_at) "
            "VALUES (:id, :gmail_id, :sender_email, :toll_paid, :stripe_customer_id, :created_at)"
        )
        params = {
            "id": record.id,
            "gmail_id": record.external_message_id,
            "sender_email": record.sender_address,
            "toll_paid": 1 if record.toll_paid else 0,
            "stripe_customer_id": record.ledger_customer_ref,
            "created_at": record.created_at,
        }
        try:
            with self._pool.acquire() as connection:
                with connection.cursor() as cursor:
                    cursor.execute(sql, params)
                connection.commit()
        except oracledb.IntegrityError as exc:
            raise DuplicateIdempotencyKey(record.external_message_id) from exc
        except oracledb.Error as exc:
            raise UpstreamUnavailable(f"failed to insert record {record.id}: {exc}") from exc
        logger.debug("Created record %s for message %s", record.id, record.external_message_id)
        return record

    def get_by_id(self, record_id: str) -> Optional[ProcessingRecord]:
        return self._select_one("id = :key", record_id)

    def get_by_external_id(self, external_message_id: str) -> Optional[ProcessingRecord]:
        return self._select_one("gmail_id = :key", external_message_id)

    def update(self, record: ProcessingRecord) -> ProcessingRecord:
        # toll_paid is the only mutable column
        sql = "UPDATE toll_email_meta SET toll_paid = :toll_paid WHERE id = :id"
        try:
            with self._pool.acquire() as connection:
                with connection.cursor() as cursor:
                    cursor.execute(sql, {"toll_paid": 1 if record.toll_paid else 0, "id": record.id})
                    updated = cursor.rowcount
                connection.commit()
        except oracledb.Error as exc:
            raise UpstreamUnavailable(f"failed to update record {record.id}: {exc}") from exc
        if not updated:
            raise RecordNotFound(f"no record with id {record.id}")
        return record

    def has_processed_event(self, event_id: str) -> bool:
        sql = "SELECT 1 FROM toll_webhook_event WHERE event_id = :event_id"
        try:
            with self._pool.acquire() as connection:
                with connection.cursor() as cursor:
                    cursor.execute(sql, {"event_id": event_id})
                    return cursor.fetchone() is not None
        except oracledb.Error as exc:
            raise UpstreamUnavailable(f"failed to look up event {event_id}: {exc}") from exc

    def mark_event_processed(self, event_id: str) -> bool:
        """Record a handled webhook event. Returns False if it was already recorded."""
        sql = "INSERT INTO toll_webhook_event (event_id, created_at) VALUES (:event_id, :created_at)"
        try:
            with self._pool.acquire() as connection:
                with connection.cursor() as cursor:
                    cursor.execute(sql, {"event_id": event_id, "created_at": datetime.now(timezone.utc)})
                connection.commit()
        except oracledb.IntegrityError:
            return False
        except oracledb.Error as exc:
            raise UpstreamUnavailable(f"failed to record event {event_id}: {exc}") from exc
        return True

    def close(self) -> None:
        self._pool.close()

    def _select_one(self, where: str, key: str) -> Optional[ProcessingRecord]:
        sql = f"SELECT {_SELECT_COLUMNS} FROM toll_email_meta WHERE {where}"
        try:
            with self._pool.acquire() as connection:
                with connection.cursor() as cursor:
                    cursor.execute(sql, {"key": key})
                    row = cursor.fetchone()
        except oracledb.Error as exc:
            raise UpstreamUnavailable(f"record lookup failed: {exc}") from exc
        return _row_to_record(row) if row else None


class InMemoryDbService:
    """Process-local store with the same contract as ``DbService``.

    Used when no database is configured, and by the tests.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_id: dict[str, ProcessingRecord] = {}
        self._id_by_external: dict[str, str] = {}
        self._events: set[str] = set()

    def ping(self) -> str:
        return "in-memory"

    def has_processed(self, external_message_id: str) -> bool:
        return self.get_by_external_id(external_message_id) is not None

    def create(self, record: ProcessingRecord) -> ProcessingRecord:
        with self._lock:
            if record.external_message_id in self._id_by_external:
                raise DuplicateIdempotencyKey(record.external_message_id)
            self._by_id[record.id] = record
            self._id_by_external[record.external_message_id] = record.id
        return record

    def get_by_id(self, record_id: str) -> Optional[ProcessingRecord]:
        with self._lock:
            return self._by_id.get(record_id)

    def get_by_external_id(self, external_message_id: str) -> Optional[ProcessingRecord]:
        with self._lock:
            record_id = self._id_by_external.get(external_message_id)
            return self._by_id.get(record_id) if record_id else None

    def update(self, record: ProcessingRecord) -> ProcessingRecord:
        with self._lock:
            existing = self._by_id.get(record.id)
            if existing is None:
                raise RecordNotFound(f"no record with id {record.id}")
            # toll_paid is the only mutable field
            self._by_id[record.id] = dataclasses.replace(existing, toll_paid=record.toll_paid)
        return record

    def has_processed_event(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._events

    def mark_event_processed(self, event_id: str) -> bool:
        with self._lock:
            if event_id in self._events:
                return False
            self._events.add(event_id)
            return True

    def close(self) -> None:
        return None
