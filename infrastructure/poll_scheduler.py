from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from service.models import OutcomeKind

logger = logging.getLogger(__name__)


@dataclass
class PollSummary:
    found: int = 0
    failed: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)

    def count(self, kind: OutcomeKind) -> None:
        self.outcomes[kind.value] = self.outcomes.get(kind.value, 0) + 1


class PollScheduler:
    """Runs the toll engine over newly arrived mail on a fixed interval.

    At most one run is active at a time: a tick that finds a run in progress
    returns immediately and is not queued. The query window starts at the last
    successful run minus an overlap buffer, or a fixed lookback on the first run.
    """

    def __init__(
        self,
        gmail_client,
        toll_service,
        interval_seconds: int = 60,
        overlap: timedelta = timedelta(minutes=5),
        initial_lookback: timedelta = timedelta(hours=48),
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.gmail = gmail_client
        self.toll_service = toll_service
        self.interval_seconds = interval_seconds
        self.overlap = overlap
        self.initial_lookback = initial_lookback
        self._clock = clock
        self._run_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_run_at: Optional[datetime] = None

    def build_query(self, now: datetime) -> str:
        if self.last_run_at is None:
            since = now - self.initial_lookback
        else:
            since = self.last_run_at - self.overlap
        return f"-in:sent after:{int(since.timestamp())}"

    def run_once(self) -> Optional[PollSummary]:
        """One poll pass. Returns None when skipped because another pass is running."""
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Gmail polling is already running, skipping this execution")
            return None
        try:
            return self._run()
        finally:
            self._run_lock.release()

    def _run(self) -> Optional[PollSummary]:
        started_at = self._clock()
        query = self.build_query(started_at)
        try:
            messages = self.gmail.list_messages(query)
        except Exception:  # noqa: BLE001
            logger.exception("Error polling Gmail with query %s", query)
            return None

        summary = PollSummary(found=len(messages))
        if messages:
            logger.info("Found %d message(s) to process", len(messages))
        else:
            logger.debug("No new messages found")

        for summary_msg in messages:
            message_id = summary_msg.get("id")
            try:
                msg = self.gmail.fetch_message(message_id)
                outcome = self.toll_service.process_message(msg)
                summary.count(outcome.kind)
            except Exception:  # noqa: BLE001
                summary.failed += 1
                logger.exception("Error processing message %s", message_id)

        self.last_run_at = started_at
        logger.info(
            "Completed Gmail polling task: found=%d failed=%d outcomes=%s",
            summary.found,
            summary.failed,
            summary.outcomes,
        )
        return summary

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            logger.warning("Poll scheduler thread is already running")
            return
        self._stop.clear()

        def loop() -> None:
            logger.info("Started Gmail poll scheduler (every %d seconds)", self.interval_seconds)
            while not self._stop.is_set():
                try:
                    self.run_once()
                except Exception:  # noqa: BLE001
                    logger.exception("Unexpected error in Gmail polling task")
                self._stop.wait(self.interval_seconds)
            logger.info("Gmail poll scheduler stopped")

        self._thread = threading.Thread(target=loop, name="gmail-poller", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread and self._thread.is_alive():
            logger.info("Stopping Gmail poll scheduler...")
            self._thread.join(timeout=5)
