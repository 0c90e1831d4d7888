import logging
import threading
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from payment_service.models import TransactionStatus
from payment_service.store import TransactionStore

logger = logging.getLogger(__name__)


class StalenessSweeper:
    """Cancels transactions left pending past the timeout.

    Uses the same guarded transition as the callback path, so a payment that
    completes while the sweep runs keeps its completed status.
    """

    def __init__(self, db: Session, timeout_minutes: int = 30):
        self.store = TransactionStore(db)
        self.timeout_minutes = timeout_minutes

    def sweep(self, user_id: int | None = None, now=None) -> int:
        stale = self.store.list_pending(
            timedelta(minutes=self.timeout_minutes), user_id=user_id, now=now
        )
        note = f"Expired after {self.timeout_minutes} minutes"
        cancelled = 0
        for transaction in stale:
            if self.store.transition(
                transaction.id, TransactionStatus.PENDING, TransactionStatus.CANCELLED,
                notes=note,
            ):
                self.store.record_history(transaction.id, TransactionStatus.CANCELLED.value, note)
                cancelled += 1
        if cancelled:
            logger.info("Cancelled %s stale pending transactions", cancelled)
        return cancelled


_sweeper_thread = None
_stop = threading.Event()


def _sweep_loop(session_factory, timeout_minutes: int, interval_seconds: int):
    while not _stop.wait(interval_seconds):
        db = session_factory()
        try:
            StalenessSweeper(db, timeout_minutes).sweep()
        except SQLAlchemyError:
            logger.exception("Periodic staleness sweep failed")
        finally:
            db.close()


def start_sweeper(session_factory, timeout_minutes: int, interval_seconds: int):
    global _sweeper_thread
    if interval_seconds <= 0 or _sweeper_thread is not None:
        return
    _stop.clear()
    _sweeper_thread = threading.Thread(
        target=_sweep_loop,
        args=(session_factory, timeout_minutes, interval_seconds),
        daemon=True,
        name="staleness-sweeper",
    )
    _sweeper_thread.start()
    logger.info("Staleness sweeper running every %ss", interval_seconds)


def stop_sweeper():
    global _sweeper_thread
    _stop.set()
    if _sweeper_thread is not None:
        _sweeper_thread.join(timeout=5)
        _sweeper_thread = None
