import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterable, List

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from aws_lambda_powertools import Logger

from booking_swap.config import settings
from booking_swap.errors import ConcurrentModification
from booking_swap.model import Swap

logger = Logger(service=settings.POWERTOOLS_SERVICE_NAME)


class SwapLockRegistry:
    """
    Exclusive per-swap locks with a bounded wait.

    Locks are always taken in ascending swap id order so two callers locking
    overlapping pairs cannot deadlock. The in-process lock serializes threads
    of this process; the row lock (`SELECT ... FOR UPDATE`) taken afterwards
    serializes processes sharing the database.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.Lock] = {}
        self._holders: Dict[int, int] = {}

    def _lock_for(self, swap_id: int) -> threading.Lock:
        """Lock for a swap, counted until the caller hands it back with _release"""
        with self._guard:
            lock = self._locks.get(swap_id)
            if lock is None:
                lock = self._locks[swap_id] = threading.Lock()
            self._holders[swap_id] = self._holders.get(swap_id, 0) + 1
            return lock

    def _release(self, swap_id: int):
        with self._guard:
            remaining = self._holders.get(swap_id, 0) - 1
            if remaining > 0:
                self._holders[swap_id] = remaining
                return
            self._holders.pop(swap_id, None)
            self._locks.pop(swap_id, None)

    @contextmanager
    def hold(self, db: Session, swap_ids: Iterable[int], timeout: float = None) -> List[Swap]:
        """Lock the given swaps and yield them freshly re-read from the database"""
        timeout = settings.LOCK_TIMEOUT_SECONDS if timeout is None else timeout
        ordered = sorted({swap_id for swap_id in swap_ids if swap_id is not None})
        deadline = time.monotonic() + timeout
        referenced = []
        acquired = []

        try:
            for swap_id in ordered:
                lock = self._lock_for(swap_id)
                referenced.append(swap_id)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    logger.warning(f"Timed out waiting {timeout}s for lock on swap {swap_id}")
                    raise ConcurrentModification(
                        f"Swap {swap_id} is being modified by another request; retry shortly"
                    )
                acquired.append(lock)

            yield self._lock_rows(db, ordered, timeout)
        finally:
            for lock in reversed(acquired):
                lock.release()
            for swap_id in referenced:
                self._release(swap_id)

    def _lock_rows(self, db: Session, ordered: List[int], timeout: float) -> List[Swap]:
        if not ordered:
            return []

        if db.get_bind().dialect.name == "postgresql":
            db.execute(text(f"SET LOCAL lock_timeout = '{int(timeout * 1000)}ms'"))

        try:
            return (
                db.query(Swap)
                .filter(Swap.id.in_(ordered))
                .order_by(Swap.id)
                .with_for_update()
                .populate_existing()
                .all()
            )
        except OperationalError as e:
            db.rollback()
            logger.warning(f"Row lock on swaps {ordered} not granted: {e}")
            raise ConcurrentModification(
                f"Swaps {ordered} are locked by another transaction; retry shortly"
            )


swap_locks = SwapLockRegistry()
