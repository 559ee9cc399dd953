import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from kaspa_gateway.errors import AllocationRace
from kaspa_gateway.models import AddressCounter

logger = logging.getLogger(__name__)


class IndexAllocator:
    """
    Hands out derivation indices per merchant account.

    The counter row holds the next unissued index. Claiming an index is a
    compare-and-swap on that row, so two concurrent checkouts never read
    the same value and both win.
    """

    def __init__(self, session_factory, max_attempts: int = 10):
        self.session_factory = session_factory
        self.max_attempts = max_attempts

    def next_index(self, account: str) -> int:
        for attempt in range(1, self.max_attempts + 1):
            index = self._claim(account)
            if index is not None:
                logger.info(f"Allocated derivation index {index} for account {account}")
                return index
            logger.info(f"Index counter for {account} moved during claim (attempt {attempt}), retrying")
        raise AllocationRace(f"Could not claim a derivation index for account {account}")

    def record_used(self, account: str, index: int) -> None:
        """Make sure the counter is past ``index``. Never moves it backwards."""
        with self.session_factory() as db:
            self._ensure_counter(db, account)
            db.execute(
                update(AddressCounter)
                .where(AddressCounter.account == account, AddressCounter.next_index <= index)
                .values(next_index=index + 1)
            )
            db.commit()

    def peek(self, account: str) -> int:
        with self.session_factory() as db:
            counter = db.get(AddressCounter, account)
            return counter.next_index if counter else 0

    def _claim(self, account: str) -> Optional[int]:
        with self.session_factory() as db:
            current = self._ensure_counter(db, account)
            result = db.execute(
                update(AddressCounter)
                .where(AddressCounter.account == account, AddressCounter.next_index == current)
                .values(next_index=current + 1)
            )
            db.commit()
            return current if result.rowcount == 1 else None

    def _ensure_counter(self, db, account: str) -> int:
        counter = db.get(AddressCounter, account)
        if counter is not None:
            return counter.next_index

        db.add(AddressCounter(account=account, next_index=0))
        try:
            db.commit()
        except IntegrityError:
            # Another writer created the row first
            db.rollback()
        counter = db.get(AddressCounter, account, populate_existing=True)
        return counter.next_index
