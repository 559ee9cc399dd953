"""
Order payment lifecycle.

    awaiting_address -> awaiting_payment -> confirmed | manually_confirmed
                                         -> abandoned

Every transition is a conditional UPDATE guarded by the expected prior
status. Whoever loses a race simply sees ``applied=False`` and the winner's
data; terminal records are never written again.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from kaspa_gateway.amounts import to_kas
from kaspa_gateway.errors import InvalidTransition, OrderNotFound
from kaspa_gateway.models import OrderPayment, PaymentStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentRecord:
    order_id: str
    account: str
    status: PaymentStatus
    payment_address: Optional[str]
    derivation_index: Optional[int]
    expected_amount: int
    fiat_total: Decimal
    rate: Decimal
    payment_started_at: int
    confirmed_amount: Optional[int]
    confirmed_tx_id: Optional[str]
    confirmed_at: Optional[int]
    confirmed_by: Optional[str]
    confirmed_accepted: Optional[bool]
    check_failures: int

    @classmethod
    def from_row(cls, row: OrderPayment) -> "PaymentRecord":
        return cls(
            order_id=row.order_id,
            account=row.account,
            status=PaymentStatus(row.status),
            payment_address=row.payment_address,
            derivation_index=row.derivation_index,
            expected_amount=row.expected_amount,
            fiat_total=Decimal(str(row.fiat_total)),
            rate=Decimal(str(row.rate)),
            payment_started_at=row.payment_started_at,
            confirmed_amount=row.confirmed_amount,
            confirmed_tx_id=row.confirmed_tx_id,
            confirmed_at=row.confirmed_at,
            confirmed_by=row.confirmed_by,
            confirmed_accepted=row.confirmed_accepted,
            check_failures=row.check_failures or 0,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_order_meta(self) -> dict:
        """The metadata sub-document attached to the order in the order store."""
        meta = {
            "_kaspa_payment_status": self.status.value,
            "_kaspa_payment_address": self.payment_address,
            "_kaspa_address_index": self.derivation_index,
            "_kaspa_expected_amount": str(to_kas(self.expected_amount)),
            "_kaspa_rate": str(self.rate),
            "_kaspa_order_total": str(self.fiat_total),
            "_kaspa_payment_started": self.payment_started_at,
        }
        if self.confirmed_tx_id is not None:
            meta["_kaspa_txid"] = self.confirmed_tx_id
            meta["_kaspa_payment_confirmed"] = self.confirmed_at
            if self.confirmed_amount is not None:
                meta["_kaspa_confirmed_amount"] = str(to_kas(self.confirmed_amount))
            if self.confirmed_by is not None:
                meta["_kaspa_verified_by"] = self.confirmed_by
            if self.confirmed_accepted is not None:
                meta["_kaspa_tx_accepted"] = self.confirmed_accepted
        return meta


@dataclass(frozen=True)
class TransitionResult:
    applied: bool
    record: PaymentRecord


class OrderPaymentStateMachine:
    def __init__(self, session_factory, clock=time.time):
        self.session_factory = session_factory
        self.clock = clock

    def create(self, order_id: str, account: str, expected_amount: int, fiat_total, rate,
               started_at: Optional[int] = None) -> Tuple[PaymentRecord, bool]:
        """Start tracking an order. Returns the existing record if there already is one."""
        with self.session_factory() as db:
            existing = db.get(OrderPayment, order_id)
            if existing is not None:
                return PaymentRecord.from_row(existing), False

            row = OrderPayment(
                order_id=order_id,
                account=account,
                status=PaymentStatus.AWAITING_ADDRESS.value,
                expected_amount=expected_amount,
                fiat_total=Decimal(str(fiat_total)),
                rate=Decimal(str(rate)),
                payment_started_at=int(started_at if started_at is not None else self.clock()),
                check_failures=0,
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return self._load(db, order_id), False

            logger.info(f"Order {order_id} awaiting address for {expected_amount} sompi")
            return PaymentRecord.from_row(row), True

    def get(self, order_id: str) -> PaymentRecord:
        with self.session_factory() as db:
            return self._load(db, order_id)

    def find(self, order_id: str) -> Optional[PaymentRecord]:
        with self.session_factory() as db:
            row = db.get(OrderPayment, order_id)
            return PaymentRecord.from_row(row) if row else None

    def reserve_index(self, order_id: str, index: int) -> TransitionResult:
        """Pin a derivation index to an order still awaiting its address. First writer wins."""
        with self.session_factory() as db:
            result = db.execute(
                update(OrderPayment)
                .where(OrderPayment.order_id == order_id,
                       OrderPayment.status == PaymentStatus.AWAITING_ADDRESS.value,
                       OrderPayment.derivation_index.is_(None))
                .values(derivation_index=index)
            )
            db.commit()
            record = self._load(db, order_id)

        applied = result.rowcount == 1
        if applied:
            logger.info(f"Order {order_id} reserved derivation index {index}")
        return TransitionResult(applied=applied, record=record)

    def attach_address(self, order_id: str, address: str, index: Optional[int]) -> TransitionResult:
        return self._transition(
            order_id,
            PaymentStatus.AWAITING_ADDRESS,
            PaymentStatus.AWAITING_PAYMENT,
            payment_address=address,
            derivation_index=index,
        )

    def confirm(self, order_id: str, tx_id: str, amount: int, observed_at: Optional[int] = None,
                accepted: Optional[bool] = None) -> TransitionResult:
        return self._transition(
            order_id,
            PaymentStatus.AWAITING_PAYMENT,
            PaymentStatus.CONFIRMED,
            confirmed_tx_id=tx_id,
            confirmed_amount=amount,
            confirmed_at=int(observed_at if observed_at is not None else self.clock()),
            confirmed_accepted=accepted,
        )

    def manually_confirm(self, order_id: str, actor_id: str, tx_id: Optional[str] = None) -> TransitionResult:
        now = int(self.clock())
        result = self._transition(
            order_id,
            PaymentStatus.AWAITING_PAYMENT,
            PaymentStatus.MANUALLY_CONFIRMED,
            confirmed_tx_id=tx_id or f"manually-verified-{now}",
            confirmed_at=now,
            confirmed_by=str(actor_id),
        )
        if not result.applied and not result.record.is_terminal:
            raise InvalidTransition(
                f"Order {order_id} is {result.record.status.value} and cannot be confirmed yet"
            )
        return result

    def abandon(self, order_id: str) -> TransitionResult:
        return self._transition(order_id, PaymentStatus.AWAITING_PAYMENT, PaymentStatus.ABANDONED)

    def note_check(self, order_id: str, failed: bool) -> None:
        """Track consecutive failed checks so customers can be told to contact support."""
        values = {"check_failures": OrderPayment.check_failures + 1} if failed else {"check_failures": 0}
        with self.session_factory() as db:
            db.execute(
                update(OrderPayment)
                .where(OrderPayment.order_id == order_id,
                       OrderPayment.status == PaymentStatus.AWAITING_PAYMENT.value)
                .values(**values)
            )
            db.commit()

    def awaiting_payment(self, limit: int = 50) -> List[PaymentRecord]:
        """Oldest orders still waiting for funds."""
        with self.session_factory() as db:
            rows = db.scalars(
                select(OrderPayment)
                .where(OrderPayment.status == PaymentStatus.AWAITING_PAYMENT.value)
                .order_by(OrderPayment.payment_started_at, OrderPayment.order_id)
                .limit(limit)
            ).all()
            return [PaymentRecord.from_row(row) for row in rows]

    def with_addresses(self) -> List[PaymentRecord]:
        with self.session_factory() as db:
            rows = db.scalars(
                select(OrderPayment).where(OrderPayment.payment_address.is_not(None))
            ).all()
            return [PaymentRecord.from_row(row) for row in rows]

    def status_counts(self) -> dict:
        with self.session_factory() as db:
            rows = db.execute(
                select(OrderPayment.status, func.count(), func.sum(OrderPayment.confirmed_amount))
                .group_by(OrderPayment.status)
            ).all()
        return {status: (count, total or 0) for status, count, total in rows}

    def _transition(self, order_id: str, source: PaymentStatus, target: PaymentStatus, **values) -> TransitionResult:
        with self.session_factory() as db:
            result = db.execute(
                update(OrderPayment)
                .where(OrderPayment.order_id == order_id, OrderPayment.status == source.value)
                .values(status=target.value, **values)
            )
            db.commit()
            record = self._load(db, order_id)

        applied = result.rowcount == 1
        if applied:
            logger.info(f"Order {order_id}: {source.value} -> {target.value}")
        else:
            logger.info(f"Order {order_id} is {record.status.value}; {target.value} transition ignored")
        return TransitionResult(applied=applied, record=record)

    def _load(self, db, order_id: str) -> PaymentRecord:
        row = db.get(OrderPayment, order_id, populate_existing=True)
        if row is None:
            raise OrderNotFound(f"No payment record for order {order_id}")
        return PaymentRecord.from_row(row)
