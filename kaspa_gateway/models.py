import enum

from sqlalchemy import Boolean, Column, String, Integer, Numeric, Index
from kaspa_gateway.database import Base


class PaymentStatus(str, enum.Enum):
    AWAITING_ADDRESS = "awaiting_address"
    AWAITING_PAYMENT = "awaiting_payment"
    CONFIRMED = "confirmed"
    MANUALLY_CONFIRMED = "manually_confirmed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self):
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    PaymentStatus.CONFIRMED,
    PaymentStatus.MANUALLY_CONFIRMED,
    PaymentStatus.ABANDONED,
})


class OrderPayment(Base):
    __tablename__ = "order_payments"

    order_id = Column(String, primary_key=True)            # owned by the order store
    account = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False)                # PaymentStatus value

    payment_address = Column(String, index=True)
    derivation_index = Column(Integer)

    expected_amount = Column(Integer, nullable=False)      # sompi
    fiat_total = Column(Numeric(18, 2), nullable=False)
    rate = Column(Numeric(24, 12), nullable=False)
    payment_started_at = Column(Integer, nullable=False)   # unix seconds

    confirmed_amount = Column(Integer)                     # sompi
    confirmed_tx_id = Column(String)
    confirmed_at = Column(Integer)
    confirmed_by = Column(String)                          # admin actor for manual overrides
    confirmed_accepted = Column(Boolean)                   # is_accepted of the matched transaction

    check_failures = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_order_payments_status_started", "status", "payment_started_at"),
    )


class AddressCounter(Base):
    __tablename__ = "address_counters"

    account = Column(String, primary_key=True)
    next_index = Column(Integer, nullable=False, default=0)
