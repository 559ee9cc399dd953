"""
Decides whether an expected payment has reached an address.

With a ``since`` timestamp (unix seconds) only transactions observed strictly
after it can match, compared at millisecond resolution, so funds that sat on the address before the order existed are never
mistaken for the payment. Amounts are integer sompi; ``tolerance`` allows a
shortfall of that many sompi, and overpayment always matches.
"""

import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from kaspa_gateway.derivation import normalize_address
from kaspa_gateway.errors import ApiError

logger = logging.getLogger(__name__)

# block_time is reported in milliseconds; anything this large cannot be seconds
MILLISECOND_THRESHOLD = 10 ** 11


class CheckOutcome(str, enum.Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class PaymentCheck:
    outcome: CheckOutcome
    tx_id: Optional[str] = None
    amount: Optional[int] = None
    observed_at: Optional[int] = None
    accepted: Optional[bool] = None
    balance: Optional[int] = None
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.outcome is CheckOutcome.FOUND

    @property
    def failed(self) -> bool:
        return self.outcome is CheckOutcome.ERROR


def transaction_time_ms(tx: Dict[str, Any]) -> Optional[int]:
    raw = tx.get("block_time")
    if raw is None:
        raw = tx.get("timestamp")
    if raw is None:
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return None
    if value < MILLISECOND_THRESHOLD:
        value *= 1000
    return value


def transaction_time(tx: Dict[str, Any]) -> Optional[int]:
    value = transaction_time_ms(tx)
    return value // 1000 if value is not None else None


def find_matching_transaction(transactions: Iterable[Dict[str, Any]], address: str, expected_amount: int,
                              since: int, tolerance: int) -> Optional[PaymentCheck]:
    """First transaction after ``since`` paying ``address`` at least the expected amount."""
    for tx in transactions:
        if not isinstance(tx, dict):
            continue
        tx_ms = transaction_time_ms(tx)
        if tx_ms is None or tx_ms <= since * 1000:
            continue
        tx_time = tx_ms // 1000

        for output in tx.get("outputs") or []:
            if output.get("script_public_key_address") != address:
                continue
            try:
                amount = int(output["amount"])
            except (KeyError, TypeError, ValueError):
                continue
            if amount < expected_amount - tolerance:
                continue

            if amount > expected_amount + tolerance:
                logger.info(f"Overpayment to {address}: expected {expected_amount}, got {amount} sompi")
            return PaymentCheck(
                outcome=CheckOutcome.FOUND,
                tx_id=tx.get("transaction_id") or f"tx-{tx_time}",
                amount=amount,
                observed_at=tx_time,
                accepted=bool(tx.get("is_accepted")),
            )
    return None


class PaymentChecker:
    def __init__(self, api, prefix: str = "kaspa", tolerance: int = 1,
                 legacy_balance_match: bool = False, clock=time.time):
        self.api = api
        self.prefix = prefix
        self.tolerance = tolerance
        self.legacy_balance_match = legacy_balance_match
        self.clock = clock

    async def check_payment(self, address: str, expected_amount: int, since: Optional[int] = None) -> PaymentCheck:
        address = normalize_address(address, self.prefix)

        if since is None:
            try:
                balance = await self.api.get_balance(address)
            except ApiError as e:
                return PaymentCheck(outcome=CheckOutcome.ERROR, error=str(e))
            return self._check_untimed_balance(address, expected_amount, balance)

        # Balances are ignored once a start time is known
        try:
            transactions = await self.api.get_full_transactions(address)
        except ApiError as e:
            return PaymentCheck(outcome=CheckOutcome.ERROR, error=str(e))

        match = find_matching_transaction(transactions, address, expected_amount, since, self.tolerance)
        if match is not None:
            logger.info(f"Payment found for {address}: tx {match.tx_id}, {match.amount} sompi")
            return match
        return PaymentCheck(outcome=CheckOutcome.NOT_FOUND)

    def _check_untimed_balance(self, address: str, expected_amount: int, balance: int) -> PaymentCheck:
        if not self.legacy_balance_match:
            logger.warning(f"No payment start time for {address}; balance matching is disabled")
            return PaymentCheck(outcome=CheckOutcome.NOT_FOUND, balance=balance)

        if balance >= expected_amount - self.tolerance:
            now = int(self.clock())
            logger.info(f"Balance of {address} covers {expected_amount} sompi (no start time)")
            return PaymentCheck(
                outcome=CheckOutcome.FOUND,
                tx_id=f"balance-confirmed-{now}",
                amount=balance,
                observed_at=now,
                balance=balance,
            )
        return PaymentCheck(outcome=CheckOutcome.NOT_FOUND, balance=balance)
