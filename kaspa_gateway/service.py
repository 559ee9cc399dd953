import enum
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from starlette.concurrency import run_in_threadpool

from kaspa_gateway.allocator import IndexAllocator
from kaspa_gateway.amounts import fiat_to_sompi, to_kas
from kaspa_gateway.checker import PaymentChecker
from kaspa_gateway.config import Settings
from kaspa_gateway.derivation import AddressDeriver, KaspaAddressDeriver, WatchOnlyKey, validate_address
from kaspa_gateway.errors import ApiError, IndexMismatch, InvalidKeyFormat, RateUnavailable
from kaspa_gateway.kaspa_api import KaspaApiClient
from kaspa_gateway.models import PaymentStatus
from kaspa_gateway.rates import RateOracle, build_sources
from kaspa_gateway.scheduler import PaymentPoller
from kaspa_gateway.state import OrderPaymentStateMachine, PaymentRecord

logger = logging.getLogger(__name__)


class CustomerStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class CheckResponse:
    status: CustomerStatus
    message: str
    tx_id: Optional[str] = None
    amount: Optional[Decimal] = None
    address: Optional[str] = None


class PaymentService:
    """Entry points used by the order store, the checkout page and admins."""

    def __init__(self, settings: Settings, state: OrderPaymentStateMachine, allocator: IndexAllocator,
                 deriver: AddressDeriver, oracle: RateOracle, poller: PaymentPoller, api: KaspaApiClient):
        self.settings = settings
        self.state = state
        self.allocator = allocator
        self.deriver = deriver
        self.oracle = oracle
        self.poller = poller
        self.api = api
        self.watch_only_key = WatchOnlyKey.parse(settings.watch_only_key) if settings.watch_only_key else None

    async def initiate_payment(self, order_id: str, fiat_total) -> PaymentRecord:
        existing = await run_in_threadpool(self.state.find, order_id)
        if existing is not None:
            if existing.status is PaymentStatus.AWAITING_ADDRESS:
                existing = await run_in_threadpool(self._prepare_address, order_id)
            return existing

        fiat_total = Decimal(str(fiat_total))
        if fiat_total <= 0:
            raise ValueError("Order total must be positive")

        rate = await self.oracle.get_rate()
        expected = fiat_to_sompi(fiat_total, rate)
        record, created = await run_in_threadpool(
            self.state.create, order_id, self.settings.account, expected, fiat_total, rate
        )
        if created:
            logger.info(f"Order {order_id}: {fiat_total} at rate {rate} -> {to_kas(expected)} KAS")

        if record.status is PaymentStatus.AWAITING_ADDRESS:
            record = await run_in_threadpool(self._prepare_address, order_id)
        return record

    def _prepare_address(self, order_id: str) -> PaymentRecord:
        if self.watch_only_key is not None:
            return self.assign_address(order_id)
        # Derived on the checkout page at the reserved index and posted back
        return self.reserve_index(order_id)

    def reserve_index(self, order_id: str) -> PaymentRecord:
        """Take the next derivation index for an order that has none yet."""
        record = self.state.get(order_id)
        if record.status is not PaymentStatus.AWAITING_ADDRESS or record.derivation_index is not None:
            return record

        index = self.allocator.next_index(record.account)
        result = self.state.reserve_index(order_id, index)
        if not result.applied:
            logger.warning(
                f"Order {order_id} already had index {result.record.derivation_index}; index {index} left unused"
            )
        return result.record

    def assign_address(self, order_id: str) -> PaymentRecord:
        """Derive the order's address at its reserved index. At most one address per order."""
        if self.watch_only_key is None:
            raise InvalidKeyFormat("No watch-only key configured")
        record = self.reserve_index(order_id)
        if record.status is not PaymentStatus.AWAITING_ADDRESS:
            return record

        index = record.derivation_index
        address = self.deriver.derive(self.watch_only_key, index, 1)[0].address
        result = self.state.attach_address(order_id, address, index)
        self.allocator.record_used(record.account, index)

        if not result.applied:
            logger.warning(f"Order {order_id} already had an address; derived {address} discarded")
        return result.record

    def save_derived_address(self, order_id: str, address: str, index: Optional[int] = None) -> PaymentRecord:
        """Store an address derived outside the service (checkout page derivation)."""
        address = validate_address(address, self.settings.address_prefix)
        record = self.state.get(order_id)
        if record.derivation_index is not None:
            if index is not None and index != record.derivation_index:
                raise IndexMismatch(
                    f"Order {order_id} reserved index {record.derivation_index}, address was derived at {index}"
                )
            index = record.derivation_index

        result = self.state.attach_address(order_id, address, index)
        if result.applied and index is not None and index >= 0:
            self.allocator.record_used(result.record.account, index)
        return result.record

    async def check_payment_now(self, order_id: str) -> CheckResponse:
        poll = await self.poller.check_order(order_id)
        record = poll.record

        if record.status in (PaymentStatus.CONFIRMED, PaymentStatus.MANUALLY_CONFIRMED):
            amount = to_kas(record.confirmed_amount) if record.confirmed_amount is not None else None
            return CheckResponse(
                status=CustomerStatus.COMPLETED,
                message="Payment confirmed! Order is being processed.",
                tx_id=record.confirmed_tx_id,
                amount=amount,
            )
        if record.status is PaymentStatus.ABANDONED:
            return CheckResponse(
                status=CustomerStatus.ERROR,
                message="The payment window has closed. Please contact support if you sent payment.",
            )
        if record.status is PaymentStatus.AWAITING_ADDRESS:
            return CheckResponse(status=CustomerStatus.PENDING, message="Generating payment address...")
        if record.check_failures >= self.settings.max_check_failures:
            return CheckResponse(
                status=CustomerStatus.ERROR,
                message="We could not verify your payment right now. Please contact support.",
                address=record.payment_address,
            )
        return CheckResponse(
            status=CustomerStatus.PENDING,
            message="Waiting for payment...",
            address=record.payment_address,
        )

    def manually_confirm(self, order_id: str, actor_id: str, tx_id: Optional[str] = None) -> PaymentRecord:
        result = self.state.manually_confirm(order_id, actor_id, tx_id)
        if result.applied:
            logger.info(f"Order {order_id} manually confirmed by {actor_id}")
        return result.record

    def get_payment(self, order_id: str) -> PaymentRecord:
        return self.state.get(order_id)

    async def get_current_rate(self) -> Decimal:
        return await self.oracle.get_rate()

    async def consolidated_balance(self) -> dict:
        """Sum of balances over every address this service handed out."""
        checked: List[str] = []
        total = 0
        for record in await run_in_threadpool(self.state.with_addresses):
            if record.payment_address in checked:
                continue
            try:
                total += await self.api.get_balance(record.payment_address)
            except ApiError as e:
                logger.warning(f"Skipping balance of {record.payment_address}: {e}")
                continue
            checked.append(record.payment_address)

        try:
            rate = await self.oracle.get_rate()
        except RateUnavailable:
            rate = None

        total_kas = to_kas(total)
        return {
            "total_balance": total_kas,
            "total_fiat_value": (total_kas * rate).quantize(Decimal("0.01")) if rate is not None else None,
            "rate": rate,
            "address_count": len(checked),
            "addresses_checked": checked,
        }

    def payment_stats(self) -> dict:
        counts = self.state.status_counts()
        confirmed_statuses = (PaymentStatus.CONFIRMED.value, PaymentStatus.MANUALLY_CONFIRMED.value)

        total_attempts = sum(count for count, _ in counts.values())
        confirmed = sum(counts.get(status, (0, 0))[0] for status in confirmed_statuses)
        revenue = sum(counts.get(status, (0, 0))[1] for status in confirmed_statuses)
        success_rate = round(confirmed / total_attempts * 100, 1) if total_attempts else 0.0

        return {
            "total_orders": confirmed,
            "total_attempts": total_attempts,
            "awaiting_payment": counts.get(PaymentStatus.AWAITING_PAYMENT.value, (0, 0))[0],
            "abandoned": counts.get(PaymentStatus.ABANDONED.value, (0, 0))[0],
            "total_revenue_kas": to_kas(revenue),
            "success_rate": success_rate,
            "next_address_index": self.allocator.peek(self.settings.account),
        }


def build_service(settings: Settings, session_factory, api_transport=None, rate_transport=None) -> PaymentService:
    state = OrderPaymentStateMachine(session_factory)
    api = KaspaApiClient(
        base_url=settings.api_base_url,
        prefix=settings.address_prefix,
        timeout=settings.api_timeout,
        transport=api_transport,
    )
    checker = PaymentChecker(
        api,
        prefix=settings.address_prefix,
        tolerance=settings.amount_tolerance,
        legacy_balance_match=settings.legacy_balance_match,
    )
    oracle = RateOracle(
        build_sources(settings.rate_sources, settings.rate_currency),
        ttl=settings.rate_cache_ttl,
        timeout=settings.rate_timeout,
        transport=rate_transport,
    )
    poller = PaymentPoller(
        state,
        checker,
        abandon_after=settings.abandon_after,
        batch_size=settings.sweep_batch_size,
        concurrency=settings.sweep_concurrency,
        time_budget=settings.sweep_time_budget,
    )
    return PaymentService(
        settings=settings,
        state=state,
        allocator=IndexAllocator(session_factory),
        deriver=KaspaAddressDeriver(prefix=settings.address_prefix),
        oracle=oracle,
        poller=poller,
        api=api,
    )
