import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from starlette.concurrency import run_in_threadpool

from kaspa_gateway.checker import PaymentCheck
from kaspa_gateway.models import PaymentStatus
from kaspa_gateway.state import OrderPaymentStateMachine, PaymentRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollResult:
    record: PaymentRecord
    check: Optional[PaymentCheck] = None
    confirmed_now: bool = False


@dataclass
class SweepReport:
    skipped: bool = False
    checked: int = 0
    confirmed: int = 0
    abandoned: int = 0
    errors: int = 0
    timed_out: int = 0


class PaymentPoller:
    """
    Shared check-and-transition logic for both the interactive path and the
    background sweep, so the two can never disagree on what "paid" means.
    """

    def __init__(self, state: OrderPaymentStateMachine, checker, abandon_after: int = 86400,
                 batch_size: int = 50, concurrency: int = 5, time_budget: float = 25.0, clock=time.time):
        self.state = state
        self.checker = checker
        self.abandon_after = abandon_after
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.time_budget = time_budget
        self.clock = clock
        self._sweep_lock = asyncio.Lock()

    async def check_order(self, order_id: str) -> PollResult:
        """Interactive check of a single order."""
        record = await run_in_threadpool(self.state.get, order_id)
        return await self._process(record)

    async def _process(self, record: PaymentRecord) -> PollResult:
        if record.status is not PaymentStatus.AWAITING_PAYMENT:
            return PollResult(record=record)

        if self.clock() - record.payment_started_at > self.abandon_after:
            result = await run_in_threadpool(self.state.abandon, record.order_id)
            return PollResult(record=result.record)

        check = await self.checker.check_payment(
            record.payment_address, record.expected_amount, record.payment_started_at
        )

        if check.found:
            result = await run_in_threadpool(
                self.state.confirm, record.order_id, check.tx_id, check.amount, check.observed_at, check.accepted
            )
            return PollResult(record=result.record, check=check, confirmed_now=result.applied)

        if check.failed:
            logger.warning(f"Could not check order {record.order_id}: {check.error}")
        await run_in_threadpool(self.state.note_check, record.order_id, failed=check.failed)
        current = await run_in_threadpool(self.state.get, record.order_id)
        return PollResult(record=current, check=check)

    async def sweep_once(self) -> SweepReport:
        """One pass over the oldest orders awaiting payment. Never overlaps itself."""
        if self._sweep_lock.locked():
            logger.info("Previous payment sweep still running, skipping this tick")
            return SweepReport(skipped=True)

        async with self._sweep_lock:
            report = SweepReport()
            records = await run_in_threadpool(self.state.awaiting_payment, limit=self.batch_size)
            now = self.clock()

            due = []
            for record in records:
                if now - record.payment_started_at > self.abandon_after:
                    result = await run_in_threadpool(self.state.abandon, record.order_id)
                    if result.applied:
                        report.abandoned += 1
                else:
                    due.append(record)

            if due:
                await self._check_all(due, report)

            logger.info(
                f"Payment sweep: {report.checked} checked, {report.confirmed} confirmed, "
                f"{report.abandoned} abandoned, {report.errors} errors, {report.timed_out} timed out"
            )
            return report

    async def _check_all(self, records, report: SweepReport) -> None:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(record):
            async with semaphore:
                return await self._process(record)

        tasks = {asyncio.ensure_future(run(record)): record for record in records}
        done, pending = await asyncio.wait(tasks, timeout=self.time_budget)

        for task in pending:
            task.cancel()
            report.timed_out += 1
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Payment sweep budget of {self.time_budget}s exhausted, {len(pending)} orders deferred")

        for task in done:
            record = tasks[task]
            try:
                result = task.result()
            except Exception:
                logger.exception(f"Unexpected failure checking order {record.order_id}")
                report.errors += 1
                continue
            report.checked += 1
            if result.check is not None and result.check.failed:
                report.errors += 1
            if result.confirmed_now:
                report.confirmed += 1


class SweepScheduler:
    """Runs PaymentPoller.sweep_once on a fixed interval."""

    JOB_ID = "kaspa_payment_sweep"

    def __init__(self, poller: PaymentPoller, interval: int = 30):
        self.poller = poller
        self.interval = interval
        self.scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": interval,
            },
            timezone="UTC",
        )

    def start(self) -> None:
        self.scheduler.add_job(
            self.poller.sweep_once,
            trigger=IntervalTrigger(seconds=self.interval),
            id=self.JOB_ID,
            name="Kaspa payment sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Payment sweep scheduled every {self.interval} seconds")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Payment sweep scheduler stopped")
