"""
KAS exchange rate with ordered source fallback and a short-lived cache.

Sources are tried in priority order, each with its own timeout. The first
positive quote wins and replaces the cached rate wholesale. When every
source fails the caller gets RateUnavailable: a hardcoded or stale price
would mis-charge the customer.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx

from kaspa_gateway.errors import RateUnavailable

logger = logging.getLogger(__name__)

USER_AGENT = "Kaspa-Payments-Gateway/1.0"


@dataclass(frozen=True)
class RateSource:
    name: str
    url: str
    parse: Callable[[Any], Decimal]
    timeout: Optional[float] = None


@dataclass(frozen=True)
class ExchangeRate:
    value: Decimal
    fetched_at: float
    source: str


def coingecko_source(currency: str = "usd") -> RateSource:
    currency = currency.lower()

    def parse(body):
        return Decimal(str(body["kaspa"][currency]))

    return RateSource(
        name="coingecko",
        url=f"https://api.coingecko.com/api/v3/simple/price?ids=kaspa&vs_currencies={currency}",
        parse=parse,
    )


def cryptocompare_source(currency: str = "usd") -> RateSource:
    currency = currency.upper()

    def parse(body):
        return Decimal(str(body[currency]))

    return RateSource(
        name="cryptocompare",
        url=f"https://min-api.cryptocompare.com/data/price?fsym=KAS&tsyms={currency}",
        parse=parse,
    )


SOURCE_FACTORIES: Dict[str, Callable[[str], RateSource]] = {
    "coingecko": coingecko_source,
    "cryptocompare": cryptocompare_source,
}


def build_sources(names: Iterable[str], currency: str = "usd") -> List[RateSource]:
    sources = []
    for name in names:
        factory = SOURCE_FACTORIES.get(name)
        if factory is None:
            raise ValueError(f"Unknown rate source: {name}")
        sources.append(factory(currency))
    return sources


class RateOracle:
    def __init__(self, sources: List[RateSource], ttl: float = 300.0, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None, clock=time.time):
        if not sources:
            raise ValueError("At least one rate source is required")
        self.sources = list(sources)
        self.ttl = ttl
        self.timeout = timeout
        self.transport = transport
        self.clock = clock
        self._cached: Optional[ExchangeRate] = None
        self._refreshing: Optional[asyncio.Future] = None

    @property
    def cached(self) -> Optional[ExchangeRate]:
        return self._cached

    async def get_rate(self) -> Decimal:
        cached = self._cached
        if cached is not None and self.clock() - cached.fetched_at < self.ttl:
            return cached.value

        # Callers arriving during a refresh share it instead of hitting the sources again
        if self._refreshing is None or self._refreshing.done():
            self._refreshing = asyncio.ensure_future(self._refresh())
        rate = await asyncio.shield(self._refreshing)
        return rate.value

    async def _refresh(self) -> ExchangeRate:
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport, headers=headers) as client:
            for source in self.sources:
                value = await self._fetch(client, source)
                if value is None:
                    continue
                rate = ExchangeRate(value=value, fetched_at=self.clock(), source=source.name)
                self._cached = rate
                logger.info(f"KAS rate {value} from {source.name}")
                return rate

        logger.error("All KAS rate sources failed")
        raise RateUnavailable("Unable to fetch current exchange rate from any source")

    async def _fetch(self, client: httpx.AsyncClient, source: RateSource) -> Optional[Decimal]:
        try:
            response = await client.get(source.url, timeout=source.timeout or self.timeout)
            response.raise_for_status()
            value = source.parse(response.json())
        except httpx.TimeoutException:
            logger.warning(f"Rate source {source.name} timed out")
            return None
        except httpx.HTTPError as e:
            logger.warning(f"Rate source {source.name} failed: {e}")
            return None
        except (ValueError, KeyError, TypeError, InvalidOperation) as e:
            logger.warning(f"Rate source {source.name} returned an unusable body: {e}")
            return None

        if not value.is_finite() or value <= 0:
            logger.warning(f"Rate source {source.name} returned non-positive rate {value}")
            return None
        return value
