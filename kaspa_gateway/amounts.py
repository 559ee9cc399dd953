from decimal import Decimal, ROUND_HALF_UP

SOMPI_PER_KAS = 100_000_000
KAS_QUANTUM = Decimal("0.00000001")


def to_sompi(kas) -> int:
    """Convert a KAS amount to integer sompi, rounding half-up at the 8th decimal."""
    value = Decimal(str(kas)).quantize(KAS_QUANTUM, rounding=ROUND_HALF_UP)
    return int(value * SOMPI_PER_KAS)


def to_kas(sompi: int) -> Decimal:
    return (Decimal(sompi) / SOMPI_PER_KAS).quantize(KAS_QUANTUM)


def fiat_to_sompi(fiat_total, rate) -> int:
    rate = Decimal(str(rate))
    if rate <= 0:
        raise ValueError("Exchange rate must be positive")
    return to_sompi(Decimal(str(fiat_total)) / rate)
