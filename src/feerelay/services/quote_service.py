"""Quote engine.

Quotes are anonymous, priced from a fixed rate table, and valid for
exactly five minutes. Every amount is locked in at generation time;
consumers must never recompute them.
"""

import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, Optional, Union

from feerelay.errors import (
    AmountOutOfRange,
    QuoteExpired,
    QuoteInvalid,
    QuoteNotFound,
    UnsupportedCurrencyPair,
    ValidationError,
)
from feerelay.store import KeyValueStore

logger = logging.getLogger(__name__)

QUOTE_TTL_SECONDS = 300
PLATFORM_FEE_RATE = Decimal("0.005")  # 0.5%

# Units of each currency per 1 USD
USD_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "USDT": Decimal("1"),
    "KRW": Decimal("1150"),
    "PHP": Decimal("56"),
}

AMOUNT_LIMITS: dict[str, tuple[Decimal, Decimal]] = {
    "USD": (Decimal("1"), Decimal("10000")),
    "USDT": (Decimal("1"), Decimal("10000")),
    "KRW": (Decimal("1000"), Decimal("10000000")),
    "PHP": (Decimal("50"), Decimal("500000")),
}

CENT = Decimal("0.01")
RATE_PRECISION = Decimal("0.00000001")

KEY_PREFIX = "quote:"


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def get_rate(from_currency: str, to_currency: str) -> Decimal:
    """Fixed exchange rate, derived through USD for cross pairs.

    Raises:
        UnsupportedCurrencyPair: Unknown currency or same-currency pair.
    """
    if from_currency == to_currency or from_currency not in USD_RATES or to_currency not in USD_RATES:
        raise UnsupportedCurrencyPair(f"Unsupported currency pair: {from_currency}/{to_currency}")
    rate = USD_RATES[to_currency] / USD_RATES[from_currency]
    return rate.quantize(RATE_PRECISION, rounding=ROUND_HALF_UP)


@dataclass
class Quote:
    """A time-boxed, locked-in price commitment."""

    id: str
    from_currency: str
    to_currency: str
    from_amount: Decimal
    to_amount: Decimal
    exchange_rate: Decimal
    platform_fee: Decimal
    total_cost: Decimal
    created_at: float
    expires_at: float
    consumed: bool = False

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def seconds_until_expiry(self, now: float) -> float:
        return self.expires_at - now

    def to_json(self) -> str:
        data = asdict(self)
        for key in ("from_amount", "to_amount", "exchange_rate", "platform_fee", "total_cost"):
            data[key] = str(data[key])
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> "Quote":
        data = json.loads(raw)
        for key in ("from_amount", "to_amount", "exchange_rate", "platform_fee", "total_cost"):
            data[key] = Decimal(data[key])
        return cls(**data)


@dataclass
class QuoteValidation:
    """Result of :meth:`QuoteEngine.validate_quote`."""

    valid: bool
    quote: Optional[Quote] = None
    error: Optional[QuoteInvalid] = None


class QuoteEngine:
    """Generates and validates quotes against a key-value store."""

    def __init__(
        self,
        store: KeyValueStore,
        retention_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        # Kept past expiry so late lookups report "expired" rather than "not found"
        self.retention_seconds = max(retention_seconds, QUOTE_TTL_SECONDS)
        self._clock = clock

    async def generate_quote(
        self,
        from_currency: str,
        to_currency: str,
        from_amount: Union[Decimal, str, int],
    ) -> Quote:
        """Price a prospective transfer.

        Raises:
            UnsupportedCurrencyPair: Pair not in the rate table.
            AmountOutOfRange: Amount outside the source currency's bounds.
            ValidationError: Amount is not a number.
        """
        from_currency = from_currency.upper().strip()
        to_currency = to_currency.upper().strip()
        rate = get_rate(from_currency, to_currency)

        try:
            amount = Decimal(str(from_amount))
        except InvalidOperation:
            raise ValidationError(f"Invalid amount: {from_amount}")
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Amount must be a positive number")

        minimum, maximum = AMOUNT_LIMITS[from_currency]
        if amount < minimum or amount > maximum:
            raise AmountOutOfRange(
                f"{from_currency} amount must be between {minimum} and {maximum}"
            )

        amount = _money(amount)
        fee = _money(amount * PLATFORM_FEE_RATE)
        now = self._clock()

        quote = Quote(
            id=f"quote_{uuid.uuid4().hex}",
            from_currency=from_currency,
            to_currency=to_currency,
            from_amount=amount,
            to_amount=_money(amount * rate),
            exchange_rate=rate,
            platform_fee=fee,
            total_cost=_money(amount + fee),
            created_at=now,
            expires_at=now + QUOTE_TTL_SECONDS,
        )
        await self.store.set(KEY_PREFIX + quote.id, quote.to_json(), ttl=self.retention_seconds)

        logger.info(
            f"Quote {quote.id}: {quote.from_amount} {from_currency} -> "
            f"{quote.to_amount} {to_currency} @ {rate}"
        )
        return quote

    async def get_quote(self, quote_id: str) -> Quote:
        """Fetch a quote regardless of validity.

        Raises:
            QuoteNotFound: Unknown id or past retention.
        """
        raw = await self.store.get(KEY_PREFIX + quote_id)
        if raw is None:
            raise QuoteNotFound(f"Quote {quote_id} not found")
        return Quote.from_json(raw)

    async def validate_quote(self, quote_id: str) -> QuoteValidation:
        """Check a quote can still be used. Expiry is permanent."""
        try:
            quote = await self.get_quote(quote_id)
        except QuoteNotFound as e:
            return QuoteValidation(valid=False, error=QuoteInvalid(e.message))

        if quote.is_expired(self._clock()):
            return QuoteValidation(valid=False, quote=quote, error=QuoteExpired("Quote has expired"))
        if quote.consumed:
            return QuoteValidation(
                valid=False, quote=quote, error=QuoteInvalid("Quote has already been used")
            )
        return QuoteValidation(valid=True, quote=quote)

    async def invalidate_quote(self, quote_id: str) -> None:
        """Mark a quote consumed. Consumed quotes never validate again."""
        try:
            quote = await self.get_quote(quote_id)
        except QuoteNotFound:
            return
        quote.consumed = True
        await self.store.set(KEY_PREFIX + quote_id, quote.to_json(), ttl=self.retention_seconds)
        logger.debug(f"Quote {quote_id} invalidated")

    @staticmethod
    def supported_pairs() -> list[dict]:
        return [
            {"from": a, "to": b}
            for a in USD_RATES
            for b in USD_RATES
            if a != b
        ]

    @staticmethod
    def current_rates() -> dict[str, str]:
        """Every supported pair's rate, keyed ``FROM_TO``."""
        return {
            f"{pair['from']}_{pair['to']}": str(get_rate(pair["from"], pair["to"]))
            for pair in QuoteEngine.supported_pairs()
        }
