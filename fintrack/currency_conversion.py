from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from http.client import HTTPException
import json
import logging
import threading
import time
from typing import Iterable, Mapping, Protocol
from urllib.request import urlopen

logger = logging.getLogger(__name__)

ONE = Decimal("1")

DEFAULT_RATES: dict[tuple[str, str], Decimal] = {
    ("EUR", "CHF"): Decimal("0.94"),
    ("USD", "CHF"): Decimal("0.88"),
    ("GBP", "CHF"): Decimal("1.11"),
}


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


class RateProvider(Protocol):
    def get_rate(self, on: date | str | None, source: str, target: str) -> Decimal:
        ...


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    ``rates`` maps a (source, target) pair to the number of target units per
    source unit. ``dated_rates`` maps (date, source, target) and takes
    precedence for that exact date. A pair missing in one direction is
    resolved through its inverse.
    """

    rates: Mapping[tuple[str, str], Decimal] = None
    dated_rates: Mapping[tuple[date, str, str], Decimal] = None

    def __post_init__(self) -> None:
        rates = DEFAULT_RATES if self.rates is None else self.rates
        object.__setattr__(
            self,
            "rates",
            {
                (normalize_currency(source), normalize_currency(target)): _coerce_rate(rate)
                for (source, target), rate in rates.items()
            },
        )
        object.__setattr__(
            self,
            "dated_rates",
            {
                (on, normalize_currency(source), normalize_currency(target)): _coerce_rate(rate)
                for (on, source, target), rate in (self.dated_rates or {}).items()
            },
        )

    def get_rate(self, on: date | str | None, source: str, target: str) -> Decimal:
        normalized_source = normalize_currency(source)
        normalized_target = normalize_currency(target)
        if normalized_source == normalized_target:
            return ONE

        rate_date = _parse_rate_date(on)
        if rate_date is not None:
            dated = self._lookup(self.dated_rates, (rate_date,), normalized_source, normalized_target)
            if dated is not None:
                return dated
        rate = self._lookup(self.rates, (), normalized_source, normalized_target)
        if rate is None:
            raise ValueError(f"Unsupported currency pair: {normalized_source}/{normalized_target}")
        return rate

    @staticmethod
    def _lookup(
        table: Mapping[tuple, Decimal], prefix: tuple, source: str, target: str
    ) -> Decimal | None:
        direct = table.get(prefix + (source, target))
        if direct is not None:
            return direct
        inverse = table.get(prefix + (target, source))
        if inverse:
            return ONE / inverse
        return None


@dataclass(frozen=True)
class CachedRates:
    rates: Mapping[str, Decimal]
    expires_at: float | None


@dataclass
class FrankfurterRateProvider:
    base_url: str = "https://api.frankfurter.dev/v1"
    cache_ttl_seconds: int = 12 * 60 * 60
    timeout_seconds: float = 8
    max_cache_entries: int = 512
    _cache: dict[tuple[str, str], CachedRates] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def get_rate(self, on: date | str | None, source: str, target: str) -> Decimal:
        normalized_source = normalize_currency(source)
        normalized_target = normalize_currency(target)
        if normalized_source == normalized_target:
            return ONE

        date_key = _normalize_rate_date(on)
        try:
            rates = self._get_rates(normalized_source, date_key)
        except RateProviderUnavailable:
            if date_key is None:
                raise
            logger.warning(
                "Rate fetch failed for %s %s/%s, trying latest.",
                date_key,
                normalized_source,
                normalized_target,
            )
            rates = self._get_rates(normalized_source, None)
        try:
            return rates[normalized_target]
        except KeyError as exc:
            raise ValueError(f"Unsupported currency: {normalized_target}") from exc

    def _get_rates(self, base_currency: str, date_key: str | None) -> Mapping[str, Decimal]:
        cache_key = (base_currency, date_key or "latest")
        cached = self._cache.get(cache_key)
        now = time.monotonic()
        if cached and (cached.expires_at is None or cached.expires_at > now):
            return cached.rates

        rates = self._fetch_rates(base_currency, date_key)
        expires_at = None
        if date_key is None:
            expires_at = now + self.cache_ttl_seconds
        with self._lock:
            self._cache.pop(cache_key, None)
            # Oldest entries go first once the cache is full.
            while self._cache and len(self._cache) >= self.max_cache_entries:
                del self._cache[next(iter(self._cache))]
            self._cache[cache_key] = CachedRates(rates=rates, expires_at=expires_at)
        return rates

    def _fetch_rates(self, base_currency: str, date_key: str | None) -> Mapping[str, Decimal]:
        endpoint = date_key or "latest"
        url = f"{self.base_url}/{endpoint}?base={base_currency}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPException, OSError, ValueError) as exc:
            raise RateProviderUnavailable("Frankfurter API unavailable") from exc

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Frankfurter response missing rates")

        try:
            parsed = {
                normalize_currency(code): Decimal(str(value)) for code, value in rates.items()
            }
        except (AttributeError, InvalidOperation, ValueError) as exc:
            raise RateProviderUnavailable("Frankfurter response has malformed rates") from exc
        parsed[base_currency] = ONE
        return parsed


@dataclass(frozen=True)
class CompositeRateProvider:
    primary: RateProvider
    fallback: RateProvider

    def get_rate(self, on: date | str | None, source: str, target: str) -> Decimal:
        try:
            return self.primary.get_rate(on, source, target)
        except RateProviderUnavailable:
            return self.fallback.get_rate(on, source, target)


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_provider: RateProvider | None = None,
    date: date | str | None = None,
) -> Decimal:
    """Convert a monetary amount, raising when no rate can be resolved."""
    provider = rate_provider or StaticRateProvider()
    normalized_source = normalize_currency(source_currency)
    normalized_target = normalize_currency(target_currency)
    coerced_amount = _coerce_amount(amount)

    if normalized_source == normalized_target:
        return coerced_amount

    return coerced_amount * provider.get_rate(date, normalized_source, normalized_target)


class Valuator:
    """Converts native amounts into one reporting currency.

    Rates are memoised per (date, source, target) for the lifetime of the
    valuator, which is meant to span a single computation. A rate that
    cannot be resolved is replaced by ``1`` and the currency is recorded in
    ``degraded_currencies``; callers decide whether to surface it.
    """

    def __init__(self, rate_provider: RateProvider, base_currency: str = "CHF") -> None:
        self.rate_provider = rate_provider
        self.base_currency = normalize_currency(base_currency)
        self._rates: dict[tuple[date | None, str, str], Decimal] = {}
        self._degraded: set[str] = set()

    @property
    def degraded_currencies(self) -> list[str]:
        return sorted(self._degraded)

    @property
    def is_degraded(self) -> bool:
        return bool(self._degraded)

    def rate(self, source: str, on: date | None, target: str | None = None) -> Decimal:
        target_code = self._target(target)
        try:
            source_code = normalize_currency(source)
        except (AttributeError, ValueError):
            logger.warning("Invalid currency code %r, using rate 1.", source)
            self._degraded.add(str(source))
            return ONE
        if source_code == target_code:
            return ONE

        key = (on, source_code, target_code)
        cached = self._rates.get(key)
        if cached is not None:
            return cached
        rate = self._resolve(on, source_code, target_code)
        self._rates[key] = rate
        return rate

    def convert(
        self,
        amount: Decimal | int | float | str,
        source: str,
        on: date | None,
        target: str | None = None,
    ) -> Decimal:
        return _coerce_amount(amount) * self.rate(source, on, target)

    async def prefetch(
        self, requests: Iterable[tuple[str, date | None]], target: str | None = None
    ) -> dict[tuple[str, date | None], Decimal]:
        """Resolve several (currency, date) rates concurrently.

        Lookups run in worker threads; each one degrades independently.
        """
        target_code = self._target(target)
        pending = list(dict.fromkeys(requests))
        results = await asyncio.gather(
            *(asyncio.to_thread(self.rate, source, on, target_code) for source, on in pending)
        )
        return dict(zip(pending, results))

    def _resolve(self, on: date | None, source: str, target: str) -> Decimal:
        # A rate lookup must never abort a report, whatever the provider raises.
        try:
            rate = _coerce_rate(self.rate_provider.get_rate(on, source, target))
        except Exception as exc:
            logger.warning(
                "Could not resolve %s/%s rate for %s, using 1: %r", source, target, on, exc
            )
            self._degraded.add(source)
            return ONE
        if not rate.is_finite() or rate <= 0:
            logger.warning("Ignoring invalid %s/%s rate %s for %s, using 1.", source, target, rate, on)
            self._degraded.add(source)
            return ONE
        return rate

    def _target(self, target: str | None) -> str:
        return normalize_currency(target) if target else self.base_currency


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def _coerce_rate(rate: Decimal | int | float | str) -> Decimal:
    return _coerce_amount(rate)


def _parse_rate_date(value: date | str | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError("Date must be in YYYY-MM-DD format.") from exc


def _normalize_rate_date(value: date | str | None) -> str | None:
    parsed = _parse_rate_date(value)
    if parsed is None or parsed > date.today():
        return None
    return parsed.isoformat()
