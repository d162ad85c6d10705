"""Exchange rate source backed by a free JSON rate API.

Uses urllib.request (stdlib) in a worker thread with a bounded timeout,
so a slow rate API never blocks the event loop or the caller indefinitely.
The API returns ``{"base": "USD", "rates": {"EUR": 0.92, ...}}``.
"""

import asyncio
import json
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation

from pricekeeper.config import ExchangeRateSettings
from pricekeeper.exceptions import TransientUpstreamFailure
from pricekeeper.logging import get_logger

logger = get_logger(__name__)


class ExchangeRateSource(ABC):
    """Upstream lookup of all quote rates for one base currency."""

    @abstractmethod
    async def fetch_rates(self, base: str) -> dict[str, Decimal]:
        """Return {quote_currency: rate} for ``base``.

        Raises TransientUpstreamFailure when the source is unavailable.
        """
        ...


class HttpExchangeRateSource(ExchangeRateSource):
    """Fetches rates from ``{api_base_url}/{BASE}``."""

    def __init__(self, settings: ExchangeRateSettings) -> None:
        self._base_url = settings.api_base_url.rstrip("/")
        self._timeout = settings.timeout_seconds

    def _fetch_sync(self, base: str) -> object:
        url = f"{self._base_url}/{base.upper()}"
        headers = {"Accept": "application/json", "User-Agent": "pricekeeper/0.1"}
        req = urllib.request.Request(url, headers=headers)
        with urllib.request.urlopen(req, timeout=self._timeout) as resp:
            return json.loads(resp.read())

    async def fetch_rates(self, base: str) -> dict[str, Decimal]:
        try:
            payload = await asyncio.wait_for(
                asyncio.to_thread(self._fetch_sync, base),
                timeout=self._timeout + 1,
            )
        except (asyncio.TimeoutError, urllib.error.URLError, TimeoutError, OSError) as e:
            logger.warning("rate_api_unreachable", base=base, error=str(e))
            raise TransientUpstreamFailure(f"rate API unreachable for {base}: {e}") from e
        except ValueError as e:
            # JSONDecodeError and UnicodeDecodeError are both ValueErrors
            logger.warning("rate_api_bad_payload", base=base, error=str(e))
            raise TransientUpstreamFailure(f"rate API returned invalid JSON for {base}") from e

        raw_rates = None
        if isinstance(payload, dict):
            raw_rates = payload.get("rates") or payload.get("conversion_rates")
        if not isinstance(raw_rates, dict):
            logger.warning("rate_api_bad_payload", base=base, payload_type=type(payload).__name__)
            raise TransientUpstreamFailure(
                f"rate API returned unexpected response structure for {base}"
            )

        rates: dict[str, Decimal] = {}
        for quote, value in raw_rates.items():
            try:
                rate = Decimal(str(value))
                usable = rate.is_finite() and rate > 0
            except InvalidOperation:
                usable = False
            if not usable:
                logger.warning("invalid_rate_value", base=base, quote=quote, raw=value)
                continue
            rates[str(quote).upper()] = rate

        logger.debug("rates_fetched", base=base, count=len(rates))
        return rates
