import requests
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional

from django.conf import settings
from django.core.cache import cache
from django.utils import timezone

logger = logging.getLogger(__name__)

CACHE_TIMEOUT = 300
# USDC is pegged to the dollar for display purposes
PEGGED_CURRENCIES = ('USD', 'USDC')


class ExchangeRateUnavailable(Exception):
    """Every provider failed to return a usable USD rate"""


@dataclass(frozen=True)
class DisplayRate:
    base: str
    target: str
    rate: Decimal
    amount: Decimal
    converted: Decimal
    as_of: Optional[str]
    source: str
    timestamp: object


def normalize_currency(code: Optional[str]) -> str:
    code = (code or '').strip().upper()
    return 'USD' if code == 'USDC' else code


class ExchangeRateService:
    """
    USD to display-currency rates from free public providers.

    Providers are tried in order until one returns a positive rate. Results are
    cached for five minutes. Rates are for display only and never feed
    settlement amounts.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: Optional[float] = None):
        self.session = session or requests.Session()
        self.timeout = timeout or getattr(settings, 'FX_REQUEST_TIMEOUT', 10)

    @property
    def providers(self) -> List[Callable[[str], tuple]]:
        return [
            self.fetch_frankfurter_rate,
            self.fetch_er_api_rate,
            self.fetch_exchangerate_host_rate,
        ]

    def _get_json(self, url: str, params=None) -> dict:
        response = self.session.get(url, params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _positive_rate(data: dict, target: str, provider: str) -> Decimal:
        raw = (data.get('rates') or {}).get(target)
        try:
            rate = Decimal(str(raw))
        except (InvalidOperation, ValueError):
            raise ValueError(f'{provider} missing rate for {target}')
        if not rate.is_finite() or rate <= 0:
            raise ValueError(f'{provider} missing rate for {target}')
        return rate

    def fetch_frankfurter_rate(self, target: str):
        data = self._get_json('https://api.frankfurter.app/latest', params={'from': 'USD', 'to': target})
        return self._positive_rate(data, target, 'frankfurter'), data.get('date'), 'frankfurter'

    def fetch_er_api_rate(self, target: str):
        data = self._get_json('https://open.er-api.com/v6/latest/USD')
        return self._positive_rate(data, target, 'open.er-api.com'), data.get('time_last_update_utc'), 'open.er-api.com'

    def fetch_exchangerate_host_rate(self, target: str):
        data = self._get_json('https://api.exchangerate.host/latest', params={'base': 'USD', 'symbols': target})
        return self._positive_rate(data, target, 'exchangerate.host'), data.get('date'), 'exchangerate.host'

    def get_usd_rate(self, target: str):
        """
        Return (rate, as_of, source) for 1 USD in ``target``.

        Raises ExchangeRateUnavailable when every provider fails.
        """
        target = normalize_currency(target)
        if target in PEGGED_CURRENCIES:
            return Decimal('1'), None, 'peg'

        cache_key = f'fx:usd:{target}'
        cached = cache.get(cache_key)
        if cached is not None:
            return cached

        last_error = None
        for provider in self.providers:
            try:
                result = provider(target)
            except (requests.exceptions.RequestException, ValueError) as e:
                logger.warning(f"FX provider {provider.__name__} failed for {target}: {e}")
                last_error = e
                continue
            cache.set(cache_key, result, CACHE_TIMEOUT)
            logger.info(f"FX: 1 USD = {result[0]} {target} ({result[2]})")
            return result

        raise ExchangeRateUnavailable(f'No FX provider available for {target}: {last_error}')

    def get_display_rate(self, currency: Optional[str] = None, amount=0, user=None) -> DisplayRate:
        """
        Convert a USDC ``amount`` for display in ``currency``.

        Falls back to the user's display currency, then USD.
        """
        try:
            amount = Decimal(str(amount or 0))
        except (InvalidOperation, ValueError):
            raise ValueError('Invalid amount')
        if not amount.is_finite() or amount < 0:
            raise ValueError('Invalid amount')

        target = normalize_currency(currency or getattr(user, 'display_currency', None) or 'USD')
        rate, as_of, source = self.get_usd_rate(target)
        return DisplayRate(
            base='USD',
            target=target,
            rate=rate,
            amount=amount,
            converted=amount * rate,
            as_of=as_of,
            source=source,
            timestamp=timezone.now(),
        )


# Global service instance
exchange_rate_service = ExchangeRateService()
