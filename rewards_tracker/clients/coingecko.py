"""
CoinGecko price client.

Historical prices come from the daily /coins/{id}/history endpoint, which reports
the price at 00:00 UTC of the requested day.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Tuple

import backoff
import requests

from rewards_tracker.clients.price import PriceClient
from rewards_tracker.config import CoinGeckoSettings, LedgerSettings, ProviderSettings
from rewards_tracker.exceptions import PriceNotAvailableError
from rewards_tracker.fixed_point import to_decimal

logger = logging.getLogger(__name__)


def _is_retryable(e: requests.exceptions.RequestException) -> bool:
    if isinstance(e, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return True
    response = getattr(e, "response", None)
    return response is not None and (response.status_code == 429 or response.status_code >= 500)


class CoinGeckoClient(PriceClient):
    """
    CoinGecko API client (free demo tier works)

    https://www.coingecko.com/en/api
    """

    def __init__(self, settings: Optional[CoinGeckoSettings] = None,
                 provider: Optional[ProviderSettings] = None,
                 ledger: Optional[LedgerSettings] = None):
        self.config = settings or CoinGeckoSettings()
        self.provider = provider or ProviderSettings()
        ledger = ledger or LedgerSettings()
        self.currency = ledger.reference_currency
        self.coin_ids = {ledger.asset_symbol.upper(): self.config.coin_id}
        self.base_url = self.config.base_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({'Accept': 'application/json'})
        if self.config.api_key:
            self.session.headers.update({'x-cg-demo-api-key': self.config.api_key})

    @property
    def name(self) -> str:
        return "CoinGecko"

    def _coin_id(self, asset: str) -> str:
        coin_id = self.coin_ids.get(asset.upper())
        if coin_id is None:
            raise PriceNotAvailableError(f"No CoinGecko id configured for {asset}")
        return coin_id

    @backoff.on_exception(
        backoff.expo,
        requests.exceptions.RequestException,
        max_tries=3,
        giveup=lambda e: not _is_retryable(e),
        factor=2
    )
    def _get(self, path: str, params: dict) -> dict:
        response = self.session.get(f"{self.base_url}{path}", params=params, timeout=self.provider.request_timeout)
        response.raise_for_status()
        return response.json(parse_float=Decimal)

    def price(self, asset: str, at_time: int) -> Tuple[Decimal, str]:
        """
        Get the daily price of an asset for the UTC day containing `at_time`.

        Args:
            asset: Asset symbol (e.g., 'SOL')
            at_time: Unix timestamp

        Returns:
            (unit_price, currency)
        """
        coin_id = self._coin_id(asset)
        day = datetime.fromtimestamp(at_time, tz=timezone.utc).strftime('%d-%m-%Y')
        vs = self.currency.lower()
        try:
            data = self._get(f"/coins/{coin_id}/history", {'date': day, 'localization': 'false'})
            price = data['market_data']['current_price'][vs]
        except requests.RequestException as e:
            raise PriceNotAvailableError(f"CoinGecko API error for {asset} on {day}: {e}")
        except (KeyError, TypeError) as e:
            raise PriceNotAvailableError(f"No {asset} price on {day}: missing {e}")

        logger.debug("Got %s price from CoinGecko: %s %s on %s", asset, price, self.currency, day)
        return to_decimal(price), self.currency

    def get_current_price(self, asset: str) -> Tuple[Decimal, str]:
        coin_id = self._coin_id(asset)
        vs = self.currency.lower()
        try:
            data = self._get("/simple/price", {'ids': coin_id, 'vs_currencies': vs})
            price = data[coin_id][vs]
        except requests.RequestException as e:
            raise PriceNotAvailableError(f"CoinGecko API error for {asset}: {e}")
        except (KeyError, TypeError) as e:
            raise PriceNotAvailableError(f"No current {asset} price: missing {e}")

        logger.debug("Got current %s price: %s %s", asset, price, self.currency)
        return to_decimal(price), self.currency
