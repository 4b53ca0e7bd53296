"""Crypto.com public price feed client."""

import logging
import re
import time
from typing import Any, Optional

import requests

from perpsim.ledger.validation import normalize_instrument, parse_number
from perpsim.pricing.base import InstrumentInfo, PriceSource

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://price-api.crypto.com"
DEFAULT_TIMEOUT = 5.0

_REQUEST_HEADERS = {
    "Accept": "application/json",
    "Cache-Control": "no-cache",
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
}


def _pick_first_string(source: dict, keys: tuple[str, ...]) -> str:
    for key in keys:
        value = source.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _extract_token_list(payload: Any) -> list:
    """Find the token array in the several envelopes the feed uses."""
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    for key in ("data", "tokens"):
        if isinstance(payload.get(key), list):
            return payload[key]
    result = payload.get("result")
    if isinstance(result, dict):
        for key in ("data", "tokens"):
            if isinstance(result.get(key), list):
                return result[key]
    return []


def _map_token(raw: Any) -> Optional[InstrumentInfo]:
    if not isinstance(raw, dict):
        return None
    symbol = _pick_first_string(raw, ("symbol", "ticker", "code")).upper()
    name = _pick_first_string(raw, ("name", "full_name", "token_name"))
    raw_id = _pick_first_string(raw, ("slug", "currency", "id", "token"))
    token_id = normalize_instrument(raw_id or name or symbol)

    if not token_id or not symbol:
        return None
    return InstrumentInfo(id=token_id, symbol=symbol, name=name or symbol, label=f"{symbol}/USD")


class CryptoComPriceFeed(PriceSource):
    """Mark prices from the public crypto.com price API.

    Every request carries a cache-busting timestamp. Non-success statuses,
    timeouts and unparseable or non-positive prices all come back as None;
    there are no retries here.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the feed client.

        Args:
            base_url: Feed base URL.
            timeout: Per-request timeout in seconds.
            session: Optional requests session to reuse.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self._session = session or requests.Session()

    def _get_json(self, url: str) -> Optional[Any]:
        try:
            response = self._session.get(
                url,
                params={"t": int(time.time() * 1000)},
                headers=_REQUEST_HEADERS,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Price feed request failed (%s): %s", url, exc)
            return None

        if not response.ok:
            logger.warning("Price feed returned HTTP %d for %s", response.status_code, url)
            return None

        try:
            return response.json()
        except ValueError:
            logger.warning("Price feed returned invalid JSON for %s", url)
            return None

    def fetch_mark_price(self, instrument: str) -> Optional[float]:
        """Get the latest hourly-series price for an instrument."""
        if not re.fullmatch(r"[a-z0-9_-]+", instrument or ""):
            return None

        payload = self._get_json(f"{self.base_url}/price/v2/h/{instrument}/")
        if not isinstance(payload, dict):
            return None

        prices = payload.get("prices")
        if not isinstance(prices, list) or not prices:
            logger.warning("Price feed returned no prices for %s", instrument)
            return None

        latest = prices[-1]
        if not isinstance(latest, (list, tuple)) or len(latest) < 2:
            return None

        price = parse_number(latest[1])
        if price is None or price <= 0:
            logger.warning("Price feed returned invalid price %r for %s", latest[1], instrument)
            return None
        return price

    def fetch_tokens(self) -> list[InstrumentInfo]:
        """Get the instrument catalog, de-duplicated by id and sorted by symbol.

        Returns:
            List of instruments, empty if the catalog is unavailable.
        """
        payload = self._get_json(f"{self.base_url}/meta/v2/all-tokens")
        if payload is None:
            return []

        tokens: dict[str, InstrumentInfo] = {}
        for raw in _extract_token_list(payload):
            token = _map_token(raw)
            if token is not None and token.id not in tokens:
                tokens[token.id] = token

        return sorted(tokens.values(), key=lambda token: token.symbol)
