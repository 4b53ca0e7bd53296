"""Two-source execution price resolution."""

import logging
import math
from typing import Optional

from perpsim.errors import PriceUnavailableError
from perpsim.pricing.base import PriceQuote, PriceSource

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEVIATION = 0.2


class ClientPriceFallback:
    """Accepts a client-supplied price only inside a band around a reference.

    The band is relative: ``|client - reference| / reference <= max_deviation``.
    """

    def __init__(self, max_deviation: float = DEFAULT_MAX_DEVIATION):
        if not 0 < max_deviation < 1:
            raise ValueError("max_deviation must be between 0 and 1")
        self.max_deviation = max_deviation

    def accepts(self, client_price: Optional[float], reference_price: Optional[float]) -> bool:
        """Check whether ``client_price`` may stand in for the feed."""
        if client_price is None or reference_price is None:
            return False
        if not (math.isfinite(client_price) and math.isfinite(reference_price)):
            return False
        if client_price <= 0 or reference_price <= 0:
            return False
        return abs(client_price - reference_price) / reference_price <= self.max_deviation


class PriceResolver:
    """Resolves execution prices, preferring the trusted feed.

    The client price is only used when the feed is unavailable, and only
    if :class:`ClientPriceFallback` accepts it.
    """

    def __init__(
        self,
        trusted: PriceSource,
        fallback: Optional[ClientPriceFallback] = None,
    ):
        """Initialize the resolver.

        Args:
            trusted: Authoritative price source.
            fallback: Deviation check for client prices. Defaults to a 20% band.
        """
        self.trusted = trusted
        self.fallback = fallback or ClientPriceFallback()

    def fetch_trusted(self, instrument: str) -> Optional[float]:
        """Get the trusted price alone, with no client fallback."""
        price = self.trusted.fetch_mark_price(instrument)
        if price is None or not math.isfinite(price) or price <= 0:
            return None
        return float(price)

    def resolve(
        self,
        instrument: str,
        client_price: Optional[float] = None,
        reference_price: Optional[float] = None,
    ) -> PriceQuote:
        """Resolve the price to execute at.

        Args:
            instrument: Instrument slug.
            client_price: Price the client saw, if any.
            reference_price: Price the client price is bounded against.

        Returns:
            Quote tagged with its source.

        Raises:
            PriceUnavailableError: If neither source yields a usable price.
        """
        price = self.fetch_trusted(instrument)
        if price is not None:
            return PriceQuote(price=price, source="trusted")

        if self.fallback.accepts(client_price, reference_price):
            logger.info(
                "Feed unavailable for %s, using client price %.8g (reference %.8g)",
                instrument, client_price, reference_price,
            )
            return PriceQuote(price=client_price, source="fallback")

        raise PriceUnavailableError(f"Price unavailable for {instrument}. Try again shortly.")
