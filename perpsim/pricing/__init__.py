"""Price sources for perpsim."""

from perpsim.pricing.base import InstrumentInfo, PriceQuote, PriceSource
from perpsim.pricing.feed import CryptoComPriceFeed
from perpsim.pricing.resolver import ClientPriceFallback, PriceResolver

__all__ = [
    "ClientPriceFallback",
    "CryptoComPriceFeed",
    "InstrumentInfo",
    "PriceQuote",
    "PriceResolver",
    "PriceSource",
]
