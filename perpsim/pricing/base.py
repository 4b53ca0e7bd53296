"""Base price source interface for perpsim."""

from abc import ABC, abstractmethod
from typing import Literal, Optional

from pydantic import BaseModel, Field


class PriceQuote(BaseModel):
    """A resolved execution price and where it came from."""

    price: float = Field(..., gt=0, description="Resolved price")
    source: Literal["trusted", "fallback"] = Field(
        ..., description="'trusted' for the feed, 'fallback' for a bounded client price"
    )

    model_config = {"frozen": True}


class InstrumentInfo(BaseModel):
    """A tradable instrument listed by the price feed."""

    id: str = Field(..., min_length=1, description="Instrument slug")
    symbol: str = Field(..., min_length=1, description="Ticker symbol")
    name: str = Field(..., description="Display name")
    label: str = Field(..., description="Market label, e.g. BTC/USD")

    model_config = {"frozen": True}


class PriceSource(ABC):
    """Abstract base class for mark price suppliers.

    Implementations never raise for feed problems; an unusable answer is
    reported as None so the caller can decide on a fallback.
    """

    @abstractmethod
    def fetch_mark_price(self, instrument: str) -> Optional[float]:
        """Get the current mark price of an instrument.

        Args:
            instrument: Instrument slug, e.g. "bitcoin".

        Returns:
            A finite positive price, or None if unavailable.
        """
        pass
