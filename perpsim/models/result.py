"""SettlementResult data model."""

from typing import Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from perpsim.models.position import Position
from perpsim.models.wallet import Wallet


class SettlementResult(BaseModel):
    """Outcome of a settlement operation.

    Failed results carry only ``ok``, ``message`` and ``error``; stored
    state is untouched whenever ``ok`` is False.
    """

    ok: bool = Field(..., description="Whether the operation succeeded")
    message: str = Field(default="", description="Human-readable outcome")
    error: Optional[str] = Field(default=None, description="Error kind when ok is False")
    wallet: Optional[Wallet] = Field(default=None, description="Wallet after the operation")
    positions: Optional[list[Position]] = Field(
        default=None, description="Open positions after the operation"
    )
    position: Optional[Position] = Field(default=None, description="Newly opened position")
    closed_count: Optional[int] = Field(default=None, ge=0, description="Positions closed")
    closed_pnl: Optional[float] = Field(default=None, description="Realized PnL")
    price_source: Optional[str] = Field(
        default=None, description="'trusted' or 'fallback' when a price was resolved"
    )
    margin_in_use: Optional[float] = Field(default=None, description="Margin in use")
    available_balance: Optional[float] = Field(default=None, description="Available balance")

    model_config = {
        "frozen": True,
        "alias_generator": to_camel,
        "populate_by_name": True,
    }

    @classmethod
    def failure(cls, message: str, error: str) -> "SettlementResult":
        return cls(ok=False, message=message, error=error)

    def to_payload(self) -> dict:
        """Render the JSON response shape, omitting unset fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
