"""Position data model."""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Position(BaseModel):
    """Represents one open leveraged position.

    Positions are created whole by an open and removed whole by a close;
    they are never edited in place.
    """

    id: str = Field(..., min_length=1, description="Unique position id")
    currency: str = Field(..., min_length=1, description="Instrument slug")
    side: Literal["buy", "sell"] = Field(..., description="buy = long, sell = short")
    order_type: str = Field(default="market", description="Order type")
    leverage: float = Field(..., gt=0, description="Leverage multiplier")
    amount: float = Field(..., gt=0, description="Size in base units")
    execution_price: float = Field(..., gt=0, description="Entry price")
    stop_loss: Optional[float] = Field(default=None, gt=0, description="Stop-loss price")
    take_profit: Optional[float] = Field(default=None, gt=0, description="Take-profit price")
    placed_at: datetime = Field(
        default_factory=utc_now, strict=False, description="Open timestamp"
    )

    model_config = {
        "frozen": True,
        "strict": True,
        "allow_inf_nan": False,
        "alias_generator": to_camel,
        "populate_by_name": True,
    }

    @field_validator("leverage", "amount", "execution_price", "stop_loss", "take_profit", mode="before")
    @classmethod
    def _reject_booleans(cls, value):
        if isinstance(value, bool):
            raise ValueError("boolean is not a number")
        return value

    @property
    def direction(self) -> int:
        """+1 for longs, -1 for shorts."""
        return 1 if self.side == "buy" else -1

    @property
    def notional(self) -> float:
        return self.amount * self.execution_price

    @property
    def margin(self) -> float:
        """Capital reserved against this position."""
        return self.notional / self.leverage

    def to_record(self) -> dict:
        """Serialize to the persisted camelCase JSON shape."""
        return self.model_dump(mode="json", by_alias=True)
