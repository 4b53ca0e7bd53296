"""Validated request models for settlement operations."""

from typing import Literal, Optional

from pydantic import BaseModel, Field


class OpenOrder(BaseModel):
    """A request to open a market position."""

    currency: str = Field(..., min_length=1, description="Instrument slug")
    side: Literal["buy", "sell"] = Field(..., description="Order side")
    leverage: float = Field(..., gt=0, description="Leverage multiplier")
    amount: float = Field(..., gt=0, description="Size in base units")
    client_price: Optional[float] = Field(
        default=None, gt=0, description="Price seen by the client (fallback only)"
    )
    stop_loss: Optional[float] = Field(default=None, gt=0, description="Stop-loss price")
    take_profit: Optional[float] = Field(default=None, gt=0, description="Take-profit price")

    model_config = {"frozen": True}


class CloseOrder(BaseModel):
    """A request to close one position, or every position of an instrument."""

    position_id: Optional[str] = Field(default=None, description="Position to close")
    close_all: bool = Field(default=False, description="Close every matching position")
    currency: Optional[str] = Field(
        default=None, description="Instrument filter for close-all"
    )
    client_price: Optional[float] = Field(
        default=None, gt=0, description="Price seen by the client (fallback only)"
    )

    model_config = {"frozen": True}


class WalletAdjustment(BaseModel):
    """A signed balance change settled by a mini-game."""

    amount: float = Field(..., description="Signed, nonzero USD delta")
    reason: str = Field(default="Wallet adjusted.", description="Message shown to the user")

    model_config = {"frozen": True}


class TransferRequest(BaseModel):
    """A peer-to-peer balance move."""

    recipient_id: int = Field(..., gt=0, description="Receiving user id")
    amount: float = Field(..., gt=0, description="USD amount to move")
    note: Optional[str] = Field(default=None, description="Free-text note")

    model_config = {"frozen": True}
