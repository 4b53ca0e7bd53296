"""Ledger record and leaderboard models."""

from typing import Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from perpsim.models.position import Position
from perpsim.models.wallet import Wallet


class LedgerRecord(BaseModel):
    """One user's ledger row as loaded from the store.

    ``version`` is the optimistic-concurrency token the row had when it was
    read; ``repaired`` is True when lenient repair changed stored data.
    """

    user_id: int = Field(..., description="Owning user id")
    name: str = Field(default="", description="Display name")
    wallet: Wallet = Field(..., description="Normalized wallet")
    positions: list[Position] = Field(default_factory=list, description="Open positions")
    version: int = Field(default=0, ge=0, description="Row version at read time")
    repaired: bool = Field(default=False, description="Whether stored data was repaired")

    model_config = {"frozen": True}


class UserSummary(BaseModel):
    """Public user identity used by search results."""

    id: int = Field(..., description="User id")
    name: str = Field(..., description="Display name")
    email: str = Field(..., description="Email address")

    model_config = {"frozen": True}


class LeaderboardEntry(BaseModel):
    """One ranked row of the leaderboard."""

    rank: int = Field(..., ge=1, description="Dense rank, 1 = richest")
    id: int = Field(..., description="User id")
    name: str = Field(..., description="Display name")
    usd_balance: float = Field(..., description="Settled USD balance")

    model_config = {
        "frozen": True,
        "alias_generator": to_camel,
        "populate_by_name": True,
    }
