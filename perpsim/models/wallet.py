"""Wallet data model."""

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel


class Wallet(BaseModel):
    """Represents a user's simulated cash account.

    Only ``usd_balance`` takes part in margin math; ``btc_balance`` and
    ``bonus`` are display fields carried through unchanged.
    """

    usd_balance: float = Field(..., description="Settled USD cash balance")
    btc_balance: float = Field(..., description="Display-only BTC balance")
    bonus: float = Field(..., description="Display-only bonus balance")

    model_config = {
        "frozen": True,
        "strict": True,
        "allow_inf_nan": False,
        "alias_generator": to_camel,
        "populate_by_name": True,
    }

    @field_validator("usd_balance", "btc_balance", "bonus", mode="before")
    @classmethod
    def _reject_booleans(cls, value):
        if isinstance(value, bool):
            raise ValueError("boolean is not a number")
        return value

    def credit(self, delta: float) -> "Wallet":
        """Return a copy with ``delta`` added to the USD balance.

        Raises:
            pydantic.ValidationError: If the new balance is not a finite number.
        """
        return Wallet.model_validate({**self.model_dump(), "usd_balance": self.usd_balance + delta})

    def to_record(self) -> dict:
        """Serialize to the persisted camelCase shape."""
        return self.model_dump(by_alias=True)


DEFAULT_WALLET = Wallet(usd_balance=20000.0, btc_balance=0.35, bonus=185.0)
