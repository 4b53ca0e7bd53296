"""Validation layer shared by every settlement operation.

Two kinds of input pass through here:

- stored ledger JSON, which is repaired leniently (bad wallets are replaced
  by the default, bad positions are dropped) and never raises;
- client request payloads, which are checked field by field and rejected
  with the first failing reason as an :class:`InvalidRequestError`.
"""

import json
import math
import re
from datetime import datetime
from typing import Any, NamedTuple, Optional

from pydantic import TypeAdapter, ValidationError

from perpsim.errors import InvalidRequestError
from perpsim.models import (
    DEFAULT_WALLET,
    CloseOrder,
    OpenOrder,
    Position,
    TransferRequest,
    Wallet,
    WalletAdjustment,
)
from perpsim.models.position import utc_now

DEFAULT_ALLOWED_LEVERAGE = (1, 2, 3, 5, 10, 20, 50)
DEFAULT_MIN_ORDER_SIZE = 0.001
MAX_NOTE_LENGTH = 200
MAX_REASON_LENGTH = 200

_TIMESTAMP = TypeAdapter(datetime)


class Repaired(NamedTuple):
    """A normalized value plus whether normalization had to change it."""

    value: Any
    repaired: bool


# ==================== Stored data ====================


def _parse_timestamp(value: Any) -> Optional[datetime]:
    try:
        return _TIMESTAMP.validate_python(value)
    except ValidationError:
        return None


def parse_json(value: Any, fallback: Any) -> Any:
    """Decode a stored JSON column.

    Already-decoded dicts and lists pass through. Empty or undecodable
    values yield ``fallback``.
    """
    if isinstance(value, (dict, list)):
        return value
    if not value:
        return fallback
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return fallback


def normalize_wallet(raw: Any) -> Repaired:
    """Return the stored wallet, or the default wallet if it is malformed.

    A wallet is kept only when all three balances are finite numbers; it is
    never partially repaired.
    """
    if isinstance(raw, Wallet):
        return Repaired(raw, False)
    if isinstance(raw, dict):
        try:
            return Repaired(Wallet.model_validate(raw), False)
        except ValidationError:
            pass
    return Repaired(DEFAULT_WALLET, True)


def normalize_positions(raw: Any) -> Repaired:
    """Filter stored positions down to the well-formed ones.

    Rows failing the shape/positivity checks are dropped. Rows with a
    missing or unreadable ``placedAt`` are kept and get the current time.
    Applying this twice gives the same list as applying it once.
    """
    if not isinstance(raw, list):
        return Repaired([], raw is not None)

    repaired = False
    positions: list[Position] = []
    for item in raw:
        if isinstance(item, Position):
            positions.append(item)
            continue
        if not isinstance(item, dict):
            repaired = True
            continue

        record = dict(item)
        placed_at = record.pop("placed_at", None)
        placed_at = record.get("placedAt") or placed_at
        if not placed_at or _parse_timestamp(placed_at) is None:
            placed_at = utc_now().isoformat()
            repaired = True
        record["placedAt"] = placed_at

        try:
            positions.append(Position.model_validate(record))
        except ValidationError:
            repaired = True

    return Repaired(positions, repaired)


# ==================== Field parsing ====================


def normalize_instrument(value: Any) -> str:
    """Turn an instrument name into a lowercase slug (``"Bitcoin Cash"`` -> ``"bitcoin-cash"``)."""
    if value is None:
        return ""
    slug = str(value).strip().lower()
    slug = re.sub(r"[^a-z0-9\s_-]", "", slug)
    return re.sub(r"\s+", "-", slug)


def parse_number(value: Any) -> Optional[float]:
    """Parse a finite number from JSON input.

    Numeric strings are accepted; booleans, NaN and infinities are not.

    Returns:
        The number, or None if the value is not a finite number.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    elif not isinstance(value, (int, float)):
        return None

    try:
        number = float(value)
    except (OverflowError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _optional_price(payload: dict, key: str, label: str) -> Optional[float]:
    raw = payload.get(key)
    if raw is None or raw == "":
        return None
    price = parse_number(raw)
    if price is None or price <= 0:
        raise InvalidRequestError(f"Invalid {label}.")
    return price


def _require_payload(payload: Any) -> dict:
    if not isinstance(payload, dict):
        raise InvalidRequestError("Invalid request payload.")
    return payload


def _format_leverage(allowed: tuple) -> str:
    return ", ".join(f"{value:g}x" for value in sorted(allowed))


# ==================== Requests ====================


def validate_order_request(
    payload: Any,
    allowed_leverage: tuple = DEFAULT_ALLOWED_LEVERAGE,
    min_order_size: float = DEFAULT_MIN_ORDER_SIZE,
) -> OpenOrder:
    """Validate an open-position request.

    Checks run in a fixed order and the first failure is reported:
    instrument, side, leverage, amount, client price, stop loss, take
    profit. Stop-loss/take-profit placement relative to the entry price is
    checked later by :func:`validate_protection_levels`, once the execution
    price is known.

    Raises:
        InvalidRequestError: With the first failing reason.
    """
    payload = _require_payload(payload)

    currency = normalize_instrument(payload.get("currency"))
    if not currency:
        raise InvalidRequestError("Instrument is required.")

    side = payload.get("side")
    if side not in ("buy", "sell"):
        raise InvalidRequestError("Side must be 'buy' or 'sell'.")

    leverage = parse_number(payload.get("leverage"))
    if leverage is None or leverage not in {float(value) for value in allowed_leverage}:
        raise InvalidRequestError(
            f"Leverage must be one of {_format_leverage(allowed_leverage)}."
        )

    amount = parse_number(payload.get("amount"))
    if amount is None or amount <= 0:
        raise InvalidRequestError("Enter a valid order size.")
    if amount < min_order_size:
        raise InvalidRequestError(f"Minimum order size is {min_order_size:g}.")

    client_price = _optional_price(payload, "clientPrice", "client price")
    stop_loss = _optional_price(payload, "stopLoss", "stop loss")
    take_profit = _optional_price(payload, "takeProfit", "take profit")

    return OpenOrder(
        currency=currency,
        side=side,
        leverage=leverage,
        amount=amount,
        client_price=client_price,
        stop_loss=stop_loss,
        take_profit=take_profit,
    )


def validate_protection_levels(
    side: str,
    execution_price: float,
    stop_loss: Optional[float],
    take_profit: Optional[float],
) -> None:
    """Check stop-loss and take-profit sit on the right side of the entry.

    Longs need stop loss below and take profit above the entry price;
    shorts need the reverse.

    Raises:
        InvalidRequestError: If either level is on the wrong side.
    """
    if stop_loss is not None:
        if side == "buy" and stop_loss >= execution_price:
            raise InvalidRequestError("Stop loss must be below entry price for long positions.")
        if side == "sell" and stop_loss <= execution_price:
            raise InvalidRequestError("Stop loss must be above entry price for short positions.")

    if take_profit is not None:
        if side == "buy" and take_profit <= execution_price:
            raise InvalidRequestError("Take profit must be above entry price for long positions.")
        if side == "sell" and take_profit >= execution_price:
            raise InvalidRequestError("Take profit must be below entry price for short positions.")


def validate_close_request(payload: Any, close_all: bool = False) -> CloseOrder:
    """Validate a close or close-all request.

    Raises:
        InvalidRequestError: If neither a position id nor close-all is given,
            or the client price is invalid.
    """
    payload = _require_payload(payload)
    close_all = close_all or bool(payload.get("closeAll"))
    position_id = str(payload.get("positionId") or "").strip()

    if not position_id and not close_all:
        raise InvalidRequestError("positionId or closeAll is required.")

    currency = normalize_instrument(payload.get("currency")) or None
    client_price = _optional_price(payload, "clientPrice", "client price")

    return CloseOrder(
        position_id=None if close_all else position_id,
        close_all=close_all,
        currency=currency if close_all else None,
        client_price=client_price,
    )


def validate_wallet_adjustment(payload: Any) -> WalletAdjustment:
    """Validate a mini-game balance adjustment.

    Raises:
        InvalidRequestError: If the amount is not a nonzero number.
    """
    payload = _require_payload(payload)

    amount = parse_number(payload.get("amount"))
    if amount is None or round(amount, 2) == 0:
        raise InvalidRequestError("Adjustment amount must be a nonzero number.")

    reason = payload.get("reason")
    reason = reason.strip()[:MAX_REASON_LENGTH] if isinstance(reason, str) else ""

    return WalletAdjustment(amount=round(amount, 2), reason=reason or "Wallet adjusted.")


def validate_transfer_request(payload: Any, sender_id: int) -> TransferRequest:
    """Validate a peer-to-peer transfer.

    Raises:
        InvalidRequestError: On a bad recipient, amount or note.
    """
    payload = _require_payload(payload)

    raw_recipient = payload.get("recipientId")
    recipient_id = None
    if isinstance(raw_recipient, int) and not isinstance(raw_recipient, bool):
        recipient_id = raw_recipient
    elif isinstance(raw_recipient, str) and raw_recipient.strip().isdigit():
        recipient_id = int(raw_recipient.strip())
    if recipient_id is None or recipient_id <= 0:
        raise InvalidRequestError("Select a recipient first.")
    if recipient_id == sender_id:
        raise InvalidRequestError("You cannot transfer funds to yourself.")

    amount = parse_number(payload.get("amount"))
    if amount is None or round(amount, 2) <= 0:
        raise InvalidRequestError("Enter a valid transfer amount.")

    note = payload.get("note")
    if note is not None and not isinstance(note, str):
        raise InvalidRequestError("Transfer note must be text.")
    note = (note or "").strip() or None
    if note and len(note) > MAX_NOTE_LENGTH:
        raise InvalidRequestError(
            f"Transfer note must be {MAX_NOTE_LENGTH} characters or fewer."
        )

    return TransferRequest(recipient_id=recipient_id, amount=round(amount, 2), note=note)
