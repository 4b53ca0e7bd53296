"""Settlement operations: open, close, close-all, wallet adjust, transfer.

Each operation is one transaction: load the ledger row, validate, price,
compute, and write the new state back with a compare-and-swap. A write
that loses a race re-reads the row and recomputes, so concurrent requests
for one user are applied one after another. Any failure leaves stored
state untouched and comes back as a failed :class:`SettlementResult`.
"""

import logging
import time
import uuid
from typing import Any, Callable, NamedTuple, Optional

from pydantic import ValidationError

from perpsim.config import SimulatorConfig
from perpsim.db.store import LedgerStore
from perpsim.errors import (
    ConflictError,
    InsufficientBalanceError,
    InvalidRequestError,
    LedgerError,
    NotFoundError,
    StorageError,
    UnauthorizedError,
)
from perpsim.ledger.margin import (
    aggregate_pnl,
    available_balance,
    format_usd,
    margin_in_use,
    round_currency,
    triggered_positions,
)
from perpsim.ledger.validation import (
    DEFAULT_ALLOWED_LEVERAGE,
    DEFAULT_MIN_ORDER_SIZE,
    validate_close_request,
    validate_order_request,
    validate_protection_levels,
    validate_transfer_request,
    validate_wallet_adjustment,
)
from perpsim.models import LedgerRecord, Position, SettlementResult, Wallet
from perpsim.pricing import (
    ClientPriceFallback,
    CryptoComPriceFeed,
    PriceQuote,
    PriceResolver,
)

logger = logging.getLogger(__name__)


class _Plan(NamedTuple):
    """New ledger state computed from one snapshot."""

    wallet: Wallet
    positions: list[Position]
    result: SettlementResult
    write: bool = True


def new_position_id(currency: str) -> str:
    """Build a position id of the form ``{instrument}-{epoch_ms}-{suffix}``."""
    return f"{currency}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def _latest_entry_price(positions: list[Position], currency: str) -> Optional[float]:
    """Entry price of the most recently opened position in ``currency``."""
    for position in reversed(positions):
        if position.currency == currency:
            return position.execution_price
    return None


def _distinct_currencies(positions: list[Position]) -> list[str]:
    seen: list[str] = []
    for position in positions:
        if position.currency not in seen:
            seen.append(position.currency)
    return seen


def _credit(wallet: Wallet, delta: float) -> Wallet:
    """Apply ``delta`` to the USD balance, rejecting a non-finite result."""
    try:
        return wallet.credit(delta)
    except ValidationError as exc:
        raise InvalidRequestError("Resulting balance is out of range.") from exc


class SettlementEngine:
    """Applies settlement operations to the ledger store.

    Every public method takes the authenticated user id (None means the
    request is unauthenticated) and returns a :class:`SettlementResult`;
    none of them raise.
    """

    def __init__(
        self,
        store: LedgerStore,
        resolver: PriceResolver,
        allowed_leverage: tuple = DEFAULT_ALLOWED_LEVERAGE,
        min_order_size: float = DEFAULT_MIN_ORDER_SIZE,
        cas_retries: int = 5,
    ):
        """Initialize the engine.

        Args:
            store: Initialized ledger store.
            resolver: Execution price resolver.
            allowed_leverage: Leverage allow-list for new positions.
            min_order_size: Smallest accepted order amount.
            cas_retries: Attempts before giving up on a contended row.
        """
        self.store = store
        self.resolver = resolver
        self.allowed_leverage = tuple(allowed_leverage)
        self.min_order_size = min_order_size
        self.cas_retries = cas_retries

    @classmethod
    def from_config(cls, config: SimulatorConfig) -> "SettlementEngine":
        """Build an engine, store and price feed from configuration."""
        store = LedgerStore(config.ledger.db_path)
        store.initialize()
        feed = CryptoComPriceFeed(
            base_url=config.pricing.base_url, timeout=config.pricing.timeout
        )
        resolver = PriceResolver(feed, ClientPriceFallback(config.pricing.max_deviation))
        return cls(
            store,
            resolver,
            allowed_leverage=config.ledger.allowed_leverage,
            min_order_size=config.ledger.min_order_size,
            cas_retries=config.ledger.cas_retries,
        )

    # ==================== Plumbing ====================

    def _guard(
        self, user_id: Any, failure_message: str, operation: Callable[[int], SettlementResult]
    ) -> SettlementResult:
        """Run an operation, converting every error into a failed result."""
        try:
            if not isinstance(user_id, int) or isinstance(user_id, bool):
                raise UnauthorizedError("Unauthorized.")
            return operation(user_id)
        except StorageError:
            logger.exception("Storage failure for user %s", user_id)
            return SettlementResult.failure(failure_message, StorageError.kind)
        except LedgerError as exc:
            logger.info("Rejected request for user %s: %s", user_id, exc.message)
            return SettlementResult.failure(exc.message, exc.kind)
        except Exception:
            logger.exception("Unexpected failure for user %s", user_id)
            return SettlementResult.failure(failure_message, "internal")

    def _settle(self, user_id: int, plan: Callable[[LedgerRecord], _Plan]) -> SettlementResult:
        """Load, plan and compare-and-swap until the write lands."""
        for attempt in range(1, self.cas_retries + 1):
            record = self.store.require(user_id)
            outcome = plan(record)
            if not outcome.write:
                return outcome.result
            if self.store.compare_and_swap(record, outcome.wallet, outcome.positions):
                return outcome.result
            logger.debug(
                "Ledger for user %s changed during settlement, retry %d/%d",
                user_id, attempt, self.cas_retries,
            )
        raise ConflictError("Your account changed while processing the request. Please retry.")

    def _close_plan(
        self,
        record: LedgerRecord,
        targets: list[Position],
        quotes: dict[str, PriceQuote],
        message: Callable[[float], str],
    ) -> _Plan:
        pnl = round_currency(aggregate_pnl(targets, {k: q.price for k, q in quotes.items()}))
        closed_ids = {position.id for position in targets}
        remaining = [p for p in record.positions if p.id not in closed_ids]
        wallet = _credit(record.wallet, pnl)
        used_fallback = any(quotes[p.currency].source == "fallback" for p in targets)

        return _Plan(
            wallet,
            remaining,
            SettlementResult(
                ok=True,
                message=message(pnl),
                wallet=wallet,
                positions=remaining,
                closed_count=len(targets),
                closed_pnl=pnl,
                price_source="fallback" if used_fallback else "trusted",
            ),
        )

    # ==================== Queries ====================

    def get_state(self, user_id: Any) -> SettlementResult:
        """Get the user's wallet, positions, margin in use and available balance."""

        def operation(uid: int) -> SettlementResult:
            record = self.store.require(uid)
            return SettlementResult(
                ok=True,
                wallet=record.wallet,
                positions=record.positions,
                margin_in_use=margin_in_use(record.positions),
                available_balance=available_balance(record.wallet, record.positions),
            )

        return self._guard(user_id, "Unable to load user state.", operation)

    # ==================== Operations ====================

    def open_position(self, user_id: Any, payload: Any) -> SettlementResult:
        """Open a market position.

        The margin ``amount * price / leverage`` must fit in the available
        balance measured before the new position is added. The wallet
        balance itself does not change.
        """

        def operation(uid: int) -> SettlementResult:
            order = validate_order_request(
                payload, self.allowed_leverage, self.min_order_size
            )
            quotes: dict[str, PriceQuote] = {}

            def plan(record: LedgerRecord) -> _Plan:
                if order.currency not in quotes:
                    quotes[order.currency] = self.resolver.resolve(
                        order.currency,
                        order.client_price,
                        _latest_entry_price(record.positions, order.currency),
                    )
                quote = quotes[order.currency]
                validate_protection_levels(
                    order.side, quote.price, order.stop_loss, order.take_profit
                )

                required = order.amount * quote.price / order.leverage
                available = available_balance(record.wallet, record.positions)
                if required > available:
                    raise InsufficientBalanceError(
                        f"Insufficient balance. Available: {format_usd(available)}"
                    )

                position = Position(
                    id=new_position_id(order.currency),
                    currency=order.currency,
                    side=order.side,
                    leverage=order.leverage,
                    amount=order.amount,
                    execution_price=quote.price,
                    stop_loss=order.stop_loss,
                    take_profit=order.take_profit,
                )
                positions = [*record.positions, position]
                direction = "LONG" if order.side == "buy" else "SHORT"
                return _Plan(
                    record.wallet,
                    positions,
                    SettlementResult(
                        ok=True,
                        message=(
                            f"Position opened: {direction} {order.amount:g} {order.currency.upper()} "
                            f"at {format_usd(quote.price)} with {order.leverage:g}x leverage."
                        ),
                        wallet=record.wallet,
                        positions=positions,
                        position=position,
                        price_source=quote.source,
                    ),
                )

            result = self._settle(uid, plan)
            logger.info("User %s opened %s", uid, result.position.id)
            return result

        return self._guard(user_id, "Unable to open position.", operation)

    def close_position(self, user_id: Any, payload: Any) -> SettlementResult:
        """Close one position by id and realize its PnL into the wallet."""

        def operation(uid: int) -> SettlementResult:
            order = validate_close_request(payload)
            if order.close_all:
                return self.close_all(uid, payload)
            quotes: dict[str, PriceQuote] = {}

            def plan(record: LedgerRecord) -> _Plan:
                target = next(
                    (p for p in record.positions if p.id == order.position_id), None
                )
                if target is None:
                    raise NotFoundError("Position not found.")
                if target.currency not in quotes:
                    quotes[target.currency] = self.resolver.resolve(
                        target.currency, order.client_price, target.execution_price
                    )
                return self._close_plan(
                    record,
                    [target],
                    quotes,
                    lambda pnl: f"Position closed. PnL: {format_usd(pnl, signed=True)}",
                )

            result = self._settle(uid, plan)
            logger.info("User %s closed %s, pnl %.2f", uid, order.position_id, result.closed_pnl)
            return result

        return self._guard(user_id, "Unable to close position.", operation)

    def close_all(self, user_id: Any, payload: Any = None) -> SettlementResult:
        """Close every position, or every position of one instrument.

        An empty target set is a successful no-op. The client price, when
        given, only stands in for the instrument the request is about.
        """

        def operation(uid: int) -> SettlementResult:
            order = validate_close_request(payload or {}, close_all=True)
            quotes: dict[str, PriceQuote] = {}

            def plan(record: LedgerRecord) -> _Plan:
                targets = [
                    p for p in record.positions
                    if order.currency is None or p.currency == order.currency
                ]
                if not targets:
                    return _Plan(
                        record.wallet,
                        record.positions,
                        SettlementResult(
                            ok=True,
                            message="No open positions to close.",
                            wallet=record.wallet,
                            positions=record.positions,
                            closed_count=0,
                            closed_pnl=0.0,
                        ),
                        write=False,
                    )

                currencies = _distinct_currencies(targets)
                fallback_currency = order.currency or (
                    currencies[0] if len(currencies) == 1 else None
                )
                for currency in currencies:
                    if currency in quotes:
                        continue
                    client_price = order.client_price if currency == fallback_currency else None
                    quotes[currency] = self.resolver.resolve(
                        currency, client_price, _latest_entry_price(targets, currency)
                    )

                return self._close_plan(
                    record,
                    targets,
                    quotes,
                    lambda pnl: (
                        f"Closed {len(targets)} position{'s' if len(targets) != 1 else ''}. "
                        f"Net PnL: {format_usd(pnl, signed=True)}"
                    ),
                )

            result = self._settle(uid, plan)
            if result.closed_count:
                logger.info(
                    "User %s closed %d positions, pnl %.2f",
                    uid, result.closed_count, result.closed_pnl,
                )
            return result

        return self._guard(user_id, "Unable to close positions.", operation)

    def close_triggered(self, user_id: Any) -> SettlementResult:
        """Close positions whose stop loss or take profit has been reached.

        Only trusted feed prices are used; instruments without one are left
        alone until the next sweep.
        """

        def operation(uid: int) -> SettlementResult:
            marks: dict[str, Optional[float]] = {}

            def plan(record: LedgerRecord) -> _Plan:
                protected = [
                    p for p in record.positions
                    if p.stop_loss is not None or p.take_profit is not None
                ]
                for currency in _distinct_currencies(protected):
                    if currency not in marks:
                        marks[currency] = self.resolver.fetch_trusted(currency)

                priced = {k: v for k, v in marks.items() if v is not None}
                hits = triggered_positions(protected, priced)
                if not hits:
                    return _Plan(
                        record.wallet,
                        record.positions,
                        SettlementResult(
                            ok=True,
                            message="No stop loss or take profit levels reached.",
                            wallet=record.wallet,
                            positions=record.positions,
                            closed_count=0,
                            closed_pnl=0.0,
                        ),
                        write=False,
                    )

                quotes = {
                    currency: PriceQuote(price=price, source="trusted")
                    for currency, price in priced.items()
                }
                return self._close_plan(
                    record,
                    hits,
                    quotes,
                    lambda pnl: (
                        f"Triggered {len(hits)} stop loss/take profit "
                        f"order{'s' if len(hits) != 1 else ''}. Net PnL: {format_usd(pnl, signed=True)}"
                    ),
                )

            return self._settle(uid, plan)

        return self._guard(user_id, "Unable to check stop loss and take profit levels.", operation)

    def adjust_wallet(self, user_id: Any, payload: Any) -> SettlementResult:
        """Apply a signed mini-game result to the wallet.

        A loss may not exceed the available balance, so a game round can
        never leave open positions under-margined.
        """

        def operation(uid: int) -> SettlementResult:
            adjustment = validate_wallet_adjustment(payload)

            def plan(record: LedgerRecord) -> _Plan:
                if adjustment.amount < 0:
                    available = available_balance(record.wallet, record.positions)
                    if -adjustment.amount > available:
                        raise InsufficientBalanceError(
                            f"Insufficient balance. Available: {format_usd(available)}"
                        )
                wallet = _credit(record.wallet, adjustment.amount)
                return _Plan(
                    wallet,
                    record.positions,
                    SettlementResult(
                        ok=True,
                        message=adjustment.reason,
                        wallet=wallet,
                        positions=record.positions,
                    ),
                )

            result = self._settle(uid, plan)
            logger.info("User %s wallet adjusted by %.2f", uid, adjustment.amount)
            return result

        return self._guard(user_id, "Unable to adjust wallet.", operation)

    def transfer(self, user_id: Any, payload: Any) -> SettlementResult:
        """Move balance from the user to another user.

        Both wallets are written in one transaction or not at all.
        """

        def operation(uid: int) -> SettlementResult:
            request = validate_transfer_request(payload, uid)

            for attempt in range(1, self.cas_retries + 1):
                sender = self.store.require(uid)
                recipient = self.store.load(request.recipient_id)
                if recipient is None:
                    raise NotFoundError("Recipient not found.")

                available = available_balance(sender.wallet, sender.positions)
                if request.amount > available:
                    raise InsufficientBalanceError(
                        f"Insufficient available balance. {format_usd(available)} available."
                    )

                sender_wallet = _credit(sender.wallet, -request.amount)
                recipient_wallet = _credit(recipient.wallet, request.amount)
                if self.store.transfer_and_swap(
                    sender, recipient, sender_wallet, recipient_wallet,
                    request.amount, request.note,
                ):
                    logger.info(
                        "User %s sent %.2f to user %s", uid, request.amount, recipient.user_id
                    )
                    return SettlementResult(
                        ok=True,
                        message=f"Sent {format_usd(request.amount)} to {recipient.name or 'user'}.",
                        wallet=sender_wallet,
                        positions=sender.positions,
                    )
                logger.debug(
                    "Transfer from user %s hit a concurrent write, retry %d/%d",
                    uid, attempt, self.cas_retries,
                )

            raise ConflictError("Your account changed while processing the request. Please retry.")

        return self._guard(user_id, "Unable to transfer funds.", operation)

    # ==================== Dispatch ====================

    def handle(self, user_id: Any, payload: Any) -> SettlementResult:
        """Dispatch an ``{action: ...}`` request payload.

        Supported actions: open, close, closeAll, closeTriggered,
        walletAdjust, transfer.
        """
        action = payload.get("action") if isinstance(payload, dict) else None
        if action == "open":
            return self.open_position(user_id, payload)
        if action == "close":
            return self.close_position(user_id, payload)
        if action == "closeAll":
            return self.close_all(user_id, payload)
        if action == "closeTriggered":
            return self.close_triggered(user_id)
        if action == "walletAdjust":
            return self.adjust_wallet(user_id, payload)
        if action == "transfer":
            return self.transfer(user_id, payload)

        def reject(uid: int) -> SettlementResult:
            raise InvalidRequestError("Unknown action.")

        return self._guard(user_id, "Unable to process request.", reject)
