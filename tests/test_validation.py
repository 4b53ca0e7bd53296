"""Property-based tests for the validation layer.

**Feature: perpsim-ledger**
"""

import math

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from pydantic import ValidationError

from perpsim.errors import InvalidRequestError
from perpsim.ledger.validation import (
    normalize_instrument,
    normalize_positions,
    normalize_wallet,
    parse_json,
    parse_number,
    validate_close_request,
    validate_order_request,
    validate_protection_levels,
    validate_transfer_request,
    validate_wallet_adjustment,
)
from perpsim.models import DEFAULT_WALLET, Position, Wallet


def valid_position_record(**overrides) -> dict:
    record = {
        "id": "bitcoin-1700000000000-abcd1234",
        "currency": "bitcoin",
        "side": "buy",
        "orderType": "market",
        "leverage": 5,
        "amount": 0.01,
        "executionPrice": 50000,
        "stopLoss": None,
        "takeProfit": None,
        "placedAt": "2024-01-01T00:00:00+00:00",
    }
    record.update(overrides)
    return record


# Strategy for raw stored position rows, a mix of good and broken ones
positive = st.floats(min_value=0.001, max_value=1e6, allow_nan=False, allow_infinity=False)
bad_number = st.one_of(
    st.just(0),
    st.just(-1.5),
    st.just(float("nan")),
    st.just(float("inf")),
    st.just("12"),
    st.none(),
    st.booleans(),
)


def raw_position_strategy():
    return st.fixed_dictionaries(
        {
            "id": st.one_of(st.text(min_size=1, max_size=12), st.integers()),
            "currency": st.sampled_from(["bitcoin", "ethereum", "solana"]),
            "side": st.sampled_from(["buy", "sell", "long", ""]),
            "leverage": st.one_of(st.sampled_from([1, 2, 5, 10, 50]), bad_number),
            "amount": st.one_of(positive, bad_number),
            "executionPrice": st.one_of(positive, bad_number),
        },
        optional={
            "placedAt": st.sampled_from(["2024-05-01T12:00:00+00:00", "Mon Jun 03 2024", "", None]),
            "stopLoss": st.one_of(st.none(), positive),
        },
    )


class TestWalletNormalization:
    """
    **Feature: perpsim-ledger, Property: Wallet Repair-or-Default**

    *For any* stored wallet, normalization returns it unchanged when all
    three balances are finite numbers and the default wallet otherwise.
    """

    @given(
        usd=st.floats(allow_nan=False, allow_infinity=False, min_value=-1e9, max_value=1e9),
        btc=st.floats(allow_nan=False, allow_infinity=False, min_value=0, max_value=100),
        bonus=st.integers(min_value=0, max_value=10000),
    )
    @settings(max_examples=100)
    def test_valid_wallet_kept(self, usd: float, btc: float, bonus: int):
        wallet, repaired = normalize_wallet({"usdBalance": usd, "btcBalance": btc, "bonus": bonus})

        assert repaired is False
        assert wallet.usd_balance == usd
        assert wallet.btc_balance == btc
        assert wallet.bonus == bonus

    @pytest.mark.parametrize(
        "raw",
        [
            None,
            [],
            "not a wallet",
            {"usdBalance": 100, "btcBalance": 1},
            {"usdBalance": "100", "btcBalance": 1, "bonus": 0},
            {"usdBalance": float("nan"), "btcBalance": 1, "bonus": 0},
            {"usdBalance": 100, "btcBalance": float("inf"), "bonus": 0},
            {"usdBalance": True, "btcBalance": 1, "bonus": 0},
            {"usdBalance": 100, "btcBalance": 1, "bonus": None},
        ],
    )
    def test_malformed_wallet_replaced_wholesale(self, raw):
        wallet, repaired = normalize_wallet(raw)

        assert repaired is True
        assert wallet == DEFAULT_WALLET
        assert wallet.to_record() == {"usdBalance": 20000, "btcBalance": 0.35, "bonus": 185}

    def test_credit_rejects_non_finite_balance(self):
        wallet = Wallet(usd_balance=1.7e308, btc_balance=0.35, bonus=185)

        assert wallet.credit(-100).usd_balance == pytest.approx(1.7e308)
        with pytest.raises(ValidationError):
            wallet.credit(1.7e308)

    def test_wallet_model_passes_through(self):
        wallet = Wallet(usd_balance=1.0, btc_balance=0.0, bonus=0.0)
        assert normalize_wallet(wallet) == (wallet, False)


class TestPositionNormalization:
    """
    **Feature: perpsim-ledger, Property: Lenient Position Filtering**

    *For any* stored position list, malformed rows are dropped, missing
    timestamps are backfilled, and filtering twice equals filtering once.
    """

    def test_clean_rows_are_not_repaired(self):
        positions, repaired = normalize_positions([valid_position_record()])

        assert repaired is False
        assert len(positions) == 1
        assert positions[0].execution_price == 50000
        assert positions[0].leverage == 5

    @pytest.mark.parametrize(
        "overrides",
        [
            {"id": 42},
            {"side": "long"},
            {"leverage": 0},
            {"leverage": -2},
            {"amount": 0},
            {"amount": "0.5"},
            {"executionPrice": -1},
            {"executionPrice": float("nan")},
            {"currency": None},
        ],
    )
    def test_malformed_row_dropped(self, overrides):
        good = valid_position_record(id="keep-me")
        bad = valid_position_record(**overrides)

        positions, repaired = normalize_positions([bad, good])

        assert repaired is True
        assert [p.id for p in positions] == ["keep-me"]

    def test_non_dict_rows_dropped(self):
        positions, repaired = normalize_positions([None, "x", 3, valid_position_record()])

        assert repaired is True
        assert len(positions) == 1

    def test_missing_placed_at_backfilled(self):
        record = valid_position_record()
        del record["placedAt"]

        positions, repaired = normalize_positions([record])

        assert repaired is True
        assert positions[0].placed_at is not None

    @pytest.mark.parametrize(
        "placed_at", ["Mon Jun 03 2024 10:00:00 GMT+0000 (Coordinated Universal Time)", "soon", [], {}]
    )
    def test_unreadable_placed_at_backfilled(self, placed_at):
        positions, repaired = normalize_positions([valid_position_record(placedAt=placed_at)])

        assert repaired is True
        assert [p.id for p in positions] == ["bitcoin-1700000000000-abcd1234"]
        assert positions[0].placed_at.tzinfo is not None

    def test_snake_case_placed_at_kept(self):
        record = valid_position_record()
        record["placed_at"] = record.pop("placedAt")

        positions, repaired = normalize_positions([record])

        assert repaired is False
        assert positions[0].placed_at.year == 2024

    @pytest.mark.parametrize("raw", [None, {}, "[]", 5])
    def test_non_list_becomes_empty(self, raw):
        positions, _ = normalize_positions(raw)
        assert positions == []

    def test_order_preserved(self):
        records = [valid_position_record(id=f"p{i}") for i in range(5)]
        positions, _ = normalize_positions(records)
        assert [p.id for p in positions] == ["p0", "p1", "p2", "p3", "p4"]

    @given(raw=st.lists(raw_position_strategy(), max_size=15))
    @settings(max_examples=100)
    def test_normalization_idempotent(self, raw: list[dict]):
        """
        *For any* raw list, normalizing the normalized output changes nothing.
        """
        first, _ = normalize_positions(raw)
        second, repaired = normalize_positions([p.to_record() for p in first])

        assert second == first
        assert repaired is False

    @given(raw=st.lists(raw_position_strategy(), max_size=15))
    @settings(max_examples=100)
    def test_survivors_satisfy_invariants(self, raw: list[dict]):
        positions, _ = normalize_positions(raw)

        for position in positions:
            assert isinstance(position, Position)
            assert isinstance(position.id, str)
            assert position.side in ("buy", "sell")
            assert position.leverage > 0 and math.isfinite(position.leverage)
            assert position.amount > 0 and math.isfinite(position.amount)
            assert position.execution_price > 0 and math.isfinite(position.execution_price)


class TestFieldParsing:
    """Tests for JSON and number parsing helpers."""

    def test_parse_json(self):
        assert parse_json('{"a": 1}', None) == {"a": 1}
        assert parse_json({"a": 1}, None) == {"a": 1}
        assert parse_json("", []) == []
        assert parse_json(None, []) == []
        assert parse_json("{broken", "fallback") == "fallback"

    @pytest.mark.parametrize(
        "value,expected",
        [
            (5, 5.0),
            ("2.5", 2.5),
            (" 10 ", 10.0),
            (True, None),
            (None, None),
            ("", None),
            ("abc", None),
            ("nan", None),
            ("1e999", None),
            (10**400, None),
            ([1], None),
        ],
    )
    def test_parse_number(self, value, expected):
        assert parse_number(value) == expected

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("Bitcoin", "bitcoin"),
            ("  Bitcoin Cash ", "bitcoin-cash"),
            ("shiba_inu!", "shiba_inu"),
            (None, ""),
        ],
    )
    def test_normalize_instrument(self, value, expected):
        assert normalize_instrument(value) == expected


class TestOrderRequestValidation:
    """
    **Feature: perpsim-ledger, Property: First Failing Reason**

    Open requests are checked in a fixed order and only the first failing
    reason is reported.
    """

    def _payload(self, **overrides) -> dict:
        payload = {"currency": "bitcoin", "side": "buy", "leverage": 5, "amount": 0.01}
        payload.update(overrides)
        return payload

    def test_valid_request(self):
        order = validate_order_request(self._payload(clientPrice=50000, stopLoss=45000))

        assert order.currency == "bitcoin"
        assert order.side == "buy"
        assert order.leverage == 5
        assert order.amount == 0.01
        assert order.client_price == 50000
        assert order.stop_loss == 45000
        assert order.take_profit is None

    def test_numeric_strings_accepted(self):
        order = validate_order_request(self._payload(leverage="10", amount="0.5"))
        assert order.leverage == 10
        assert order.amount == 0.5

    def test_first_failure_reported(self):
        with pytest.raises(InvalidRequestError, match="Instrument is required"):
            validate_order_request(self._payload(currency="", side="hold", leverage=7))

    def test_side_checked_before_leverage(self):
        with pytest.raises(InvalidRequestError, match="Side must be"):
            validate_order_request(self._payload(side="long", leverage=7))

    @pytest.mark.parametrize("leverage", [0, 4, 7, 100, -5, "x", None, True])
    def test_leverage_outside_allow_list(self, leverage):
        with pytest.raises(InvalidRequestError, match="Leverage must be one of"):
            validate_order_request(self._payload(leverage=leverage))

    @pytest.mark.parametrize("leverage", [1, 2, 3, 5, 10, 20, 50])
    def test_leverage_allow_list(self, leverage):
        assert validate_order_request(self._payload(leverage=leverage)).leverage == leverage

    def test_custom_allow_list(self):
        order = validate_order_request(self._payload(leverage=7), allowed_leverage=(7,))
        assert order.leverage == 7

    @pytest.mark.parametrize("amount", [0, -1, "abc", None, float("inf")])
    def test_invalid_amount(self, amount):
        with pytest.raises(InvalidRequestError, match="valid order size"):
            validate_order_request(self._payload(amount=amount))

    def test_minimum_order_size(self):
        with pytest.raises(InvalidRequestError, match="Minimum order size is 0.001"):
            validate_order_request(self._payload(amount=0.0009))
        assert validate_order_request(self._payload(amount=0.001)).amount == 0.001

    @pytest.mark.parametrize("field,label", [("stopLoss", "stop loss"), ("takeProfit", "take profit")])
    def test_protection_levels_must_be_positive(self, field, label):
        with pytest.raises(InvalidRequestError, match=f"Invalid {label}"):
            validate_order_request(self._payload(**{field: -5}))

    def test_non_dict_payload(self):
        with pytest.raises(InvalidRequestError):
            validate_order_request(["open"])


class TestProtectionLevels:
    """Stop loss and take profit must sit on the correct side of the entry."""

    def test_long_levels(self):
        validate_protection_levels("buy", 100.0, 90.0, 110.0)
        with pytest.raises(InvalidRequestError, match="Stop loss must be below"):
            validate_protection_levels("buy", 100.0, 100.0, None)
        with pytest.raises(InvalidRequestError, match="Take profit must be above"):
            validate_protection_levels("buy", 100.0, None, 95.0)

    def test_short_levels(self):
        validate_protection_levels("sell", 100.0, 110.0, 90.0)
        with pytest.raises(InvalidRequestError, match="Stop loss must be above"):
            validate_protection_levels("sell", 100.0, 95.0, None)
        with pytest.raises(InvalidRequestError, match="Take profit must be below"):
            validate_protection_levels("sell", 100.0, None, 105.0)

    def test_no_levels(self):
        validate_protection_levels("buy", 100.0, None, None)


class TestOtherRequests:
    """Tests for close, wallet-adjust and transfer request validation."""

    def test_close_requires_target(self):
        with pytest.raises(InvalidRequestError, match="positionId or closeAll"):
            validate_close_request({})

    def test_close_single(self):
        order = validate_close_request({"positionId": " p1 ", "clientPrice": 10})
        assert order.position_id == "p1"
        assert order.close_all is False
        assert order.client_price == 10

    def test_close_all_with_filter(self):
        order = validate_close_request({"closeAll": True, "currency": "Bitcoin"})
        assert order.close_all is True
        assert order.currency == "bitcoin"
        assert order.position_id is None

    def test_close_all_flag_argument(self):
        order = validate_close_request({}, close_all=True)
        assert order.close_all is True
        assert order.currency is None

    def test_close_invalid_client_price(self):
        with pytest.raises(InvalidRequestError, match="client price"):
            validate_close_request({"positionId": "p1", "clientPrice": -3})

    @pytest.mark.parametrize("amount", [0, 0.001, None, "abc", float("nan")])
    def test_adjust_requires_nonzero_amount(self, amount):
        with pytest.raises(InvalidRequestError, match="nonzero"):
            validate_wallet_adjustment({"amount": amount})

    def test_adjust_defaults_reason_and_rounds(self):
        adjustment = validate_wallet_adjustment({"amount": -12.346, "reason": 5})
        assert adjustment.amount == -12.35
        assert adjustment.reason == "Wallet adjusted."

    def test_adjust_reason_trimmed(self):
        adjustment = validate_wallet_adjustment({"amount": "250", "reason": "  Blackjack win "})
        assert adjustment.amount == 250
        assert adjustment.reason == "Blackjack win"

    def test_transfer_valid(self):
        request = validate_transfer_request(
            {"recipientId": "7", "amount": 25.5, "note": "  thanks  "}, sender_id=1
        )
        assert request.recipient_id == 7
        assert request.amount == 25.5
        assert request.note == "thanks"

    @pytest.mark.parametrize("recipient", [None, 0, -1, True, "abc", 1.5])
    def test_transfer_bad_recipient(self, recipient):
        with pytest.raises(InvalidRequestError, match="Select a recipient"):
            validate_transfer_request({"recipientId": recipient, "amount": 5}, sender_id=1)

    def test_transfer_to_self(self):
        with pytest.raises(InvalidRequestError, match="yourself"):
            validate_transfer_request({"recipientId": 1, "amount": 5}, sender_id=1)

    @pytest.mark.parametrize("amount", [0, -5, 0.004, "x", None])
    def test_transfer_bad_amount(self, amount):
        with pytest.raises(InvalidRequestError, match="valid transfer amount"):
            validate_transfer_request({"recipientId": 2, "amount": amount}, sender_id=1)

    def test_transfer_note_too_long(self):
        with pytest.raises(InvalidRequestError, match="200 characters"):
            validate_transfer_request(
                {"recipientId": 2, "amount": 5, "note": "x" * 201}, sender_id=1
            )

    def test_transfer_blank_note_dropped(self):
        request = validate_transfer_request({"recipientId": 2, "amount": 5, "note": "   "}, sender_id=1)
        assert request.note is None
