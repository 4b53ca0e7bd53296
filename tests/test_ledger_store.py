"""Tests for the SQLite ledger store.

**Feature: perpsim-ledger**
"""

import json
import sqlite3
import tempfile
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from perpsim.db.store import LedgerStore
from perpsim.errors import NotFoundError, StorageError, UserExistsError
from perpsim.models import DEFAULT_WALLET, Position, Wallet


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as tmpdir:
        ledger = LedgerStore(Path(tmpdir) / "ledger" / "test.db")
        ledger.initialize()
        yield ledger


def make_position(position_id: str = "p1", currency: str = "bitcoin") -> Position:
    return Position(
        id=position_id,
        currency=currency,
        side="buy",
        leverage=5,
        amount=0.01,
        execution_price=50000,
    )


def write_raw(store: LedgerStore, user_id: int, wallet_json, positions_json) -> None:
    conn = sqlite3.connect(store.db_path)
    try:
        conn.execute(
            "UPDATE users SET wallet_json = ?, positions_json = ? WHERE id = ?",
            (wallet_json, positions_json, user_id),
        )
        conn.commit()
    finally:
        conn.close()


class TestSchema:
    """Schema creation and the initialization guard."""

    def test_required_tables(self, store):
        tables = store.get_tables()
        for table in LedgerStore.REQUIRED_TABLES:
            assert table in tables

    def test_initialize_idempotent(self, store):
        store.initialize()
        assert store.is_initialized
        assert store.get_stats() == {"users": 0, "transfers": 0}

    def test_uninitialized_store_refuses(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            ledger = LedgerStore(Path(tmpdir) / "test.db")

            assert not ledger.is_initialized
            with pytest.raises(StorageError, match="not initialized"):
                ledger.load(1)

    def test_unwritable_location(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            blocker = Path(tmpdir) / "file"
            blocker.write_text("x")
            ledger = LedgerStore(blocker / "sub" / "test.db")

            with pytest.raises(StorageError):
                ledger.initialize()


class TestUsers:
    """Registration and search."""

    def test_new_user_gets_default_wallet(self, store):
        user_id = store.create_user(" Alice ", "Alice@Example.com")

        record = store.require(user_id)
        assert record.name == "Alice"
        assert record.wallet == DEFAULT_WALLET
        assert record.positions == []
        assert record.version == 0
        assert record.repaired is False

        summary = store.get_user(user_id)
        assert summary.email == "alice@example.com"

    def test_duplicate_email(self, store):
        store.create_user("Alice", "alice@example.com")
        with pytest.raises(UserExistsError):
            store.create_user("Other", "ALICE@example.com")

    def test_unknown_user(self, store):
        assert store.load(99) is None
        assert store.get_user(99) is None
        with pytest.raises(NotFoundError, match="User not found"):
            store.require(99)

    def test_search(self, store):
        alice = store.create_user("Alice", "alice@example.com")
        store.create_user("Alfred", "alfred@example.com")
        store.create_user("Bob", "bob@example.com")

        names = [user.name for user in store.search_users("al")]
        assert names == ["Alfred", "Alice"]

        names = [user.name for user in store.search_users("AL", exclude_id=alice)]
        assert names == ["Alfred"]

        assert [user.name for user in store.search_users("bob@")] == ["Bob"]
        assert store.search_users("   ") == []

    def test_search_escapes_wildcards(self, store):
        store.create_user("Alice", "alice@example.com")
        assert store.search_users("%") == []
        assert store.search_users("_") == []

    def test_search_limit(self, store):
        for i in range(12):
            store.create_user(f"Trader {i:02d}", f"trader{i}@example.com")
        assert len(store.search_users("trader")) == 8


class TestCompareAndSwap:
    """
    **Feature: perpsim-ledger, Property: Versioned Writes**

    A write only lands when the row version still matches the snapshot,
    and the wallet and positions are always written together.
    """

    def test_write_bumps_version(self, store):
        user_id = store.create_user("Alice", "alice@example.com")
        record = store.require(user_id)
        wallet = record.wallet.credit(50)

        assert store.compare_and_swap(record, wallet, [make_position()])

        updated = store.require(user_id)
        assert updated.version == 1
        assert updated.wallet.usd_balance == 20050
        assert [p.id for p in updated.positions] == ["p1"]

    def test_stale_snapshot_rejected(self, store):
        user_id = store.create_user("Alice", "alice@example.com")
        snapshot = store.require(user_id)

        assert store.compare_and_swap(snapshot, snapshot.wallet.credit(10), [])
        assert not store.compare_and_swap(snapshot, snapshot.wallet.credit(99), [make_position()])

        current = store.require(user_id)
        assert current.wallet.usd_balance == 20010
        assert current.positions == []

    @given(deltas=st.lists(st.integers(min_value=-500, max_value=500), min_size=1, max_size=10))
    @settings(max_examples=20, deadline=None)
    def test_sequential_writes_accumulate(self, deltas: list[int]):
        with tempfile.TemporaryDirectory() as tmpdir:
            ledger = LedgerStore(Path(tmpdir) / "test.db")
            ledger.initialize()
            user_id = ledger.create_user("Alice", "alice@example.com")

            for delta in deltas:
                record = ledger.require(user_id)
                assert ledger.compare_and_swap(record, record.wallet.credit(delta), record.positions)

            final = ledger.require(user_id)
            assert final.version == len(deltas)
            assert final.wallet.usd_balance == pytest.approx(20000 + sum(deltas))


class TestTransferAndSwap:
    """Both sides of a transfer land together or not at all."""

    def test_commit(self, store):
        alice = store.create_user("Alice", "alice@example.com")
        bob = store.create_user("Bob", "bob@example.com")
        sender, recipient = store.require(alice), store.require(bob)

        assert store.transfer_and_swap(
            sender, recipient, sender.wallet.credit(-100), recipient.wallet.credit(100), 100, "hi"
        )

        assert store.require(alice).wallet.usd_balance == 19900
        assert store.require(bob).wallet.usd_balance == 20100
        transfers = store.get_transfers(bob)
        assert len(transfers) == 1
        assert transfers[0]["senderId"] == alice
        assert transfers[0]["recipientId"] == bob
        assert transfers[0]["amount"] == 100
        assert transfers[0]["note"] == "hi"

    def test_conflict_writes_nothing(self, store):
        alice = store.create_user("Alice", "alice@example.com")
        bob = store.create_user("Bob", "bob@example.com")
        sender, recipient = store.require(alice), store.require(bob)

        # Recipient changes after the snapshot was taken
        assert store.compare_and_swap(recipient, recipient.wallet.credit(5), [])

        assert not store.transfer_and_swap(
            sender, recipient, sender.wallet.credit(-100), recipient.wallet.credit(100), 100
        )

        assert store.require(alice).wallet.usd_balance == 20000
        assert store.require(alice).version == 0
        assert store.require(bob).wallet.usd_balance == 20005
        assert store.get_transfers(alice) == []


class TestRepairOnLoad:
    """Malformed stored JSON is repaired on read."""

    def test_bad_wallet_defaulted(self, store):
        user_id = store.create_user("Alice", "alice@example.com")
        write_raw(store, user_id, json.dumps({"usdBalance": "lots"}), "[]")

        record = store.require(user_id)

        assert record.wallet == DEFAULT_WALLET
        assert record.repaired is True

    def test_unparseable_columns(self, store):
        user_id = store.create_user("Alice", "alice@example.com")
        write_raw(store, user_id, "{not json", "also not json")

        record = store.require(user_id)

        assert record.wallet == DEFAULT_WALLET
        assert record.positions == []

    def test_bad_positions_dropped(self, store):
        user_id = store.create_user("Alice", "alice@example.com")
        good = make_position("good").to_record()
        bad = dict(good, id="bad", leverage=0)
        write_raw(
            store,
            user_id,
            json.dumps({"usdBalance": 1000, "btcBalance": 0, "bonus": 0}),
            json.dumps([bad, good, "junk"]),
        )

        record = store.require(user_id)

        assert record.wallet == Wallet(usd_balance=1000, btc_balance=0, bonus=0)
        assert [p.id for p in record.positions] == ["good"]
        assert record.repaired is True

    def test_list_wallets(self, store):
        alice = store.create_user("Alice", "alice@example.com")
        bob = store.create_user("Bob", "bob@example.com")
        write_raw(store, bob, "null", "[]")

        rows = {user_id: (name, wallet) for user_id, name, wallet in store.list_wallets()}

        assert rows[alice] == ("Alice", DEFAULT_WALLET)
        assert rows[bob] == ("Bob", DEFAULT_WALLET)
