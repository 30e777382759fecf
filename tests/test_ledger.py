"""
Test suite for the ledger engine

Covers balance reads and writes, transfers, cache coherence and the
no-overdraft guarantee under concurrent debits.
"""

import pytest
import tempfile
import threading
from decimal import Decimal
from pathlib import Path

from economy_ledger.cache import BalanceCache
from economy_ledger.config import LedgerSettings
from economy_ledger.context import LedgerContext
from economy_ledger.currency import CurrencyRegistry
from economy_ledger.errors import ErrorCode
from economy_ledger.ledger import LedgerEngine
from economy_ledger.storage import SQLiteStorage, TransferReceipt


CURRENCIES = {
    "coins": {
        "display-name": "Coins",
        "symbol": "C",
        "starter-balance": 100,
        "default": True,
    },
    "gems": {
        "display-name": "Gems",
        "decimal-places": 0,
        "starter-balance": 0,
        "max-balance": 1000,
    },
}


class TestLedgerEngine:
    """Test single-account operations"""

    def setup_method(self):
        """Set up test fixtures"""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = SQLiteStorage(Path(self.temp_dir.name) / "economy.db")
        self.settings = LedgerSettings(database_path=str(Path(self.temp_dir.name) / "economy.db"))
        self.context = LedgerContext(self.store, CurrencyRegistry.load(CURRENCIES),
                                     BalanceCache(100), self.settings)
        self.engine = LedgerEngine(self.context)

    def teardown_method(self):
        self.context.close()
        self.temp_dir.cleanup()

    def test_unset_balance_is_none(self):
        result = self.engine.get_balance("alice")

        assert result.success
        assert result.value is None

    def test_get_balance_or_starter(self):
        result = self.engine.get_balance_or_starter("alice")
        assert result.value == Decimal("100")

        result = self.engine.get_balance_or_starter("alice", "gems")
        assert result.value == Decimal("0")

    def test_unknown_currency(self):
        result = self.engine.add_balance("alice", "Alice", 10, "dollars")

        assert not result
        assert result.code is ErrorCode.UNKNOWN_CURRENCY
        assert self.engine.get_balance("alice", "dollars").code is ErrorCode.UNKNOWN_CURRENCY

    def test_currency_ids_are_case_insensitive(self):
        self.engine.set_balance("alice", "Alice", 5, "GEMS")
        assert self.engine.get_balance("alice", "gems").value == Decimal("5")

    def test_add_balance_lands_on_starter(self):
        result = self.engine.add_balance("alice", "Alice", 50)

        assert result.success
        assert result.value == Decimal("150.00")

    @pytest.mark.parametrize("amount", [0, -5, "nan", "inf", "abc", None])
    def test_add_balance_rejects_invalid_amount(self, amount):
        result = self.engine.add_balance("alice", "Alice", amount)

        assert result.code is ErrorCode.INVALID_AMOUNT
        assert self.engine.get_balance("alice").value is None

    def test_amounts_are_rounded_to_currency_precision(self):
        assert self.engine.add_balance("alice", "Alice", "0.005").value == Decimal("100.01")
        assert self.engine.set_balance("alice", "Alice", "2.6", "gems").value == Decimal("3")

    def test_amount_rounding_to_zero_is_invalid(self):
        result = self.engine.add_balance("alice", "Alice", "0.001")
        assert result.code is ErrorCode.INVALID_AMOUNT

    def test_set_balance_out_of_bounds(self):
        assert self.engine.set_balance("alice", "Alice", -1).code is ErrorCode.BALANCE_OUT_OF_BOUNDS
        assert self.engine.set_balance("alice", "Alice", 1001, "gems").code \
            is ErrorCode.BALANCE_OUT_OF_BOUNDS

    def test_add_balance_over_max(self):
        self.engine.set_balance("alice", "Alice", 900, "gems")

        result = self.engine.add_balance("alice", "Alice", 101, "gems")

        assert result.code is ErrorCode.BALANCE_OUT_OF_BOUNDS
        assert self.engine.get_balance("alice", "gems").value == Decimal("900")

    def test_huge_amount_overflows(self):
        assert self.engine.add_balance("alice", "Alice", "1e400").code is ErrorCode.OVERFLOW
        assert self.engine.add_balance("alice", "Alice", "1e30").code is ErrorCode.OVERFLOW

    def test_remove_balance_insufficient(self):
        self.engine.set_balance("alice", "Alice", 45)

        result = self.engine.remove_balance("alice", "Alice", 1000)

        assert result.code is ErrorCode.INSUFFICIENT_FUNDS
        assert self.engine.get_balance("alice").value == Decimal("45")

    def test_remove_balance_from_unset_account(self):
        result = self.engine.remove_balance("alice", "Alice", 1)
        assert result.code is ErrorCode.INSUFFICIENT_FUNDS

    def test_reset_balance(self):
        self.engine.set_balance("alice", "Alice", 5)

        result = self.engine.reset_balance("alice", "Alice")

        assert result.value == Decimal("100")
        history = self.engine.transaction_history("alice").value
        assert history[0].type == "RESET"
        assert history[0].amount == Decimal("100")

    def test_has_funds(self):
        self.engine.set_balance("alice", "Alice", 20)

        assert self.engine.has_funds("alice", 20)
        assert not self.engine.has_funds("alice", "20.01")
        # unset accounts are judged against the starter balance
        assert self.engine.has_funds("bob", 100)
        assert not self.engine.has_funds("bob", 101)
        assert not self.engine.has_funds("bob", 1, "dollars")

    def test_mutations_append_history(self):
        self.engine.set_balance("alice", "Alice", 10)
        self.engine.add_balance("alice", "Alice", 5)
        self.engine.remove_balance("alice", "Alice", 2)

        history = self.engine.transaction_history("alice", "coins").value
        assert [r.type for r in history] == ["WITHDRAW", "DEPOSIT", "SET"]
        assert [r.amount for r in history] == [Decimal("-2"), Decimal("5"), Decimal("10")]

    def test_cache_serves_committed_value(self):
        self.engine.add_balance("alice", "Alice", 50)

        assert self.context.cache.get("alice", "coins") == Decimal("150")
        assert self.engine.get_balance("alice").value == Decimal("150")
        assert self.store.get_balance("alice", "coins") == Decimal("150")

    def test_failed_write_keeps_cache(self):
        self.engine.set_balance("alice", "Alice", 10)

        self.engine.remove_balance("alice", "Alice", 50)

        assert self.context.cache.get("alice", "coins") == Decimal("10")

    def test_read_populates_cache(self):
        self.store.set_balance("alice", "Alice", self.context.registry.get("coins"), Decimal("7"))

        assert self.engine.get_balance("alice").value == Decimal("7")
        assert self.context.cache.get("alice", "coins") == Decimal("7")

    def test_store_failure_is_reported(self):
        self.store.close()

        result = self.engine.add_balance("alice", "Alice", 5)

        assert result.code is ErrorCode.STORE_FAILURE
        assert self.context.cache.get("alice", "coins") is None


class TestLedgerTransfers:
    """Test atomic transfers"""

    def setup_method(self):
        self.store = SQLiteStorage()
        self.context = LedgerContext(self.store, CurrencyRegistry.load(CURRENCIES))
        self.engine = LedgerEngine(self.context)

    def teardown_method(self):
        self.context.close()

    def test_transfer_with_tax(self):
        self.engine.set_balance("alice", "Alice", 150)

        result = self.engine.transfer("alice", "Alice", "bob", "Bob", 100, tax=5)

        assert result.success
        receipt = result.value
        assert isinstance(receipt, TransferReceipt)
        assert receipt.from_balance == Decimal("45")
        assert receipt.to_balance == Decimal("200")
        assert self.engine.get_balance("alice").value == Decimal("45")
        assert self.engine.get_balance("bob").value == Decimal("200")

    def test_failed_transfer_is_side_effect_free(self):
        self.engine.set_balance("alice", "Alice", 50)
        self.engine.set_balance("bob", "Bob", 10)
        before = len(self.engine.transaction_history().value)

        result = self.engine.transfer("alice", "Alice", "bob", "Bob", 50, tax=1)

        assert result.code is ErrorCode.INSUFFICIENT_FUNDS
        assert self.engine.get_balance("alice").value == Decimal("50")
        assert self.engine.get_balance("bob").value == Decimal("10")
        assert self.store.get_balance("alice", "coins") == Decimal("50")
        assert len(self.engine.transaction_history().value) == before

    def test_transfer_writes_one_record(self):
        self.engine.set_balance("alice", "Alice", 150)

        self.engine.transfer("alice", "Alice", "bob", "Bob", 100, tax=5,
                             transaction_type="GIFT")

        records = [r for r in self.engine.transaction_history("bob").value if r.type == "GIFT"]
        assert len(records) == 1
        assert records[0].from_account == "alice"
        assert records[0].amount == Decimal("100")
        assert records[0].tax == Decimal("5")

    def test_self_transfer(self):
        result = self.engine.transfer("alice", "Alice", "alice", "Alice", 10)
        assert result.code is ErrorCode.SELF_TRANSFER

    def test_transfer_validation(self):
        assert self.engine.transfer("a", "A", "b", "B", 0).code is ErrorCode.INVALID_AMOUNT
        assert self.engine.transfer("a", "A", "b", "B", 10, tax=-1).code is ErrorCode.INVALID_AMOUNT
        assert self.engine.transfer("a", "A", "b", "B", "1e400").code is ErrorCode.OVERFLOW
        assert self.engine.transfer("a", "A", "b", "B", 10, currency_id="x").code \
            is ErrorCode.UNKNOWN_CURRENCY

    def test_transfer_respects_receiver_max(self):
        self.engine.set_balance("alice", "Alice", 500, "gems")
        self.engine.set_balance("bob", "Bob", 900, "gems")

        result = self.engine.transfer("alice", "Alice", "bob", "Bob", 200, currency_id="gems")

        assert result.code is ErrorCode.BALANCE_OUT_OF_BOUNDS
        assert self.engine.get_balance("alice", "gems").value == Decimal("500")
        assert self.engine.get_balance("bob", "gems").value == Decimal("900")

    def test_concurrent_debits_never_overdraw(self):
        self.engine.set_balance("alice", "Alice", 100)
        results = []
        lock = threading.Lock()

        def debit():
            result = self.engine.remove_balance("alice", "Alice", 10)
            with lock:
                results.append(result)

        threads = [threading.Thread(target=debit) for _ in range(25)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        successes = [r for r in results if r.success]
        assert len(successes) == 10
        assert all(r.code is ErrorCode.INSUFFICIENT_FUNDS for r in results if not r.success)
        assert self.store.get_balance("alice", "coins") == Decimal("0")
        assert self.engine.get_balance("alice").value == Decimal("0")

    def test_concurrent_transfers_conserve_funds(self):
        for name in ("a", "b", "c"):
            self.engine.set_balance(name, name.upper(), 100)

        def shuffle(source, target):
            for _ in range(20):
                self.engine.transfer(source, source.upper(), target, target.upper(), 7)

        pairs = [("a", "b"), ("b", "c"), ("c", "a"), ("a", "c")]
        threads = [threading.Thread(target=shuffle, args=pair) for pair in pairs]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        balances = [self.store.get_balance(name, "coins") for name in ("a", "b", "c")]
        assert sum(balances) == Decimal("300")
        assert all(balance >= 0 for balance in balances)
        for name, balance in zip(("a", "b", "c"), balances):
            assert self.engine.get_balance(name).value == balance


class TestLiraScenario:
    """End-to-end walk through the built-in fallback currency"""

    def setup_method(self):
        self.store = SQLiteStorage()
        self.context = LedgerContext(self.store, CurrencyRegistry.load(None))
        self.engine = LedgerEngine(self.context)

    def teardown_method(self):
        self.context.close()

    def test_scenario(self):
        assert self.context.registry.default().id == "lira"

        # new account: no row yet, caller substitutes the starter balance
        assert self.engine.get_balance("A", "lira").value is None
        assert self.engine.get_balance_or_starter("A", "lira").value == Decimal("100")

        assert self.engine.add_balance("A", "Alice", 50, "lira").value == Decimal("150")

        result = self.engine.transfer("A", "Alice", "B", "Bob", 100, tax=5, currency_id="lira")
        assert result.success
        assert self.engine.get_balance("A", "lira").value == Decimal("45")
        assert self.engine.get_balance("B", "lira").value == Decimal("200")

        pay_records = [r for r in self.engine.transaction_history(currency_id="lira").value
                       if r.type == "PAY"]
        assert len(pay_records) == 1
        assert pay_records[0].from_account == "A"
        assert pay_records[0].to_account == "B"
        assert pay_records[0].amount == Decimal("100")
        assert pay_records[0].tax == Decimal("5")

        result = self.engine.remove_balance("A", "Alice", 1000, "lira")
        assert result.code is ErrorCode.INSUFFICIENT_FUNDS
        assert self.engine.get_balance("A", "lira").value == Decimal("45")
