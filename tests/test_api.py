"""
Tests for the collaborator facade, including the async variants
"""

import asyncio
import tempfile
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio

from economy_ledger.api import EconomyAPI, open_economy
from economy_ledger.config import LedgerSettings
from economy_ledger.errors import ErrorCode


# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)


CURRENCIES = {
    "coins": {
        "display-name": "Coins",
        "symbol": "C",
        "format": "%symbol%%amount%",
        "starter-balance": 100,
        "default": True,
    },
    "gems": {"decimal-places": 0, "starter-balance": 0},
}


class TestEconomyAPI:
    """Test the synchronous facade"""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.settings = LedgerSettings(
            database_path=str(self.root / "economy.db"),
            backup_dir=str(self.root / "backups"),
            keep_backups=2,
        )
        self.api = open_economy(self.settings, CURRENCIES, configure_logging=False)

    def teardown_method(self):
        self.api.close()
        self.temp_dir.cleanup()

    def test_currency_lookup(self):
        assert self.api.default_currency().id == "coins"
        assert self.api.get_currency().id == "coins"
        assert self.api.get_currency("GEMS").id == "gems"
        assert self.api.get_currency("dollars") is None
        assert self.api.currency_exists("gems")
        assert not self.api.currency_exists(None)
        assert [c.id for c in self.api.list_currencies()] == ["coins", "gems"]

    def test_format_currency(self):
        assert self.api.format_currency(Decimal("12.5")) == "C12.50"
        assert self.api.format_currency(3, "gems") == "3 $"
        # unknown ids format with the default currency
        assert self.api.format_currency(1, "dollars") == "C1.00"

    def test_is_valid_balance(self):
        assert self.api.is_valid_balance(0)
        assert not self.api.is_valid_balance(-1)
        assert not self.api.is_valid_balance("nan")
        assert not self.api.is_valid_balance(1, "dollars")

    def test_balance_reads(self):
        assert self.api.get_balance("alice").value == Decimal("100")
        assert self.api.get_raw_balance("alice").value is None

        self.api.add_balance("alice", "Alice", 10)

        assert self.api.get_balance("alice").value == Decimal("110")
        assert self.api.get_raw_balance("alice").value == Decimal("110")
        assert self.api.has_funds("alice", 110)

    def test_write_operations(self):
        assert self.api.set_balance("alice", "Alice", 40).success
        assert self.api.remove_balance("alice", "Alice", 15).value == Decimal("25")
        assert self.api.reset_balance("alice", "Alice").value == Decimal("100")

        history = self.api.transaction_history("alice").value
        assert [r.type for r in history] == ["RESET", "WITHDRAW", "SET"]

    def test_pay_handshake(self):
        self.api.on_join("alice", "Alice")
        self.api.on_join("bob", "Bob")

        pending = self.api.request_transfer("alice", "Alice", "bob", 30)
        assert pending.success
        assert pending.value.target_name == "Bob"

        result = self.api.confirm_transfer("alice")
        assert result.success
        assert self.api.get_balance("alice").value == Decimal("70")
        assert self.api.get_balance("bob").value == Decimal("130")
        assert self.api.confirm_transfer("alice").code is ErrorCode.NOT_PENDING

    def test_direct_transfer(self):
        result = self.api.transfer("alice", "Alice", "bob", "Bob", 25, tax=5)

        assert result.success
        assert result.value.from_balance == Decimal("70")

    def test_leaderboard_and_rank(self):
        for i in range(1, 13):
            self.api.set_balance(f"p{i:02d}", f"P{i}", i)

        page = self.api.top_balances(page=2).value
        assert page.total_pages == 2
        assert [e.account_id for e in page.entries] == ["p02", "p01"]
        assert self.api.top_balances(page=3).code is ErrorCode.INVALID_PAGE
        assert self.api.rank("p12").value == 1
        assert self.api.total_accounts().value == 12

    def test_accounts(self):
        assert not self.api.account_exists("alice")
        assert self.api.create_account("alice", "Alice").success
        assert self.api.account_exists("alice")
        assert self.api.find_account("ALICE") == "alice"
        assert self.api.find_account("bob") is None

    def test_disconnect_cancels_pending(self):
        self.api.on_join("alice", "Alice")
        self.api.on_join("bob", "Bob")
        self.api.request_transfer("alice", "Alice", "bob", 10)

        self.api.on_disconnect("alice")

        assert self.api.confirm_transfer("alice").code is ErrorCode.NOT_PENDING

    def test_snapshot_uses_settings(self):
        self.api.set_balance("alice", "Alice", 5)

        paths = [self.api.snapshot().value for _ in range(3)]

        assert all(p.parent == self.root / "backups" for p in paths)
        assert len(list((self.root / "backups").glob("economy_*.db"))) == 2

    def test_reload(self):
        assert self.api.reload(currencies={"gold": {"default": True}},
                               settings=LedgerSettings(pay_confirm_timeout_seconds=5))

        assert self.api.default_currency().id == "gold"
        assert self.api.payments.book.timeout == 5

    def test_context_manager_closes(self):
        api = EconomyAPI(self.api.context)
        with api:
            api.add_balance("alice", "Alice", 1)

        assert api.get_balance("alice").code is ErrorCode.STORE_FAILURE


class TestEconomyAPIAsync:
    """Test the async twins"""

    @pytest_asyncio.fixture
    async def api(self):
        api = open_economy(LedgerSettings(database_path=":memory:"), CURRENCIES,
                           configure_logging=False)
        yield api
        api.close()

    @pytest.mark.asyncio
    async def test_async_balance_operations(self, api):
        result = await api.get_balance_async("alice")
        assert result.value == Decimal("100")

        await api.add_balance_async("alice", "Alice", 50)
        await api.remove_balance_async("alice", "Alice", 20)
        result = await api.get_balance_async("alice")
        assert result.value == Decimal("130")

        await api.set_balance_async("alice", "Alice", 7)
        assert (await api.get_balance_async("alice")).value == Decimal("7")

    @pytest.mark.asyncio
    async def test_concurrent_async_debits(self, api):
        await api.set_balance_async("alice", "Alice", 50)

        results = await asyncio.gather(*[
            api.remove_balance_async("alice", "Alice", 10) for _ in range(8)
        ])

        assert sum(1 for r in results if r.success) == 5
        assert (await api.get_balance_async("alice")).value == Decimal("0")

    @pytest.mark.asyncio
    async def test_async_queries(self, api):
        api.on_join("alice", "Alice")
        api.on_join("bob", "Bob")
        api.request_transfer("alice", "Alice", "bob", 10)

        confirmed = await api.confirm_transfer_async("alice")
        assert confirmed.success

        page = (await api.top_balances_async()).value
        assert [e.account_id for e in page.entries] == ["bob", "alice"]
        assert (await api.rank_async("alice")).value == 2
