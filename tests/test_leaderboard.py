"""
Tests for leaderboard pagination and rank lookup
"""

from decimal import Decimal

from economy_ledger.config import LedgerSettings
from economy_ledger.context import LedgerContext
from economy_ledger.currency import CurrencyRegistry
from economy_ledger.errors import ErrorCode
from economy_ledger.leaderboard import Leaderboard, LeaderboardPage
from economy_ledger.ledger import LedgerEngine
from economy_ledger.storage import SQLiteStorage


class TestLeaderboard:
    """Test paginated top balances"""

    def setup_method(self):
        self.context = LedgerContext(
            SQLiteStorage(),
            CurrencyRegistry.load({"coins": {"default": True}, "gems": {}}),
            settings=LedgerSettings(baltop_entries_per_page=10),
        )
        self.engine = LedgerEngine(self.context)
        self.leaderboard = Leaderboard(self.context)

    def teardown_method(self):
        self.context.close()

    def _fill(self, count):
        for i in range(1, count + 1):
            self.engine.set_balance(f"player{i:02d}", f"Player{i}", i * 10)

    def test_pagination(self):
        self._fill(25)

        first = self.leaderboard.top_balances(page=1)
        assert first.success
        page = first.value
        assert isinstance(page, LeaderboardPage)
        assert page.total_pages == 3
        assert page.total_accounts == 25
        assert len(page.entries) == 10
        assert page.entries[0].position == 1
        assert page.entries[0].account_id == "player25"
        assert page.entries[0].balance == Decimal("250")
        assert page.has_next

        third = self.leaderboard.top_balances(page=3).value
        assert [e.position for e in third.entries] == [21, 22, 23, 24, 25]
        assert third.entries[-1].account_id == "player01"
        assert not third.has_next

        beyond = self.leaderboard.top_balances(page=4)
        assert beyond.code is ErrorCode.INVALID_PAGE

    def test_invalid_page_numbers(self):
        self._fill(3)

        assert self.leaderboard.top_balances(page=0).code is ErrorCode.INVALID_PAGE
        assert self.leaderboard.top_balances(page=-2).code is ErrorCode.INVALID_PAGE

    def test_page_size_is_coerced(self):
        self._fill(3)

        page = self.leaderboard.top_balances(page=2, page_size=0).value
        assert page.page_size == 1
        assert page.total_pages == 3
        assert [e.account_id for e in page.entries] == ["player02"]

    def test_empty_leaderboard(self):
        page = self.leaderboard.top_balances().value

        assert page.entries == []
        assert page.total_pages == 1
        assert page.total_accounts == 0

    def test_unknown_currency(self):
        result = self.leaderboard.top_balances("dollars")
        assert result.code is ErrorCode.UNKNOWN_CURRENCY

    def test_currencies_are_ranked_separately(self):
        self.engine.set_balance("alice", "Alice", 5, "coins")
        self.engine.set_balance("bob", "Bob", 50, "coins")
        self.engine.set_balance("alice", "Alice", 500, "gems")

        coins = self.leaderboard.top_balances("coins").value
        gems = self.leaderboard.top_balances("gems").value

        assert [e.account_id for e in coins.entries] == ["bob", "alice"]
        assert [e.account_id for e in gems.entries] == ["alice"]

    def test_reads_bypass_cache(self):
        self._fill(2)
        # a write made directly to the store is visible immediately
        self.context.store.set_balance("player01", "Player1",
                                       self.context.registry.get("coins"), Decimal("999"))

        page = self.leaderboard.top_balances().value
        assert page.entries[0].account_id == "player01"

    def test_rank(self):
        self._fill(5)

        assert self.leaderboard.rank("player05").value == 1
        assert self.leaderboard.rank("player01").value == 5
        assert self.leaderboard.rank("nobody").value is None
        assert self.leaderboard.rank("player01", "gems").value is None
        assert self.leaderboard.rank("player01", "dollars").code is ErrorCode.UNKNOWN_CURRENCY

    def test_total_accounts(self):
        self._fill(4)
        self.context.store.create_account("lurker", "Lurker")

        assert self.leaderboard.total_accounts().value == 5
