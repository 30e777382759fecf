"""
Leaderboard and aggregate queries.

Reads go straight to the durable store: a global ordering cannot be
derived from the per-account balance cache.
"""

import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from .context import LedgerContext
from .errors import ErrorCode, LedgerError, LedgerResult, UnknownCurrencyError
from .logging_config import get_logger


@dataclass(frozen=True)
class RankedEntry:
    """Leaderboard row with its 1-based position"""
    position: int
    account_id: str
    username: str
    balance: Decimal


@dataclass(frozen=True)
class LeaderboardPage:
    currency_id: str
    page: int
    page_size: int
    total_pages: int
    total_accounts: int
    entries: List[RankedEntry] = field(default_factory=list)

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


class Leaderboard:
    """Paginated top balances, rank lookup and account totals"""

    def __init__(self, context: LedgerContext):
        self.context = context
        self.logger = get_logger("economy.leaderboard")

    def _currency_id(self, currency_id: Optional[str]) -> str:
        currency = self.context.registry.resolve(currency_id)
        if currency is None:
            raise UnknownCurrencyError(str(currency_id))
        return currency.id

    def _page_size(self, page_size: Optional[int]) -> int:
        if page_size is None:
            page_size = self.context.settings.baltop_entries_per_page
        return max(1, page_size)

    def top_balances(self, currency_id: Optional[str] = None, page: int = 1,
                     page_size: Optional[int] = None) -> LedgerResult:
        """
        One page of balances ordered highest first.

        ``total_pages`` is computed from the total account count, so
        accounts without a row for this currency still count toward the
        page total. A page outside 1..total_pages is INVALID_PAGE unless
        there are no accounts at all, in which case page 1 is empty.
        """
        try:
            currency = self._currency_id(currency_id)
            page_size = self._page_size(page_size)
            total = self.context.store.total_accounts()
            total_pages = max(1, math.ceil(total / page_size))

            if page < 1 or (total > 0 and page > total_pages):
                return LedgerResult.fail(
                    ErrorCode.INVALID_PAGE,
                    f"Page {page} is out of range (1-{total_pages})",
                )

            offset = (page - 1) * page_size
            rows = self.context.store.top_balances(currency, page_size, offset)
        except LedgerError as e:
            if e.code is ErrorCode.STORE_FAILURE:
                self.logger.error("Leaderboard query failed: %s", e.message, exc_info=e)
            return LedgerResult.from_error(e)

        entries = [
            RankedEntry(offset + index + 1, row.account_id, row.username, row.balance)
            for index, row in enumerate(rows)
        ]
        return LedgerResult.ok(LeaderboardPage(
            currency_id=currency,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
            total_accounts=total,
            entries=entries,
        ))

    def rank(self, account_id: str, currency_id: Optional[str] = None) -> LedgerResult:
        """1-based position of an account; ``value`` is None when not ranked"""
        try:
            currency = self._currency_id(currency_id)
            ordering = self.context.store.top_balances(currency)
        except LedgerError as e:
            if e.code is ErrorCode.STORE_FAILURE:
                self.logger.error("Rank lookup failed: %s", e.message, exc_info=e)
            return LedgerResult.from_error(e)

        # Linear scan over the full ordering
        for position, row in enumerate(ordering, start=1):
            if row.account_id == account_id:
                return LedgerResult.ok(position)
        return LedgerResult.ok(None)

    def total_accounts(self) -> LedgerResult:
        try:
            return LedgerResult.ok(self.context.store.total_accounts())
        except LedgerError as e:
            self.logger.error("Account count failed: %s", e.message, exc_info=e)
            return LedgerResult.from_error(e)
