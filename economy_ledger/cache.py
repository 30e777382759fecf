"""
Balance cache.

Bounded in-memory map of (account, currency) -> last committed balance.
The durable store stays the source of truth: entries are written only
after a successful commit and can always be rebuilt from the store.
"""

import threading
from decimal import Decimal
from typing import Dict, Optional

from .logging_config import get_logger


class BalanceCache:
    """
    Thread-safe read-through cache capped by tracked account count.

    At capacity new accounts are simply not cached; existing entries are
    never evicted to make room. A caller captures the account's generation
    before reading or writing the store and passes it to ``put``; if another
    writer or an invalidation got there first the put degrades to an
    invalidation instead of overwriting newer data.

    Generations come from one monotonic clock. Only cached accounts keep
    their own generation; every other account shares ``_floor``, which
    moves forward whenever an uncached account changes. A token captured
    for an account that has since been dropped can therefore never match
    again, and the bookkeeping stays bounded by ``max_accounts``.
    """

    def __init__(self, max_accounts: int = 1000):
        self.max_accounts = max(0, max_accounts)
        self._entries: Dict[str, Dict[str, Decimal]] = {}
        self._generations: Dict[str, int] = {}
        self._clock = 0
        self._floor = 0
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self.logger = get_logger("economy.cache")

    def get(self, account_id: str, currency_id: str) -> Optional[Decimal]:
        """Cached balance or None on a miss"""
        with self._lock:
            balance = self._entries.get(account_id, {}).get(currency_id)
            if balance is None:
                self._misses += 1
            else:
                self._hits += 1
            return balance

    def generation(self, account_id: str) -> int:
        with self._lock:
            return self._current(account_id)

    def _current(self, account_id: str) -> int:
        return self._generations.get(account_id, self._floor)

    def _tick(self) -> int:
        self._clock += 1
        return self._clock

    def put(self, account_id: str, currency_id: str, balance: Decimal,
            generation: Optional[int] = None) -> bool:
        """
        Store a committed balance.

        Returns False when the entry was not stored, either because the
        cache is full or because ``generation`` is stale.
        """
        with self._lock:
            current = self._current(account_id)
            if generation is not None and generation != current:
                self._drop(account_id)
                return False
            if not self._store(account_id, currency_id, balance):
                return False
            self._generations.setdefault(account_id, current)
            return True

    def put_committed(self, account_id: str, currency_id: str, balance: Decimal,
                      generation: int) -> bool:
        """``put`` for writers: also advances the generation on success"""
        with self._lock:
            if generation != self._current(account_id):
                self._drop(account_id)
                return False
            advanced = self._tick()
            if self._store(account_id, currency_id, balance):
                self._generations[account_id] = advanced
                return True
            self._floor = advanced
            return False

    def _store(self, account_id: str, currency_id: str, balance: Decimal) -> bool:
        per_account = self._entries.get(account_id)
        if per_account is None:
            if len(self._entries) >= self.max_accounts:
                return False
            per_account = self._entries[account_id] = {}
        per_account[currency_id] = balance
        return True

    def invalidate(self, account_id: str) -> None:
        """Forget every cached currency for an account"""
        with self._lock:
            self._drop(account_id)

    def _drop(self, account_id: str) -> None:
        self._entries.pop(account_id, None)
        self._generations.pop(account_id, None)
        # The account now reads the floor, which must be newer than any token
        self._floor = self._tick()

    def clear(self) -> None:
        with self._lock:
            # Every outstanding token is older than the new floor
            self._entries.clear()
            self._generations.clear()
            self._floor = self._tick()
        self.logger.info("Cleared balance cache")

    @property
    def size(self) -> int:
        """Number of tracked accounts"""
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "accounts": len(self._entries),
                "entries": sum(len(v) for v in self._entries.values()),
                "generations": len(self._generations),
                "max_accounts": self.max_accounts,
                "hits": self._hits,
                "misses": self._misses,
            }
