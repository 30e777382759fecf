"""
Ledger context.

Explicit owner of the pieces every ledger operation needs: the current
currency registry, the balance cache, the durable store and the settings.
Components receive the context instead of reaching for module globals.
"""

import threading
from typing import Any, Mapping, Optional

from .cache import BalanceCache
from .config import ConfigError, LedgerSettings, load_currency_file
from .currency import CurrencyRegistry
from .logging_config import get_logger
from .storage import SQLiteStorage, StorageInterface


class LedgerContext:
    """
    Shared state for one ledger instance.

    ``registry`` and ``settings`` are replaced wholesale on reload; readers
    grab the reference once per operation and so see either the old or the
    new object in full.
    """

    def __init__(self, store: StorageInterface, registry: CurrencyRegistry,
                 cache: Optional[BalanceCache] = None,
                 settings: Optional[LedgerSettings] = None):
        self.store = store
        self._settings = settings or LedgerSettings()
        self.cache = cache or BalanceCache(self._settings.cache_max_accounts)
        self._registry = registry
        self._swap_lock = threading.Lock()
        self.logger = get_logger("economy.context")

    @classmethod
    def from_settings(cls, settings: LedgerSettings,
                      currencies: Optional[Mapping[str, Any]] = None) -> 'LedgerContext':
        """
        Open the store and load currencies described by ``settings``.

        ``currencies`` overrides ``settings.currencies_file`` when given.
        An unreadable currency file degrades to the built-in currency.
        """
        if currencies is None and settings.currencies_file:
            try:
                currencies = load_currency_file(settings.currencies_file)
            except ConfigError as e:
                get_logger("economy.context").error("%s; using built-in currency", e)
                currencies = None
        registry = CurrencyRegistry.load(currencies)
        store = SQLiteStorage(settings.database_path, busy_timeout_ms=settings.busy_timeout_ms)
        return cls(store, registry, BalanceCache(settings.cache_max_accounts), settings)

    @property
    def registry(self) -> CurrencyRegistry:
        return self._registry

    @property
    def settings(self) -> LedgerSettings:
        return self._settings

    def swap_registry(self, registry: CurrencyRegistry) -> CurrencyRegistry:
        """Install a new registry, returning the previous one"""
        with self._swap_lock:
            previous, self._registry = self._registry, registry
        self.logger.info("Currency registry swapped: %d currencies, default %s",
                         len(registry), registry.default().id)
        return previous

    def reload_currencies(self, currencies: Optional[Mapping[str, Any]] = None) -> bool:
        """
        Rebuild the registry from a table or from the configured file.

        Returns False and keeps the current registry when the file cannot
        be read. Individual bad entries inside a readable source are
        handled by CurrencyRegistry.load itself.
        """
        if currencies is None:
            path = self._settings.currencies_file
            if not path:
                self.logger.warning("No currencies file configured, keeping current registry")
                return False
            try:
                currencies = load_currency_file(path)
            except ConfigError as e:
                self.logger.error("Currency reload failed, keeping current registry: %s", e)
                return False

        self.swap_registry(CurrencyRegistry.load(currencies))
        # Cached balances stay valid; bounds are enforced on the next write
        return True

    def reload_settings(self, settings: Optional[LedgerSettings] = None) -> bool:
        """Swap in new settings; invalid environment keeps the current ones"""
        if settings is None:
            try:
                settings = LedgerSettings()
            except ValueError as e:
                self.logger.error("Settings reload failed, keeping current settings: %s", e)
                return False
        with self._swap_lock:
            self._settings = settings
        self.logger.info("Settings reloaded")
        return True

    def close(self) -> None:
        self.cache.clear()
        self.store.close()
