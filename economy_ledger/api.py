"""
Economy API

Query surface for collaborators (command handlers, placeholder providers,
other plugins). Wraps the ledger engine, leaderboard, payment handshake and
account lifecycle behind one object. Every call returns a LedgerResult or a
plain value; nothing raises ledger errors.

Blocking calls have ``*_async`` twins that run on a worker thread so an
event loop is never blocked on SQLite I/O.
"""

import asyncio
from pathlib import Path
from typing import Any, Mapping, Optional

from .accounts import AccountService
from .config import LedgerSettings, get_settings
from .context import LedgerContext
from .currency import Currency, to_decimal
from .errors import LedgerError, LedgerResult
from .leaderboard import Leaderboard
from .ledger import LedgerEngine
from .logging_config import get_logger, setup_logging
from .payments import PaymentService


class EconomyAPI:
    """Facade over one ledger context"""

    def __init__(self, context: LedgerContext):
        self.context = context
        self.engine = LedgerEngine(context)
        self.leaderboard = Leaderboard(context)
        self.payments = PaymentService(self.engine, context)
        self.accounts = AccountService(self.engine, context, self.payments)
        self.logger = get_logger("economy.api")

    # ------------------------------------------------------------------
    # Currencies
    # ------------------------------------------------------------------

    def get_currency(self, currency_id: Optional[str] = None) -> Optional[Currency]:
        """Currency by id, or the default currency when ``currency_id`` is None"""
        return self.context.registry.resolve(currency_id)

    def default_currency(self) -> Currency:
        return self.context.registry.default()

    def list_currencies(self):
        return self.context.registry.all()

    def currency_exists(self, currency_id: Optional[str]) -> bool:
        return self.context.registry.exists(currency_id)

    def format_currency(self, amount: Any, currency_id: Optional[str] = None) -> str:
        """Format an amount with a currency's template; unknown ids use the default"""
        currency = self.get_currency(currency_id) or self.default_currency()
        try:
            return currency.format(to_decimal(amount))
        except LedgerError:
            return str(amount)

    def is_valid_balance(self, amount: Any, currency_id: Optional[str] = None) -> bool:
        currency = self.get_currency(currency_id)
        if currency is None:
            return False
        try:
            return currency.is_valid_balance(to_decimal(amount))
        except LedgerError:
            return False

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def get_balance(self, account_id: str, currency_id: Optional[str] = None) -> LedgerResult:
        """Balance with the starter balance substituted for unset accounts"""
        return self.engine.get_balance_or_starter(account_id, currency_id)

    def get_raw_balance(self, account_id: str, currency_id: Optional[str] = None) -> LedgerResult:
        """Balance where ``value`` None means the account has no balance yet"""
        return self.engine.get_balance(account_id, currency_id)

    def has_funds(self, account_id: str, amount: Any, currency_id: Optional[str] = None) -> bool:
        return self.engine.has_funds(account_id, amount, currency_id)

    def set_balance(self, account_id: str, username: str, amount: Any,
                    currency_id: Optional[str] = None, transaction_type: str = "SET") -> LedgerResult:
        return self.engine.set_balance(account_id, username, amount, currency_id, transaction_type)

    def add_balance(self, account_id: str, username: str, amount: Any,
                    currency_id: Optional[str] = None,
                    transaction_type: str = "DEPOSIT") -> LedgerResult:
        return self.engine.add_balance(account_id, username, amount, currency_id, transaction_type)

    def remove_balance(self, account_id: str, username: str, amount: Any,
                       currency_id: Optional[str] = None,
                       transaction_type: str = "WITHDRAW") -> LedgerResult:
        return self.engine.remove_balance(account_id, username, amount, currency_id,
                                          transaction_type)

    def reset_balance(self, account_id: str, username: str,
                      currency_id: Optional[str] = None) -> LedgerResult:
        return self.engine.reset_balance(account_id, username, currency_id)

    def transaction_history(self, account_id: Optional[str] = None,
                            currency_id: Optional[str] = None, limit: int = 50) -> LedgerResult:
        return self.engine.transaction_history(account_id, currency_id, limit)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def request_transfer(self, initiator: str, initiator_name: str, target: str, amount: Any,
                         currency_id: Optional[str] = None,
                         target_name: Optional[str] = None) -> LedgerResult:
        return self.payments.request_transfer(initiator, initiator_name, target, target_name,
                                              amount, currency_id)

    def confirm_transfer(self, initiator: str) -> LedgerResult:
        return self.payments.confirm_transfer(initiator)

    def cancel_transfer(self, initiator: str) -> bool:
        return self.payments.cancel_transfer(initiator)

    def transfer(self, from_id: str, from_name: str, to_id: str, to_name: str, amount: Any,
                 tax: Any = 0, currency_id: Optional[str] = None,
                 transaction_type: str = "PAY") -> LedgerResult:
        """Immediate transfer without the confirmation handshake"""
        return self.engine.transfer(from_id, from_name, to_id, to_name, amount, tax,
                                    currency_id, transaction_type)

    # ------------------------------------------------------------------
    # Leaderboard and accounts
    # ------------------------------------------------------------------

    def top_balances(self, currency_id: Optional[str] = None, page: int = 1,
                     page_size: Optional[int] = None) -> LedgerResult:
        return self.leaderboard.top_balances(currency_id, page, page_size)

    def rank(self, account_id: str, currency_id: Optional[str] = None) -> LedgerResult:
        return self.leaderboard.rank(account_id, currency_id)

    def total_accounts(self) -> LedgerResult:
        return self.leaderboard.total_accounts()

    def account_exists(self, account_id: str) -> bool:
        result = self.accounts.exists(account_id)
        return bool(result) and result.value

    def create_account(self, account_id: str, username: str) -> LedgerResult:
        return self.accounts.create(account_id, username)

    def find_account(self, username: str) -> Optional[str]:
        result = self.accounts.find(username)
        return result.value if result else None

    def on_join(self, account_id: str, username: str) -> LedgerResult:
        return self.accounts.on_join(account_id, username)

    def on_disconnect(self, account_id: str) -> None:
        self.accounts.on_disconnect(account_id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def snapshot(self, backup_dir: Optional[str] = None,
                 keep: Optional[int] = None) -> LedgerResult:
        """Write a consistent copy of the store; ``value`` is the snapshot path"""
        settings = self.context.settings
        target_dir = Path(backup_dir or settings.backup_dir)
        keep = settings.keep_backups if keep is None else keep
        try:
            return LedgerResult.ok(self.context.store.snapshot(target_dir, keep))
        except LedgerError as e:
            self.logger.error("Snapshot failed: %s", e.message, exc_info=e)
            return LedgerResult.from_error(e)

    def reload(self, currencies: Optional[Mapping[str, Any]] = None,
               settings: Optional[LedgerSettings] = None) -> bool:
        """Reload settings then currencies; a failed source keeps the live values"""
        settings_ok = self.context.reload_settings(settings)
        self.payments.book.timeout = self.context.settings.pay_confirm_timeout_seconds
        currencies_ok = True
        if currencies is not None or self.context.settings.currencies_file:
            currencies_ok = self.context.reload_currencies(currencies)
        return settings_ok and currencies_ok

    def close(self) -> None:
        self.payments.stop_sweeper()
        self.payments.book.clear()
        self.context.close()

    def __enter__(self) -> 'EconomyAPI':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Async variants
    # ------------------------------------------------------------------

    async def get_balance_async(self, account_id: str,
                                currency_id: Optional[str] = None) -> LedgerResult:
        return await asyncio.to_thread(self.get_balance, account_id, currency_id)

    async def add_balance_async(self, account_id: str, username: str, amount: Any,
                                currency_id: Optional[str] = None) -> LedgerResult:
        return await asyncio.to_thread(self.add_balance, account_id, username, amount,
                                       currency_id)

    async def remove_balance_async(self, account_id: str, username: str, amount: Any,
                                   currency_id: Optional[str] = None) -> LedgerResult:
        return await asyncio.to_thread(self.remove_balance, account_id, username, amount,
                                       currency_id)

    async def set_balance_async(self, account_id: str, username: str, amount: Any,
                                currency_id: Optional[str] = None) -> LedgerResult:
        return await asyncio.to_thread(self.set_balance, account_id, username, amount,
                                       currency_id)

    async def confirm_transfer_async(self, initiator: str) -> LedgerResult:
        return await asyncio.to_thread(self.confirm_transfer, initiator)

    async def top_balances_async(self, currency_id: Optional[str] = None, page: int = 1,
                                 page_size: Optional[int] = None) -> LedgerResult:
        return await asyncio.to_thread(self.top_balances, currency_id, page, page_size)

    async def rank_async(self, account_id: str,
                         currency_id: Optional[str] = None) -> LedgerResult:
        return await asyncio.to_thread(self.rank, account_id, currency_id)


def open_economy(settings: Optional[LedgerSettings] = None,
                 currencies: Optional[Mapping[str, Any]] = None,
                 configure_logging: bool = True) -> EconomyAPI:
    """
    Build the whole ledger from settings.

    Args:
        settings: Settings to use; defaults to the global settings
        currencies: Currency table overriding ``settings.currencies_file``
        configure_logging: Install the structured log handler

    Returns:
        Ready-to-use EconomyAPI
    """
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(settings.log_level, fmt=settings.log_format)
    context = LedgerContext.from_settings(settings, currencies)
    api = EconomyAPI(context)
    get_logger("economy.api").info("Economy ledger opened: %s (%d currencies)",
                                   settings.database_path, len(context.registry))
    return api
