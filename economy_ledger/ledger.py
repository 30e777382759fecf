"""
Ledger Engine

Orchestrates every balance read and mutation: validates the currency and
amount, delegates the atomic write to the durable store, then refreshes the
balance cache with the committed value. Each mutation appends a transaction
record inside the same store transaction as the balance write.

Public methods never raise ledger errors; they return LedgerResult.
"""

from decimal import Decimal
from typing import Any, Optional

from .cache import BalanceCache
from .context import LedgerContext
from .currency import Currency, SAFETY_CEILING, to_decimal
from .errors import (
    BalanceOutOfBoundsError, ErrorCode, InvalidAmountError, LedgerError, LedgerResult,
    OverflowAmountError, UnknownCurrencyError
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface


class TransactionTypes:
    """Default transaction type tags written to the log"""
    SET = "SET"
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    RESET = "RESET"
    PAY = "PAY"


class LedgerEngine:
    """
    Balance ledger and transfer engine.

    ``currency_id=None`` selects the registry's default currency. Cache
    entries are only written after the store commits, and only if no other
    writer touched the account in between (see BalanceCache).
    """

    def __init__(self, context: LedgerContext):
        self.context = context
        self.logger = get_logger("economy.ledger")

    @property
    def store(self) -> StorageInterface:
        return self.context.store

    @property
    def cache(self) -> BalanceCache:
        return self.context.cache

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def currency(self, currency_id: Optional[str]) -> Currency:
        """Resolve a currency id, None meaning the default currency"""
        currency = self.context.registry.resolve(currency_id)
        if currency is None:
            raise UnknownCurrencyError(str(currency_id))
        return currency

    @staticmethod
    def normalize_amount(currency: Currency, value: Any, positive: bool = True) -> Decimal:
        """Finite amount rounded to currency precision, checked against the ceiling"""
        amount = to_decimal(value)
        if abs(amount) > SAFETY_CEILING:
            raise OverflowAmountError(f"Amount {amount} exceeds the safety ceiling")
        amount = currency.quantize(amount)
        if positive and amount <= 0:
            raise InvalidAmountError(f"Amount must be positive: {value}")
        return amount

    def _failure(self, action: str, account_id: Optional[str], currency_id: Optional[str],
                 error: LedgerError) -> LedgerResult:
        if error.code is ErrorCode.STORE_FAILURE:
            self.logger.error("%s failed for %s: %s", action, account_id, error.message,
                              exc_info=error)
        else:
            log_action(self.logger, "debug", f"{action} rejected: {error.message}",
                       account_id=account_id, currency=currency_id, action=action,
                       extra={"code": error.code.value})
        return LedgerResult.from_error(error)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_balance(self, account_id: str, currency_id: Optional[str] = None) -> LedgerResult:
        """
        Current balance; ``value`` is None when the account has no row for
        the currency yet (callers substitute the starter balance).
        """
        try:
            currency = self.currency(currency_id)
            cached = self.cache.get(account_id, currency.id)
            if cached is not None:
                return LedgerResult.ok(cached)

            generation = self.cache.generation(account_id)
            balance = self.store.get_balance(account_id, currency.id)
            if balance is not None:
                self.cache.put(account_id, currency.id, balance, generation)
            return LedgerResult.ok(balance)
        except LedgerError as e:
            return self._failure("get_balance", account_id, currency_id, e)

    def get_balance_or_starter(self, account_id: str,
                               currency_id: Optional[str] = None) -> LedgerResult:
        """Like get_balance, but NotSet reads as the currency's starter balance"""
        result = self.get_balance(account_id, currency_id)
        if result.success and result.value is None:
            return LedgerResult.ok(self.context.registry.resolve(currency_id).starter_balance)
        return result

    def has_funds(self, account_id: str, amount: Any,
                  currency_id: Optional[str] = None) -> bool:
        """True when a debit of ``amount`` would keep the balance above min"""
        try:
            currency = self.currency(currency_id)
            amount = self.normalize_amount(currency, amount, positive=False)
        except LedgerError:
            return False
        result = self.get_balance_or_starter(account_id, currency.id)
        return result.success and result.value - amount >= currency.min_balance

    def transaction_history(self, account_id: Optional[str] = None,
                            currency_id: Optional[str] = None,
                            limit: int = 50) -> LedgerResult:
        try:
            if currency_id is not None:
                currency_id = self.currency(currency_id).id
            return LedgerResult.ok(self.store.transactions(account_id, currency_id, max(1, limit)))
        except LedgerError as e:
            return self._failure("transaction_history", account_id, currency_id, e)

    # ------------------------------------------------------------------
    # Single-account mutations
    # ------------------------------------------------------------------

    def set_balance(self, account_id: str, username: str, amount: Any,
                    currency_id: Optional[str] = None,
                    transaction_type: str = TransactionTypes.SET) -> LedgerResult:
        try:
            currency = self.currency(currency_id)
            amount = self.normalize_amount(currency, amount, positive=False)
            if not currency.is_valid_balance(amount):
                raise BalanceOutOfBoundsError(
                    f"Balance {amount} is outside the bounds of {currency.id}"
                )
            generation = self.cache.generation(account_id)
            balance = self.store.set_balance(account_id, username, currency, amount,
                                             transaction_type)
            self.cache.put_committed(account_id, currency.id, balance, generation)
        except LedgerError as e:
            return self._failure("set_balance", account_id, currency_id, e)

        log_action(self.logger, "info", f"Set balance of {username} to {currency.format(balance)}",
                   account_id=account_id, currency=currency.id, action=transaction_type)
        return LedgerResult.ok(balance)

    def add_balance(self, account_id: str, username: str, amount: Any,
                    currency_id: Optional[str] = None,
                    transaction_type: str = TransactionTypes.DEPOSIT) -> LedgerResult:
        """Credit ``amount``; an unset balance starts from the starter balance"""
        try:
            currency = self.currency(currency_id)
            amount = self.normalize_amount(currency, amount)
            generation = self.cache.generation(account_id)
            balance = self.store.add_balance(account_id, username, currency, amount,
                                             transaction_type)
            self.cache.put_committed(account_id, currency.id, balance, generation)
        except LedgerError as e:
            return self._failure("add_balance", account_id, currency_id, e)

        log_action(self.logger, "info", f"Credited {currency.format(amount)} to {username}",
                   account_id=account_id, currency=currency.id, action=transaction_type)
        return LedgerResult.ok(balance)

    def remove_balance(self, account_id: str, username: str, amount: Any,
                       currency_id: Optional[str] = None,
                       transaction_type: str = TransactionTypes.WITHDRAW) -> LedgerResult:
        """Debit ``amount``; INSUFFICIENT_FUNDS leaves the balance untouched"""
        try:
            currency = self.currency(currency_id)
            amount = self.normalize_amount(currency, amount)
            generation = self.cache.generation(account_id)
            balance = self.store.remove_balance(account_id, username, currency, amount,
                                                transaction_type)
            self.cache.put_committed(account_id, currency.id, balance, generation)
        except LedgerError as e:
            return self._failure("remove_balance", account_id, currency_id, e)

        log_action(self.logger, "info", f"Debited {currency.format(amount)} from {username}",
                   account_id=account_id, currency=currency.id, action=transaction_type)
        return LedgerResult.ok(balance)

    def reset_balance(self, account_id: str, username: str,
                      currency_id: Optional[str] = None,
                      transaction_type: str = TransactionTypes.RESET) -> LedgerResult:
        """Put the balance back to the currency's starter balance"""
        try:
            currency = self.currency(currency_id)
        except LedgerError as e:
            return self._failure("reset_balance", account_id, currency_id, e)
        return self.set_balance(account_id, username, currency.starter_balance,
                                currency.id, transaction_type)

    def grant_starter(self, account_id: str, username: str, currency_id: Optional[str],
                      transaction_type: str) -> LedgerResult:
        """
        Give the starter balance to an account with no balance row yet.

        The existence check and the insert share one store transaction, so a
        credit committed first is never overwritten. ``value`` is the granted
        balance, or None when a balance already existed.
        """
        try:
            currency = self.currency(currency_id)
            generation = self.cache.generation(account_id)
            balance = self.store.grant_starter(account_id, username, currency,
                                               transaction_type)
            if balance is not None:
                self.cache.put_committed(account_id, currency.id, balance, generation)
        except LedgerError as e:
            return self._failure("grant_starter", account_id, currency_id, e)

        if balance is not None:
            log_action(self.logger, "info",
                       f"Granted starter {currency.format(balance)} to {username}",
                       account_id=account_id, currency=currency.id, action=transaction_type)
        return LedgerResult.ok(balance)

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    def transfer(self, from_id: str, from_name: str, to_id: str, to_name: str,
                 amount: Any, tax: Any = Decimal("0"),
                 currency_id: Optional[str] = None,
                 transaction_type: str = TransactionTypes.PAY) -> LedgerResult:
        """
        Move ``amount`` from one account to another, charging ``tax`` on top.

        The sender is debited ``amount + tax`` and the receiver credited
        ``amount``; the tax leaves circulation. On success ``value`` is the
        TransferReceipt with both committed balances.
        """
        try:
            currency = self.currency(currency_id)
            if from_id == to_id:
                raise LedgerError("Cannot transfer to the same account", ErrorCode.SELF_TRANSFER)
            amount = self.normalize_amount(currency, amount)
            tax = self.normalize_amount(currency, tax, positive=False)
            if tax < 0:
                raise InvalidAmountError(f"Tax cannot be negative: {tax}")

            total = amount + tax
            if not total.is_finite() or total > SAFETY_CEILING:
                raise OverflowAmountError(f"Transfer total {total} exceeds the safety ceiling")

            from_generation = self.cache.generation(from_id)
            to_generation = self.cache.generation(to_id)
            receipt = self.store.transfer(from_id, from_name, to_id, to_name, currency,
                                          amount, tax, transaction_type)
            self.cache.put_committed(from_id, currency.id, receipt.from_balance, from_generation)
            self.cache.put_committed(to_id, currency.id, receipt.to_balance, to_generation)
        except LedgerError as e:
            return self._failure("transfer", from_id, currency_id, e)

        log_action(self.logger, "info",
                   f"{from_name} paid {currency.format(amount)} to {to_name}",
                   account_id=from_id, currency=currency.id, action=transaction_type,
                   extra={"to": to_id, "tax": str(tax), "transaction_id": receipt.transaction_id})
        return LedgerResult.ok(receipt)
