"""
Account Lifecycle Module

Handles accounts joining and leaving the host, starter balance grants and
bulk administrative balance operations across every known account.
"""

from typing import Any, Callable, List, Optional

from .context import LedgerContext
from .currency import Currency
from .errors import ErrorCode, LedgerError, LedgerResult
from .ledger import LedgerEngine
from .logging_config import get_logger, log_action
from .payments import PaymentService


class AccountTransactionTypes:
    """Transaction type tags written by lifecycle and bulk operations"""
    STARTER = "STARTER"
    NEW_CURRENCY = "NEW_CURRENCY"
    ADMIN_GIVE_ALL = "ADMIN_GIVE_ALL"
    ADMIN_SET_ALL = "ADMIN_SET_ALL"
    ADMIN_REMOVE_ALL = "ADMIN_REMOVE_ALL"
    RESET_ALL = "RESET_ALL"


class AccountService:
    """
    Account lifecycle and bulk admin operations.

    Starter balances are granted eagerly on join so leaderboards include
    new accounts; reads of an account that never joined still fall back
    to the starter balance through the engine.
    """

    def __init__(self, engine: LedgerEngine, context: LedgerContext,
                 payments: Optional[PaymentService] = None):
        self.engine = engine
        self.context = context
        self.payments = payments
        self.logger = get_logger("economy.accounts")

    def exists(self, account_id: str) -> LedgerResult:
        try:
            return LedgerResult.ok(self.context.store.has_account(account_id))
        except LedgerError as e:
            return LedgerResult.from_error(e)

    def create(self, account_id: str, username: str) -> LedgerResult:
        """Create an account row; idempotent"""
        try:
            return LedgerResult.ok(self.context.store.create_account(account_id, username))
        except LedgerError as e:
            self.logger.error("Failed to create account %s: %s", account_id, e.message,
                              exc_info=e)
            return LedgerResult.from_error(e)

    def find(self, username: str) -> LedgerResult:
        """Account id last seen with ``username``; ``value`` None when unknown"""
        try:
            return LedgerResult.ok(self.context.store.find_account(username))
        except LedgerError as e:
            return LedgerResult.from_error(e)

    def on_join(self, account_id: str, username: str) -> LedgerResult:
        """
        Register an account arriving on the host.

        New accounts get every currency's starter balance (STARTER);
        returning accounts get it only for currencies added since their
        last visit (NEW_CURRENCY). ``value`` lists the granted currency ids.
        """
        try:
            is_new = not self.context.store.has_account(account_id)
            if is_new:
                self.context.store.create_account(account_id, username)
                log_action(self.logger, "info", f"Created new account for {username}",
                           account_id=account_id, action="account_created")
            else:
                self.context.store.touch_account(account_id, username)
        except LedgerError as e:
            self.logger.error("Failed to register account %s: %s", account_id, e.message,
                              exc_info=e)
            return LedgerResult.from_error(e)

        transaction_type = (AccountTransactionTypes.STARTER if is_new
                            else AccountTransactionTypes.NEW_CURRENCY)
        granted: List[str] = []
        for currency in self.context.registry.all():
            result = self.engine.grant_starter(account_id, username, currency.id,
                                               transaction_type)
            if result:
                if result.value is not None:
                    granted.append(currency.id)
            else:
                self.logger.warning("Could not grant starter %s to %s: %s",
                                    currency.id, username, result.message)
        return LedgerResult.ok(granted)

    def on_disconnect(self, account_id: str) -> None:
        """Forget cached balances and any pending payment for a leaving account"""
        self.context.cache.invalidate(account_id)
        if self.payments is not None:
            self.payments.cancel_transfer(account_id)
        self.logger.debug("Account %s disconnected", account_id)

    # ------------------------------------------------------------------
    # Bulk admin operations
    # ------------------------------------------------------------------

    def _for_all(self, action: str, currency_id: Optional[str],
                 apply: Callable[[str, str, Currency], LedgerResult]) -> LedgerResult:
        try:
            currency = self.engine.currency(currency_id)
            account_ids = self.context.store.all_account_ids()
        except LedgerError as e:
            return LedgerResult.from_error(e)

        updated = 0
        for account_id in account_ids:
            try:
                username = self.context.store.get_username(account_id) or account_id
            except LedgerError as e:
                return LedgerResult.from_error(e)
            result = apply(account_id, username, currency)
            if result:
                updated += 1
            elif result.code is ErrorCode.STORE_FAILURE:
                return result

        log_action(self.logger, "info", f"{action} updated {updated} of {len(account_ids)} accounts",
                   currency=currency.id, action=action)
        return LedgerResult.ok(updated)

    def _checked(self, currency_id: Optional[str], amount: Any,
                 positive: bool = True) -> LedgerResult:
        try:
            currency = self.engine.currency(currency_id)
            return LedgerResult.ok(self.engine.normalize_amount(currency, amount, positive))
        except LedgerError as e:
            return LedgerResult.from_error(e)

    def give_all(self, amount: Any, currency_id: Optional[str] = None) -> LedgerResult:
        """Credit every account; accounts that would exceed max_balance are skipped"""
        checked = self._checked(currency_id, amount)
        if not checked:
            return checked
        amount = checked.value
        return self._for_all(
            AccountTransactionTypes.ADMIN_GIVE_ALL, currency_id,
            lambda account_id, username, currency: self.engine.add_balance(
                account_id, username, amount, currency.id,
                AccountTransactionTypes.ADMIN_GIVE_ALL),
        )

    def set_all(self, amount: Any, currency_id: Optional[str] = None) -> LedgerResult:
        checked = self._checked(currency_id, amount, positive=False)
        if not checked:
            return checked
        amount = checked.value
        currency = self.engine.currency(currency_id)
        if not currency.is_valid_balance(amount):
            return LedgerResult.fail(ErrorCode.BALANCE_OUT_OF_BOUNDS,
                                     f"Balance {amount} is outside the bounds of {currency.id}")
        return self._for_all(
            AccountTransactionTypes.ADMIN_SET_ALL, currency_id,
            lambda account_id, username, currency: self.engine.set_balance(
                account_id, username, amount, currency.id,
                AccountTransactionTypes.ADMIN_SET_ALL),
        )

    def remove_all(self, amount: Any, currency_id: Optional[str] = None) -> LedgerResult:
        """Debit every account that can afford it"""
        checked = self._checked(currency_id, amount)
        if not checked:
            return checked
        amount = checked.value
        return self._for_all(
            AccountTransactionTypes.ADMIN_REMOVE_ALL, currency_id,
            lambda account_id, username, currency: self.engine.remove_balance(
                account_id, username, amount, currency.id,
                AccountTransactionTypes.ADMIN_REMOVE_ALL),
        )

    def reset_all(self, currency_id: Optional[str] = None) -> LedgerResult:
        return self._for_all(
            AccountTransactionTypes.RESET_ALL, currency_id,
            lambda account_id, username, currency: self.engine.reset_balance(
                account_id, username, currency.id, AccountTransactionTypes.RESET_ALL),
        )
