"""
Two-step pay handshake.

A pay request is validated and parked per initiator until it is confirmed,
cancelled, superseded by a newer request or expires. No funds move before
confirmation, so expiring a request has no store-side effect. Expiry is
checked on confirmation and by a periodic sweep.
"""

import threading
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from .context import LedgerContext
from .currency import SAFETY_CEILING
from .errors import (
    AccountNotFoundError, ErrorCode, InsufficientFundsError, InvalidAmountError,
    LedgerError, LedgerResult, OverflowAmountError
)
from .ledger import LedgerEngine, TransactionTypes
from .logging_config import get_logger, log_action


@dataclass(frozen=True)
class PendingTransfer:
    """Validated pay request awaiting confirmation"""
    token: str
    initiator: str
    initiator_name: str
    target: str
    target_name: str
    currency_id: str
    amount: Decimal
    tax: Decimal
    deadline: float

    @property
    def total(self) -> Decimal:
        return self.amount + self.tax

    def is_expired(self, now: float) -> bool:
        return now >= self.deadline


class PendingTransferBook:
    """Thread-safe expiring map of initiator id -> PendingTransfer"""

    def __init__(self, timeout: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout
        self.clock = clock
        self._pending: Dict[str, PendingTransfer] = {}
        self._lock = threading.Lock()

    def deadline(self) -> float:
        return self.clock() + self.timeout

    def put(self, transfer: PendingTransfer) -> Optional[PendingTransfer]:
        """Store a request, returning the one it superseded"""
        with self._lock:
            previous = self._pending.get(transfer.initiator)
            self._pending[transfer.initiator] = transfer
            return previous

    def get(self, initiator: str) -> Optional[PendingTransfer]:
        with self._lock:
            return self._pending.get(initiator)

    def pop_valid(self, initiator: str,
                  now: Optional[float] = None) -> Tuple[Optional[PendingTransfer], ErrorCode]:
        """
        Remove and return the initiator's request.

        Returns ``(transfer, OK)``, ``(None, NOT_PENDING)`` or
        ``(expired_transfer, EXPIRED)``; an expired request is consumed too.
        """
        now = self.clock() if now is None else now
        with self._lock:
            transfer = self._pending.pop(initiator, None)
        if transfer is None:
            return None, ErrorCode.NOT_PENDING
        if transfer.is_expired(now):
            return transfer, ErrorCode.EXPIRED
        return transfer, ErrorCode.OK

    def discard(self, initiator: str) -> bool:
        with self._lock:
            return self._pending.pop(initiator, None) is not None

    def sweep(self, now: Optional[float] = None) -> List[PendingTransfer]:
        """Drop every expired request and return them"""
        now = self.clock() if now is None else now
        with self._lock:
            expired = [t for t in self._pending.values() if t.is_expired(now)]
            for transfer in expired:
                del self._pending[transfer.initiator]
        return expired

    def clear(self) -> None:
        with self._lock:
            self._pending.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


class PaymentService:
    """
    Player-to-player payments with confirmation.

    ``request_transfer`` runs every check a transfer can fail up front so
    the player sees problems before confirming; ``confirm_transfer`` runs
    the real atomic transfer, which re-checks funds inside the store
    transaction.
    """

    def __init__(self, engine: LedgerEngine, context: LedgerContext,
                 book: Optional[PendingTransferBook] = None):
        self.engine = engine
        self.context = context
        if book is None:
            book = PendingTransferBook(context.settings.pay_confirm_timeout_seconds)
        self.book = book
        self.logger = get_logger("economy.payments")
        self._sweeper: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def request_transfer(self, initiator: str, initiator_name: str, target: str,
                         target_name: Optional[str], amount,
                         currency_id: Optional[str] = None) -> LedgerResult:
        """Validate a payment and park it; ``value`` is the PendingTransfer"""
        try:
            currency = self.engine.currency(currency_id)
            if not currency.pay_enabled:
                raise LedgerError(f"Payments are disabled for {currency.id}",
                                  ErrorCode.PAY_DISABLED)

            amount = self.engine.normalize_amount(currency, amount)
            if amount < currency.pay_min_amount:
                raise InvalidAmountError(
                    f"Minimum payment is {currency.format(currency.pay_min_amount)}"
                )
            if currency.has_pay_max and amount > currency.pay_max_amount:
                raise InvalidAmountError(
                    f"Maximum payment is {currency.format(currency.pay_max_amount)}"
                )

            if initiator == target:
                raise LedgerError("Cannot pay yourself", ErrorCode.SELF_TRANSFER)
            if not self.context.store.has_account(target):
                raise AccountNotFoundError(target)
            if target_name is None:
                target_name = self.context.store.get_username(target) or target

            tax = currency.tax_for(amount)
            total = amount + tax
            if total > SAFETY_CEILING:
                raise OverflowAmountError(f"Payment total {total} exceeds the safety ceiling")

            balance = self.engine.get_balance_or_starter(initiator, currency.id)
            if not balance:
                return balance
            if balance.value - total < currency.min_balance:
                raise InsufficientFundsError(total, balance.value - currency.min_balance)
        except LedgerError as e:
            log_action(self.logger, "debug", f"Pay request rejected: {e.message}",
                       account_id=initiator, currency=currency_id, action="pay_request",
                       extra={"code": e.code.value})
            return LedgerResult.from_error(e)

        pending = PendingTransfer(
            token=str(uuid.uuid4()),
            initiator=initiator,
            initiator_name=initiator_name,
            target=target,
            target_name=target_name,
            currency_id=currency.id,
            amount=amount,
            tax=tax,
            deadline=self.book.deadline(),
        )
        if self.book.put(pending) is not None:
            self.logger.debug("Pay request from %s superseded an earlier one", initiator)
        log_action(self.logger, "info",
                   f"Pay request {currency.format(amount)} from {initiator_name} to {target_name}",
                   account_id=initiator, currency=currency.id, action="pay_request",
                   extra={"token": pending.token, "tax": str(tax)})
        return LedgerResult.ok(pending)

    def confirm_transfer(self, initiator: str) -> LedgerResult:
        """Execute the initiator's pending payment; the request is consumed either way"""
        pending, code = self.book.pop_valid(initiator)
        if code is ErrorCode.NOT_PENDING:
            return LedgerResult.fail(code, "No pending payment")
        if code is ErrorCode.EXPIRED:
            self.logger.info("Pay request %s from %s expired before confirmation",
                             pending.token, initiator)
            return LedgerResult.fail(code, "Payment request expired")

        return self.engine.transfer(
            pending.initiator, pending.initiator_name,
            pending.target, pending.target_name,
            pending.amount, pending.tax, pending.currency_id,
            TransactionTypes.PAY,
        )

    def cancel_transfer(self, initiator: str) -> bool:
        cancelled = self.book.discard(initiator)
        if cancelled:
            self.logger.debug("Cancelled pay request from %s", initiator)
        return cancelled

    def pending_for(self, initiator: str) -> Optional[PendingTransfer]:
        return self.book.get(initiator)

    def sweep_expired(self) -> int:
        expired = self.book.sweep()
        if expired:
            self.logger.debug("Swept %d expired pay request(s)", len(expired))
        return len(expired)

    def start_sweeper(self, interval: Optional[float] = None) -> None:
        """Start the background expiry sweep (daemon thread)"""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        if interval is None:
            interval = self.context.settings.pending_sweep_interval_seconds
        interval = max(0.01, interval)
        self._stop_event.clear()

        def sweep_loop():
            while not self._stop_event.wait(interval):
                try:
                    self.sweep_expired()
                except Exception:
                    self.logger.exception("Pending payment sweep failed")

        thread = threading.Thread(target=sweep_loop, name="economy-pay-sweeper")
        thread.daemon = True
        thread.start()
        self._sweeper = thread
        self.logger.info("Pay request sweeper started (every %.2fs)", interval)

    def stop_sweeper(self, timeout: float = 5.0) -> None:
        if self._sweeper is None:
            return
        self._stop_event.set()
        self._sweeper.join(timeout)
        self._sweeper = None
        self.logger.info("Pay request sweeper stopped")
