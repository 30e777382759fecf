"""
Ledger error codes, exceptions and structured results.

Internals raise LedgerError subclasses; the engine and service boundary
converts them into LedgerResult values so callers always receive a
success flag plus a reason code instead of an exception.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorCode(Enum):
    """Reason codes reported by ledger operations"""
    OK = "ok"
    UNKNOWN_CURRENCY = "unknown_currency"
    INVALID_AMOUNT = "invalid_amount"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    BALANCE_OUT_OF_BOUNDS = "balance_out_of_bounds"
    OVERFLOW = "overflow"
    ACCOUNT_NOT_FOUND = "account_not_found"
    NOT_PENDING = "not_pending"
    EXPIRED = "expired"
    STORE_FAILURE = "store_failure"
    INVALID_PAGE = "invalid_page"
    PAY_DISABLED = "pay_disabled"
    SELF_TRANSFER = "self_transfer"


class LedgerError(Exception):
    """Base ledger error."""

    code = ErrorCode.STORE_FAILURE

    def __init__(self, message: str, code: Optional[ErrorCode] = None) -> None:
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(message)


class UnknownCurrencyError(LedgerError):
    code = ErrorCode.UNKNOWN_CURRENCY

    def __init__(self, currency_id: str) -> None:
        super().__init__(f"Unknown currency: {currency_id}")
        self.currency_id = currency_id


class InvalidAmountError(LedgerError):
    code = ErrorCode.INVALID_AMOUNT


class InsufficientFundsError(LedgerError):
    code = ErrorCode.INSUFFICIENT_FUNDS

    def __init__(self, required: Any, available: Any) -> None:
        super().__init__(f"Insufficient funds: required {required}, available {available}")
        self.required = required
        self.available = available


class BalanceOutOfBoundsError(LedgerError):
    code = ErrorCode.BALANCE_OUT_OF_BOUNDS


class OverflowAmountError(LedgerError):
    code = ErrorCode.OVERFLOW


class AccountNotFoundError(LedgerError):
    code = ErrorCode.ACCOUNT_NOT_FOUND

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class StoreError(LedgerError):
    """I/O or constraint failure inside the durable store"""
    code = ErrorCode.STORE_FAILURE


@dataclass(frozen=True)
class LedgerResult:
    """
    Outcome of a ledger operation.

    ``value`` holds the operation's payload on success: the balance for
    balance reads and writes (None meaning "not set"), a TransferReceipt
    for transfers, a LeaderboardPage for leaderboard queries, and so on.
    """
    code: ErrorCode
    message: str = ""
    value: Any = None

    @property
    def success(self) -> bool:
        return self.code is ErrorCode.OK

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(cls, value: Any = None, message: str = "") -> 'LedgerResult':
        return cls(ErrorCode.OK, message, value)

    @classmethod
    def fail(cls, code: ErrorCode, message: str = "") -> 'LedgerResult':
        return cls(code, message or code.value)

    @classmethod
    def from_error(cls, error: LedgerError) -> 'LedgerResult':
        return cls(error.code, error.message)
