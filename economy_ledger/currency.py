"""
Multi-Currency Support Module

Currency definitions loaded from configuration and the registry that serves
them. Amounts are Decimal throughout; NEVER uses float for monetary values.
A registry is immutable once built, reloading means building a new one.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
import sys
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidAmountError, OverflowAmountError
from .logging_config import get_logger

# Set global decimal context for financial precision
getcontext().prec = 28

# max_balance / pay_max_amount value meaning "no upper bound"
UNBOUNDED = Decimal("-1")

# Largest amount or balance the ledger accepts; balances are ordered as
# REAL in SQL, so stay well inside the double range
SAFETY_CEILING = Decimal(sys.float_info.max) / 2

logger = get_logger("economy.currency")


@dataclass(frozen=True)
class Currency:
    """Immutable currency definition with limits and pay rules"""
    id: str
    display_name: str
    symbol: str = "$"
    name_singular: str = "Dollar"
    name_plural: str = "Dollars"
    format_template: str = "%amount% %symbol%"
    decimal_places: int = 2
    starter_balance: Decimal = Decimal("1000")
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = UNBOUNDED
    pay_enabled: bool = True
    pay_min_amount: Decimal = Decimal("1")
    pay_max_amount: Decimal = UNBOUNDED
    pay_tax_percentage: Decimal = Decimal("0")
    is_default: bool = False

    @property
    def has_max_balance(self) -> bool:
        return self.max_balance != UNBOUNDED

    @property
    def has_pay_max(self) -> bool:
        return self.pay_max_amount != UNBOUNDED

    def quantize(self, amount: Decimal) -> Decimal:
        """Round to this currency's precision"""
        try:
            return amount.quantize(Decimal('0.1') ** self.decimal_places, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            # More digits than the decimal context can hold
            raise OverflowAmountError(f"Amount {amount} is too large for {self.id}")

    def format(self, amount: Decimal) -> str:
        """Formats an amount with this currency's template"""
        formatted = f"{to_decimal(amount):.{self.decimal_places}f}"
        return self.format_template.replace("%amount%", formatted).replace("%symbol%", self.symbol)

    def is_valid_balance(self, amount: Decimal) -> bool:
        """Check that a balance respects min/max bounds"""
        if amount < self.min_balance:
            return False
        return not self.has_max_balance or amount <= self.max_balance

    def tax_for(self, amount: Decimal) -> Decimal:
        """Pay tax charged to the sender on top of ``amount``"""
        return self.quantize(amount * self.pay_tax_percentage)

    def __str__(self) -> str:
        return f"{self.display_name} ({self.id})"


def to_decimal(value: Any) -> Decimal:
    """
    Convert a caller-supplied amount into a finite Decimal.

    Floats go through ``str`` so 0.1 stays 0.1 rather than its binary
    expansion.

    Raises:
        InvalidAmountError: If the value is not a number or is NaN/infinite
    """
    if isinstance(value, bool):
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidAmountError(f"Invalid amount: {value!r}")
    if not result.is_finite():
        raise InvalidAmountError(f"Amount must be finite: {value!r}")
    return result


class PaySettings(BaseModel):
    """``pay:`` section of a currency definition"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    enabled: bool = True
    min_amount: Decimal = Field(Decimal("1"), alias="min-amount")
    max_amount: Decimal = Field(UNBOUNDED, alias="max-amount")
    tax_percentage: Decimal = Field(Decimal("0"), alias="tax-percentage", ge=0, le=1)

    @field_validator("min_amount", "max_amount", "tax_percentage", mode="before")
    @classmethod
    def _float_via_str(cls, value):
        return str(value) if isinstance(value, float) else value


class CurrencyDefinition(BaseModel):
    """
    Validated shape of one entry in the currency configuration table.

    Keys follow the host's YAML style (``display-name``, ``starter-balance``
    ...); snake_case names are accepted as well.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    display_name: Optional[str] = Field(None, alias="display-name")
    symbol: str = "$"
    name_singular: str = Field("Dollar", alias="name-singular")
    name_plural: str = Field("Dollars", alias="name-plural")
    format: str = "%amount% %symbol%"
    decimal_places: int = Field(2, alias="decimal-places", ge=0, le=8)
    starter_balance: Decimal = Field(Decimal("1000"), alias="starter-balance")
    min_balance: Decimal = Field(Decimal("0"), alias="min-balance")
    max_balance: Decimal = Field(UNBOUNDED, alias="max-balance")
    pay: PaySettings = Field(default_factory=PaySettings)
    default: bool = False

    @field_validator("starter_balance", "min_balance", "max_balance", mode="before")
    @classmethod
    def _float_via_str(cls, value):
        return str(value) if isinstance(value, float) else value

    def to_currency(self, currency_id: str) -> Currency:
        return Currency(
            id=currency_id.lower(),
            display_name=self.display_name or currency_id,
            symbol=self.symbol,
            name_singular=self.name_singular,
            name_plural=self.name_plural,
            format_template=self.format,
            decimal_places=self.decimal_places,
            starter_balance=self.starter_balance,
            min_balance=self.min_balance,
            max_balance=self.max_balance,
            pay_enabled=self.pay.enabled,
            pay_min_amount=self.pay.min_amount,
            pay_max_amount=self.pay.max_amount,
            pay_tax_percentage=self.pay.tax_percentage,
            is_default=self.default,
        )


def fallback_currency() -> Currency:
    """Built-in currency used when configuration yields nothing usable"""
    return Currency(
        id="lira",
        display_name="Lira",
        symbol="₺",
        name_singular="Lira",
        name_plural="Lira",
        format_template="%amount% %symbol%",
        decimal_places=2,
        starter_balance=Decimal("100"),
        min_balance=Decimal("0"),
        max_balance=UNBOUNDED,
        pay_enabled=True,
        pay_min_amount=Decimal("1"),
        pay_max_amount=UNBOUNDED,
        pay_tax_percentage=Decimal("0"),
        is_default=True,
    )


class CurrencyRegistry:
    """
    Read-only set of currencies with exactly one default.

    Build instances with ``CurrencyRegistry.load``; the constructor trusts
    its arguments.
    """

    def __init__(self, currencies: Iterable[Currency], default_id: str,
                 diagnostics: Optional[List[str]] = None):
        self._currencies: Dict[str, Currency] = {c.id.lower(): c for c in currencies}
        self._default_id = default_id.lower()
        self.diagnostics: List[str] = list(diagnostics or [])

    @classmethod
    def load(cls, config: Optional[Mapping[str, Any]]) -> 'CurrencyRegistry':
        """
        Build a registry from a currency table keyed by currency id.

        Never raises: invalid entries are skipped, a missing default is
        resolved to the first loaded currency, and an empty result falls
        back to the built-in currency. Every resolution is logged and kept
        in ``diagnostics``.
        """
        diagnostics: List[str] = []

        def note(message: str) -> None:
            diagnostics.append(message)
            logger.warning(message)

        if not isinstance(config, Mapping) or not config:
            note("No currencies found in config, creating default currency")
            return cls._with_fallback(diagnostics)

        loaded: Dict[str, Currency] = {}
        default_id: Optional[str] = None

        for raw_id, section in config.items():
            currency_id = str(raw_id).strip().lower()
            if not currency_id:
                note("Skipping currency with empty id")
                continue
            if currency_id in loaded:
                note(f"Duplicate currency id '{currency_id}', keeping the first definition")
                continue
            if not isinstance(section, Mapping):
                note(f"Currency '{raw_id}' has no settings section, skipping")
                continue
            try:
                currency = CurrencyDefinition.model_validate(dict(section)).to_currency(currency_id)
            except ValidationError as e:
                note(f"Failed to load currency '{raw_id}': {e.error_count()} invalid field(s)")
                logger.debug("Currency '%s' validation errors: %s", raw_id, e)
                continue

            loaded[currency_id] = currency
            if currency.is_default:
                if default_id is None:
                    default_id = currency_id
                else:
                    note(f"Multiple default currencies found, using first one: {default_id}")
            logger.info("Loaded currency: %s (%s)%s", currency_id, currency.display_name,
                        " [DEFAULT]" if currency.is_default else "")

        if not loaded:
            note("No valid currencies loaded, creating default currency")
            return cls._with_fallback(diagnostics)

        if default_id is None:
            default_id = next(iter(loaded))
            note(f"No default currency set, using first currency as default: {default_id}")

        logger.info("Currency loading complete: %d currencies loaded, default %s",
                    len(loaded), default_id)
        return cls(loaded.values(), default_id, diagnostics)

    @classmethod
    def _with_fallback(cls, diagnostics: List[str]) -> 'CurrencyRegistry':
        currency = fallback_currency()
        logger.info("Created default currency: %s", currency.id)
        return cls([currency], currency.id, diagnostics)

    def get(self, currency_id: Optional[str]) -> Optional[Currency]:
        if currency_id is None:
            return None
        return self._currencies.get(currency_id.lower())

    def default(self) -> Currency:
        """The default currency; never None"""
        currency = self._currencies.get(self._default_id)
        if currency is None:
            logger.critical("Default currency is missing, creating emergency currency")
            currency = fallback_currency()
            self._currencies.setdefault(currency.id, currency)
            self._default_id = currency.id
        return currency

    def resolve(self, currency_id: Optional[str]) -> Optional[Currency]:
        """``get`` that maps None to the default currency"""
        if currency_id is None:
            return self.default()
        return self.get(currency_id)

    def all(self) -> List[Currency]:
        return list(self._currencies.values())

    def ids(self) -> List[str]:
        return list(self._currencies.keys())

    def exists(self, currency_id: Optional[str]) -> bool:
        return currency_id is not None and currency_id.lower() in self._currencies

    def __len__(self) -> int:
        return len(self._currencies)

    def __contains__(self, currency_id: object) -> bool:
        return isinstance(currency_id, str) and self.exists(currency_id)
