"""Currency -- ISO 4217 minor-unit registry used for discount rounding."""

from dataclasses import dataclass
from decimal import Decimal
from typing import ClassVar


@dataclass(frozen=True)
class CurrencyInfo:
    """Information about a single ISO 4217 currency."""

    code: str
    decimal_places: int
    name: str

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount (0.01 for USD, 1 for JPY)."""
        return Decimal(1).scaleb(-self.decimal_places)


class CurrencyRegistry:
    """Registry of ISO 4217 currencies with their decimal places.

    This is the minor-unit resolver for allocation reconciliation.  Tenants
    trading in a currency not listed here can register it at startup.
    """

    _CURRENCIES: ClassVar[dict[str, CurrencyInfo]] = {
        "USD": CurrencyInfo("USD", 2, "US Dollar"),
        "EUR": CurrencyInfo("EUR", 2, "Euro"),
        "GBP": CurrencyInfo("GBP", 2, "Pound Sterling"),
        "CHF": CurrencyInfo("CHF", 2, "Swiss Franc"),
        "CAD": CurrencyInfo("CAD", 2, "Canadian Dollar"),
        "AUD": CurrencyInfo("AUD", 2, "Australian Dollar"),
        "NZD": CurrencyInfo("NZD", 2, "New Zealand Dollar"),
        "MXN": CurrencyInfo("MXN", 2, "Mexican Peso"),
        "BRL": CurrencyInfo("BRL", 2, "Brazilian Real"),
        "INR": CurrencyInfo("INR", 2, "Indian Rupee"),
        "CNY": CurrencyInfo("CNY", 2, "Chinese Yuan"),
        "SGD": CurrencyInfo("SGD", 2, "Singapore Dollar"),
        "HKD": CurrencyInfo("HKD", 2, "Hong Kong Dollar"),
        "SEK": CurrencyInfo("SEK", 2, "Swedish Krona"),
        "NOK": CurrencyInfo("NOK", 2, "Norwegian Krone"),
        "DKK": CurrencyInfo("DKK", 2, "Danish Krone"),
        "PLN": CurrencyInfo("PLN", 2, "Polish Zloty"),
        "ZAR": CurrencyInfo("ZAR", 2, "South African Rand"),
        "AED": CurrencyInfo("AED", 2, "UAE Dirham"),
        "PHP": CurrencyInfo("PHP", 2, "Philippine Peso"),
        "IDR": CurrencyInfo("IDR", 2, "Indonesian Rupiah"),
        # Zero decimal currencies
        "JPY": CurrencyInfo("JPY", 0, "Japanese Yen"),
        "KRW": CurrencyInfo("KRW", 0, "South Korean Won"),
        "CLP": CurrencyInfo("CLP", 0, "Chilean Peso"),
        "ISK": CurrencyInfo("ISK", 0, "Icelandic Krona"),
        "VND": CurrencyInfo("VND", 0, "Vietnamese Dong"),
        "XAF": CurrencyInfo("XAF", 0, "Central African CFA Franc"),
        "XOF": CurrencyInfo("XOF", 0, "West African CFA Franc"),
        # Three decimal currencies
        "BHD": CurrencyInfo("BHD", 3, "Bahraini Dinar"),
        "JOD": CurrencyInfo("JOD", 3, "Jordanian Dinar"),
        "KWD": CurrencyInfo("KWD", 3, "Kuwaiti Dinar"),
        "OMR": CurrencyInfo("OMR", 3, "Omani Rial"),
        "TND": CurrencyInfo("TND", 3, "Tunisian Dinar"),
    }

    @classmethod
    def is_valid(cls, code: str) -> bool:
        """Check whether a currency code is registered."""
        return code.upper() in cls._CURRENCIES if code else False

    @classmethod
    def get_info(cls, code: str) -> CurrencyInfo | None:
        return cls._CURRENCIES.get(code.upper()) if code else None

    @classmethod
    def get_decimal_places(cls, code: str) -> int:
        """Decimal places for a currency; unknown codes default to 2."""
        info = cls.get_info(code)
        return info.decimal_places if info else 2

    @classmethod
    def get_minor_unit(cls, code: str) -> Decimal:
        return Decimal(1).scaleb(-cls.get_decimal_places(code))

    @classmethod
    def register(cls, code: str, decimal_places: int, name: str = "") -> None:
        """Register an additional currency."""
        if decimal_places < 0:
            raise ValueError("decimal_places cannot be negative")
        code = code.upper().strip()
        cls._CURRENCIES[code] = CurrencyInfo(code, decimal_places, name or code)
