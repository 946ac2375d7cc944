from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import TYPE_CHECKING, Optional

from config import get_settings
from models import CurrencyCode

if TYPE_CHECKING:  # pragma: no cover
    from row_store import RowStore
    from schemas import PreferencesIn, RatesIn

logger = logging.getLogger(__name__)

RATE_NAMES = ("eur_to_cfa", "eur_to_usd")

CURRENCY_SYMBOLS = {
    CurrencyCode.eur: "€",
    CurrencyCode.usd: "$",
    CurrencyCode.cfa: "F CFA",
}

CURRENCY_DECIMALS = {
    CurrencyCode.eur: 2,
    CurrencyCode.usd: 2,
    CurrencyCode.cfa: 0,
}


@dataclass(frozen=True)
class ExchangeRates:
    eur_to_cfa: Decimal  # CFA per 1 EUR
    eur_to_usd: Decimal  # USD per 1 EUR

    def rate_for(self, currency: CurrencyCode) -> Decimal:
        if currency == CurrencyCode.cfa:
            return self.eur_to_cfa
        if currency == CurrencyCode.usd:
            return self.eur_to_usd
        return Decimal("1")

    @classmethod
    def defaults(cls) -> "ExchangeRates":
        settings = get_settings()
        return cls(
            eur_to_cfa=Decimal(settings.default_eur_to_cfa),
            eur_to_usd=Decimal(settings.default_eur_to_usd),
        )


def normalize_currency_code(value: object) -> Optional[CurrencyCode]:
    """Map user input to a supported currency; ``XOF`` is accepted for CFA."""
    if isinstance(value, CurrencyCode):
        return value
    if not isinstance(value, str):
        return None
    code = value.strip().upper()
    if code == "XOF":
        code = CurrencyCode.cfa.value
    try:
        return CurrencyCode(code)
    except ValueError:
        return None


def iso_code(currency: CurrencyCode) -> str:
    return "XOF" if currency == CurrencyCode.cfa else currency.value


def parse_rate(raw: object) -> Optional[Decimal]:
    try:
        rate = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    if not rate.is_finite() or rate <= 0:
        return None
    return rate


def convert(amount_eur: Decimal, currency: CurrencyCode, rates: ExchangeRates) -> Decimal:
    return Decimal(amount_eur) * rates.rate_for(currency)


def to_eur(amount: Decimal, currency: CurrencyCode, rates: ExchangeRates) -> Decimal:
    return Decimal(amount) / rates.rate_for(currency)


def cents_to_amount(cents: int, currency: CurrencyCode, rates: ExchangeRates) -> Decimal:
    return convert(Decimal(cents) / Decimal(100), currency, rates)


def amount_to_eur_cents(
    amount: Decimal, currency: CurrencyCode, rates: ExchangeRates
) -> int:
    eur_cents = (to_eur(amount, currency, rates) * Decimal(100)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(eur_cents)


def format_amount(value: Decimal, currency: CurrencyCode) -> str:
    decimals = CURRENCY_DECIMALS[currency]
    rounded = Decimal(value).quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)
    text = f"{rounded:,.{decimals}f}".replace(",", " ")
    return f"{text} {CURRENCY_SYMBOLS[currency]}"


def user_setting_key(user_id: object, name: str) -> str:
    return f"user:{user_id}:{name}"


def project_setting_key(project_id: object, name: str) -> str:
    return f"project:{project_id}:{name}"


class ExchangeRateService:
    """Resolves display currencies and rates from the settings table.

    Rates are read on every call so a changed setting applies to the next
    aggregation without touching stored amounts. Each rate resolves
    independently: project setting, then user setting, then the configured
    default.
    """

    def __init__(self, store: "RowStore") -> None:
        self.store = store

    def _value(self, key: str) -> Optional[str]:
        row = self.store.settings.get(key)
        return row["value"] if row else None

    def _rate(self, keys: list[str], default: Decimal) -> Decimal:
        for key in keys:
            raw = self._value(key)
            if raw is None:
                continue
            rate = parse_rate(raw)
            if rate is None:
                logger.warning(f"fx_rate_ignored: key={key} value={raw!r}")
                continue
            return rate
        return default

    def _resolve(self, keys_for) -> ExchangeRates:
        defaults = ExchangeRates.defaults()
        return ExchangeRates(
            eur_to_cfa=self._rate(keys_for("eur_to_cfa"), defaults.eur_to_cfa),
            eur_to_usd=self._rate(keys_for("eur_to_usd"), defaults.eur_to_usd),
        )

    def rates_for_user(self, user_id: object) -> ExchangeRates:
        return self._resolve(lambda name: [user_setting_key(user_id, name)])

    def rates_for_project(
        self, project_id: object, user_id: Optional[object] = None
    ) -> ExchangeRates:
        def keys(name: str) -> list[str]:
            found = [project_setting_key(project_id, name)]
            if user_id is not None:
                found.append(user_setting_key(user_id, name))
            return found

        return self._resolve(keys)

    def user_currency(self, user_id: object) -> CurrencyCode:
        raw = self._value(user_setting_key(user_id, "currency"))
        return normalize_currency_code(raw) or CurrencyCode.eur

    def _put(self, key: str, value: str) -> None:
        self.store.settings.put(
            {"key": key, "value": value, "updated_at": datetime.utcnow().isoformat()}
        )

    def set_user_preferences(self, user_id: object, data: "PreferencesIn") -> None:
        if data.currency is not None:
            self._put(user_setting_key(user_id, "currency"), data.currency.value)
        for name in RATE_NAMES:
            rate = getattr(data, name)
            if rate is not None:
                self._put(user_setting_key(user_id, name), str(rate))
        logger.info(f"preferences_saved: user_id={user_id}")

    def set_project_rates(self, project_id: object, data: "RatesIn") -> None:
        for name in RATE_NAMES:
            rate = getattr(data, name)
            if rate is not None:
                self._put(project_setting_key(project_id, name), str(rate))
        logger.info(f"project_rates_saved: project_id={project_id}")
