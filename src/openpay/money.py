"""Amounts in integer minor units, tagged with asset code and scale."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from .errors import AssetMismatchError, ValidationError


@dataclass(frozen=True)
class Money:
    """An integer amount of minor units of one asset."""

    asset_code: str
    asset_scale: int
    value: int

    @property
    def asset(self) -> str:
        return f"{self.asset_code}/{self.asset_scale}"

    def same_asset(self, other: "Money") -> bool:
        return self.asset_code == other.asset_code and self.asset_scale == other.asset_scale

    def _check(self, other: "Money") -> None:
        if not self.same_asset(other):
            raise AssetMismatchError(self.asset, other.asset)

    def __add__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.asset_code, self.asset_scale, self.value + other.value)

    def __sub__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.asset_code, self.asset_scale, self.value - other.value)

    def with_value(self, value: int) -> "Money":
        return Money(self.asset_code, self.asset_scale, int(value))

    def to_dict(self) -> dict:
        """Wire form: the protocol carries values as decimal strings."""
        return {
            "assetCode": self.asset_code,
            "assetScale": self.asset_scale,
            "value": str(self.value),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Money":
        try:
            return cls(
                asset_code=str(data["assetCode"]),
                asset_scale=int(data["assetScale"]),
                value=int(str(data["value"])),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed amount: {data!r}") from e


def parse_minor_units(value: Decimal | int | str) -> int:
    """Parse an integral minor-unit amount; fractional values are rejected."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid amount: {value!r}")
    try:
        dec = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValidationError(f"Invalid amount: {value!r}") from e
    if not dec.is_finite() or dec != dec.to_integral_value():
        raise ValidationError(f"Amount must be a whole number of minor units: {value!r}")
    return int(dec)


def parse_positive_minor_units(value: Decimal | int | str, label: str = "amount") -> int:
    amount = parse_minor_units(value)
    if amount <= 0:
        raise ValidationError(f"Valid {label} is required (got {value!r})")
    return amount


def to_major_units(money: Money) -> Decimal:
    """Convert minor units to a Decimal in major units (display only)."""
    return Decimal(money.value).scaleb(-money.asset_scale)


def format_money(money: Money) -> str:
    """Format a Money value as e.g. '12.34 USD'."""
    return f"{to_major_units(money):.{max(money.asset_scale, 0)}f} {money.asset_code}"
