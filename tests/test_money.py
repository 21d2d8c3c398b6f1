"""Tests for minor-unit amounts."""

from decimal import Decimal

import pytest

from openpay.errors import AssetMismatchError, ValidationError
from openpay.money import (
    Money,
    format_money,
    parse_minor_units,
    parse_positive_minor_units,
    to_major_units,
)


USD = Money("USD", 2, 0)


class TestMoney:
    def test_add_same_asset(self):
        total = USD.with_value(150) + USD.with_value(250)
        assert total == Money("USD", 2, 400)

    def test_add_different_asset_rejected(self):
        with pytest.raises(AssetMismatchError) as exc:
            USD.with_value(1) + Money("EUR", 2, 1)
        assert "USD/2" in str(exc.value)
        assert "EUR/2" in str(exc.value)

    def test_different_scale_is_different_asset(self):
        assert not USD.same_asset(Money("USD", 9, 0))

    def test_wire_form_uses_string_values(self):
        data = USD.with_value(1234).to_dict()
        assert data == {"assetCode": "USD", "assetScale": 2, "value": "1234"}
        assert Money.from_dict(data) == Money("USD", 2, 1234)

    def test_from_dict_accepts_integer_value(self):
        assert Money.from_dict({"assetCode": "EUR", "assetScale": 2, "value": 50}).value == 50

    def test_from_dict_malformed(self):
        with pytest.raises(ValueError, match="Malformed amount"):
            Money.from_dict({"assetCode": "USD", "value": "1"})


class TestParsing:
    @pytest.mark.parametrize("raw,expected", [
        ("1000", 1000),
        (" 42 ", 42),
        (7, 7),
        (Decimal("15000"), 15000),
        ("12.00", 12),
        ("0", 0),
    ])
    def test_parse_minor_units(self, raw, expected):
        assert parse_minor_units(raw) == expected

    @pytest.mark.parametrize("raw", ["abc", "", "12.5", "NaN", "Infinity", True])
    def test_parse_minor_units_rejects(self, raw):
        with pytest.raises(ValidationError):
            parse_minor_units(raw)

    @pytest.mark.parametrize("raw", ["0", "-5", -1])
    def test_positive_rejects_non_positive(self, raw):
        with pytest.raises(ValidationError, match="Valid amount"):
            parse_positive_minor_units(raw)

    def test_positive_uses_label(self):
        with pytest.raises(ValidationError, match="total budget"):
            parse_positive_minor_units("0", "total budget")


class TestFormatting:
    def test_major_units(self):
        assert to_major_units(Money("USD", 2, 1234)) == Decimal("12.34")

    def test_format_money(self):
        assert format_money(Money("USD", 2, 1234)) == "12.34 USD"
        assert format_money(Money("JPY", 0, 500)) == "500 JPY"
        assert format_money(Money("EUR", 2, 5)) == "0.05 EUR"
