from decimal import Decimal

from pulsebot.formatting import config_decimals, format_price, format_units, render_template


def test_format_units_groups_and_trims() -> None:
    assert format_units("1000000000000000000000", 18) == "1,000"
    assert format_units("1234567890000000000000000", 18) == "1,234,567.89"
    assert format_units(1500, 3) == "1.5"
    assert format_units("0", 18) == "0"
    assert format_units(123456789, 0) == "123,456,789"


def test_format_units_rounds_to_three_places() -> None:
    assert format_units(1234567, 6) == "1.235"
    assert format_units(1, 18) == "0"


def test_config_decimals_defaults() -> None:
    assert config_decimals(None) == 18
    assert config_decimals({}) == 18
    assert config_decimals({"decimals": None}) == 18
    assert config_decimals({"decimals": 6}) == 6
    assert config_decimals({"decimals": "8"}) == 8
    assert config_decimals({"decimals": 0}) == 0
    assert config_decimals({"token1_decimals": 6}, "token1_decimals") == 6


def test_format_price() -> None:
    assert format_price(Decimal(1500)) == "1500.00"
    assert format_price(Decimal("0.005")) == "0.01"
    assert format_price(2.5) == "2.50"


def test_render_template_is_literal() -> None:
    assert render_template("Total: {result}", "0x2a") == "Total: 0x2a"
    assert render_template("{result}/{result}", "1") == "1/1"
    assert render_template("{other} {result}", "x") == "{other} x"
    assert render_template("no placeholder", "x") == "no placeholder"
