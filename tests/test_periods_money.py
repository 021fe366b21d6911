from datetime import date, datetime
from decimal import Decimal

from money import allocate, normalize_note, round_money, to_money_string, to_number
from periods import (
    Period,
    create_month_range,
    previous_period,
    resolve_period,
    shift_period,
)


def test_resolve_period_defaults_to_current_month() -> None:
    today = date(2025, 3, 15)
    assert resolve_period(today=today) == Period(month=2, year=2025)
    assert resolve_period(0, 2024, today=today) == Period(month=0, year=2024)
    assert resolve_period(month=7, today=today) == Period(month=7, year=2025)


def test_shift_period_wraps_years() -> None:
    assert previous_period(Period(month=0, year=2025)) == Period(month=11, year=2024)
    assert shift_period(Period(month=10, year=2024), 3) == Period(month=1, year=2025)
    assert shift_period(Period(month=1, year=2025), -14) == Period(month=11, year=2023)


def test_month_range_covers_whole_month() -> None:
    start, end = create_month_range(Period(month=1, year=2024))
    assert start == datetime(2024, 2, 1)
    assert end == datetime(2024, 2, 29, 23, 59, 59, 999000)

    start, end = create_month_range(Period(month=11, year=2024))
    assert start == datetime(2024, 12, 1)
    assert end == datetime(2024, 12, 31, 23, 59, 59, 999000)


def test_to_number_treats_garbage_as_zero() -> None:
    assert to_number(None) == 0
    assert to_number("abc") == 0
    assert to_number(float("nan")) == 0
    assert to_number(True) == 0
    assert to_number(" 12.5 ") == Decimal("12.5")
    assert to_number(0.1) == Decimal("0.1")


def test_rounding_happens_after_summation() -> None:
    total = to_number("10.00") + to_number(20.005) + to_number(5)
    assert round_money(total) == Decimal("35.01")
    assert round_money("2.345") == Decimal("2.35")
    assert to_money_string(10) == "10.00"


def test_allocate_shares_sum_to_amount() -> None:
    shares = allocate(Decimal("100"), [1, 1, 1])
    assert shares == [Decimal("33.34"), Decimal("33.33"), Decimal("33.33")]
    assert sum(shares) == Decimal("100.00")

    assert allocate(Decimal("0.05"), [3, 1]) == [Decimal("0.04"), Decimal("0.01")]
    assert allocate(10, [0, 0]) == [Decimal("5.00"), Decimal("5.00")]
    assert allocate(10, []) == []


def test_normalize_note() -> None:
    assert normalize_note("  rent ") == "rent"
    assert normalize_note("   ") is None
    assert normalize_note(None) is None
