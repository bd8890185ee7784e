from datetime import date

import pytest

from periods import current_month, parse_month_key, trailing_months


def test_parse_month_key() -> None:
    assert parse_month_key("2024-02") == (2024, 2)
    assert parse_month_key("1999-12") == (1999, 12)
    for bad in ("2024-13", "2024-00", "2024-1", "24-01", "2024/01", ""):
        with pytest.raises(ValueError):
            parse_month_key(bad)


def test_current_month_is_half_open() -> None:
    period = current_month(date(2024, 2, 29))
    assert period.slug == "2024-02"
    assert period.start == date(2024, 2, 1)
    assert period.end == date(2024, 3, 1)


def test_trailing_months_cross_year_boundary() -> None:
    slugs = [p.slug for p in trailing_months(date(2024, 2, 10), 4)]
    assert slugs == ["2023-11", "2023-12", "2024-01", "2024-02"]
