from datetime import date
from decimal import Decimal

from carteira.services.pricing import PriceBook


def _book() -> PriceBook:
    return PriceBook.from_mapping(
        {
            "itsa4": {
                date(2024, 1, 2): "9.80",
                date(2024, 1, 31): "10.10",
                date(2024, 3, 28): "10.50",
            }
        },
        max_staleness_days=7,
    )


def test_quote_uses_last_close_on_or_before_day():
    quote = _book().quote("ITSA4", date(2024, 2, 5))

    assert quote.observed == date(2024, 1, 31)
    assert quote.price == Decimal("10.10")
    assert quote.days_off == 5
    assert not quote.stale


def test_quote_flags_stale_observations():
    quote = _book().quote("ITSA4", date(2024, 2, 29))

    assert quote.stale
    flag = quote.to_flag()
    assert flag["code"] == "PRICE_GAP"
    assert flag["observed_date"] == "2024-01-31"
    assert flag["days_off"] == 29


def test_quote_before_first_observation_falls_forward():
    quote = _book().quote("ITSA4", date(2023, 12, 29))

    assert quote.observed == date(2024, 1, 2)
    assert not quote.stale


def test_unknown_ticker_has_no_quote():
    book = _book()

    assert book.quote("BBAS3", date(2024, 1, 2)) is None
    assert not book.has_data("BBAS3")
    assert book.has_data_between("ITSA4", date(2024, 2, 1), date(2024, 3, 31))
    assert not book.has_data_between("ITSA4", date(2024, 2, 1), date(2024, 3, 27))
    assert book.coverage("itsa4") == {
        "ticker": "ITSA4",
        "first_date": "2024-01-02",
        "last_date": "2024-03-28",
        "observations": 3,
    }


def test_quote_can_refuse_later_observations():
    book = _book()

    assert book.quote("ITSA4", date(2023, 12, 29), allow_later=False) is None
    assert book.quote("ITSA4", date(2024, 1, 2), allow_later=False).price == Decimal("9.80")
    assert book.first_date("itsa4") == date(2024, 1, 2)
    assert book.first_date("BBAS3") is None
