import pytest

from creditledger.core.exceptions import BadRequestError
from creditledger.services import pricing


@pytest.mark.parametrize(
    "operation,cost",
    [
        ("SPREAD:SINGLE", 1),
        ("three-card", 3),
        ("FIVE_CARD", 5),
        ("spread:celtic-cross", 10),
        ("Horseshoe", 7),
        ("FOLLOW_UP", 1),
        ("clarification", 1),
    ],
)
def test_cost_of(operation, cost):
    assert pricing.cost_of(operation) == cost


def test_cost_of_unknown_operation():
    with pytest.raises(BadRequestError):
        pricing.cost_of("SPREAD:ZODIAC")


def test_reading_cost_surcharges():
    assert pricing.reading_cost("THREE_CARD").total_cost == 3
    assert pricing.reading_cost("THREE_CARD", "classic").total_cost == 3

    cost = pricing.reading_cost("celtic-cross", "spiritual", extended_question=True)
    assert cost.base_cost == 10
    assert cost.style_cost == 1
    assert cost.extended_cost == 1
    assert cost.total_cost == 12


def test_reading_cost_rejects_unknown_input():
    with pytest.raises(BadRequestError):
        pricing.reading_cost("TWELVE_CARD")
    with pytest.raises(BadRequestError):
        pricing.reading_cost("SINGLE", "astral")


def test_packages():
    assert [p.credits for p in pricing.CREDIT_PACKAGES] == [10, 25, 60, 100, 200]
    assert pricing.get_package("popular").price_minor == 2000
    with pytest.raises(BadRequestError):
        pricing.get_package("free")


def test_price_table_is_a_copy():
    table = pricing.price_table()
    table["spreads"]["SINGLE"] = 0
    assert pricing.cost_of("SINGLE") == 1
