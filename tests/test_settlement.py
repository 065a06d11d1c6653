from decimal import Decimal

import pytest

from yearbook_distribution import settlement
from yearbook_distribution.settlement import DENOMINATIONS, make_change, make_change_dp, settle, to_money


def test_exact_change_scenario():
    s = settle(Decimal("13.00"), {"ten": 1, "five": 1})
    assert s.total == Decimal("15.00")
    assert s.sufficient is True
    assert s.change_due == Decimal("2.00")
    assert s.change_breakdown == {"hundred": 0, "fifty": 0, "twenty": 0, "ten": 0, "five": 0, "one": 2}
    assert s.shortfall == Decimal("0.00")


def test_insufficient_tender_reports_shortfall():
    s = settle("13.00", {"ten": 1})
    assert s.total == Decimal("10.00")
    assert s.sufficient is False
    assert s.change_due == Decimal("0.00")
    assert s.shortfall == Decimal("3.00")
    assert sum(s.change_breakdown.values()) == 0


def test_verdict_and_change_hold_for_many_inputs():
    for owed in range(0, 160, 7):
        for twenties in range(0, 5):
            for ones in range(0, 6):
                s = settle(owed, {"twenty": twenties, "one": ones})
                total = 20 * twenties + ones
                assert s.sufficient == (total >= owed)
                assert s.change_due == Decimal(max(0, total - owed))


def test_greedy_change_is_minimal_for_the_bill_ladder():
    values = tuple(v for _, v in DENOMINATIONS)
    for amount in range(0, 400):
        bills, coins = make_change(Decimal(amount))
        assert coins == Decimal("0.00")
        assert sum(n * dict(DENOMINATIONS)[name] for name, n in bills.items()) == amount
        assert sum(bills.values()) == sum(make_change_dp(amount, values).values())


def test_greedy_is_not_minimal_for_non_canonical_ladder():
    # Why make_change_dp exists: 6 = 3+3, greedy would take 4+1+1.
    assert sum(make_change_dp(6, (4, 3, 1)).values()) == 2


def test_sub_dollar_change_goes_to_coins():
    s = settle("12.25", {"twenty": 1})
    assert s.change_due == Decimal("7.75")
    assert s.change_breakdown["five"] == 1
    assert s.change_breakdown["one"] == 2
    assert s.coin_change == Decimal("0.75")


def test_float_input_does_not_drift():
    assert to_money(0.1 + 0.2) == Decimal("0.30")
    s = settle(19.99, {"twenty": 1})
    assert s.change_due == Decimal("0.01")


@pytest.mark.parametrize(
    "tender",
    [{"two": 1}, {"ten": -1}, {"ten": 1.5}, {"ten": True}],
)
def test_malformed_tender_rejected(tender):
    with pytest.raises(ValueError):
        settle(5, tender)


def test_negative_owed_rejected():
    with pytest.raises(ValueError):
        settle(-1, {"one": 1})


def test_module_docstring_is_kept():
    assert settlement.__doc__.startswith("Cash settlement.")
