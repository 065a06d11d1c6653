"""Cash settlement.

A cash station declares how many bills of each denomination the student
handed over. `settle()` turns that tender plus the amount owed into a verdict
and a change breakdown. Pure functions, no I/O.

All money is `Decimal` quantized to cents; binary floats never appear.

Change is made greedily, largest bill first. That is only correct because the
ladder {1, 5, 10, 20, 50, 100} is canonical: for every amount the greedy
choice is also a minimum-bill choice. If DENOMINATIONS ever changes to a
non-canonical set (say {1, 3, 4}), swap `make_change` for `make_change_dp`.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

CENT = Decimal("0.01")

# Largest first. Names are the wire keys used by cash stations.
DENOMINATIONS: tuple[tuple[str, int], ...] = (
    ("hundred", 100),
    ("fifty", 50),
    ("twenty", 20),
    ("ten", 10),
    ("five", 5),
    ("one", 1),
)

_VALUES = dict(DENOMINATIONS)


def to_money(value: Any) -> Decimal:
    """Parse a monetary amount into a cent-quantized Decimal.

    Floats are converted through `str()` so `12.1` stays `12.10`.

    Raises:
        ValueError: if the value is not a finite number.
    """
    if isinstance(value, Decimal):
        d = value
    elif isinstance(value, bool):
        raise ValueError(f"not a monetary amount: {value!r}")
    elif isinstance(value, (int, float, str)):
        try:
            d = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise ValueError(f"not a monetary amount: {value!r}") from e
    else:
        raise ValueError(f"not a monetary amount: {value!r}")
    if not d.is_finite():
        raise ValueError(f"not a monetary amount: {value!r}")
    return d.quantize(CENT)


def empty_bills() -> dict[str, int]:
    return {name: 0 for name, _ in DENOMINATIONS}


def normalize_tender(tender: Mapping[str, Any]) -> dict[str, int]:
    """Validate a tender and fill missing denominations with zero."""
    bills = empty_bills()
    for name, count in tender.items():
        if name not in _VALUES:
            raise ValueError(f"unknown denomination: {name!r}")
        if isinstance(count, bool) or not isinstance(count, int):
            raise ValueError(f"bill count for {name} must be an integer")
        if count < 0:
            raise ValueError(f"bill count for {name} must be >= 0")
        bills[name] = count
    return bills


def tender_total(tender: Mapping[str, int]) -> Decimal:
    return Decimal(sum(count * _VALUES[name] for name, count in tender.items())).quantize(CENT)


def make_change(amount: Decimal) -> tuple[dict[str, int], Decimal]:
    """Greedy largest-bill-first breakdown of `amount`.

    Returns:
        (bill counts per denomination, sub-dollar remainder that needs coins)
    """
    if amount < 0:
        raise ValueError("change amount must be >= 0")
    bills = empty_bills()
    remaining = int(amount)  # whole dollars only
    for name, value in DENOMINATIONS:
        bills[name], remaining = divmod(remaining, value)
    coins = (amount - int(amount)).quantize(CENT)
    return bills, coins


def make_change_dp(amount: int, values: tuple[int, ...]) -> dict[int, int]:
    """Minimum-count breakdown for an arbitrary denomination set.

    Classic unbounded coin-change DP. Used to cross-check the greedy result
    and for ladders where greedy is not optimal.

    Raises:
        ValueError: if `amount` cannot be made from `values`.
    """
    if amount < 0:
        raise ValueError("amount must be >= 0")
    best: list[int | None] = [0] + [None] * amount
    last: list[int] = [0] * (amount + 1)
    for a in range(1, amount + 1):
        for v in values:
            prev = best[a - v] if v <= a else None
            if prev is not None and (best[a] is None or prev + 1 < best[a]):
                best[a] = prev + 1
                last[a] = v
    if best[amount] is None:
        raise ValueError(f"{amount} cannot be made from {values}")

    counts = {v: 0 for v in values}
    a = amount
    while a > 0:
        counts[last[a]] += 1
        a -= last[a]
    return counts


@dataclass(frozen=True)
class Settlement:
    owed: Decimal
    bills: dict[str, int]
    total: Decimal
    sufficient: bool
    change_due: Decimal
    shortfall: Decimal
    change_breakdown: dict[str, int]
    coin_change: Decimal

    def to_message(self) -> dict[str, Any]:
        return {
            "owed": str(self.owed),
            "bills": dict(self.bills),
            "total": str(self.total),
            "sufficient": self.sufficient,
            "change_due": str(self.change_due),
            "shortfall": str(self.shortfall),
            "change_breakdown": dict(self.change_breakdown),
            "coin_change": str(self.coin_change),
        }


def settle(owed: Any, tender: Mapping[str, Any]) -> Settlement:
    """Reconcile a bill-count tender against the amount owed.

    The engine reports insufficiency instead of raising, so the caller can
    keep the entered tender and prompt for more cash.

    Raises:
        ValueError: negative `owed` or a malformed tender.
    """
    owed_d = to_money(owed)
    if owed_d < 0:
        raise ValueError("owed must be >= 0")

    bills = normalize_tender(tender)
    total = tender_total(bills)
    sufficient = total >= owed_d

    if sufficient:
        change_due = total - owed_d
        shortfall = Decimal("0.00")
    else:
        change_due = Decimal("0.00")
        shortfall = owed_d - total

    breakdown, coins = make_change(change_due)
    return Settlement(
        owed=owed_d,
        bills=bills,
        total=total,
        sufficient=sufficient,
        change_due=change_due,
        shortfall=shortfall,
        change_breakdown=breakdown,
        coin_change=coins,
    )
