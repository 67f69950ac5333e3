"""Net balance computation for a group's expense history."""

import logging
from collections.abc import Iterable, Mapping
from decimal import ROUND_HALF_UP, Decimal

from .exceptions import InvalidSplitError, RoundingDriftError, UnknownEntityError
from .models import Currency, Expense, Group

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")
MICRO = Decimal("0.000001")

# Worst-case rounding error of a single round2() call
HALF_CENT = Decimal("0.005")


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    """Convert to Decimal, going through str so floats keep their printed value."""
    return value if isinstance(value, Decimal) else Decimal(str(value))


def round2(value: Decimal) -> Decimal:
    """
    Round to the nearest cent, halves away from zero.

    Args:
        value: Amount as Decimal

    Returns:
        Amount quantized to 0.01
    """
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def round6(value: Decimal) -> Decimal:
    """Round to 6 decimal places, halves away from zero."""
    return value.quantize(MICRO, rounding=ROUND_HALF_UP)


def expense_total(expense: Expense, group_currency: Currency) -> Decimal:
    """
    Value of an expense in its group's currency.

    The fx rate is only applied when the currencies differ. An expense in a
    foreign currency without a rate is taken at face value.

    Args:
        expense: The expense
        group_currency: Currency of the owning group

    Returns:
        Expense total in group currency
    """
    if expense.currency == group_currency or expense.fx_rate is None:
        return expense.amount
    return expense.amount * expense.fx_rate


def compute_balances(group: Group, expenses: Iterable[Expense]) -> dict[str, Decimal]:
    """
    Compute each member's net balance from an expense history.

    Positive means the group owes the member, negative means the member owes
    the group. Every group member appears in the result, in member order.
    Members that only appear in expenses (e.g. removed later) are appended.

    Args:
        group: The group the expenses belong to
        expenses: Expenses of that group, in any order

    Returns:
        Mapping of member id to signed balance

    Raises:
        UnknownEntityError: If an expense belongs to another group
        InvalidSplitError: If an expense's share weights sum below zero
    """
    balances: dict[str, Decimal] = {member_id: ZERO for member_id in group.member_ids()}

    for expense in expenses:
        if expense.group_id != group.id:
            raise UnknownEntityError(
                "group",
                expense.group_id,
                f"Expense {expense.id} belongs to group {expense.group_id}, "
                f"not {group.id}",
            )

        total = expense_total(expense, group.currency)
        balances[expense.paid_by] = balances.get(expense.paid_by, ZERO) + total

        weight_sum = sum((share.weight for share in expense.split.shares), ZERO)
        if weight_sum < 0:
            raise InvalidSplitError(expense.id, weight_sum)
        if weight_sum == 0:
            weight_sum = Decimal("1")

        for share in expense.split.shares:
            owed = round2(total * share.weight / weight_sum)
            balances[share.member_id] = balances.get(share.member_id, ZERO) - owed

    return balances


def balance_tolerance(expenses: Iterable[Expense]) -> Decimal:
    """
    Largest zero-sum deviation the per-share rounding can produce.

    Each share is rounded once, so the error grows by at most half a cent per
    share. Never below one cent.
    """
    share_count = sum(len(expense.split.shares) for expense in expenses)
    return max(CENT, HALF_CENT * share_count)


def check_zero_sum(balances: Mapping[str, Decimal], tolerance: Decimal = CENT) -> None:
    """
    Verify that money was neither created nor destroyed.

    Args:
        balances: Mapping of member id to net balance
        tolerance: Maximum allowed deviation from zero

    Raises:
        RoundingDriftError: If the balances sum beyond the tolerance
    """
    total = sum(balances.values(), ZERO)
    if abs(total) > tolerance:
        raise RoundingDriftError(
            f"Balances are not zero-sum:\n"
            f"  Total: {total}\n"
            f"  Tolerance: {tolerance}\n"
            f"This indicates a defect in balance computation."
        )
    if total != 0:
        logger.debug(f"Balances off zero by {total} (within {tolerance})")
