"""Tests for net balance computation."""

import random
from decimal import Decimal

import pytest
from factories import make_expense, make_group

from split_ledger.exceptions import (
    InvalidSplitError,
    RoundingDriftError,
    UnknownEntityError,
)
from split_ledger.ledger import (
    balance_tolerance,
    check_zero_sum,
    compute_balances,
    expense_total,
    round2,
    round6,
)
from split_ledger.models import ExpenseShare, ExpenseSplit


class TestRounding:
    """Test the round2/round6 helpers."""

    def test_round2_half_away_from_zero(self):
        """Halves round away from zero in both directions."""
        assert round2(Decimal("10.005")) == Decimal("10.01")
        assert round2(Decimal("-10.005")) == Decimal("-10.01")
        assert round2(Decimal("100.015")) == Decimal("100.02")
        assert round2(Decimal("100.005")) == Decimal("100.01")

    def test_round2_below_half(self):
        assert round2(Decimal("33.3333333")) == Decimal("33.33")
        assert round2(Decimal("-33.334")) == Decimal("-33.33")

    def test_round6(self):
        assert round6(Decimal("0.0000005")) == Decimal("0.000001")
        assert round6(Decimal("1.23456749")) == Decimal("1.234567")


class TestExpenseTotal:
    """Test currency conversion of expense totals."""

    def test_same_currency_ignores_fx_rate(self):
        expense = make_expense("e1", "a", "100", ("a", "b"), currency="AUD", fx_rate="2")
        assert expense_total(expense, "AUD") == Decimal("100")

    def test_foreign_currency_uses_fx_rate(self):
        expense = make_expense("e1", "a", "10", ("a", "b"), currency="USD", fx_rate="1.5")
        assert expense_total(expense, "AUD") == Decimal("15.0")

    def test_foreign_currency_without_rate_taken_at_face_value(self):
        expense = make_expense("e1", "a", "250000", ("a", "b"), currency="VND")
        assert expense_total(expense, "AUD") == Decimal("250000")


class TestComputeBalances:
    """Test the compute_balances function."""

    def test_equal_split_three_ways(self):
        """100 USD split equally among 3, paid by a."""
        group = make_group()
        expenses = [make_expense("e1", "a", "100", ("a", "b", "c"))]

        balances = compute_balances(group, expenses)

        assert balances == {
            "a": Decimal("66.67"),
            "b": Decimal("-33.33"),
            "c": Decimal("-33.33"),
        }
        # Per-share rounding leaves one cent unassigned
        assert sum(balances.values()) == Decimal("0.01")

    def test_two_equal_split_expenses(self):
        group = make_group()
        expenses = [
            make_expense("e1", "a", "100", ("a", "b", "c")),
            make_expense("e2", "a", "100", ("a", "b", "c")),
        ]

        balances = compute_balances(group, expenses)

        assert balances["a"] == Decimal("133.34")
        assert balances["b"] == Decimal("-66.66")
        assert balances["c"] == Decimal("-66.66")
        assert abs(sum(balances.values())) <= balance_tolerance(expenses)

    def test_ratio_split(self):
        group = make_group(member_ids=("a", "b"))
        expenses = [make_expense("e1", "b", "100", {"a": "1", "b": "3"})]

        balances = compute_balances(group, expenses)

        assert balances == {"a": Decimal("-25.00"), "b": Decimal("25.00")}

    def test_fx_converted_expense(self):
        """A USD expense in an AUD group is converted with its fx rate."""
        group = make_group(member_ids=("a", "b"), currency="AUD")
        expenses = [
            make_expense("e1", "a", "10", ("a", "b"), currency="USD", fx_rate="1.5")
        ]

        balances = compute_balances(group, expenses)

        assert balances == {"a": Decimal("7.50"), "b": Decimal("-7.50")}

    def test_members_without_expenses_appear_as_zero(self):
        group = make_group(member_ids=("a", "b", "c", "d"))
        expenses = [make_expense("e1", "a", "50", ("a", "b"))]

        balances = compute_balances(group, expenses)

        assert list(balances) == ["a", "b", "c", "d"]
        assert balances["c"] == 0
        assert balances["d"] == 0

    def test_no_expenses(self):
        balances = compute_balances(make_group(), [])
        assert balances == {"a": 0, "b": 0, "c": 0}

    def test_removed_member_stays_computable(self):
        """Expenses referencing a member no longer in the group still count."""
        group = make_group(member_ids=("a", "b"))
        expenses = [make_expense("e1", "a", "90", ("a", "b", "z"))]

        balances = compute_balances(group, expenses)

        assert balances["z"] == Decimal("-30.00")
        assert sum(balances.values()) == 0

    def test_order_does_not_matter(self):
        group = make_group()
        expenses = [
            make_expense("e1", "a", "100", ("a", "b", "c")),
            make_expense("e2", "b", "45.50", {"a": "2", "c": "1"}),
            make_expense("e3", "c", "12.34", ("b", "c")),
        ]

        forward = compute_balances(group, expenses)
        backward = compute_balances(group, list(reversed(expenses)))

        assert forward == backward

    def test_zero_weight_sum_falls_back_to_one(self):
        """A zero weight sum is divided by 1 instead of raising."""
        group = make_group(member_ids=("a", "b"))
        expense = make_expense("e1", "a", "100", ("a", "b"))
        expense.split = ExpenseSplit.model_construct(
            mode="custom",
            shares=[ExpenseShare.model_construct(member_id="b", weight=Decimal("0"))],
        )

        balances = compute_balances(group, [expense])

        assert balances == {"a": Decimal("100"), "b": Decimal("0")}

    def test_negative_weight_sum_raises(self):
        group = make_group(member_ids=("a", "b"))
        expense = make_expense("e1", "a", "100", ("a", "b"))
        expense.split = ExpenseSplit.model_construct(
            mode="custom",
            shares=[ExpenseShare.model_construct(member_id="b", weight=Decimal("-1"))],
        )

        with pytest.raises(InvalidSplitError, match="e1"):
            compute_balances(group, [expense])

    def test_expense_from_other_group_raises(self):
        group = make_group(id="g1")
        expenses = [make_expense("e1", "a", "10", ("a", "b"), group_id="g2")]

        with pytest.raises(UnknownEntityError) as exc_info:
            compute_balances(group, expenses)

        assert exc_info.value.entity_id == "g2"

    def test_does_not_mutate_inputs(self):
        group = make_group()
        expenses = [make_expense("e1", "a", "100", ("a", "b", "c"))]
        before = [expense.model_copy(deep=True) for expense in expenses]

        compute_balances(group, expenses)

        assert expenses == before


class TestZeroSum:
    """Money is neither created nor destroyed."""

    @pytest.mark.parametrize("seed", range(25))
    def test_random_histories_are_zero_sum(self, seed):
        rng = random.Random(seed)
        member_ids = tuple(f"m{i}" for i in range(rng.randint(2, 8)))
        group = make_group(member_ids=member_ids, currency="AUD")

        expenses = []
        for idx in range(rng.randint(1, 30)):
            participants = rng.sample(member_ids, rng.randint(1, len(member_ids)))
            amount = str(Decimal(rng.randint(1, 500_000)) / 100)
            if rng.random() < 0.5:
                shares = tuple(participants)
            else:
                shares = {m: str(rng.randint(1, 5)) for m in participants}
            foreign = rng.random() < 0.3
            expenses.append(
                make_expense(
                    f"e{idx}",
                    rng.choice(member_ids),
                    amount,
                    shares,
                    currency="USD" if foreign else "AUD",
                    fx_rate=str(Decimal(rng.randint(5000, 20000)) / 10000)
                    if foreign
                    else None,
                )
            )

        balances = compute_balances(group, expenses)

        check_zero_sum(balances, balance_tolerance(expenses))

    def test_check_zero_sum_detects_drift(self):
        with pytest.raises(RoundingDriftError, match="not zero-sum"):
            check_zero_sum({"a": Decimal("50"), "b": Decimal("-49")})

    def test_check_zero_sum_within_tolerance(self):
        check_zero_sum({"a": Decimal("50.005"), "b": Decimal("-50")})

    def test_balance_tolerance_grows_with_shares(self):
        expenses = [make_expense(f"e{i}", "a", "10", ("a", "b", "c")) for i in range(4)]
        assert balance_tolerance(expenses) == Decimal("0.060")
        assert balance_tolerance([]) == Decimal("0.01")
