"""Collapse net balances into a short list of settling transfers.

Greedy largest-first matching: the largest creditor is always paired with the
largest debtor, and each pairing fully settles at least one of them. This
yields at most ``creditors + debtors - 1`` transfers and is deterministic for
a given input order.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal

from .exceptions import RoundingDriftError
from .ledger import CENT, ZERO, round2, round6, to_decimal
from .models import Transfer

logger = logging.getLogger(__name__)

EPSILON = Decimal("1e-6")


@dataclass
class _Party:
    member_id: str
    remaining: Decimal  # always positive


def _split_parties(balances: Mapping[str, Decimal]) -> tuple[list[_Party], list[_Party]]:
    creditors: list[_Party] = []
    debtors: list[_Party] = []
    for member_id, balance in balances.items():
        balance = to_decimal(balance)
        if balance > EPSILON:
            creditors.append(_Party(member_id, balance))
        elif balance < -EPSILON:
            debtors.append(_Party(member_id, -balance))
        # anything else is already settled

    # sorted() is stable: equal balances keep input order
    creditors = sorted(creditors, key=lambda party: party.remaining, reverse=True)
    debtors = sorted(debtors, key=lambda party: party.remaining, reverse=True)
    return creditors, debtors


def minimize_transfers(balances: Mapping[str, Decimal]) -> list[Transfer]:
    """
    Produce transfers that bring every balance to zero.

    Args:
        balances: Mapping of member id to net balance (positive = is owed)

    Returns:
        Ordered transfers, largest pairings first. Amounts are rounded to
        cents; zero-value transfers are never emitted.
    """
    creditors, debtors = _split_parties(balances)

    transfers: list[Transfer] = []
    i = j = 0
    while i < len(creditors) and j < len(debtors):
        creditor = creditors[i]
        debtor = debtors[j]

        pay = min(creditor.remaining, debtor.remaining)
        if pay > EPSILON:
            transfers.append(
                Transfer(
                    from_member=debtor.member_id,
                    to_member=creditor.member_id,
                    amount=round2(pay),
                )
            )

        creditor.remaining = round6(creditor.remaining - pay)
        debtor.remaining = round6(debtor.remaining - pay)
        if creditor.remaining <= EPSILON:
            i += 1
        if debtor.remaining <= EPSILON:
            j += 1

    logger.debug(
        f"Minimized {len(creditors)} creditors and {len(debtors)} debtors "
        f"into {len(transfers)} transfers"
    )
    return transfers


def residual_balances(
    balances: Mapping[str, Decimal], transfers: Iterable[Transfer]
) -> dict[str, Decimal]:
    """
    Balances left over after applying transfers.

    A debtor paying moves their balance up; a creditor being paid moves it
    down.
    """
    residuals = {member_id: to_decimal(balance) for member_id, balance in balances.items()}
    for transfer in transfers:
        residuals[transfer.from_member] = (
            residuals.get(transfer.from_member, ZERO) + transfer.amount
        )
        residuals[transfer.to_member] = (
            residuals.get(transfer.to_member, ZERO) - transfer.amount
        )
    return residuals


def verify_settles(
    balances: Mapping[str, Decimal],
    transfers: Iterable[Transfer],
    tolerance: Decimal = CENT,
) -> None:
    """
    Check that transfers settle every member within tolerance.

    Raises:
        RoundingDriftError: If any member keeps a residual beyond tolerance
    """
    residuals = residual_balances(balances, transfers)
    drifted = {
        member_id: residual
        for member_id, residual in residuals.items()
        if abs(residual) > tolerance
    }
    if drifted:
        raise RoundingDriftError(
            f"Transfers leave unsettled balances: {drifted} "
            f"(tolerance {tolerance})"
        )
