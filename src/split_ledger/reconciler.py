"""Merge logic for reconciling two replicas of the ledger.

A merge is a single deterministic pass over an incoming snapshot:

- Groups are last-writer-wins on ``last_synced_at``. A group without a
  timestamp never replaces an existing one.
- Expenses and settlements are matched by id within their group. Unknown ids
  are appended; known ids are overwritten by the incoming copy. There is no
  per-record revision, so concurrent edits of the same record resolve to
  whichever replica merged last.
- Nothing present locally is ever removed.
"""

import logging
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any, TypeVar

from .exceptions import UnknownEntityError
from .models import Expense, Group, ReconcileResult, Settlement, Snapshot

logger = logging.getLogger(__name__)

Record = TypeVar("Record", Expense, Settlement)


def is_newer(incoming: Group, local: Group) -> bool:
    """
    Decide whether an incoming group copy should replace the local one.

    Args:
        incoming: Group received from the peer
        local: Group already held locally

    Returns:
        True only if the incoming copy carries a strictly later timestamp
    """
    if incoming.last_synced_at is None:
        return False
    if local.last_synced_at is None:
        return True
    return incoming.last_synced_at > local.last_synced_at


def _merge_groups(merged: Snapshot, incoming: Iterable[Group]) -> int:
    changed = 0
    for group in incoming:
        local = merged.groups.get(group.id)
        if local is None:
            logger.debug(f"Inserting group {group.id}")
        elif is_newer(group, local):
            if local.invite_code and group.invite_code != local.invite_code:
                if group.invite_code:
                    logger.warning(
                        f"Ignoring invite code change for group {group.id}: "
                        f"{local.invite_code} -> {group.invite_code}"
                    )
                group = group.model_copy(update={"invite_code": local.invite_code})
            logger.debug(f"Replacing group {group.id} ({group.last_synced_at})")
        else:
            continue

        merged.groups[group.id] = group
        if group.invite_code:
            merged.invite_codes[group.invite_code] = group.id
        changed += 1
    return changed


def _merge_records(
    merged: dict[str, list[Record]],
    incoming: Mapping[str, list[Record]],
    known_group_ids: set[str],
    kind: str,
) -> tuple[int, int]:
    appended = overwritten = 0
    for group_id, records in incoming.items():
        if not records:
            continue
        if group_id not in known_group_ids:
            raise UnknownEntityError(
                "group",
                group_id,
                f"Incoming {kind} records reference unknown group {group_id}",
            )

        local_records = merged.setdefault(group_id, [])
        positions = {record.id: idx for idx, record in enumerate(local_records)}
        for record in records:
            idx = positions.get(record.id)
            if idx is None:
                positions[record.id] = len(local_records)
                local_records.append(record)
                appended += 1
            else:
                local_records[idx] = record
                overwritten += 1
    return appended, overwritten


def reconcile(
    local: Snapshot,
    incoming: Snapshot | Mapping[str, Any],
    watermark: datetime | None,
    now: datetime | None = None,
) -> ReconcileResult:
    """
    Merge an incoming snapshot into a local one.

    Neither input is modified. Sections missing from ``incoming`` are treated
    as having nothing to merge; malformed entities fail validation.

    Args:
        local: The replica's current state
        incoming: The peer's state (a Snapshot or its wire-format dict)
        watermark: When these two replicas last synchronized, if ever
        now: Merge time; defaults to the current UTC time

    Returns:
        The merged snapshot and the new watermark (the merge time)

    Raises:
        UnknownEntityError: If incoming records are filed under a group that
            neither replica knows
        pydantic.ValidationError: If the incoming payload is malformed
    """
    if not isinstance(incoming, Snapshot):
        incoming = Snapshot.model_validate(incoming)

    merged = local.model_copy(deep=True)
    incoming = incoming.model_copy(deep=True)

    groups_changed = _merge_groups(merged, incoming.groups.values())
    known_group_ids = set(merged.groups)
    expenses_added, expenses_replaced = _merge_records(
        merged.expenses, incoming.expenses, known_group_ids, "expense"
    )
    settlements_added, settlements_replaced = _merge_records(
        merged.settlements, incoming.settlements, known_group_ids, "settlement"
    )

    new_watermark = now or datetime.now(UTC)
    logger.info(
        f"Reconciled since {watermark.isoformat() if watermark else 'never'}: "
        f"{groups_changed} groups, "
        f"{expenses_added} new/{expenses_replaced} replaced expenses, "
        f"{settlements_added} new/{settlements_replaced} replaced settlements"
    )

    return ReconcileResult(merged=merged, new_watermark=new_watermark)


def group_ids(snapshot: Snapshot) -> set[str]:
    """Every group id a snapshot touches, including ids only used as record keys."""
    ids = set(snapshot.groups)
    ids.update(group_id for group_id, records in snapshot.expenses.items() if records)
    ids.update(
        group_id for group_id, records in snapshot.settlements.items() if records
    )
    return ids


def changes_since(snapshot: Snapshot, watermark: datetime | None) -> Snapshot:
    """
    Select what a peer that last synced at ``watermark`` needs to pull.

    Groups are selected by ``last_synced_at``. Expenses and settlements carry
    no modification time, so all records of the selected groups are included;
    merging them again is harmless.

    Args:
        snapshot: The full state of this replica
        watermark: The peer's last sync time, or None for a full pull

    Returns:
        A snapshot limited to the selected groups
    """
    if watermark is None:
        selected = list(snapshot.groups.values())
    else:
        selected = [
            group
            for group in snapshot.groups.values()
            if group.last_synced_at is not None and group.last_synced_at > watermark
        ]

    return Snapshot(
        groups={group.id: group for group in selected},
        expenses={
            group.id: list(snapshot.expenses_for(group.id))
            for group in selected
            if snapshot.expenses_for(group.id)
        },
        settlements={
            group.id: list(snapshot.settlements_for(group.id))
            for group in selected
            if snapshot.settlements_for(group.id)
        },
        invite_codes={
            code: group_id
            for code, group_id in snapshot.invite_codes.items()
            if any(group.id == group_id for group in selected)
        },
    )
