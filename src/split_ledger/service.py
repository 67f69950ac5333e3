"""Service layer that composes the ledger core with storage.

This is the caller of the pure core functions: it loads entities from the
database, runs the computation, and persists merged state under per-group
locks.
"""

import logging
import secrets
import string
import threading
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from .config import Settings
from .db import Database
from .exceptions import ConfigurationError, GroupNotFoundError, InviteCodeNotFoundError
from .ledger import balance_tolerance, check_zero_sum, compute_balances, round2
from .locks import GroupLocks
from .minimizer import minimize_transfers, verify_settles
from .models import (
    Group,
    Member,
    Settlement,
    SettlementSuggestion,
    SyncPayload,
    SyncResponse,
)
from .reconciler import changes_since, group_ids, reconcile

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def new_entity_id(prefix: str) -> str:
    """Generate an entity id like ``set_lq2x9k0a_4f7g2hq``."""
    millis = int(datetime.now(UTC).timestamp() * 1000)
    stamp = ""
    while millis:
        millis, digit = divmod(millis, 36)
        stamp = (string.digits + string.ascii_lowercase)[digit] + stamp
    suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(7))
    return f"{prefix}_{stamp}_{suffix}"


class LedgerService:
    """Service for balances, settlement suggestions and replica sync."""

    def __init__(
        self, settings: Settings, database: Database, locks: GroupLocks | None = None
    ):
        """Initialize the ledger service."""
        self.settings = settings
        self.db = database
        self.locks = locks or GroupLocks()

        # Orders every stamp-and-commit against every watermark handed out
        self._commit_lock = threading.Lock()
        self._last_stamp = max(
            (g.last_synced_at for g in database.list_groups() if g.last_synced_at),
            default=None,
        )

    def _next_stamp(self) -> datetime:
        """Current UTC time, strictly later than any stamp issued before.

        Callers must hold ``_commit_lock`` until the stamped state is saved.
        """
        now = datetime.now(UTC)
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now

    # ========================================================================
    # Lookups
    # ========================================================================

    def get_group(self, group_id: str) -> Group:
        """
        Look up a group by id.

        Raises:
            GroupNotFoundError: If no such group is stored
        """
        group = self.db.get_group(group_id)
        if group is None:
            raise GroupNotFoundError(group_id)
        return group

    def resolve_invite(self, code: str) -> Group:
        """
        Look up the group an invite code belongs to.

        Raises:
            InviteCodeNotFoundError: If the code is unknown
        """
        group_id = self.db.get_invite_group_id(code.upper())
        if group_id is None:
            raise InviteCodeNotFoundError(code)
        return self.get_group(group_id)

    # ========================================================================
    # Balances & settlements
    # ========================================================================

    def get_balances(self, group_id: str) -> dict[str, Decimal]:
        """Net balance of every member of a group."""
        group = self.get_group(group_id)
        return compute_balances(group, self.db.get_expenses(group_id))

    def suggest_settlements(self, group_id: str) -> list[SettlementSuggestion]:
        """
        Suggest transfers that settle a group, in the group's currency.

        Args:
            group_id: The group to settle

        Returns:
            Ordered settlement suggestions (may be empty)
        """
        group = self.get_group(group_id)
        expenses = self.db.get_expenses(group_id)
        balances = compute_balances(group, expenses)
        tolerance = balance_tolerance(expenses)
        check_zero_sum(balances, tolerance)

        transfers = minimize_transfers(balances)
        verify_settles(balances, transfers, tolerance=tolerance)

        logger.info(
            f"Suggested {len(transfers)} transfers for group {group_id} "
            f"({len(expenses)} expenses)"
        )
        return [
            SettlementSuggestion(
                from_member=transfer.from_member,
                to_member=transfer.to_member,
                amount=transfer.amount,
                currency=group.currency,
            )
            for transfer in transfers
        ]

    def record_settlement(
        self, group_id: str, from_member: str, to_member: str, amount: Decimal
    ) -> Settlement:
        """
        Record a realized transfer between two members.

        Args:
            group_id: The group the transfer settles
            from_member: Paying member id
            to_member: Receiving member id
            amount: Amount in group currency

        Returns:
            The stored settlement

        Raises:
            GroupNotFoundError: If the group does not exist
            ValueError: If either member is not in the group
        """
        with self.locks.hold([group_id]):
            group = self.get_group(group_id)
            for member_id in (from_member, to_member):
                if group.get_member(member_id) is None:
                    raise ValueError(f"Member {member_id} is not in group {group_id}")

            settlement = Settlement(
                id=new_entity_id("set"),
                group_id=group_id,
                from_member=from_member,
                to_member=to_member,
                amount=round2(Decimal(amount)),
                currency=group.currency,
                created_at=datetime.now(UTC),
                paid=True,
            )
            self.db.save_settlement(settlement)

        logger.info(
            f"Recorded settlement {settlement.id}: {from_member} -> {to_member} "
            f"{settlement.amount} {settlement.currency}"
        )
        return settlement

    # ========================================================================
    # Invites
    # ========================================================================

    def generate_invite(self, group_id: str) -> str:
        """
        Get the invite code of a group, creating it on first use.

        The code never changes once assigned. Server-side edits stamp
        ``last_synced_at`` so peers pull the change. Only the replica that
        holds invite authority (the server) assigns new codes; two replicas
        assigning codes independently would never converge.

        Returns:
            Invite code like ``INV-1A2B-X9Y8``

        Raises:
            ConfigurationError: If the group has no code yet and this replica
                may not assign one
        """
        with self.locks.hold([group_id]):
            group = self.get_group(group_id)
            if group.invite_code:
                return group.invite_code
            if not self.settings.invite_authority:
                raise ConfigurationError(
                    f"Replica {self.settings.replica_name} does not assign invite "
                    f"codes. Sync group {group_id} with the server to get its code."
                )

            while True:
                code = self._new_invite_code(group_id)
                if self.db.get_invite_group_id(code) is None:
                    break

            with self._commit_lock:
                group = group.model_copy(
                    update={"invite_code": code, "last_synced_at": self._next_stamp()}
                )
                self.db.save_group(group)

        logger.info(f"Created invite code {code} for group {group_id}")
        return code

    def _new_invite_code(self, group_id: str) -> str:
        suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(4))
        return f"{self.settings.invite_code_prefix}-{group_id[-4:]}-{suffix}".upper()

    def join_group(self, code: str, member: Member) -> Group:
        """
        Add a member to the group behind an invite code.

        Joining twice with the same member id is a no-op.
        """
        group_id = self.resolve_invite(code).id
        with self.locks.hold([group_id]):
            group = self.get_group(group_id)
            if group.get_member(member.id) is not None:
                return group

            with self._commit_lock:
                group = group.model_copy(
                    update={
                        "members": [*group.members, member],
                        "last_synced_at": self._next_stamp(),
                    }
                )
                self.db.save_group(group)

        logger.info(f"Member {member.id} joined group {group_id}")
        return group

    # ========================================================================
    # Sync
    # ========================================================================

    def sync(self, payload: SyncPayload) -> SyncResponse:
        """
        Merge a peer's payload into the store and answer with what it lacks.

        Every group the payload touches is locked for the whole
        load-merge-save sequence. Touched groups are stamped with the merge
        time so other peers pull them on their next sync. A payload without
        entities is a pull-only request and skips the merge.

        The stamp is taken, the merge saved and the changes read under the
        commit lock, and stamps strictly increase. Any edit committed after
        this response therefore carries a stamp later than the returned
        watermark.

        Args:
            payload: Peer entities and the peer's last sync watermark

        Returns:
            Groups changed since the peer's watermark and the new watermark
        """
        touched = group_ids(payload)

        with self.locks.hold(touched), self._commit_lock:
            now = self._next_stamp()
            if touched:
                local = self.db.load_snapshot(touched)
                result = reconcile(local, payload, payload.last_synced_at, now=now)
                merged = result.merged
                for group_id in touched & set(merged.groups):
                    merged.groups[group_id] = merged.groups[group_id].model_copy(
                        update={"last_synced_at": result.new_watermark}
                    )
                self.db.save_snapshot(merged)

            changes = changes_since(self.db.load_snapshot(), payload.last_synced_at)
        logger.info(
            f"[{self.settings.replica_name}] sync: merged {len(touched)} groups, "
            f"returning {len(changes.groups)} groups"
        )
        return SyncResponse(
            groups=changes.groups,
            expenses=changes.expenses,
            settlements=changes.settlements,
            invite_codes=changes.invite_codes,
            last_synced_at=now,
        )
