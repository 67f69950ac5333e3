"""Client-side synchronization of an offline replica with its peer."""

import logging
from collections.abc import Callable
from datetime import datetime

from .db import Database
from .locks import GroupLocks
from .models import SyncPayload, SyncResponse
from .reconciler import group_ids, reconcile

logger = logging.getLogger(__name__)

Transport = Callable[[SyncPayload], SyncResponse]


class ReplicaSync:
    """
    Keeps an offline replica in step with its peer.

    With pending local changes the whole local snapshot is pushed; otherwise
    only the watermark is sent and the peer's changes are pulled. Either way
    the response is merged into the local store under the locks of the groups
    it touches.
    """

    def __init__(
        self, database: Database, transport: Transport, locks: GroupLocks | None = None
    ):
        """
        Initialize the replica sync.

        Args:
            database: The local replica's store
            transport: Sends a payload to the peer and returns its response
            locks: Group locks shared with other writers of ``database``
        """
        self.db = database
        self.transport = transport
        self.locks = locks or GroupLocks()

    def build_payload(self) -> SyncPayload:
        """What to send: everything when changes are pending, else just the watermark."""
        watermark = self.db.get_last_synced_at()
        if not self.db.has_pending_sync():
            return SyncPayload(last_synced_at=watermark)

        snapshot = self.db.load_snapshot()
        return SyncPayload(
            groups=snapshot.groups,
            expenses=snapshot.expenses,
            settlements=snapshot.settlements,
            invite_codes=snapshot.invite_codes,
            last_synced_at=watermark,
        )

    def sync(self) -> datetime:
        """
        Run one synchronization round.

        Returns:
            The new watermark

        Raises:
            Whatever the transport raises; local state is left untouched and
            the pending flag kept, so the next round retries.
        """
        payload = self.build_payload()
        pushing = not payload.is_empty()
        logger.info(
            f"Syncing ({'push and pull' if pushing else 'pull only'}), "
            f"last synced {payload.last_synced_at or 'never'}"
        )

        response = self.transport(payload)
        self.apply_response(response)

        if pushing:
            self.db.clear_pending_sync()
        return response.last_synced_at

    def apply_response(self, response: SyncResponse):
        """Merge a peer's response into the local store and store its watermark."""
        touched = group_ids(response)
        if touched:
            with self.locks.hold(touched):
                local = self.db.load_snapshot(touched)
                result = reconcile(local, response, self.db.get_last_synced_at())
                self.db.save_snapshot(result.merged)

        # The peer's clock defines the watermark for the next pull
        self.db.set_last_synced_at(response.last_synced_at)
        logger.info(
            f"Applied {len(response.groups)} groups from peer, "
            f"watermark {response.last_synced_at.isoformat()}"
        )
