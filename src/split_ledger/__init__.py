"""split-ledger - Shared group expenses, settle-up suggestions and replica sync."""

__version__ = "0.1.0"

from .config import Settings, load_settings
from .db import Database
from .ledger import compute_balances, round2, round6
from .minimizer import minimize_transfers
from .models import (
    Expense,
    ExpenseShare,
    ExpenseSplit,
    Group,
    Member,
    Settlement,
    Snapshot,
    SyncPayload,
    SyncResponse,
    Transfer,
)
from .reconciler import reconcile
from .service import LedgerService
from .sync import ReplicaSync

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "compute_balances",
    "round2",
    "round6",
    "minimize_transfers",
    "Expense",
    "ExpenseShare",
    "ExpenseSplit",
    "Group",
    "Member",
    "Settlement",
    "Snapshot",
    "SyncPayload",
    "SyncResponse",
    "Transfer",
    "reconcile",
    "LedgerService",
    "ReplicaSync",
]
