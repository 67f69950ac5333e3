"""Custom exceptions for split-ledger."""


class SplitLedgerError(Exception):
    """Base exception for all split-ledger errors."""

    pass


class ConfigurationError(SplitLedgerError):
    """Raised when configuration is invalid or missing."""

    pass


class InvalidSplitError(SplitLedgerError):
    """Raised when an expense split cannot be divided among its shares."""

    def __init__(self, expense_id: str, weight_sum, message: str | None = None):
        self.expense_id = expense_id
        self.weight_sum = weight_sum
        super().__init__(
            message
            or f"Expense {expense_id} has an invalid share weight sum: {weight_sum}"
        )


class UnknownEntityError(SplitLedgerError):
    """Raised when an entity references a group or record that is not known."""

    def __init__(self, kind: str, entity_id: str, message: str | None = None):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(message or f"Unknown {kind}: {entity_id}")


class GroupNotFoundError(UnknownEntityError):
    """Raised when a group lookup by id finds nothing."""

    def __init__(self, group_id: str):
        super().__init__("group", group_id, f"Group not found: {group_id}")


class InviteCodeNotFoundError(UnknownEntityError):
    """Raised when an invite code does not map to any group."""

    def __init__(self, code: str):
        super().__init__("invite code", code, f"Invite code not found: {code}")


class RoundingDriftError(SplitLedgerError):
    """Raised when balances are left unsettled beyond rounding tolerance."""

    pass
