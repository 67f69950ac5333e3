"""Pydantic domain models for split-ledger."""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Currency = Literal["VND", "AUD", "USD"]
SplitMode = Literal["equal", "ratio", "custom"]
ExpenseCategory = Literal["food", "transport", "stay", "ticket", "other"]


def _assume_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


# Timestamps without an offset are read as UTC so they compare with aware ones
UtcDatetime = Annotated[datetime, AfterValidator(_assume_utc)]


class LedgerModel(BaseModel):
    """Base model: snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Dump to a JSON-ready dict using wire (camelCase) names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ============================================================================
# Group Models
# ============================================================================


class Member(LedgerModel):
    """A group member. The id must stay stable across sync merges."""

    id: str
    name: str
    phone: str | None = None


class Group(LedgerModel):
    """A group owning its members by value."""

    id: str
    name: str
    currency: Currency
    members: list[Member] = Field(default_factory=list)
    created_at: UtcDatetime
    invite_code: str | None = None
    last_synced_at: UtcDatetime | None = None

    @field_validator("members")
    @classmethod
    def _unique_member_ids(cls, members: list[Member]) -> list[Member]:
        seen: set[str] = set()
        for member in members:
            if member.id in seen:
                raise ValueError(f"Duplicate member id in group: {member.id}")
            seen.add(member.id)
        return members

    def member_ids(self) -> list[str]:
        """Member ids in insertion order."""
        return [member.id for member in self.members]

    def get_member(self, member_id: str) -> Member | None:
        for member in self.members:
            if member.id == member_id:
                return member
        return None


# ============================================================================
# Expense / Settlement Models
# ============================================================================


class ExpenseShare(LedgerModel):
    """One member's weighted share of an expense."""

    member_id: str
    weight: Decimal = Field(gt=0)
    amount: Decimal | None = None


class ExpenseSplit(LedgerModel):
    """How an expense is divided."""

    mode: SplitMode
    shares: list[ExpenseShare] = Field(min_length=1)


class Expense(LedgerModel):
    """An expense paid by one member and shared by several.

    When ``currency`` differs from the group currency, ``amount * fx_rate`` is
    the value in group currency. Without ``fx_rate`` the amount is taken as
    already being in group currency.
    """

    id: str
    group_id: str
    title: str
    amount: Decimal = Field(gt=0)
    currency: Currency
    paid_by: str  # member id
    split: ExpenseSplit
    category: ExpenseCategory = "other"
    note: str | None = None
    date: UtcDatetime
    receipt_url: str | None = None
    fx_rate: Decimal | None = Field(default=None, gt=0)


class Settlement(LedgerModel):
    """A realized transfer between two members. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str
    group_id: str
    from_member: str = Field(alias="from")
    to_member: str = Field(alias="to")
    amount: Decimal = Field(gt=0)
    currency: Currency
    created_at: UtcDatetime
    paid: bool = True


# ============================================================================
# Settlement Suggestion Models
# ============================================================================


class Transfer(LedgerModel):
    """A suggested (not yet realized) transfer that settles debt."""

    from_member: str = Field(alias="from")
    to_member: str = Field(alias="to")
    amount: Decimal


class SettlementSuggestion(Transfer):
    """A transfer expressed in its group's currency."""

    currency: Currency


# ============================================================================
# Snapshot / Sync Models
# ============================================================================


class Snapshot(LedgerModel):
    """Everything one replica knows: groups, expenses and settlements.

    Sections that are missing or null validate to empty. ``groups`` may be
    given as a list and is keyed by group id.
    """

    groups: dict[str, Group] = Field(default_factory=dict)
    expenses: dict[str, list[Expense]] = Field(default_factory=dict)
    settlements: dict[str, list[Settlement]] = Field(default_factory=dict)
    invite_codes: dict[str, str] = Field(default_factory=dict)  # code -> group id

    @field_validator("groups", mode="before")
    @classmethod
    def _key_groups_by_id(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, list):
            return {
                (group.get("id") if isinstance(group, dict) else group.id): group
                for group in value
            }
        return value

    @field_validator("expenses", "settlements", "invite_codes", mode="before")
    @classmethod
    def _missing_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    def expenses_for(self, group_id: str) -> list[Expense]:
        return self.expenses.get(group_id, [])

    def settlements_for(self, group_id: str) -> list[Settlement]:
        return self.settlements.get(group_id, [])

    def is_empty(self) -> bool:
        """True when there are no groups, expenses or settlements to merge."""
        return not (
            self.groups
            or any(self.expenses.values())
            or any(self.settlements.values())
        )


class SyncPayload(Snapshot):
    """What a replica sends when synchronizing: local entities plus watermark."""

    last_synced_at: UtcDatetime | None = None


class SyncResponse(SyncPayload):
    """What a replica receives back: changes plus the new watermark."""

    last_synced_at: UtcDatetime


class ReconcileResult(BaseModel):
    """Output of a merge pass."""

    merged: Snapshot
    new_watermark: UtcDatetime
