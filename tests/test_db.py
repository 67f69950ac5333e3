"""Tests for the SQLite replica store."""

import sqlite3
from datetime import UTC, datetime
from decimal import Decimal

import pytest
from factories import make_expense, make_group, make_settlement

from split_ledger.models import Snapshot


class TestGroups:
    def test_save_and_get_group(self, db):
        group = make_group("g1", invite_code="INV-G1-AAAA")

        db.save_group(group)

        assert db.get_group("g1") == group
        assert db.get_invite_group_id("INV-G1-AAAA") == "g1"

    def test_missing_group(self, db):
        assert db.get_group("nope") is None

    def test_list_groups_in_insertion_order(self, db):
        for group_id in ("g2", "g1", "g3"):
            db.save_group(make_group(group_id))

        assert [g.id for g in db.list_groups()] == ["g2", "g1", "g3"]

    def test_overwrite_keeps_position(self, db):
        db.save_group(make_group("g1"))
        db.save_group(make_group("g2"))
        db.save_group(make_group("g1", name="Renamed"))

        groups = db.list_groups()
        assert [g.id for g in groups] == ["g1", "g2"]
        assert groups[0].name == "Renamed"


class TestInviteCodes:
    def test_code_keeps_its_group(self, db):
        db.save_invite_code("INV-AAAA", "g1")
        db.save_invite_code("INV-AAAA", "g2")

        assert db.get_invite_group_id("INV-AAAA") == "g1"

    def test_group_cannot_get_second_code(self, db):
        db.save_invite_code("INV-AAAA", "g1")

        with pytest.raises(sqlite3.IntegrityError):
            db.save_invite_code("INV-BBBB", "g1")

    def test_unknown_code(self, db):
        assert db.get_invite_group_id("INV-NOPE") is None


class TestRecords:
    def test_expenses_round_trip_in_order(self, db):
        expenses = [
            make_expense("e2", "a", "10.50", ("a", "b")),
            make_expense("e1", "b", "99.99", {"a": "1", "b": "2"}, fx_rate="1.25"),
        ]
        for expense in expenses:
            db.save_expense(expense)

        assert db.get_expenses("g1") == expenses
        assert db.get_expenses("g2") == []

    def test_expense_overwrite_keeps_position(self, db):
        db.save_expense(make_expense("e1", "a", "10", ("a", "b")))
        db.save_expense(make_expense("e2", "a", "20", ("a", "b")))
        db.save_expense(make_expense("e1", "a", "11", ("a", "b")))

        expenses = db.get_expenses("g1")
        assert [e.id for e in expenses] == ["e1", "e2"]
        assert expenses[0].amount == Decimal("11")

    def test_same_expense_id_in_two_groups(self, db):
        db.save_expense(make_expense("e1", "a", "10", ("a", "b"), group_id="g1"))
        db.save_expense(make_expense("e1", "a", "20", ("a", "b"), group_id="g2"))

        assert db.get_expenses("g1")[0].amount == Decimal("10")
        assert db.get_expenses("g2")[0].amount == Decimal("20")

    def test_settlements_round_trip(self, db):
        settlement = make_settlement("s1", "b", "a", "12.30")

        db.save_settlement(settlement)

        assert db.get_settlements("g1") == [settlement]


class TestSyncState:
    def test_watermark(self, db):
        assert db.get_last_synced_at() is None

        watermark = datetime(2025, 3, 1, 9, 30, tzinfo=UTC)
        db.set_last_synced_at(watermark)

        assert db.get_last_synced_at() == watermark

    def test_local_writes_mark_pending(self, db):
        assert not db.has_pending_sync()

        db.save_expense(make_expense("e1", "a", "10", ("a", "b")))
        assert db.has_pending_sync()

        db.clear_pending_sync()
        assert not db.has_pending_sync()

    def test_unflagged_write(self, db):
        db.save_group(make_group(), mark_pending=False)
        assert not db.has_pending_sync()


class TestSnapshots:
    @pytest.fixture
    def populated(self, db):
        db.save_group(make_group("g1", invite_code="INV-G1-AAAA"))
        db.save_group(make_group("g2"))
        db.save_expense(make_expense("e1", "a", "10", ("a", "b"), group_id="g1"))
        db.save_expense(make_expense("e2", "a", "20", ("a", "b"), group_id="g2"))
        db.save_settlement(make_settlement("s1", "b", "a", "5", group_id="g1"))
        db.clear_pending_sync()
        return db

    def test_load_everything(self, populated):
        snapshot = populated.load_snapshot()

        assert list(snapshot.groups) == ["g1", "g2"]
        assert [e.id for e in snapshot.expenses["g1"]] == ["e1"]
        assert [e.id for e in snapshot.expenses["g2"]] == ["e2"]
        assert [s.id for s in snapshot.settlements["g1"]] == ["s1"]
        assert snapshot.invite_codes == {"INV-G1-AAAA": "g1"}

    def test_load_selected_groups(self, populated):
        snapshot = populated.load_snapshot(["g2", "unknown"])

        assert list(snapshot.groups) == ["g2"]
        assert list(snapshot.expenses) == ["g2"]
        assert snapshot.settlements == {}
        assert snapshot.invite_codes == {}

    def test_save_snapshot_round_trip(self, db):
        snapshot = Snapshot(
            groups={"g1": make_group("g1", invite_code="INV-G1-AAAA")},
            expenses={"g1": [make_expense("e1", "a", "10", ("a", "b"))]},
            settlements={"g1": [make_settlement("s1", "b", "a", "5")]},
            invite_codes={"INV-G1-AAAA": "g1"},
        )

        db.save_snapshot(snapshot)

        assert db.load_snapshot() == snapshot
        assert not db.has_pending_sync()

    def test_save_snapshot_never_deletes(self, populated):
        populated.save_snapshot(Snapshot(groups={"g3": make_group("g3")}))

        snapshot = populated.load_snapshot()
        assert list(snapshot.groups) == ["g1", "g2", "g3"]
        assert len(snapshot.expenses["g1"]) == 1

    def test_failed_snapshot_save_rolls_back(self, populated):
        populated.save_invite_code("INV-TAKEN", "g2")
        clashing = Snapshot(
            groups={"g3": make_group("g3")},
            invite_codes={"INV-OTHER": "g2"},
        )

        with pytest.raises(sqlite3.IntegrityError):
            populated.save_snapshot(clashing)

        assert populated.get_group("g3") is None
