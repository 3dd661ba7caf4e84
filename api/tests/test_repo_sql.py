from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from matchengine.domain import AssignedBy, GroupMember, RunStatus
from matchengine.errors import ConcurrentModification, ParticipantAlreadyAssigned, Timeout
from matchengine.repo import SqlMatchingRepository, SqlMatchingTransaction
from matchengine.sources import SqlParticipantSource

NOW = datetime(2026, 3, 1, 18, 0, tzinfo=timezone.utc)
GROUP_ID = "00000000-0000-0000-0000-000000000001"
RUN_ID = "00000000-0000-0000-0000-0000000000aa"


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def mappings(self):
        return self

    def first(self):
        return self._rows[0] if self._rows else None

    def all(self):
        return list(self._rows)


class FakeDB:
    def __init__(self, responses=None, raise_on=None):
        self.calls = []
        self.responses = list(responses or [])
        self.raise_on = raise_on or {}
        self.committed = False
        self.rolled_back = False
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True
        return False

    def execute(self, stmt, params=None):
        sql = str(stmt)
        self.calls.append((sql, params))
        for fragment, exc in self.raise_on.items():
            if fragment in sql:
                raise exc
        return self.responses.pop(0) if self.responses else FakeResult()

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True

    def close(self):
        self.closed = True


def test_event_lock_uses_transaction_scoped_advisory_lock():
    db = FakeDB([FakeResult([{"locked": True}])])
    assert SqlMatchingTransaction(db).try_lock_event("evt-1") is True
    sql, params = db.calls[0]
    assert "pg_try_advisory_xact_lock" in sql
    assert params == {"key": "matching:evt-1"}

    busy = FakeDB([FakeResult([{"locked": False}])])
    assert SqlMatchingTransaction(busy).try_lock_event("evt-1") is False


def test_touch_group_bumps_version_when_current():
    db = FakeDB([FakeResult(rowcount=1)])
    assert SqlMatchingTransaction(db).touch_group(GROUP_ID, 3, NOW, is_remainder=True) == 4
    sql, params = db.calls[0]
    assert "version = version + 1" in sql
    assert "AND version = :expected" in sql
    assert params["expected"] == 3
    assert params["is_remainder"] is True


def test_touch_group_with_stale_version_raises():
    db = FakeDB([FakeResult(rowcount=0)])
    with pytest.raises(ConcurrentModification):
        SqlMatchingTransaction(db).touch_group(GROUP_ID, 3, NOW)


def test_duplicate_active_membership_maps_to_already_assigned():
    dup = IntegrityError("INSERT", {}, Exception("duplicate key value violates unique constraint"))
    db = FakeDB(raise_on={"INSERT INTO matching_group_member": dup})
    member = GroupMember(group_id=GROUP_ID, user_id="user-001", assigned_by=AssignedBy.MANUAL, assigned_at=NOW)
    with pytest.raises(ParticipantAlreadyAssigned) as exc:
        SqlMatchingTransaction(db).insert_member(RUN_ID, member)
    assert exc.value.details == {"run_id": RUN_ID, "user_id": "user-001"}


def test_get_group_loads_members_in_insert_order():
    group_row = {
        "id": GROUP_ID,
        "run_id": RUN_ID,
        "event_id": "evt-1",
        "group_number": 2,
        "min_size": 4,
        "max_size": 6,
        "version": 5,
        "is_remainder": False,
        "is_manual": True,
        "created_at": NOW,
        "updated_at": NOW,
    }
    member_rows = [
        {
            "group_id": GROUP_ID,
            "user_id": uid,
            "assigned_by": "MANUAL",
            "assigned_by_actor": "admin-1",
            "assigned_at": NOW,
            "removed_at": NOW if uid == "user-002" else None,
            "note": None,
        }
        for uid in ["user-003", "user-002", "user-001"]
    ]
    db = FakeDB([FakeResult([group_row]), FakeResult(member_rows)])
    group = SqlMatchingTransaction(db).get_group(GROUP_ID)
    assert group.version == 5
    assert group.is_manual is True
    assert group.member_ids == ["user-003", "user-001"]
    assert "ORDER BY seq ASC" in db.calls[1][0]


def test_committed_run_row_is_mapped():
    row = {
        "id": RUN_ID,
        "event_id": "evt-1",
        "status": "COMMITTED",
        "created_at": NOW,
        "created_by": "admin-1",
        "committed_at": NOW,
        "superseded_at": None,
    }
    db = FakeDB([FakeResult([row])])
    run = SqlMatchingTransaction(db).get_committed_run("evt-1")
    assert run.status == RunStatus.COMMITTED
    assert run.created_by == "admin-1"
    assert "status = 'COMMITTED'" in db.calls[0][0]


def test_transaction_sets_statement_timeout_and_commits():
    db = FakeDB()
    repo = SqlMatchingRepository(lambda: db, statement_timeout_ms=2500)
    with repo.transaction() as tx:
        tx.update_run_status(RUN_ID, RunStatus.SUPERSEDED, NOW)
    assert db.calls[0][0] == "SET LOCAL statement_timeout = 2500"
    assert "superseded_at = :at" in db.calls[1][0]
    assert db.committed and db.closed and not db.rolled_back


def test_transaction_rolls_back_on_error():
    db = FakeDB()
    repo = SqlMatchingRepository(lambda: db)
    with pytest.raises(ConcurrentModification):
        with repo.transaction():
            raise ConcurrentModification("conflict")
    assert db.rolled_back and db.closed and not db.committed
    assert db.calls == []


def test_statement_timeout_maps_to_timeout():
    class PgError(Exception):
        pgcode = "57014"

    slow = OperationalError("SELECT", {}, PgError("canceling statement due to statement timeout"))
    db = FakeDB(raise_on={"FROM matching_run": slow})
    repo = SqlMatchingRepository(lambda: db)
    with pytest.raises(Timeout):
        with repo.transaction() as tx:
            tx.list_runs("evt-1")
    assert db.rolled_back


def test_participant_source_maps_profile_columns():
    rows = [
        {
            "user_id": "user-001",
            "energy_score": 1.5,
            "openness_score": -2,
            "structure_score": 3,
            "affect_score": 0,
            "lifestyle_score": 4,
            "comfort_score": 10,
            "gender_mix_comfort": "DEPENDS",
            "relationship_intent": ["friendship", "dating"],
            "gender": "female",
            "display_name": "Ada",
        }
    ]
    db = FakeDB([FakeResult(rows)])
    profiles = SqlParticipantSource(lambda: db).get_profiles(["user-001", "user-001"])
    profile = profiles["user-001"]
    assert profile.trait_vector == (1.5, -2, 3, 0, 4, 10)
    assert profile.relationship_intent == ("friendship", "dating")
    assert profile.gender_mix_preference == "DEPENDS"
    assert db.calls[0][1] == {"user_ids": ["user-001"]}

    assert SqlParticipantSource(lambda: FakeDB()).get_profiles([]) == {}


def test_paid_tickets_exclude_cancelled_transactions():
    rows = [{"transaction_id": "txn-1", "user_id": "user-001", "paid_at": NOW}]
    db = FakeDB([FakeResult(rows)])
    tickets = SqlParticipantSource(lambda: db).list_paid_tickets("evt-1")
    assert [t.transaction_id for t in tickets] == ["txn-1"]
    sql = db.calls[0][0]
    assert "status = 'PAID'" in sql
    assert "cancelled_at IS NULL" in sql


def test_due_events_query_filters_published_active_window():
    end = datetime(2026, 3, 2, 19, 0, tzinfo=timezone.utc)
    db = FakeDB([FakeResult([{"id": "evt-1"}, {"id": "evt-2"}])])
    assert SqlParticipantSource(lambda: db).list_events_starting_between(NOW, end) == ["evt-1", "evt-2"]
    sql, params = db.calls[0]
    assert "start_time >= :start" in sql
    assert "start_time < :end" in sql
    assert "status = 'PUBLISHED'" in sql
    assert "is_active = true" in sql
    assert params == {"start": NOW, "end": end}
