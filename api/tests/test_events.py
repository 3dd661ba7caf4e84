from datetime import datetime, timezone

from matchengine.repo import SqlMatchingTransaction
from matchengine.services.events import log_matching_event


class FakeDB:
    def __init__(self):
        self.calls = []

    def execute(self, stmt, params):
        self.calls.append((str(stmt), params))


def test_log_matching_event_inserts_expected_payload_shape():
    db = FakeDB()
    entry = log_matching_event(
        SqlMatchingTransaction(db),
        run_id="00000000-0000-0000-0000-0000000000aa",
        event_id="evt-rooftop-dinner",
        actor_id="admin-1",
        action="assign",
        before_state={"version": 1},
        after_state={"version": 2, "user_id": "user-011"},
        at=datetime(2026, 3, 1, 18, 0, tzinfo=timezone.utc),
    )
    assert len(db.calls) == 1
    sql, params = db.calls[0]
    assert "INSERT INTO matching_audit_entry" in sql
    assert params["action"] == "assign"
    assert params["id"] == entry.id
    assert params["after_state"] == '{"version": 2, "user_id": "user-011"}'


def test_log_matching_event_defaults_to_empty_states():
    db = FakeDB()
    entry = log_matching_event(
        SqlMatchingTransaction(db),
        run_id="00000000-0000-0000-0000-0000000000aa",
        event_id="evt-rooftop-dinner",
        actor_id=None,
        action="invalidate",
        at=datetime(2026, 3, 1, 18, 0, tzinfo=timezone.utc),
    )
    assert entry.before_state == {}
    assert db.calls[0][1]["before_state"] == "{}"
