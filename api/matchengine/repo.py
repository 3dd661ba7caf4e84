import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError, OperationalError

from matchengine.domain import (
    AssignedBy,
    GroupMember,
    MatchingAuditEntry,
    MatchingGroup,
    MatchingRun,
    RunStatus,
)
from matchengine.errors import ConcurrentModification, ParticipantAlreadyAssigned, Timeout

logger = logging.getLogger(__name__)

_RUN_COLUMNS = "id, event_id, status, created_at, created_by, committed_at, superseded_at"
_GROUP_COLUMNS = (
    "id, run_id, event_id, group_number, min_size, max_size, version, is_remainder, is_manual, created_at, updated_at"
)
_MEMBER_COLUMNS = "group_id, user_id, assigned_by, assigned_by_actor, assigned_at, removed_at, note"


def _run_from_row(row: Any) -> MatchingRun:
    return MatchingRun(
        id=str(row["id"]),
        event_id=str(row["event_id"]),
        status=RunStatus(row["status"]),
        created_at=row["created_at"],
        created_by=row["created_by"],
        committed_at=row["committed_at"],
        superseded_at=row["superseded_at"],
    )


def _member_from_row(row: Any) -> GroupMember:
    return GroupMember(
        group_id=str(row["group_id"]),
        user_id=str(row["user_id"]),
        assigned_by=AssignedBy(row["assigned_by"]),
        assigned_at=row["assigned_at"],
        assigned_by_actor=row["assigned_by_actor"],
        removed_at=row["removed_at"],
        note=row["note"],
    )


def _group_from_row(row: Any, members: list[GroupMember]) -> MatchingGroup:
    return MatchingGroup(
        id=str(row["id"]),
        run_id=str(row["run_id"]),
        event_id=str(row["event_id"]),
        group_number=int(row["group_number"]),
        min_size=int(row["min_size"]),
        max_size=int(row["max_size"]),
        version=int(row["version"]),
        is_remainder=bool(row["is_remainder"]),
        is_manual=bool(row["is_manual"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        members=members,
    )


def _is_statement_timeout(exc: OperationalError) -> bool:
    code = getattr(getattr(exc, "orig", None), "pgcode", None)
    return code == "57014" or "statement timeout" in str(exc).lower()


class SqlMatchingTransaction:
    """Matching reads and writes bound to one database session and transaction."""

    def __init__(self, db):
        self.db = db

    def try_lock_event(self, event_id: str) -> bool:
        row = self.db.execute(
            text("SELECT pg_try_advisory_xact_lock(hashtext(:key)) AS locked"),
            {"key": f"matching:{event_id}"},
        ).mappings().first()
        return bool(row and row["locked"])

    def get_committed_run(self, event_id: str) -> MatchingRun | None:
        row = self.db.execute(
            text(
                f"""
                SELECT {_RUN_COLUMNS}
                FROM matching_run
                WHERE event_id = :event_id AND status = 'COMMITTED'
                ORDER BY committed_at DESC
                LIMIT 1
                """
            ),
            {"event_id": event_id},
        ).mappings().first()
        return _run_from_row(row) if row else None

    def list_runs(self, event_id: str) -> list[MatchingRun]:
        rows = self.db.execute(
            text(f"SELECT {_RUN_COLUMNS} FROM matching_run WHERE event_id = :event_id ORDER BY created_at ASC"),
            {"event_id": event_id},
        ).mappings().all()
        return [_run_from_row(r) for r in rows]

    def insert_run(self, run: MatchingRun) -> None:
        self.db.execute(
            text(
                """
                INSERT INTO matching_run (id, event_id, status, created_at, created_by, committed_at)
                VALUES (CAST(:id AS uuid), :event_id, :status, :created_at, :created_by, :committed_at)
                """
            ),
            {
                "id": run.id,
                "event_id": run.event_id,
                "status": run.status.value,
                "created_at": run.created_at,
                "created_by": run.created_by,
                "committed_at": run.committed_at,
            },
        )

    def update_run_status(self, run_id: str, status: RunStatus, at: datetime) -> None:
        column = "superseded_at" if status == RunStatus.SUPERSEDED else "committed_at"
        self.db.execute(
            text(f"UPDATE matching_run SET status = :status, {column} = :at WHERE id = CAST(:id AS uuid)"),
            {"id": run_id, "status": status.value, "at": at},
        )

    def _members_for(self, group_ids: list[str]) -> dict[str, list[GroupMember]]:
        out: dict[str, list[GroupMember]] = {gid: [] for gid in group_ids}
        if not group_ids:
            return out
        stmt = text(
            f"""
            SELECT {_MEMBER_COLUMNS}
            FROM matching_group_member
            WHERE group_id IN :group_ids
            ORDER BY seq ASC
            """
        ).bindparams(bindparam("group_ids", expanding=True))
        for row in self.db.execute(stmt, {"group_ids": group_ids}).mappings().all():
            member = _member_from_row(row)
            out.setdefault(member.group_id, []).append(member)
        return out

    def list_groups(self, run_id: str) -> list[MatchingGroup]:
        rows = self.db.execute(
            text(
                f"""
                SELECT {_GROUP_COLUMNS}
                FROM matching_group
                WHERE run_id = CAST(:run_id AS uuid)
                ORDER BY group_number ASC
                """
            ),
            {"run_id": run_id},
        ).mappings().all()
        members = self._members_for([str(r["id"]) for r in rows])
        return [_group_from_row(r, members.get(str(r["id"]), [])) for r in rows]

    def get_group(self, group_id: str) -> MatchingGroup | None:
        row = self.db.execute(
            text(f"SELECT {_GROUP_COLUMNS} FROM matching_group WHERE id = CAST(:id AS uuid)"),
            {"id": group_id},
        ).mappings().first()
        if not row:
            return None
        return _group_from_row(row, self._members_for([str(row["id"])]).get(str(row["id"]), []))

    def max_group_number(self, run_id: str) -> int:
        row = self.db.execute(
            text("SELECT COALESCE(MAX(group_number), 0) AS n FROM matching_group WHERE run_id = CAST(:run_id AS uuid)"),
            {"run_id": run_id},
        ).mappings().first()
        return int(row["n"]) if row else 0

    def insert_group(self, group: MatchingGroup) -> None:
        try:
            self.db.execute(
                text(
                    """
                    INSERT INTO matching_group (
                      id, run_id, event_id, group_number, min_size, max_size, version,
                      is_remainder, is_manual, created_at, updated_at
                    )
                    VALUES (
                      CAST(:id AS uuid), CAST(:run_id AS uuid), :event_id, :group_number, :min_size, :max_size,
                      :version, :is_remainder, :is_manual, :created_at, :updated_at
                    )
                    """
                ),
                {
                    "id": group.id,
                    "run_id": group.run_id,
                    "event_id": group.event_id,
                    "group_number": group.group_number,
                    "min_size": group.min_size,
                    "max_size": group.max_size,
                    "version": group.version,
                    "is_remainder": group.is_remainder,
                    "is_manual": group.is_manual,
                    "created_at": group.created_at,
                    "updated_at": group.updated_at,
                },
            )
        except IntegrityError as exc:
            raise ConcurrentModification(
                "Group number already taken in this run",
                {"run_id": group.run_id, "group_number": group.group_number},
            ) from exc
        for member in group.members:
            self.insert_member(group.run_id, member)

    def insert_member(self, run_id: str, member: GroupMember) -> None:
        try:
            self.db.execute(
                text(
                    """
                    INSERT INTO matching_group_member (
                      group_id, run_id, user_id, assigned_by, assigned_by_actor, assigned_at, note
                    )
                    VALUES (
                      CAST(:group_id AS uuid), CAST(:run_id AS uuid), :user_id, :assigned_by,
                      :assigned_by_actor, :assigned_at, :note
                    )
                    """
                ),
                {
                    "group_id": member.group_id,
                    "run_id": run_id,
                    "user_id": member.user_id,
                    "assigned_by": member.assigned_by.value,
                    "assigned_by_actor": member.assigned_by_actor,
                    "assigned_at": member.assigned_at,
                    "note": member.note,
                },
            )
        except IntegrityError as exc:
            raise ParticipantAlreadyAssigned(
                f"User {member.user_id} already has an active group in this run",
                {"run_id": run_id, "user_id": member.user_id},
            ) from exc

    def mark_member_removed(self, group_id: str, user_id: str, at: datetime) -> bool:
        result = self.db.execute(
            text(
                """
                UPDATE matching_group_member
                SET removed_at = :at
                WHERE group_id = CAST(:group_id AS uuid) AND user_id = :user_id AND removed_at IS NULL
                """
            ),
            {"group_id": group_id, "user_id": user_id, "at": at},
        )
        return bool(result.rowcount)

    def touch_group(self, group_id: str, expected_version: int, at: datetime, is_remainder: bool | None = None) -> int:
        """Bump the group's version if it still matches ``expected_version``."""
        result = self.db.execute(
            text(
                """
                UPDATE matching_group
                SET version = version + 1,
                    updated_at = :at,
                    is_remainder = COALESCE(CAST(:is_remainder AS boolean), is_remainder)
                WHERE id = CAST(:id AS uuid) AND version = :expected
                """
            ),
            {"id": group_id, "expected": expected_version, "at": at, "is_remainder": is_remainder},
        )
        if not result.rowcount:
            raise ConcurrentModification(
                "Group was modified concurrently",
                {"group_id": group_id, "expected_version": expected_version},
            )
        return expected_version + 1

    def active_member_user_ids(self, run_id: str) -> set[str]:
        rows = self.db.execute(
            text(
                """
                SELECT user_id FROM matching_group_member
                WHERE run_id = CAST(:run_id AS uuid) AND removed_at IS NULL
                """
            ),
            {"run_id": run_id},
        ).mappings().all()
        return {str(r["user_id"]) for r in rows}

    def find_active_group_id(self, run_id: str, user_id: str) -> str | None:
        row = self.db.execute(
            text(
                """
                SELECT group_id FROM matching_group_member
                WHERE run_id = CAST(:run_id AS uuid) AND user_id = :user_id AND removed_at IS NULL
                """
            ),
            {"run_id": run_id, "user_id": user_id},
        ).mappings().first()
        return str(row["group_id"]) if row else None

    def append_audit(self, entry: MatchingAuditEntry) -> None:
        self.db.execute(
            text(
                """
                INSERT INTO matching_audit_entry (id, run_id, event_id, actor_id, action, before_state, after_state, created_at)
                VALUES (
                  CAST(:id AS uuid), CAST(:run_id AS uuid), :event_id, :actor_id, :action,
                  CAST(:before_state AS jsonb), CAST(:after_state AS jsonb), :created_at
                )
                """
            ),
            {
                "id": entry.id,
                "run_id": entry.run_id,
                "event_id": entry.event_id,
                "actor_id": entry.actor_id,
                "action": entry.action,
                "before_state": json.dumps(entry.before_state, default=str),
                "after_state": json.dumps(entry.after_state, default=str),
                "created_at": entry.timestamp,
            },
        )

    def list_audit(self, event_id: str) -> list[MatchingAuditEntry]:
        rows = self.db.execute(
            text(
                """
                SELECT id, run_id, event_id, actor_id, action, before_state, after_state, created_at
                FROM matching_audit_entry
                WHERE event_id = :event_id
                ORDER BY created_at ASC, id ASC
                """
            ),
            {"event_id": event_id},
        ).mappings().all()
        return [
            MatchingAuditEntry(
                id=str(r["id"]),
                run_id=str(r["run_id"]),
                event_id=str(r["event_id"]),
                actor_id=r["actor_id"],
                action=str(r["action"]),
                before_state=dict(r["before_state"] or {}),
                after_state=dict(r["after_state"] or {}),
                timestamp=r["created_at"],
            )
            for r in rows
        ]


class SqlMatchingRepository:
    def __init__(self, session_factory, statement_timeout_ms: int | None = None):
        self._session_factory = session_factory
        self._statement_timeout_ms = statement_timeout_ms

    @contextmanager
    def transaction(self) -> Iterator[SqlMatchingTransaction]:
        db = self._session_factory()
        try:
            if self._statement_timeout_ms:
                db.execute(text(f"SET LOCAL statement_timeout = {int(self._statement_timeout_ms)}"))
            yield SqlMatchingTransaction(db)
            db.commit()
        except OperationalError as exc:
            db.rollback()
            if _is_statement_timeout(exc):
                logger.warning("[MATCHING] statement timeout, transaction rolled back")
                raise Timeout("Database operation timed out") from exc
            raise
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
