"""
In-process matching repository.

Each transaction works on a private copy of the store and publishes its
changes on exit after re-checking the versions it read, so concurrent
transactions behave like the PostgreSQL repository: the per-event lock fails
fast, stale group versions raise ``ConcurrentModification`` and the
one-active-membership rule is enforced at commit.
"""

import copy
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator

from matchengine.domain import GroupMember, MatchingAuditEntry, MatchingGroup, MatchingRun, RunStatus
from matchengine.errors import ConcurrentModification, ParticipantAlreadyAssigned


@dataclass
class _Store:
    runs: dict[str, MatchingRun] = field(default_factory=dict)
    groups: dict[str, MatchingGroup] = field(default_factory=dict)
    audit: list[MatchingAuditEntry] = field(default_factory=list)


def _active_user_ids(groups, run_id: str) -> list[str]:
    return [m.user_id for g in groups if g.run_id == run_id for m in g.active_members]


class InMemoryMatchingTransaction:
    def __init__(self, repository: "InMemoryMatchingRepository", state: _Store):
        self._repository = repository
        self._state = state
        self._base_versions: dict[str, int] = {}
        self._new_group_ids: set[str] = set()
        self._dirty_groups: set[str] = set()
        self._dirty_runs: set[str] = set()
        self._new_runs: set[str] = set()
        self._new_audit: list[MatchingAuditEntry] = []
        self._touched_runs: set[str] = set()
        self.held_locks: set[str] = set()

    def _has_writes(self) -> bool:
        return bool(self._dirty_groups or self._dirty_runs or self._new_runs or self._new_audit)

    def try_lock_event(self, event_id: str) -> bool:
        """Take the event lock. A transaction with no writes yet re-reads the store under it."""
        if self._has_writes():
            if not self._repository.acquire_event_lock(event_id):
                return False
        else:
            fresh = self._repository.lock_and_snapshot(event_id)
            if fresh is None:
                return False
            self._state = fresh
        self.held_locks.add(event_id)
        return True

    def get_committed_run(self, event_id: str) -> MatchingRun | None:
        runs = [
            r for r in self._state.runs.values() if r.event_id == event_id and r.status == RunStatus.COMMITTED
        ]
        if not runs:
            return None
        return copy.deepcopy(max(runs, key=lambda r: r.committed_at or r.created_at))

    def list_runs(self, event_id: str) -> list[MatchingRun]:
        runs = [r for r in self._state.runs.values() if r.event_id == event_id]
        return copy.deepcopy(sorted(runs, key=lambda r: r.created_at))

    def insert_run(self, run: MatchingRun) -> None:
        self._state.runs[run.id] = copy.deepcopy(run)
        self._new_runs.add(run.id)
        self._dirty_runs.add(run.id)

    def update_run_status(self, run_id: str, status: RunStatus, at: datetime) -> None:
        run = self._state.runs[run_id]
        run.status = status
        if status == RunStatus.SUPERSEDED:
            run.superseded_at = at
        else:
            run.committed_at = at
        self._dirty_runs.add(run_id)

    def list_groups(self, run_id: str) -> list[MatchingGroup]:
        groups = [g for g in self._state.groups.values() if g.run_id == run_id]
        return copy.deepcopy(sorted(groups, key=lambda g: g.group_number))

    def get_group(self, group_id: str) -> MatchingGroup | None:
        group = self._state.groups.get(group_id)
        return copy.deepcopy(group) if group else None

    def max_group_number(self, run_id: str) -> int:
        return max((g.group_number for g in self._state.groups.values() if g.run_id == run_id), default=0)

    def _mutable_group(self, group_id: str) -> MatchingGroup:
        group = self._state.groups[group_id]
        if group_id not in self._new_group_ids:
            self._base_versions.setdefault(group_id, group.version)
        self._dirty_groups.add(group_id)
        self._touched_runs.add(group.run_id)
        return group

    def insert_group(self, group: MatchingGroup) -> None:
        taken = any(
            g.run_id == group.run_id and g.group_number == group.group_number for g in self._state.groups.values()
        )
        if taken:
            raise ConcurrentModification(
                "Group number already taken in this run",
                {"run_id": group.run_id, "group_number": group.group_number},
            )
        members = list(group.members)
        stored = copy.deepcopy(group)
        stored.members = []
        self._state.groups[group.id] = stored
        self._new_group_ids.add(group.id)
        self._dirty_groups.add(group.id)
        self._touched_runs.add(group.run_id)
        for member in members:
            self.insert_member(group.run_id, member)

    def insert_member(self, run_id: str, member: GroupMember) -> None:
        if member.user_id in _active_user_ids(self._state.groups.values(), run_id):
            raise ParticipantAlreadyAssigned(
                f"User {member.user_id} already has an active group in this run",
                {"run_id": run_id, "user_id": member.user_id},
            )
        self._mutable_group(member.group_id).members.append(copy.deepcopy(member))

    def mark_member_removed(self, group_id: str, user_id: str, at: datetime) -> bool:
        group = self._state.groups.get(group_id)
        if group is None or not group.has_member(user_id):
            return False
        group = self._mutable_group(group_id)
        for m in group.members:
            if m.user_id == user_id and m.active:
                m.removed_at = at
        return True

    def touch_group(self, group_id: str, expected_version: int, at: datetime, is_remainder: bool | None = None) -> int:
        group = self._state.groups.get(group_id)
        if group is None or group.version != expected_version:
            raise ConcurrentModification(
                "Group was modified concurrently",
                {"group_id": group_id, "expected_version": expected_version},
            )
        group = self._mutable_group(group_id)
        group.version += 1
        group.updated_at = at
        if is_remainder is not None:
            group.is_remainder = is_remainder
        return group.version

    def active_member_user_ids(self, run_id: str) -> set[str]:
        return set(_active_user_ids(self._state.groups.values(), run_id))

    def find_active_group_id(self, run_id: str, user_id: str) -> str | None:
        for g in self._state.groups.values():
            if g.run_id == run_id and g.has_member(user_id):
                return g.id
        return None

    def append_audit(self, entry: MatchingAuditEntry) -> None:
        self._state.audit.append(entry)
        self._new_audit.append(entry)

    def list_audit(self, event_id: str) -> list[MatchingAuditEntry]:
        return [e for e in self._state.audit if e.event_id == event_id]

    def publish(self, store: _Store) -> None:
        """Apply this transaction's writes to ``store``. Caller holds the store lock."""
        for group_id, base in self._base_versions.items():
            current = store.groups.get(group_id)
            if current is None or current.version != base:
                raise ConcurrentModification(
                    "Group was modified concurrently",
                    {"group_id": group_id, "expected_version": base},
                )
        for group_id in self._new_group_ids:
            group = self._state.groups[group_id]
            if any(
                g.run_id == group.run_id and g.group_number == group.group_number and g.id != group_id
                for g in store.groups.values()
            ):
                raise ConcurrentModification(
                    "Group number already taken in this run",
                    {"run_id": group.run_id, "group_number": group.group_number},
                )
        for run_id in self._new_runs:
            run = self._state.runs[run_id]
            if run.status == RunStatus.COMMITTED and any(
                r.event_id == run.event_id and r.status == RunStatus.COMMITTED for r in store.runs.values()
            ):
                raise ConcurrentModification("Event already has a committed run", {"event_id": run.event_id})

        merged = dict(store.groups)
        merged.update({gid: self._state.groups[gid] for gid in self._dirty_groups})
        for run_id in self._touched_runs:
            user_ids = _active_user_ids(merged.values(), run_id)
            duplicates = sorted({uid for uid in user_ids if user_ids.count(uid) > 1})
            if duplicates:
                raise ParticipantAlreadyAssigned(
                    "Participant assigned concurrently to another group",
                    {"run_id": run_id, "user_ids": duplicates},
                )

        for group_id in self._dirty_groups:
            store.groups[group_id] = self._state.groups[group_id]
        for run_id in self._dirty_runs:
            store.runs[run_id] = self._state.runs[run_id]
        store.audit.extend(self._new_audit)


class InMemoryMatchingRepository:
    def __init__(self):
        self._store = _Store()
        self._lock = threading.Lock()
        self._event_locks: set[str] = set()

    def acquire_event_lock(self, event_id: str) -> bool:
        with self._lock:
            if event_id in self._event_locks:
                return False
            self._event_locks.add(event_id)
            return True

    def lock_and_snapshot(self, event_id: str) -> _Store | None:
        with self._lock:
            if event_id in self._event_locks:
                return None
            self._event_locks.add(event_id)
            return copy.deepcopy(self._store)

    def _release_event_locks(self, event_ids: set[str]) -> None:
        with self._lock:
            self._event_locks.difference_update(event_ids)

    @contextmanager
    def transaction(self) -> Iterator[InMemoryMatchingTransaction]:
        with self._lock:
            snapshot = copy.deepcopy(self._store)
        tx = InMemoryMatchingTransaction(self, snapshot)
        try:
            yield tx
            with self._lock:
                tx.publish(self._store)
        finally:
            self._release_event_locks(tx.held_locks)

    def all_runs(self) -> list[MatchingRun]:
        with self._lock:
            return copy.deepcopy(list(self._store.runs.values()))

    def all_groups(self) -> list[MatchingGroup]:
        with self._lock:
            return copy.deepcopy(list(self._store.groups.values()))

    def all_audit(self) -> list[MatchingAuditEntry]:
        with self._lock:
            return list(self._store.audit)
