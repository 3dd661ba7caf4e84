from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from matchengine.domain import AssignedBy, GroupMember, GroupSizing, MatchingGroup, MatchingRun
from matchengine.errors import (
    ConcurrentModification,
    GroupCapacityExceeded,
    GroupNotFound,
    InvalidGroupSize,
    MatchingError,
    ParticipantAlreadyAssigned,
    ParticipantNotInGroup,
)
from matchengine.services.coordinator import require_committed_run
from matchengine.services.deadline import Deadline
from matchengine.services.events import log_matching_event

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _load_group(tx, run: MatchingRun, group_id: str) -> MatchingGroup:
    try:
        group_id = str(uuid.UUID(str(group_id)))
    except ValueError as exc:
        raise GroupNotFound(f"Group {group_id} not found", {"group_id": group_id}) from exc
    group = tx.get_group(group_id)
    if group is None or group.run_id != run.id:
        raise GroupNotFound(f"Group {group_id} not found in the committed run", {"group_id": group_id, "run_id": run.id})
    return group


def _check_version(group: MatchingGroup, expected_version: int | None) -> None:
    if expected_version is not None and int(expected_version) != group.version:
        raise ConcurrentModification(
            f"Group {group.id} is at version {group.version}, expected {expected_version}",
            {"group_id": group.id, "expected_version": expected_version, "current_version": group.version},
        )


def _ensure_unassigned(tx, run: MatchingRun, user_id: str) -> None:
    current = tx.find_active_group_id(run.id, user_id)
    if current:
        raise ParticipantAlreadyAssigned(
            f"User {user_id} is already assigned to group {current}",
            {"user_id": user_id, "group_id": current},
        )


def _ensure_capacity(group: MatchingGroup) -> None:
    if group.is_full:
        raise GroupCapacityExceeded(
            f"Group {group.group_number} is full",
            {"group_id": group.id, "size": group.size, "max_size": group.max_size},
        )


def _fills_remainder(group: MatchingGroup) -> bool | None:
    """Clear the remainder flag once an added member brings the group back to its minimum."""
    if group.is_remainder and group.size + 1 >= group.min_size:
        return False
    return None


class ManualOverrideService:
    """Admin edits of a committed run. Every edit is versioned, audited and provisioned."""

    def __init__(
        self,
        repository,
        resolver,
        *,
        sizing: GroupSizing,
        dispatcher=None,
        timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = _now_utc,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.repository = repository
        self.resolver = resolver
        self.sizing = sizing
        self.dispatcher = dispatcher
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._monotonic = monotonic

    def _deadline(self) -> Deadline:
        return Deadline(self.timeout_seconds, clock=self._monotonic)

    def _provision(self, event_id: str, groups: list[MatchingGroup]) -> None:
        if self.dispatcher is not None and groups:
            self.dispatcher.enqueue(event_id, groups)

    def assign_user_to_group(
        self,
        event_id: str,
        user_id: str,
        group_id: str,
        *,
        actor_id: str | None = None,
        expected_version: int | None = None,
        note: str | None = None,
    ) -> MatchingGroup:
        deadline = self._deadline()
        self.resolver.get_participant(event_id, user_id)
        with self.repository.transaction() as tx:
            run = require_committed_run(tx, event_id)
            group = _load_group(tx, run, group_id)
            _check_version(group, expected_version)
            _ensure_unassigned(tx, run, user_id)
            _ensure_capacity(group)

            now = self._clock()
            tx.insert_member(
                run.id,
                GroupMember(
                    group_id=group.id,
                    user_id=user_id,
                    assigned_by=AssignedBy.MANUAL,
                    assigned_at=now,
                    assigned_by_actor=actor_id,
                    note=note,
                ),
            )
            tx.touch_group(group.id, group.version, now, is_remainder=_fills_remainder(group))
            updated = tx.get_group(group.id)
            log_matching_event(
                tx,
                run_id=run.id,
                event_id=event_id,
                actor_id=actor_id,
                action="assign",
                before_state=group.snapshot(),
                after_state={**updated.snapshot(), "user_id": user_id, "note": note},
                at=now,
            )
            deadline.check("assign")
        logger.info("[OVERRIDE] assign event=%s user=%s group=%s actor=%s", event_id, user_id, group_id, actor_id)
        self._provision(event_id, [updated])
        return updated

    def move_user_between_groups(
        self,
        event_id: str,
        user_id: str,
        from_group_id: str,
        to_group_id: str,
        *,
        actor_id: str | None = None,
        from_version: int | None = None,
        to_version: int | None = None,
        note: str | None = None,
    ) -> tuple[MatchingGroup, MatchingGroup]:
        if from_group_id == to_group_id:
            raise ParticipantAlreadyAssigned(
                f"User {user_id} is already in group {to_group_id}",
                {"user_id": user_id, "group_id": to_group_id},
            )
        deadline = self._deadline()
        self.resolver.require_event(event_id)
        with self.repository.transaction() as tx:
            run = require_committed_run(tx, event_id)
            source = _load_group(tx, run, from_group_id)
            target = _load_group(tx, run, to_group_id)
            _check_version(source, from_version)
            _check_version(target, to_version)
            if not source.has_member(user_id):
                raise ParticipantNotInGroup(
                    f"User {user_id} is not in group {from_group_id}",
                    {"user_id": user_id, "group_id": from_group_id},
                )
            _ensure_capacity(target)
            if not source.is_remainder and source.size - 1 < source.min_size:
                raise InvalidGroupSize(
                    f"Moving {user_id} would leave group {source.group_number} below its minimum size",
                    {"group_id": source.id, "size": source.size, "min_size": source.min_size},
                )

            now = self._clock()
            tx.mark_member_removed(source.id, user_id, now)
            tx.insert_member(
                run.id,
                GroupMember(
                    group_id=target.id,
                    user_id=user_id,
                    assigned_by=AssignedBy.MANUAL,
                    assigned_at=now,
                    assigned_by_actor=actor_id,
                    note=note,
                ),
            )
            tx.touch_group(source.id, source.version, now)
            tx.touch_group(target.id, target.version, now, is_remainder=_fills_remainder(target))
            updated_source = tx.get_group(source.id)
            updated_target = tx.get_group(target.id)
            log_matching_event(
                tx,
                run_id=run.id,
                event_id=event_id,
                actor_id=actor_id,
                action="move",
                before_state={"from": source.snapshot(), "to": target.snapshot()},
                after_state={
                    "from": updated_source.snapshot(),
                    "to": updated_target.snapshot(),
                    "user_id": user_id,
                    "note": note,
                },
                at=now,
            )
            deadline.check("move")
        logger.info(
            "[OVERRIDE] move event=%s user=%s from=%s to=%s actor=%s",
            event_id,
            user_id,
            from_group_id,
            to_group_id,
            actor_id,
        )
        self._provision(event_id, [updated_source, updated_target])
        return updated_source, updated_target

    def remove_user_from_group(
        self,
        event_id: str,
        user_id: str,
        group_id: str,
        *,
        actor_id: str | None = None,
        expected_version: int | None = None,
        allow_undersized: bool = False,
        reason: str | None = None,
    ) -> MatchingGroup:
        deadline = self._deadline()
        self.resolver.require_event(event_id)
        with self.repository.transaction() as tx:
            run = require_committed_run(tx, event_id)
            group = _load_group(tx, run, group_id)
            _check_version(group, expected_version)
            if not group.has_member(user_id):
                raise ParticipantNotInGroup(
                    f"User {user_id} is not in group {group_id}",
                    {"user_id": user_id, "group_id": group_id},
                )

            becomes_remainder = None
            if not group.is_remainder and group.size - 1 < group.min_size:
                if not allow_undersized:
                    raise InvalidGroupSize(
                        f"Removing {user_id} would leave group {group.group_number} below its minimum size",
                        {"group_id": group.id, "size": group.size, "min_size": group.min_size},
                    )
                others = [g for g in tx.list_groups(run.id) if g.is_remainder and g.id != group.id and g.size]
                if others:
                    raise InvalidGroupSize(
                        "The run already has a remainder group",
                        {"group_id": group.id, "remainder_group_id": others[0].id},
                    )
                becomes_remainder = True

            now = self._clock()
            tx.mark_member_removed(group.id, user_id, now)
            tx.touch_group(group.id, group.version, now, is_remainder=becomes_remainder)
            updated = tx.get_group(group.id)
            log_matching_event(
                tx,
                run_id=run.id,
                event_id=event_id,
                actor_id=actor_id,
                action="remove",
                before_state=group.snapshot(),
                after_state={**updated.snapshot(), "user_id": user_id, "reason": reason},
                at=now,
            )
            deadline.check("remove")
        logger.info("[OVERRIDE] remove event=%s user=%s group=%s actor=%s", event_id, user_id, group_id, actor_id)
        self._provision(event_id, [updated])
        return updated

    def create_manual_group(
        self,
        event_id: str,
        member_ids: Iterable[str],
        *,
        actor_id: str | None = None,
        min_size: int | None = None,
        max_size: int | None = None,
        note: str | None = None,
    ) -> MatchingGroup:
        deadline = self._deadline()
        min_size = self.sizing.min_size if min_size is None else min_size
        max_size = self.sizing.max_size if max_size is None else max_size
        GroupSizing(min_size, min_size, max_size)

        members = [str(m) for m in member_ids]
        if len(set(members)) != len(members):
            raise InvalidGroupSize("Manual group lists a member more than once", {"member_ids": members})
        if not (min_size <= len(members) <= max_size):
            raise InvalidGroupSize(
                f"Manual group must have between {min_size} and {max_size} members",
                {"size": len(members), "min_size": min_size, "max_size": max_size},
            )
        self.resolver.get_participants(event_id, members)

        with self.repository.transaction() as tx:
            run = require_committed_run(tx, event_id)
            for user_id in members:
                _ensure_unassigned(tx, run, user_id)
            now = self._clock()
            group_id = str(uuid.uuid4())
            group = MatchingGroup(
                id=group_id,
                run_id=run.id,
                event_id=event_id,
                group_number=tx.max_group_number(run.id) + 1,
                min_size=min_size,
                max_size=max_size,
                created_at=now,
                updated_at=now,
                is_manual=True,
                members=[
                    GroupMember(
                        group_id=group_id,
                        user_id=user_id,
                        assigned_by=AssignedBy.MANUAL,
                        assigned_at=now,
                        assigned_by_actor=actor_id,
                        note=note,
                    )
                    for user_id in members
                ],
            )
            tx.insert_group(group)
            created = tx.get_group(group_id)
            log_matching_event(
                tx,
                run_id=run.id,
                event_id=event_id,
                actor_id=actor_id,
                action="create_group",
                before_state={},
                after_state={**created.snapshot(), "note": note},
                at=now,
            )
            deadline.check("create_group")
        logger.info("[OVERRIDE] create_group event=%s group=%s size=%s actor=%s", event_id, group_id, len(members), actor_id)
        self._provision(event_id, [created])
        return created

    def bulk_assign_users(
        self,
        event_id: str,
        assignments: Iterable[Mapping[str, Any]],
        *,
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        """Apply each assignment on its own; one failure never aborts the batch."""
        results: list[dict[str, Any]] = []
        for item in assignments:
            user_id = str(item.get("user_id") or "")
            group_id = str(item.get("group_id") or "")
            try:
                group = self.assign_user_to_group(
                    event_id,
                    user_id,
                    group_id,
                    actor_id=actor_id,
                    expected_version=item.get("expected_version"),
                    note=item.get("note"),
                )
                results.append({"user_id": user_id, "group_id": group_id, "ok": True, "version": group.version})
            except MatchingError as exc:
                logger.warning("[OVERRIDE] bulk assign user=%s group=%s failed: %s", user_id, group_id, exc.code)
                results.append(
                    {"user_id": user_id, "group_id": group_id, "ok": False, "error": exc.code, "detail": exc.message}
                )
        success = sum(1 for r in results if r["ok"])
        return {"results": results, "success_count": success, "failed_count": len(results) - success}
