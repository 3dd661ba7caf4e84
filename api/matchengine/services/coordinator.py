"""
Matching run coordination: preview, commit, results, invalidation and the
scheduled sweep that auto-matches events shortly before they start.

A preview is computed outside any lock and persists nothing. A trigger holds
the event lock for resolve, allocate and persist inside one transaction, then
hands the new groups to the provisioning dispatcher after the commit.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Sequence

from matchengine.domain import (
    AssignedBy,
    GroupMember,
    GroupSizing,
    MatchingGroup,
    MatchingRun,
    Participant,
    RunStatus,
)
from matchengine.errors import (
    MatchingAlreadyInProgress,
    MatchingError,
    NoCommittedRun,
    NoEligibleParticipants,
    ParticipantNotInGroup,
)
from matchengine.services.allocation import allocate
from matchengine.services.deadline import Deadline
from matchengine.services.events import log_matching_event
from matchengine.services.scoring import build_score_matrix
from matchengine.services.state_machine import transition_run
from matchengine.services.statistics import group_statistics, run_statistics

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def require_committed_run(tx, event_id: str) -> MatchingRun:
    run = tx.get_committed_run(event_id)
    if run is None:
        raise NoCommittedRun(f"Event {event_id} has no committed matching run", {"event_id": event_id})
    return run


@dataclass
class MatchingOutcome:
    run: MatchingRun
    groups: list[Any] = field(default_factory=list)
    unassignable: list[Participant] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    statistics: dict[str, Any] = field(default_factory=dict)
    group_scores: dict[str, dict[str, Any]] = field(default_factory=dict)
    created: bool = False

    def to_dict(self) -> dict[str, Any]:
        groups = []
        for g in self.groups:
            item = g.to_dict()
            if isinstance(g, MatchingGroup) and g.id in self.group_scores:
                item.update(self.group_scores[g.id])
            groups.append(item)
        return {
            "run": self.run.to_dict(),
            "groups": groups,
            "unassignable": [p.summary() for p in self.unassignable],
            "warnings": list(self.warnings),
            "statistics": self.statistics,
            "created": self.created,
        }


class MatchingCoordinator:
    def __init__(
        self,
        repository,
        resolver,
        *,
        sizing: GroupSizing,
        scoring_config: Mapping[str, Any] | None = None,
        dispatcher=None,
        timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = _now_utc,
        monotonic: Callable[[], float] = time.monotonic,
        auto_lead_hours: float = 24.0,
        auto_window_hours: float = 1.0,
    ):
        self.repository = repository
        self.resolver = resolver
        self.sizing = sizing
        self.scoring_config = scoring_config
        self.dispatcher = dispatcher
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._monotonic = monotonic
        self.auto_lead_hours = auto_lead_hours
        self.auto_window_hours = auto_window_hours
        self._auto_sweep = threading.Lock()

    def _deadline(self) -> Deadline:
        return Deadline(self.timeout_seconds, clock=self._monotonic)

    def _committed_scores(self, event_id: str, groups: Sequence[MatchingGroup], unassignable_count: int):
        members = {uid for g in groups for uid in g.member_ids}
        participants = [p for p in self.resolver.paid_participants(event_id, strict=False) if p.user_id in members]
        matrix = build_score_matrix(participants, self.scoring_config)
        known = {p.user_id for p in participants}
        member_lists = [[uid for uid in g.member_ids if uid in known] for g in groups]
        stats = run_statistics(member_lists, unassignable_count, matrix)
        per_group = {g.id: group_statistics(ids, matrix) for g, ids in zip(groups, member_lists)}
        return stats, per_group

    def preview_matching(self, event_id: str, actor_id: str | None = None) -> MatchingOutcome:
        deadline = self._deadline()
        with self.repository.transaction() as tx:
            participants = self.resolver.resolve_eligible(tx, event_id)
            committed = tx.get_committed_run(event_id)
            offset = tx.max_group_number(committed.id) if committed else 0
        deadline.check("resolve")

        matrix = build_score_matrix(participants, self.scoring_config)
        allocation = allocate(participants, self.sizing, self.scoring_config, matrix)
        deadline.check("allocate")

        groups = [replace(g, group_number=g.group_number + offset) for g in allocation.groups]
        stats = run_statistics([g.member_ids for g in groups], len(allocation.unassignable), matrix)
        run = MatchingRun(
            id=str(uuid.uuid4()),
            event_id=event_id,
            status=RunStatus.PREVIEW,
            created_at=self._clock(),
            created_by=actor_id,
        )
        logger.info(
            "[MATCHING] preview event=%s eligible=%s groups=%s unassignable=%s",
            event_id,
            len(participants),
            len(groups),
            len(allocation.unassignable),
        )
        return MatchingOutcome(
            run=run,
            groups=groups,
            unassignable=allocation.unassignable,
            warnings=allocation.warnings,
            statistics=stats,
        )

    def trigger_matching(self, event_id: str, actor_id: str | None = None) -> MatchingOutcome:
        deadline = self._deadline()
        new_groups: list[MatchingGroup] = []
        with self.repository.transaction() as tx:
            if not tx.try_lock_event(event_id):
                logger.warning("[MATCHING] trigger rejected, event=%s already locked", event_id)
                raise MatchingAlreadyInProgress(
                    f"Matching is already running for event {event_id}", {"event_id": event_id}
                )
            existing = tx.get_committed_run(event_id)
            participants = self.resolver.resolve_eligible(tx, event_id)
            deadline.check("resolve")

            if existing is None and not participants:
                raise NoEligibleParticipants(f"Event {event_id} has no eligible participants", {"event_id": event_id})

            allocation = allocate(participants, self.sizing, self.scoring_config)
            deadline.check("allocate")

            if existing is not None and not allocation.groups:
                logger.info("[MATCHING] trigger no-op event=%s run=%s", event_id, existing.id)
                groups = tx.list_groups(existing.id)
                outcome = MatchingOutcome(
                    run=existing,
                    groups=groups,
                    unassignable=allocation.unassignable,
                    warnings=allocation.warnings,
                )
            else:
                status = transition_run(existing.status if existing else None, "trigger")
                now = self._clock()
                if existing is None:
                    run = MatchingRun(
                        id=str(uuid.uuid4()),
                        event_id=event_id,
                        status=status,
                        created_at=now,
                        created_by=actor_id,
                        committed_at=now,
                    )
                    tx.insert_run(run)
                else:
                    run = existing
                offset = tx.max_group_number(run.id)
                for proposed in allocation.groups:
                    group_id = str(uuid.uuid4())
                    group = MatchingGroup(
                        id=group_id,
                        run_id=run.id,
                        event_id=event_id,
                        group_number=offset + proposed.group_number,
                        min_size=self.sizing.min_size,
                        max_size=self.sizing.max_size,
                        created_at=now,
                        updated_at=now,
                        members=[
                            GroupMember(
                                group_id=group_id,
                                user_id=p.user_id,
                                assigned_by=AssignedBy.AUTO,
                                assigned_at=now,
                                assigned_by_actor=actor_id,
                            )
                            for p in proposed.members
                        ],
                    )
                    tx.insert_group(group)
                    new_groups.append(group)
                log_matching_event(
                    tx,
                    run_id=run.id,
                    event_id=event_id,
                    actor_id=actor_id,
                    action="trigger",
                    before_state={"run_status": existing.status.value if existing else None, "group_count": offset},
                    after_state={
                        "run_status": status.value,
                        "new_group_ids": [g.id for g in new_groups],
                        "unassignable_user_ids": [p.user_id for p in allocation.unassignable],
                    },
                    at=now,
                )
                deadline.check("persist")
                outcome = MatchingOutcome(
                    run=run,
                    groups=tx.list_groups(run.id),
                    unassignable=allocation.unassignable,
                    warnings=allocation.warnings,
                    created=True,
                )

        if new_groups:
            logger.info("[MATCHING] committed event=%s run=%s new_groups=%s", event_id, outcome.run.id, len(new_groups))
            if self.dispatcher is not None:
                self.dispatcher.enqueue(event_id, new_groups)
        outcome.statistics, outcome.group_scores = self._committed_scores(
            event_id, outcome.groups, len(outcome.unassignable)
        )
        return outcome

    def get_results(self, event_id: str) -> MatchingOutcome:
        self.resolver.require_event(event_id)
        with self.repository.transaction() as tx:
            run = require_committed_run(tx, event_id)
            groups = tx.list_groups(run.id)
            unassigned = self.resolver.resolve_eligible(tx, event_id, strict=False)
        outcome = MatchingOutcome(run=run, groups=groups, unassignable=unassigned)
        outcome.statistics, outcome.group_scores = self._committed_scores(event_id, groups, len(unassigned))
        return outcome

    def get_history(self, event_id: str) -> dict[str, Any]:
        self.resolver.require_event(event_id)
        with self.repository.transaction() as tx:
            runs = tx.list_runs(event_id)
            audit = tx.list_audit(event_id)
        return {"runs": [r.to_dict() for r in runs], "audit": [e.to_dict() for e in audit]}

    def get_user_group(self, event_id: str, user_id: str) -> MatchingGroup:
        self.resolver.require_event(event_id)
        with self.repository.transaction() as tx:
            run = require_committed_run(tx, event_id)
            group_id = tx.find_active_group_id(run.id, user_id)
            group = tx.get_group(group_id) if group_id else None
        if group is None:
            raise ParticipantNotInGroup(
                f"User {user_id} is not in a group for event {event_id}",
                {"event_id": event_id, "user_id": user_id},
            )
        return group

    def list_unassigned(self, event_id: str) -> dict[str, Any]:
        with self.repository.transaction() as tx:
            return self.resolver.list_unassigned(tx, event_id)

    def eligibility_debug_counts(self, event_id: str) -> dict[str, int]:
        with self.repository.transaction() as tx:
            return self.resolver.eligibility_debug_counts(tx, event_id)

    def invalidate_run(self, event_id: str, actor_id: str | None = None) -> MatchingRun:
        self.resolver.require_event(event_id)
        deadline = self._deadline()
        with self.repository.transaction() as tx:
            if not tx.try_lock_event(event_id):
                raise MatchingAlreadyInProgress(
                    f"Matching is already running for event {event_id}", {"event_id": event_id}
                )
            run = require_committed_run(tx, event_id)
            status = transition_run(run.status, "invalidate")
            now = self._clock()
            tx.update_run_status(run.id, status, now)
            log_matching_event(
                tx,
                run_id=run.id,
                event_id=event_id,
                actor_id=actor_id,
                action="invalidate",
                before_state={"run_status": run.status.value},
                after_state={"run_status": status.value},
                at=now,
            )
            deadline.check("persist")
        logger.info("[MATCHING] invalidated event=%s run=%s", event_id, run.id)
        return replace(run, status=status, superseded_at=now)

    def auto_trigger_due_events(self, now: datetime | None = None) -> dict[str, Any]:
        """
        Commit matching for events starting in ``[now + lead, now + lead + window)``.

        Meant to be called on a schedule, e.g. hourly. Each event is matched at
        most once: an event with any run on record is skipped, and so is one
        whose lock is held. A matching error on one event is logged and the
        sweep carries on with the next. Overlapping sweeps are refused.
        """
        if not self._auto_sweep.acquire(blocking=False):
            logger.warning("[AUTO-MATCHING] sweep already in progress, skipping")
            return {"in_progress": True, "events": []}
        try:
            now = now or self._clock()
            window_start = now + timedelta(hours=self.auto_lead_hours)
            window_end = window_start + timedelta(hours=self.auto_window_hours)
            event_ids = self.resolver.source.list_events_starting_between(window_start, window_end)
            logger.info(
                "[AUTO-MATCHING] %s event(s) starting between %s and %s",
                len(event_ids),
                window_start.isoformat(),
                window_end.isoformat(),
            )
            results = [self._auto_trigger_event(event_id) for event_id in event_ids]
        finally:
            self._auto_sweep.release()

        matched = [r for r in results if r["status"] == "matched"]
        summary = {
            "in_progress": False,
            "window_start": window_start.isoformat(),
            "window_end": window_end.isoformat(),
            "processed": len(matched),
            "skipped": sum(1 for r in results if r["status"] == "skipped"),
            "failed": sum(1 for r in results if r["status"] == "failed"),
            "groups_formed": sum(r["groups_formed"] for r in matched),
            "participants_matched": sum(r["participants_matched"] for r in matched),
            "events": results,
        }
        logger.info(
            "[AUTO-MATCHING] done processed=%s skipped=%s failed=%s groups=%s participants=%s",
            summary["processed"],
            summary["skipped"],
            summary["failed"],
            summary["groups_formed"],
            summary["participants_matched"],
        )
        return summary

    def _auto_trigger_event(self, event_id: str) -> dict[str, Any]:
        with self.repository.transaction() as tx:
            has_runs = bool(tx.list_runs(event_id))
        if has_runs:
            return {"event_id": event_id, "status": "skipped", "reason": "already_matched"}
        try:
            outcome = self.trigger_matching(event_id, actor_id=SYSTEM_ACTOR)
        except MatchingAlreadyInProgress:
            return {"event_id": event_id, "status": "skipped", "reason": "in_progress"}
        except MatchingError as exc:
            logger.error("[AUTO-MATCHING] event=%s failed: %s: %s", event_id, exc.code, exc.message)
            return {"event_id": event_id, "status": "failed", "error": exc.code}
        if not outcome.created:
            return {"event_id": event_id, "status": "skipped", "reason": "already_matched"}
        return {
            "event_id": event_id,
            "status": "matched",
            "run_id": outcome.run.id,
            "groups_formed": len(outcome.groups),
            "participants_matched": sum(g.size for g in outcome.groups),
        }
