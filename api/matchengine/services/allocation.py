"""
Greedy seed-and-grow group allocation.

The allocator is deterministic: identical ordered input always yields identical
groups, numbering and member order. Paid order (the input order) breaks every
tie. It never forms a group below ``min_size``; anyone it cannot place lands in
the ``unassignable`` bucket for manual handling.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from matchengine.domain import GroupSizing, Participant
from matchengine.services.scoring import ScoreMatrix, build_score_matrix, group_score, min_pair_score

logger = logging.getLogger(__name__)


@dataclass
class ProposedGroup:
    group_number: int
    members: list[Participant]
    aggregate_score: float
    min_score: float

    @property
    def member_ids(self) -> list[str]:
        return [p.user_id for p in self.members]

    @property
    def size(self) -> int:
        return len(self.members)

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_number": self.group_number,
            "size": self.size,
            "aggregate_score": round(self.aggregate_score, 6),
            "min_score": round(self.min_score, 6),
            "members": [p.summary() for p in self.members],
        }


@dataclass
class Allocation:
    groups: list[ProposedGroup] = field(default_factory=list)
    unassignable: list[Participant] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def assigned_user_ids(self) -> list[str]:
        return [uid for g in self.groups for uid in g.member_ids]


def plan_group_sizes(pool_size: int, sizing: GroupSizing) -> list[int]:
    """Per-group targets, largest first, that cover as much of the pool as the bounds allow."""
    if pool_size < sizing.min_size:
        return []
    best: tuple[tuple[float, int], int] | None = None
    for count in range(1, pool_size // sizing.min_size + 1):
        if count * sizing.min_size <= pool_size <= count * sizing.max_size:
            key = (abs(pool_size / count - sizing.target_size), count)
            if best is None or key < best[0]:
                best = (key, count)
    if best is not None:
        count = best[1]
        covered = pool_size
    else:
        # No count fits everyone: fill as many maximum-size groups as the pool allows.
        count = pool_size // sizing.max_size
        covered = count * sizing.max_size
    base, extra = divmod(covered, count)
    return [base + 1] * extra + [base] * (count - extra)


class _SeedQueue:
    """Compatible pairs in seed order. Consumed entries never become valid again."""

    def __init__(self, user_ids: Sequence[str], matrix: ScoreMatrix, rank: dict[str, int]):
        pairs = []
        for i, a in enumerate(user_ids):
            for b in user_ids[i + 1:]:
                if matrix.compatible(a, b):
                    first, second = sorted((a, b), key=rank.__getitem__)
                    pairs.append((-matrix.score(a, b), rank[first], rank[second], first, second))
        pairs.sort()
        self._pairs = [(p[3], p[4]) for p in pairs]
        self._cursor = 0
        self.rejected: set[tuple[str, str]] = set()

    def next_seed(self, assigned: set[str]) -> tuple[str, str] | None:
        while self._cursor < len(self._pairs):
            a, b = self._pairs[self._cursor]
            if a in assigned or b in assigned or (a, b) in self.rejected:
                self._cursor += 1
                continue
            return a, b
        return None


def _grow(seed: list[str], pool: list[str], target: int, matrix: ScoreMatrix, rank: dict[str, int]) -> list[str]:
    members = list(seed)
    candidates = [uid for uid in pool if uid not in members]
    while len(members) < target:
        best: tuple[tuple[float, int], str] | None = None
        for uid in candidates:
            if not matrix.compatible_with_all(uid, members):
                continue
            key = (-matrix.average_with(uid, members), rank[uid])
            if best is None or key < best[0]:
                best = (key, uid)
        if best is None:
            break
        members.append(best[1])
        candidates.remove(best[1])
    return members


def _merge_leftover(uid: str, groups: list[list[str]], sizing: GroupSizing, matrix: ScoreMatrix) -> int | None:
    best: tuple[tuple[float, int], int] | None = None
    for idx, members in enumerate(groups):
        if len(members) >= sizing.max_size:
            continue
        if not matrix.compatible_with_all(uid, members):
            continue
        delta = group_score(members + [uid], matrix) - group_score(members, matrix)
        key = (-delta, idx)
        if best is None or key < best[0]:
            best = (key, idx)
    return best[1] if best is not None else None


def allocate(
    participants: Sequence[Participant],
    sizing: GroupSizing,
    cfg: Mapping[str, Any] | None = None,
    matrix: ScoreMatrix | None = None,
) -> Allocation:
    """Partition ``participants`` (in paid order) into groups within ``sizing``."""
    if not participants:
        return Allocation()

    by_id: dict[str, Participant] = {}
    for p in participants:
        if p.user_id in by_id:
            raise ValueError(f"Duplicate participant {p.user_id}")
        by_id[p.user_id] = p
    order = [p.user_id for p in participants]
    rank = {uid: idx for idx, uid in enumerate(order)}
    matrix = matrix or build_score_matrix(participants, cfg)

    targets = plan_group_sizes(len(order), sizing)
    seeds = _SeedQueue(order, matrix, rank)
    assigned: set[str] = set()
    groups: list[list[str]] = []

    for target in targets:
        formed: list[str] | None = None
        while formed is None and target > 1:
            seed = seeds.next_seed(assigned)
            if seed is None:
                break
            pool = [uid for uid in order if uid not in assigned]
            members = _grow(list(seed), pool, target, matrix, rank)
            if len(members) >= sizing.min_size:
                formed = members
            else:
                seeds.rejected.add(seed)
        if formed is None and sizing.min_size == 1:
            loners = [uid for uid in order if uid not in assigned]
            if loners:
                formed = [loners[0]]
        if formed is None:
            break
        groups.append(formed)
        assigned.update(formed)

    warnings: list[str] = []
    unassignable: list[str] = []
    for uid in order:
        if uid in assigned:
            continue
        idx = _merge_leftover(uid, groups, sizing, matrix)
        if idx is None:
            unassignable.append(uid)
        else:
            groups[idx].append(uid)
            assigned.add(uid)

    if unassignable:
        warnings.append(
            f"{len(unassignable)} participant(s) could not be placed within size {sizing.min_size}-{sizing.max_size}"
        )
        logger.info("[MATCHING] unassignable=%s of pool=%s", len(unassignable), len(order))

    groups.sort(key=lambda members: min(rank[uid] for uid in members))
    proposed = []
    for number, members in enumerate(groups, start=1):
        ordered = sorted(members, key=rank.__getitem__)
        proposed.append(
            ProposedGroup(
                group_number=number,
                members=[by_id[uid] for uid in ordered],
                aggregate_score=group_score(ordered, matrix),
                min_score=min_pair_score(ordered, matrix),
            )
        )
    return Allocation(groups=proposed, unassignable=[by_id[uid] for uid in unassignable], warnings=warnings)
