from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from matchengine.errors import InvalidGroupSize, InvalidTraitVector

TRAIT_DIMENSIONS = ("energy", "openness", "structure", "affect", "lifestyle", "comfort")
COSINE_DIMENSIONS = ("energy", "openness", "structure", "affect")
TRAIT_MIN = -10.0
TRAIT_MAX = 10.0
PARTICIPANT_SCHEMA_VERSION = 1


class GenderMixPreference(str, Enum):
    TOTALLY_FINE = "TOTALLY_FINE"
    PREFER_SAME_GENDER = "PREFER_SAME_GENDER"
    DEPENDS = "DEPENDS"


class RunStatus(str, Enum):
    PREVIEW = "PREVIEW"
    COMMITTED = "COMMITTED"
    SUPERSEDED = "SUPERSEDED"


class AssignedBy(str, Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"


def _normalize_token(value: Any) -> str | None:
    if value is None:
        return None
    v = str(value).strip().lower()
    return v or None


def validate_trait_vector(values: Any, user_id: str | None = None) -> tuple[float, ...]:
    if values is None or isinstance(values, (str, bytes)):
        raise InvalidTraitVector("Trait vector is missing", {"user_id": user_id})
    try:
        items = list(values)
    except TypeError as exc:
        raise InvalidTraitVector("Trait vector is not a sequence", {"user_id": user_id}) from exc
    if len(items) != len(TRAIT_DIMENSIONS):
        raise InvalidTraitVector(
            f"Trait vector must have {len(TRAIT_DIMENSIONS)} dimensions",
            {"user_id": user_id, "dimensions": len(items)},
        )
    out: list[float] = []
    for name, raw in zip(TRAIT_DIMENSIONS, items):
        if isinstance(raw, bool) or not isinstance(raw, (int, float, Decimal)):
            raise InvalidTraitVector("Trait value must be numeric", {"user_id": user_id, "dimension": name})
        value = float(raw)
        if not math.isfinite(value) or value < TRAIT_MIN or value > TRAIT_MAX:
            raise InvalidTraitVector(
                "Trait value out of range",
                {"user_id": user_id, "dimension": name, "value": raw},
            )
        out.append(value)
    return tuple(out)


def parse_gender_mix_preference(value: Any, user_id: str | None = None) -> GenderMixPreference:
    if isinstance(value, GenderMixPreference):
        return value
    if value is None:
        return GenderMixPreference.TOTALLY_FINE
    try:
        return GenderMixPreference(str(value).strip().upper())
    except ValueError as exc:
        raise InvalidTraitVector(
            "Unknown gender mix preference",
            {"user_id": user_id, "gender_mix_preference": value},
        ) from exc


@dataclass(frozen=True)
class Participant:
    """A paid, profiled attendee. Immutable once resolved."""

    user_id: str
    event_id: str
    transaction_id: str
    paid_at: datetime
    trait_vector: tuple[float, ...]
    gender_mix_preference: GenderMixPreference = GenderMixPreference.TOTALLY_FINE
    relationship_intent: tuple[str, ...] = ()
    gender: str | None = None
    display_name: str | None = None
    schema_version: int = PARTICIPANT_SCHEMA_VERSION

    def __post_init__(self) -> None:
        object.__setattr__(self, "trait_vector", validate_trait_vector(self.trait_vector, self.user_id))
        object.__setattr__(
            self,
            "gender_mix_preference",
            parse_gender_mix_preference(self.gender_mix_preference, self.user_id),
        )
        intents: list[str] = []
        for item in self.relationship_intent or ():
            v = _normalize_token(item)
            if v and v not in intents:
                intents.append(v)
        object.__setattr__(self, "relationship_intent", tuple(sorted(intents)))
        object.__setattr__(self, "gender", _normalize_token(self.gender))

    def trait(self, name: str) -> float:
        return self.trait_vector[TRAIT_DIMENSIONS.index(name)]

    def summary(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "display_name": self.display_name,
            "transaction_id": self.transaction_id,
            "paid_at": self.paid_at.isoformat(),
            "gender_mix_preference": self.gender_mix_preference.value,
        }


@dataclass(frozen=True)
class GroupSizing:
    min_size: int
    target_size: int
    max_size: int

    def __post_init__(self) -> None:
        sizes = {"min_size": self.min_size, "target_size": self.target_size, "max_size": self.max_size}
        if any(isinstance(v, bool) or not isinstance(v, int) for v in sizes.values()):
            raise InvalidGroupSize("Group sizes must be integers", sizes)
        if not (1 <= self.min_size <= self.target_size <= self.max_size):
            raise InvalidGroupSize("Group sizes must satisfy 1 <= min <= target <= max", sizes)


@dataclass
class GroupMember:
    group_id: str
    user_id: str
    assigned_by: AssignedBy
    assigned_at: datetime
    assigned_by_actor: str | None = None
    removed_at: datetime | None = None
    note: str | None = None

    @property
    def active(self) -> bool:
        return self.removed_at is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "assigned_by": self.assigned_by.value,
            "assigned_by_actor": self.assigned_by_actor,
            "assigned_at": self.assigned_at.isoformat(),
            "removed_at": self.removed_at.isoformat() if self.removed_at else None,
            "note": self.note,
        }


@dataclass
class MatchingGroup:
    id: str
    run_id: str
    event_id: str
    group_number: int
    min_size: int
    max_size: int
    created_at: datetime
    updated_at: datetime
    members: list[GroupMember] = field(default_factory=list)
    version: int = 1
    is_remainder: bool = False
    is_manual: bool = False

    @property
    def active_members(self) -> list[GroupMember]:
        return [m for m in self.members if m.active]

    @property
    def member_ids(self) -> list[str]:
        return [m.user_id for m in self.active_members]

    @property
    def size(self) -> int:
        return len(self.active_members)

    @property
    def is_full(self) -> bool:
        return self.size >= self.max_size

    def has_member(self, user_id: str) -> bool:
        return any(m.user_id == user_id for m in self.active_members)

    def snapshot(self) -> dict[str, Any]:
        """Compact state used for audit before/after payloads."""
        return {
            "group_id": self.id,
            "group_number": self.group_number,
            "version": self.version,
            "is_remainder": self.is_remainder,
            "member_ids": self.member_ids,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "event_id": self.event_id,
            "group_number": self.group_number,
            "min_size": self.min_size,
            "max_size": self.max_size,
            "size": self.size,
            "version": self.version,
            "is_remainder": self.is_remainder,
            "is_manual": self.is_manual,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "members": [m.to_dict() for m in self.active_members],
        }


@dataclass
class MatchingRun:
    id: str
    event_id: str
    status: RunStatus
    created_at: datetime
    created_by: str | None = None
    committed_at: datetime | None = None
    superseded_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "created_by": self.created_by,
            "committed_at": self.committed_at.isoformat() if self.committed_at else None,
            "superseded_at": self.superseded_at.isoformat() if self.superseded_at else None,
        }


@dataclass(frozen=True)
class MatchingAuditEntry:
    id: str
    run_id: str
    event_id: str
    actor_id: str | None
    action: str
    before_state: dict[str, Any]
    after_state: dict[str, Any]
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "event_id": self.event_id,
            "actor_id": self.actor_id,
            "action": self.action,
            "before_state": self.before_state,
            "after_state": self.after_state,
            "timestamp": self.timestamp.isoformat(),
        }
