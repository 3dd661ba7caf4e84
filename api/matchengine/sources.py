"""
Read-only views onto the collaborator subsystems the engine consumes.

Payments decide who holds a paid ticket, the personality subsystem supplies
trait profiles, and the events catalogue answers whether an event exists and which
events are about to start. The SQL implementation reads their tables directly;
the in-memory one backs local development and tests.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import bindparam, text


@dataclass(frozen=True)
class PaidTicket:
    user_id: str
    transaction_id: str
    paid_at: datetime


@dataclass(frozen=True)
class PersonalityProfile:
    user_id: str
    trait_vector: tuple[Any, ...]
    gender_mix_preference: str | None = None
    relationship_intent: tuple[str, ...] = ()
    gender: str | None = None
    display_name: str | None = None


def _intents(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


class SqlParticipantSource:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def event_exists(self, event_id: str) -> bool:
        with self._session_factory() as db:
            row = db.execute(text("SELECT id FROM event WHERE id = :event_id"), {"event_id": event_id}).first()
        return row is not None

    def list_events_starting_between(self, start: datetime, end: datetime) -> list[str]:
        """Published, active events whose start time falls in [start, end)."""
        with self._session_factory() as db:
            rows = db.execute(
                text(
                    """
                    SELECT id
                    FROM event
                    WHERE start_time >= :start
                      AND start_time < :end
                      AND status = 'PUBLISHED'
                      AND is_active = true
                    ORDER BY start_time ASC, id ASC
                    """
                ),
                {"start": start, "end": end},
            ).mappings().all()
        return [str(r["id"]) for r in rows]

    def list_paid_tickets(self, event_id: str) -> list[PaidTicket]:
        with self._session_factory() as db:
            rows = db.execute(
                text(
                    """
                    SELECT t.id AS transaction_id, t.user_id, t.paid_at
                    FROM event_transaction t
                    WHERE t.event_id = :event_id
                      AND t.status = 'PAID'
                      AND t.cancelled_at IS NULL
                    ORDER BY t.paid_at ASC, t.user_id ASC
                    """
                ),
                {"event_id": event_id},
            ).mappings().all()
        return [
            PaidTicket(user_id=str(r["user_id"]), transaction_id=str(r["transaction_id"]), paid_at=r["paid_at"])
            for r in rows
        ]

    def get_profiles(self, user_ids: Iterable[str]) -> dict[str, PersonalityProfile]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        stmt = text(
            """
            SELECT pr.user_id, pr.energy_score, pr.openness_score, pr.structure_score, pr.affect_score,
                   pr.lifestyle_score, pr.comfort_score, pr.gender_mix_comfort, pr.relationship_intent,
                   ua.gender, ua.display_name
            FROM personality_result pr
            LEFT JOIN user_account ua ON ua.id = pr.user_id
            WHERE pr.user_id IN :user_ids
            """
        ).bindparams(bindparam("user_ids", expanding=True))
        with self._session_factory() as db:
            rows = db.execute(stmt, {"user_ids": ids}).mappings().all()
        out: dict[str, PersonalityProfile] = {}
        for r in rows:
            uid = str(r["user_id"])
            out[uid] = PersonalityProfile(
                user_id=uid,
                trait_vector=(
                    r["energy_score"],
                    r["openness_score"],
                    r["structure_score"],
                    r["affect_score"],
                    r["lifestyle_score"],
                    r["comfort_score"],
                ),
                gender_mix_preference=r["gender_mix_comfort"],
                relationship_intent=_intents(r["relationship_intent"]),
                gender=r["gender"],
                display_name=r["display_name"],
            )
        return out


@dataclass
class InMemoryParticipantSource:
    events: set[str] = field(default_factory=set)
    starts_at: dict[str, datetime] = field(default_factory=dict)
    tickets: dict[str, list[PaidTicket]] = field(default_factory=dict)
    profiles: dict[str, PersonalityProfile] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def add_event(self, event_id: str, starts_at: datetime | None = None) -> None:
        with self._lock:
            self.events.add(event_id)
            self.tickets.setdefault(event_id, [])
            if starts_at is not None:
                self.starts_at[event_id] = starts_at

    def add_ticket(self, event_id: str, ticket: PaidTicket) -> None:
        with self._lock:
            self.events.add(event_id)
            self.tickets.setdefault(event_id, []).append(ticket)

    def cancel_ticket(self, event_id: str, user_id: str) -> None:
        with self._lock:
            self.tickets[event_id] = [t for t in self.tickets.get(event_id, []) if t.user_id != user_id]

    def add_profile(self, profile: PersonalityProfile) -> None:
        with self._lock:
            self.profiles[profile.user_id] = profile

    def event_exists(self, event_id: str) -> bool:
        return event_id in self.events

    def list_events_starting_between(self, start: datetime, end: datetime) -> list[str]:
        with self._lock:
            due = [(at, eid) for eid, at in self.starts_at.items() if start <= at < end]
        return [eid for _, eid in sorted(due)]

    def list_paid_tickets(self, event_id: str) -> list[PaidTicket]:
        with self._lock:
            tickets = list(self.tickets.get(event_id, []))
        return sorted(tickets, key=lambda t: (t.paid_at, t.user_id))

    def get_profiles(self, user_ids: Iterable[str]) -> dict[str, PersonalityProfile]:
        with self._lock:
            return {uid: self.profiles[uid] for uid in user_ids if uid in self.profiles}
