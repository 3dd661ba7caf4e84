from __future__ import annotations

import logging
from typing import Any, Iterable

from matchengine.domain import Participant
from matchengine.errors import EventNotFound, InvalidTraitVector, ParticipantNotEligible

logger = logging.getLogger(__name__)


def _to_participant(event_id: str, ticket, profile) -> Participant:
    return Participant(
        user_id=ticket.user_id,
        event_id=event_id,
        transaction_id=ticket.transaction_id,
        paid_at=ticket.paid_at,
        trait_vector=profile.trait_vector,
        gender_mix_preference=profile.gender_mix_preference,
        relationship_intent=profile.relationship_intent,
        gender=profile.gender,
        display_name=profile.display_name,
    )


class EligibilityResolver:
    """Derives an event's candidate pool from the payment and personality sources."""

    def __init__(self, source):
        self.source = source

    def require_event(self, event_id: str) -> None:
        if not self.source.event_exists(event_id):
            raise EventNotFound(f"Event {event_id} not found", {"event_id": event_id})

    def _paid_tickets(self, event_id: str) -> list:
        """One ticket per user, earliest payment first."""
        self.require_event(event_id)
        tickets = []
        seen: set[str] = set()
        for ticket in sorted(self.source.list_paid_tickets(event_id), key=lambda t: (t.paid_at, t.user_id)):
            if ticket.user_id in seen:
                continue
            seen.add(ticket.user_id)
            tickets.append(ticket)
        return tickets

    def _build(self, event_id: str, tickets: Iterable, *, strict: bool) -> list[Participant]:
        tickets = list(tickets)
        profiles = self.source.get_profiles([t.user_id for t in tickets])
        out: list[Participant] = []
        for ticket in tickets:
            profile = profiles.get(ticket.user_id)
            if profile is None:
                continue
            try:
                out.append(_to_participant(event_id, ticket, profile))
            except InvalidTraitVector as exc:
                if strict:
                    raise
                logger.warning(
                    "[MATCHING] skipping unusable profile event=%s user=%s: %s %s",
                    event_id,
                    ticket.user_id,
                    exc.message,
                    exc.details,
                )
        return out

    def paid_participants(self, event_id: str, *, strict: bool = True) -> list[Participant]:
        """
        Every paid, profiled participant of the event in paid order, grouped or not.

        With ``strict`` a malformed profile raises ``InvalidTraitVector``; otherwise
        it is logged and left out, which is what read paths want.
        """
        return self._build(event_id, self._paid_tickets(event_id), strict=strict)

    def paid_user_ids(self, event_id: str) -> set[str]:
        return {t.user_id for t in self._paid_tickets(event_id)}

    def _grouped_user_ids(self, tx, event_id: str) -> set[str]:
        run = tx.get_committed_run(event_id)
        if run is None:
            return set()
        return tx.active_member_user_ids(run.id)

    def resolve_eligible(self, tx, event_id: str, *, strict: bool = True) -> list[Participant]:
        """Paid, profiled participants with no active membership in the committed run."""
        grouped = self._grouped_user_ids(tx, event_id)
        return [p for p in self.paid_participants(event_id, strict=strict) if p.user_id not in grouped]

    def get_participants(self, event_id: str, user_ids: Iterable[str]) -> list[Participant]:
        """Resolve only the named users; any that are unpaid or unprofiled are reported together."""
        wanted = list(dict.fromkeys(user_ids))
        lookup = set(wanted)
        tickets = [t for t in self._paid_tickets(event_id) if t.user_id in lookup]
        found = {p.user_id: p for p in self._build(event_id, tickets, strict=True)}
        missing = [uid for uid in wanted if uid not in found]
        if missing:
            raise ParticipantNotEligible(
                "Some users are not eligible participants of this event",
                {"event_id": event_id, "user_ids": missing},
            )
        return [found[uid] for uid in wanted]

    def get_participant(self, event_id: str, user_id: str) -> Participant:
        try:
            [participant] = self.get_participants(event_id, [user_id])
        except ParticipantNotEligible:
            raise ParticipantNotEligible(
                f"User {user_id} is not an eligible participant of event {event_id}",
                {"event_id": event_id, "user_id": user_id},
            ) from None
        return participant

    def list_unassigned(self, tx, event_id: str) -> dict[str, Any]:
        participants = self.resolve_eligible(tx, event_id, strict=False)
        return {"total": len(participants), "participants": [p.summary() for p in participants]}

    def eligibility_debug_counts(self, tx, event_id: str) -> dict[str, int]:
        self.require_event(event_id)
        paid_ids = {t.user_id for t in self.source.list_paid_tickets(event_id)}
        profiled = set(self.source.get_profiles(paid_ids))
        grouped = self._grouped_user_ids(tx, event_id)
        counts = {
            "paid": len(paid_ids),
            "with_profile": len(profiled),
            "missing_profile": len(paid_ids - profiled),
            "already_grouped": len(profiled & grouped),
            "eligible": len(profiled - grouped),
        }
        logger.info("[MATCHING] eligibility event=%s counts=%s", event_id, counts)
        return counts
