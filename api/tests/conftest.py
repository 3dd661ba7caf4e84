from datetime import datetime, timedelta, timezone

import pytest

from matchengine.domain import GroupSizing, Participant
from matchengine.memory_repo import InMemoryMatchingRepository
from matchengine.services.coordinator import MatchingCoordinator
from matchengine.services.eligibility import EligibilityResolver
from matchengine.services.overrides import ManualOverrideService
from matchengine.sources import InMemoryParticipantSource, PaidTicket, PersonalityProfile

BASE_TIME = datetime(2026, 3, 1, 18, 0, tzinfo=timezone.utc)
EVENT_ID = "evt-rooftop-dinner"


def trait_vector(i: int) -> tuple[float, ...]:
    return (
        float((i * 7) % 21 - 10),
        float((i * 3) % 21 - 10),
        float((i * 5) % 21 - 10),
        float((i * 11) % 21 - 10),
        float((i * 2) % 21 - 10),
        float((i * 13) % 21 - 10),
    )


def make_participant(i: int, event_id: str = EVENT_ID, **overrides) -> Participant:
    fields = {
        "user_id": f"user-{i:03d}",
        "event_id": event_id,
        "transaction_id": f"txn-{i:03d}",
        "paid_at": BASE_TIME + timedelta(minutes=i),
        "trait_vector": trait_vector(i),
    }
    fields.update(overrides)
    return Participant(**fields)


class RecordingDispatcher:
    def __init__(self):
        self.calls = []

    def enqueue(self, event_id, groups):
        groups = list(groups)
        self.calls.append((event_id, [g.id for g in groups]))
        return groups


class MatchingEnv:
    def __init__(self, sizing: GroupSizing | None = None, source=None, **coordinator_kwargs):
        self.sizing = sizing or GroupSizing(4, 5, 6)
        self.source = source or InMemoryParticipantSource()
        self.repository = InMemoryMatchingRepository()
        self.dispatcher = RecordingDispatcher()
        self.resolver = EligibilityResolver(self.source)
        self.coordinator = MatchingCoordinator(
            self.repository,
            self.resolver,
            sizing=self.sizing,
            dispatcher=self.dispatcher,
            **coordinator_kwargs,
        )
        self.overrides = ManualOverrideService(
            self.repository,
            self.resolver,
            sizing=self.sizing,
            dispatcher=self.dispatcher,
            **coordinator_kwargs,
        )

    def seed(self, indexes, event_id: str = EVENT_ID, **profile_fields) -> list[str]:
        self.source.add_event(event_id)
        user_ids = []
        for i in indexes:
            user_id = f"user-{i:03d}"
            self.source.add_ticket(
                event_id,
                PaidTicket(user_id=user_id, transaction_id=f"txn-{i:03d}", paid_at=BASE_TIME + timedelta(minutes=i)),
            )
            self.source.add_profile(
                PersonalityProfile(user_id=user_id, trait_vector=trait_vector(i), **profile_fields)
            )
            user_ids.append(user_id)
        return user_ids

    def groups(self):
        return sorted(self.repository.all_groups(), key=lambda g: (g.run_id, g.group_number))


def assert_run_invariants(env: MatchingEnv) -> None:
    by_run: dict[str, list[str]] = {}
    for group in env.repository.all_groups():
        by_run.setdefault(group.run_id, []).extend(group.member_ids)
        if not group.is_remainder:
            assert group.min_size <= group.size <= group.max_size, group.to_dict()
    for members in by_run.values():
        assert len(members) == len(set(members))


@pytest.fixture
def env() -> MatchingEnv:
    return MatchingEnv()
