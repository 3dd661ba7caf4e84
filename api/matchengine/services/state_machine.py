from matchengine.domain import RunStatus
from matchengine.errors import MatchingError

NONE = "NONE"


class IllegalRunTransition(MatchingError):
    status_code = 409
    code = "illegal_run_transition"


def transition_run(current: RunStatus | str | None, action: str) -> RunStatus:
    """Next status of an event's run. ``current`` is None when the event has no committed run yet."""
    state = NONE if current is None else RunStatus(current).value

    if state == RunStatus.PREVIEW.value:
        # Previews are never promoted; a commit always re-resolves eligibility.
        raise IllegalRunTransition("Preview runs cannot transition", {"from": state, "action": action})

    if action == "trigger":
        if state in {NONE, RunStatus.COMMITTED.value}:
            return RunStatus.COMMITTED
        raise IllegalRunTransition("Superseded runs are terminal", {"from": state, "action": action})

    if action == "invalidate":
        if state == RunStatus.COMMITTED.value:
            return RunStatus.SUPERSEDED
        raise IllegalRunTransition("Only a committed run can be invalidated", {"from": state, "action": action})

    raise IllegalRunTransition(f"Unknown run action: {action}", {"from": state, "action": action})
