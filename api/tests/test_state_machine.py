import pytest

from matchengine.domain import RunStatus
from matchengine.services.state_machine import IllegalRunTransition, transition_run


def test_first_and_repeat_trigger_commit():
    assert transition_run(None, "trigger") == RunStatus.COMMITTED
    assert transition_run(RunStatus.COMMITTED, "trigger") == RunStatus.COMMITTED
    assert transition_run("COMMITTED", "trigger") == RunStatus.COMMITTED


def test_invalidate_supersedes_committed_run():
    assert transition_run(RunStatus.COMMITTED, "invalidate") == RunStatus.SUPERSEDED


def test_preview_never_transitions():
    with pytest.raises(IllegalRunTransition):
        transition_run(RunStatus.PREVIEW, "trigger")
    with pytest.raises(IllegalRunTransition):
        transition_run(RunStatus.PREVIEW, "invalidate")


def test_superseded_is_terminal():
    with pytest.raises(IllegalRunTransition):
        transition_run(RunStatus.SUPERSEDED, "trigger")
    with pytest.raises(IllegalRunTransition):
        transition_run(RunStatus.SUPERSEDED, "invalidate")


def test_invalidate_without_run_and_unknown_action_are_rejected():
    with pytest.raises(IllegalRunTransition):
        transition_run(None, "invalidate")
    with pytest.raises(IllegalRunTransition):
        transition_run(RunStatus.COMMITTED, "publish")
