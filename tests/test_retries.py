"""A store failure halfway through an operation, then the retry finishing the job."""
from datetime import datetime, timedelta, timezone

import pytest

from conftest import RECRUITER_ID, SEEKER_ID, accepted_meeting, negotiate
from karma.dispatch.dispatcher import Dispatcher
from karma.dispatch.intents import Accept, ApproveFeedback, ReportOutcome
from karma.errors import TransientStoreError
from karma.models import DueWorkKind, SubscriptionStatus
from karma.repository import DUE_WORK, MEETING_COMMITMENTS, USERS, Records
from karma.timekeeping.time_resolver import to_iso

SPAWN_AT = datetime(2025, 3, 10, 14, 30, tzinfo=timezone.utc)


@pytest.fixture
def dispatcher(services):
    return Dispatcher(services)


def fail_once(monkeypatch, store, when):
    """Make the first conditional_update matching `when` raise TransientStoreError."""
    original = store.conditional_update
    failed = []

    def flaky(collection, doc_id, expected, patch):
        if not failed and when(collection, patch):
            failed.append(doc_id)
            raise TransientStoreError()
        return original(collection, doc_id, expected=expected, patch=patch)

    monkeypatch.setattr(store, "conditional_update", flaky)
    return failed


def _kinds(store):
    return sorted(d["kind"] for d in store.query(DUE_WORK, "status", "==", "pending"))


# ---- accept ----

def test_accept_completes_after_trial_grant_fails(dispatcher, services, store, monkeypatch, users):
    request_id, instants = negotiate(services)
    original = services.entitlements.grant_trial
    calls = []

    def flaky(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise TransientStoreError()
        return original(*args, **kwargs)

    monkeypatch.setattr(services.entitlements, "grant_trial", flaky)
    result = dispatcher.dispatch(SEEKER_ID, Accept(request_id=request_id, slot=to_iso(instants[0])))

    assert result.ok
    assert result.data == {"commitment_id": f"mc_{request_id}"}
    assert Records(store).user(RECRUITER_ID).subscription_status == SubscriptionStatus.TRIAL
    assert _kinds(store) == [DueWorkKind.PROMPT_MEETING_OUTCOME.value, DueWorkKind.SPAWN_FEEDBACK_REQUEST.value]
    assert Records(store).meeting_request(request_id).finalized


def test_accept_completes_after_scheduling_fails(dispatcher, services, store, monkeypatch, users):
    request_id, instants = negotiate(services)
    original = services.scheduler.schedule
    calls = []

    def flaky(*args):
        calls.append(args)
        if len(calls) == 1:
            raise TransientStoreError()
        return original(*args)

    monkeypatch.setattr(services.scheduler, "schedule", flaky)
    result = dispatcher.dispatch(SEEKER_ID, Accept(request_id=request_id, slot=to_iso(instants[0])))

    assert result.ok
    assert _kinds(store) == [DueWorkKind.PROMPT_MEETING_OUTCOME.value, DueWorkKind.SPAWN_FEEDBACK_REQUEST.value]
    assert len(store.query(MEETING_COMMITMENTS, "request_id", "==", request_id)) == 1


def test_finished_accept_is_not_resumed(services, users):
    request_id, instants = negotiate(services)
    services.engine.accept(request_id, instants[0], actor_id=SEEKER_ID)

    result = Dispatcher(services).dispatch(SEEKER_ID, Accept(request_id=request_id, slot=to_iso(instants[0])))
    assert result.error == "AlreadyResolved"


# ---- outcome reports ----

def test_score_lands_after_delta_write_fails(dispatcher, services, store, monkeypatch, users):
    _, commitment_id = accepted_meeting(services)
    fail_once(monkeypatch, store, lambda collection, patch: collection == USERS)

    result = dispatcher.dispatch(SEEKER_ID, ReportOutcome(commitment_id=commitment_id, outcome="attended"))
    assert result.data == {"score": 10}

    again = dispatcher.dispatch(SEEKER_ID, ReportOutcome(commitment_id=commitment_id, outcome="attended"))
    assert again.data == {"duplicate": True}
    assert Records(store).user(SEEKER_ID).reliability_score == 10


def test_score_lands_when_report_is_repeated_later(services, store, monkeypatch, users):
    _, commitment_id = accepted_meeting(services)
    fail_once(monkeypatch, store, lambda collection, patch: collection == USERS)

    with pytest.raises(TransientStoreError):
        services.ledger.report_outcome(commitment_id, "counterpart", "missed", actor_id=SEEKER_ID)
    assert Records(store).user(SEEKER_ID).reliability_score == 0

    # the recorded outcome wins over whatever the repeat says
    assert services.ledger.report_outcome(commitment_id, "counterpart", "attended", actor_id=SEEKER_ID) == -10


# ---- feedback ----

def _awaiting_approval(services, clock, commitment_id):
    clock.set(SPAWN_AT)
    services.scheduler.run_due_work(SPAWN_AT)
    services.scheduler.choose_days(f"fr_{commitment_id}", 3, actor_id=RECRUITER_ID)
    return f"fr_{commitment_id}"


def test_approve_completes_after_scheduling_fails(dispatcher, services, store, clock, monkeypatch, users):
    _, commitment_id = accepted_meeting(services)
    feedback_request_id = _awaiting_approval(services, clock, commitment_id)
    original = services.scheduler.schedule
    calls = []

    def flaky(*args):
        calls.append(args)
        if len(calls) == 1:
            raise TransientStoreError()
        return original(*args)

    monkeypatch.setattr(services.scheduler, "schedule", flaky)
    result = dispatcher.dispatch(SEEKER_ID, ApproveFeedback(feedback_request_id=feedback_request_id))

    assert result.ok
    assert result.data["commitment_id"] == f"fc_{feedback_request_id}"
    assert store.get(DUE_WORK, f"{DueWorkKind.PROMPT_FEEDBACK_OUTCOME.value}#fc_{feedback_request_id}") is not None
    assert Records(store).feedback_request(feedback_request_id).finalized


def test_spawn_prompts_after_link_fails(services, store, clock, channel, monkeypatch, users):
    _, commitment_id = accepted_meeting(services)
    clock.set(SPAWN_AT)
    fail_once(
        monkeypatch,
        store,
        lambda collection, patch: collection == MEETING_COMMITMENTS and "feedback_request_id" in patch,
    )

    services.scheduler.run_due_work(SPAWN_AT)
    assert channel.containing(RECRUITER_ID, "number of days") == []
    assert store.get(DUE_WORK, f"{DueWorkKind.SPAWN_FEEDBACK_REQUEST.value}#{commitment_id}")["status"] == "pending"

    assert services.scheduler.run_due_work(SPAWN_AT + timedelta(minutes=1)) == 1
    assert len(channel.containing(RECRUITER_ID, "number of days")) == 1
    assert store.get(MEETING_COMMITMENTS, commitment_id)["feedback_request_id"] == f"fr_{commitment_id}"


# ---- stranded due work ----

def test_stranded_claim_is_taken_over_after_lease(services, store, clock, monkeypatch, users):
    _, commitment_id = accepted_meeting(services)
    spawn_id = f"{DueWorkKind.SPAWN_FEEDBACK_REQUEST.value}#{commitment_id}"

    def boom(*args):
        raise RuntimeError("handler crashed")

    monkeypatch.setattr(services.scheduler, "spawn_feedback_request", boom)
    fail_once(monkeypatch, store, lambda collection, patch: collection == DUE_WORK and patch.get("status") == "pending")

    # the revert fails too; the sweep still finishes the other record
    assert services.scheduler.run_due_work(SPAWN_AT) == 1
    assert store.get(DUE_WORK, spawn_id)["status"] == "claimed"

    monkeypatch.undo()
    assert services.scheduler.run_due_work(SPAWN_AT + timedelta(minutes=5)) == 0
    assert store.get(DUE_WORK, spawn_id)["status"] == "claimed"

    lease = services.settings.due_work_lease_minutes
    assert services.scheduler.run_due_work(SPAWN_AT + timedelta(minutes=lease)) == 1
    assert store.get(DUE_WORK, spawn_id)["status"] == "done"
    assert Records(store).feedback_request(f"fr_{commitment_id}") is not None
