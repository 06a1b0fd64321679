import threading
from datetime import timedelta

import pytest

from conftest import RECRUITER_ID, SEEKER_ID, accepted_meeting
from karma.errors import InvalidOutcome, NotAuthorized, UnknownCommitment, ValidationError
from karma.models import CommitmentKind, PartyRole
from karma.repository import MEETING_COMMITMENTS, Records
from karma.timekeeping.time_resolver import add_offset


@pytest.fixture
def meeting(services, users):
    _, commitment_id = accepted_meeting(services)
    return commitment_id


def _score(store, user_id):
    return Records(store).user(user_id).reliability_score


def test_score_applied_once_per_party(services, store, meeting):
    assert services.ledger.report_outcome(meeting, PartyRole.COUNTERPART, "attended", actor_id=SEEKER_ID) == 10
    assert services.ledger.report_outcome(meeting, PartyRole.COUNTERPART, "attended", actor_id=SEEKER_ID) is None

    assert _score(store, SEEKER_ID) == 10
    assert _score(store, RECRUITER_ID) == 0


def test_missed_costs_points(services, store, meeting):
    services.ledger.report_outcome(meeting, PartyRole.RECRUITER, "missed", actor_id=RECRUITER_ID)
    assert _score(store, RECRUITER_ID) == -10


def test_counterpart_prompted_after_report(services, channel, meeting):
    services.ledger.report_outcome(meeting, PartyRole.COUNTERPART, "attended", actor_id=SEEKER_ID)

    prompt = channel.last(RECRUITER_ID)
    assert "attendance status" in prompt.text
    assert [c.intent for c in prompt.choices] == [
        {"type": "report_outcome", "commitment_id": meeting, "party": "recruiter", "outcome": "attended"},
        {"type": "report_outcome", "commitment_id": meeting, "party": "recruiter", "outcome": "missed"},
    ]


def test_reports_are_independent(services, store, meeting):
    services.ledger.report_outcome(meeting, PartyRole.COUNTERPART, "attended")
    services.ledger.report_outcome(meeting, PartyRole.RECRUITER, "missed")

    doc = store.get(MEETING_COMMITMENTS, meeting)
    assert doc["counterpart_outcome"] == "attended"
    assert doc["recruiter_outcome"] == "missed"
    assert doc["resolved"] is True


def test_concurrent_reports_resolve_the_commitment(services, store, meeting):
    barrier = threading.Barrier(2)

    def report(party):
        barrier.wait()
        services.ledger.report_outcome(meeting, party, "attended")

    threads = [threading.Thread(target=report, args=(p,)) for p in PartyRole]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.get(MEETING_COMMITMENTS, meeting)["resolved"] is True
    assert _score(store, RECRUITER_ID) == 10
    assert _score(store, SEEKER_ID) == 10


@pytest.mark.parametrize("outcome", ["fulfilled", "pending", "bogus"])
def test_outcome_must_fit_kind(services, meeting, outcome):
    with pytest.raises(InvalidOutcome):
        services.ledger.report_outcome(meeting, PartyRole.COUNTERPART, outcome)


def test_unknown_commitment(services, users):
    with pytest.raises(UnknownCommitment):
        services.ledger.report_outcome("mc_missing", PartyRole.COUNTERPART, "attended")


def test_unknown_party(services, meeting):
    with pytest.raises(ValidationError):
        services.ledger.report_outcome(meeting, "spectator", "attended")


def test_cannot_report_for_the_other_party(services, meeting):
    with pytest.raises(NotAuthorized):
        services.ledger.report_outcome(meeting, PartyRole.RECRUITER, "missed", actor_id=SEEKER_ID)


def test_request_outcome_reports_skips_reported_party(services, meeting):
    assert services.ledger.request_outcome_reports(CommitmentKind.MEETING, meeting) == 2
    services.ledger.report_outcome(meeting, PartyRole.RECRUITER, "attended")
    assert services.ledger.request_outcome_reports(CommitmentKind.MEETING, meeting) == 1


def test_feedback_commitment_fulfilled(services, store, clock, meeting):
    meeting_end = Records(store).meeting(meeting).end
    spawn_at = add_offset(meeting_end, 30, "minutes")
    clock.set(spawn_at)
    services.scheduler.run_due_work(spawn_at)
    services.scheduler.choose_days(f"fr_{meeting}", 1, actor_id=RECRUITER_ID)
    commitment = services.scheduler.approve(f"fr_{meeting}", actor_id=SEEKER_ID)

    with pytest.raises(InvalidOutcome):
        services.ledger.report_outcome(commitment.commitment_id, PartyRole.RECRUITER, "attended")
    clock.advance(days=1, minutes=1)
    assert services.ledger.report_outcome(commitment.commitment_id, PartyRole.RECRUITER, "fulfilled") == 10
    assert services.ledger.report_outcome(commitment.commitment_id, PartyRole.COUNTERPART, "missed") == -10


def test_feedback_outcome_prompt_runs_from_due_work(services, store, clock, channel, meeting):
    spawn_at = add_offset(Records(store).meeting(meeting).end, 30, "minutes")
    clock.set(spawn_at)
    services.scheduler.run_due_work(spawn_at)
    services.scheduler.choose_days(f"fr_{meeting}", 1, actor_id=RECRUITER_ID)
    commitment = services.scheduler.approve(f"fr_{meeting}", actor_id=SEEKER_ID)

    prompt_at = commitment.due_at + timedelta(minutes=30)
    assert services.scheduler.run_due_work(prompt_at) == 1
    prompt = channel.last(SEEKER_ID)
    assert "feedback commitment" in prompt.text
    assert {c.intent["outcome"] for c in prompt.choices} == {"fulfilled", "missed"}
