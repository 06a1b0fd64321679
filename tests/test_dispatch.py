import json
from datetime import timedelta

import pytest

from conftest import RECRUITER_ID, SEEKER_ID, accepted_meeting
from karma.dispatch import dispatcher as dispatcher_module
from karma.dispatch.dispatcher import Dispatcher
from karma.dispatch.idempotency import IdempotencyGuard
from karma.dispatch.intents import (
    ChooseDuration,
    Profile,
    Propose,
    ReportOutcome,
    SetTimezone,
    UpcomingMeetings,
    decode_intent,
)
from karma.errors import InvalidIntent, TransientStoreError
from karma.repository import DELIVERIES, MEETING_REQUESTS


@pytest.fixture
def guard(store, clock):
    return IdempotencyGuard(store, ttl_seconds=600, clock=clock)


@pytest.fixture
def dispatcher(services, guard):
    return Dispatcher(services, guard)


def _pick(message, label):
    return next(c.intent for c in message.choices if c.label == label)


# ---- decoding ----

def test_decode_from_json_with_coercion():
    intent = decode_intent(json.dumps({"type": "choose_duration", "request_id": "mr_1", "duration": "60"}))
    assert intent == ChooseDuration(request_id="mr_1", duration=60)
    assert intent.to_payload() == {"type": "choose_duration", "request_id": "mr_1", "duration": 60}


def test_decode_optional_fields():
    intent = decode_intent({"type": "report_outcome", "commitment_id": "mc_1", "outcome": "attended"})
    assert intent == ReportOutcome(commitment_id="mc_1", outcome="attended", party=None)


@pytest.mark.parametrize("payload", [
    {"type": "launch_rocket"},
    {"type": "propose", "counterpart": "bob"},
    {"type": "choose_days", "feedback_request_id": "fr_1", "days": "three"},
    {"no_type": True},
    "{not json",
    ["propose"],
    None,
])
def test_decode_rejects(payload):
    with pytest.raises(InvalidIntent):
        decode_intent(payload)


# ---- dispatching ----

def test_full_negotiation_through_chat_choices(dispatcher, channel, users):
    result = dispatcher.dispatch(RECRUITER_ID, Propose(counterpart="@seeker_j", description="Intro call"))
    assert result.ok
    request_id = result.data["request_id"]

    for label in ("1 hour", "2025-03-10", "09:00", "Submit meeting request"):
        intent = decode_intent(_pick(channel.last(RECRUITER_ID), label))
        assert dispatcher.dispatch(RECRUITER_ID, intent).ok

    accept = decode_intent(_pick(channel.last(SEEKER_ID), "2025-03-10 22:00"))
    result = dispatcher.dispatch(SEEKER_ID, accept)
    assert result.ok
    assert result.data == {"commitment_id": f"mc_{request_id}"}


def test_rejection_is_reported_to_actor(dispatcher, channel, users):
    result = dispatcher.dispatch(SEEKER_ID, Propose(counterpart="@recruiter_r", description="Coffee"))

    assert not result.ok
    assert result.error == "NotAuthorized"
    assert channel.last(SEEKER_ID).text == result.message
    assert result.to_dict() == {"ok": False, "error": "NotAuthorized", "message": result.message}


def test_redelivery_is_skipped(dispatcher, store, users):
    intent = Propose(counterpart="@seeker_j", description="Intro call")
    first = dispatcher.dispatch(RECRUITER_ID, intent, delivery_id="d-1")
    second = dispatcher.dispatch(RECRUITER_ID, intent, delivery_id="d-1")

    assert first.ok and not first.skipped
    assert second.ok and second.skipped
    assert len(store.query(MEETING_REQUESTS, "recruiter_id", "==", RECRUITER_ID)) == 1


def test_transient_failure_is_retried(dispatcher, monkeypatch, users):
    calls = []

    def flaky(services, actor_id, intent):
        calls.append(intent)
        if len(calls) < 3:
            raise TransientStoreError()
        return {"timezone": intent.zone}

    monkeypatch.setitem(dispatcher_module._HANDLERS, SetTimezone, flaky)
    result = dispatcher.dispatch(RECRUITER_ID, SetTimezone(zone="UTC"))

    assert result.ok
    assert len(calls) == 3


def test_exhausted_retries_release_the_delivery(dispatcher, store, channel, monkeypatch, users):
    def broken(services, actor_id, intent):
        raise TransientStoreError()

    monkeypatch.setitem(dispatcher_module._HANDLERS, SetTimezone, broken)
    result = dispatcher.dispatch(RECRUITER_ID, SetTimezone(zone="UTC"), delivery_id="d-2")

    assert not result.ok
    assert result.error == "TransientStoreError"
    assert store.get(DELIVERIES, "d-2") is None
    assert "Please try again" in channel.last(RECRUITER_ID).text


def test_report_outcome_derives_party_from_actor(dispatcher, services, users):
    _, commitment_id = accepted_meeting(services)
    result = dispatcher.dispatch(SEEKER_ID, ReportOutcome(commitment_id=commitment_id, outcome="attended"))
    assert result.data == {"score": 10}

    again = dispatcher.dispatch(SEEKER_ID, ReportOutcome(commitment_id=commitment_id, outcome="attended"))
    assert again.data == {"duplicate": True}

    outsider = dispatcher.dispatch("999", ReportOutcome(commitment_id=commitment_id, outcome="attended"))
    assert outsider.error == "NotAuthorized"


def test_status_view(dispatcher, services, channel, users):
    _, commitment_id = accepted_meeting(services)
    result = dispatcher.dispatch(SEEKER_ID, UpcomingMeetings())

    assert result.data["items"] == [
        {"commitment_id": commitment_id, "when": "2025-03-10 22:00", "with": "recruiter_r", "outcome": "pending"},
    ]
    assert channel.last(SEEKER_ID).text.startswith("Upcoming meetings:")


# ---- idempotency guard ----

def test_guard_claims_once_until_ttl(guard, clock):
    assert guard.claim("d-9") is True
    assert guard.claim("d-9") is False

    clock.advance(seconds=599)
    assert guard.claim("d-9") is False
    clock.advance(seconds=2)
    assert guard.claim("d-9") is True


def test_guard_release(guard):
    guard.claim("d-10")
    guard.release("d-10")
    assert guard.claim("d-10") is True


def test_guard_records_expiry(guard, store, clock):
    guard.claim("d-11")
    doc = store.get(DELIVERIES, "d-11")
    assert doc["expires_at"] == int((clock() + timedelta(seconds=600)).timestamp())


def test_profile_shows_score_and_subscription(dispatcher, services, channel, users):
    _, commitment_id = accepted_meeting(services)
    dispatcher.dispatch(RECRUITER_ID, ReportOutcome(commitment_id=commitment_id, outcome="attended"))

    assert decode_intent({"type": "profile"}) == Profile()
    result = dispatcher.dispatch(RECRUITER_ID, Profile())

    assert result.data == {
        "handle": "recruiter_r",
        "role": "recruiter",
        "reliability_score": 10,
        "subscription_status": "trial",
        "subscription_expiry": "2025-03-15T12:00:00Z",
        "timezone": "America/New_York",
    }
    text = channel.last(RECRUITER_ID).text
    assert "Member since: 2025-03-01 07:00" in text
    assert "Subscription expiry: 2025-03-15 08:00" in text
    assert "Reliability score: 10" in text


def test_profile_requires_registration(dispatcher):
    result = dispatcher.dispatch("404", Profile())
    assert result.error == "UserNotFound"
