"""
User actions as tagged records.

A chat button carries one of these as JSON (see infra.notifications.Choice);
decode_intent() turns the payload back into a typed record exactly once, at
the edge, so the handlers never look at raw dicts.
"""
import json
from dataclasses import MISSING, dataclass, fields
from typing import Any, ClassVar, Dict, Mapping, Optional, Type, Union

from ..errors import InvalidIntent

INTENT_TYPES: Dict[str, Type["Intent"]] = {}


def _intent(name: str):
    def register(cls):
        cls.type = name
        INTENT_TYPES[name] = cls
        return cls
    return register


@dataclass(frozen=True)
class Intent:
    type: ClassVar[str] = ""

    def to_payload(self) -> Dict[str, Any]:
        payload = {"type": self.type}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None:
                payload[f.name] = value
        return payload


# ---- users ----

@_intent("register")
@dataclass(frozen=True)
class Register(Intent):
    handle: str


@_intent("set_timezone")
@dataclass(frozen=True)
class SetTimezone(Intent):
    zone: str


@_intent("set_role")
@dataclass(frozen=True)
class SetRole(Intent):
    role: str
    recruiter_type: Optional[str] = None
    company_name: Optional[str] = None


@_intent("profile")
@dataclass(frozen=True)
class Profile(Intent):
    pass


# ---- meeting negotiation ----

@_intent("propose")
@dataclass(frozen=True)
class Propose(Intent):
    counterpart: str
    description: str


@_intent("choose_duration")
@dataclass(frozen=True)
class ChooseDuration(Intent):
    request_id: str
    duration: int


@_intent("choose_date")
@dataclass(frozen=True)
class ChooseDate(Intent):
    request_id: str
    date: str


@_intent("add_slot")
@dataclass(frozen=True)
class AddSlot(Intent):
    request_id: str
    date: str
    time: str


@_intent("submit")
@dataclass(frozen=True)
class Submit(Intent):
    request_id: str


@_intent("accept")
@dataclass(frozen=True)
class Accept(Intent):
    request_id: str
    slot: str  # UTC ISO instant


@_intent("decline")
@dataclass(frozen=True)
class Decline(Intent):
    request_id: str


@_intent("cancel")
@dataclass(frozen=True)
class Cancel(Intent):
    request_id: str


# ---- feedback negotiation ----

@_intent("choose_days")
@dataclass(frozen=True)
class ChooseDays(Intent):
    feedback_request_id: str
    days: int


@_intent("approve_feedback")
@dataclass(frozen=True)
class ApproveFeedback(Intent):
    feedback_request_id: str


@_intent("decline_feedback")
@dataclass(frozen=True)
class DeclineFeedback(Intent):
    feedback_request_id: str


@_intent("cancel_feedback")
@dataclass(frozen=True)
class CancelFeedback(Intent):
    feedback_request_id: str


# ---- ledger ----

@_intent("report_outcome")
@dataclass(frozen=True)
class ReportOutcome(Intent):
    commitment_id: str
    outcome: str
    party: Optional[str] = None  # derived from the actor when omitted


@_intent("upcoming_meetings")
@dataclass(frozen=True)
class UpcomingMeetings(Intent):
    pass


@_intent("meeting_history")
@dataclass(frozen=True)
class MeetingHistory(Intent):
    pass


@_intent("upcoming_feedbacks")
@dataclass(frozen=True)
class UpcomingFeedbacks(Intent):
    pass


@_intent("feedback_history")
@dataclass(frozen=True)
class FeedbackHistory(Intent):
    pass


def _coerce(name: str, kind, value):
    if kind is int:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise InvalidIntent(f"Field {name} must be a number.", field=name)
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        raise InvalidIntent(f"Field {name} must be text.", field=name)
    return str(value)


def decode_intent(payload: Union[str, bytes, Mapping[str, Any]]) -> Intent:
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError:
            raise InvalidIntent("Intent is not valid JSON.")
    if not isinstance(payload, Mapping):
        raise InvalidIntent("Intent must be an object.")

    name = payload.get("type")
    cls = INTENT_TYPES.get(name) if isinstance(name, str) else None
    if cls is None:
        raise InvalidIntent(f"Unknown action: {name}", type=name)

    kwargs = {}
    for f in fields(cls):
        if f.name in payload and payload[f.name] is not None:
            kwargs[f.name] = _coerce(f.name, f.type, payload[f.name])
        elif f.default is MISSING:
            raise InvalidIntent(f"Missing field {f.name} for {name}.", type=name, field=f.name)
    return cls(**kwargs)
