from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from ..errors import InvalidState, KarmaError, NotAuthorized, TransientStoreError
from ..infra.logging import get_logger
from ..infra.notifications import notify
from ..repository import Records
from ..services import Services
from ..templates import profile_text, status_list_text
from ..timekeeping.time_resolver import display, to_iso
from .idempotency import IdempotencyGuard
from .intents import (
    Accept,
    AddSlot,
    ApproveFeedback,
    Cancel,
    CancelFeedback,
    ChooseDate,
    ChooseDays,
    ChooseDuration,
    Decline,
    DeclineFeedback,
    FeedbackHistory,
    Intent,
    MeetingHistory,
    Profile,
    Propose,
    Register,
    ReportOutcome,
    SetRole,
    SetTimezone,
    Submit,
    UpcomingFeedbacks,
    UpcomingMeetings,
)

logger = get_logger(__name__)

Handler = Callable[[Services, str, Any], Dict[str, Any]]

_HANDLERS: Dict[type, Handler] = {}


def handles(intent_cls):
    def register(fn: Handler) -> Handler:
        _HANDLERS[intent_cls] = fn
        return fn
    return register


@dataclass
class DispatchResult:
    ok: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    message: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": self.ok}
        if self.skipped:
            out["skipped"] = True
        if self.data:
            out["data"] = self.data
        if self.error:
            out["error"] = self.error
            out["message"] = self.message
        return out


class Dispatcher:
    def __init__(self, services: Services, guard: Optional[IdempotencyGuard] = None) -> None:
        self._services = services
        self._guard = guard

    @property
    def channel(self):
        return self._services.channel

    def dispatch(self, actor_id: str, intent: Intent, delivery_id: Optional[str] = None) -> DispatchResult:
        handler = _HANDLERS.get(type(intent))
        if handler is None:
            raise KeyError(f"no handler for {type(intent).__name__}")

        log = logger.bind(actor_id=actor_id, intent=intent.type, delivery_id=delivery_id)
        if delivery_id and self._guard is not None and not self._guard.claim(delivery_id):
            log.info("dispatch_skipped_duplicate")
            return DispatchResult(ok=True, skipped=True)

        attempts = max(1, self._services.settings.store_retry_attempts)
        for attempt in range(1, attempts + 1):
            try:
                data = handler(self._services, str(actor_id), intent) or {}
                log.info("dispatch_ok")
                return DispatchResult(ok=True, data=data)
            except TransientStoreError as e:
                log.warning("dispatch_transient_failure", attempt=attempt, error=repr(e))
                if attempt == attempts:
                    if delivery_id and self._guard is not None:
                        # let the platform redeliver
                        self._guard.release(delivery_id)
                    return self._fail(actor_id, e)
            except KarmaError as e:
                if isinstance(e, InvalidState) and not isinstance(e, NotAuthorized):
                    log.info("dispatch_rejected", error=e.code, context=e.context)
                else:
                    log.warning("dispatch_rejected", error=e.code, context=e.context)
                return self._fail(actor_id, e)

    def _fail(self, actor_id: str, e: KarmaError) -> DispatchResult:
        notify(self._services.channel, str(actor_id), e.message)
        return DispatchResult(ok=False, error=e.code, message=e.message)


# ---- users ----

@handles(Register)
def _register(s: Services, actor_id: str, intent: Register) -> Dict[str, Any]:
    user = s.registry.register(actor_id, intent.handle)
    return {"user_id": user.user_id, "handle": user.handle}


@handles(SetTimezone)
def _set_timezone(s: Services, actor_id: str, intent: SetTimezone) -> Dict[str, Any]:
    user = s.registry.set_timezone(actor_id, intent.zone)
    return {"timezone": user.timezone}


@handles(SetRole)
def _set_role(s: Services, actor_id: str, intent: SetRole) -> Dict[str, Any]:
    user = s.registry.set_role(actor_id, intent.role, intent.recruiter_type, intent.company_name)
    return {"role": user.role.value}


@handles(Profile)
def _profile(s: Services, actor_id: str, intent: Profile) -> Dict[str, Any]:
    user = s.registry.profile(actor_id)
    zone = user.timezone or "UTC"
    member_since = display(user.registered_at, zone) if user.registered_at else "N/A"
    expiry = display(user.subscription_expiry, zone) if user.subscription_expiry else "N/A"
    notify(s.channel, actor_id, profile_text(user, member_since, expiry))
    return {
        "handle": user.handle,
        "role": user.role.value,
        "reliability_score": user.reliability_score,
        "subscription_status": user.subscription_status.value,
        "subscription_expiry": to_iso(user.subscription_expiry),
        "timezone": user.timezone,
    }


# ---- meeting negotiation ----

@handles(Propose)
def _propose(s: Services, actor_id: str, intent: Propose) -> Dict[str, Any]:
    return {"request_id": s.engine.propose(actor_id, intent.counterpart, intent.description)}


@handles(ChooseDuration)
def _choose_duration(s: Services, actor_id: str, intent: ChooseDuration) -> Dict[str, Any]:
    state = s.engine.choose_duration(intent.request_id, intent.duration, actor_id=actor_id)
    return {"state": state.value}


@handles(ChooseDate)
def _choose_date(s: Services, actor_id: str, intent: ChooseDate) -> Dict[str, Any]:
    return {"times": s.engine.choose_date(intent.request_id, intent.date, actor_id=actor_id)}


@handles(AddSlot)
def _add_slot(s: Services, actor_id: str, intent: AddSlot) -> Dict[str, Any]:
    return {"slots": s.engine.add_slot(intent.request_id, intent.date, intent.time, actor_id=actor_id)}


@handles(Submit)
def _submit(s: Services, actor_id: str, intent: Submit) -> Dict[str, Any]:
    instants = s.engine.submit(intent.request_id, actor_id=actor_id)
    return {"slots": [to_iso(i) for i in instants]}


@handles(Accept)
def _accept(s: Services, actor_id: str, intent: Accept) -> Dict[str, Any]:
    return {"commitment_id": s.engine.accept(intent.request_id, intent.slot, actor_id=actor_id)}


@handles(Decline)
def _decline(s: Services, actor_id: str, intent: Decline) -> Dict[str, Any]:
    s.engine.decline(intent.request_id, actor_id=actor_id)
    return {}


@handles(Cancel)
def _cancel(s: Services, actor_id: str, intent: Cancel) -> Dict[str, Any]:
    s.engine.cancel(intent.request_id, actor_id=actor_id)
    return {}


# ---- feedback negotiation ----

@handles(ChooseDays)
def _choose_days(s: Services, actor_id: str, intent: ChooseDays) -> Dict[str, Any]:
    state = s.scheduler.choose_days(intent.feedback_request_id, intent.days, actor_id=actor_id)
    return {"state": state.value}


@handles(ApproveFeedback)
def _approve_feedback(s: Services, actor_id: str, intent: ApproveFeedback) -> Dict[str, Any]:
    commitment = s.scheduler.approve(intent.feedback_request_id, actor_id=actor_id)
    return {"commitment_id": commitment.commitment_id, "due_at": to_iso(commitment.due_at)}


@handles(DeclineFeedback)
def _decline_feedback(s: Services, actor_id: str, intent: DeclineFeedback) -> Dict[str, Any]:
    s.scheduler.decline(intent.feedback_request_id, actor_id=actor_id)
    return {}


@handles(CancelFeedback)
def _cancel_feedback(s: Services, actor_id: str, intent: CancelFeedback) -> Dict[str, Any]:
    s.scheduler.cancel_feedback(intent.feedback_request_id, actor_id=actor_id)
    return {}


# ---- ledger ----

@handles(ReportOutcome)
def _report_outcome(s: Services, actor_id: str, intent: ReportOutcome) -> Dict[str, Any]:
    party = intent.party
    if party is None:
        role = _role_of(s, intent.commitment_id, actor_id)
        party = role.value
    score = s.ledger.report_outcome(intent.commitment_id, party, intent.outcome, actor_id=actor_id)
    return {"score": score} if score is not None else {"duplicate": True}


def _role_of(s: Services, commitment_id: str, actor_id: str):
    commitment = Records(s.store).commitment(commitment_id)
    role = commitment.role_of(actor_id)
    if role is None:
        raise NotAuthorized("You are not a party to this commitment.", commitment_id=commitment_id)
    return role


def _status(s: Services, actor_id: str, title: str, views) -> Dict[str, Any]:
    notify(s.channel, actor_id, status_list_text(title, views))
    return {"items": [
        {"commitment_id": v.commitment_id, "when": v.when, "with": v.other_party, "outcome": v.your_outcome.value}
        for v in views
    ]}


@handles(UpcomingMeetings)
def _upcoming_meetings(s: Services, actor_id: str, intent: UpcomingMeetings) -> Dict[str, Any]:
    return _status(s, actor_id, "Upcoming meetings", s.views.upcoming_meetings(actor_id))


@handles(MeetingHistory)
def _meeting_history(s: Services, actor_id: str, intent: MeetingHistory) -> Dict[str, Any]:
    return _status(s, actor_id, "Meeting history", s.views.meeting_history(actor_id))


@handles(UpcomingFeedbacks)
def _upcoming_feedbacks(s: Services, actor_id: str, intent: UpcomingFeedbacks) -> Dict[str, Any]:
    return _status(s, actor_id, "Upcoming feedbacks", s.views.upcoming_feedbacks(actor_id))


@handles(FeedbackHistory)
def _feedback_history(s: Services, actor_id: str, intent: FeedbackHistory) -> Dict[str, Any]:
    return _status(s, actor_id, "Feedback history", s.views.feedback_history(actor_id))
