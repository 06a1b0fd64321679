from __future__ import annotations

import uuid
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Union

from ..config import Settings
from ..errors import (
    AlreadyResolved,
    CounterpartNotFound,
    DurationNotChosen,
    InvalidDuration,
    InvalidSlot,
    InvalidState,
    NoSlotsSelected,
    NotAuthorized,
    RequestNotFound,
    SlotLimitReached,
    TimezoneNotSet,
    ValidationError,
)
from ..infra.document_store import ConditionFailed, DocumentExists, DocumentStore
from ..infra.logging import get_logger
from ..infra.notifications import Choice, NotificationChannel, notify
from ..models import (
    EDITABLE_STATES,
    MeetingCommitment,
    MeetingRequest,
    RequestState,
    SubscriptionStatus,
)
from ..repository import MEETING_COMMITMENTS, MEETING_REQUESTS, Records, meeting_to_doc, request_to_doc
from ..templates import (
    choose_date_text,
    choose_duration_text,
    choose_times_text,
    duration_label,
    meeting_accepted_counterpart_text,
    meeting_accepted_recruiter_text,
    meeting_cancelled_text,
    meeting_declined_counterpart_text,
    meeting_declined_recruiter_text,
    meeting_request_text,
    request_sent_text,
    slot_added_text,
)
from ..timekeeping.time_resolver import (
    add_offset,
    display,
    offered_dates,
    offered_times,
    parse_date_label,
    parse_iso,
    resolve_local,
    to_iso,
    to_utc,
    utc_now,
)
from ..users.entitlements import EntitlementService

logger = get_logger(__name__)

CommitmentListener = Callable[[MeetingCommitment], None]


class NegotiationEngine:
    """
    Drives one MeetingRequest from proposal to an accepted MeetingCommitment.

    AWAITING_DURATION -> AWAITING_DATE -> AWAITING_SLOTS -> AWAITING_SUBMISSION
      -> AWAITING_COUNTERPART_DECISION -> ACCEPTED | DECLINED | CANCELED

    Every transition is a conditional write against the stored state, so a
    redelivered or concurrent action can apply at most once.
    """

    def __init__(
        self,
        store: DocumentStore,
        channel: NotificationChannel,
        entitlements: EntitlementService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._records = Records(store)
        self._channel = channel
        self._entitlements = entitlements
        self._settings = settings or Settings()
        self._clock = clock
        self._listeners: List[CommitmentListener] = []

    def add_listener(self, listener: CommitmentListener) -> None:
        self._listeners.append(listener)

    # ---- helpers ----

    def _load(self, request_id: str) -> MeetingRequest:
        request = self._records.meeting_request(request_id)
        if request is None:
            raise RequestNotFound(request_id=request_id)
        return request

    def _require_recruiter(self, request: MeetingRequest, actor_id: Optional[str]) -> None:
        if actor_id is not None and str(actor_id) != request.recruiter_id:
            raise NotAuthorized("Only the meeting organizer can change this request.")

    def _require_counterpart(self, request: MeetingRequest, actor_id: Optional[str]) -> None:
        if actor_id is not None and str(actor_id) != request.counterpart_id:
            raise NotAuthorized("Only the invited participant can answer this request.")

    def _require_editable(self, request: MeetingRequest) -> None:
        if request.is_resolved:
            raise AlreadyResolved(request_id=request.request_id, state=request.state.value)
        if request.state not in EDITABLE_STATES:
            raise InvalidState("This meeting request has already been submitted.", request_id=request.request_id)

    def _update(self, request: MeetingRequest, patch: dict) -> None:
        """Optimistic write: applies only if nobody changed the request since we read it."""
        patch = dict(patch)
        patch["version"] = request.version + 1
        try:
            self._store.conditional_update(
                MEETING_REQUESTS,
                request.request_id,
                expected={"state": request.state.value, "version": request.version},
                patch=patch,
            )
        except ConditionFailed:
            current = self._records.meeting_request(request.request_id)
            if current is not None and current.is_resolved:
                raise AlreadyResolved(request_id=request.request_id, state=current.state.value)
            raise InvalidState("This request changed in the meantime. Please try again.", request_id=request.request_id)

    def _resolve(self, request: MeetingRequest, from_states: Iterable[RequestState], patch: dict) -> None:
        """Move the request into a terminal state; fails with AlreadyResolved if someone got there first."""
        if request.state not in tuple(from_states):
            if request.is_resolved:
                raise AlreadyResolved(request_id=request.request_id, state=request.state.value)
            raise InvalidState("This meeting request has not been submitted yet.", request_id=request.request_id)
        patch = dict(patch)
        patch["version"] = request.version + 1
        try:
            self._store.conditional_update(
                MEETING_REQUESTS,
                request.request_id,
                expected={"state": request.state.value},
                patch=patch,
            )
        except ConditionFailed:
            logger.info("request_resolve_lost_race", request_id=request.request_id)
            raise AlreadyResolved(request_id=request.request_id)

    def _editing_choices(self, request_id: str) -> List[Choice]:
        return [
            Choice("Submit meeting request", {"type": "submit", "request_id": request_id}),
            Choice("Cancel", {"type": "cancel", "request_id": request_id}),
        ]

    # ---- operations ----

    def propose(self, proposer_id: str, counterpart_handle: str, description: str) -> str:
        now = self._clock()
        proposer = self._records.require_user(proposer_id)
        if not proposer.is_recruiter:
            raise NotAuthorized(
                "Only recruiters can create meetings. Please update your role if you are a recruiter.",
                user_id=proposer.user_id,
            )
        self._entitlements.require(proposer.user_id, "propose", now)

        counterpart = self._records.user_by_handle(counterpart_handle)
        if counterpart is None:
            raise CounterpartNotFound(f"User @{(counterpart_handle or '').lstrip('@')} not found.")
        if counterpart.user_id == proposer.user_id:
            raise ValidationError("You cannot schedule a meeting with yourself.")
        if not proposer.timezone or not counterpart.timezone:
            raise TimezoneNotSet()

        request = MeetingRequest(
            request_id=f"mr_{uuid.uuid4().hex}",
            recruiter_id=proposer.user_id,
            recruiter_name=proposer.handle,
            counterpart_id=counterpart.user_id,
            counterpart_name=counterpart.handle,
            description=(description or "").strip(),
            recruiter_timezone=proposer.timezone,
            counterpart_timezone=counterpart.timezone,
            created_at=now,
        )
        self._store.create(MEETING_REQUESTS, request.request_id, request_to_doc(request))
        logger.info(
            "meeting_request_created",
            request_id=request.request_id,
            recruiter_id=request.recruiter_id,
            counterpart_id=request.counterpart_id,
        )

        choices = [
            Choice(duration_label(m), {"type": "choose_duration", "request_id": request.request_id, "duration": m})
            for m in self._settings.meeting_durations
        ]
        notify(self._channel, proposer.user_id, choose_duration_text(), choices)
        return request.request_id

    def choose_duration(self, request_id: str, duration: int, actor_id: Optional[str] = None) -> RequestState:
        request = self._load(request_id)
        self._require_recruiter(request, actor_id)
        self._require_editable(request)
        try:
            duration = int(duration)
        except (TypeError, ValueError):
            raise InvalidDuration(duration=duration)
        if duration not in self._settings.meeting_durations:
            raise InvalidDuration(duration=duration)

        new_state = RequestState.AWAITING_DATE if request.state == RequestState.AWAITING_DURATION else request.state
        self._update(request, {"duration_minutes": duration, "state": new_state.value})
        logger.info("meeting_duration_chosen", request_id=request_id, duration=duration)

        dates = offered_dates(self._clock(), request.recruiter_timezone, self._settings.date_choice_days)
        choices = [Choice(d, {"type": "choose_date", "request_id": request_id, "date": d}) for d in dates]
        if request.slots:
            choices += self._editing_choices(request_id)
        notify(self._channel, request.recruiter_id, choose_date_text(), choices)
        return new_state

    def choose_date(self, request_id: str, date_label: str, actor_id: Optional[str] = None) -> List[str]:
        request = self._load(request_id)
        self._require_recruiter(request, actor_id)
        self._require_editable(request)
        if request.duration_minutes is None:
            raise DurationNotChosen(request_id=request_id)

        date_label = parse_date_label(date_label).isoformat()
        dates = offered_dates(self._clock(), request.recruiter_timezone, self._settings.date_choice_days)
        if date_label not in dates:
            raise ValidationError(f"Please choose a date between {dates[0]} and {dates[-1]}.")

        new_state = RequestState.AWAITING_SLOTS if request.state == RequestState.AWAITING_DATE else request.state
        self._update(request, {"pending_date": date_label, "state": new_state.value})

        times = offered_times(self._settings.slot_first_hour, self._settings.slot_last_hour)
        choices = [
            Choice(t, {"type": "add_slot", "request_id": request_id, "date": date_label, "time": t})
            for t in times
        ]
        notify(self._channel, request.recruiter_id, choose_times_text(date_label, self._settings.max_slots), choices)
        return times

    def add_slot(self, request_id: str, date_label: str, time_label: str, actor_id: Optional[str] = None) -> List[str]:
        request = self._load(request_id)
        self._require_recruiter(request, actor_id)
        self._require_editable(request)
        if request.duration_minutes is None:
            raise DurationNotChosen(request_id=request_id)

        instant = resolve_local(date_label, time_label, request.recruiter_timezone)
        label = display(instant, request.recruiter_timezone)
        if instant <= self._clock():
            raise InvalidSlot("That time slot is already in the past.", slot=label)
        if label in request.slots:
            raise InvalidSlot("You already added that time slot.", slot=label)
        if len(request.slots) >= self._settings.max_slots:
            raise SlotLimitReached(
                f"You have already selected {self._settings.max_slots} time slots.",
                max_slots=self._settings.max_slots,
            )

        slots = request.slots + [label]
        self._update(request, {"slots": slots, "state": RequestState.AWAITING_SUBMISSION.value})
        logger.info("meeting_slot_added", request_id=request_id, slot=label, count=len(slots))

        notify(self._channel, request.recruiter_id, slot_added_text(label), self._editing_choices(request_id))
        return slots

    def submit(self, request_id: str, actor_id: Optional[str] = None) -> List[datetime]:
        request = self._load(request_id)
        self._require_recruiter(request, actor_id)
        self._require_editable(request)
        if not request.slots:
            raise NoSlotsSelected(request_id=request_id)

        instants = []
        for slot in request.slots:
            date_label, time_label = slot.split(" ", 1)
            instants.append(resolve_local(date_label, time_label, request.recruiter_timezone))

        self._update(request, {
            "state": RequestState.AWAITING_COUNTERPART_DECISION.value,
            "submitted": True,
            "slot_instants": [to_iso(i) for i in instants],
        })
        logger.info("meeting_request_submitted", request_id=request_id, slots=len(instants))

        choices = [
            Choice(
                display(i, request.counterpart_timezone),
                {"type": "accept", "request_id": request_id, "slot": to_iso(i)},
            )
            for i in instants
        ]
        choices.append(Choice("Decline", {"type": "decline", "request_id": request_id}))
        notify(
            self._channel,
            request.counterpart_id,
            meeting_request_text(request.recruiter_name, request.description, duration_label(request.duration_minutes)),
            choices,
        )
        notify(self._channel, request.recruiter_id, request_sent_text(request.counterpart_name))
        return instants

    def accept(
        self,
        request_id: str,
        chosen_slot_instant: Union[datetime, str],
        actor_id: Optional[str] = None,
    ) -> str:
        request = self._load(request_id)
        start = parse_iso(chosen_slot_instant) if isinstance(chosen_slot_instant, str) else chosen_slot_instant
        start = to_utc(start) if start is not None else None

        if request.state != RequestState.AWAITING_COUNTERPART_DECISION:
            if start is not None and self._unfinished_acceptance(request, start):
                self._require_counterpart(request, actor_id)
                logger.info("meeting_accept_resumed", request_id=request_id)
                return self._commit(request, request.accepted_slot, request.resolved_at or self._clock())
            if request.is_resolved:
                logger.info("meeting_accept_duplicate", request_id=request_id, state=request.state.value)
                raise AlreadyResolved("This meeting has already been resolved.", request_id=request_id)
            raise InvalidState("This meeting request has not been submitted yet.", request_id=request_id)
        self._require_counterpart(request, actor_id)

        if start is None or start not in request.slot_instants:
            raise InvalidSlot(request_id=request_id, slot=str(chosen_slot_instant))
        now = self._clock()

        self._resolve(
            request,
            (RequestState.AWAITING_COUNTERPART_DECISION,),
            {
                "state": RequestState.ACCEPTED.value,
                "commitment_id": f"mc_{request.request_id}",
                "accepted_slot": to_iso(start),
                "resolved_at": to_iso(now),
            },
        )
        return self._commit(request, start, now)

    def _unfinished_acceptance(self, request: MeetingRequest, start: datetime) -> bool:
        """Accepted with this very slot, but the commit or its follow-ups did not complete."""
        return (
            request.state == RequestState.ACCEPTED
            and request.accepted_slot == start
            and not request.finalized
        )

    def _commit(self, request: MeetingRequest, start: datetime, now: datetime) -> str:
        commitment_id = f"mc_{request.request_id}"
        end = add_offset(start, request.duration_minutes, "minutes")
        commitment = MeetingCommitment(
            commitment_id=commitment_id,
            recruiter_id=request.recruiter_id,
            recruiter_name=request.recruiter_name,
            counterpart_id=request.counterpart_id,
            counterpart_name=request.counterpart_name,
            description=request.description,
            request_id=request.request_id,
            start=start,
            end=end,
            duration_minutes=request.duration_minutes,
            accepted_at=now,
        )
        try:
            self._store.create(MEETING_COMMITMENTS, commitment_id, meeting_to_doc(commitment))
        except DocumentExists:
            logger.info("meeting_commitment_exists", commitment_id=commitment_id)
        logger.info(
            "meeting_accepted",
            request_id=request.request_id,
            commitment_id=commitment_id,
            start=to_iso(start),
            end=to_iso(end),
        )

        notify(
            self._channel,
            request.recruiter_id,
            meeting_accepted_recruiter_text(request.counterpart_name, display(start, request.recruiter_timezone)),
        )
        notify(
            self._channel,
            request.counterpart_id,
            meeting_accepted_counterpart_text(request.recruiter_name, display(start, request.counterpart_timezone)),
        )

        self._activate_trial(request.recruiter_id, now)

        # listeners must be idempotent: a failure here leaves the request
        # unfinalized and the retried accept runs them again
        for listener in self._listeners:
            listener(commitment)

        self._store.conditional_update(
            MEETING_REQUESTS,
            request.request_id,
            expected={"state": RequestState.ACCEPTED.value},
            patch={"finalized": True},
        )
        return commitment_id

    def _activate_trial(self, recruiter_id: str, now: datetime) -> None:
        recruiter = self._records.user(recruiter_id)
        if recruiter is None or recruiter.subscription_status != SubscriptionStatus.FREE:
            return
        self._entitlements.grant_trial(recruiter_id, self._settings.trial_days, now)

    def decline(self, request_id: str, actor_id: Optional[str] = None) -> None:
        request = self._load(request_id)
        if request.state == RequestState.AWAITING_COUNTERPART_DECISION:
            self._require_counterpart(request, actor_id)
        self._resolve(
            request,
            (RequestState.AWAITING_COUNTERPART_DECISION,),
            {"state": RequestState.DECLINED.value, "resolved_at": to_iso(self._clock())},
        )
        logger.info("meeting_declined", request_id=request_id)
        notify(self._channel, request.recruiter_id, meeting_declined_recruiter_text(request.counterpart_name))
        notify(self._channel, request.counterpart_id, meeting_declined_counterpart_text())

    def cancel(self, request_id: str, actor_id: Optional[str] = None) -> None:
        request = self._load(request_id)
        if actor_id is not None and str(actor_id) not in (request.recruiter_id, request.counterpart_id):
            raise NotAuthorized("Only the parties of this meeting request can cancel it.")
        self._resolve(
            request,
            EDITABLE_STATES + (RequestState.AWAITING_COUNTERPART_DECISION,),
            {"state": RequestState.CANCELED.value, "resolved_at": to_iso(self._clock())},
        )
        logger.info("meeting_request_cancelled", request_id=request_id, actor_id=actor_id)

        notify(self._channel, request.recruiter_id, meeting_cancelled_text())
        if request.submitted:
            notify(self._channel, request.counterpart_id, meeting_cancelled_text())
