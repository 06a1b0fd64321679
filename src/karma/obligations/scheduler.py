from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..config import Settings
from ..errors import AlreadyResolved, InvalidRange, InvalidState, NotAuthorized, RequestNotFound
from ..infra.document_store import ConditionFailed, DocumentExists, DocumentStore
from ..infra.logging import get_logger
from ..infra.notifications import Choice, NotificationChannel, notify
from ..models import (
    CommitmentKind,
    DueWork,
    DueWorkKind,
    FeedbackCommitment,
    FeedbackRequest,
    FeedbackState,
    MeetingCommitment,
    Outcome,
    PartyRole,
)
from ..repository import (
    COMMITMENT_COLLECTIONS,
    DUE_WORK,
    FEEDBACK_COMMITMENTS,
    FEEDBACK_REQUESTS,
    MEETING_COMMITMENTS,
    Records,
    due_work_from_doc,
    due_work_to_doc,
    feedback_commitment_to_doc,
    feedback_request_to_doc,
    outcome_field,
    reminder_flag,
)
from ..templates import (
    choose_feedback_days_text,
    feedback_approved_counterpart_text,
    feedback_approved_recruiter_text,
    feedback_cancelled_text,
    feedback_declined_text,
    feedback_reminder_text,
    feedback_request_sent_text,
    feedback_request_text,
    meeting_reminder_text,
)
from ..timekeeping.time_resolver import add_offset, display, is_within_window, to_iso, utc_now

logger = get_logger(__name__)

DueWorkHandler = Callable[[DueWork, datetime], None]

PENDING = "pending"
CLAIMED = "claimed"
DONE = "done"


class ObligationScheduler:
    """
    Turns accepted meetings into feedback obligations and keeps both parties
    reminded of what they committed to.

    Deferred actions are persisted as `due_work` records and executed by
    run_due_work(), so a restart never loses a pending feedback request.
    """

    def __init__(
        self,
        store: DocumentStore,
        channel: NotificationChannel,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._records = Records(store)
        self._channel = channel
        self._settings = settings or Settings()
        self._clock = clock
        self._handlers: Dict[DueWorkKind, DueWorkHandler] = {
            DueWorkKind.SPAWN_FEEDBACK_REQUEST: lambda work, now: self.spawn_feedback_request(work.ref_id, now),
        }

    def register_handler(self, kind: DueWorkKind, handler: DueWorkHandler) -> None:
        self._handlers[kind] = handler

    # ---- due work ----

    def schedule(self, kind: DueWorkKind, ref_id: str, due_at: datetime) -> str:
        """Idempotent: scheduling the same (kind, ref_id) twice keeps the first record."""
        work = DueWork(work_id=f"{kind.value}#{ref_id}", kind=kind, ref_id=ref_id, due_at=due_at)
        try:
            self._store.create(DUE_WORK, work.work_id, due_work_to_doc(work))
            logger.info("due_work_scheduled", work_id=work.work_id, due_at=to_iso(due_at))
        except DocumentExists:
            logger.info("due_work_exists", work_id=work.work_id)
        return work.work_id

    def on_commitment_accepted(self, commitment: MeetingCommitment) -> None:
        self.schedule(
            DueWorkKind.SPAWN_FEEDBACK_REQUEST,
            commitment.commitment_id,
            add_offset(commitment.end, self._settings.feedback_delay_minutes, "minutes"),
        )
        self.schedule(
            DueWorkKind.PROMPT_MEETING_OUTCOME,
            commitment.commitment_id,
            add_offset(commitment.end, self._settings.outcome_prompt_delay_minutes, "minutes"),
        )

    def run_due_work(self, now: Optional[datetime] = None) -> int:
        """
        Run every due record, oldest first.

        Claimed records whose claim is older than the lease belong to a sweep
        that died (timeout, crash, failed revert) and are taken over.
        """
        now = now or self._clock()
        lease = timedelta(minutes=self._settings.due_work_lease_minutes)
        docs = self._store.query(DUE_WORK, "status", "==", PENDING)
        docs += self._store.query(DUE_WORK, "status", "==", CLAIMED)

        ran = 0
        for work in sorted((due_work_from_doc(d) for d in docs), key=lambda w: w.due_at):
            if work.due_at > now:
                continue
            if work.status == CLAIMED and work.claimed_at is not None and now - work.claimed_at < lease:
                continue
            handler = self._handlers.get(work.kind)
            if handler is None:
                logger.warning("due_work_no_handler", work_id=work.work_id, kind=work.kind.value)
                continue
            try:
                if self._run_one(work, handler, now):
                    ran += 1
            except Exception as e:
                logger.error("due_work_sweep_error", work_id=work.work_id, error=repr(e))
        if ran:
            logger.info("due_work_done", count=ran)
        return ran

    def _run_one(self, work: DueWork, handler: DueWorkHandler, now: datetime) -> bool:
        if work.status == CLAIMED:
            expected = {"status": CLAIMED, "claimed_at": to_iso(work.claimed_at)}
            logger.info("due_work_reclaimed", work_id=work.work_id, claimed_at=to_iso(work.claimed_at))
        else:
            expected = {"status": PENDING}
        ours = {"status": CLAIMED, "claimed_at": to_iso(now)}
        try:
            self._store.conditional_update(DUE_WORK, work.work_id, expected=expected, patch=ours)
        except ConditionFailed:
            # another sweep got it
            return False

        try:
            handler(work, now)
        except Exception as e:
            logger.error("due_work_failed", work_id=work.work_id, error=repr(e))
            try:
                self._store.conditional_update(
                    DUE_WORK, work.work_id, expected=ours, patch={"status": PENDING, "claimed_at": None}
                )
            except Exception as revert_error:
                # left claimed; the lease hands it to a later sweep
                logger.error("due_work_revert_failed", work_id=work.work_id, error=repr(revert_error))
            return False

        self._store.conditional_update(DUE_WORK, work.work_id, expected=ours, patch={"status": DONE})
        return True

    # ---- feedback negotiation ----

    def spawn_feedback_request(self, commitment_id: str, now: Optional[datetime] = None) -> Optional[str]:
        now = now or self._clock()
        meeting = self._records.meeting(commitment_id)
        if meeting is None:
            logger.warning("feedback_spawn_missing_meeting", commitment_id=commitment_id)
            return None

        request = FeedbackRequest(
            feedback_request_id=f"fr_{commitment_id}",
            meeting_commitment_id=commitment_id,
            recruiter_id=meeting.recruiter_id,
            recruiter_name=meeting.recruiter_name,
            counterpart_id=meeting.counterpart_id,
            counterpart_name=meeting.counterpart_name,
            description=meeting.description,
            created_at=now,
        )
        try:
            self._store.create(FEEDBACK_REQUESTS, request.feedback_request_id, feedback_request_to_doc(request))
        except DocumentExists:
            # an earlier run stopped after the create; finish linking and prompting
            request = self._load(request.feedback_request_id)
            logger.info(
                "feedback_request_exists",
                feedback_request_id=request.feedback_request_id,
                state=request.state.value,
            )
            if request.state != FeedbackState.AWAITING_DAYS:
                return request.feedback_request_id
        else:
            logger.info(
                "feedback_request_created",
                feedback_request_id=request.feedback_request_id,
                commitment_id=commitment_id,
            )

        try:
            self._store.conditional_update(
                MEETING_COMMITMENTS,
                commitment_id,
                expected={"feedback_request_id": None},
                patch={"feedback_request_id": request.feedback_request_id},
            )
        except ConditionFailed:
            logger.info("feedback_link_exists", commitment_id=commitment_id)

        choices = [
            Choice(
                f"{d} day{'s' if d > 1 else ''}",
                {"type": "choose_days", "feedback_request_id": request.feedback_request_id, "days": d},
            )
            for d in range(self._settings.feedback_min_days, self._settings.feedback_max_days + 1)
        ]
        choices.append(Choice("Cancel", {"type": "cancel_feedback", "feedback_request_id": request.feedback_request_id}))
        notify(self._channel, meeting.recruiter_id, choose_feedback_days_text(meeting.description), choices)
        return request.feedback_request_id

    def _load(self, feedback_request_id: str) -> FeedbackRequest:
        request = self._records.feedback_request(feedback_request_id)
        if request is None:
            raise RequestNotFound("Feedback request not found.", feedback_request_id=feedback_request_id)
        return request

    def _transition(self, request: FeedbackRequest, from_state: FeedbackState, patch: dict) -> None:
        if request.state != from_state:
            if request.state in (FeedbackState.APPROVED, FeedbackState.DECLINED, FeedbackState.CANCELED):
                raise AlreadyResolved(feedback_request_id=request.feedback_request_id, state=request.state.value)
            raise InvalidState("That action is not available for this feedback request yet.")
        patch = dict(patch)
        patch["version"] = request.version + 1
        try:
            self._store.conditional_update(
                FEEDBACK_REQUESTS,
                request.feedback_request_id,
                expected={"state": request.state.value, "version": request.version},
                patch=patch,
            )
        except ConditionFailed:
            logger.info("feedback_transition_lost_race", feedback_request_id=request.feedback_request_id)
            raise AlreadyResolved(feedback_request_id=request.feedback_request_id)

    def choose_days(self, feedback_request_id: str, days: int, actor_id: Optional[str] = None) -> FeedbackState:
        request = self._load(feedback_request_id)
        if actor_id is not None and str(actor_id) != request.recruiter_id:
            raise NotAuthorized("Only the recruiter chooses the feedback turnaround.")
        try:
            days = int(days)
        except (TypeError, ValueError):
            raise InvalidRange(days=days)
        lo, hi = self._settings.feedback_min_days, self._settings.feedback_max_days
        if not lo <= days <= hi:
            raise InvalidRange(f"Please choose between {lo} and {hi} days.", days=days)

        due_at = add_offset(request.created_at, days, "days")
        self._transition(
            request,
            FeedbackState.AWAITING_DAYS,
            {"state": FeedbackState.AWAITING_APPROVAL.value, "days": days, "due_at": to_iso(due_at)},
        )
        logger.info("feedback_days_chosen", feedback_request_id=feedback_request_id, days=days, due_at=to_iso(due_at))

        choices = [
            Choice("Approve", {"type": "approve_feedback", "feedback_request_id": feedback_request_id}),
            Choice("Decline", {"type": "decline_feedback", "feedback_request_id": feedback_request_id}),
        ]
        notify(
            self._channel,
            request.counterpart_id,
            feedback_request_text(request.recruiter_name, request.description, days),
            choices,
        )
        notify(self._channel, request.recruiter_id, feedback_request_sent_text(request.counterpart_name))
        return FeedbackState.AWAITING_APPROVAL

    def approve(self, feedback_request_id: str, actor_id: Optional[str] = None) -> FeedbackCommitment:
        request = self._load(feedback_request_id)
        if actor_id is not None and str(actor_id) != request.counterpart_id:
            raise NotAuthorized("Only the meeting participant can approve this feedback request.")
        commitment_id = f"fc_{feedback_request_id}"

        if request.state == FeedbackState.APPROVED and not request.finalized:
            # approved earlier, but the commitment or its outcome prompt did not make it
            logger.info("feedback_approve_resumed", feedback_request_id=feedback_request_id)
            return self._commit(request, request.resolved_at or self._clock())

        now = self._clock()
        self._transition(
            request,
            FeedbackState.AWAITING_APPROVAL,
            {
                "state": FeedbackState.APPROVED.value,
                "approved": True,
                "feedback_commitment_id": commitment_id,
                "resolved_at": to_iso(now),
            },
        )
        return self._commit(request, now)

    def _commit(self, request: FeedbackRequest, now: datetime) -> FeedbackCommitment:
        commitment = FeedbackCommitment(
            commitment_id=f"fc_{request.feedback_request_id}",
            recruiter_id=request.recruiter_id,
            recruiter_name=request.recruiter_name,
            counterpart_id=request.counterpart_id,
            counterpart_name=request.counterpart_name,
            description=request.description,
            feedback_request_id=request.feedback_request_id,
            meeting_commitment_id=request.meeting_commitment_id,
            due_at=request.due_at,
            approved_at=now,
        )
        try:
            self._store.create(FEEDBACK_COMMITMENTS, commitment.commitment_id, feedback_commitment_to_doc(commitment))
        except DocumentExists:
            logger.info("feedback_commitment_exists", commitment_id=commitment.commitment_id)
        logger.info(
            "feedback_approved",
            feedback_request_id=request.feedback_request_id,
            commitment_id=commitment.commitment_id,
        )

        self.schedule(
            DueWorkKind.PROMPT_FEEDBACK_OUTCOME,
            commitment.commitment_id,
            add_offset(commitment.due_at, self._settings.outcome_prompt_delay_minutes, "minutes"),
        )

        notify(
            self._channel,
            request.recruiter_id,
            feedback_approved_recruiter_text(display(commitment.due_at, self._zone(request.recruiter_id))),
        )
        notify(
            self._channel,
            request.counterpart_id,
            feedback_approved_counterpart_text(display(commitment.due_at, self._zone(request.counterpart_id))),
        )
        self._store.conditional_update(
            FEEDBACK_REQUESTS,
            request.feedback_request_id,
            expected={"state": FeedbackState.APPROVED.value},
            patch={"finalized": True},
        )
        return commitment

    def decline(self, feedback_request_id: str, actor_id: Optional[str] = None) -> None:
        request = self._load(feedback_request_id)
        if actor_id is not None and str(actor_id) != request.counterpart_id:
            raise NotAuthorized("Only the meeting participant can decline this feedback request.")
        self._transition(
            request,
            FeedbackState.AWAITING_APPROVAL,
            {"state": FeedbackState.DECLINED.value, "resolved_at": to_iso(self._clock())},
        )
        logger.info("feedback_declined", feedback_request_id=feedback_request_id)
        notify(self._channel, request.recruiter_id, feedback_declined_text())
        notify(self._channel, request.counterpart_id, feedback_declined_text())

    def cancel_feedback(self, feedback_request_id: str, actor_id: Optional[str] = None) -> None:
        request = self._load(feedback_request_id)
        if actor_id is not None and str(actor_id) != request.recruiter_id:
            raise NotAuthorized("Only the recruiter can cancel this feedback request.")
        if request.state not in (FeedbackState.AWAITING_DAYS, FeedbackState.AWAITING_APPROVAL):
            raise AlreadyResolved(feedback_request_id=feedback_request_id, state=request.state.value)
        self._transition(
            request,
            request.state,
            {"state": FeedbackState.CANCELED.value, "resolved_at": to_iso(self._clock())},
        )
        logger.info("feedback_cancelled", feedback_request_id=feedback_request_id)
        notify(self._channel, request.recruiter_id, feedback_cancelled_text())
        if request.state == FeedbackState.AWAITING_APPROVAL:
            notify(self._channel, request.counterpart_id, feedback_cancelled_text())

    # ---- reminders ----

    def _zone(self, user_id: str, cache: Optional[Dict[str, str]] = None) -> str:
        if cache is not None and user_id in cache:
            return cache[user_id]
        user = self._records.user(user_id)
        zone = (user.timezone if user else None) or "UTC"
        if cache is not None:
            cache[user_id] = zone
        return zone

    def fire_reminders(self, now: Optional[datetime] = None) -> int:
        """
        Send each party's 24h/1h reminders for every unresolved commitment.

        A reminder is claimed by a conditional write of its sent flag right
        before sending, so overlapping ticks and a concurrent outcome report
        cannot produce a duplicate or a stale reminder.
        """
        now = now or self._clock()
        zones: Dict[str, str] = {}
        sent = 0
        for kind in (CommitmentKind.MEETING, CommitmentKind.FEEDBACK):
            for commitment in self._records.unresolved_commitments(kind):
                try:
                    sent += self._remind(commitment, now, zones)
                except Exception as e:
                    logger.error("reminder_failed", commitment_id=commitment.commitment_id, error=repr(e))
        if sent:
            logger.info("reminders_sent", count=sent)
        return sent

    def _remind(self, commitment, now: datetime, zones: Dict[str, str]) -> int:
        due = commitment.due_instant
        if due is None or due <= now:
            return 0

        collection = COMMITMENT_COLLECTIONS[commitment.kind]
        sent = 0
        for party in (PartyRole.RECRUITER, PartyRole.COUNTERPART):
            if commitment.outcome(party) != Outcome.PENDING:
                continue
            for hours in self._settings.reminder_offsets_hours:
                label = f"{hours}h"
                if f"{party.value}:{label}" in commitment.reminders_sent:
                    continue
                target = add_offset(due, -hours, "hours")
                if not is_within_window(now, target, self._settings.reminder_tolerance_minutes):
                    continue
                try:
                    self._store.conditional_update(
                        collection,
                        commitment.commitment_id,
                        expected={reminder_flag(party, label): None, outcome_field(party): Outcome.PENDING.value},
                        patch={reminder_flag(party, label): to_iso(now)},
                    )
                except ConditionFailed:
                    continue

                party_id = commitment.party_id(party)
                when = display(due, self._zone(party_id, zones))
                other = commitment.party_name(party.other)
                if commitment.kind == CommitmentKind.MEETING:
                    text = meeting_reminder_text(commitment.description, other, when, hours)
                else:
                    text = feedback_reminder_text(commitment.description, other, when, hours)
                notify(self._channel, party_id, text)
                logger.info(
                    "reminder_sent",
                    commitment_id=commitment.commitment_id,
                    party=party.value,
                    reminder=label,
                )
                sent += 1
        return sent

    def pending_work(self) -> List[DueWork]:
        return [due_work_from_doc(d) for d in self._store.query(DUE_WORK, "status", "==", PENDING)]
