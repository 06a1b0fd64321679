"""
Record <-> document conversion for every collection.

Datetimes are stored as UTC ISO-8601 strings ("...Z"), enums as their values.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from .errors import UnknownCommitment, UserNotFound
from .infra.document_store import Document, DocumentStore
from .models import (
    CommitmentKind,
    DueWork,
    DueWorkKind,
    FeedbackCommitment,
    FeedbackRequest,
    FeedbackState,
    MeetingCommitment,
    MeetingRequest,
    Outcome,
    PartyRole,
    RequestState,
    Role,
    SubscriptionStatus,
    User,
)
from .timekeeping.time_resolver import parse_iso, to_iso

USERS = "users"
MEETING_REQUESTS = "meeting_requests"
MEETING_COMMITMENTS = "meeting_commitments"
FEEDBACK_REQUESTS = "feedback_requests"
FEEDBACK_COMMITMENTS = "feedback_commitments"
DUE_WORK = "due_work"
DELIVERIES = "deliveries"

COMMITMENT_COLLECTIONS = {
    CommitmentKind.MEETING: MEETING_COMMITMENTS,
    CommitmentKind.FEEDBACK: FEEDBACK_COMMITMENTS,
}

_REMINDER_PREFIX = "reminder_sent__"


def reminder_flag(party: PartyRole, label: str) -> str:
    """Document field marking that `party` already got the `label` reminder."""
    return f"{_REMINDER_PREFIX}{party.value}__{label}"


def scored_marker(commitment_id: str) -> str:
    """User document field marking that this commitment's delta is already in the score."""
    return f"scored__{commitment_id}"


def outcome_field(party: PartyRole) -> str:
    return f"{party.value}_outcome"


# ---- users ----

def user_to_doc(u: User) -> Document:
    return {
        "user_id": u.user_id,
        "handle": u.handle,
        "handle_lower": u.handle.lower(),
        "timezone": u.timezone,
        "role": u.role.value,
        "reliability_score": u.reliability_score,
        "subscription_status": u.subscription_status.value,
        "subscription_expiry": to_iso(u.subscription_expiry),
        "recruiter_type": u.recruiter_type,
        "company_name": u.company_name,
        "registered_at": to_iso(u.registered_at),
    }


def user_from_doc(d: Document) -> User:
    return User(
        user_id=d["user_id"],
        handle=d.get("handle", ""),
        timezone=d.get("timezone"),
        role=Role(d.get("role") or Role.JOB_SEEKER.value),
        reliability_score=int(d.get("reliability_score") or 0),
        subscription_status=SubscriptionStatus(d.get("subscription_status") or SubscriptionStatus.FREE.value),
        subscription_expiry=parse_iso(d.get("subscription_expiry")),
        recruiter_type=d.get("recruiter_type"),
        company_name=d.get("company_name"),
        registered_at=parse_iso(d.get("registered_at")),
    )


# ---- meeting requests ----

def request_to_doc(r: MeetingRequest) -> Document:
    return {
        "request_id": r.request_id,
        "recruiter_id": r.recruiter_id,
        "recruiter_name": r.recruiter_name,
        "counterpart_id": r.counterpart_id,
        "counterpart_name": r.counterpart_name,
        "description": r.description,
        "recruiter_timezone": r.recruiter_timezone,
        "counterpart_timezone": r.counterpart_timezone,
        "created_at": to_iso(r.created_at),
        "state": r.state.value,
        "duration_minutes": r.duration_minutes,
        "pending_date": r.pending_date,
        "slots": list(r.slots),
        "slot_instants": [to_iso(s) for s in r.slot_instants],
        "submitted": r.submitted,
        "commitment_id": r.commitment_id,
        "accepted_slot": to_iso(r.accepted_slot),
        "resolved_at": to_iso(r.resolved_at),
        "finalized": r.finalized,
        "version": r.version,
    }


def request_from_doc(d: Document) -> MeetingRequest:
    return MeetingRequest(
        request_id=d["request_id"],
        recruiter_id=d["recruiter_id"],
        recruiter_name=d.get("recruiter_name", ""),
        counterpart_id=d["counterpart_id"],
        counterpart_name=d.get("counterpart_name", ""),
        description=d.get("description", ""),
        recruiter_timezone=d.get("recruiter_timezone") or "UTC",
        counterpart_timezone=d.get("counterpart_timezone") or "UTC",
        created_at=parse_iso(d.get("created_at")),
        state=RequestState(d.get("state") or RequestState.AWAITING_DURATION.value),
        duration_minutes=int(d["duration_minutes"]) if d.get("duration_minutes") is not None else None,
        pending_date=d.get("pending_date"),
        slots=list(d.get("slots") or []),
        slot_instants=[parse_iso(s) for s in (d.get("slot_instants") or [])],
        submitted=bool(d.get("submitted")),
        commitment_id=d.get("commitment_id"),
        accepted_slot=parse_iso(d.get("accepted_slot")),
        resolved_at=parse_iso(d.get("resolved_at")),
        finalized=bool(d.get("finalized")),
        version=int(d.get("version") or 0),
    )


# ---- commitments ----

def _commitment_base_doc(c) -> Document:
    doc: Document = {
        "commitment_id": c.commitment_id,
        "kind": c.kind.value,
        "recruiter_id": c.recruiter_id,
        "recruiter_name": c.recruiter_name,
        "counterpart_id": c.counterpart_id,
        "counterpart_name": c.counterpart_name,
        "description": c.description,
        "recruiter_outcome": c.recruiter_outcome.value,
        "counterpart_outcome": c.counterpart_outcome.value,
        # one flag per party for queries over unresolved commitments
        "resolved": c.is_terminal,
    }
    for key, sent_at in (c.reminders_sent or {}).items():
        party, label = key.split(":", 1)
        doc[reminder_flag(PartyRole(party), label)] = to_iso(sent_at)
    return doc


def _commitment_base_kwargs(d: Document) -> Dict[str, Any]:
    reminders = {}
    for k, v in d.items():
        if k.startswith(_REMINDER_PREFIX):
            party, label = k[len(_REMINDER_PREFIX):].split("__", 1)
            reminders[f"{party}:{label}"] = parse_iso(v)
    return {
        "commitment_id": d["commitment_id"],
        "recruiter_id": d["recruiter_id"],
        "recruiter_name": d.get("recruiter_name", ""),
        "counterpart_id": d["counterpart_id"],
        "counterpart_name": d.get("counterpart_name", ""),
        "description": d.get("description", ""),
        "recruiter_outcome": Outcome(d.get("recruiter_outcome") or Outcome.PENDING.value),
        "counterpart_outcome": Outcome(d.get("counterpart_outcome") or Outcome.PENDING.value),
        "reminders_sent": reminders,
    }


def meeting_to_doc(c: MeetingCommitment) -> Document:
    doc = _commitment_base_doc(c)
    doc.update({
        "request_id": c.request_id,
        "start": to_iso(c.start),
        "end": to_iso(c.end),
        "due_at": to_iso(c.start),
        "duration_minutes": c.duration_minutes,
        "accepted_at": to_iso(c.accepted_at),
        "feedback_request_id": c.feedback_request_id,
    })
    return doc


def meeting_from_doc(d: Document) -> MeetingCommitment:
    return MeetingCommitment(
        **_commitment_base_kwargs(d),
        request_id=d.get("request_id", ""),
        start=parse_iso(d.get("start")),
        end=parse_iso(d.get("end")),
        duration_minutes=int(d.get("duration_minutes") or 0),
        accepted_at=parse_iso(d.get("accepted_at")),
        feedback_request_id=d.get("feedback_request_id"),
    )


def feedback_commitment_to_doc(c: FeedbackCommitment) -> Document:
    doc = _commitment_base_doc(c)
    doc.update({
        "feedback_request_id": c.feedback_request_id,
        "meeting_commitment_id": c.meeting_commitment_id,
        "due_at": to_iso(c.due_at),
        "approved_at": to_iso(c.approved_at),
    })
    return doc


def feedback_commitment_from_doc(d: Document) -> FeedbackCommitment:
    return FeedbackCommitment(
        **_commitment_base_kwargs(d),
        feedback_request_id=d.get("feedback_request_id", ""),
        meeting_commitment_id=d.get("meeting_commitment_id", ""),
        due_at=parse_iso(d.get("due_at")),
        approved_at=parse_iso(d.get("approved_at")),
    )


# ---- feedback requests ----

def feedback_request_to_doc(r: FeedbackRequest) -> Document:
    return {
        "feedback_request_id": r.feedback_request_id,
        "meeting_commitment_id": r.meeting_commitment_id,
        "recruiter_id": r.recruiter_id,
        "recruiter_name": r.recruiter_name,
        "counterpart_id": r.counterpart_id,
        "counterpart_name": r.counterpart_name,
        "description": r.description,
        "created_at": to_iso(r.created_at),
        "state": r.state.value,
        "days": r.days,
        "due_at": to_iso(r.due_at),
        "approved": r.approved,
        "feedback_commitment_id": r.feedback_commitment_id,
        "resolved_at": to_iso(r.resolved_at),
        "finalized": r.finalized,
        "version": r.version,
    }


def feedback_request_from_doc(d: Document) -> FeedbackRequest:
    return FeedbackRequest(
        feedback_request_id=d["feedback_request_id"],
        meeting_commitment_id=d["meeting_commitment_id"],
        recruiter_id=d["recruiter_id"],
        recruiter_name=d.get("recruiter_name", ""),
        counterpart_id=d["counterpart_id"],
        counterpart_name=d.get("counterpart_name", ""),
        description=d.get("description", ""),
        created_at=parse_iso(d.get("created_at")),
        state=FeedbackState(d.get("state") or FeedbackState.AWAITING_DAYS.value),
        days=int(d["days"]) if d.get("days") is not None else None,
        due_at=parse_iso(d.get("due_at")),
        approved=bool(d.get("approved")),
        feedback_commitment_id=d.get("feedback_commitment_id"),
        resolved_at=parse_iso(d.get("resolved_at")),
        finalized=bool(d.get("finalized")),
        version=int(d.get("version") or 0),
    )


# ---- due work ----

def due_work_to_doc(w: DueWork) -> Document:
    return {
        "work_id": w.work_id,
        "kind": w.kind.value,
        "ref_id": w.ref_id,
        "due_at": to_iso(w.due_at),
        "status": w.status,
        "claimed_at": to_iso(w.claimed_at),
    }


def due_work_from_doc(d: Document) -> DueWork:
    return DueWork(
        work_id=d["work_id"],
        kind=DueWorkKind(d["kind"]),
        ref_id=d["ref_id"],
        due_at=parse_iso(d.get("due_at")),
        status=d.get("status") or "pending",
        claimed_at=parse_iso(d.get("claimed_at")),
    )


class Records:
    """Typed reads over the document store. Writes go through the store directly."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def user(self, user_id: str) -> Optional[User]:
        doc = self.store.get(USERS, str(user_id))
        return user_from_doc(doc) if doc else None

    def require_user(self, user_id: str) -> User:
        user = self.user(user_id)
        if user is None:
            raise UserNotFound(user_id=user_id)
        return user

    def user_by_handle(self, handle: str) -> Optional[User]:
        handle = (handle or "").lstrip("@").lower()
        if not handle:
            return None
        docs = self.store.query(USERS, "handle_lower", "==", handle)
        if not docs:
            return None
        docs.sort(key=lambda d: d.get("registered_at") or "")
        return user_from_doc(docs[0])

    def meeting_request(self, request_id: str) -> Optional[MeetingRequest]:
        doc = self.store.get(MEETING_REQUESTS, request_id)
        return request_from_doc(doc) if doc else None

    def feedback_request(self, feedback_request_id: str) -> Optional[FeedbackRequest]:
        doc = self.store.get(FEEDBACK_REQUESTS, feedback_request_id)
        return feedback_request_from_doc(doc) if doc else None

    def meeting(self, commitment_id: str) -> Optional[MeetingCommitment]:
        doc = self.store.get(MEETING_COMMITMENTS, commitment_id)
        return meeting_from_doc(doc) if doc else None

    def feedback(self, commitment_id: str) -> Optional[FeedbackCommitment]:
        doc = self.store.get(FEEDBACK_COMMITMENTS, commitment_id)
        return feedback_commitment_from_doc(doc) if doc else None

    def commitment(self, commitment_id: str):
        """Look a commitment up in both collections; meetings first."""
        found = self.meeting(commitment_id) or self.feedback(commitment_id)
        if found is None:
            raise UnknownCommitment(commitment_id=commitment_id)
        return found

    def commitments_for(self, kind: CommitmentKind, user_id: str) -> List:
        collection = COMMITMENT_COLLECTIONS[kind]
        from_doc = meeting_from_doc if kind == CommitmentKind.MEETING else feedback_commitment_from_doc
        seen = {}
        for field_name in ("recruiter_id", "counterpart_id"):
            for doc in self.store.query(collection, field_name, "==", str(user_id)):
                seen[doc["commitment_id"]] = from_doc(doc)
        return list(seen.values())

    def unresolved_commitments(self, kind: CommitmentKind) -> List:
        collection = COMMITMENT_COLLECTIONS[kind]
        from_doc = meeting_from_doc if kind == CommitmentKind.MEETING else feedback_commitment_from_doc
        return [from_doc(d) for d in self.store.query(collection, "resolved", "==", False)]
