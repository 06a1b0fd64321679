from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class Role(str, Enum):
    JOB_SEEKER = "jobSeeker"
    RECRUITER = "recruiter"


class SubscriptionStatus(str, Enum):
    FREE = "free"
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELED = "canceled"


class RequestState(str, Enum):
    AWAITING_DURATION = "AWAITING_DURATION"
    AWAITING_DATE = "AWAITING_DATE"
    AWAITING_SLOTS = "AWAITING_SLOTS"
    AWAITING_SUBMISSION = "AWAITING_SUBMISSION"
    AWAITING_COUNTERPART_DECISION = "AWAITING_COUNTERPART_DECISION"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    CANCELED = "CANCELED"


# States in which the proposer is still editing the request.
EDITABLE_STATES = (
    RequestState.AWAITING_DURATION,
    RequestState.AWAITING_DATE,
    RequestState.AWAITING_SLOTS,
    RequestState.AWAITING_SUBMISSION,
)
RESOLVED_STATES = (RequestState.ACCEPTED, RequestState.DECLINED, RequestState.CANCELED)


class FeedbackState(str, Enum):
    AWAITING_DAYS = "AWAITING_DAYS"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    CANCELED = "CANCELED"


class PartyRole(str, Enum):
    RECRUITER = "recruiter"
    COUNTERPART = "counterpart"

    @property
    def other(self) -> "PartyRole":
        return PartyRole.COUNTERPART if self is PartyRole.RECRUITER else PartyRole.RECRUITER


class Outcome(str, Enum):
    PENDING = "pending"
    ATTENDED = "attended"
    FULFILLED = "fulfilled"
    MISSED = "missed"


class CommitmentKind(str, Enum):
    MEETING = "meeting"
    FEEDBACK = "feedback"


OUTCOMES_BY_KIND = {
    CommitmentKind.MEETING: (Outcome.ATTENDED, Outcome.MISSED),
    CommitmentKind.FEEDBACK: (Outcome.FULFILLED, Outcome.MISSED),
}


class DueWorkKind(str, Enum):
    SPAWN_FEEDBACK_REQUEST = "spawn_feedback_request"
    PROMPT_MEETING_OUTCOME = "prompt_meeting_outcome"
    PROMPT_FEEDBACK_OUTCOME = "prompt_feedback_outcome"


@dataclass
class User:
    user_id: str
    handle: str
    timezone: Optional[str] = None  # IANA name, e.g. "America/New_York"
    role: Role = Role.JOB_SEEKER
    reliability_score: int = 0
    subscription_status: SubscriptionStatus = SubscriptionStatus.FREE
    subscription_expiry: Optional[datetime] = None
    recruiter_type: Optional[str] = None  # individual | company
    company_name: Optional[str] = None
    registered_at: Optional[datetime] = None

    @property
    def is_recruiter(self) -> bool:
        return self.role == Role.RECRUITER


@dataclass
class MeetingRequest:
    request_id: str
    recruiter_id: str
    recruiter_name: str
    counterpart_id: str
    counterpart_name: str
    description: str
    recruiter_timezone: str
    counterpart_timezone: str
    created_at: datetime
    state: RequestState = RequestState.AWAITING_DURATION
    duration_minutes: Optional[int] = None
    pending_date: Optional[str] = None
    # naive "YYYY-MM-DD HH:MM" labels in the recruiter's zone, in selection order
    slots: List[str] = field(default_factory=list)
    # UTC instants for each slot, filled on submission
    slot_instants: List[datetime] = field(default_factory=list)
    submitted: bool = False
    commitment_id: Optional[str] = None
    accepted_slot: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    # set once the commitment and everything that follows from it is written
    finalized: bool = False
    version: int = 0

    @property
    def is_resolved(self) -> bool:
        return self.state in RESOLVED_STATES


@dataclass
class _Commitment:
    commitment_id: str
    recruiter_id: str
    recruiter_name: str
    counterpart_id: str
    counterpart_name: str
    description: str
    recruiter_outcome: Outcome = Outcome.PENDING
    counterpart_outcome: Outcome = Outcome.PENDING
    # "<party>:<reminder label>" -> sent instant
    reminders_sent: Dict[str, datetime] = field(default_factory=dict)

    kind = CommitmentKind.MEETING

    def party_id(self, role: PartyRole) -> str:
        return self.recruiter_id if role == PartyRole.RECRUITER else self.counterpart_id

    def party_name(self, role: PartyRole) -> str:
        return self.recruiter_name if role == PartyRole.RECRUITER else self.counterpart_name

    def outcome(self, role: PartyRole) -> Outcome:
        return self.recruiter_outcome if role == PartyRole.RECRUITER else self.counterpart_outcome

    def role_of(self, user_id: str) -> Optional[PartyRole]:
        if user_id == self.recruiter_id:
            return PartyRole.RECRUITER
        if user_id == self.counterpart_id:
            return PartyRole.COUNTERPART
        return None

    @property
    def is_terminal(self) -> bool:
        return Outcome.PENDING not in (self.recruiter_outcome, self.counterpart_outcome)

    @property
    def due_instant(self) -> datetime:
        raise NotImplementedError


@dataclass
class MeetingCommitment(_Commitment):
    request_id: str = ""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    duration_minutes: int = 0
    accepted_at: Optional[datetime] = None
    feedback_request_id: Optional[str] = None

    kind = CommitmentKind.MEETING

    @property
    def due_instant(self) -> datetime:
        return self.start


@dataclass
class FeedbackRequest:
    feedback_request_id: str
    meeting_commitment_id: str
    recruiter_id: str
    recruiter_name: str
    counterpart_id: str
    counterpart_name: str
    description: str
    created_at: datetime
    state: FeedbackState = FeedbackState.AWAITING_DAYS
    days: Optional[int] = None
    due_at: Optional[datetime] = None
    approved: bool = False
    feedback_commitment_id: Optional[str] = None
    resolved_at: Optional[datetime] = None
    finalized: bool = False
    version: int = 0


@dataclass
class FeedbackCommitment(_Commitment):
    feedback_request_id: str = ""
    meeting_commitment_id: str = ""
    due_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None

    kind = CommitmentKind.FEEDBACK

    @property
    def due_instant(self) -> datetime:
        return self.due_at


@dataclass
class DueWork:
    work_id: str
    kind: DueWorkKind
    ref_id: str
    due_at: datetime
    status: str = "pending"  # pending | claimed | done
    claimed_at: Optional[datetime] = None
