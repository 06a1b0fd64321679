from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List

from ..infra.document_store import DocumentStore
from ..models import CommitmentKind, Outcome
from ..repository import Records
from ..timekeeping.time_resolver import display, utc_now


@dataclass(frozen=True)
class CommitmentView:
    commitment_id: str
    kind: CommitmentKind
    description: str
    other_party: str
    when: str  # "YYYY-MM-DD HH:MM" in the viewer's zone
    your_outcome: Outcome
    their_outcome: Outcome


class StatusViews:
    """Per-user listings of commitments, projected into the viewer's zone."""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utc_now) -> None:
        self._records = Records(store)
        self._clock = clock

    def upcoming_meetings(self, user_id: str) -> List[CommitmentView]:
        return self._list(CommitmentKind.MEETING, user_id, upcoming=True)

    def meeting_history(self, user_id: str) -> List[CommitmentView]:
        return self._list(CommitmentKind.MEETING, user_id, upcoming=False)

    def upcoming_feedbacks(self, user_id: str) -> List[CommitmentView]:
        return self._list(CommitmentKind.FEEDBACK, user_id, upcoming=True)

    def feedback_history(self, user_id: str) -> List[CommitmentView]:
        return self._list(CommitmentKind.FEEDBACK, user_id, upcoming=False)

    def _list(self, kind: CommitmentKind, user_id: str, upcoming: bool) -> List[CommitmentView]:
        viewer = self._records.require_user(user_id)
        zone = viewer.timezone or "UTC"
        now = self._clock()

        picked = []
        for c in self._records.commitments_for(kind, viewer.user_id):
            due = c.due_instant
            if due is None:
                continue
            # a commitment stays "upcoming" until its time has passed
            if (due > now) == upcoming:
                picked.append(c)
        picked.sort(key=lambda c: c.due_instant, reverse=not upcoming)

        views = []
        for c in picked:
            role = c.role_of(viewer.user_id)
            views.append(CommitmentView(
                commitment_id=c.commitment_id,
                kind=kind,
                description=c.description,
                other_party=c.party_name(role.other),
                when=display(c.due_instant, zone),
                your_outcome=c.outcome(role),
                their_outcome=c.outcome(role.other),
            ))
        return views
