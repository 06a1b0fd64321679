from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Union

from ..config import Settings
from ..errors import (
    InvalidOutcome,
    NotAuthorized,
    TransientStoreError,
    UnknownCommitment,
    UserNotFound,
    ValidationError,
)
from ..infra.document_store import ConditionFailed, DocumentStore
from ..infra.logging import get_logger
from ..infra.notifications import Choice, NotificationChannel, notify
from ..models import OUTCOMES_BY_KIND, CommitmentKind, Outcome, PartyRole
from ..repository import COMMITMENT_COLLECTIONS, USERS, Records, outcome_field, scored_marker
from ..templates import outcome_label, outcome_prompt_text, outcome_recorded_text
from ..timekeeping.time_resolver import to_iso, utc_now

logger = get_logger(__name__)

_MAX_ATTEMPTS = 5


class ReliabilityLedger:
    """
    Records each party's own outcome report for a commitment and applies the
    fixed score delta to that party, exactly once per (commitment, party).

    The two parties attest independently; their reports are never
    cross-checked against each other.
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

    def score_delta(self, outcome: Outcome) -> int:
        if outcome == Outcome.MISSED:
            return -self._settings.score_delta
        return self._settings.score_delta

    def report_outcome(
        self,
        commitment_id: str,
        party_role: Union[PartyRole, str],
        outcome: Union[Outcome, str],
        actor_id: Optional[str] = None,
    ) -> Optional[int]:
        """
        Returns the party's new score, or None when this party had already
        reported for this commitment (the repeat is a silent no-op).
        """
        commitment = self._records.commitment(commitment_id)
        try:
            party_role = PartyRole(party_role)
        except ValueError:
            raise ValidationError(f"Unknown party: {party_role}", party=party_role)
        if actor_id is not None and str(actor_id) != commitment.party_id(party_role):
            raise NotAuthorized("You can only report your own outcome.")

        try:
            outcome = Outcome(outcome)
        except ValueError:
            raise InvalidOutcome(outcome=outcome)
        if outcome not in OUTCOMES_BY_KIND[commitment.kind]:
            raise InvalidOutcome(kind=commitment.kind.value, outcome=outcome.value)

        collection = COMMITMENT_COLLECTIONS[commitment.kind]
        now = self._clock()
        recorded = None
        for _ in range(_MAX_ATTEMPTS):
            current = commitment.outcome(party_role)
            if current != Outcome.PENDING:
                # recorded before; the score may still be owed if that attempt died halfway
                recorded = current
                break

            other = commitment.outcome(party_role.other)
            try:
                self._store.conditional_update(
                    collection,
                    commitment_id,
                    expected={
                        outcome_field(party_role): Outcome.PENDING.value,
                        outcome_field(party_role.other): other.value,
                    },
                    patch={
                        outcome_field(party_role): outcome.value,
                        f"{party_role.value}_reported_at": to_iso(now),
                        "resolved": other != Outcome.PENDING,
                    },
                )
                recorded = outcome
                break
            except ConditionFailed:
                commitment = self._records.commitment(commitment_id)
        else:
            raise TransientStoreError(commitment_id=commitment_id)

        party_id = commitment.party_id(party_role)
        score = self.apply_delta(party_id, self.score_delta(recorded), scored_key=scored_marker(commitment_id))
        if score is None:
            logger.info(
                "outcome_already_reported",
                commitment_id=commitment_id,
                party=party_role.value,
                outcome=recorded.value,
            )
            return None
        logger.info(
            "outcome_recorded",
            commitment_id=commitment_id,
            kind=commitment.kind.value,
            party=party_role.value,
            outcome=recorded.value,
            score=score,
        )

        notify(self._channel, party_id, outcome_recorded_text(commitment.kind, commitment.description, recorded, score))
        if commitment.outcome(party_role.other) == Outcome.PENDING:
            self._prompt(commitment, party_role.other)
        return score

    def apply_delta(self, user_id: str, delta: int, scored_key: Optional[str] = None) -> Optional[int]:
        """
        Read-check-write on the score so concurrent deltas never overwrite each other.

        With `scored_key`, the delta lands at most once: the marker is written in
        the same update as the score, and None is returned when it is already there.
        """
        for _ in range(_MAX_ATTEMPTS):
            doc = self._store.get(USERS, str(user_id))
            if doc is None:
                raise UserNotFound(user_id=user_id)
            if scored_key is not None and scored_key in doc:
                return None
            score = int(doc.get("reliability_score") or 0)
            expected = {"reliability_score": score}
            patch = {"reliability_score": score + delta}
            if scored_key is not None:
                expected[scored_key] = None
                patch[scored_key] = to_iso(self._clock())
            try:
                self._store.conditional_update(USERS, str(user_id), expected=expected, patch=patch)
                return score + delta
            except ConditionFailed:
                continue
        logger.error("score_update_contended", user_id=user_id, delta=delta)
        raise TransientStoreError(user_id=user_id)

    def request_outcome_reports(self, kind: CommitmentKind, commitment_id: str) -> int:
        commitment = self._records.meeting(commitment_id) if kind == CommitmentKind.MEETING else self._records.feedback(commitment_id)
        if commitment is None:
            raise UnknownCommitment(commitment_id=commitment_id)
        prompted = 0
        for party in (PartyRole.RECRUITER, PartyRole.COUNTERPART):
            if commitment.outcome(party) == Outcome.PENDING:
                self._prompt(commitment, party)
                prompted += 1
        logger.info("outcome_reports_requested", commitment_id=commitment_id, prompted=prompted)
        return prompted

    def _prompt(self, commitment, party: PartyRole) -> None:
        choices = [
            Choice(
                outcome_label(o),
                {"type": "report_outcome", "commitment_id": commitment.commitment_id, "party": party.value, "outcome": o.value},
            )
            for o in OUTCOMES_BY_KIND[commitment.kind]
        ]
        notify(
            self._channel,
            commitment.party_id(party),
            outcome_prompt_text(commitment.kind, commitment.description),
            choices,
        )
