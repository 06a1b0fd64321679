from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

# Lambda sets AWS_REGION automatically; local dev may rely on AWS_DEFAULT_REGION.
AWS_REGION = (
    os.environ.get("AWS_REGION")
    or os.environ.get("AWS_DEFAULT_REGION")
    or "us-east-1"
)

TABLE_NAME = os.environ.get("TABLE_NAME")
DDB_PK_ATTR = os.environ.get("DDB_PK_ATTR", "pk")
DDB_SK_ATTR = os.environ.get("DDB_SK_ATTR", "sk")
DDB_SK_VALUE = os.environ.get("DDB_SK_VALUE", "DOC")
# DynamoDB Local / LocalStack during development
DDB_ENDPOINT_URL = os.environ.get("DDB_ENDPOINT_URL") or None

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

MAX_SLOTS = int(os.environ.get("MAX_SLOTS", "3"))
DATE_CHOICE_DAYS = int(os.environ.get("DATE_CHOICE_DAYS", "14"))
FEEDBACK_DELAY_MINUTES = int(os.environ.get("FEEDBACK_DELAY_MINUTES", "30"))
OUTCOME_PROMPT_DELAY_MINUTES = int(os.environ.get("OUTCOME_PROMPT_DELAY_MINUTES", "30"))
FEEDBACK_MIN_DAYS = int(os.environ.get("FEEDBACK_MIN_DAYS", "1"))
FEEDBACK_MAX_DAYS = int(os.environ.get("FEEDBACK_MAX_DAYS", "7"))
TRIAL_DAYS = int(os.environ.get("TRIAL_DAYS", "14"))
SCORE_DELTA = int(os.environ.get("SCORE_DELTA", "10"))
REMINDER_TOLERANCE_MINUTES = int(os.environ.get("REMINDER_TOLERANCE_MINUTES", "5"))
IDEMPOTENCY_TTL_SECONDS = int(os.environ.get("IDEMPOTENCY_TTL_SECONDS", "600"))
STORE_RETRY_ATTEMPTS = int(os.environ.get("STORE_RETRY_ATTEMPTS", "3"))
# a claimed due-work record is taken over once its claim is this old
DUE_WORK_LEASE_MINUTES = int(os.environ.get("DUE_WORK_LEASE_MINUTES", "15"))


def _int_tuple(raw: str) -> Tuple[int, ...]:
    return tuple(int(x) for x in raw.split(",") if x.strip())


MEETING_DURATIONS = _int_tuple(os.environ.get("MEETING_DURATIONS", "30,45,60,90,120"))
REMINDER_OFFSETS_HOURS = _int_tuple(os.environ.get("REMINDER_OFFSETS_HOURS", "24,1"))
SLOT_FIRST_HOUR = int(os.environ.get("SLOT_FIRST_HOUR", "9"))
SLOT_LAST_HOUR = int(os.environ.get("SLOT_LAST_HOUR", "19"))


@dataclass(frozen=True)
class Settings:
    """Business magnitudes. All of them are policy, none is a protocol invariant."""

    max_slots: int = MAX_SLOTS
    meeting_durations: Tuple[int, ...] = field(default=MEETING_DURATIONS)
    date_choice_days: int = DATE_CHOICE_DAYS
    slot_first_hour: int = SLOT_FIRST_HOUR
    slot_last_hour: int = SLOT_LAST_HOUR
    feedback_delay_minutes: int = FEEDBACK_DELAY_MINUTES
    outcome_prompt_delay_minutes: int = OUTCOME_PROMPT_DELAY_MINUTES
    feedback_min_days: int = FEEDBACK_MIN_DAYS
    feedback_max_days: int = FEEDBACK_MAX_DAYS
    trial_days: int = TRIAL_DAYS
    score_delta: int = SCORE_DELTA
    reminder_offsets_hours: Tuple[int, ...] = field(default=REMINDER_OFFSETS_HOURS)
    reminder_tolerance_minutes: int = REMINDER_TOLERANCE_MINUTES
    idempotency_ttl_seconds: int = IDEMPOTENCY_TTL_SECONDS
    store_retry_attempts: int = STORE_RETRY_ATTEMPTS
    due_work_lease_minutes: int = DUE_WORK_LEASE_MINUTES

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Read the environment at call time; unset variables keep the defaults."""
        env = os.environ if env is None else env

        def _int(name: str, default: int) -> int:
            raw = env.get(name)
            return int(raw) if raw else default

        def _ints(name: str, default: Tuple[int, ...]) -> Tuple[int, ...]:
            raw = env.get(name)
            return _int_tuple(raw) if raw else default

        return cls(
            max_slots=_int("MAX_SLOTS", MAX_SLOTS),
            meeting_durations=_ints("MEETING_DURATIONS", MEETING_DURATIONS),
            date_choice_days=_int("DATE_CHOICE_DAYS", DATE_CHOICE_DAYS),
            slot_first_hour=_int("SLOT_FIRST_HOUR", SLOT_FIRST_HOUR),
            slot_last_hour=_int("SLOT_LAST_HOUR", SLOT_LAST_HOUR),
            feedback_delay_minutes=_int("FEEDBACK_DELAY_MINUTES", FEEDBACK_DELAY_MINUTES),
            outcome_prompt_delay_minutes=_int("OUTCOME_PROMPT_DELAY_MINUTES", OUTCOME_PROMPT_DELAY_MINUTES),
            feedback_min_days=_int("FEEDBACK_MIN_DAYS", FEEDBACK_MIN_DAYS),
            feedback_max_days=_int("FEEDBACK_MAX_DAYS", FEEDBACK_MAX_DAYS),
            trial_days=_int("TRIAL_DAYS", TRIAL_DAYS),
            score_delta=_int("SCORE_DELTA", SCORE_DELTA),
            reminder_offsets_hours=_ints("REMINDER_OFFSETS_HOURS", REMINDER_OFFSETS_HOURS),
            reminder_tolerance_minutes=_int("REMINDER_TOLERANCE_MINUTES", REMINDER_TOLERANCE_MINUTES),
            idempotency_ttl_seconds=_int("IDEMPOTENCY_TTL_SECONDS", IDEMPOTENCY_TTL_SECONDS),
            store_retry_attempts=_int("STORE_RETRY_ATTEMPTS", STORE_RETRY_ATTEMPTS),
            due_work_lease_minutes=_int("DUE_WORK_LEASE_MINUTES", DUE_WORK_LEASE_MINUTES),
        )


def require_env() -> None:
    missing = []
    if not TABLE_NAME:
        missing.append("TABLE_NAME")
    if missing:
        raise RuntimeError("Missing required environment variables: " + ", ".join(missing))
