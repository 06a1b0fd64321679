from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from ..errors import InvalidState, ValidationError
from ..infra.document_store import ConditionFailed, DocumentExists, DocumentStore
from ..infra.logging import get_logger
from ..infra.notifications import NotificationChannel, notify
from ..models import Role, User
from ..repository import USERS, Records, user_to_doc
from ..templates import registered_text, role_changed_text, timezone_set_text
from ..timekeeping.time_resolver import load_zone, utc_now

logger = get_logger(__name__)

RECRUITER_TYPES = ("individual", "company")


class UserRegistry:
    def __init__(
        self,
        store: DocumentStore,
        channel: NotificationChannel,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._records = Records(store)
        self._channel = channel
        self._clock = clock

    def register(self, user_id: str, handle: str) -> User:
        """Idempotent: registering twice returns the existing user unchanged."""
        handle = (handle or "").lstrip("@").strip()
        if not handle:
            raise ValidationError("A username is required to register.")

        user = User(user_id=str(user_id), handle=handle, registered_at=self._clock())
        try:
            self._store.create(USERS, user.user_id, user_to_doc(user))
        except DocumentExists:
            logger.info("user_already_registered", user_id=user.user_id)
            return self._records.require_user(user.user_id)

        logger.info("user_registered", user_id=user.user_id, handle=handle)
        notify(self._channel, user.user_id, registered_text(handle))
        return user

    def set_timezone(self, user_id: str, zone: str) -> User:
        load_zone(zone)
        try:
            self._store.conditional_update(
                USERS, str(user_id), expected={"timezone": None}, patch={"timezone": zone}
            )
        except ConditionFailed:
            user = self._records.require_user(user_id)
            raise InvalidState("You have already set your time zone.", user_id=user.user_id)

        logger.info("timezone_set", user_id=user_id, timezone=zone)
        notify(self._channel, user_id, timezone_set_text(zone))
        return self._records.require_user(user_id)

    def set_role(
        self,
        user_id: str,
        role: Role,
        recruiter_type: Optional[str] = None,
        company_name: Optional[str] = None,
    ) -> User:
        """Roles are mutually exclusive and switchable any time; the subscription is kept."""
        user = self._records.require_user(user_id)
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError(f"Unknown role: {role}", role=role)

        patch = {"role": role.value}
        if role == Role.RECRUITER:
            recruiter_type = recruiter_type or ("company" if company_name else "individual")
            if recruiter_type not in RECRUITER_TYPES:
                raise ValidationError(f"Unknown recruiter type: {recruiter_type}")
            if recruiter_type == "company" and not (company_name or "").strip():
                raise ValidationError("Please provide your company name.")
            patch["recruiter_type"] = recruiter_type
            patch["company_name"] = company_name.strip() if recruiter_type == "company" else None
        elif user.role == Role.JOB_SEEKER:
            raise InvalidState("You are already a job seeker.")

        try:
            self._store.conditional_update(USERS, user.user_id, expected={"role": user.role.value}, patch=patch)
        except ConditionFailed:
            logger.info("role_change_raced", user_id=user.user_id)
            raise InvalidState("Your role changed in the meantime. Please try again.")

        logger.info("role_changed", user_id=user.user_id, role=role.value)
        notify(self._channel, user.user_id, role_changed_text(role, company_name))
        return self._records.require_user(user.user_id)

    def find_by_handle(self, handle: str) -> Optional[User]:
        return self._records.user_by_handle(handle)

    def profile(self, user_id: str) -> User:
        return self._records.require_user(user_id)
