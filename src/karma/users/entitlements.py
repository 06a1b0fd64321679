from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from ..errors import EntitlementExpired
from ..infra.document_store import ConditionFailed, DocumentStore
from ..infra.logging import get_logger
from ..infra.notifications import NotificationChannel, notify
from ..models import SubscriptionStatus, User
from ..repository import USERS, Records
from ..templates import trial_activated_text, trial_expired_text
from ..timekeeping.time_resolver import add_offset, display, to_iso, utc_now

logger = get_logger(__name__)

# Actions a recruiter loses once their subscription lapses.
GATED_ACTIONS = ("propose",)


class Entitlement(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class EntitlementService:
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

    def check_entitlement(self, user_id: str, action: str, now: Optional[datetime] = None) -> Entitlement:
        now = now or self._clock()
        user = self._records.require_user(user_id)
        if not user.is_recruiter:
            return Entitlement.ALLOW

        status = user.subscription_status
        if status == SubscriptionStatus.TRIAL and user.subscription_expiry and now >= user.subscription_expiry:
            self._expire_trial(user)
            return Entitlement.DENY

        if action in GATED_ACTIONS:
            if status == SubscriptionStatus.EXPIRED:
                return Entitlement.DENY
            if status == SubscriptionStatus.CANCELED and (
                user.subscription_expiry is None or now >= user.subscription_expiry
            ):
                return Entitlement.DENY

        return Entitlement.ALLOW

    def require(self, user_id: str, action: str, now: Optional[datetime] = None) -> None:
        if self.check_entitlement(user_id, action, now) == Entitlement.DENY:
            logger.info("entitlement_denied", user_id=user_id, action=action)
            raise EntitlementExpired(user_id=user_id, action=action)

    def grant_trial(self, user_id: str, duration_days: int, now: Optional[datetime] = None) -> bool:
        """
        One-time trial activation: only a `free` user is promoted. Any other
        status (including a running trial) is left untouched.
        """
        now = now or self._clock()
        expiry = add_offset(now, duration_days, "days")
        try:
            self._store.conditional_update(
                USERS,
                str(user_id),
                expected={"subscription_status": SubscriptionStatus.FREE.value},
                patch={
                    "subscription_status": SubscriptionStatus.TRIAL.value,
                    "subscription_expiry": to_iso(expiry),
                },
            )
        except ConditionFailed:
            logger.info("trial_not_granted", user_id=user_id)
            return False

        logger.info("trial_granted", user_id=user_id, expiry=to_iso(expiry))
        user = self._records.user(user_id)
        zone = (user.timezone if user else None) or "UTC"
        notify(self._channel, user_id, trial_activated_text(duration_days, display(expiry, zone)))
        return True

    def sweep_expired_trials(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        expired = 0
        for doc in self._store.query(USERS, "subscription_status", "==", SubscriptionStatus.TRIAL.value):
            expiry = doc.get("subscription_expiry")
            if not expiry or expiry > to_iso(now):
                continue
            try:
                user = self._records.user(doc["user_id"])
                if user and self._expire_trial(user):
                    expired += 1
            except Exception as e:
                logger.error("trial_sweep_failed", user_id=doc.get("user_id"), error=repr(e))
        logger.info("trial_sweep_done", expired=expired)
        return expired

    def _expire_trial(self, user: User) -> bool:
        try:
            self._store.conditional_update(
                USERS,
                user.user_id,
                expected={
                    "subscription_status": SubscriptionStatus.TRIAL.value,
                    "subscription_expiry": to_iso(user.subscription_expiry),
                },
                patch={"subscription_status": SubscriptionStatus.EXPIRED.value},
            )
        except ConditionFailed:
            return False
        logger.info("trial_expired", user_id=user.user_id)
        notify(self._channel, user.user_id, trial_expired_text())
        return True
