from __future__ import annotations

from datetime import datetime
from typing import Callable

from ..infra.document_store import ConditionFailed, DocumentExists, DocumentStore
from ..infra.logging import get_logger
from ..repository import DELIVERIES
from ..timekeeping.time_resolver import to_iso, utc_now

logger = get_logger(__name__)


class IdempotencyGuard:
    """
    Remembers chat deliveries for a short while so that a redelivered button
    press is processed once.

    `expires_at` is epoch seconds; on DynamoDB it doubles as the table's TTL
    attribute.
    """

    def __init__(
        self,
        store: DocumentStore,
        ttl_seconds: int,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock

    def claim(self, delivery_id: str) -> bool:
        now = self._clock()
        expires_at = int(now.timestamp()) + self._ttl
        try:
            self._store.create(DELIVERIES, delivery_id, {
                "delivery_id": delivery_id,
                "claimed_at": to_iso(now),
                "expires_at": expires_at,
            })
            return True
        except DocumentExists:
            pass

        existing = self._store.get(DELIVERIES, delivery_id)
        if existing is None:
            # released between our create and get
            return self.claim(delivery_id)
        if int(existing.get("expires_at") or 0) > int(now.timestamp()):
            logger.info("delivery_duplicate", delivery_id=delivery_id)
            return False

        # TTL deletion is lazy on DynamoDB; a stale record does not block a new delivery
        try:
            self._store.conditional_update(
                DELIVERIES,
                delivery_id,
                expected={"expires_at": existing.get("expires_at")},
                patch={"claimed_at": to_iso(now), "expires_at": expires_at},
            )
        except ConditionFailed:
            logger.info("delivery_duplicate", delivery_id=delivery_id)
            return False
        return True

    def release(self, delivery_id: str) -> None:
        self._store.delete(DELIVERIES, delivery_id)
        logger.info("delivery_released", delivery_id=delivery_id)
