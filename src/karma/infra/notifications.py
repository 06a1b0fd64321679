from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..errors import KarmaError
from ..timekeeping.time_resolver import to_iso, utc_now
from .document_store import DocumentStore
from .logging import get_logger

logger = get_logger(__name__)

OUTBOX = "outbox"


@dataclass(frozen=True)
class Choice:
    """One selectable option. `intent` is the payload the dispatch layer decodes on selection."""
    label: str
    intent: Dict[str, Any]


@dataclass(frozen=True)
class OutboundMessage:
    to: str
    text: str
    choices: List[Choice] = field(default_factory=list)


class NotificationChannel(ABC):
    @abstractmethod
    def send_message(self, party_id: str, text: str, options: Optional[Sequence[Choice]] = None) -> None:
        raise NotImplementedError

    def present_choices(self, party_id: str, prompt: str, options: Sequence[Choice]) -> None:
        self.send_message(party_id, prompt, options)


def notify(channel: NotificationChannel, party_id: str, text: str, options: Optional[Sequence[Choice]] = None) -> bool:
    """
    Best-effort send. A failed notification never rolls back the state
    change that triggered it.
    """
    try:
        if options:
            channel.present_choices(party_id, text, options)
        else:
            channel.send_message(party_id, text)
        return True
    except (KarmaError, OSError, RuntimeError) as e:
        logger.warning("notification_failed", party_id=party_id, error=repr(e))
        return False


class OutboxChannel(NotificationChannel):
    """
    Persists outbound messages for the transport to pick up.

    record_type = "outbox"
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def send_message(self, party_id: str, text: str, options: Optional[Sequence[Choice]] = None) -> None:
        message_id = uuid.uuid4().hex
        self._store.create(OUTBOX, message_id, {
            "message_id": message_id,
            "to": str(party_id),
            "text": text,
            "choices": [{"label": c.label, "intent": c.intent} for c in (options or [])],
            "created_at": to_iso(utc_now()),
            "delivered": False,
        })
        logger.info("outbox_enqueued", message_id=message_id, to=str(party_id), choices=len(options or []))
