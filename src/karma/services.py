from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .config import Settings
from .infra.document_store import DocumentStore
from .infra.notifications import NotificationChannel
from .ledger.reliability import ReliabilityLedger
from .ledger.views import StatusViews
from .models import CommitmentKind, DueWorkKind
from .negotiation.engine import NegotiationEngine
from .obligations.scheduler import ObligationScheduler
from .timekeeping.time_resolver import utc_now
from .users.entitlements import EntitlementService
from .users.registry import UserRegistry


@dataclass
class Services:
    store: DocumentStore
    channel: NotificationChannel
    settings: Settings
    registry: UserRegistry
    entitlements: EntitlementService
    engine: NegotiationEngine
    scheduler: ObligationScheduler
    ledger: ReliabilityLedger
    views: StatusViews
    clock: Callable[[], datetime] = utc_now


def build_services(
    store: DocumentStore,
    channel: NotificationChannel,
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utc_now,
) -> Services:
    settings = settings or Settings.from_env()

    registry = UserRegistry(store, channel, clock=clock)
    entitlements = EntitlementService(store, channel, clock=clock)
    engine = NegotiationEngine(store, channel, entitlements, settings=settings, clock=clock)
    scheduler = ObligationScheduler(store, channel, settings=settings, clock=clock)
    ledger = ReliabilityLedger(store, channel, settings=settings, clock=clock)
    views = StatusViews(store, clock=clock)

    # acceptance schedules the feedback request and the outcome prompt
    engine.add_listener(scheduler.on_commitment_accepted)
    scheduler.register_handler(
        DueWorkKind.PROMPT_MEETING_OUTCOME,
        lambda work, now: ledger.request_outcome_reports(CommitmentKind.MEETING, work.ref_id),
    )
    scheduler.register_handler(
        DueWorkKind.PROMPT_FEEDBACK_OUTCOME,
        lambda work, now: ledger.request_outcome_reports(CommitmentKind.FEEDBACK, work.ref_id),
    )

    return Services(
        store=store,
        channel=channel,
        settings=settings,
        registry=registry,
        entitlements=entitlements,
        engine=engine,
        scheduler=scheduler,
        ledger=ledger,
        views=views,
        clock=clock,
    )
