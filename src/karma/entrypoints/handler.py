from __future__ import annotations

import json
from typing import Any, Dict, Optional

from ..config import LOG_LEVEL, require_env
from ..dispatch.dispatcher import Dispatcher
from ..dispatch.idempotency import IdempotencyGuard
from ..dispatch.intents import decode_intent
from ..errors import InvalidIntent
from ..infra.aws_clients import table as _table
from ..infra.ddb_store import DdbDocumentStore
from ..infra.logging import get_logger, setup_logging
from ..infra.notifications import OutboxChannel, notify
from ..services import build_services

logger = get_logger(__name__)

_dispatcher: Optional[Dispatcher] = None


def _response(status: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {"statusCode": status, "body": json.dumps(body)}


def _get_dispatcher() -> Dispatcher:
    global _dispatcher
    if _dispatcher is None:
        setup_logging(LOG_LEVEL)
        require_env()
        store = DdbDocumentStore(_table())
        services = build_services(store, OutboxChannel(store))
        guard = IdempotencyGuard(store, services.settings.idempotency_ttl_seconds)
        _dispatcher = Dispatcher(services, guard)
    return _dispatcher


def _extract_payload(event) -> Dict[str, Any]:
    """Webhook payload: API Gateway puts it in `body` (JSON string); direct invokes pass it as is."""
    if isinstance(event, str):
        event = json.loads(event)
    if not isinstance(event, dict):
        raise InvalidIntent("Event must be an object.")
    body = event.get("body")
    if body is None:
        return event
    if isinstance(body, str):
        body = json.loads(body)
    if not isinstance(body, dict):
        raise InvalidIntent("Body must be an object.")
    return body


def handle_event(event, dispatcher: Dispatcher) -> Dict[str, Any]:
    try:
        payload = _extract_payload(event)
    except (ValueError, InvalidIntent) as e:
        logger.warning("webhook_bad_payload", error=repr(e))
        return _response(400, {"ok": False, "error": InvalidIntent.code})

    actor_id = payload.get("actor_id")
    delivery_id = payload.get("delivery_id")
    if not actor_id:
        logger.warning("webhook_missing_actor", delivery_id=delivery_id)
        return _response(400, {"ok": False, "error": InvalidIntent.code, "message": "actor_id is required"})

    try:
        intent = decode_intent(payload.get("intent"))
    except InvalidIntent as e:
        logger.warning("webhook_bad_intent", actor_id=actor_id, error=e.message)
        notify(dispatcher.channel, str(actor_id), e.message)
        return _response(400, {"ok": False, "error": e.code, "message": e.message})

    result = dispatcher.dispatch(str(actor_id), intent, delivery_id=str(delivery_id) if delivery_id else None)
    return _response(200, result.to_dict())


def lambda_handler(event, context):
    try:
        return handle_event(event, _get_dispatcher())
    except Exception as e:
        logger.exception("webhook_failed", error=repr(e))
        return _response(500, {"ok": False, "error": str(e)})
