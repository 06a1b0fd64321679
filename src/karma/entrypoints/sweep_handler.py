"""
Timer entrypoint.

EventBridge schedules invoke this with {"job": "..."}:
  reminders      every minute
  due_work       every minute
  expired_trials once a day
  all            everything (default)
"""
from __future__ import annotations

import json
from typing import Any, Dict, Optional

from ..config import LOG_LEVEL, require_env
from ..infra.aws_clients import table as _table
from ..infra.ddb_store import DdbDocumentStore
from ..infra.logging import get_logger, setup_logging
from ..infra.notifications import OutboxChannel
from ..services import Services, build_services

logger = get_logger(__name__)

JOBS = ("reminders", "due_work", "expired_trials")

_services: Optional[Services] = None


def _get_services() -> Services:
    global _services
    if _services is None:
        setup_logging(LOG_LEVEL)
        require_env()
        store = DdbDocumentStore(_table())
        _services = build_services(store, OutboxChannel(store))
    return _services


def _extract_job(event) -> str:
    if isinstance(event, dict):
        detail = event.get("detail") if isinstance(event.get("detail"), dict) else {}
        return event.get("job") or detail.get("job") or "all"
    return "all"


def run_jobs(job: str, services: Services) -> Dict[str, Any]:
    now = services.clock()
    out: Dict[str, Any] = {}
    if job in ("all", "due_work"):
        out["due_work"] = services.scheduler.run_due_work(now)
    if job in ("all", "reminders"):
        out["reminders"] = services.scheduler.fire_reminders(now)
    if job in ("all", "expired_trials"):
        out["expired_trials"] = services.entitlements.sweep_expired_trials(now)
    logger.info("sweep_done", job=job, **out)
    return out


def lambda_handler(event, context):
    job = _extract_job(event)
    if job != "all" and job not in JOBS:
        logger.warning("sweep_bad_job", job=job)
        return {"statusCode": 400, "body": json.dumps({"ok": False, "error": f"unknown job {job}"})}
    try:
        result = run_jobs(job, _get_services())
    except Exception as e:
        logger.exception("sweep_failed", job=job, error=repr(e))
        return {"statusCode": 500, "body": json.dumps({"ok": False, "error": str(e)})}
    return {"statusCode": 200, "body": json.dumps({"ok": True, "job": job, **result})}
