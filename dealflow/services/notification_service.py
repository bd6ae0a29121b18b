"""Notification port — one-way, best-effort, at-most-once.

Services call queue(db, ...) while they change state. Queued messages ride
on the Session and are handed to deliver() only after that session
commits; a rollback drops them. Delivery runs on a small thread pool and
a failure is logged and dropped, never raised back into the transition.

Business Rules:
- Nothing is sent for a transition that did not commit
- Fire-and-forget: errors logged, never raised from notify()
- At-most-once: no retry here (an outbox/retry layer may sit on top later)
- No webhook configured -> the message is only logged
- notify_in_background=False (tests) delivers inline, still swallowing errors

Called by: every service that changes a party-visible status, sweep_service.py
Depends on: config.py (notification_webhook_url, notify_in_background)
"""

import logging
from concurrent.futures import ThreadPoolExecutor

import httpx
from sqlalchemy import event
from sqlalchemy.orm import Session

from ..exceptions import ExternalAdapterError

log = logging.getLogger("dealflow.notify")

_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify")
_OUTBOX_KEY = "notify_outbox"


def deliver(recipient: str, template: str, payload: dict) -> None:
    """Push one message to the webhook. Raises ExternalAdapterError on failure."""
    from ..config import settings

    if not settings.notification_webhook_url:
        log.info(f"[notify:{template}] -> {recipient}: {payload}")
        return
    try:
        r = httpx.post(
            settings.notification_webhook_url,
            json={"recipient": recipient, "template": template, "data": payload},
            timeout=10,
        )
    except httpx.HTTPError as e:
        raise ExternalAdapterError(f"Notification transport failed: {e}", template=template) from e
    if r.status_code >= 400:
        raise ExternalAdapterError(
            f"Notification webhook returned {r.status_code}", template=template, recipient=recipient
        )


def _deliver_quietly(recipient: str, template: str, payload: dict) -> bool:
    try:
        deliver(recipient, template, payload)
        return True
    except Exception as e:
        log.warning(f"Notification '{template}' to {recipient} dropped: {e}")
        return False


def notify(recipient: str | None, template: str, **payload) -> bool:
    """Send now (no transaction involved). Returns False only when dropped inline."""
    from ..config import settings

    if not recipient:
        log.debug(f"Notification '{template}' skipped, no recipient")
        return False
    if settings.notify_in_background:
        _executor.submit(_deliver_quietly, recipient, template, payload)
        return True
    return _deliver_quietly(recipient, template, payload)


def queue(db: Session, recipient: str | None, template: str, **payload) -> None:
    """Send once the session's current transaction commits."""
    db.info.setdefault(_OUTBOX_KEY, []).append((recipient, template, payload))


def queue_role(db: Session, role: str | None, template: str, **payload) -> None:
    """Address a whole internal team (ops_manager, founder, rmt, ...)."""
    if role:
        queue(db, f"role:{role}", template, **payload)


def pending(db: Session) -> list:
    return list(db.info.get(_OUTBOX_KEY, []))


@event.listens_for(Session, "after_commit")
def _flush_outbox(session):
    for recipient, template, payload in session.info.pop(_OUTBOX_KEY, []):
        notify(recipient, template, **payload)


@event.listens_for(Session, "after_rollback")
def _drop_outbox(session):
    dropped = session.info.pop(_OUTBOX_KEY, None)
    if dropped:
        log.info(f"Dropped {len(dropped)} notification(s) from a rolled-back transaction")
