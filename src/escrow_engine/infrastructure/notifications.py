"""Notification collaborator.

Outbound email/SMS is best-effort: a failure must never block or roll back
the state change that caused it. Services queue notifications on the
session's outbox while they work; the unit of work dispatches them as
background tasks only after the transaction commits.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

_OUTBOX_KEY = "notification_outbox"


@dataclass(frozen=True)
class Notification:
    """One outbound message.

    Attributes:
        kind: "funds_released", "dispute_resolved", "revision_requested" or
            "funds_clawed_back".
        deal_id: Deal the message is about.
        recipients: User ids to notify.
        payload: Template variables.
    """

    kind: str
    deal_id: str
    recipients: tuple[str, ...]
    payload: dict = field(default_factory=dict)


@runtime_checkable
class Notifier(Protocol):
    async def send(self, notification: Notification) -> None:
        """Deliver a notification. May raise; callers treat failures as non-fatal."""


class LoggingNotifier:
    """Default notifier: records the message in the structured log."""

    async def send(self, notification: Notification) -> None:
        logger.info(
            "notification.sent",
            kind=notification.kind,
            deal_id=notification.deal_id,
            recipients=list(notification.recipients),
        )


_notifier: Notifier = LoggingNotifier()
_background_tasks: set[asyncio.Task] = set()


def get_notifier() -> Notifier:
    return _notifier


def set_notifier(notifier: Notifier) -> None:
    global _notifier
    _notifier = notifier


class NotificationOutbox:
    """Notifications waiting for their transaction to commit."""

    def __init__(self) -> None:
        self._pending: list[Notification] = []

    def add(self, notification: Notification) -> None:
        self._pending.append(notification)

    def drain(self) -> list[Notification]:
        pending, self._pending = self._pending, []
        return pending

    def __len__(self) -> int:
        return len(self._pending)


def outbox_for(session: AsyncSession) -> NotificationOutbox:
    return session.info.setdefault(_OUTBOX_KEY, NotificationOutbox())


def queue_notification(session: AsyncSession, notification: Notification) -> None:
    outbox_for(session).add(notification)


def discard_outbox(session: AsyncSession) -> None:
    dropped = outbox_for(session).drain()
    if dropped:
        logger.debug("notification.discarded", count=len(dropped))


async def _deliver(notifier: Notifier, notification: Notification) -> None:
    try:
        await notifier.send(notification)
    except Exception as exc:
        logger.warning(
            "notification.failed",
            kind=notification.kind,
            deal_id=notification.deal_id,
            error=str(exc),
        )


def dispatch_outbox(session: AsyncSession) -> list[asyncio.Task]:
    """Fire-and-forget every queued notification. Call after commit."""
    notifier = get_notifier()
    tasks = []
    for notification in outbox_for(session).drain():
        task = asyncio.get_running_loop().create_task(_deliver(notifier, notification))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        tasks.append(task)
    return tasks


async def wait_for_pending_notifications() -> None:
    """Wait for dispatched notifications to finish (shutdown and tests)."""
    if _background_tasks:
        await asyncio.gather(*list(_background_tasks))
