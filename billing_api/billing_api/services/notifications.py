"""Notification port for provider and operator messages.

Provides fire-and-forget delivery of typed notifications to registered
handlers.  Handler errors are logged but never propagate to callers, so a
failing notification can never undo a committed billing transition.

Services never notify while a database transaction is open.  They collect
notifications in a :class:`PendingNotifications` queue and flush it after
the commit succeeds::

    pending = PendingNotifications()
    async with session_factory() as session:
        ...
        pending.add(provider_id, NotificationKind.PAYMENT_FAILED, {...})
        await session.commit()
    await pending.flush(notifier)

Content rendering (email templates) belongs to the external notification
service; this module only routes ``(recipient, kind, data)`` triples.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from billing_api.services.notification_dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Notification kinds
# ---------------------------------------------------------------------------


class NotificationKind(str, Enum):
    """Messages the billing engines can send."""

    PAYMENT_FAILED = "payment.failed"
    PAYMENT_FINAL_WARNING = "payment.final_warning"
    SUBSCRIPTION_DOWNGRADED = "subscription.downgraded"
    LEAD_CHARGE_SUCCEEDED = "lead_charge.succeeded"
    LEAD_CHARGE_FAILED = "lead_charge.failed"
    DISPUTE_ADMIN_ALERT = "dispute.admin_alert"
    DISPUTE_OPENED = "dispute.opened"
    DISPUTE_RESOLVED = "dispute.resolved"
    DISPUTE_UNATTRIBUTED = "dispute.unattributed"
    EVENT_UNATTRIBUTED = "event.unattributed"


class Notification(BaseModel):
    """Structured notification dispatched to handlers."""

    kind: NotificationKind
    recipient_ref: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    data: dict[str, Any] = Field(default_factory=dict)


NotificationHandler = Callable[[Notification], Awaitable[None]]


class NotificationPort(Protocol):
    """Anything that accepts fire-and-forget notifications."""

    async def notify(
        self,
        recipient_ref: str,
        kind: NotificationKind,
        data: dict[str, Any] | None = None,
        *,
        correlation_id: str | None = None,
    ) -> None: ...


# ---------------------------------------------------------------------------
# Notification bus
# ---------------------------------------------------------------------------


class NotificationBus:
    """In-process notification bus with background handler dispatch.

    ``notify`` returns as soon as delivery is scheduled; handlers run in a
    tracked background task outside the caller's transaction and request.
    Within that task handlers are called concurrently via ``asyncio.gather``,
    each in a ``try / except`` so that a single failing handler does not
    affect others.  Call :meth:`drain` on shutdown to let in-flight
    deliveries finish.
    """

    def __init__(self) -> None:
        self._handlers: dict[NotificationKind | None, list[NotificationHandler]] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def register_handler(
        self,
        handler: NotificationHandler,
        *,
        kind: NotificationKind | None = None,
    ) -> None:
        """Register a handler for one notification kind, or for all when *kind* is ``None``."""
        self._handlers.setdefault(kind, []).append(handler)
        logger.debug("Registered notification handler %s for %s", handler.__name__, kind or "ALL")

    async def notify(
        self,
        recipient_ref: str,
        kind: NotificationKind,
        data: dict[str, Any] | None = None,
        *,
        correlation_id: str | None = None,
    ) -> None:
        """Schedule delivery of a notification to all matching handlers.

        Parameters
        ----------
        recipient_ref:
            Provider id or operator channel the message is for.
        kind:
            What happened.
        data:
            Values the renderer needs (amounts, dates, attempt counts).
        correlation_id:
            Optional id tying the notification to an event or charge.
        """
        notification = Notification(
            kind=kind,
            recipient_ref=recipient_ref,
            data=data or {},
            correlation_id=correlation_id or uuid.uuid4().hex,
        )

        handlers = list(self._handlers.get(kind, []))
        handlers.extend(self._handlers.get(None, []))

        if not handlers:
            logger.debug("No handlers for notification %s", kind.value)
            return

        logger.info(
            "Notifying %s to=%s corr=%s (%d handler(s))",
            kind.value,
            recipient_ref,
            notification.correlation_id[:8],
            len(handlers),
        )

        loop = asyncio.get_running_loop()
        task = loop.create_task(self._dispatch(notification, handlers))
        self._tasks.add(task)
        task.add_done_callback(self._on_dispatch_done)

    async def _dispatch(self, notification: Notification, handlers: list[NotificationHandler]) -> None:
        async def _safe_call(handler: NotificationHandler) -> None:
            try:
                await handler(notification)
            except Exception:
                logger.exception(
                    "Handler %s failed for notification %s (to=%s)",
                    handler.__name__,
                    notification.kind.value,
                    notification.recipient_ref,
                )

        await asyncio.gather(*[_safe_call(h) for h in handlers])

    def _on_dispatch_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Notification delivery task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Notification delivery task %s failed", task.get_name(), exc_info=exc)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight deliveries; cancel any still running after *timeout* seconds."""
        if not self._tasks:
            return
        _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("Cancelled %d notification delivery task(s) on drain", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)

    @property
    def handler_count(self) -> int:
        return sum(len(v) for v in self._handlers.values())

    @property
    def in_flight(self) -> int:
        return len(self._tasks)


# ---------------------------------------------------------------------------
# Post-commit queue
# ---------------------------------------------------------------------------


class PendingNotifications:
    """Notifications held back until the surrounding transaction commits."""

    def __init__(self) -> None:
        self._items: list[tuple[str, NotificationKind, dict[str, Any], str | None]] = []

    def add(
        self,
        recipient_ref: str,
        kind: NotificationKind,
        data: dict[str, Any] | None = None,
        *,
        correlation_id: str | None = None,
    ) -> None:
        self._items.append((recipient_ref, kind, data or {}, correlation_id))

    def clear(self) -> None:
        """Drop everything queued, e.g. after a rollback."""
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    async def flush(self, port: NotificationPort) -> None:
        """Deliver queued notifications in order, then empty the queue.

        Delivery is best-effort: a port that raises is logged and the
        remaining notifications are still attempted.
        """
        items, self._items = self._items, []
        for recipient_ref, kind, data, correlation_id in items:
            try:
                await port.notify(recipient_ref, kind, data, correlation_id=correlation_id)
            except Exception:
                logger.exception("Failed to deliver %s notification to %s", kind.value, recipient_ref)


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------


def make_notification_log_handler(
    session_factory: async_sessionmaker[AsyncSession],
) -> NotificationHandler:
    """Create a handler that records every notification in ``notification_log``.

    A new database session is created per notification so the handler's
    lifetime is not coupled to the caller's session.
    """

    async def _persist(notification: Notification) -> None:
        from billing_core.state.repository import NotificationLogRepository

        async with session_factory() as session:
            repo = NotificationLogRepository(session)
            await repo.record(
                kind=notification.kind.value,
                recipient_ref=notification.recipient_ref,
                data=notification.model_dump(mode="json")["data"],
                correlation_id=notification.correlation_id,
            )
            await session.commit()

    _persist.__name__ = "notification_log_handler"
    return _persist


def make_dispatch_handler(dispatcher: NotificationDispatcher) -> NotificationHandler:
    """Create a handler that forwards notifications to the external renderer."""

    async def _dispatch(notification: Notification) -> None:
        await dispatcher.deliver(notification)

    _dispatch.__name__ = "notification_dispatch_handler"
    return _dispatch


async def notification_logging_handler(notification: Notification) -> None:
    """Fallback handler used when no database is available."""
    logger.info(
        "NOTIFY: %s to=%s corr=%s data_keys=%s",
        notification.kind.value,
        notification.recipient_ref,
        notification.correlation_id[:8],
        sorted(notification.data.keys()),
    )


def build_notification_bus(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> NotificationBus:
    """Create a bus with the built-in handlers registered.

    Parameters
    ----------
    session_factory:
        When provided, notifications are persisted to ``notification_log``;
        otherwise they are only logged.
    dispatcher:
        When provided, notifications are also POSTed to the external
        notification service.
    """
    bus = NotificationBus()
    if session_factory is not None:
        bus.register_handler(make_notification_log_handler(session_factory))
    else:
        bus.register_handler(notification_logging_handler)
    if dispatcher is not None:
        bus.register_handler(make_dispatch_handler(dispatcher))

    logger.info("Notification bus initialised with %d handler(s)", bus.handler_count)
    return bus
