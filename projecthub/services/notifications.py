"""Notification records and realtime push.

The lifecycle manager depends only on `NotificationSink.publish`. The
dispatcher stores a `Notification` row in its own session, then pushes it
to the recipient's room on the realtime hub. Rows that could not be pushed
keep `pushed_at` empty and are replayed when the recipient reconnects.
"""

import asyncio
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from projecthub.db.base_class import utcnow
from projecthub.db.session import SessionLocal
from projecthub.models.enums import NotificationType
from projecthub.models.notification import Notification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationEvent:
    recipient_id: int
    type: NotificationType
    title: str
    message: str
    task_id: int | None = None
    submission_id: int | None = None


class NotificationSink(Protocol):
    def publish(self, event: NotificationEvent) -> None: ...


def serialize(notification: Notification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "type": notification.type.value,
        "title": notification.title,
        "message": notification.message,
        "task_id": notification.task_id,
        "submission_id": notification.submission_id,
        "is_read": notification.is_read,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


class RealtimeHub:
    """
    Per-user rooms of WebSocket subscriber queues.

    `push` may be called from any thread (sync request handlers run in a
    threadpool); delivery is scheduled on the subscriber's event loop.
    """

    def __init__(self):
        self._rooms: dict[str, list[tuple[asyncio.AbstractEventLoop, asyncio.Queue]]] = defaultdict(list)
        self._lock = threading.Lock()

    @staticmethod
    def room_for(user_id: int) -> str:
        return f"user_{user_id}"

    def subscribe(self, user_id: int) -> asyncio.Queue:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            self._rooms[self.room_for(user_id)].append((loop, queue))
        logger.info("user %s joined room %s", user_id, self.room_for(user_id))
        return queue

    def unsubscribe(self, user_id: int, queue: asyncio.Queue) -> None:
        room = self.room_for(user_id)
        with self._lock:
            self._rooms[room] = [(lp, q) for lp, q in self._rooms[room] if q is not queue]
            if not self._rooms[room]:
                del self._rooms[room]
        logger.info("user %s left room %s", user_id, room)

    def is_online(self, user_id: int) -> bool:
        with self._lock:
            return bool(self._rooms.get(self.room_for(user_id)))

    def push(self, user_id: int, payload: dict[str, Any]) -> bool:
        """Queue `payload` for every connection of `user_id`; False if none is connected."""
        with self._lock:
            subscribers = list(self._rooms.get(self.room_for(user_id), ()))

        delivered = False
        for loop, queue in subscribers:
            if loop.is_closed():
                continue
            loop.call_soon_threadsafe(queue.put_nowait, payload)
            delivered = True
        return delivered


class NotificationDispatcher:
    """
    Persists notifications and pushes them to connected recipients.

    A row is claimed (``pushed_at`` set where it is still NULL) before it is
    pushed, so a publish racing a reconnect replay delivers it once. A push
    that reaches nobody releases the claim and the row stays pending.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, hub: RealtimeHub | None = None):
        self.session_factory = session_factory
        self.hub = hub if hub is not None else RealtimeHub()

    def publish(self, event: NotificationEvent) -> None:
        db = self.session_factory()
        try:
            notification = Notification(
                recipient_id=event.recipient_id,
                type=event.type,
                title=event.title,
                message=event.message,
                task_id=event.task_id,
                submission_id=event.submission_id,
            )
            db.add(notification)
            db.commit()
            db.refresh(notification)

            # offline recipients get it from replay_pending on reconnect
            if self.hub.is_online(notification.recipient_id):
                self._deliver(db, notification)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _set_pushed_at(self, db: Session, notification_id: int, value, only_if_pending: bool) -> bool:
        stmt = update(Notification).where(Notification.id == notification_id).values(pushed_at=value)
        if only_if_pending:
            stmt = stmt.where(Notification.pushed_at.is_(None))
        result = db.execute(stmt)
        db.commit()
        return result.rowcount == 1

    def _deliver(self, db: Session, notification: Notification) -> bool:
        payload = serialize(notification)
        recipient_id = notification.recipient_id
        if not self._set_pushed_at(db, payload["id"], utcnow(), only_if_pending=True):
            return False  # another publisher or replay already took it

        try:
            pushed = self.hub.push(recipient_id, payload)
        except RuntimeError:
            # subscriber loop shut down between lookup and scheduling
            logger.warning("realtime push failed for notification %s", payload["id"], exc_info=True)
            pushed = False

        if not pushed:
            self._set_pushed_at(db, payload["id"], None, only_if_pending=False)
        return pushed

    def replay_pending(self, user_id: int) -> int:
        """Push every not-yet-delivered notification of `user_id`. Returns how many were sent."""
        db = self.session_factory()
        try:
            pending = db.scalars(
                select(Notification)
                .where(Notification.recipient_id == user_id, Notification.pushed_at.is_(None))
                .order_by(Notification.created_at, Notification.id)
            ).all()

            sent = sum(1 for n in pending if self._deliver(db, n))
            if sent:
                logger.info("replayed %d pending notifications to user %s", sent, user_id)
            return sent
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


hub = RealtimeHub()
_dispatcher: NotificationDispatcher | None = None


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher(SessionLocal, hub)
    return _dispatcher
