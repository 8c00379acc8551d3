import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from projecthub.core.current_user import get_current_user, user_from_token
from projecthub.core.deps import get_db, get_notification_sink
from projecthub.db.base_class import utcnow
from projecthub.models.notification import Notification
from projecthub.models.user import User
from projecthub.schemas.notification import NotificationRead, UnreadCount
from projecthub.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=list[NotificationRead])
def list_notifications(
    limit: int = Query(20, ge=1, le=100),
    skip: int = Query(0, ge=0),
    unread_only: bool = False,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    q = db.query(Notification).filter(Notification.recipient_id == me.id)
    if unread_only:
        q = q.filter(Notification.is_read.is_(False))
    return q.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(skip).limit(limit).all()


@router.get("/unread-count", response_model=UnreadCount)
def unread_count(
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    count = (
        db.query(Notification)
        .filter(Notification.recipient_id == me.id, Notification.is_read.is_(False))
        .count()
    )
    return {"unread": count}


@router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_read(
    notification_id: int,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    n = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.recipient_id == me.id)
        .first()
    )
    if not n:
        raise HTTPException(status_code=404, detail="Notification not found")

    if not n.is_read:
        n.is_read = True
        n.read_at = utcnow()
        db.commit()
        db.refresh(n)
    return n


@router.post("/read-all", response_model=UnreadCount)
def mark_all_read(
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    db.query(Notification).filter(
        Notification.recipient_id == me.id,
        Notification.is_read.is_(False),
    ).update({"is_read": True, "read_at": utcnow()}, synchronize_session=False)
    db.commit()
    return {"unread": 0}


async def _forward(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        await websocket.send_json(await queue.get())


async def _until_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws")
async def notifications_ws(
    websocket: WebSocket,
    token: str = Query(...),
    dispatcher: NotificationDispatcher = Depends(get_notification_sink),
    db: Session = Depends(get_db),
):
    user = await run_in_threadpool(user_from_token, db, token)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    user_id = user.id
    db.close()

    await websocket.accept()
    queue = dispatcher.hub.subscribe(user_id)
    tasks = [
        asyncio.create_task(_forward(websocket, queue)),
        asyncio.create_task(_until_disconnect(websocket)),
    ]
    try:
        await run_in_threadpool(dispatcher.replay_pending, user_id)
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("notification socket for user %s closed: %s", user_id, exc)
    finally:
        for task in tasks:
            task.cancel()
        dispatcher.hub.unsubscribe(user_id, queue)
