from fastapi import Depends
from sqlalchemy.orm import Session

from projecthub.db.session import SessionLocal
from projecthub.services.lifecycle import TaskLifecycleManager
from projecthub.services.notifications import NotificationDispatcher, get_dispatcher
from projecthub.services.storage import LocalFileStorage, get_storage


# every request that needs DB will get a fresh session, and it will always close.
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_notification_sink() -> NotificationDispatcher:
    return get_dispatcher()


def get_file_storage() -> LocalFileStorage:
    return get_storage()


def get_lifecycle(
    db: Session = Depends(get_db),
    sink: NotificationDispatcher = Depends(get_notification_sink),
    storage: LocalFileStorage = Depends(get_file_storage),
) -> TaskLifecycleManager:
    return TaskLifecycleManager(db, sink=sink, storage=storage)
