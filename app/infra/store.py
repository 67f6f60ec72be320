from __future__ import annotations
from datetime import datetime, timezone
from typing import Protocol, Tuple

from app import models
from app.core.serialization import NotificationEvent
from app.infra.db import SessionLocal


class NotificationStore(Protocol):
    def append(self, event: NotificationEvent) -> Tuple[int, datetime]: ...


class SqlNotificationStore:
    """Stores notifications in the ``notifications`` table.

    Opens a session per call: the notification core runs ``append`` in a
    worker thread, outside any request session.
    """

    def __init__(self, session_factory=SessionLocal) -> None:
        self.session_factory = session_factory

    def append(self, event: NotificationEvent) -> Tuple[int, datetime]:
        created = event.created_at.astimezone(timezone.utc).replace(tzinfo=None)
        db = self.session_factory()
        try:
            rec = models.Notification(
                name=event.name,
                icon=event.icon,
                notif=event.notif,
                path=event.path,
                created_at=created,
            )
            db.add(rec)
            db.commit()
            db.refresh(rec)
            return rec.id, rec.created_at.replace(tzinfo=timezone.utc)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
