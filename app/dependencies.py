from typing import Generator
from fastapi import Request
from app.core.notifications import NotificationManager
from app.infra.db import SessionLocal


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_notification_manager(request: Request) -> NotificationManager:
    return request.app.state.notifications
