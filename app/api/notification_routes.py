from __future__ import annotations
import logging
import math
from typing import AsyncIterator, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy import select, func, desc
from sqlalchemy.orm import Session

from app import models
from app.core.auth import InvalidToken, TokenPayload, require_roles, verify_access_token
from app.core.config import settings
from app.core.notifications import NotificationManager, NotificationManagerClosed
from app.core.serialization import CONNECTED, NotificationEvent
from app.dependencies import get_db, get_notification_manager
from app.infra.sse import StreamTransport

router = APIRouter(prefix="/notifications")
logger = logging.getLogger("api.notifications")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    "Access-Control-Allow-Origin": "*",
}


async def _event_stream(transport: StreamTransport) -> AsyncIterator[str]:
    try:
        # initial comment so proxies flush headers right away
        yield CONNECTED
        async for chunk in transport.stream():
            yield chunk
    finally:
        # client went away or the manager closed us; either way unregister
        transport.close()


@router.get("/stream")
async def stream_notifications(
    token: Optional[str] = Query(default=None),
    manager: NotificationManager = Depends(get_notification_manager),
):
    # EventSource cannot send headers, so the token rides in the query string
    if not token:
        raise HTTPException(status_code=401, detail="No token provided")
    try:
        user = verify_access_token(token)
    except InvalidToken:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    transport = StreamTransport(maxsize=settings.NOTIFY_QUEUE_SIZE)
    try:
        sub = manager.subscribe(transport)
    except NotificationManagerClosed:
        raise HTTPException(status_code=503, detail="Server is shutting down")
    logger.info(
        "Notification stream opened",
        extra={"subscriber_id": sub.id, "user_id": user.user_id},
    )
    return StreamingResponse(
        _event_stream(transport), media_type="text/event-stream", headers=SSE_HEADERS
    )


@router.get("")
def list_notifications(
    db: Session = Depends(get_db),
    user: TokenPayload = Depends(require_roles("admin", "moderator")),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
):
    total = db.execute(select(func.count(models.Notification.id))).scalar_one()
    rows = db.scalars(
        select(models.Notification)
        .order_by(desc(models.Notification.created_at), desc(models.Notification.id))
        .limit(limit)
        .offset((page - 1) * limit)
    ).all()
    return {
        "notifications": [
            NotificationEvent(
                name=n.name,
                icon=n.icon,
                notif=n.notif,
                path=n.path,
                created_at=n.created_at,
                id=str(n.id),
            ).to_message()
            for n in rows
        ],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": int(total),
            "pages": math.ceil(total / limit) if total else 0,
        },
    }
