from __future__ import annotations
import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app import models
from app.api.schemas import PaymentOut, PaymentStatusUpdate
from app.core.auth import TokenPayload, require_roles
from app.core.notifications import NotificationManager
from app.dependencies import get_db, get_notification_manager

router = APIRouter(prefix="/payments")
logger = logging.getLogger("api.payments")


def format_vnd(amount: int) -> str:
    # vi-VN groups thousands with dots: 100000 -> 100.000
    return f"{amount:,}".replace(",", ".")


def payment_message(email: str | None, xu_received: int, amount: int) -> str:
    return f"{email or 'Unknown User'} đã nạp {xu_received}xu ({format_vnd(amount)} VNĐ)"


@router.patch("/{payment_id}/status", response_model=PaymentOut)
def update_payment_status(
    payment_id: int,
    body: PaymentStatusUpdate,
    db: Session = Depends(get_db),
    user: TokenPayload = Depends(require_roles("admin")),
    manager: NotificationManager = Depends(get_notification_manager),
):
    payment = db.get(models.Payment, payment_id)
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")

    old_status = payment.status
    payment.status = body.status
    db.add(payment)
    db.commit()
    db.refresh(payment)
    logger.info(
        "Payment %s status %s -> %s",
        payment.id,
        old_status.value,
        payment.status.value,
        extra={"user_id": user.user_id},
    )

    if payment.status == models.PaymentStatus.SUCCESS:
        owner = db.get(models.User, payment.user_id)
        manager.notify(
            name="Payment Notification",
            icon="💵",
            notif=payment_message(owner.email if owner else None, payment.xu_received, payment.amount),
            path="/payments",
        )

    return PaymentOut(
        id=payment.id,
        user_id=payment.user_id,
        amount=payment.amount,
        xu_received=payment.xu_received,
        status=payment.status,
        created_at=payment.created_at,
        updated_at=payment.updated_at,
    )
