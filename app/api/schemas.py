from __future__ import annotations
from datetime import datetime
from pydantic import BaseModel

from app.models import PaymentStatus


class PaymentStatusUpdate(BaseModel):
    status: PaymentStatus


class PaymentOut(BaseModel):
    id: int
    user_id: int
    amount: int
    xu_received: int
    status: PaymentStatus
    created_at: datetime | None = None
    updated_at: datetime | None = None


class HealthOut(BaseModel):
    status: str
    app: str
    subscribers: int
