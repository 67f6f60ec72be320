from __future__ import annotations
from typing import List
from datetime import datetime
from enum import Enum

from sqlalchemy import String, Integer, DateTime, Enum as SAEnum, ForeignKey, Text, Index, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.infra.db import Base

class UserRole(str, Enum):
    ADMIN = "admin"
    MODERATOR = "moderator"
    USER = "user"

class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    role: Mapped["UserRole"] = mapped_column(SAEnum(UserRole), default=UserRole.USER, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    payments: Mapped[List["Payment"]] = relationship(back_populates="user", cascade="all, delete-orphan")

class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = ( Index("ix_payments_status", "status"), )
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    xu_received: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped["PaymentStatus"] = mapped_column(SAEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)
    user: Mapped["User"] = relationship(back_populates="payments")

class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = ( Index("ix_notifications_created_at", "created_at"), )
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    icon: Mapped[str] = mapped_column(String(32), nullable=False)
    notif: Mapped[str] = mapped_column(Text, nullable=False)
    path: Mapped[str] = mapped_column(String(500), nullable=False)
    # stored naive, always UTC
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
