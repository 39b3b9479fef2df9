# classes/entities.py
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4
from sqlalchemy.orm import Mapped, declarative_base, mapped_column
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    Index,
    Numeric,
    JSON,
)

from typing import TypeAlias
UUID: TypeAlias = str
Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(String(64), primary_key=True, default=_new_id)
    display_name: Mapped[str | None] = mapped_column(String(255))

    # messaging channel identity; users without one only get feed notifications
    telegram_chat_id: Mapped[str | None] = mapped_column(String(64))

    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class CraftRequest(Base, TimestampMixin):
    __tablename__ = "craft_requests"

    id: Mapped[UUID] = mapped_column(String(64), primary_key=True, default=_new_id)
    buyer_id: Mapped[str | None] = mapped_column(String(64))
    title: Mapped[str | None] = mapped_column(String(255))

    # open | expired | deadline_expired | cancelled
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="open")
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # quotation payloads are opaque here, only their count matters
    quotations: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    reminder_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expiry_reason: Mapped[str | None] = mapped_column(String(64))

    __table_args__ = (
        Index("ix_craft_requests_status_deadline", "status", "deadline"),
    )


class Order(Base, TimestampMixin):
    __tablename__ = "orders"

    id: Mapped[UUID] = mapped_column(String(64), primary_key=True, default=_new_id)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    artisan_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # pending | confirmed | processing | shipped | delivered | cancelled
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")

    # last status whose notifications were persisted; guards change-event redelivery
    notified_status: Mapped[str | None] = mapped_column(String(32))

    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=0)
    items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    product_name: Mapped[str | None] = mapped_column(String(255))
    artisan_name: Mapped[str | None] = mapped_column(String(255))
    buyer_name: Mapped[str | None] = mapped_column(String(255))

    buyer_platform: Mapped[str | None] = mapped_column(String(32))
    telegram_chat_id: Mapped[str | None] = mapped_column(String(64))

    __table_args__ = (
        Index("ix_orders_artisan_id", "artisan_id"),
    )


class Notification(Base, TimestampMixin):
    __tablename__ = "notifications"

    id: Mapped[UUID] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False, default=dict)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    target_role: Mapped[str] = mapped_column(String(16), nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_notifications_user_id", "user_id"),
    )


class RevenueMetrics(Base):
    __tablename__ = "revenue_metrics"

    artisan_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    total_revenue: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=0)
    total_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    average_order_value: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=0)

    # "YYYY-MM" -> revenue as string decimal
    monthly_revenue: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False, default=dict)
    growth_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class ProductMetrics(Base):
    __tablename__ = "product_metrics"

    product_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    total_sales: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_revenue: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=0)
    last_sale: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class QueueMessage(Base):
    __tablename__ = "queue_messages"

    id = Column(String, primary_key=True, default=_new_id)
    sender_id = Column(String, nullable=False)
    receiver_id = Column(String, nullable=False)
    type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
