# classes/snapshots.py
"""
Immutable views over stored rows.

The sweep engine and the order state machine never touch ORM objects: rows
are converted here, once, into frozen dataclasses. A row that cannot be
converted (unknown status, missing required field) raises InputError so the
caller can skip that single record.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from classes.errors import InputError


DEFAULT_REQUEST_TITLE = "Untitled Request"


class RequestStatus(str, Enum):
    OPEN = "open"
    EXPIRED = "expired"
    DEADLINE_EXPIRED_WITH_QUOTATIONS = "deadline_expired"
    CANCELLED = "cancelled"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_status(enum_cls, raw, record_id):
    try:
        return enum_cls(str(raw).strip().lower())
    except ValueError:
        raise InputError(f"Unknown {enum_cls.__name__} {raw!r}", record_id=record_id) from None


@dataclass(frozen=True)
class RequestSnapshot:
    id: str
    buyer_id: str
    status: RequestStatus
    deadline: datetime
    title: str = DEFAULT_REQUEST_TITLE
    quotation_count: int = 0
    reminder_sent: bool = False

    @classmethod
    def from_row(cls, row) -> "RequestSnapshot":
        record_id = getattr(row, "id", None)
        if not record_id:
            raise InputError("Craft request without id")
        if not row.buyer_id:
            raise InputError(f"Craft request {record_id} has no buyer_id", record_id=record_id)
        if row.deadline is None:
            raise InputError(f"Craft request {record_id} has no deadline", record_id=record_id)

        quotations = row.quotations or []
        if not isinstance(quotations, list):
            raise InputError(f"Craft request {record_id} quotations is not a list", record_id=record_id)

        return cls(
            id=str(record_id),
            buyer_id=str(row.buyer_id),
            status=_parse_status(RequestStatus, row.status, record_id),
            deadline=as_utc(row.deadline),
            title=(row.title or "").strip() or DEFAULT_REQUEST_TITLE,
            quotation_count=len(quotations),
            reminder_sent=bool(row.reminder_sent),
        )


@dataclass(frozen=True)
class OrderSnapshot:
    id: str
    buyer_id: str
    artisan_id: str
    status: OrderStatus
    total_amount: Decimal = Decimal("0")
    items: tuple = ()
    product_name: str = ""
    artisan_name: str = ""
    buyer_name: str = ""
    buyer_platform: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def buyer_channel_id(self) -> Optional[str]:
        # buyers only have a push channel when they ordered through the bot
        if self.buyer_platform == "telegram" and self.telegram_chat_id:
            return str(self.telegram_chat_id)
        return None

    @classmethod
    def from_row(cls, row) -> "OrderSnapshot":
        record_id = getattr(row, "id", None)
        if not record_id:
            raise InputError("Order without id")
        if not row.buyer_id or not row.artisan_id:
            raise InputError(f"Order {record_id} is missing buyer_id or artisan_id", record_id=record_id)

        return cls(
            id=str(record_id),
            buyer_id=str(row.buyer_id),
            artisan_id=str(row.artisan_id),
            status=_parse_status(OrderStatus, row.status, record_id),
            total_amount=Decimal(str(row.total_amount or 0)),
            items=tuple(row.items or ()),
            product_name=row.product_name or "",
            artisan_name=row.artisan_name or "",
            buyer_name=row.buyer_name or "",
            buyer_platform=(row.buyer_platform or None),
            telegram_chat_id=(str(row.telegram_chat_id) if row.telegram_chat_id else None),
            updated_at=as_utc(row.updated_at),
        )


@dataclass
class NotificationPlan:
    """A notification computed by the core, persisted on commit and pushed afterwards."""

    user_id: str
    type: str
    title: str
    message: str
    target_role: str
    data: dict[str, Any] = field(default_factory=dict)
    priority: str = "medium"
    channel_id: Optional[str] = None
    actions: Optional[dict[str, Any]] = None

    def to_record(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "data": dict(self.data),
            "priority": self.priority,
            "target_role": self.target_role,
            "is_read": False,
        }
