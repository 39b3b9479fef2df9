# classes/idempotency_tracker.py

from datetime import datetime, timedelta

from sqlalchemy import and_, or_

from classes.entities import CraftRequest, Order
from classes.snapshots import OrderStatus, RequestSnapshot, RequestStatus


class IdempotencyTracker:
    """
    Persisted guards for writes that must not repeat.

    - No in-memory state: every guard is a predicate over the stored row.
    - The same predicate selects a record and conditions its update, so an
      overlapping invocation that already applied the change updates zero rows.
    """

    def __init__(self, reminder_window: timedelta = timedelta(hours=24)) -> None:
        self.reminder_window = reminder_window

    # -----------------------
    # Store-side predicates
    # -----------------------

    def open_request_guard(self):
        return CraftRequest.status == RequestStatus.OPEN.value

    def unreminded_request_guard(self):
        return and_(
            CraftRequest.status == RequestStatus.OPEN.value,
            CraftRequest.reminder_sent.is_(False),
        )

    def expiry_due(self, now: datetime):
        return and_(self.open_request_guard(), CraftRequest.deadline < now)

    def reminder_due(self, now: datetime):
        threshold = now + self.reminder_window
        return and_(
            self.unreminded_request_guard(),
            CraftRequest.deadline <= threshold,
            CraftRequest.deadline > now,
        )

    def order_status_guard(self, expected: OrderStatus):
        return Order.status == expected.value

    def order_unnotified_guard(self, status: OrderStatus):
        return or_(Order.notified_status.is_(None), Order.notified_status != status.value)

    # -----------------------
    # Snapshot-side checks
    # -----------------------

    def is_due_for_expiry(self, request: RequestSnapshot, now: datetime) -> bool:
        return request.status is RequestStatus.OPEN and request.deadline < now

    def is_due_for_reminder(self, request: RequestSnapshot, now: datetime) -> bool:
        return (
            request.status is RequestStatus.OPEN
            and not request.reminder_sent
            and now < request.deadline <= now + self.reminder_window
        )
