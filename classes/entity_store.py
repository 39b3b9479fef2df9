# classes/entity_store.py

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from classes.base_utils import BaseUtils
from classes.entities import CraftRequest, Notification, Order, User, utcnow
from classes.errors import InputError, StoreError
from classes.google_helpers import STORE_COMMIT_ATTEMPTS
from classes.idempotency_tracker import IdempotencyTracker
from classes.snapshots import NotificationPlan, OrderSnapshot, OrderStatus, RequestSnapshot

logger = logging.getLogger("craft_backend")


@dataclass
class StagedRequestWrite:
    """One craft request update plus the notification that must land with it."""

    request_id: str
    guard: Any
    values: dict[str, Any]
    notification: NotificationPlan


class EntityStore(BaseUtils):
    """
    Durable Request / Order / Notification access.

    Every write that belongs to one sweep or one transition goes through a
    single session and a single commit. Transient failures (OperationalError)
    replay the whole batch from the start with a fresh session; anything else
    is raised as StoreError.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        tracker: Optional[IdempotencyTracker] = None,
        commit_attempts: int = STORE_COMMIT_ATTEMPTS,
    ):
        self.SessionFactory = session_factory
        self.tracker = tracker or IdempotencyTracker()
        self.commit_attempts = max(1, int(commit_attempts))

    # !##############################################
    # ! Craft requests
    # !##############################################

    def find_expired_requests(self, now: datetime) -> tuple[list[RequestSnapshot], list[str]]:
        return self._select_requests(self.tracker.expiry_due(now))

    def find_reminder_due_requests(self, now: datetime) -> tuple[list[RequestSnapshot], list[str]]:
        return self._select_requests(self.tracker.reminder_due(now))

    def _select_requests(self, criterion) -> tuple[list[RequestSnapshot], list[str]]:
        """Returns (snapshots, ids of rows skipped as malformed)."""
        session = self.SessionFactory()
        try:
            rows = (
                session.query(CraftRequest)
                .filter(criterion)
                .order_by(CraftRequest.deadline.asc())
                .all()
            )
            snapshots: list[RequestSnapshot] = []
            skipped: list[str] = []
            for row in rows:
                try:
                    snapshots.append(RequestSnapshot.from_row(row))
                except InputError as e:
                    logger.warning(f"Skipping craft request {row.id}: {e}")
                    skipped.append(str(row.id))
            return snapshots, skipped
        except SQLAlchemyError as e:
            self.color_print(f"_select_requests(): DB error -> {e}", color="red")
            raise StoreError(f"Could not read craft requests: {e}") from e
        finally:
            session.close()

    def commit_request_batch(self, writes: list[StagedRequestWrite], now: datetime) -> list[StagedRequestWrite]:
        """
        Apply all staged request updates and their notification inserts in one
        transaction. A write whose guard no longer matches (already handled by
        an overlapping invocation) is dropped together with its notification.

        Returns the writes that were actually applied.
        """
        if not writes:
            return []

        def _apply(session: Session) -> list[StagedRequestWrite]:
            applied = []
            for w in writes:
                result = session.execute(
                    update(CraftRequest)
                    .where(CraftRequest.id == w.request_id, w.guard)
                    .values(**w.values, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.info(f"Craft request {w.request_id} already handled elsewhere, dropping from batch")
                    continue
                session.add(self._notification_row(w.notification, now))
                applied.append(w)
            return applied

        return self._run_in_transaction("commit_request_batch", _apply)

    # !##############################################
    # ! Orders
    # !##############################################

    def get_order(self, order_id: str) -> Optional[OrderSnapshot]:
        session = self.SessionFactory()
        try:
            row = session.get(Order, str(order_id))
            if row is None:
                return None
            return OrderSnapshot.from_row(row)
        except SQLAlchemyError as e:
            self.color_print(f"get_order(): DB error -> {e}", color="red")
            raise StoreError(f"Could not read order {order_id}: {e}") from e
        finally:
            session.close()

    def create_order(
        self,
        values: dict[str, Any],
        plan_notifications: Optional[Callable[[OrderSnapshot], list[NotificationPlan]]] = None,
        now: Optional[datetime] = None,
    ) -> tuple[OrderSnapshot, list[NotificationPlan]]:
        """
        Insert a Pending order. `plan_notifications` is called with the new
        order's snapshot and its notifications are inserted in the same
        transaction. Returns (order, notifications).
        """

        def _insert(session: Session) -> tuple[OrderSnapshot, list[NotificationPlan]]:
            row = Order(
                buyer_id=values["buyer_id"],
                artisan_id=values["artisan_id"],
                status=OrderStatus.PENDING.value,
                total_amount=Decimal(str(values.get("total_amount") or 0)),
                items=list(values.get("items") or []),
                product_name=values.get("product_name"),
                artisan_name=values.get("artisan_name"),
                buyer_name=values.get("buyer_name"),
                buyer_platform=values.get("buyer_platform"),
                telegram_chat_id=values.get("telegram_chat_id"),
            )
            session.add(row)
            session.flush()
            order = OrderSnapshot.from_row(row)

            notifications = list(plan_notifications(order)) if plan_notifications else []
            for n in notifications:
                session.add(self._notification_row(n, now or utcnow()))
            return order, notifications

        return self._run_in_transaction("create_order", _insert)

    def commit_order_transition(
        self,
        order_id: str,
        expected: OrderStatus,
        target: OrderStatus,
        notifications: Iterable[NotificationPlan],
        now: datetime,
    ) -> bool:
        """
        Compare-and-set the order status and persist its notifications.
        Returns False (nothing written) when the order is no longer at `expected`.
        """
        notifications = list(notifications)

        def _apply(session: Session) -> bool:
            result = session.execute(
                update(Order)
                .where(Order.id == str(order_id), self.tracker.order_status_guard(expected))
                .values(status=target.value, notified_status=target.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            for n in notifications:
                session.add(self._notification_row(n, now))
            return True

        return self._run_in_transaction("commit_order_transition", _apply)

    def record_status_notifications(
        self,
        order_id: str,
        status: OrderStatus,
        notifications: Iterable[NotificationPlan],
        now: datetime,
    ) -> bool:
        """
        For a status written by someone else: flip `notified_status` to `status`
        and persist the notifications, once. Returns False when this status was
        already processed (redelivered change event).
        """
        notifications = list(notifications)

        def _apply(session: Session) -> bool:
            result = session.execute(
                update(Order)
                .where(
                    Order.id == str(order_id),
                    self.tracker.order_status_guard(status),
                    self.tracker.order_unnotified_guard(status),
                )
                # updated_at belongs to the writer that changed the status
                .values(notified_status=status.value, updated_at=Order.updated_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            for n in notifications:
                session.add(self._notification_row(n, now))
            return True

        return self._run_in_transaction("record_status_notifications", _apply)

    # !##############################################
    # ! Recipients
    # !##############################################

    def get_channel_ids(self, user_ids: Iterable[str]) -> dict[str, str]:
        """Messaging channel identity per user; users without one are absent from the result."""
        ids = sorted({str(u) for u in user_ids if u})
        if not ids:
            return {}
        session = self.SessionFactory()
        try:
            rows = (
                session.query(User.id, User.telegram_chat_id)
                .filter(User.id.in_(ids))
                .all()
            )
            return {str(uid): str(chat_id) for uid, chat_id in rows if chat_id}
        except SQLAlchemyError as e:
            self.color_print(f"get_channel_ids(): DB error -> {e}", color="red")
            raise StoreError(f"Could not resolve recipients: {e}") from e
        finally:
            session.close()

    # -----------------------
    # Internals
    # -----------------------

    def _notification_row(self, plan: NotificationPlan, now: datetime) -> Notification:
        return Notification(**plan.to_record(), created_at=now, updated_at=now)

    def _run_in_transaction(self, label: str, fn: Callable[[Session], Any]) -> Any:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.commit_attempts + 1):
            session = self.SessionFactory()
            try:
                result = fn(session)
                session.commit()
                return result
            except OperationalError as e:
                session.rollback()
                last_error = e
                logger.warning(f"{label}(): transient DB error on attempt {attempt}/{self.commit_attempts}: {e}")
            except SQLAlchemyError as e:
                session.rollback()
                self.color_print(f"{label}(): DB error -> {e}", color="red")
                raise StoreError(f"{label} failed: {e}") from e
            finally:
                session.close()

        raise StoreError(f"{label} failed after {self.commit_attempts} attempts: {last_error}") from last_error
