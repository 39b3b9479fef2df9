# classes/backend.py

import json
import logging
import traceback
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from classes.base_utils import BaseUtils
from classes.deadline_sweep import DeadlineSweepEngine
from classes.entities import Base, utcnow
from classes.entity_store import EntityStore
from classes.errors import InputError, StoreError
from classes.google_helpers import create_session_factory
from classes.notification_dispatcher import Messenger, NotificationDispatcher, TelegramMessenger
from classes.order_lifecycle import OrderStateMachine
from classes.revenue_metrics import RevenueMetricsRecorder
from classes.snapshots import OrderSnapshot, OrderStatus
from classes.sweep_trigger import SweepTrigger

logger = logging.getLogger("craft_backend")


def parse_order_status(raw) -> OrderStatus:
    try:
        return OrderStatus(str(raw or "").strip().lower())
    except ValueError:
        raise InputError(f"Unknown order status {raw!r}") from None


class Backend(BaseUtils):
    """
    Wires the store, dispatcher, sweep engine and order state machine
    around one session factory. The HTTP server and the queue worker both
    go through an instance of this class.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        messenger: Optional[Messenger] = None,
        clock: Callable[[], datetime] = utcnow,
        create_schema: bool = False,
    ):
        self.SessionFactory = session_factory or create_session_factory()
        self.clock = clock
        if create_schema:
            Base.metadata.create_all(self.SessionFactory.kw["bind"])

        self.store = EntityStore(self.SessionFactory)
        self.dispatcher = NotificationDispatcher(messenger or TelegramMessenger())
        self.sweep_engine = DeadlineSweepEngine(self.store, self.dispatcher, clock=clock)
        self.trigger = SweepTrigger(self.sweep_engine)
        self.orders = OrderStateMachine(self.store, self.dispatcher, clock=clock)
        self.revenue = RevenueMetricsRecorder(self.SessionFactory, clock=clock)

    def _process_request_data(self, request_data: dict) -> dict:
        """
        Core request handling logic for queue messages.
        Takes a parsed JSON dict and returns the response_data dict.
        """
        try:
            request_type = request_data.get("type")
            payload = request_data.get("payload") or {}

            try:
                preview = json.dumps(request_data, indent=2, default=str)
            except Exception:
                preview = str(request_data)

            logger.debug(f"process_request request {preview}")

            response_data = {
                "status": "success",
                "message": "",
            }

            if request_type == "order_status_changed":
                response_data["data"] = self.handle_order_status_changed(payload)

            elif request_type == "order_status_update":
                response_data["data"] = self.handle_order_status_update(payload)

            elif request_type == "deadline_check":
                response_data["data"] = self.trigger.run_scheduled().to_dict()

            else:
                response_data["status"] = "error"
                response_data["message"] = f"Unknown request type: {request_type}"

            logger.debug(f"response {json.dumps(response_data, default=str)}")
            return response_data

        except Exception as e:
            logger.info(f"Error while processing request data: {e}")
            traceback.print_exc()
            raise

    # -----------------------
    # Handlers
    # -----------------------

    def handle_order_status_changed(self, payload: dict) -> dict:
        """
        Change event for a status already written elsewhere:
        {"order_id": ..., "previous_status": ..., "status": ...}
        """
        order_id = str(payload.get("order_id") or "")
        if not order_id:
            raise InputError("order_status_changed payload.order_id is required")

        before_status = parse_order_status(payload.get("previous_status"))
        after = self.store.get_order(order_id)
        if after is None:
            raise LookupError(f"Order not found: {order_id}")

        if payload.get("status") and parse_order_status(payload["status"]) != after.status:
            # stale event, the order has moved on; the newer event carries the notifications
            logger.info(f"Ignoring stale change event for order {order_id}")
            return {"order_id": order_id, "applied": False, "stale": True}

        before = replace(after, status=before_status)
        return self.orders.on_status_change(before, after).to_dict()

    def handle_order_status_update(self, payload: dict) -> dict:
        order_id = str(payload.get("order_id") or "")
        if not order_id:
            raise InputError("order_status_update payload.order_id is required")
        target = parse_order_status(payload.get("status"))
        return self.orders.apply_transition(order_id, target).to_dict()

    def create_order(self, values: dict) -> OrderSnapshot:
        order, notifications = self.store.create_order(
            values,
            plan_notifications=lambda o: [self.orders.plan_new_order(o)],
            now=self.clock(),
        )
        logger.info(f"Order {order.id} created for artisan {order.artisan_id}")
        try:
            self.revenue.record_order(order)
        except StoreError as e:
            logger.warning(f"Revenue tracking failed: {e}")
        self.orders.announce(notifications)
        return order
