# classes/order_lifecycle.py

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Optional

from classes.base_utils import BaseUtils
from classes.entities import utcnow
from classes.entity_store import EntityStore
from classes.errors import InvalidTransitionError, StoreError
from classes.notification_dispatcher import DispatchReport, NotificationDispatcher
from classes.snapshots import NotificationPlan, OrderSnapshot, OrderStatus

logger = logging.getLogger("craft_backend")

ORDER_UPDATE_TYPE = "order_update"

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# (title, body) per status; None means that status does not notify the recipient
BUYER_TEMPLATES: dict[OrderStatus, Optional[tuple[str, str]]] = {
    OrderStatus.PENDING: None,
    OrderStatus.CONFIRMED: (
        "Order Confirmed",
        "✅ **Order Confirmed!**\n\n"
        "📦 **Order ID:** {order_ref}\n"
        "🎨 **Product:** {product_name}\n"
        "👨‍🎨 **Artisan:** {artisan_name}\n\n"
        "Your order has been confirmed! The artisan will start working on your handcrafted piece. 🎨",
    ),
    OrderStatus.PROCESSING: (
        "Order in Progress",
        "⚒️ **Order in Progress!**\n\n"
        "📦 **Order ID:** {order_ref}\n"
        "🎨 **Product:** {product_name}\n"
        "👨‍🎨 **Artisan:** {artisan_name}\n\n"
        "Great news! Your artisan is now crafting your special piece with love and care. ✨",
    ),
    OrderStatus.SHIPPED: (
        "Order Shipped",
        "🚚 **Order Shipped!**\n\n"
        "📦 **Order ID:** {order_ref}\n"
        "🎨 **Product:** {product_name}\n"
        "👨‍🎨 **Artisan:** {artisan_name}\n\n"
        "Your handcrafted treasure is on its way! Expect delivery soon. 📮",
    ),
    OrderStatus.DELIVERED: (
        "Order Delivered",
        "🎉 **Order Delivered!**\n\n"
        "📦 **Order ID:** {order_ref}\n"
        "🎨 **Product:** {product_name}\n"
        "👨‍🎨 **Artisan:** {artisan_name}\n\n"
        "Your handcrafted piece has arrived! We hope you love it. Please consider leaving a review! ⭐",
    ),
    OrderStatus.CANCELLED: (
        "Order Cancelled",
        "❌ **Order Cancelled**\n\n"
        "📦 **Order ID:** {order_ref}\n"
        "🎨 **Product:** {product_name}\n"
        "👨‍🎨 **Artisan:** {artisan_name}\n\n"
        "Your order has been cancelled. If you have any questions, please contact support. 💙",
    ),
}

ARTISAN_TEMPLATES: dict[OrderStatus, Optional[tuple[str, str]]] = {
    OrderStatus.PENDING: None,
    OrderStatus.CONFIRMED: None,
    OrderStatus.PROCESSING: None,
    OrderStatus.SHIPPED: None,
    OrderStatus.DELIVERED: (
        "Order Completed",
        "🎉 **Order Completed!**\n\n"
        "📦 **Order ID:** {order_ref}\n"
        "🎨 **Product:** {product_name}\n"
        "👤 **Customer:** {buyer_name}\n"
        "💰 **Amount:** ₹{amount}\n\n"
        "Congratulations! Your handcrafted piece has been delivered successfully. 🎨✨",
    ),
    OrderStatus.CANCELLED: (
        "Order Cancelled",
        "❌ **Order Cancelled**\n\n"
        "📦 **Order ID:** {order_ref}\n"
        "🎨 **Product:** {product_name}\n\n"
        "The order has been cancelled. The customer has been notified.",
    ),
}

BUYER_ACTIONS = {
    "inline_keyboard": [
        [{"text": "🛍️ Browse More Products", "callback_data": "show_all_products"}]
    ]
}

NEW_ORDER_TYPE = "new_order"
NEW_ORDER_TITLE = "New Order Received"
NEW_ORDER_TEMPLATE = (
    "🔔 **New Order Received!**\n\n"
    "📦 **Order ID:** {order_ref}\n"
    "🎨 **Product:** {product_name}\n"
    "👤 **Customer:** {buyer_name}\n"
    "💰 **Amount:** ₹{amount}\n"
    "📱 **Platform:** {platform}\n\n"
    "Please confirm or update the order status in your seller dashboard."
)


def new_order_actions(order_id: str) -> dict:
    return {
        "inline_keyboard": [
            [
                {"text": "✅ Confirm Order", "callback_data": f"confirm_order_{order_id}"},
                {"text": "❌ Cancel Order", "callback_data": f"cancel_order_{order_id}"},
            ]
        ]
    }

for _table_name, _table in (
    ("ALLOWED_TRANSITIONS", ALLOWED_TRANSITIONS),
    ("BUYER_TEMPLATES", BUYER_TEMPLATES),
    ("ARTISAN_TEMPLATES", ARTISAN_TEMPLATES),
):
    _missing = set(OrderStatus) - set(_table)
    if _missing:
        raise RuntimeError(f"{_table_name} has no decision for {sorted(s.value for s in _missing)}")


def is_allowed(source: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[source]


@dataclass
class TransitionPlan:
    order_id: str
    before: OrderStatus
    after: OrderStatus
    notifications: list[NotificationPlan] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return self.before == self.after


@dataclass
class TransitionOutcome:
    order_id: str
    before: OrderStatus
    after: OrderStatus
    applied: bool
    notifications: list[NotificationPlan] = field(default_factory=list)
    dispatch: DispatchReport = field(default_factory=DispatchReport)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "previous_status": self.before.value,
            "status": self.after.value,
            "applied": self.applied,
            "notified": len(self.notifications),
            "dispatched": self.dispatch.sent,
            "dispatch_failures": self.dispatch.failure_count,
        }


class OrderStateMachine(BaseUtils):
    """
    Validates order status transitions and derives who hears about them.

    `plan` is pure. `apply_transition` (external action path) and
    `on_status_change` (change-event listener path) commit through the store
    and push afterwards; an unchanged status is a no-op on both paths.
    """

    def __init__(
        self,
        store: EntityStore,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock

    # !##############################################
    # ! Planning (pure)
    # !##############################################

    def validate(self, source: OrderStatus, target: OrderStatus) -> None:
        if not is_allowed(source, target):
            raise InvalidTransitionError(source, target)

    def plan(self, order: OrderSnapshot, target: OrderStatus) -> TransitionPlan:
        before = order.status
        if before == target:
            return TransitionPlan(order_id=order.id, before=before, after=target)

        self.validate(before, target)

        notifications = []
        buyer = self._buyer_notification(order, before, target)
        if buyer is not None:
            notifications.append(buyer)
        artisan = self._artisan_notification(order, before, target)
        if artisan is not None:
            notifications.append(artisan)

        return TransitionPlan(order_id=order.id, before=before, after=target, notifications=notifications)

    def _template_params(self, order: OrderSnapshot) -> dict:
        return {
            "order_ref": order.short_id,
            "product_name": order.product_name or "your item",
            "artisan_name": order.artisan_name or "your artisan",
            "buyer_name": order.buyer_name or "Customer",
            "amount": f"{order.total_amount:.2f}",
        }

    def _data(self, order: OrderSnapshot, before: OrderStatus, target: OrderStatus) -> dict:
        return {
            "orderId": order.id,
            "status": target.value,
            "previousStatus": before.value,
        }

    def _buyer_notification(self, order, before, target) -> Optional[NotificationPlan]:
        template = BUYER_TEMPLATES[target]
        if template is None:
            return None
        title, body = template
        return NotificationPlan(
            user_id=order.buyer_id,
            type=ORDER_UPDATE_TYPE,
            title=title,
            message=self.unsafe_string_format(body, **self._template_params(order)),
            target_role="buyer",
            data=self._data(order, before, target),
            channel_id=order.buyer_channel_id,
            actions=BUYER_ACTIONS,
        )

    def _artisan_notification(self, order, before, target) -> Optional[NotificationPlan]:
        template = ARTISAN_TEMPLATES[target]
        if template is None:
            return None
        title, body = template
        return NotificationPlan(
            user_id=order.artisan_id,
            type=ORDER_UPDATE_TYPE,
            title=title,
            message=self.unsafe_string_format(body, **self._template_params(order)),
            target_role="artisan",
            data=self._data(order, before, target),
            priority="high" if target is OrderStatus.DELIVERED else "medium",
        )

    def plan_new_order(self, order: OrderSnapshot) -> NotificationPlan:
        """Artisan heads-up for a freshly placed order, with confirm / cancel buttons."""
        params = self._template_params(order)
        params["platform"] = (order.buyer_platform or "web").capitalize()
        return NotificationPlan(
            user_id=order.artisan_id,
            type=NEW_ORDER_TYPE,
            title=NEW_ORDER_TITLE,
            message=self.unsafe_string_format(NEW_ORDER_TEMPLATE, **params),
            target_role="artisan",
            data={"orderId": order.id, "status": order.status.value},
            priority="high",
            actions=new_order_actions(order.id),
        )

    # !##############################################
    # ! Entry points
    # !##############################################

    def apply_transition(self, order_id: str, target: OrderStatus) -> TransitionOutcome:
        """
        External action path: move `order_id` to `target`.
        Raises LookupError for an unknown order and InvalidTransitionError for a disallowed move.
        """
        order = self.store.get_order(order_id)
        if order is None:
            raise LookupError(f"Order not found: {order_id}")

        plan = self.plan(order, target)
        if plan.is_noop:
            logger.info(f"Order {order_id} already {target.value}, nothing to do")
            return TransitionOutcome(order_id=order.id, before=plan.before, after=plan.after, applied=False)

        now = self.clock()
        committed = self.store.commit_order_transition(
            order.id, plan.before, plan.after, plan.notifications, now
        )
        if not committed:
            logger.info(f"Order {order_id} changed concurrently, {plan.before.value} -> {plan.after.value} not applied")
            return TransitionOutcome(order_id=order.id, before=plan.before, after=plan.after, applied=False)

        logger.info(f"Order {order_id} status changed: {plan.before.value} -> {plan.after.value}")
        return self._finish(plan, applied=True)

    def on_status_change(self, before: OrderSnapshot, after: OrderSnapshot) -> TransitionOutcome:
        """
        Listener path for a status already written by another writer.
        Redelivery of the same change event (equal statuses) does nothing.
        """
        if before.status == after.status:
            return TransitionOutcome(order_id=after.id, before=before.status, after=after.status, applied=False)

        # templates render from the post-change document
        plan = self.plan(replace(after, status=before.status), after.status)

        recorded = self.store.record_status_notifications(
            after.id, after.status, plan.notifications, self.clock()
        )
        if not recorded:
            logger.info(f"Order {after.id} change to {after.status.value} already processed")
            return TransitionOutcome(order_id=after.id, before=plan.before, after=plan.after, applied=False)

        logger.info(f"Order {after.id} status changed: {before.status.value} -> {after.status.value}")
        return self._finish(plan, applied=True)

    def _finish(self, plan: TransitionPlan, applied: bool) -> TransitionOutcome:
        outcome = TransitionOutcome(
            order_id=plan.order_id,
            before=plan.before,
            after=plan.after,
            applied=applied,
            notifications=plan.notifications,
        )
        outcome.dispatch = self.announce(plan.notifications)
        return outcome

    def announce(self, notifications: list[NotificationPlan]) -> DispatchReport:
        """Push already-committed notifications."""
        self._resolve_artisan_channels(notifications)
        return self.dispatcher.dispatch(notifications)

    def _resolve_artisan_channels(self, notifications: list[NotificationPlan]) -> None:
        pending = [n for n in notifications if n.target_role == "artisan" and not n.channel_id]
        if not pending:
            return
        try:
            channels = self.store.get_channel_ids(n.user_id for n in pending)
        except StoreError as e:
            logger.warning(f"Artisan lookup failed, push skipped: {e}")
            return
        for n in pending:
            n.channel_id = channels.get(n.user_id)
