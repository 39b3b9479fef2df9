# classes/deadline_sweep.py
"""
Deadline sweep over craft requests.

One invocation runs two passes, always in this order:

1. expiry   - open requests whose deadline has passed become `expired` (no
              quotations) or `deadline_expired` (quotations to review);
2. reminder - open requests expiring within the reminder window that were
              never reminded get a reminder and `reminder_sent = true`.

Each pass selects from the store, plans the writes and notifications from
snapshots, commits everything as one batch and only then pushes the
notifications. Overlapping invocations are tolerated because every staged
update is conditioned on the predicate that selected it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from classes.base_utils import BaseUtils
from classes.entities import utcnow
from classes.entity_store import EntityStore, StagedRequestWrite
from classes.errors import StoreError
from classes.google_helpers import REMINDER_WINDOW_HOURS
from classes.idempotency_tracker import IdempotencyTracker
from classes.notification_dispatcher import DispatchReport, NotificationDispatcher
from classes.snapshots import NotificationPlan, RequestSnapshot, RequestStatus

logger = logging.getLogger("craft_backend")

DEADLINE_EXPIRED_TYPE = "quotation_deadline_expired"
REMINDER_TYPE = "system_update"

EXPIRED_TITLE = "Request Deadline Expired ⏰"
REMINDER_TITLE = "Deadline Reminder ⏰"

EXPIRED_NO_QUOTES_TEMPLATE = (
    'Your custom request "{title}" deadline has expired.\n'
    "No quotations were received before the deadline.\n"
    "You can create a new request if you still need this item."
)
EXPIRED_WITH_QUOTES_TEMPLATE = (
    'Your custom request "{title}" deadline has expired.\n'
    "You have {quotations} to review.\n"
    "Please check your quotations and make a decision."
)
REMINDER_TEMPLATE = (
    'Your request "{title}" deadline is approaching.\n'
    "Time remaining: {time_remaining}\n"
    "Review any quotations you've received or extend the deadline if needed."
)


def _units_left(count: int, unit: str) -> str:
    return f"{count} {unit}{'s' if count > 1 else ''} left"


def format_time_remaining(deadline: datetime, now: datetime) -> str:
    remaining = (deadline - now).total_seconds()
    if remaining <= 0:
        return "Expired"

    days = int(remaining // 86400)
    hours = int((remaining % 86400) // 3600)
    minutes = int((remaining % 3600) // 60)

    if days > 0:
        return _units_left(days, "day")
    if hours > 0:
        return _units_left(hours, "hour")
    if minutes > 0:
        return _units_left(minutes, "minute")
    return "Expiring soon"


@dataclass
class SweepResult:
    timestamp: datetime
    expired_count: int = 0
    reminded_count: int = 0
    skipped_count: int = 0
    dispatched: int = 0
    dispatch_failures: list[dict[str, str]] = field(default_factory=list)

    def absorb(self, report: DispatchReport) -> None:
        self.dispatched += report.sent
        self.dispatch_failures.extend(report.failed)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "expired_count": self.expired_count,
            "reminded_count": self.reminded_count,
            "skipped_count": self.skipped_count,
            "dispatched": self.dispatched,
            "dispatch_failures": len(self.dispatch_failures),
        }


class DeadlineSweepEngine(BaseUtils):
    def __init__(
        self,
        store: EntityStore,
        dispatcher: NotificationDispatcher,
        tracker: Optional[IdempotencyTracker] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.tracker = tracker or IdempotencyTracker(timedelta(hours=REMINDER_WINDOW_HOURS))
        self.clock = clock

    # !##############################################
    # ! Planning (pure)
    # !##############################################

    def plan_expiry(self, requests: list[RequestSnapshot], now: datetime) -> list[StagedRequestWrite]:
        writes = []
        for req in requests:
            if not self.tracker.is_due_for_expiry(req, now):
                continue

            if req.quotation_count == 0:
                target = RequestStatus.EXPIRED
                reason = "deadline_expired_no_quotations"
                message = self.unsafe_string_format(EXPIRED_NO_QUOTES_TEMPLATE, title=req.title)
            else:
                target = RequestStatus.DEADLINE_EXPIRED_WITH_QUOTATIONS
                reason = "deadline_expired_with_quotations"
                message = self.unsafe_string_format(
                    EXPIRED_WITH_QUOTES_TEMPLATE,
                    title=req.title,
                    quotations=self.pluralize(req.quotation_count, "quotation"),
                )

            notification = NotificationPlan(
                user_id=req.buyer_id,
                type=DEADLINE_EXPIRED_TYPE,
                title=EXPIRED_TITLE,
                message=message,
                target_role="buyer",
                data={
                    "requestId": req.id,
                    "requestTitle": req.title,
                    "quotationCount": req.quotation_count,
                    "reason": "deadline_expired",
                },
            )
            writes.append(StagedRequestWrite(
                request_id=req.id,
                guard=self.tracker.open_request_guard(),
                values={"status": target.value, "expired_at": now, "expiry_reason": reason},
                notification=notification,
            ))
        return writes

    def plan_reminders(self, requests: list[RequestSnapshot], now: datetime) -> list[StagedRequestWrite]:
        writes = []
        for req in requests:
            if not self.tracker.is_due_for_reminder(req, now):
                continue

            time_remaining = format_time_remaining(req.deadline, now)
            notification = NotificationPlan(
                user_id=req.buyer_id,
                type=REMINDER_TYPE,
                title=REMINDER_TITLE,
                message=self.unsafe_string_format(
                    REMINDER_TEMPLATE, title=req.title, time_remaining=time_remaining
                ),
                target_role="buyer",
                data={
                    "requestId": req.id,
                    "requestTitle": req.title,
                    "timeRemaining": time_remaining,
                    "reminderType": "deadline_approaching",
                },
            )
            writes.append(StagedRequestWrite(
                request_id=req.id,
                guard=self.tracker.unreminded_request_guard(),
                values={"reminder_sent": True},
                notification=notification,
            ))
        return writes

    # !##############################################
    # ! Invocation
    # !##############################################

    def run(self) -> SweepResult:
        """
        One full invocation: expiry pass, then reminder pass.
        StoreError propagates to the caller; committed batches stay committed.
        """
        now = self.clock()
        result = SweepResult(timestamp=now)
        logger.info(f"Deadline sweep started at {now.isoformat()}")

        try:
            self._expire_overdue(now, result)
            self._send_reminders(now, result)
        except StoreError:
            logger.exception("Deadline sweep aborted by a store error")
            raise

        logger.info(
            f"Deadline sweep done: expired={result.expired_count} reminded={result.reminded_count} "
            f"skipped={result.skipped_count} dispatched={result.dispatched} "
            f"dispatch_failures={len(result.dispatch_failures)}"
        )
        return result

    def _expire_overdue(self, now: datetime, result: SweepResult) -> None:
        requests, skipped = self.store.find_expired_requests(now)
        result.skipped_count += len(skipped)
        logger.info(f"Found {len(requests)} expired requests")

        writes = self.plan_expiry(requests, now)
        applied = self.store.commit_request_batch(writes, now)
        result.expired_count += len(applied)
        for w in applied:
            logger.info(f"Request {w.request_id} -> {w.values['status']}")

        self._dispatch(applied, result)

    def _send_reminders(self, now: datetime, result: SweepResult) -> None:
        requests, skipped = self.store.find_reminder_due_requests(now)
        result.skipped_count += len(skipped)
        logger.info(f"Found {len(requests)} requests needing deadline reminders")
        if not requests:
            return

        # remaining time is rendered against the clock at commit, not at selection
        commit_time = max(self.clock(), now)
        writes = self.plan_reminders(requests, commit_time)
        applied = self.store.commit_request_batch(writes, commit_time)
        result.reminded_count += len(applied)

        self._dispatch(applied, result)

    def _dispatch(self, applied: list[StagedRequestWrite], result: SweepResult) -> None:
        if not applied:
            return
        notifications = [w.notification for w in applied]
        try:
            channels = self.store.get_channel_ids(n.user_id for n in notifications)
        except StoreError as e:
            logger.warning(f"Could not resolve messaging channels, {len(notifications)} notifications stay feed-only: {e}")
            return

        for n in notifications:
            n.channel_id = channels.get(n.user_id)
        result.absorb(self.dispatcher.dispatch(notifications))
