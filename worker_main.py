# worker_main.py
"""
Deadline sweep scheduler + order change-event worker

Periodic sweep
--------------
DeadlineApp.sweep() is called on every AsyncGuard cycle but only runs the
deadline sweep once SWEEP_INTERVAL_SECONDS have passed since the previous run
(hourly by default). A sweep that fails with a store error is logged and
simply runs again on the next interval; all of its predicates re-select from
current state, so a retry never duplicates work.

Nothing here serialises sweeps across processes. Two workers, or a worker and
a manual trigger, may overlap; the store-level guards make that harmless.

Change events
-------------
Each QueueMessage row has a receiver_id column. This worker polls ONLY rows
where receiver_id == QUEUE_RECEIVER_ID, deletes them when claimed, and routes
them by sender_id prefix:

  - "orders::<order_id>" -> OrderEventsApp

Supported message types:
  - order_status_changed  {"order_id", "previous_status", "status"}
  - order_status_update   {"order_id", "status"}
"""

import os
import time
import asyncio
import logging
import traceback
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

from classes.backend import Backend
from classes.entities import QueueMessage
from classes.errors import StoreError
from classes.google_helpers import SWEEP_INTERVAL_SECONDS


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("craft_worker")

QUEUE_RECEIVER_ID = os.getenv("QUEUE_RECEIVER_ID")
CONCURRENT_INSTANCES = int(os.getenv("CONCURRENT_INSTANCES", "4"))


class AppHost:
    def __init__(self, Session, receiver_id: str, apps: List[Any]):
        self.SessionFactory = Session
        self.receiver_id = receiver_id
        self.apps = list(apps or [])

    def sweep(self) -> None:
        for app in self.apps:
            fn = getattr(app, "sweep", None)
            if callable(fn):
                fn()

    def _send_queue_message(
        self,
        to_receiver_id: str,
        msg_type: str,
        payload: Dict[str, Any],
        from_sender_id: str,
    ) -> None:
        session = self.SessionFactory()
        try:
            session.add(
                QueueMessage(
                    sender_id=str(from_sender_id),
                    receiver_id=str(to_receiver_id),
                    type=msg_type,
                    payload=payload,
                )
            )
            session.commit()
        finally:
            session.close()

    def _resolve_app(self, sender_full: str) -> Tuple[Any, str, str]:
        """
        STRICT: must match a registered app prefix.
        Returns: (app, matched_prefix, entity_id)
        """
        candidates: List[Tuple[int, str, Any]] = []

        for app in self.apps:
            key = getattr(app, "key", "")
            delim = getattr(app, "key_delim", "")
            prefix = f"{key}{delim}"
            if not prefix:
                continue
            if sender_full.startswith(prefix):
                candidates.append((len(prefix), prefix, app))

        if not candidates:
            known = [f"{getattr(a,'key','')}{getattr(a,'key_delim','')}" for a in self.apps if getattr(a, "key", "")]
            raise RuntimeError(f"No app matched sender_id='{sender_full}'. Known prefixes: {known}")

        candidates.sort(key=lambda x: x[0], reverse=True)
        _, prefix, app = candidates[0]
        return app, prefix, sender_full[len(prefix):]

    def process_queue_job(self, job: Dict[str, Any]) -> None:
        sender_full = str(job.get("sender_id") or "")
        msg_type = job.get("type") or "unknown"

        try:
            app, _, entity_id = self._resolve_app(sender_full)
            response_payload = app.handle(job, entity_id)
            self._send_queue_message(
                to_receiver_id=sender_full,
                msg_type=f"{msg_type}_response",
                payload=response_payload,
                from_sender_id=str(job.get("receiver_id")),
            )
        except Exception as e:
            logger.warning("Error processing job id=%s type=%s: %s", job.get("id"), msg_type, e)
            traceback.print_exc()
            self._send_queue_message(
                to_receiver_id=sender_full,
                msg_type=f"{msg_type}_response",
                payload={"status": "error", "message": str(e)},
                from_sender_id=str(job.get("receiver_id")),
            )


class DeadlineApp:
    """Runs the deadline sweep on a fixed interval. Has no queue prefix."""

    def __init__(self, backend: Backend, interval_seconds: float = SWEEP_INTERVAL_SECONDS, monotonic=time.monotonic) -> None:
        self.backend = backend
        self.interval_seconds = interval_seconds
        self._monotonic = monotonic
        self._last_run: Optional[float] = None

    def due(self) -> bool:
        if self._last_run is None:
            return True
        return self._monotonic() - self._last_run >= self.interval_seconds

    def sweep(self) -> None:
        if not self.due():
            return
        self._last_run = self._monotonic()
        try:
            result = self.backend.trigger.run_scheduled()
            logger.info("Deadline sweep: %s", result.to_dict())
        except StoreError as e:
            logger.error("Deadline sweep failed, will retry next interval: %s", e)
        except Exception:
            logger.exception("Unexpected error in deadline sweep, will retry next interval")


class OrderEventsApp:
    """
    Order change events.

    KEY WIRING:
      sender_id must start with:  "orders::"
    """
    key = "orders"
    key_delim = "::"

    def __init__(self, backend: Backend) -> None:
        self.backend = backend

    def handle(self, job: Dict[str, Any], order_id: str) -> Dict[str, Any]:
        payload = dict(job.get("payload") or {})
        payload.setdefault("order_id", order_id)
        return self.backend._process_request_data({"type": job.get("type"), "payload": payload})


class AsyncGuard:
    def __init__(
        self,
        host: AppHost,
        receiver_id: Optional[str],
        poll_interval: float = 1.0,
        max_concurrent: int = 4,
    ):
        self.host = host
        self.receiver_id = receiver_id
        self.poll_interval = poll_interval
        self.max_concurrent = max_concurrent
        self._in_flight = set()
        self.SessionFactory = host.SessionFactory

    async def _run_executor_for_message(self, job: Dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self.host.process_queue_job, job)
        finally:
            self._in_flight.discard(job["id"])

    def claim_jobs(self, limit: int) -> List[Dict[str, Any]]:
        session = self.SessionFactory()
        try:
            rows = (
                session.query(QueueMessage)
                .filter(QueueMessage.receiver_id == str(self.receiver_id))
                .order_by(QueueMessage.created_at.asc())
                .with_for_update(skip_locked=True)
                .limit(limit)
                .all()
            )

            jobs = [
                {
                    "id": r.id,
                    "sender_id": r.sender_id,
                    "receiver_id": r.receiver_id,
                    "type": r.type,
                    "payload": r.payload,
                }
                for r in rows
            ]

            for r in rows:
                session.delete(r)

            session.commit()
            return jobs
        finally:
            session.close()

    async def run(self) -> None:
        logger.info("AsyncGuard running - receiver_id=%s (max_concurrent=%d)", self.receiver_id, self.max_concurrent)

        while True:
            # sweeps block store I/O and sends, keep them off the event loop
            await asyncio.to_thread(self.host.sweep)

            if not self.receiver_id:
                await asyncio.sleep(self.poll_interval)
                continue

            available_slots = self.max_concurrent - len(self._in_flight)
            if available_slots <= 0:
                await asyncio.sleep(self.poll_interval)
                continue

            try:
                jobs = self.claim_jobs(available_slots)
            except Exception as e:
                logger.error("Could not poll queue_messages: %s", e)
                jobs = []

            if not jobs:
                await asyncio.sleep(self.poll_interval)
                continue

            for job in jobs:
                if job["id"] in self._in_flight:
                    continue
                self._in_flight.add(job["id"])
                asyncio.create_task(self._run_executor_for_message(job))

            await asyncio.sleep(self.poll_interval)


def main() -> None:
    if not QUEUE_RECEIVER_ID:
        logger.warning("QUEUE_RECEIVER_ID not set: running the deadline schedule only, order events are not consumed")

    backend = Backend()

    # STRICT: every sender_id must match one of these prefixes:
    #   - "orders::"
    apps = [
        DeadlineApp(backend),
        OrderEventsApp(backend),
    ]
    host = AppHost(backend.SessionFactory, receiver_id=QUEUE_RECEIVER_ID, apps=apps)
    guard = AsyncGuard(
        host=host,
        receiver_id=QUEUE_RECEIVER_ID,
        max_concurrent=CONCURRENT_INSTANCES,
    )
    asyncio.run(guard.run())


if __name__ == "__main__":
    main()
