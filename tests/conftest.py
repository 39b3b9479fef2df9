import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from classes.entities import Base, CraftRequest, Notification, Order, User
from classes.entity_store import EntityStore
from classes.notification_dispatcher import NotificationDispatcher


NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeMessenger:
    """Records sends; recipients listed in `failing` raise, those in `rejecting` return False."""

    def __init__(self, failing=(), rejecting=()):
        self.failing = set(failing)
        self.rejecting = set(rejecting)
        self.sent = []
        self._lock = threading.Lock()

    def send(self, recipient_id, text, actions=None):
        if recipient_id in self.failing:
            raise ConnectionError(f"channel {recipient_id} unreachable")
        if recipient_id in self.rejecting:
            return False
        with self._lock:
            self.sent.append({"recipient_id": recipient_id, "text": text, "actions": actions})
        return True


class StepClock:
    """Returns the given instants in order, then keeps returning the last one."""

    def __init__(self, *instants):
        self.instants = list(instants)
        self.calls = 0

    def __call__(self):
        idx = min(self.calls, len(self.instants) - 1)
        self.calls += 1
        return self.instants[idx]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, future=True)


@pytest.fixture
def store(session_factory):
    return EntityStore(session_factory, commit_attempts=2)


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def dispatcher(messenger):
    return NotificationDispatcher(messenger, max_workers=4)


@pytest.fixture
def add_request(session_factory):
    def _add(request_id, deadline, *, status="open", quotations=0, reminder_sent=False, buyer_id="buyer-1", title="Carved walnut box"):
        session = session_factory()
        try:
            session.add(CraftRequest(
                id=request_id,
                buyer_id=buyer_id,
                title=title,
                status=status,
                deadline=deadline,
                quotations=[{"artisanId": f"a{i}", "price": 100 + i} for i in range(quotations)],
                reminder_sent=reminder_sent,
            ))
            session.commit()
        finally:
            session.close()
    return _add


@pytest.fixture
def add_user(session_factory):
    def _add(user_id, telegram_chat_id=None, display_name=None):
        session = session_factory()
        try:
            session.add(User(id=user_id, telegram_chat_id=telegram_chat_id, display_name=display_name))
            session.commit()
        finally:
            session.close()
    return _add


@pytest.fixture
def add_order(session_factory):
    def _add(order_id, status="pending", **overrides):
        values = {
            "buyer_id": "buyer-1",
            "artisan_id": "artisan-1",
            "total_amount": 1250,
            "items": [{"productId": "p-1", "quantity": 1, "price": 1250}],
            "product_name": "Blue pottery vase",
            "artisan_name": "Meera",
            "buyer_name": "Ravi",
            "buyer_platform": "telegram",
            "telegram_chat_id": "chat-buyer",
        }
        values.update(overrides)
        session = session_factory()
        try:
            session.add(Order(id=order_id, status=status, **values))
            session.commit()
        finally:
            session.close()
    return _add


@pytest.fixture
def fetch(session_factory):
    """Reads helpers returning plain values, so tests never hold live ORM objects."""

    class _Fetch:
        def request(self, request_id):
            session = session_factory()
            try:
                row = session.get(CraftRequest, request_id)
                return {
                    "status": row.status,
                    "reminder_sent": row.reminder_sent,
                    "expired_at": row.expired_at,
                    "expiry_reason": row.expiry_reason,
                }
            finally:
                session.close()

        def order(self, order_id):
            session = session_factory()
            try:
                row = session.get(Order, order_id)
                return {"status": row.status, "updated_at": row.updated_at, "notified_status": row.notified_status}
            finally:
                session.close()

        def notifications(self, **filters):
            session = session_factory()
            try:
                q = session.query(Notification)
                for key, value in filters.items():
                    q = q.filter(getattr(Notification, key) == value)
                return [
                    {
                        "user_id": n.user_id,
                        "type": n.type,
                        "title": n.title,
                        "message": n.message,
                        "data": n.data,
                        "priority": n.priority,
                        "target_role": n.target_role,
                        "is_read": n.is_read,
                    }
                    for n in q.order_by(Notification.created_at.asc()).all()
                ]
            finally:
                session.close()

    return _Fetch()


def hours(n):
    return timedelta(hours=n)


def minutes(n):
    return timedelta(minutes=n)
