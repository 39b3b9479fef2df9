import pytest
import requests

from classes.errors import DispatchError
from classes.notification_dispatcher import NotificationDispatcher, TelegramMessenger
from classes.snapshots import NotificationPlan

from conftest import FakeMessenger


class FakeResponse:
    def __init__(self, status_code=200, text="ok"):
        self.status_code = status_code
        self.text = text


class RecordingHttp:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse()
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response


def plan(user_id, channel_id):
    return NotificationPlan(
        user_id=user_id, type="order_update", title="t", message="m", target_role="buyer", channel_id=channel_id
    )


def test_telegram_send_posts_json_payload():
    http = RecordingHttp()
    messenger = TelegramMessenger(token="123:abc", timeout=5, http=http)
    keyboard = {"inline_keyboard": [[{"text": "Go", "callback_data": "go"}]]}

    assert messenger.send("chat-1", "*hi*", keyboard) is True

    ((url, kwargs),) = http.calls
    assert url == "https://api.telegram.org/bot123:abc/sendMessage"
    assert kwargs["json"] == {
        "chat_id": "chat-1",
        "text": "*hi*",
        "parse_mode": "Markdown",
        "reply_markup": keyboard,
    }
    assert kwargs["timeout"] == 5
    assert "data" not in kwargs


def test_telegram_http_error_raises_dispatch_error():
    messenger = TelegramMessenger(token="t", http=RecordingHttp(FakeResponse(403, "Forbidden: bot was blocked")))
    with pytest.raises(DispatchError):
        messenger.send("chat-1", "hi")


def test_telegram_connection_error_raises_dispatch_error():
    messenger = TelegramMessenger(token="t", http=RecordingHttp(error=requests.exceptions.ConnectionError("down")))
    with pytest.raises(DispatchError):
        messenger.send("chat-1", "hi")


def test_dispatch_counts_sent_skipped_and_failed():
    messenger = FakeMessenger(failing={"chat-down"}, rejecting={"chat-no"})
    report = NotificationDispatcher(messenger).dispatch([
        plan("u-1", "chat-ok"),
        plan("u-2", None),
        plan("u-3", "chat-down"),
        plan("u-4", "chat-no"),
    ])

    assert report.sent == 1
    assert report.skipped == 1
    assert sorted(f["user_id"] for f in report.failed) == ["u-3", "u-4"]
