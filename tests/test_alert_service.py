"""Tests for alert service functionality."""

import pytest
import requests

from perptrader.alert_service import (
    AlertService,
    ChatEventHandler,
    build_edit,
    build_message,
    flatten_payload,
)


def queue_into(collected):
    """Callback that queues events into a list and reports them accepted."""
    def callback(event):
        collected.append(event)
        return True
    return callback


EMBED = {
    "title": "SHORT SIGNAL - FOGO/USDT",
    "description": "Entry: 0.02936",
    "fields": [{"name": "Leverage", "value": "25x"}, {"name": "TP1", "value": "0.028"}],
    "footer": {"text": "Trader: @alice"},
}


class TestFlattenPayload:
    def test_content_only(self):
        assert flatten_payload("hello") == "hello"

    def test_embed_parts_in_order(self):
        assert flatten_payload("New call!", [EMBED]) == (
            "New call!\nSHORT SIGNAL - FOGO/USDT\nEntry: 0.02936\nLeverage: 25x\nTP1: 0.028\nTrader: @alice"
        )

    def test_embed_without_content(self):
        text = flatten_payload(None, [{"title": "LONG SIGNAL - BTC/USDT", "footer": "via bot"}])
        assert text == "LONG SIGNAL - BTC/USDT\nvia bot"

    def test_ignores_malformed_embeds(self):
        assert flatten_payload("x", ["junk", None, {}]) == "x"


class TestBuildEvents:
    def test_build_message(self):
        message = build_message({
            "messageId": 123,
            "channelId": 456,
            "content": "",
            "embeds": [EMBED],
            "author": "bot",
            "timestamp": "2025-01-02T03:04:05Z",
        })

        assert message.message_id == "123"
        assert message.channel_id == "456"
        assert message.content.startswith("SHORT SIGNAL")
        assert message.timestamp.year == 2025
        assert message.timestamp.tzinfo is None

    def test_build_message_requires_id_and_text(self):
        assert build_message({"content": "LONG SIGNAL - BTC/USDT"}) is None
        assert build_message({"messageId": "1", "content": "   "}) is None

    def test_build_edit_with_old_content(self):
        edit = build_edit({
            "messageId": "m-1",
            "content": "TP1: 0.028 HIT",
            "oldEmbeds": [EMBED],
        })

        assert edit.content == "TP1: 0.028 HIT"
        assert "Entry: 0.02936" in edit.old_content

    def test_build_edit_without_old_content(self):
        assert build_edit({"messageId": "m-1", "content": "TRADE CLOSED"}).old_content is None


class TestAlertService:
    """Real HTTP round trips against a server on an ephemeral port."""

    def setup_method(self):
        """Reset class-level handler state before each test."""
        ChatEventHandler.message_callback = None
        ChatEventHandler.edit_callback = None
        ChatEventHandler.channel_filter = None

    @pytest.fixture
    def service(self):
        service = AlertService(port=0, host="127.0.0.1")
        service.start()
        yield service
        service.stop()

    def url(self, service, path):
        return f"http://127.0.0.1:{service.server_port}{path}"

    def test_forwards_messages_and_edits(self, service):
        messages, edits = [], []
        service.set_callbacks(queue_into(messages), queue_into(edits))

        r1 = requests.post(self.url(service, "/message"), json={"messageId": "m-1", "content": "LONG SIGNAL - BTC/USDT"})
        r2 = requests.post(self.url(service, "/message-edit"), json={"messageId": "m-1", "content": "TRADE CLOSED"})

        assert r1.status_code == 200
        assert r1.json() == {"status": "ok", "forwarded": True}
        assert r2.json()["forwarded"] is True
        assert messages[0].message_id == "m-1"
        assert edits[0].content == "TRADE CLOSED"

    def test_not_forwarded_without_callback(self, service):
        r = requests.post(self.url(service, "/message"), json={"messageId": "m-1", "content": "hello there"})
        assert r.json()["forwarded"] is False

    def test_channel_filter(self, service):
        messages = []
        service.set_callbacks(queue_into(messages), None)
        service.set_channel_filter(lambda: "chan-1")

        other = requests.post(self.url(service, "/message"), json={"messageId": "1", "content": "hello", "channelId": "chan-2"})
        allowed = requests.post(self.url(service, "/message"), json={"messageId": "2", "content": "hello", "channelId": "chan-1"})

        assert other.json()["forwarded"] is False
        assert allowed.json()["forwarded"] is True
        assert [m.message_id for m in messages] == ["2"]

    def test_refused_event_not_forwarded(self, service):
        """A callback returning False (service stopped) reports the event as dropped."""
        service.set_callbacks(lambda event: False, None)

        r = requests.post(self.url(service, "/message"), json={"messageId": "1", "content": "hello there"})

        assert r.status_code == 200
        assert r.json()["forwarded"] is False

    def test_callback_error_still_answers(self, service):
        def boom(event):
            raise RuntimeError("engine down")

        service.set_callbacks(boom, None)

        r = requests.post(self.url(service, "/message"), json={"messageId": "1", "content": "hello there"})

        assert r.status_code == 200
        assert r.json()["forwarded"] is False

    @pytest.mark.parametrize("path,body,status", [
        ("/message", "not json", 400),
        ("/message", "[1, 2]", 400),
        ("/message", '{"content": "no id"}', 400),
        ("/unknown", '{"messageId": "1", "content": "hello"}', 404),
    ])
    def test_bad_requests(self, service, path, body, status):
        r = requests.post(self.url(service, path), data=body, headers={"Content-Type": "application/json"})

        assert r.status_code == status
        assert r.json()["status"] == "error"

    def test_cors_preflight(self, service):
        r = requests.options(self.url(service, "/message"))

        assert r.status_code == 200
        assert r.headers["Access-Control-Allow-Origin"] == "*"

    def test_lifecycle(self):
        service = AlertService(port=0, host="127.0.0.1")
        assert not service.is_running
        assert service.server_port is None

        service.start()
        assert service.is_running
        assert service.server_port > 0

        service.stop()
        assert not service.is_running
