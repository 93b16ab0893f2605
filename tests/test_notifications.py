import logging

import requests

import notifications
from notifications import LogNotifier, RecordingNotifier, WebhookNotifier, build_notifier


class FakeResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.text = text


def test_webhook_posts_json_and_shuts_down(monkeypatch):
    calls = []

    def fake_post(url, **kwargs):
        calls.append((url, kwargs))
        return FakeResponse()

    monkeypatch.setattr(notifications.requests, "post", fake_post)
    notifier = WebhookNotifier("http://hooks.local/notify", timeout=2)

    notifier.notify("PA-SMIT-ABCD", notifications.OFFER_SUBMITTED, {"offerId": "QT-1"})
    notifier.shutdown()

    assert calls == [("http://hooks.local/notify", {
        "headers": {"Content-Type": "application/json"},
        "json": {"recipientId": "PA-SMIT-ABCD", "eventType": "offer-submitted", "payload": {"offerId": "QT-1"}},
        "timeout": 2,
    })]
    assert notifier._executor._shutdown is True

    # Delivery after shutdown is logged, never raised
    notifier.notify("PA-SMIT-ABCD", notifications.OFFER_SUBMITTED)


def test_webhook_pool_is_shut_down_at_exit(monkeypatch):
    registered = []
    monkeypatch.setattr(notifications.atexit, "register", registered.append)

    notifier = WebhookNotifier("http://hooks.local/notify")

    assert registered == [notifier.shutdown]
    registered[0]()
    assert notifier._executor._shutdown is True


def test_webhook_failures_are_logged(monkeypatch, caplog):
    def failing_post(url, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(notifications.requests, "post", failing_post)
    notifier = WebhookNotifier("http://hooks.local/notify")

    with caplog.at_level(logging.WARNING, logger="notifications"):
        notifier.notify("OP-JETS-7K2P", notifications.OFFER_ACCEPTED)
        notifier.shutdown()

    assert "Webhook delivery failed for offer-accepted" in caplog.text


def test_build_notifier():
    assert isinstance(build_notifier(""), LogNotifier)

    webhook = build_notifier("http://hooks.local/notify")
    assert isinstance(webhook, WebhookNotifier)
    webhook.shutdown()


def test_recording_notifier_keeps_events():
    notifier = RecordingNotifier()
    notifier.notify("PA-SMIT-ABCD", notifications.PAYMENT_COMPLETED, {"amount": 10})
    assert len(notifier.sent) == 1
