"""
Outbound notifications fired by the lifecycle coordinator.
Delivery is best effort: failures are logged and never reach the caller.
"""

import atexit
import logging
from concurrent.futures import ThreadPoolExecutor

import requests

import config

logger = logging.getLogger(__name__)

OFFER_SUBMITTED = "offer-submitted"
OFFER_ACCEPTED = "offer-accepted"
PAYMENT_COMPLETED = "payment-completed"


class Notifier:
    """Base notifier. Subclasses implement `deliver`."""

    def notify(self, recipient_id, event_type, payload=None):
        try:
            self.deliver(recipient_id, event_type, payload or {})
        except Exception as e:
            logger.warning(f"Notification {event_type} to {recipient_id} failed: {e}")

    def deliver(self, recipient_id, event_type, payload):
        raise NotImplementedError


class LogNotifier(Notifier):
    def deliver(self, recipient_id, event_type, payload):
        logger.info(f"notify {recipient_id} <- {event_type} {payload}")


class RecordingNotifier(Notifier):
    """Keeps every notification in memory."""

    def __init__(self):
        self.sent = []

    def deliver(self, recipient_id, event_type, payload):
        self.sent.append((recipient_id, event_type, payload))

    def events(self, event_type=None):
        return [n for n in self.sent if event_type is None or n[1] == event_type]


class WebhookNotifier(Notifier):
    """POSTs each notification as JSON to a webhook on a background thread."""

    def __init__(self, url, timeout=None, max_workers=2):
        self.url = url
        self.timeout = timeout or config.NOTIFY_TIMEOUT_SECONDS
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")
        atexit.register(self.shutdown)

    def deliver(self, recipient_id, event_type, payload):
        self._executor.submit(self._post, recipient_id, event_type, payload)

    def _post(self, recipient_id, event_type, payload):
        try:
            response = requests.post(
                self.url,
                headers={"Content-Type": "application/json"},
                json={
                    "recipientId": recipient_id,
                    "eventType": event_type,
                    "payload": payload,
                },
                timeout=self.timeout,
            )
            if response.status_code >= 400:
                logger.warning(f"Webhook error {response.status_code} for {event_type}: {response.text[:200]}")
        except requests.RequestException as e:
            logger.warning(f"Webhook delivery failed for {event_type}: {e}")

    def shutdown(self, wait=True):
        """Stop accepting notifications. Queued deliveries finish first when `wait` is set."""
        self._executor.shutdown(wait=wait)
        atexit.unregister(self.shutdown)


def build_notifier(url=None):
    """Webhook delivery when a URL is configured, otherwise log only."""
    url = url if url is not None else config.NOTIFY_WEBHOOK_URL
    if url:
        return WebhookNotifier(url)
    return LogNotifier()
