# src/engine/notifications.py
"""
Lifecycle notifications. Delivery problems are logged and never fail the scan.
"""
import logging
import os
import pathlib

import requests

from engine.models import utcnow

SCAN_STARTED = "scan_started"
SCAN_FINISHED = "scan_finished"
SCAN_FAILED = "scan_failed"
SCAN_STOPPED = "scan_stopped"


class LoggingNotifier:
    def notify(self, event: str, job_id: str, **details) -> None:
        logging.info(f"[job_id={job_id}] Notification {event} {details or ''}".rstrip())


class WebhookNotifier(LoggingNotifier):
    """POSTs each event as JSON to the URL saved by `POST /webhook/config`."""

    def __init__(self, webhook_file_path: str, timeout: float = 10, session=None):
        self.webhook_file_path = webhook_file_path
        self.timeout = timeout
        self.session = session or requests.Session()

    def webhook_url(self):
        if not os.path.exists(self.webhook_file_path):
            return None
        url = pathlib.Path(self.webhook_file_path).read_text().strip()
        return url or None

    def save_webhook_url(self, url: str) -> str:
        url = url.strip()
        pathlib.Path(self.webhook_file_path).write_text(url)
        return url

    def notify(self, event: str, job_id: str, **details) -> None:
        super().notify(event, job_id, **details)
        try:
            url = self.webhook_url()
        except OSError as e:
            logging.error(f"[job_id={job_id}] Could not read webhook config: {e}")
            return
        if not url:
            return
        payload = {"event": event, "scan_id": job_id, "timestamp": utcnow().isoformat() + "Z", **details}
        try:
            resp = self.session.post(url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            logging.error(f"[job_id={job_id}] Webhook delivery of {event} failed: {e}")
