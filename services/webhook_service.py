"""
Platform webhooks: HMAC-signed delivery of confirmed-payment notifications.
"""
import hashlib
import hmac
import ipaddress
import json
import logging
import socket
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from urllib.parse import urlparse

import requests as http_requests

logger = logging.getLogger('gigledger.webhooks')

SIGNATURE_HEADER = 'X-GigLedger-Signature'


def is_safe_webhook_url(url: str) -> bool:
    """Reject webhook URLs that resolve to internal infrastructure."""
    try:
        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https'):
            return False
        hostname = parsed.hostname
        if not hostname:
            return False
        ip = ipaddress.ip_address(socket.gethostbyname(hostname))
        return ip.is_global
    except (socket.gaierror, ValueError, OSError):
        return False


def sign_payload(secret: str, body: str) -> str:
    digest = hmac.new(
        secret.encode() if secret else b'',
        body.encode(),
        hashlib.sha256,
    ).hexdigest()
    return f'sha256={digest}'


class WebhookNotifier:
    def __init__(self, app=None, max_retries=3, backoff_base=1, timeout=10,
                 pool_size=8, shutdown_event=None, check_url=True):
        self.app = app
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.timeout = timeout
        self.shutdown_event = shutdown_event
        self.check_url = check_url
        self._sleep = time.sleep
        self._pool = ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix='webhook')

    @classmethod
    def from_config(cls, app, shutdown_event=None):
        cfg = app.config
        return cls(
            app=app,
            max_retries=cfg.get('WEBHOOK_MAX_RETRIES', 3),
            backoff_base=cfg.get('WEBHOOK_BACKOFF_BASE', 1),
            timeout=cfg.get('WEBHOOK_TIMEOUT_SECONDS', 10),
            shutdown_event=shutdown_event,
            check_url=not cfg.get('DEV_MODE', False),
        )

    def shutdown(self, wait=True):
        self._pool.shutdown(wait=wait)

    def transaction_confirmed(self, url, secret, data: dict):
        """Queue a `transaction.confirmed` notification (non-blocking)."""
        payload = {
            "event": "transaction.confirmed",
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return self._pool.submit(self.deliver, url, secret, payload)

    def deliver(self, url: str, secret: str, payload: dict) -> bool:
        """POST up to `max_retries` times, backing off 1s then 2s. True on a 2xx response."""
        # Re-validate at delivery time to prevent DNS rebinding
        if self.check_url and not is_safe_webhook_url(url):
            logger.warning("Webhook URL %s failed safety check, skipping", url)
            self._record_exhausted(url, payload, "unsafe webhook url")
            return False

        body = json.dumps(payload, default=str)
        headers = {
            'Content-Type': 'application/json',
            SIGNATURE_HEADER: sign_payload(secret, body),
        }

        last_error = None
        for attempt in range(self.max_retries):
            if self.shutdown_event is not None and self.shutdown_event.is_set():
                break
            try:
                resp = http_requests.post(url, data=body, headers=headers, timeout=self.timeout)
                if 200 <= resp.status_code < 300:
                    logger.info("Webhook delivered to %s (status %d)", url, resp.status_code)
                    return True
                last_error = f"HTTP {resp.status_code}"
                logger.warning("Webhook %s returned %d (attempt %d/%d)",
                               url, resp.status_code, attempt + 1, self.max_retries)
            except http_requests.RequestException as e:
                last_error = str(e)
                logger.warning("Webhook delivery to %s failed (attempt %d/%d): %s",
                               url, attempt + 1, self.max_retries, e)

            if attempt < self.max_retries - 1:
                self._sleep(self.backoff_base * (2 ** attempt))

        logger.error("Webhook delivery to %s exhausted all retries", url)
        self._record_exhausted(url, payload, last_error)
        return False

    def _record_exhausted(self, url, payload, error):
        if self.app is None:
            return
        from core.ledger import Ledger
        from models import db
        with self.app.app_context():
            try:
                ledger = Ledger()
                with ledger.transaction():
                    ledger.audit('webhook.failed', success=False, error=error,
                                 after={'url': url, 'payload': payload})
            finally:
                db.session.remove()
