from __future__ import annotations

from email.message import EmailMessage
import logging
import smtplib
import socket
from typing import Protocol, Sequence

import httpx

from backupwarden.core.config import ValidationConfig


logger = logging.getLogger(__name__)


class AlertSink(Protocol):
    # Best-effort delivery; return False instead of raising on failure.
    def send(self, subject: str, body: str) -> bool:
        ...


class SmtpAlertSink:
    def __init__(
        self,
        *,
        host: str,
        port: int,
        sender: str,
        recipients: Sequence[str],
        timeout_s: int = 10,
    ) -> None:
        self._host = host
        self._port = port
        self._sender = sender
        self._recipients = list(recipients)
        self._timeout_s = timeout_s

    def send(self, subject: str, body: str) -> bool:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self._sender
        message["To"] = ", ".join(self._recipients)
        message.set_content(body)
        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout_s) as server:
                server.send_message(message)
        except (OSError, smtplib.SMTPException) as exc:
            logger.warning("alert_email_failed host=%s recipients=%s", self._host, len(self._recipients), exc_info=exc)
            return False
        logger.info("alert_email_sent recipients=%s", len(self._recipients))
        return True


class WebhookAlertSink:
    def __init__(self, *, url: str, timeout_ms: int = 5000, client: httpx.Client | None = None) -> None:
        self._url = url
        self._timeout = timeout_ms / 1000.0
        self._client = client

    def send(self, subject: str, body: str) -> bool:
        payload = {"subject": subject, "body": body, "host": socket.gethostname()}
        try:
            if self._client is not None:
                response = self._client.post(self._url, json=payload, timeout=self._timeout)
            else:
                with httpx.Client(timeout=self._timeout) as client:
                    response = client.post(self._url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("alert_webhook_failed", exc_info=exc)
            return False
        if response.status_code >= 400:
            logger.warning("alert_webhook_rejected status=%s", response.status_code)
            return False
        logger.info("alert_webhook_sent status=%s", response.status_code)
        return True


class LogAlertSink:
    # Fallback when no delivery channel is configured; the log stays the audit trail.
    def send(self, subject: str, body: str) -> bool:
        logger.error("alert_not_delivered reason=no_channel_configured subject=%s", subject)
        return False


def build_alert_sinks(config: ValidationConfig) -> list[AlertSink]:
    sinks: list[AlertSink] = []
    if config.alert_email_to:
        sinks.append(
            SmtpAlertSink(
                host=config.smtp_host,
                port=config.smtp_port,
                sender=config.alert_email_from,
                recipients=config.alert_email_to,
                timeout_s=config.smtp_timeout_s,
            )
        )
    if config.alert_webhook_url:
        sinks.append(WebhookAlertSink(url=config.alert_webhook_url, timeout_ms=config.alert_webhook_timeout_ms))
    if not sinks:
        sinks.append(LogAlertSink())
    return sinks


def dispatch_alert(sinks: Sequence[AlertSink], subject: str, body: str) -> bool:
    """Try every sink; a failing sink never stops the others or the caller."""
    delivered = False
    for sink in sinks:
        try:
            delivered = sink.send(subject, body) or delivered
        except Exception as exc:  # noqa: BLE001 - alert delivery is best-effort
            logger.warning("alert_sink_error sink=%s", type(sink).__name__, exc_info=exc)
    return delivered
