"""Security alert notification channels"""

from abc import ABC, abstractmethod
import json
import logging
from typing import Any, Callable, Optional

from markupsafe import escape
import requests
import rollbar

from guardapi.errors import NotificationError
from guardapi.services.email_service import EmailService

logger = logging.getLogger(__name__)


class NotificationChannel(ABC):
    """A destination for security alerts."""

    name = "abstract"

    @abstractmethod
    def send(self, subject: str, body: str, data: dict[str, Any]) -> None:
        """Deliver one alert. Raise on failure; the dispatcher isolates errors."""


class LogChannel(NotificationChannel):
    name = "log"

    def __init__(self, log: Optional[logging.Logger] = None):
        self._logger = log or logging.getLogger("guardapi.security.alerts")

    def send(self, subject, body, data):
        self._logger.critical(
            f"SECURITY ALERT: {subject} - {body}", extra={"alert": data}
        )


class EmailChannel(NotificationChannel):
    name = "email"

    def __init__(
        self,
        recipients,
        from_email: str,
        sender: Callable[..., Any] = EmailService.send_html_email,
    ):
        self._recipients = list(recipients)
        self._from_email = from_email
        self._sender = sender

    def _render(self, subject, body, data):
        rows = "".join(
            f"<tr><td>{escape(key)}</td>"
            f"<td>{escape(json.dumps(value, default=str))}</td></tr>"
            for key, value in sorted(data.items())
        )
        return (
            f"<h2>{escape(subject)}</h2>"
            f"<p>{escape(body)}</p>"
            f"<table>{rows}</table>"
        )

    def send(self, subject, body, data):
        if not self._recipients:
            logger.warning("Email alert channel enabled but no admin emails configured")
            return
        self._sender(
            recipients=self._recipients,
            html=self._render(subject, body, data),
            from_email=self._from_email,
            subject=f"[guardapi] {subject}",
        )


class RollbarChannel(NotificationChannel):
    name = "rollbar"

    def send(self, subject, body, data):
        rollbar.report_message(
            message=f"Security Alert: {subject}",
            level="critical",
            extra_data={"body": body, **data},
        )


class WebhookChannel(NotificationChannel):
    name = "webhook"

    def __init__(self, url: str, timeout: int = 5, session=None):
        self._url = url
        self._timeout = timeout
        self._http = session or requests

    def send(self, subject, body, data):
        try:
            response = self._http.post(
                self._url,
                data=json.dumps(
                    {"subject": subject, "body": body, "data": data}, default=str
                ),
                headers={"Content-Type": "application/json"},
                timeout=self._timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise NotificationError(f"Webhook delivery failed: {e}") from e


class NotificationDispatcher:
    """Fan an alert out to every configured channel.

    A failing channel is logged and reported; it never stops the others and
    never propagates to the caller.
    """

    def __init__(self, channels: list[NotificationChannel]):
        self.channels = list(channels)

    def dispatch(
        self, subject: str, body: str, data: dict[str, Any]
    ) -> dict[str, bool]:
        results = {}
        for channel in self.channels:
            try:
                channel.send(subject, body, data)
                results[channel.name] = True
            except Exception as e:
                logger.error(f"Security alert channel '{channel.name}' failed: {e}")
                rollbar.report_exc_info(extra_data={"channel": channel.name})
                results[channel.name] = False
        return results


def build_channels(monitoring_config) -> list[NotificationChannel]:
    """Instantiate the channels named in ``NOTIFICATION_CHANNELS``."""
    channels: list[NotificationChannel] = [LogChannel()]
    for name in monitoring_config.notification_channels:
        if name == "log":
            continue
        if name == "email":
            channels.append(
                EmailChannel(
                    monitoring_config.admin_emails, monitoring_config.alert_from_email
                )
            )
        elif name == "rollbar":
            channels.append(RollbarChannel())
        elif name == "webhook":
            if not monitoring_config.webhook_url:
                logger.warning("Webhook alert channel enabled without a webhook URL")
                continue
            channels.append(
                WebhookChannel(
                    monitoring_config.webhook_url, monitoring_config.webhook_timeout
                )
            )
        else:
            logger.warning(f"Unknown security notification channel: {name}")
    return channels
