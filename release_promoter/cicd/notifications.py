"""
Deployment notifications
- Slack, Email, Webhook channels
- Per-event messages (start, converged, failed, rollout timeout, approval pending)
- A failing channel is logged and never changes a deploy outcome
"""

import json
import smtplib
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.text import MIMEText
from enum import Enum
from typing import Any, Dict, List, Optional

import requests
from slack_sdk import WebClient as SlackClient

from ..core.logging import get_logger
from .models import DeployOutcome, TargetState

logger = get_logger(__name__)


class NotificationChannel(str, Enum):
    SLACK = "slack"
    EMAIL = "email"
    WEBHOOK = "webhook"


@dataclass
class DeploymentNotification:
    channel: NotificationChannel
    event_type: str
    environment: str
    status: str
    message: str
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)
    delivered: bool = False


class NotificationManager:
    """Sends promotion events to the configured channels"""

    def __init__(
        self,
        slack_token: Optional[str] = None,
        slack_channel: str = "#deployments",
        webhook_url: Optional[str] = None,
        email_config: Optional[Dict[str, str]] = None,
        channels: Optional[List[NotificationChannel]] = None,
    ):
        self.slack_token = slack_token
        self.slack_channel = slack_channel
        self.webhook_url = webhook_url
        self.email_config = email_config or {}
        self.channels = channels or [NotificationChannel.SLACK]
        self._history: List[DeploymentNotification] = []

    def notify_deployment_start(
        self, environment: str, image: str, **kwargs: Any
    ) -> List[DeploymentNotification]:
        message = f"Deployment started\nEnv: {environment}\nImage: {image}"
        return self._send_all(
            event_type="deployment_start",
            environment=environment,
            status="started",
            message=message,
            metadata={"image": image, **kwargs},
        )

    def notify_approval_pending(
        self, environment: str, image: str, **kwargs: Any
    ) -> List[DeploymentNotification]:
        message = f"Deployment waiting for approval\nEnv: {environment}\nImage: {image}"
        return self._send_all(
            event_type="approval_pending",
            environment=environment,
            status="manual",
            message=message,
            metadata={"image": image, **kwargs},
        )

    def notify_deployment_success(
        self, environment: str, image: str, duration_s: float = 0, url: str = "", **kwargs: Any
    ) -> List[DeploymentNotification]:
        message = f"Deployment converged\nEnv: {environment}\nImage: {image}\nDuration: {duration_s:.1f}s"
        if url:
            message += f"\nURL: {url}"
        return self._send_all(
            event_type="deployment_success",
            environment=environment,
            status="success",
            message=message,
            metadata={"image": image, "duration_s": duration_s, "url": url, **kwargs},
        )

    def notify_deployment_failure(
        self, environment: str, error: str, **kwargs: Any
    ) -> List[DeploymentNotification]:
        message = f"Deployment failed\nEnv: {environment}\nError: {error}"
        return self._send_all(
            event_type="deployment_failure",
            environment=environment,
            status="failed",
            message=message,
            metadata={"error": error, **kwargs},
        )

    def notify_rollout_timeout(
        self, environment: str, detail: str, **kwargs: Any
    ) -> List[DeploymentNotification]:
        message = (
            f"Rollout did not converge, manual intervention required\n"
            f"Env: {environment}\nDetail: {detail}"
        )
        return self._send_all(
            event_type="rollout_timeout",
            environment=environment,
            status="rollout_timeout",
            message=message,
            metadata={"detail": detail, **kwargs},
        )

    def notify_outcome(self, outcome: DeployOutcome) -> List[DeploymentNotification]:
        """Dispatch on the final state of a promotion"""
        env = outcome.target.value
        if outcome.state == TargetState.CONVERGED:
            return self.notify_deployment_success(
                env, outcome.image, outcome.duration, outcome.environment_url
            )
        if outcome.state == TargetState.ROLLOUT_TIMEOUT:
            return self.notify_rollout_timeout(env, outcome.message, image=outcome.image)
        return self.notify_deployment_failure(
            env, outcome.message, image=outcome.image, error_code=outcome.error_code
        )

    def _send_all(
        self,
        event_type: str,
        environment: str,
        status: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[DeploymentNotification]:
        notifications = []
        for channel in self.channels:
            notification = DeploymentNotification(
                channel=channel,
                event_type=event_type,
                environment=environment,
                status=status,
                message=message,
                metadata=metadata or {},
            )
            try:
                if channel == NotificationChannel.SLACK:
                    notification.delivered = self._send_slack(notification)
                elif channel == NotificationChannel.EMAIL:
                    notification.delivered = self._send_email(notification)
                elif channel == NotificationChannel.WEBHOOK:
                    notification.delivered = self._send_webhook(notification)
            except Exception as e:
                logger.error(f"Failed to send {channel.value} notification: {e}")

            self._history.append(notification)
            notifications.append(notification)

        return notifications

    def _send_slack(self, notification: DeploymentNotification) -> bool:
        if not self.slack_token:
            logger.info(f"[slack disabled] {notification.message}")
            return False
        client = SlackClient(token=self.slack_token)
        client.chat_postMessage(channel=self.slack_channel, text=notification.message)
        logger.info(f"Slack notification sent to {self.slack_channel}")
        return True

    def _send_email(self, notification: DeploymentNotification) -> bool:
        smtp_host = self.email_config.get("smtp_host")
        sender = self.email_config.get("sender")
        recipients = self.email_config.get("recipients", "")

        if not (smtp_host and sender):
            logger.info(f"[email disabled] {notification.event_type}: {notification.status}")
            return False

        msg = MIMEText(notification.message)
        msg["Subject"] = (
            f"[{notification.status.upper()}] {notification.event_type} - {notification.environment}"
        )
        msg["From"] = sender
        msg["To"] = recipients

        with smtplib.SMTP(smtp_host, int(self.email_config.get("smtp_port", 587))) as server:
            server.starttls()
            password = self.email_config.get("password", "")
            if password:
                server.login(sender, password)
            server.sendmail(sender, recipients.split(","), msg.as_string())
        logger.info(f"Email notification sent to {recipients}")
        return True

    def _send_webhook(self, notification: DeploymentNotification) -> bool:
        payload = {
            "event_type": notification.event_type,
            "environment": notification.environment,
            "status": notification.status,
            "message": notification.message,
            "timestamp": notification.timestamp.isoformat(),
            "metadata": notification.metadata,
        }

        if not self.webhook_url:
            logger.info(f"[webhook disabled] {json.dumps(payload, default=str)}")
            return False
        resp = requests.post(
            self.webhook_url,
            data=json.dumps(payload, default=str),
            headers={"Content-Type": "application/json"},
            timeout=10,
        )
        resp.raise_for_status()
        logger.info(f"Webhook notification sent to {self.webhook_url}")
        return True

    def get_notification_history(
        self, limit: int = 50, event_type: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        history = self._history
        if event_type:
            history = [n for n in history if n.event_type == event_type]

        return [
            {
                "channel": n.channel.value,
                "event_type": n.event_type,
                "environment": n.environment,
                "status": n.status,
                "message": n.message,
                "delivered": n.delivered,
                "timestamp": n.timestamp.isoformat(),
            }
            for n in history[-limit:]
        ]
