from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from render_worker.config import get_settings
from render_worker.logging_config import get_logger


logger = get_logger(__name__)


def format_failure_message(
    job_id: str,
    parent_story_id: Optional[str],
    title: Optional[str],
    error: str,
    environment: str,
    timestamp: Optional[str] = None,
) -> str:
    ts = timestamp or datetime.now(timezone.utc).isoformat()
    return (
        "Video generation failed\n"
        f"Video ID: {job_id}\n"
        f"Story ID: {parent_story_id or 'unknown'}\n"
        f"Title: {title or 'untitled'}\n"
        f"Error: {error}\n"
        f"Timestamp: {ts}\n"
        f"Environment: {environment}"
    )


def build_slack_payload(message: str, environment: str, timestamp: str) -> Dict[str, Any]:
    """Slack incoming-webhook body (attachment with header, body and context blocks)."""
    return {
        "attachments": [
            {
                "color": "#dc3545",
                "blocks": [
                    {
                        "type": "section",
                        "text": {"type": "mrkdwn", "text": ":x: *Video Processing Error*"},
                    },
                    {
                        "type": "section",
                        "text": {"type": "mrkdwn", "text": f"```{message}```"},
                    },
                    {
                        "type": "context",
                        "elements": [
                            {"type": "mrkdwn", "text": f"Environment: {environment} | Time: {timestamp}"},
                        ],
                    },
                ],
            }
        ]
    }


class Notifier:
    """
    Best-effort failure alerts to a Slack-compatible incoming webhook.
    Must NEVER raise (should not fail the job or mask the original error).
    """

    def __init__(self, webhook_url: Optional[str] = None, timeout_seconds: Optional[float] = None):
        settings = get_settings()
        self.webhook_url = (webhook_url if webhook_url is not None else settings.alerts.slack_webhook_url).strip()
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.alerts.timeout_seconds
        self.environment = settings.app.environment

    def notify_failure(
        self,
        job_id: str,
        error: str,
        parent_story_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> bool:
        """Returns True if the alert was delivered."""
        if not self.webhook_url:
            logger.info("alert_skipped_no_webhook", job_id=job_id)
            return False

        try:
            timestamp = datetime.now(timezone.utc).isoformat()
            message = format_failure_message(job_id, parent_story_id, title, error, self.environment, timestamp)
            payload = build_slack_payload(message, self.environment, timestamp)
            with httpx.Client(timeout=self.timeout_seconds) as client:
                res = client.post(self.webhook_url, json=payload)
            if 200 <= res.status_code < 300:
                logger.info("alert_sent", job_id=job_id)
                return True
            logger.warning("alert_rejected", job_id=job_id, status_code=res.status_code)
        except Exception as e:
            logger.warning("alert_failed", job_id=job_id, error=str(e))
        return False
