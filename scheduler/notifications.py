"""
Failure Alerts for the job_analytics Scheduler

A job whose retries are exhausted is reported here. The alert is always
logged; when SLACK_WEBHOOK_URL is configured it is also posted to Slack.

Usage:
    from scheduler.notifications import AlertNotifier

    notifier = AlertNotifier(webhook_url=config.slack_webhook_url)
    notifier.job_failed_permanently(failure)
"""

import json
import logging
import time
from typing import Any, Dict, Optional

import requests

from scheduler.jobs import PermanentFailure


class AlertNotifier:
    """Sends permanent-failure alerts to the log and, optionally, Slack."""

    def __init__(self, webhook_url: Optional[str] = None, timeout_seconds: float = 10.0):
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self.logger = logging.getLogger(__name__)

    def send_slack_message(self, message: str, title: str, fields: Dict[str, Any]) -> bool:
        """Post a red attachment to the webhook. Returns True on HTTP 200."""
        if not self.webhook_url:
            return False

        attachment = {
            "color": "#ff0000",
            "title": title,
            "text": message,
            "mrkdwn_in": ["text", "fields"],
            "fields": [
                {"title": key, "value": str(value), "short": True}
                for key, value in fields.items()
            ],
            "footer": "job_analytics scheduler",
            "ts": int(time.time()),
        }

        try:
            response = requests.post(
                self.webhook_url,
                data=json.dumps({"attachments": [attachment]}),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            self.logger.error(f"Error sending Slack notification: {e}")
            return False

        if response.status_code == 200:
            self.logger.info("Slack notification sent successfully")
            return True

        self.logger.error(
            f"Failed to send Slack notification. "
            f"Status code: {response.status_code}, Response: {response.text}"
        )
        return False

    def job_failed_permanently(self, failure: PermanentFailure) -> bool:
        self.logger.error(f"ALERT: {failure}")
        return self.send_slack_message(
            message=failure.error_message,
            title=f"Job {failure.job_id} failed permanently",
            fields={
                "Job": failure.job_id,
                "Attempts": failure.attempts,
                "Action": "Trigger the job manually once the cause is fixed",
            },
        )
