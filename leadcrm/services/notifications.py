"""
Notifications — Slack webhook integration for import events.

Notification failure never blocks an import.
"""
import logging
import requests

from leadcrm.config import SLACK_WEBHOOK_URL

logger = logging.getLogger('services.notifications')


def _label(job):
    return (job.source or job.automation_id or 'import').replace('_', ' ').title()


def notify_import_complete(job):
    """Post import summary to Slack."""
    if not SLACK_WEBHOOK_URL:
        return

    try:
        result = job.result or {}
        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"LinkedIn Import Completed — {_label(job)}",
                }
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Saved:* {result.get('saved_count', 0)}"},
                    {"type": "mrkdwn", "text": f"*Dupes Skipped:* {result.get('skipped_count', 0)}"},
                    {"type": "mrkdwn", "text": f"*Malformed:* {result.get('malformed_count', 0)}"},
                ]
            },
        ]

        if job.anomaly:
            blocks.append({
                "type": "section",
                "text": {"type": "mrkdwn", "text": f":warning: _{job.message}_"}
            })

        requests.post(SLACK_WEBHOOK_URL, json={"blocks": blocks}, timeout=10)
        logger.info("Import %s completion notification sent", job.id[:8])

    except Exception:
        logger.error("Failed to send notification for import %s", job.id[:8], exc_info=True)


def notify_import_failed(job):
    """Post import failure alert to Slack."""
    if not SLACK_WEBHOOK_URL:
        return

    try:
        result = job.result or {}
        blocks = [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"LinkedIn Import FAILED — {_label(job)}",
                }
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Container:* {job.container_id or 'not launched'}"},
                    {"type": "mrkdwn", "text": f"*Saved before failure:* {result.get('saved_count', 0)}"},
                ]
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Error:* ```{(job.message or '')[:500]}```"}
            },
        ]

        requests.post(SLACK_WEBHOOK_URL, json={"blocks": blocks}, timeout=10)
        logger.info("Import %s failure notification sent", job.id[:8])

    except Exception:
        logger.error("Failed to send failure notification for import %s", job.id[:8], exc_info=True)
