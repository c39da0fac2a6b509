"""
Notifications: Slack webhook alerts for run completion and provider misconfiguration.

Notification failure never blocks processing.
"""
import logging
import requests

from skiptrace.config import SLACK_WEBHOOK_URL

logger = logging.getLogger('services.notifications')


def _post(blocks):
    requests.post(SLACK_WEBHOOK_URL, json={"blocks": blocks}, timeout=10)


def notify_run_complete(status: dict):
    """Post a run completion summary to Slack."""
    if not SLACK_WEBHOOK_URL:
        return

    run_id = status.get('run_id', '')
    try:
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"Skip-trace run finished: {status.get('source_label') or run_id[:8]}"},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Total:* {status.get('total', 0)}"},
                    {"type": "mrkdwn", "text": f"*Done:* {status.get('done', 0)}"},
                    {"type": "mrkdwn", "text": f"*Failed:* {status.get('failed', 0)}"},
                ],
            },
        ]
        if status.get('cost_cents'):
            blocks.append({
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": f"Cost: ${status['cost_cents'] / 100:.2f}"}],
            })
        _post(blocks)
        logger.info("Run %s completion notification sent", run_id[:8])
    except requests.exceptions.RequestException:
        logger.error("Failed to send notification for run %s", run_id[:8], exc_info=True)


def notify_configuration_error(run_id: str, message: str):
    """Loud alert: the provider rejected our credentials or answered in demo mode."""
    if not SLACK_WEBHOOK_URL:
        return

    try:
        _post([
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "Skip-trace provider misconfigured"},
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Run:* `{run_id or 'n/a'}`\n*Error:* {message}\nThe run was paused."},
            },
        ])
        logger.info("Configuration alert sent for run %s", (run_id or '')[:8])
    except requests.exceptions.RequestException:
        logger.error("Failed to send configuration alert for run %s", (run_id or '')[:8], exc_info=True)
