"""Slack notifications for escalated tasks."""

import logging
from dataclasses import dataclass

from swarm_orchestrator.db.models import EscalatedError, Task

logger = logging.getLogger(__name__)

SEVERITY_EMOJI = {
    "low": ":large_blue_circle:",
    "medium": ":large_yellow_circle:",
    "high": ":large_orange_circle:",
    "critical": ":red_circle:",
}


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def format_escalation_notification(escalation: EscalatedError, task: Task) -> list[dict]:
    """Format an escalated task as Slack blocks."""
    emoji = SEVERITY_EMOJI.get(escalation.severity, ":grey_question:")
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f"{emoji} *Task Escalated*\n*{task.title}* (`{task.id}`)\n"
                    f"Stage: *{escalation.stage}* | {escalation.kind} ({escalation.severity})"
                ),
            },
        },
        {
            "type": "context",
            "elements": [
                {"type": "mrkdwn", "text": escalation.message[:500] or "No details"},
            ],
        },
    ]


def format_status_update(project: str, status: dict) -> list[dict]:
    """Format a scheduler status summary as Slack blocks."""
    counts = status.get("counts", {})
    total = status.get("total", 0)
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":bar_chart: *Project Status: {project}*\n"
                    f":white_check_mark: Completed: {counts.get('completed', 0)} | "
                    f":large_blue_circle: Running: {counts.get('running', 0)} | "
                    f":white_circle: Pending: {counts.get('pending', 0)} | "
                    f":red_circle: Failed: {counts.get('failed', 0)}\n"
                    f"Progress: {status.get('progress', 0):.0f}% of {total} | "
                    f"Escalations: {len(status.get('escalations', []))}"
                ),
            },
        }
    ]


class EscalationNotifier:
    """Posts escalations to a Slack channel. Failures are logged, never raised."""

    def __init__(self, token: str | None, channel: str):
        self.token = token
        self.channel = channel

    def notify(self, escalation: EscalatedError, task: Task) -> SlackMessage | None:
        text = f"Task escalated: {task.title} ({task.id})"
        try:
            return send_message(
                self.token,
                self.channel,
                text,
                blocks=format_escalation_notification(escalation, task),
            )
        except Exception:
            logger.exception("Failed to send escalation for %s to %s", task.id, self.channel)
            return None
