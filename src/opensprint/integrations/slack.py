"""Slack Web API integration."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


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
    client=None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = client or get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_blocked_notification(task_id: str, title: str, reason: str | None, summary: str | None) -> list[dict]:
    """Format a blocked-task alert as Slack blocks."""
    text = f":red_circle: *Task Blocked*\n*{title}* (`{task_id}`)\nReason: *{reason or 'unknown'}*"
    if summary:
        text += f"\nLast attempt: {summary[:200]}"
    return [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]


def format_agent_completion(task_id: str, attempt: int, outcome: str, summary: str | None) -> list[dict]:
    """Format an agent completion as Slack blocks."""
    outcome_emoji = {
        "success": ":white_check_mark:",
        "requeued": ":leftwards_arrow_with_hook:",
        "demoted": ":arrow_down:",
        "blocked": ":red_circle:",
    }
    emoji = outcome_emoji.get(outcome, ":x:")
    text = f"{emoji} Agent finished task `{task_id}` (attempt {attempt}): *{outcome}*"
    if summary:
        text += f"\nSummary: {summary[:200]}"
    return [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]


class SlackNotifier:
    """Event subscriber that posts blocked tasks and agent completions to Slack.

    Messages go to the project's ``slack_channel``; projects without one are
    skipped. Delivery failures are logged and never reach the publisher.
    """

    def __init__(self, token: str | None, store, client=None):
        self.token = token
        self.store = store
        self.client = client or get_client(token)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def __call__(self, project_id: str, event: dict) -> None:
        if not self.enabled:
            return
        event_type = event.get("type")
        if event_type == "task.blocked":
            text = f"Task {event.get('taskId')} blocked: {event.get('blockReason')}"
            blocks = format_blocked_notification(
                event.get("taskId", ""),
                event.get("title") or event.get("taskId", ""),
                event.get("blockReason"),
                event.get("summary"),
            )
        elif event_type == "agent.completed":
            text = f"Agent for task {event.get('taskId')} finished: {event.get('outcome')}"
            blocks = format_agent_completion(
                event.get("taskId", ""),
                event.get("attempt", 0),
                event.get("outcome", "unknown"),
                event.get("summary"),
            )
        else:
            return

        try:
            project = self.store.get_project(project_id)
            channel = project.slack_channel if project else None
            if not channel:
                return
            send_message(self.token, channel, text, blocks=blocks, client=self.client)
        except Exception:
            logger.exception("Failed to send Slack notification for %s event", event_type)
