"""Slack Web API integration for run notifications."""

from dataclasses import dataclass


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

    from slack_sdk.errors import SlackApiError

    try:
        response = client.chat_postMessage(
            channel=channel,
            text=text,
            blocks=blocks,
        )
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response['error']}") from e

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_run_summary(summary: dict) -> list[dict]:
    """Format a finished run as Slack blocks."""
    if summary.get("interrupted"):
        emoji, headline = ":warning:", "Run interrupted"
    elif summary.get("failed") or summary.get("unresolved") or summary.get("merge_error"):
        emoji, headline = ":large_orange_circle:", "Run finished with problems"
    else:
        emoji, headline = ":white_check_mark:", "Run finished"

    lines = [
        f"{emoji} *{headline}* on `{summary.get('base_branch', '')}`",
        f"Done: {summary.get('done', 0)} | Failed: {summary.get('failed', 0)} | "
        f"Cost: ${summary.get('cost', 0):.4f}",
    ]
    if summary.get("unresolved"):
        lines.append("Unresolved conflicts: " + ", ".join(f"`{b}`" for b in summary["unresolved"]))
    if summary.get("unmerged"):
        lines.append("Not merged: " + ", ".join(f"`{b}`" for b in summary["unmerged"]))
    for url in summary.get("pr_urls", []):
        lines.append(f"<{url}|Pull request>")

    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": "\n".join(lines)},
        }
    ]


def notify_run_summary(token: str | None, channel: str, summary: dict) -> SlackMessage:
    text = f"agent-fleet run: {summary.get('done', 0)} done, {summary.get('failed', 0)} failed"
    return send_message(token, channel, text, blocks=format_run_summary(summary))
