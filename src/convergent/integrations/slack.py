"""Post plan reports to Slack via incoming webhook."""

from urllib.parse import urlparse

import requests

ALLOWED_SLACK_HOSTS = {"hooks.slack.com", "hooks.slack-gov.com"}

# Slack rejects section blocks with more than 3000 characters of text.
MAX_SECTION_TEXT = 3000


def _check_webhook(webhook_url: str) -> None:
    parsed = urlparse(webhook_url)
    if parsed.scheme != "https":
        raise ValueError("Slack webhook URL must use HTTPS")
    if parsed.hostname not in ALLOWED_SLACK_HOSTS:
        raise ValueError(
            f"Invalid Slack webhook host {parsed.hostname!r}: "
            f"must be one of {sorted(ALLOWED_SLACK_HOSTS)}"
        )


def build_payload(report: str, title: str, success: bool = True) -> dict:
    """Block Kit payload with a header and the report in a code block."""
    status = ":white_check_mark:" if success else ":x:"
    room = MAX_SECTION_TEXT - len(status) - len(" ``````")
    body = report if len(report) <= room else report[: room - 1] + "…"
    return {
        "text": f"{title}\n{report}",
        "blocks": [
            {"type": "header", "text": {"type": "plain_text", "text": title}},
            {"type": "section", "text": {"type": "mrkdwn", "text": f"{status} ```{body}```"}},
        ],
    }


def post_to_slack(
    report: str,
    webhook_url: str,
    title: str = "convergent plan",
    success: bool = True,
    timeout: int = 30,
) -> None:
    """Post a plan report to a Slack incoming webhook."""
    _check_webhook(webhook_url)
    response = requests.post(
        webhook_url,
        json=build_payload(report, title, success),
        timeout=timeout,
    )
    response.raise_for_status()
