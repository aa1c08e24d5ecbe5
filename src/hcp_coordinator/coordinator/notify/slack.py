"""Slack notification adapter.

Posts a Block Kit message through the Web API's ``chat.postMessage``. The bot
token comes from ``SLACK_BOT_TOKEN``; without it the Slack channel is simply not
configured and the routing pipeline skips it.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

import requests

from hcp_coordinator.coordinator.lifecycle.errors import NotificationAdapterFailure
from hcp_coordinator.coordinator.lifecycle.models import CoordinationRequest, Intent

logger = logging.getLogger(__name__)

URGENCY_EMOJI: dict[str, str] = {
    "CRITICAL": ":rotating_light:",
    "HIGH": ":warning:",
    "MEDIUM": ":large_blue_circle:",
    "LOW": ":white_circle:",
}

_DETAIL_LIMIT = 2000


def portal_url(base_url: str, request: CoordinationRequest) -> str:
    return (
        f"{base_url.rstrip('/')}/portal/?responder_id={quote(request.responder_id, safe='')}"
        f"&request_id={request.request_id}"
    )


def build_blocks(request: CoordinationRequest, *, base_url: str) -> list[dict[str, object]]:
    emoji = URGENCY_EMOJI.get(request.urgency.value, ":grey_question:")
    blocks: list[dict[str, object]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"{request.intent.value} Request"},
        },
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f"{emoji} *Urgency:* {request.urgency.value}\n"
                    f"*Agent:* {request.agent_id}\n"
                    f"*ID:* `{request.request_id}`"
                ),
            },
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Summary:*\n{request.context_package.summary}"},
        },
    ]

    detail = request.context_package.detail
    if detail:
        blocks.append(
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Detail:*\n{detail[:_DETAIL_LIMIT]}"},
            }
        )

    if request.intent == Intent.APPROVAL:
        blocks.append(
            {
                "type": "actions",
                "block_id": f"hcp_actions_{request.request_id}",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "Approve"},
                        "style": "primary",
                        "action_id": "hcp_approve",
                        "value": request.request_id,
                    },
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "Reject"},
                        "style": "danger",
                        "action_id": "hcp_reject",
                        "value": request.request_id,
                    },
                ],
            }
        )

    blocks.append(
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"<{portal_url(base_url, request)}|View in Portal>"},
        }
    )
    return blocks


class SlackNotifier:
    channel = "slack"

    def __init__(
        self,
        *,
        token: str,
        base_url: str,
        api_url: str = "https://slack.com/api",
        timeout_seconds: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self._token = token
        self._base_url = base_url
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    def notify(self, request: CoordinationRequest) -> dict[str, object] | None:
        channel_id = request.routing_hints.slack_channel_id
        if not channel_id:
            logger.warning(
                "No slack_channel_id in routing hints", extra={"request_id": request.request_id}
            )
            return None

        body = {
            "channel": channel_id,
            "text": (
                f"[HCP] {request.intent.value} request from {request.agent_id}: "
                f"{request.context_package.summary}"
            ),
            "blocks": build_blocks(request, base_url=self._base_url),
        }
        try:
            resp = self._session.post(
                f"{self._api_url}/chat.postMessage",
                json=body,
                headers={"Authorization": f"Bearer {self._token}"},
                timeout=self._timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise NotificationAdapterFailure(self.channel, str(e)) from e

        if not data.get("ok", False):
            raise NotificationAdapterFailure(self.channel, str(data.get("error", "unknown_error")))

        return {"channel_id": channel_id}

    def close(self) -> None:
        self._session.close()
