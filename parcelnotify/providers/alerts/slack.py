from __future__ import annotations

import logging
from typing import Any

import httpx

from parcelnotify.core.config import get_settings
from parcelnotify.services.notifications.health import SmsHealthStats


logger = logging.getLogger(__name__)


def build_health_message(stats: SmsHealthStats, *, window_hours: int, base_url: str) -> dict[str, Any]:
    lines = [
        f"*Sent:* {stats.sent}",
        f"• Delivered: {stats.delivered}",
        f"• Provider failed: {stats.provider_failed}",
        f"• Not delivered: {stats.not_delivered}",
        f"• Awaiting: {stats.awaiting}",
        "",
        f"*Internal failures:* {stats.internal_failed}",
        f"*Stale (>{window_hours}h unconfirmed):* {stats.stale_unconfirmed}",
        f"*Stuck in sending (manual review):* {stats.stuck_sending}",
        "",
        f"<{base_url.rstrip('/')}/sms-failures|Review SMS failures>",
    ]
    return {
        "text": f"SMS health report (last {window_hours}h)",
        "blocks": [
            {"type": "header", "text": {"type": "plain_text", "text": f"SMS health report (last {window_hours}h)"}},
            {"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines)}},
        ],
    }


class SlackHealthSink:
    """Posts the health report to a Slack incoming webhook when it has issues."""

    def __init__(self, webhook_url: str | None = None, client: httpx.AsyncClient | None = None) -> None:
        settings = get_settings()
        self._webhook_url = webhook_url if webhook_url is not None else settings.slack_webhook_url
        self._client = client

    async def report(self, stats: SmsHealthStats) -> bool:
        if not stats.has_issues:
            logger.debug("sms health report skipped; no issues")
            return False
        settings = get_settings()
        payload = build_health_message(
            stats,
            window_hours=settings.notify_health_window_hours,
            base_url=settings.public_base_url,
        )
        if not self._webhook_url:
            logger.warning("sms health issues (slack disabled): %s", stats.as_dict())
            return False
        timeout_s = max(0.5, settings.sms_call_timeout_ms / 1000.0)
        try:
            if self._client is not None:
                response = await self._client.post(self._webhook_url, json=payload, timeout=timeout_s)
            else:
                async with httpx.AsyncClient(timeout=timeout_s) as client:
                    response = await client.post(self._webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("slack health report failed: %s", exc)
            return False
        logger.info("sms health report sent to slack")
        return True
