from __future__ import annotations

"""Operator alerts over Slack and PagerDuty webhooks."""

import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from fsplane.foundation.common import AsyncCircuitBreaker

logger = logging.getLogger(__name__)


async def _post_json(
    url: str,
    payload: dict,
    breaker: AsyncCircuitBreaker | None = None,
) -> None:
    async with httpx.AsyncClient() as client:
        async def send() -> httpx.Response:
            resp = await client.post(url, json=payload)
            if resp.status_code >= 400:
                raise RuntimeError(f"failed with status {resp.status_code}")
            return resp

        wrapped = breaker(send) if breaker else send
        await wrapped()


class AlertSender(Protocol):
    async def send(
        self, message: str, *, store: str | None = None, job_id: str | None = None
    ) -> None:
        ...


@dataclass
class WebhookClient:
    """POST ``{"text": ...}`` to a Slack or PagerDuty style webhook."""

    url: str
    breaker: AsyncCircuitBreaker | None = None

    async def send(
        self, message: str, *, store: str | None = None, job_id: str | None = None
    ) -> None:
        payload = {"text": message}
        if store is not None:
            payload["store"] = store
        if job_id is not None:
            payload["job_id"] = job_id
        await _post_json(self.url, payload, self.breaker)


class SlackClient(WebhookClient):
    pass


class PagerDutyClient(WebhookClient):
    pass


@dataclass
class AlertManager:
    """Fan alerts out to the configured senders.

    Delivery failures are logged and never propagate into the caller.
    """

    slack: AlertSender | None = None
    pagerduty: AlertSender | None = None
    slack_breaker: AsyncCircuitBreaker = field(default_factory=AsyncCircuitBreaker)
    pagerduty_breaker: AsyncCircuitBreaker = field(default_factory=AsyncCircuitBreaker)

    @classmethod
    def from_urls(cls, slack_url: str | None, pagerduty_url: str | None) -> "AlertManager":
        return cls(
            slack=SlackClient(slack_url) if slack_url else None,
            pagerduty=PagerDutyClient(pagerduty_url) if pagerduty_url else None,
        )

    async def send_slack(
        self, message: str, *, store: str | None = None, job_id: str | None = None
    ) -> None:
        if self.slack is None:
            return
        if isinstance(self.slack, WebhookClient):
            self.slack.breaker = self.slack_breaker
        await self._deliver("slack", self.slack, message, store, job_id)

    async def send_pagerduty(
        self, message: str, *, store: str | None = None, job_id: str | None = None
    ) -> None:
        if self.pagerduty is None:
            return
        if isinstance(self.pagerduty, WebhookClient):
            self.pagerduty.breaker = self.pagerduty_breaker
        await self._deliver("pagerduty", self.pagerduty, message, store, job_id)

    async def _deliver(
        self,
        channel: str,
        sender: AlertSender,
        message: str,
        store: str | None,
        job_id: str | None,
    ) -> None:
        try:
            await sender.send(message, store=store, job_id=job_id)
        except Exception:
            logger.exception("failed to deliver %s alert: %s", channel, message)


__all__ = ["AlertSender", "WebhookClient", "SlackClient", "PagerDutyClient", "AlertManager"]
