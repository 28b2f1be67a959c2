"""Webhook event models."""

from __future__ import annotations

from dataclasses import dataclass

from mlagent.models import Account


@dataclass
class WebhookEvent:
    topic: str
    resource: str
    user_id: str
    application_id: str = ""
    attempts: int = 0
    sent: str = ""

    @property
    def question_id(self) -> str:
        """Last path segment of ``resource`` (``/questions/{id}``)."""
        return self.resource.strip().rsplit("/", 1)[-1]


@dataclass
class QueuedWebhook:
    event: WebhookEvent
    account: Account
