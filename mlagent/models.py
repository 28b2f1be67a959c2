"""Typed records for accounts, questions and audit entries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuestionStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ANSWERED = "ANSWERED"


@dataclass
class Account:
    id: str
    ml_user_id: str
    organization_id: str
    site_id: str = "MLB"
    nickname: str = ""
    thumbnail: str | None = None
    access_token: str = ""
    refresh_token: str = ""
    token_expires_at: datetime | None = None
    is_active: bool = True


@dataclass
class Question:
    ml_question_id: str
    account_id: str
    seller_id: str
    text: str
    status: QuestionStatus
    item_id: str = ""
    item_title: str | None = None
    item_price: float = 0.0
    item_permalink: str | None = None
    item_thumbnail: str | None = None
    customer_id: str | None = None
    sequential_id: str = ""
    date_created: datetime = field(default_factory=utcnow)
    received_at: datetime = field(default_factory=utcnow)
    processed_at: datetime | None = None
    answered_at: datetime | None = None
    failed_at: datetime | None = None
    failure_reason: str | None = None
    answer: str | None = None
    answered_by: str | None = None
    id: str = field(default_factory=lambda: uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for key, value in self.__dict__.items():
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, Enum):
                value = value.value
            data[key] = value
        return data


@dataclass
class AuditLogEntry:
    action: str
    entity_type: str
    entity_id: str
    organization_id: str
    account_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class EnrichmentBundle:
    """Everything gathered for one question during a single processing pass."""
    item: dict[str, Any] | None = None
    description: dict[str, Any] | None = None
    seller: dict[str, Any] | None = None
    buyer: dict[str, Any] | None = None
    same_item_history: list[dict[str, Any]] = field(default_factory=list)
    other_items_history: list[dict[str, Any]] = field(default_factory=list)
