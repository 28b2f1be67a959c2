"""Real-time question notifications published on the event bus."""

from __future__ import annotations

import json
from typing import Any

from mlagent.core.bus import Event, EventBus, QuestionCreated, QuestionProcessing
from mlagent.models import Account, Question
from mlagent.utils.logging import get_logger

log = get_logger(__name__)


class RealtimeNotifier:
    def __init__(self, bus: EventBus) -> None:
        self._bus = bus

    async def emit_new_question(self, question: Question, account: Account) -> None:
        data: dict[str, Any] = question.to_dict()
        data["organization_id"] = account.organization_id
        data["account"] = {
            "id": account.id,
            "ml_user_id": account.ml_user_id,
            "nickname": account.nickname or "Conta",
            "thumbnail": account.thumbnail,
            "site_id": account.site_id,
            "organization_id": account.organization_id,
        }
        await self._bus.publish(QuestionCreated(data=data))
        log.info(
            "question_new_emitted",
            ml_question_id=question.ml_question_id,
            organization_id=account.organization_id,
            status=question.status.value,
        )

    async def emit_question_processing(self, ml_question_id: str, organization_id: str) -> None:
        await self._bus.publish(
            QuestionProcessing(
                data={"ml_question_id": ml_question_id, "organization_id": organization_id}
            )
        )


def format_sse(event: Event) -> str:
    """Render a bus event as one Server-Sent Events frame."""
    payload = json.dumps(event.data, default=str, ensure_ascii=False)
    return f"id: {event.id}\nevent: {event.type.value}\ndata: {payload}\n\n"
