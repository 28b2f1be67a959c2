"""Question status state machine.

Every status change of a stored question goes through
``QuestionLifecycle``: creation persists the row and emits the real-time
events, ``transition`` checks the move against ``TRANSITIONS``, stamps the
matching timestamp and persists the change.
"""

from __future__ import annotations

from typing import Any

from mlagent.models import Account, Question, QuestionStatus, utcnow
from mlagent.realtime import RealtimeNotifier
from mlagent.store import QuestionStore
from mlagent.utils.logging import get_logger

log = get_logger(__name__)

# Statuses a new row may start in
INITIAL_STATUSES = frozenset({QuestionStatus.PROCESSING, QuestionStatus.FAILED})

TRANSITIONS: dict[QuestionStatus, frozenset[QuestionStatus]] = {
    QuestionStatus.PROCESSING: frozenset({
        QuestionStatus.PROCESSING,
        QuestionStatus.COMPLETED,
        QuestionStatus.FAILED,
        QuestionStatus.ANSWERED,
    }),
    QuestionStatus.COMPLETED: frozenset(),
    QuestionStatus.FAILED: frozenset(),
    QuestionStatus.ANSWERED: frozenset(),
}

_TIMESTAMP_FIELDS = {
    QuestionStatus.PROCESSING: "processed_at",
    QuestionStatus.COMPLETED: "answered_at",
    QuestionStatus.ANSWERED: "answered_at",
    QuestionStatus.FAILED: "failed_at",
}


class InvalidTransitionError(Exception):
    def __init__(self, current: QuestionStatus | None, target: QuestionStatus) -> None:
        origin = current.value if current else "NEW"
        super().__init__(f"Illegal question transition {origin} -> {target.value}")
        self.current = current
        self.target = target


def can_transition(current: QuestionStatus | None, target: QuestionStatus) -> bool:
    if current is None:
        return target in INITIAL_STATUSES
    return target in TRANSITIONS[current]


class QuestionLifecycle:
    def __init__(self, store: QuestionStore, notifier: RealtimeNotifier) -> None:
        self._store = store
        self._notifier = notifier

    async def create(self, question: Question, account: Account) -> Question:
        """Persist a new question and announce it to real-time subscribers."""
        if not can_transition(None, question.status):
            raise InvalidTransitionError(None, question.status)
        if question.status is QuestionStatus.FAILED and question.failed_at is None:
            question.failed_at = utcnow()

        created = await self._store.create_question(question)
        log.info(
            "question_created",
            ml_question_id=created.ml_question_id,
            status=created.status.value,
            sequential_id=created.sequential_id,
        )

        try:
            await self._notifier.emit_new_question(created, account)
            if created.status is QuestionStatus.PROCESSING:
                await self._notifier.emit_question_processing(
                    created.ml_question_id, account.organization_id
                )
        except Exception:
            log.exception("question_emit_failed", ml_question_id=created.ml_question_id)
        return created

    async def transition(
        self, question: Question, target: QuestionStatus, **changes: Any
    ) -> Question:
        if not can_transition(question.status, target):
            raise InvalidTransitionError(question.status, target)

        stamp = _TIMESTAMP_FIELDS[target]
        changes.setdefault(stamp, utcnow())
        updated = await self._store.update_question(question.id, status=target, **changes)
        log.info(
            "question_transition",
            ml_question_id=question.ml_question_id,
            from_status=question.status.value,
            to_status=target.value,
        )
        return updated or question

    async def fail(self, question: Question, reason: str) -> Question:
        """Best-effort move to FAILED; storage errors are logged, not raised."""
        try:
            return await self.transition(question, QuestionStatus.FAILED, failure_reason=reason)
        except InvalidTransitionError:
            raise
        except Exception:
            log.exception("question_fail_update_error", ml_question_id=question.ml_question_id)
            return question
