"""Tests for the SQLite question store."""

from datetime import datetime, timedelta, timezone

import pytest

from mlagent.models import Account, AuditLogEntry, Question, QuestionStatus
from mlagent.store import DuplicateQuestionError


def make_question(ml_question_id="123456", **overrides):
    data = dict(
        ml_question_id=ml_question_id,
        account_id="acc-1",
        seller_id="111",
        text="Tem na cor azul?",
        status=QuestionStatus.PROCESSING,
        item_id="MLB1",
        item_title="Camiseta",
        item_price=49.9,
        sequential_id="12/3456",
    )
    data.update(overrides)
    return Question(**data)


class TestAccounts:
    async def test_upsert_and_get(self, store, account):
        await store.upsert_account(account)
        loaded = await store.get_account("acc-1")
        assert loaded == account

    async def test_upsert_updates(self, store, account):
        await store.upsert_account(account)
        account.nickname = "NOVO_NOME"
        await store.upsert_account(account)
        assert (await store.get_account("acc-1")).nickname == "NOVO_NOME"

    async def test_find_by_seller_only_active(self, store, account):
        await store.upsert_account(account)
        inactive = Account(id="acc-2", ml_user_id="222", organization_id="org-1", is_active=False)
        await store.upsert_account(inactive)

        assert (await store.find_account_by_seller("111")).id == "acc-1"
        assert await store.find_account_by_seller("222") is None
        assert await store.find_account_by_seller("333") is None

    async def test_update_tokens(self, store, account):
        await store.upsert_account(account)
        expires = datetime(2026, 1, 1, tzinfo=timezone.utc)
        await store.update_account_tokens("acc-1", "new-access", "new-refresh", expires)

        loaded = await store.get_account("acc-1")
        assert loaded.access_token == "new-access"
        assert loaded.refresh_token == "new-refresh"
        assert loaded.token_expires_at == expires


class TestQuestions:
    async def test_create_and_get(self, store):
        question = make_question()
        await store.create_question(question)

        loaded = await store.get_question("123456")
        assert loaded.id == question.id
        assert loaded.status == QuestionStatus.PROCESSING
        assert loaded.item_price == 49.9
        assert loaded.received_at == question.received_at

    async def test_get_missing(self, store):
        assert await store.get_question("999") is None

    async def test_duplicate_external_id_rejected(self, store):
        await store.create_question(make_question())
        with pytest.raises(DuplicateQuestionError):
            await store.create_question(make_question())
        assert await store.count_questions() == 1

    async def test_update(self, store):
        question = await store.create_question(make_question())
        answered_at = question.received_at + timedelta(minutes=5)

        updated = await store.update_question(
            question.id,
            status=QuestionStatus.COMPLETED,
            answer="Sim, temos.",
            answered_at=answered_at,
        )
        assert updated.status == QuestionStatus.COMPLETED
        assert updated.answer == "Sim, temos."
        assert updated.answered_at == answered_at

    async def test_update_unknown_field(self, store):
        question = await store.create_question(make_question())
        with pytest.raises(ValueError):
            await store.update_question(question.id, colour="blue")

    async def test_update_missing_row(self, store):
        assert await store.update_question("nope", answer="x") is None


class TestAuditLog:
    async def test_append_and_filter(self, store):
        await store.append_audit(AuditLogEntry(
            action="question.received",
            entity_type="question",
            entity_id="q1",
            organization_id="org-1",
            account_id="acc-1",
            metadata={"ml_question_id": "123456"},
        ))
        await store.append_audit(AuditLogEntry(
            action="question.ownership_mismatch",
            entity_type="question",
            entity_id="123457",
            organization_id="org-1",
            account_id="acc-1",
        ))

        assert len(await store.list_audit()) == 2
        received = await store.list_audit("question.received")
        assert len(received) == 1
        assert received[0].metadata == {"ml_question_id": "123456"}
        assert received[0].timestamp.tzinfo is not None
