"""Tests for the async event bus and real-time notifications."""

import json

import pytest

from mlagent.core.bus import EventBus, EventType, QuestionCreated, QuestionProcessing
from mlagent.models import Question, QuestionStatus
from mlagent.realtime import RealtimeNotifier, format_sse


@pytest.fixture
def bus():
    return EventBus()


class TestEventBus:
    async def test_streams_receive_every_event(self, bus):
        stream = bus.open_stream()
        assert bus.stream_count == 1

        await bus.publish(QuestionCreated(data={"ml_question_id": "1"}))
        await bus.publish(QuestionProcessing(data={"ml_question_id": "1"}))

        assert stream.get_nowait().type == EventType.QUESTION_NEW
        assert stream.get_nowait().type == EventType.QUESTION_PROCESSING

        bus.close_stream(stream)
        assert bus.stream_count == 0
        await bus.publish(QuestionCreated(data={}))
        assert stream.empty()

    async def test_full_stream_doesnt_block_publish(self):
        bus = EventBus(max_queue_size=2)
        stream = bus.open_stream()

        for i in range(5):
            await bus.publish(QuestionCreated(data={"ml_question_id": str(i)}))

        assert stream.qsize() == 2


class TestRealtimeNotifier:
    async def test_new_question_payload(self, bus, account):
        stream = bus.open_stream()
        question = Question(
            ml_question_id="123456",
            account_id="acc-1",
            seller_id="111",
            text="Tem azul?",
            status=QuestionStatus.PROCESSING,
            sequential_id="12/3456",
        )

        await RealtimeNotifier(bus).emit_new_question(question, account)

        event = stream.get_nowait()
        assert event.type == EventType.QUESTION_NEW
        assert event.data["ml_question_id"] == "123456"
        assert event.data["status"] == "PROCESSING"
        assert event.data["organization_id"] == "org-1"
        assert event.data["account"]["nickname"] == "LOJA_TESTE"
        assert isinstance(event.data["received_at"], str)

    async def test_account_nickname_default(self, bus, account):
        account.nickname = ""
        stream = bus.open_stream()
        question = Question(
            ml_question_id="1", account_id="acc-1", seller_id="111",
            text="?", status=QuestionStatus.FAILED,
        )

        await RealtimeNotifier(bus).emit_new_question(question, account)

        assert stream.get_nowait().data["account"]["nickname"] == "Conta"

    async def test_processing_payload(self, bus):
        stream = bus.open_stream()
        await RealtimeNotifier(bus).emit_question_processing("123456", "org-1")

        event = stream.get_nowait()
        assert event.type == EventType.QUESTION_PROCESSING
        assert event.data == {"ml_question_id": "123456", "organization_id": "org-1"}

    def test_format_sse(self):
        event = QuestionProcessing(data={"ml_question_id": "1", "organization_id": "org-1"})
        frame = format_sse(event)

        lines = frame.split("\n")
        assert lines[0] == f"id: {event.id}"
        assert lines[1] == "event: question.processing"
        assert json.loads(lines[2].removeprefix("data: ")) == event.data
        assert frame.endswith("\n\n")
