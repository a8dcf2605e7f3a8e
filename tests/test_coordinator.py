from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from events.coordinator import (
    CategorizationCoordinator,
    ConversationState,
    ShortIdRegistry,
    parse_bill_text,
)
from events.event_bus import EventBus
from events.event_types import Amount, EventTypes, MerchantCategorizationEvent
from events.prompts import MESSAGES
from events.task_queue import SequentialTaskQueue
from tests.helpers import StubSuggester, settle
from transaction.category_suggester import SuggestionError

CHAT_ID = "42"


@pytest.fixture
def pipeline(store, notifier, suggester):
    bus = EventBus()
    on_drain = MagicMock(return_value=None)
    queue = SequentialTaskQueue(bus, on_drain=on_drain)
    coordinator = CategorizationCoordinator(
        event_bus=bus,
        queue=queue,
        store=store,
        notifier=notifier,
        suggester=suggester,
        chat_id=CHAT_ID,
    )
    return SimpleNamespace(bus=bus, queue=queue, coordinator=coordinator, on_drain=on_drain)


def _announce(bus, merchant, merchant_id=None, amount=None):
    bus.emit(
        EventTypes.MERCHANT_NEEDS_CATEGORIZATION,
        MerchantCategorizationEvent(
            merchant=merchant,
            merchant_id=merchant_id or f"{merchant}-1",
            timestamp="2025-04-18T13:29:00",
            amount=amount,
        ),
    )


def _button(options, prefix):
    return next(option.data for option in options if option.data.startswith(prefix + ":"))


@pytest.mark.asyncio
async def test_acme_end_to_end(pipeline, store, notifier, suggester):
    _announce(pipeline.bus, "ACME", "ACME-1", Amount(12.5, "SGD"))
    await settle()

    assert len(notifier.prompts) == 1
    chat_id, text, options = notifier.prompts[0]
    assert chat_id == CHAT_ID
    assert "Merchant: <b>ACME</b>" in text
    assert "Amount: <b>12.50 SGD</b>" in text
    assert [o.label for o in options] == ["🤖 Categorize with AI", "⏭️ Skip"]

    reply = await pipeline.coordinator.on_button_press(CHAT_ID, _button(options, "ai"))
    assert reply.clear_keyboard
    assert notifier.messages[-1] == (CHAT_ID, MESSAGES.categorization_prompt("ACME"))
    assert pipeline.coordinator.state_for(CHAT_ID) == ConversationState.AWAITING_CATEGORIZATION_INPUT

    assert await pipeline.coordinator.on_text_message(CHAT_ID, "hardware store downtown") is True
    assert suggester.calls[0][0] == "ACME"
    assert suggester.calls[0][1] == "hardware store downtown"
    assert "Expenses:Shopping" in suggester.calls[0][2]

    _, _, suggestion_buttons = notifier.prompts[-1]
    assert len(suggestion_buttons) == 4
    reply = await pipeline.coordinator.on_button_press(CHAT_ID, suggestion_buttons[0].data)
    await settle()

    assert reply.edit_text == MESSAGES.category_selected("ACME", "Expenses:Food")
    assert store.find_category("ACME") == "Expenses:Food"
    assert len(pipeline.queue) == 0
    assert pipeline.coordinator.state_for(CHAT_ID) == ConversationState.IDLE
    pipeline.on_drain.assert_called_once_with()


@pytest.mark.asyncio
async def test_skip_leaves_store_untouched_and_completes_task(pipeline, store, notifier):
    before = store.all_mappings()
    _announce(pipeline.bus, "ACME")
    await settle()

    _, _, options = notifier.prompts[0]
    reply = await pipeline.coordinator.on_button_press(CHAT_ID, _button(options, "skip"))
    await settle()

    assert reply.edit_text == MESSAGES.skipped("ACME")
    assert store.all_mappings() == before
    assert len(pipeline.queue) == 0
    pipeline.on_drain.assert_called_once_with()


@pytest.mark.asyncio
async def test_known_merchant_completes_without_prompt(pipeline, notifier):
    _announce(pipeline.bus, "Shengsiong Express")
    await settle()

    assert notifier.prompts == []
    assert len(pipeline.queue) == 0
    pipeline.on_drain.assert_called_once_with()


@pytest.mark.asyncio
async def test_prompts_are_serialized(pipeline, notifier):
    _announce(pipeline.bus, "ACME")
    _announce(pipeline.bus, "Globex")
    await settle()

    assert len(notifier.prompts) == 1
    assert "ACME" in notifier.prompts[0][1]

    pipeline.coordinator.select_category("ACME-1", "Expenses:Misc")
    await settle()

    assert len(notifier.prompts) == 2
    assert "Globex" in notifier.prompts[1][1]


@pytest.mark.asyncio
async def test_same_merchant_id_is_prompted_once(pipeline, notifier):
    _announce(pipeline.bus, "ACME", "ACME-1")
    _announce(pipeline.bus, "ACME", "ACME-1")
    await settle()

    assert len(notifier.prompts) == 1
    assert len(pipeline.queue) == 1


@pytest.mark.asyncio
async def test_newer_detection_replaces_waiting_one(pipeline):
    _announce(pipeline.bus, "Globex", "Globex-1")
    _announce(pipeline.bus, "ACME", "ACME-1")
    _announce(pipeline.bus, "ACME", "ACME-2")
    await settle()

    assert [item.task_id for item in pipeline.queue.pending()] == ["ACME-2"]


@pytest.mark.asyncio
async def test_malformed_event_is_ignored(pipeline):
    pipeline.bus.emit(EventTypes.MERCHANT_NEEDS_CATEGORIZATION, SimpleNamespace(merchant="", merchant_id="x"))
    pipeline.bus.emit(EventTypes.MERCHANT_NEEDS_CATEGORIZATION, None)
    await settle()

    assert len(pipeline.queue) == 0


@pytest.mark.asyncio
async def test_account_text_is_taken_directly(pipeline, store, notifier, suggester):
    _announce(pipeline.bus, "ACME")
    await settle()

    await pipeline.coordinator.on_text_message(CHAT_ID, "Expenses:Home:Hardware")
    await settle()

    assert suggester.calls == []
    assert store.find_category("ACME") == "Expenses:Home:Hardware"
    assert notifier.messages[-1] == (CHAT_ID, MESSAGES.category_selected("ACME", "Expenses:Home:Hardware"))


@pytest.mark.asyncio
async def test_suggestion_failure_keeps_task_in_flight(store, notifier):
    bus = EventBus()
    queue = SequentialTaskQueue(bus)
    coordinator = CategorizationCoordinator(
        event_bus=bus,
        queue=queue,
        store=store,
        notifier=notifier,
        suggester=StubSuggester(error=SuggestionError("bad json")),
        chat_id=CHAT_ID,
    )
    _announce(bus, "ACME")
    await settle()

    await coordinator.on_text_message(CHAT_ID, "some shop")

    assert notifier.messages[-1] == (CHAT_ID, MESSAGES.CATEGORIZATION_ERROR)
    assert queue.in_flight.task_id == "ACME-1"
    assert coordinator.state_for(CHAT_ID) == ConversationState.AWAITING_CATEGORIZATION_INPUT


@pytest.mark.asyncio
async def test_cancel_skips_current_merchant(pipeline, store):
    before = store.all_mappings()
    _announce(pipeline.bus, "ACME")
    await settle()

    assert pipeline.coordinator.cancel(CHAT_ID) == MESSAGES.CATEGORIZATION_CANCELLED
    await settle()

    assert store.all_mappings() == before
    assert len(pipeline.queue) == 0
    assert pipeline.coordinator.cancel(CHAT_ID) == MESSAGES.NOTHING_TO_CANCEL


@pytest.mark.asyncio
async def test_cancel_button_skips_merchant(pipeline, notifier):
    _announce(pipeline.bus, "ACME")
    await settle()
    await pipeline.coordinator.on_text_message(CHAT_ID, "some shop")

    _, _, options = notifier.prompts[-1]
    reply = await pipeline.coordinator.on_button_press(CHAT_ID, _button(options, "cc"))

    assert reply.edit_text == MESSAGES.CATEGORIZATION_CANCELLED
    assert len(pipeline.queue) == 0


@pytest.mark.asyncio
async def test_stale_buttons_are_rejected(pipeline):
    reply = await pipeline.coordinator.on_button_press(CHAT_ID, "sc:deadbeef:primary")
    assert reply.answer == MESSAGES.ERROR_CATEGORIZATION_NOT_FOUND

    reply = await pipeline.coordinator.on_button_press(CHAT_ID, "ai:000000000000")
    assert reply.answer == MESSAGES.ERROR_CATEGORIZATION_NOT_FOUND

    reply = await pipeline.coordinator.on_button_press(CHAT_ID, "bogus:1")
    assert reply.answer == MESSAGES.ERROR_UNKNOWN_ACTION


@pytest.mark.asyncio
async def test_text_without_pending_conversation_is_not_handled(pipeline):
    assert await pipeline.coordinator.on_text_message(CHAT_ID, "hello") is False


@pytest.mark.asyncio
async def test_no_chat_configured_leaves_item_in_flight(store, notifier):
    bus = EventBus()
    queue = SequentialTaskQueue(bus)
    CategorizationCoordinator(event_bus=bus, queue=queue, store=store, notifier=notifier)

    _announce(bus, "ACME")
    await settle()

    assert notifier.prompts == []
    assert queue.in_flight.task_id == "ACME-1"


@pytest.mark.asyncio
async def test_bill_input_is_recorded(store, notifier):
    recorder = AsyncMock(return_value="Expenses:Food:Dining")
    coordinator = CategorizationCoordinator(
        event_bus=EventBus(),
        queue=SequentialTaskQueue(EventBus()),
        store=store,
        notifier=notifier,
        chat_id=CHAT_ID,
        bill_recorder=recorder,
    )

    assert coordinator.start_bill_input(CHAT_ID) == MESSAGES.BILL_PROMPT
    assert await coordinator.on_text_message(CHAT_ID, "12.50 SGD Koufu") is True

    recorder.assert_awaited_once_with(CHAT_ID, "Koufu", Amount(12.5, "SGD"))
    assert notifier.messages[-1] == (
        CHAT_ID,
        MESSAGES.bill_recorded("Koufu", "12.50 SGD", "Expenses:Food:Dining"),
    )
    assert coordinator.state_for(CHAT_ID) == ConversationState.IDLE


@pytest.mark.asyncio
async def test_bad_bill_input_asks_again(store, notifier):
    recorder = AsyncMock(return_value=None)
    coordinator = CategorizationCoordinator(
        event_bus=EventBus(),
        queue=SequentialTaskQueue(EventBus()),
        store=store,
        notifier=notifier,
        chat_id=CHAT_ID,
        bill_recorder=recorder,
    )
    coordinator.start_bill_input(CHAT_ID)

    await coordinator.on_text_message(CHAT_ID, "no amount here")

    recorder.assert_not_awaited()
    assert notifier.messages[-1] == (CHAT_ID, MESSAGES.BILL_FORMAT_ERROR)
    assert coordinator.state_for(CHAT_ID) == ConversationState.AWAITING_BILL_INPUT
    assert coordinator.cancel(CHAT_ID) == MESSAGES.BILL_CANCELLED


@pytest.mark.asyncio
async def test_prompt_during_bill_input_keeps_bill_state(pipeline, notifier):
    pipeline.coordinator.start_bill_input(CHAT_ID)
    _announce(pipeline.bus, "ACME")
    await settle()

    assert len(notifier.prompts) == 1
    assert pipeline.coordinator.state_for(CHAT_ID) == ConversationState.AWAITING_BILL_INPUT


@pytest.mark.parametrize("text,expected", [
    ("12.50 SGD Koufu", ("Koufu", Amount(12.5, "SGD"))),
    ("12.50 Koufu", ("Koufu", Amount(12.5, "SGD"))),
    ("USD 3 Kopi Stall", ("Kopi Stall", Amount(3.0, "USD"))),
    ("Koufu 12.50", ("Koufu", Amount(12.5, "SGD"))),
    ("Koufu 8 myr", ("Koufu", Amount(8.0, "MYR"))),
    ("7-Eleven 5.20", ("7-Eleven", Amount(5.2, "SGD"))),
])
def test_parse_bill_text(text, expected):
    assert parse_bill_text(text) == expected


@pytest.mark.parametrize("text", ["", "Koufu", "12.50", "   "])
def test_parse_bill_text_rejects(text):
    assert parse_bill_text(text) is None


def test_short_ids_resolve_back():
    registry = ShortIdRegistry()
    short = registry.register("ACME@2025-04-18T13:29:00")

    assert len(short) == 12
    assert registry.resolve(short) == "ACME@2025-04-18T13:29:00"
    assert len(f"sc:{short}:alternative".encode()) <= 64

    registry.discard("ACME@2025-04-18T13:29:00")
    assert registry.resolve(short) is None


def test_short_id_collision_keeps_newest(monkeypatch):
    registry = ShortIdRegistry()
    monkeypatch.setattr(registry, "short_id", lambda merchant_id: "abc")

    registry.register("first")
    registry.register("second")

    assert registry.resolve("abc") == "second"
    registry.discard("first")
    assert registry.resolve("abc") == "second"
