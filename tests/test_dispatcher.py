"""Tests for the Dispatcher send path."""
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from channels.base import ConfigurationError, InvalidRequest, RemoteAPIError
from models.schemas import (
    ActionType, Automation, EventType, MessageStatus, SendRequest, Session, TemplateContent, utcnow,
)
from utils.side_effects import side_effect_metrics

TO = "+911234567890"


async def event_types(store):
    return [e.event_type for e in await store.list_analytics_events()]


class TestImmediateSend:
    @pytest.mark.asyncio
    async def test_text_send(self, service, store, transport):
        result = await service.dispatcher.send(SendRequest(to=TO, message="Hello"))

        assert result.success
        assert result.message_id == "wamid.1"
        assert result.db_record.status == MessageStatus.SENT
        assert result.db_record.preview == "Hello"
        assert result.db_record.metadata["provider_contact_id"] == "911234567890"

        stored = await store.get_message(result.db_record.id)
        assert stored.provider_message_id == "wamid.1"
        assert stored.sent_at is not None
        assert transport.payloads[0]["text"]["body"] == "Hello"
        assert await event_types(store) == [EventType.MESSAGE_SENT]

    @pytest.mark.asyncio
    async def test_destination_normalized(self, service, transport):
        await service.dispatcher.send(SendRequest(to="0091 12345 67890", message="Hi"))
        assert transport.payloads[0]["to"] == "+911234567890"

    @pytest.mark.asyncio
    async def test_session_touched(self, service, store):
        result = await service.dispatcher.send(SendRequest(
            to=TO, message="Hello", contact_id="c-1", context={"source": "campaign"},
        ))
        session = await store.get_session(result.db_record.session_id)
        assert session.phone_number == TO
        assert session.contact_id == "c-1"
        assert session.context.extra == {"source": "campaign"}

    @pytest.mark.asyncio
    async def test_idempotency_key_is_message_id(self, service, transport):
        result = await service.dispatcher.send(SendRequest(to=TO, message="Hello"))
        assert transport.calls[0]["idempotency_key"] == result.db_record.id

    @pytest.mark.asyncio
    async def test_save_to_db_false(self, service, store):
        result = await service.dispatcher.send(SendRequest(to=TO, message="Hello", save_to_db=False))
        assert result.success
        assert result.db_record is None
        assert await store.list_messages() == []

    @pytest.mark.asyncio
    async def test_invalid_request_raises_before_io(self, service, transport, store):
        with pytest.raises(InvalidRequest):
            await service.dispatcher.send(SendRequest(to=TO))
        assert transport.calls == []
        assert await store.list_sessions() == []

    @pytest.mark.asyncio
    async def test_missing_destination(self, service):
        with pytest.raises(InvalidRequest):
            await service.dispatcher.send(SendRequest(to="", message="Hi"))

    @pytest.mark.asyncio
    async def test_configuration_error_propagates(self, service, transport):
        transport.fail_next(ConfigurationError("Missing WhatsApp credentials"))
        with pytest.raises(ConfigurationError):
            await service.dispatcher.send(SendRequest(to=TO, message="Hi"))


class TestTemplateSend:
    @pytest.mark.asyncio
    async def test_flow_tokens_reach_metadata_and_session(self, service, store, transport):
        button = {"type": "button", "sub_type": "flow", "index": "0", "parameters": []}
        result = await service.dispatcher.send(SendRequest(
            to=TO, template=TemplateContent(name="plan_trip", button_params=[button]),
        ))

        sent_button = transport.payloads[0]["template"]["components"][0]
        token = sent_button["parameters"][0]["action"]["flow_token"]
        assert result.db_record.metadata["flow_tokens"][0]["token"] == token

        session = await store.get_session(result.db_record.session_id)
        assert session.context.flow_tokens == [token]
        assert session.context.last_flow_token == token
        assert result.db_record.preview == "[template:plan_trip]"


class TestScheduledSend:
    @pytest.mark.asyncio
    async def test_future_send_is_stored_not_sent(self, service, store, transport):
        automation = Automation(trigger_type=EventType.MESSAGE_SENT, action_type=ActionType.TAG,
                                action_config={"tags": ["sent"]})
        await store.create_automation(automation)

        when = utcnow() + timedelta(hours=1)
        result = await service.dispatcher.send(SendRequest(to=TO, message="Later", schedule_for=when))

        assert result.success
        assert result.scheduled
        assert result.message_id is None
        assert result.db_record.status == MessageStatus.SCHEDULED
        assert result.db_record.scheduled_at == when
        assert transport.calls == []
        assert await event_types(store) == [EventType.MESSAGE_SCHEDULED]

    @pytest.mark.asyncio
    async def test_near_future_sends_now(self, service, transport):
        result = await service.dispatcher.send(SendRequest(
            to=TO, message="Soon", schedule_for=utcnow() + timedelta(milliseconds=200),
        ))
        assert result.success
        assert not result.scheduled
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_naive_schedule_treated_as_utc(self, service):
        when = (utcnow() + timedelta(hours=2)).replace(tzinfo=None)
        result = await service.dispatcher.send(SendRequest(to=TO, message="Later", schedule_for=when))
        assert result.db_record.scheduled_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_schedule_without_persistence_sends_now(self, service, transport):
        result = await service.dispatcher.send(SendRequest(
            to=TO, message="x", schedule_for=utcnow() + timedelta(hours=1), save_to_db=False,
        ))
        assert result.success
        assert len(transport.calls) == 1


class TestFailedSend:
    @pytest.mark.asyncio
    async def test_failure_returns_structured_result(self, service, store, transport):
        transport.fail_next(RemoteAPIError("(#131026) Message undeliverable", status_code=400))
        result = await service.dispatcher.send(SendRequest(to=TO, message="Hello"))

        assert not result.success
        assert result.error == "(#131026) Message undeliverable"
        assert result.db_record.status == MessageStatus.FAILED
        assert result.db_record.error == result.error
        events = await store.list_analytics_events(event_type=EventType.MESSAGE_FAILED)
        assert events[0].payload["status_code"] == 400

    @pytest.mark.asyncio
    async def test_failed_send_with_tag_automation(self, service, store, transport):
        await store.create_automation(Automation(
            name="Tag undeliverable",
            trigger_type=EventType.MESSAGE_FAILED,
            action_type=ActionType.TAG,
            action_config={"tags": ["undeliverable"]},
        ))
        transport.fail_next()

        result = await service.dispatcher.send(SendRequest(to=TO, message="Hello"))

        session = await store.get_session(result.db_record.session_id)
        assert session.context.tags == ["undeliverable"]
        assert await event_types(store) == [EventType.MESSAGE_FAILED, EventType.AUTOMATION_TRIGGERED]

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_mask_error(self, service, store, transport):
        store.create_message = AsyncMock(side_effect=RuntimeError("disk full"))
        transport.fail_next(RemoteAPIError("Rate limited", status_code=429))

        result = await service.dispatcher.send(SendRequest(to=TO, message="Hello"))

        assert not result.success
        assert result.error == "Rate limited"
        assert result.db_record is None
        assert side_effect_metrics.count("persist_failed_message") == 1

    @pytest.mark.asyncio
    async def test_store_outage_never_raises(self, service, store, transport):
        store.find_session_by_flow_token = AsyncMock(side_effect=RuntimeError("down"))
        store.find_active_session_by_contact_id = AsyncMock(side_effect=RuntimeError("down"))
        store.find_active_session_by_phone = AsyncMock(side_effect=RuntimeError("down"))
        store.create_message = AsyncMock(side_effect=RuntimeError("down"))
        store.add_analytics_event = AsyncMock(side_effect=RuntimeError("down"))
        store.list_active_automations = AsyncMock(side_effect=RuntimeError("down"))

        result = await service.dispatcher.send(SendRequest(to=TO, message="Hello"))

        assert result.success
        assert result.message_id == "wamid.1"
        assert side_effect_metrics.total >= 4


class TestEmitEvent:
    @pytest.mark.asyncio
    async def test_custom_event_runs_automations(self, service, store):
        session = await store.create_session(Session(phone_number=TO))
        await store.create_automation(Automation(
            trigger_type="booking.confirmed", action_type=ActionType.TAG,
            action_config={"tags": ["booked"]},
        ))

        outcomes = await service.dispatcher.emit_event(
            "booking.confirmed", session_id=session.id, payload={"booking": "B-1"},
        )

        assert [o.status for o in outcomes] == ["executed"]
        assert (await store.get_session(session.id)).context.tags == ["booked"]
        events = await store.list_analytics_events(event_type="booking.confirmed")
        assert events[0].payload == {"booking": "B-1"}
