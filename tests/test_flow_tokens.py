"""Tests for the Flow Token Manager."""
import pytest
from unittest.mock import AsyncMock

from channels.flow_tokens import FlowTokenManager, extract_parameters, is_flow_button
from database.store_memory import InMemoryMessagingStore
from models.schemas import FlowButtonDefault, Template, TemplateContent
from utils.side_effects import side_effect_metrics


def flow_button(index=0, **action):
    return {
        "type": "button",
        "sub_type": "flow",
        "index": str(index),
        "parameters": [{"type": "action", "action": action}] if action else [],
    }


def action_of(button):
    return next(p["action"] for p in button["parameters"] if p["type"] == "action")


@pytest.fixture
def manager(store):
    return FlowTokenManager(store)


class TestHelpers:
    def test_is_flow_button_case_insensitive(self):
        assert is_flow_button({"type": "BUTTON", "sub_type": "FLOW"})
        assert not is_flow_button({"type": "button", "sub_type": "url"})

    def test_extract_parameters(self):
        assert extract_parameters("Hi {{name}}, your {{tour}} with {{name}}") == ["name", "tour"]


class TestPrepare:
    @pytest.mark.asyncio
    async def test_generates_token_and_synthesizes_action(self, manager):
        template = TemplateContent(name="find_interest", button_params=[flow_button(0)])
        prep = await manager.prepare(template)

        action = action_of(prep.button_params[0])
        assert action["flow_token"].startswith("auto_flow_token_")
        assert prep.tokens[0].token == action["flow_token"]
        assert prep.tokens[0].index == 0

    @pytest.mark.asyncio
    async def test_caller_token_wins(self, manager):
        template = TemplateContent(name="t", button_params=[flow_button(0, flow_token="mine")])
        prep = await manager.prepare(template, flow_token="request-level")
        assert action_of(prep.button_params[0])["flow_token"] == "mine"

    @pytest.mark.asyncio
    async def test_request_token_used_when_button_has_none(self, manager):
        template = TemplateContent(name="t", button_params=[flow_button(0)])
        prep = await manager.prepare(template, flow_token="request-level")
        assert action_of(prep.button_params[0])["flow_token"] == "request-level"

    @pytest.mark.asyncio
    async def test_backfills_cached_defaults_by_index(self, manager, store):
        await store.upsert_template(Template(name="t", flow_defaults=[
            FlowButtonDefault(index=0, text="Book now", action={
                "flow_id": "123", "flow_action": "navigate", "navigate_screen": "WELCOME",
            }),
        ]))
        template = TemplateContent(name="t", button_params=[flow_button(0, flow_id="999")])
        prep = await manager.prepare(template)

        action = action_of(prep.button_params[0])
        assert action["flow_id"] == "999"
        assert action["flow_action"] == "navigate"
        assert action["flow_action_data"] == {"screen": "WELCOME"}
        assert action["flow_cta"] == "Book now"

    @pytest.mark.asyncio
    async def test_defaults_matched_by_text(self, manager, store):
        await store.upsert_template(Template(name="t", flow_defaults=[
            FlowButtonDefault(index=5, text="Explore", action={"flow_id": "42"}),
        ]))
        button = {**flow_button(0), "text": " Explore "}
        prep = await manager.prepare(TemplateContent(name="t", button_params=[button]))
        assert action_of(prep.button_params[0])["flow_id"] == "42"

    @pytest.mark.asyncio
    async def test_synthesizes_buttons_from_cache(self, manager, store):
        await store.upsert_template(Template(name="t", components=[
            {"type": "BODY", "text": "Hi"},
            {"type": "BUTTONS", "buttons": [
                {"type": "QUICK_REPLY", "text": "Stop"},
                {"type": "FLOW", "text": "Plan trip", "flow_id": "777", "flow_action": "NAVIGATE"},
            ]},
        ]))
        prep = await manager.prepare(TemplateContent(name="t"))

        assert len(prep.button_params) == 1
        button = prep.button_params[0]
        assert button["index"] == "1"
        action = action_of(button)
        assert action["flow_id"] == "777"
        assert action["flow_action"] == "navigate"
        assert action["flow_cta"] == "Plan trip"

    @pytest.mark.asyncio
    async def test_non_flow_buttons_untouched(self, manager):
        url_button = {"type": "button", "sub_type": "url", "index": "0",
                      "parameters": [{"type": "text", "text": "abc"}]}
        prep = await manager.prepare(TemplateContent(name="t", button_params=[url_button, flow_button(1)]))
        assert prep.button_params[0] == url_button
        assert len(prep.tokens) == 1

    @pytest.mark.asyncio
    async def test_no_buttons_and_no_cache(self, manager):
        prep = await manager.prepare(TemplateContent(name="plain"))
        assert prep.button_params == []
        assert prep.tokens == []
        assert not prep.defaults_written


class TestLearnedDefaults:
    @pytest.mark.asyncio
    async def test_learned_defaults_exclude_token(self, manager, store):
        template = TemplateContent(name="t", button_params=[
            flow_button(0, flow_id="123", flow_cta="Book", flow_token="tok-1"),
        ])
        prep = await manager.prepare(template)
        assert prep.defaults_written

        stored = await store.get_template("t")
        assert stored.flow_defaults[0].action == {"flow_id": "123", "flow_cta": "Book"}

    @pytest.mark.asyncio
    async def test_second_identical_call_writes_nothing(self, store):
        store.update_template_flow_defaults = AsyncMock(wraps=store.update_template_flow_defaults)
        manager = FlowTokenManager(store)
        template = TemplateContent(name="t", button_params=[flow_button(0, flow_id="123")])

        first = await manager.prepare(template)
        second = await manager.prepare(template)

        assert first.defaults_written
        assert not second.defaults_written
        assert store.update_template_flow_defaults.await_count == 1

    @pytest.mark.asyncio
    async def test_cache_failures_degrade_gracefully(self):
        store = InMemoryMessagingStore()
        store.get_template = AsyncMock(side_effect=RuntimeError("db down"))
        store.update_template_flow_defaults = AsyncMock(side_effect=RuntimeError("db down"))
        manager = FlowTokenManager(store)

        prep = await manager.prepare(TemplateContent(name="t", button_params=[flow_button(0, flow_id="1")]))

        assert action_of(prep.button_params[0])["flow_id"] == "1"
        assert not prep.defaults_written
        assert side_effect_metrics.count("flow_defaults_read") == 1
        assert side_effect_metrics.count("flow_defaults_write") == 1


class TestSyncTemplates:
    @pytest.mark.asyncio
    async def test_sync_keeps_learned_defaults(self, manager, store):
        await store.upsert_template(Template(name="booking", flow_defaults=[
            FlowButtonDefault(index=0, action={"flow_id": "1"}),
        ]))
        client = AsyncMock()
        client.list_templates.return_value = [
            {"name": "booking", "language": "en", "category": "MARKETING", "status": "APPROVED",
             "components": [{"type": "BODY", "text": "Hi {{1}}, trip to {{destination}}"}]},
            {"name": "reminder", "language": "en_US", "components": []},
        ]

        synced = await manager.sync_templates(client)

        assert synced == 2
        booking = await store.get_template("booking")
        assert booking.variables == ["1", "destination"]
        assert booking.status == "APPROVED"
        assert booking.flow_defaults[0].action == {"flow_id": "1"}
        assert await store.get_template("reminder") is not None
