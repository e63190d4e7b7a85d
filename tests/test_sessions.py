"""Tests for SessionContext merging and the Session Manager."""
import pytest
from datetime import timedelta

from context.sessions import SessionHints, SessionManager
from models.schemas import SessionContext, utcnow


class TestSessionContextMerge:
    def test_tags_trimmed_union_keeps_order(self):
        ctx = SessionContext(tags=["vip"])
        merged = ctx.merge({"tags": [" lead ", "vip", "", "Lead"]})
        assert merged.tags == ["vip", "lead", "Lead"]

    def test_single_tag_string(self):
        assert SessionContext().merge({"tags": "new"}).tags == ["new"]

    def test_flow_tokens_append_without_duplicates(self):
        ctx = SessionContext(flow_tokens=["a"])
        merged = ctx.merge({"flow_tokens": ["a", "b"], "last_flow_token": "c"})
        assert merged.flow_tokens == ["a", "b", "c"]
        assert merged.last_flow_token == "c"

    def test_last_fields_overwrite_only_when_given(self):
        ctx = SessionContext(last_screen="WELCOME", last_action="navigate")
        merged = ctx.merge({"last_screen": "SUMMARY"})
        assert merged.last_screen == "SUMMARY"
        assert merged.last_action == "navigate"

    def test_extra_is_shallow_merge(self):
        ctx = SessionContext(extra={"a": 1, "nested": {"x": 1}})
        merged = ctx.merge({"extra": {"nested": {"y": 2}}, "budget": 5000})
        assert merged.extra == {"a": 1, "nested": {"y": 2}, "budget": 5000}

    def test_merge_returns_new_object(self):
        ctx = SessionContext(tags=["a"])
        merged = ctx.merge({"tags": ["b"]})
        assert ctx.tags == ["a"]
        assert merged is not ctx


class TestSessionManager:
    @pytest.fixture
    def manager(self, store):
        return SessionManager(store, ttl_hours=24)

    @pytest.mark.asyncio
    async def test_no_identifying_hints_returns_none(self, manager, store):
        assert await manager.ensure_session(SessionHints(context={"a": 1})) is None
        assert await store.list_sessions() == []

    @pytest.mark.asyncio
    async def test_create_stamps_interaction_and_expiry(self, manager):
        before = utcnow()
        session = await manager.ensure_session(SessionHints(phone_number="0091 98765 43210"))
        assert session.phone_number == "+919876543210"
        assert session.last_interaction >= before
        assert session.expires_at - session.last_interaction == timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_one_active_session_per_phone(self, manager, store):
        for i in range(3):
            await manager.ensure_session(SessionHints(phone_number="+919876543210", context={"turn": i}))
        sessions = await store.list_sessions()
        assert len(sessions) == 1
        assert sessions[0].context.extra == {"turn": 2}

    @pytest.mark.asyncio
    async def test_lookup_by_flow_token_first(self, manager):
        first = await manager.ensure_session(SessionHints(phone_number="+911111111111", flow_token="tok-1"))
        await manager.ensure_session(SessionHints(phone_number="+912222222222"))

        found = await manager.ensure_session(SessionHints(phone_number="+912222222222", flow_token="tok-1"))
        assert found.id == first.id

    @pytest.mark.asyncio
    async def test_lookup_by_contact_id(self, manager):
        created = await manager.ensure_session(SessionHints(phone_number="+911111111111", contact_id="911111111111"))
        found = await manager.ensure_session(SessionHints(contact_id="911111111111", last_screen="DETAILS"))
        assert found.id == created.id
        assert found.context.last_screen == "DETAILS"

    @pytest.mark.asyncio
    async def test_create_if_missing_false(self, manager):
        assert await manager.ensure_session(
            SessionHints(phone_number="+911111111111", create_if_missing=False)
        ) is None

    @pytest.mark.asyncio
    async def test_flow_tokens_recorded(self, manager):
        session = await manager.ensure_session(SessionHints(
            phone_number="+911111111111", flow_tokens=["t1", "t2"],
        ))
        assert session.context.flow_tokens == ["t1", "t2"]
        assert session.context.last_flow_token == "t2"
        assert session.flow_token == "t2"

    @pytest.mark.asyncio
    async def test_add_tags(self, manager):
        session = await manager.ensure_session(SessionHints(phone_number="+911111111111"))
        tagged = await manager.add_tags(session.id, ["failed-delivery", " vip "])
        tagged = await manager.add_tags(tagged, ["vip"])
        assert tagged.context.tags == ["failed-delivery", "vip"]

    @pytest.mark.asyncio
    async def test_archive_allows_new_session(self, manager, store):
        old = await manager.ensure_session(SessionHints(phone_number="+911111111111"))
        await manager.archive(old.id)
        new = await manager.ensure_session(SessionHints(phone_number="+911111111111"))
        assert new.id != old.id
        assert len(await store.list_sessions()) == 1

    @pytest.mark.asyncio
    async def test_archive_expired(self, manager, store):
        session = await manager.ensure_session(SessionHints(phone_number="+911111111111"))
        archived = await manager.archive_expired(now=session.expires_at + timedelta(seconds=1))
        assert archived == 1
        assert await store.list_sessions() == []
