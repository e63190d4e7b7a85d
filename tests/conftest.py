"""Shared test fixtures for the messaging engine."""
import httpx
import pytest
from typing import Any, Optional

from channels.base import MessagingTransport, RemoteAPIError
from channels.whatsapp_client import GraphAPIClient
from config.settings import Settings, WhatsAppConfig, reset_settings
from core.service import create_messaging_service
from database.store_factory import reset_store
from database.store_memory import InMemoryMessagingStore
from utils.phone import digits_only
from utils.side_effects import side_effect_metrics


class FakeTransport(MessagingTransport):
    """Records every payload; answers with sequential wamid ids or a queued error."""

    def __init__(self):
        self.calls: list[dict[str, Any]] = []
        self.errors: list[Exception] = []
        self.closed = False

    def fail_next(self, error: Optional[Exception] = None) -> None:
        self.errors.append(error or RemoteAPIError("Recipient not on WhatsApp", status_code=400))

    async def send_message(self, payload: dict[str, Any], idempotency_key: str = "") -> dict[str, Any]:
        self.calls.append({"payload": payload, "idempotency_key": idempotency_key})
        if self.errors:
            raise self.errors.pop(0)
        message_id = f"wamid.{len(self.calls)}"
        return {
            "message_id": message_id,
            "contact_id": digits_only(payload.get("to", "")),
            "raw": {"messages": [{"id": message_id}]},
        }

    async def close(self) -> None:
        self.closed = True

    @property
    def payloads(self) -> list[dict[str, Any]]:
        return [c["payload"] for c in self.calls]


@pytest.fixture(autouse=True)
def _reset_globals():
    reset_store()
    reset_settings()
    side_effect_metrics.reset()
    yield
    reset_store()
    reset_settings()
    side_effect_metrics.reset()


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def store() -> InMemoryMessagingStore:
    return InMemoryMessagingStore()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def service(store, transport, settings):
    return create_messaging_service(store=store, transport=transport, settings=settings)


WHATSAPP_TEST_CONFIG = {
    "phone_number_id": "1001",
    "access_token": "test-token",
    "webhook_verify_token": "verify-me",
}


def _graph_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"messages": [{"id": "wamid.graph"}], "contacts": [{"wa_id": "911234567890"}]})


@pytest.fixture
def graph_client_factory():
    """Builds GraphAPIClients answering through an httpx.MockTransport handler."""
    def build(handler=None, retry_attempts: int = 3, **config) -> GraphAPIClient:
        return GraphAPIClient(
            WhatsAppConfig(**{**WHATSAPP_TEST_CONFIG, **config}),
            retry_attempts=retry_attempts,
            backoff_base=0,
            backoff_max=0,
            transport=httpx.MockTransport(handler or _graph_ok),
        )
    return build
