"""Provider channel: transport contract, Graph API client, payloads and flow tokens."""
from channels.base import (
    MessagingError,
    ConfigurationError,
    InvalidRequest,
    RemoteAPIError,
    AutomationError,
    MessagingTransport,
)
from channels.payloads import build_payload, render_preview
from channels.flow_tokens import FlowTokenManager, FlowPreparation
from channels.whatsapp_client import GraphAPIClient

__all__ = [
    "MessagingError", "ConfigurationError", "InvalidRequest",
    "RemoteAPIError", "AutomationError", "MessagingTransport",
    "build_payload", "render_preview",
    "FlowTokenManager", "FlowPreparation",
    "GraphAPIClient",
]
