"""
Channel base — error hierarchy and the transport contract.

Provides:
- MessagingError: base for everything this engine raises on purpose
- InvalidRequest: malformed send request, raised before any I/O
- RemoteAPIError: provider rejected or failed a call (status, message, raw response)
- NotFound: a referenced campaign or recipient does not exist
- MessagingTransport: the injected capability that makes authenticated
  provider calls; GraphAPIClient is the production implementation
"""
from __future__ import annotations

import abc
from typing import Any, Optional

from config.settings import ConfigurationError

__all__ = [
    "MessagingError", "ConfigurationError", "InvalidRequest",
    "RemoteAPIError", "AutomationError", "NotFound", "MessagingTransport",
]


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class MessagingError(Exception):
    """Base exception for messaging operations."""

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class InvalidRequest(MessagingError):
    """The send request is malformed (no content kind, several, or a missing field)."""


class RemoteAPIError(MessagingError):
    """The provider returned an error or could not be reached."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Any = None,
        retryable: Optional[bool] = None,
    ):
        self.status_code = status_code
        self.message = message
        self.response = response
        if retryable is None:
            retryable = status_code is None or status_code == 429 or status_code >= 500
        super().__init__(message, retryable=retryable)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status_code": self.status_code,
            "message": self.message,
            "response": self.response,
        }


class AutomationError(MessagingError):
    """An automation's action configuration could not be executed."""


class NotFound(MessagingError):
    """A referenced record (campaign, recipient) does not exist."""


# ══════════════════════════════════════════════════════════════
#  TRANSPORT CONTRACT
# ══════════════════════════════════════════════════════════════

class MessagingTransport(abc.ABC):
    """
    Authenticated calls to the messaging provider.

    send_message returns a dict with at least `message_id`; `contact_id`
    and `raw` are filled when the provider reports them.
    """

    @abc.abstractmethod
    async def send_message(
        self, payload: dict[str, Any], idempotency_key: str = "",
    ) -> dict[str, Any]:
        ...

    async def close(self) -> None:
        pass
