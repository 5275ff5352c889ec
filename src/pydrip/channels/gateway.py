"""Interfaces of the external collaborators the engine consumes.

Contacts, rendering, transports and engagement tracking are owned by
other systems; the engine only sees these protocols.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from pydrip.models.status import Channel


@dataclass(frozen=True)
class Contact:
    id: str
    email: str | None = None
    phone: str | None = None
    name: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def destination(self, channel: Channel) -> str | None:
        """Address for `channel`, or None if the contact cannot be reached there."""
        if channel is Channel.EMAIL:
            return self.email or None
        return self.phone or None


@dataclass(frozen=True)
class MessageContent:
    body: str
    subject: str | None = None
    is_html: bool = False


@dataclass(frozen=True)
class SendResult:
    success: bool
    provider_message_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class EngagementStats:
    """Engagement facts recorded by the tracking endpoints for one message."""

    opens: int = 0
    clicks: int = 0
    bounces: int = 0
    unsubscribes: int = 0


@runtime_checkable
class ChannelGateway(Protocol):
    """Transport for one channel."""

    async def send(self, contact: Contact, content: MessageContent) -> SendResult:
        """Send one message.

        Returns a failed SendResult for delivery errors. Raising is
        also tolerated; the dispatcher records it as a failed send.
        """
        ...


@runtime_checkable
class EngagementStatsProvider(Protocol):
    async def get_stats(self, provider_message_id: str) -> EngagementStats | None:
        """Stats for a message, or None if nothing was ever recorded."""
        ...


@runtime_checkable
class ContactDirectory(Protocol):
    async def get_contacts(self, contact_ids: Iterable[str]) -> dict[str, Contact]:
        """Resolve ids; unknown ids are simply absent from the result."""
        ...


@runtime_checkable
class TemplateRenderer(Protocol):
    async def render(
        self, template_ref: str | None, contact: Contact, channel: Channel
    ) -> MessageContent:
        ...
