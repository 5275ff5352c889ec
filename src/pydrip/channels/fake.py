"""In-process collaborators for tests, demos and dry runs.

FakeChannelGateway stands in for a real transport: it records every
message, returns synthetic provider ids, and can be told to fail.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from uuid_extensions import uuid7

from pydrip.channels.gateway import Contact, EngagementStats, MessageContent, SendResult
from pydrip.models.status import Channel

logger = logging.getLogger(__name__)


@dataclass
class SentMessage:
    contact: Contact
    content: MessageContent
    provider_message_id: str


class FakeChannelGateway:
    """Gateway that delivers nowhere.

    Args:
        channel: Channel this gateway pretends to serve
        fail_for: Contact ids whose sends return a failed result
        raise_for: Contact ids whose sends raise ConnectionError
    """

    def __init__(
        self,
        channel: Channel = Channel.EMAIL,
        fail_for: Iterable[str] = (),
        raise_for: Iterable[str] = (),
    ):
        self.channel = channel
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)
        self.sent: list[SentMessage] = []
        self.attempts = 0

    def __repr__(self) -> str:
        return f"FakeChannelGateway({self.channel}, sent={len(self.sent)})"

    def fail_all(self) -> None:
        """Make every subsequent send fail."""
        self.fail_for = {"*"}

    async def send(self, contact: Contact, content: MessageContent) -> SendResult:
        self.attempts += 1
        if contact.id in self.raise_for:
            raise ConnectionError(f"{self.channel} transport unreachable")
        if "*" in self.fail_for or contact.id in self.fail_for:
            return SendResult(success=False, error=f"{self.channel} provider rejected message")

        message_id = f"fake-{self.channel}-{uuid7()}"
        self.sent.append(SentMessage(contact, content, message_id))
        logger.debug(f"Fake {self.channel} send to {contact.id}: {message_id}")
        return SendResult(success=True, provider_message_id=message_id)

    def recipients(self) -> list[str]:
        return [m.contact.id for m in self.sent]


class InMemoryEngagementStats:
    """Engagement facts keyed by provider message id.

    Plays the part of the tracking endpoints: tests call record_open()
    and record_click() for messages the fake gateway produced.
    """

    def __init__(self):
        self._stats: dict[str, EngagementStats] = {}
        self.lookups = 0

    def _bump(self, message_id: str, **deltas: int) -> None:
        current = self._stats.get(message_id, EngagementStats())
        self._stats[message_id] = EngagementStats(
            opens=current.opens + deltas.get("opens", 0),
            clicks=current.clicks + deltas.get("clicks", 0),
            bounces=current.bounces + deltas.get("bounces", 0),
            unsubscribes=current.unsubscribes + deltas.get("unsubscribes", 0),
        )

    def record_open(self, message_id: str, count: int = 1) -> None:
        self._bump(message_id, opens=count)

    def record_click(self, message_id: str, count: int = 1) -> None:
        self._bump(message_id, clicks=count)

    def record_bounce(self, message_id: str) -> None:
        self._bump(message_id, bounces=1)

    def record_unsubscribe(self, message_id: str) -> None:
        self._bump(message_id, unsubscribes=1)

    async def get_stats(self, provider_message_id: str) -> EngagementStats | None:
        self.lookups += 1
        return self._stats.get(provider_message_id)


class InMemoryContactDirectory:
    """Contacts held in a dict."""

    def __init__(self, contacts: Iterable[Contact] = ()):
        self._contacts = {c.id: c for c in contacts}

    @classmethod
    def generate(cls, count: int, prefix: str = "c") -> InMemoryContactDirectory:
        """Directory of `count` contacts reachable by email and SMS."""
        return cls(
            Contact(
                id=f"{prefix}{i}",
                email=f"{prefix}{i}@example.com",
                phone=f"+1555000{i:04d}",
                name=f"Contact {i}",
            )
            for i in range(1, count + 1)
        )

    def add(self, contact: Contact) -> None:
        self._contacts[contact.id] = contact

    def ids(self) -> list[str]:
        return list(self._contacts)

    async def get_contacts(self, contact_ids: Iterable[str]) -> dict[str, Contact]:
        return {cid: self._contacts[cid] for cid in contact_ids if cid in self._contacts}


@dataclass
class StaticTemplateRenderer:
    """Renders `template_ref` with str.format over the contact's fields."""

    templates: dict[str, str] = field(default_factory=dict)
    default_subject: str = "Hello"

    async def render(
        self, template_ref: str | None, contact: Contact, channel: Channel
    ) -> MessageContent:
        text = self.templates.get(template_ref or "", template_ref or "")
        values = {"name": contact.name or "", "email": contact.email or "", **contact.attributes}
        body = text.format_map(_Missing(values))
        subject = self.default_subject if channel is Channel.EMAIL else None
        return MessageContent(body=body, subject=subject, is_html=channel is Channel.EMAIL)


class _Missing(dict):
    """format_map mapping that leaves unknown placeholders untouched."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"
