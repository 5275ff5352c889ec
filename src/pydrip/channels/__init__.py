"""Channel side of the engine: transports, throttling and fault isolation."""

from pydrip.channels.circuit_breaker import BreakerState, BreakerStatus, CircuitBreaker
from pydrip.channels.fake import (
    FakeChannelGateway,
    InMemoryContactDirectory,
    InMemoryEngagementStats,
    StaticTemplateRenderer,
)
from pydrip.channels.gateway import (
    ChannelGateway,
    Contact,
    ContactDirectory,
    EngagementStats,
    EngagementStatsProvider,
    MessageContent,
    SendResult,
    TemplateRenderer,
)
from pydrip.channels.rate_limiter import RateDecision, RateLimiter, WindowUsage

__all__ = [
    "BreakerState",
    "BreakerStatus",
    "ChannelGateway",
    "CircuitBreaker",
    "Contact",
    "ContactDirectory",
    "EngagementStats",
    "EngagementStatsProvider",
    "FakeChannelGateway",
    "InMemoryContactDirectory",
    "InMemoryEngagementStats",
    "MessageContent",
    "RateDecision",
    "RateLimiter",
    "SendResult",
    "StaticTemplateRenderer",
    "TemplateRenderer",
    "WindowUsage",
]
