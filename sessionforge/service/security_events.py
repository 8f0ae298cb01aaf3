from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Sequence

from redis.exceptions import RedisError

from sessionforge.logging import get_logger, short_key
from sessionforge.storage.redis_cache import RedisCache

logger = get_logger(__name__)

REFRESH_TOKEN_REUSE = "refresh_token_reuse"


@dataclass(frozen=True)
class SecurityEvent:
    kind: str
    principal_id: str
    chain_root_id: str
    token_id: str
    revoked_count: int
    occurred_at: datetime

    def as_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["occurred_at"] = self.occurred_at.isoformat()
        payload["chain_root_id"] = short_key(self.chain_root_id)
        payload["token_id"] = short_key(self.token_id)
        return payload


class SecurityEventSink(Protocol):
    async def publish(self, event: SecurityEvent) -> None: ...


class LoggingSecurityEventSink:
    async def publish(self, event: SecurityEvent) -> None:
        logger.warning("security_event", **event.as_payload())


class RedisSecurityEventSink:
    """Appends events to a Redis stream consumed by security monitoring."""

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def publish(self, event: SecurityEvent) -> None:
        entry_id = await self.cache.publish_security_event(event.as_payload())
        logger.info("security_event_streamed", kind=event.kind, entry_id=entry_id)


class FanOutSecurityEventSink:
    """Delivers to every sink; one failing sink does not stop the others."""

    def __init__(self, sinks: Sequence[SecurityEventSink]) -> None:
        self.sinks = tuple(sinks)

    async def publish(self, event: SecurityEvent) -> None:
        for sink in self.sinks:
            try:
                await sink.publish(event)
            except (RedisError, OSError) as exc:
                logger.error(
                    "security_event_publish_failed",
                    sink=type(sink).__name__,
                    kind=event.kind,
                    error=str(exc),
                )


def build_event_sink(cache: Optional[RedisCache]) -> SecurityEventSink:
    sinks: list[SecurityEventSink] = [LoggingSecurityEventSink()]
    if cache is not None:
        sinks.append(RedisSecurityEventSink(cache))
    return FanOutSecurityEventSink(sinks)
