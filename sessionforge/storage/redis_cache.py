from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Dict, Optional, Tuple, Union

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for login throttling and security event fan-out."""

    DEFAULT_OPERATION_TIMEOUT = 5.0
    SECURITY_STREAM_MAXLEN = 10000

    # Lua token bucket script: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        security_stream: str = "security:events",
    ):
        self.redis_url = redis_url
        self.security_stream = security_stream
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str, scope: Optional[str]) -> str:
        """Generate collision-resistant rate keys.

        Components are hashed so identifiers never appear in Redis key names.
        """

        digest = hashlib.sha256(key.encode()).hexdigest()
        scope_prefix = f"{scope}:" if scope else ""
        return f"rate:{scope_prefix}{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        scope: Optional[str] = None,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using Redis-backed token bucket."""

        safe_key = self._normalize_rate_key(key, scope)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def publish_security_event(self, payload: Dict[str, Any]) -> str:
        """Append a security event to the monitoring stream; returns the entry id."""

        fields = {
            key: value if isinstance(value, str) else json.dumps(value)
            for key, value in payload.items()
            if value is not None
        }
        return await self.client.xadd(
            self.security_stream,
            fields,
            maxlen=self.SECURITY_STREAM_MAXLEN,
            approximate=True,
        )

    async def close(self) -> None:
        await self.client.aclose()
