from datetime import datetime, timedelta, timezone

from redis.exceptions import ConnectionError as RedisConnectionError

from sessionforge.service.runtime import (
    LOCAL_RATE_LIMIT_SWEEP_SECONDS,
    check_rate_limit,
    get_runtime,
)
from sessionforge.service.security_events import (
    REFRESH_TOKEN_REUSE,
    FanOutSecurityEventSink,
    LoggingSecurityEventSink,
    RedisSecurityEventSink,
    SecurityEvent,
    build_event_sink,
)
from sessionforge.storage.redis_cache import RedisCache

OCCURRED = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _event():
    return SecurityEvent(
        kind=REFRESH_TOKEN_REUSE,
        principal_id="p-1",
        chain_root_id="a" * 64,
        token_id="b" * 64,
        revoked_count=3,
        occurred_at=OCCURRED,
    )


class FakeCache:
    def __init__(self, fail=False):
        self.fail = fail
        self.payloads = []

    async def publish_security_event(self, payload):
        if self.fail:
            raise RedisConnectionError("redis down")
        self.payloads.append(payload)
        return "1-0"


class RecordingSink:
    def __init__(self):
        self.events = []

    async def publish(self, event):
        self.events.append(event)


def test_payload_truncates_token_keys():
    payload = _event().as_payload()
    assert payload["chain_root_id"] == "a" * 12
    assert payload["token_id"] == "b" * 12
    assert payload["occurred_at"] == OCCURRED.isoformat()
    assert payload["revoked_count"] == 3


async def test_redis_sink_streams_payload():
    cache = FakeCache()
    await RedisSecurityEventSink(cache).publish(_event())
    assert cache.payloads == [_event().as_payload()]


async def test_failing_sink_does_not_block_others():
    after = RecordingSink()
    sink = FanOutSecurityEventSink([RedisSecurityEventSink(FakeCache(fail=True)), after])
    await sink.publish(_event())
    assert after.events == [_event()]


def test_build_event_sink_without_redis_only_logs():
    sink = build_event_sink(None)
    assert [type(s) for s in sink.sinks] == [LoggingSecurityEventSink]
    with_redis = build_event_sink(FakeCache())
    assert [type(s) for s in with_redis.sinks] == [LoggingSecurityEventSink, RedisSecurityEventSink]


def test_rate_key_hides_identifier():
    key = RedisCache._normalize_rate_key("login:alice@example.com", "auth")
    assert key.startswith("rate:auth:")
    assert "alice" not in key


async def test_in_process_rate_limit_fallback():
    runtime = get_runtime()
    assert runtime.cache is None

    results = [
        await check_rate_limit(runtime, "login:someone", 3, 60, return_remaining=True)
        for _ in range(4)
    ]

    assert [allowed for allowed, _, _ in results] == [True, True, True, False]
    assert results[0][1] == 2
    assert results[-1][2] > 0
    assert await check_rate_limit(runtime, "login:someone-else", 3, 60) is True
    # non-positive limits disable throttling
    assert await check_rate_limit(runtime, "login:someone", 0, 60) is True


async def test_refilled_in_process_buckets_are_swept():
    runtime = get_runtime()
    now = datetime.now(timezone.utc)
    runtime._local_rate_limits["login:gone"] = (0.0, now - timedelta(minutes=5), now - timedelta(minutes=4))
    runtime._local_rate_limits["login:busy"] = (0.0, now, now + timedelta(minutes=1))
    runtime._local_rate_limit_swept_at = now - timedelta(seconds=LOCAL_RATE_LIMIT_SWEEP_SECONDS)

    assert await check_rate_limit(runtime, "login:fresh", 3, 60) is True
    assert set(runtime._local_rate_limits) == {"login:busy", "login:fresh"}

    # no second sweep inside the interval
    runtime._local_rate_limits["login:later"] = (3.0, now - timedelta(minutes=5), now - timedelta(minutes=5))
    await check_rate_limit(runtime, "login:fresh", 3, 60)
    assert "login:later" in runtime._local_rate_limits
