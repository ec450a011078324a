import threading
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace

from quillguard.policy import EndpointPolicy, RateLimitSettings
from quillguard.rate_limit import (
    RateLimiter,
    add_rate_limit_headers,
    client_key,
    rate_limit_response,
)
from quillguard.request import SimpleRequest
from quillguard.types import EndpointCategory


class RecordingLog:
    def __init__(self) -> None:
        self.hits: list[tuple[str, int, object]] = []

    def log_rate_limit_hit(self, endpoint, attempts, request=None):
        self.hits.append((endpoint, attempts, request))


def test_admits_exactly_max_requests_per_window(clock) -> None:
    limiter = RateLimiter(RateLimitSettings(), time_func=clock.time)

    results = [limiter.check("1.2.3.4:auth", "auth") for _ in range(5)]
    assert all(result.allowed for result in results)
    assert [result.remaining for result in results] == [4, 3, 2, 1, 0]

    denied = limiter.check("1.2.3.4:auth", "auth")
    assert not denied.allowed
    assert denied.remaining == 0
    assert denied.retry_after == 15 * 60
    assert denied.reset_at == int((clock.time() + 15 * 60) * 1000)


def test_window_expiry_resets_counter(clock) -> None:
    limiter = RateLimiter(RateLimitSettings(), time_func=clock.time)
    for _ in range(10):
        limiter.check("1.2.3.4:upload", EndpointCategory.UPLOAD)
    assert not limiter.check("1.2.3.4:upload", EndpointCategory.UPLOAD).allowed

    clock.advance(59.5)
    rejected = limiter.check("1.2.3.4:upload", EndpointCategory.UPLOAD)
    assert not rejected.allowed
    assert rejected.retry_after == 1

    clock.advance(0.5)
    result = limiter.check("1.2.3.4:upload", EndpointCategory.UPLOAD)
    assert result.allowed
    assert result.remaining == 9


def test_unknown_category_uses_default_policy(clock) -> None:
    limiter = RateLimiter(RateLimitSettings(), time_func=clock.time)
    result = limiter.check("1.2.3.4:bookmarks", "bookmarks")
    assert result.allowed
    assert result.limit == 100
    assert result.remaining == 99


def test_rejection_logs_rate_limit_hit_with_attempts(clock) -> None:
    log = RecordingLog()
    settings = RateLimitSettings(categories={"default": EndpointPolicy(max_requests=2, window_ms=1000)})
    limiter = RateLimiter(settings, security_log=log, time_func=clock.time)

    for _ in range(4):
        limiter.check("9.9.9.9:default")

    assert [(endpoint, attempts) for endpoint, attempts, _ in log.hits] == [("default", 3), ("default", 4)]


def test_concurrent_checks_get_unique_remaining_values() -> None:
    workers = 40
    settings = RateLimitSettings(categories={"default": EndpointPolicy(max_requests=workers, window_ms=60_000)})
    limiter = RateLimiter(settings)
    barrier = threading.Barrier(workers)

    def hit() -> int:
        barrier.wait()
        return limiter.check("10.0.0.1:default").remaining

    with ThreadPoolExecutor(max_workers=workers) as pool:
        remaining = list(pool.map(lambda _: hit(), range(workers)))

    assert sorted(remaining) == list(range(workers))


def test_concurrent_checks_never_exceed_limit() -> None:
    settings = RateLimitSettings(categories={"default": EndpointPolicy(max_requests=25, window_ms=60_000)})
    limiter = RateLimiter(settings)
    barrier = threading.Barrier(60)

    def hit() -> bool:
        barrier.wait()
        return limiter.check("10.0.0.2:default").allowed

    with ThreadPoolExecutor(max_workers=60) as pool:
        admitted = list(pool.map(lambda _: hit(), range(60)))

    assert admitted.count(True) == 25


def test_store_is_bounded_by_eviction(clock) -> None:
    limiter = RateLimiter(RateLimitSettings(), time_func=clock.time)
    for i in range(10_000):
        limiter.check(f"10.{i // 256}.{i % 256}.1:default")
        clock.advance(0.001)
    assert len(limiter) == 10_000

    limiter.check("192.0.2.1:default")
    assert len(limiter) < 10_000
    assert len(limiter) == 10_001 - 2_000
    # The newest key survives eviction and keeps its count.
    assert limiter.check("192.0.2.1:default").remaining == 98
    # The oldest keys were the ones evicted.
    assert limiter.check("10.0.0.1:default").remaining == 99


def test_small_cap_still_evicts(clock) -> None:
    limiter = RateLimiter(RateLimitSettings(max_entries=3), time_func=clock.time)
    for i in range(4):
        limiter.check(f"10.0.0.{i}:default")
        clock.advance(1)

    assert len(limiter) == 3
    # The oldest key went and the one just inserted stayed.
    assert limiter.check("10.0.0.3:default").remaining == 98
    assert limiter.check("10.0.0.0:default").remaining == 99
    assert len(limiter) == 3


def test_sweep_removes_expired_entries(clock) -> None:
    limiter = RateLimiter(RateLimitSettings(), time_func=clock.time)
    limiter.check("1.1.1.1:admin", "admin")
    limiter.check("2.2.2.2:default")
    clock.advance(61)

    assert limiter.sweep() == 1
    assert len(limiter) == 1


def test_inline_sweep_is_interval_gated(clock) -> None:
    settings = RateLimitSettings(sweep_interval_sec=120)
    limiter = RateLimiter(settings, time_func=clock.time)
    limiter.check("1.1.1.1:admin", "admin")

    clock.advance(61)
    limiter.check("2.2.2.2:admin", "admin")
    assert len(limiter) == 2

    clock.advance(59)
    limiter.check("3.3.3.3:admin", "admin")
    assert len(limiter) == 2
    assert set(limiter.stats().top_ips) == {"2.2.2.2", "3.3.3.3"}


def test_reset_drops_key(clock) -> None:
    limiter = RateLimiter(RateLimitSettings(), time_func=clock.time)
    for _ in range(5):
        limiter.check("1.2.3.4:auth", "auth")
    limiter.reset("1.2.3.4:auth")
    assert limiter.check("1.2.3.4:auth", "auth").allowed


def test_stats_aggregates_active_entries(clock) -> None:
    limiter = RateLimiter(RateLimitSettings(sweep_interval_sec=3600), time_func=clock.time)
    for _ in range(3):
        limiter.check("1.1.1.1:comments", "comments")
    limiter.check("1.1.1.1:admin", "admin")
    limiter.check("::1:default")
    clock.advance(61)
    limiter.check("2.2.2.2:default")

    stats = limiter.stats()
    assert stats.total_entries == 4
    assert stats.expired_entries == 2
    assert stats.active_entries == 2
    assert stats.total_requests == 2
    assert stats.top_ips == {"::1": 1, "2.2.2.2": 1}
    assert stats.top_categories == {"default": 2}
    assert stats.limits["auth"] == {"max_requests": 5, "window_ms": 900_000}
    assert stats.to_dict()["average_requests_per_entry"] == 1


def test_client_key_prefers_forwarded_chain() -> None:
    chained = SimpleRequest(headers={"X-Forwarded-For": " 203.0.113.5 , 10.0.0.1", "X-Real-IP": "10.0.0.9"})
    real_ip = SimpleRequest(headers={"x-real-ip": "10.0.0.9"})
    cdn_only = SimpleRequest(headers={"cf-connecting-ip": "198.51.100.1"})

    assert client_key(chained, "auth") == "203.0.113.5:auth"
    assert client_key(real_ip, EndpointCategory.UPLOAD) == "10.0.0.9:upload"
    assert client_key(cdn_only, "default") == "unknown:default"


def test_rate_limit_response_shape(clock) -> None:
    limiter = RateLimiter(RateLimitSettings(), time_func=clock.time, rejection_message="slow down")
    request = SimpleRequest(method="POST", headers={"x-forwarded-for": "203.0.113.5"})
    for _ in range(5):
        assert rate_limit_response(limiter, request, "auth") is None

    response = rate_limit_response(limiter, request, "auth")
    assert response is not None
    assert response.status_code == 429
    assert response.body == {"error": "slow down", "retryAfter": 900}
    assert response.headers["X-RateLimit-Limit"] == "5"
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert response.headers["Retry-After"] == "900"
    assert int(response.headers["X-RateLimit-Reset"]) > clock.time() * 1000


def test_add_rate_limit_headers(clock) -> None:
    limiter = RateLimiter(RateLimitSettings(), time_func=clock.time)
    result = limiter.check("1.2.3.4:comments", "comments")

    response = add_rate_limit_headers(SimpleNamespace(headers={}), result)
    assert response.headers["X-RateLimit-Limit"] == "30"
    assert response.headers["X-RateLimit-Remaining"] == "29"
