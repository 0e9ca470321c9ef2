import pytest
from flask import Flask, request

from app.gradeai.rate_limit import RateLimiter, enforce, get_client_ip, is_localhost


class FakeClock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_fixed_window_blocks_then_resets():
    clock = FakeClock()
    limiter = RateLimiter(3, 60, clock=clock)

    assert [limiter.check("ip").remaining for _ in range(3)] == [2, 1, 0]
    blocked = limiter.check("ip")
    assert blocked.success is False
    assert blocked.retry_after == 60

    clock.now += 30
    assert limiter.check("ip").retry_after == 30

    clock.now += 31
    fresh = limiter.check("ip")
    assert fresh.success is True
    assert fresh.remaining == 2


def test_status_does_not_count():
    limiter = RateLimiter(2, 60, clock=FakeClock())
    assert limiter.status("a").remaining == 2
    limiter.check("a")
    assert limiter.status("a").remaining == 1
    assert limiter.status("a").remaining == 1


def test_identifiers_are_independent_and_reset():
    limiter = RateLimiter(1, 60, clock=FakeClock())
    assert limiter.check("a").success
    assert not limiter.check("a").success
    assert limiter.check("b").success
    limiter.reset("a")
    assert limiter.check("a").success


def test_cleanup_drops_expired_entries():
    clock = FakeClock()
    limiter = RateLimiter(5, 10, clock=clock)
    limiter.check("a")
    limiter.check("b")
    clock.now += 11
    assert limiter.cleanup() == 2


def test_invalid_configuration():
    with pytest.raises(ValueError):
        RateLimiter(0, 60)
    with pytest.raises(ValueError):
        RateLimiter(1, 0)


def test_client_ip_header_precedence():
    app = Flask(__name__)
    with app.test_request_context(headers={"X-Forwarded-For": "198.51.100.1, 10.0.0.1", "X-Real-IP": "10.0.0.2"}):
        assert get_client_ip(request) == "198.51.100.1"
    with app.test_request_context(headers={"CF-Connecting-IP": "198.51.100.9"}):
        assert get_client_ip(request) == "198.51.100.9"
    with app.test_request_context(environ_base={"REMOTE_ADDR": "192.0.2.4"}):
        assert get_client_ip(request) == "192.0.2.4"
    assert is_localhost("::1")
    assert not is_localhost("192.0.2.4")


def test_enforce_exempts_localhost_outside_production():
    app = Flask(__name__)
    app.config.update(RATE_LIMIT_ENABLED=True, ENV="development")
    limiter = RateLimiter(1, 60, clock=FakeClock())

    with app.test_request_context(environ_base={"REMOTE_ADDR": "127.0.0.1"}):
        assert enforce(limiter) is None
        assert enforce(limiter) is None

    app.config["ENV"] = "production"
    with app.test_request_context(environ_base={"REMOTE_ADDR": "127.0.0.1"}):
        assert enforce(limiter) is None
        resp = enforce(limiter, "Slow down")
        assert resp.status_code == 429
        assert resp.get_json() == {"success": False, "error": "Slow down", "retryAfter": 60}


def test_enforce_disabled():
    app = Flask(__name__)
    app.config.update(RATE_LIMIT_ENABLED=False, ENV="production")
    limiter = RateLimiter(1, 60, clock=FakeClock())
    with app.test_request_context(environ_base={"REMOTE_ADDR": "192.0.2.4"}):
        assert enforce(limiter) is None
        assert enforce(limiter) is None
