"""
Tests for the in-memory sliding-window rate limiter.

Run with: pytest tests/test_rate_limiter.py -v
"""
import os
import sys
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from marketplace.rate_limiter import RateLimiter


def _request(forwarded=None, host="10.0.0.1"):
    request = MagicMock()
    request.headers = {"X-Forwarded-For": forwarded} if forwarded else {}
    request.client.host = host
    return request


class TestClientIp:

    def test_first_forwarded_hop_wins(self):
        assert RateLimiter.client_ip(_request("203.0.113.9, 10.0.0.2")) == "203.0.113.9"

    def test_socket_peer_without_proxy(self):
        assert RateLimiter.client_ip(_request()) == "10.0.0.1"


class TestHit:
    """Tests for RateLimiter.hit."""

    def test_allows_up_to_limit(self):
        limiter = RateLimiter()
        results = [limiter.hit("1.1.1.1", "/holds", max_requests=3)[0] for _ in range(4)]
        assert results == [True, True, True, False]

    def test_remaining_counts_down(self):
        limiter = RateLimiter()
        _, first = limiter.hit("1.1.1.1", "/holds", max_requests=2)
        _, second = limiter.hit("1.1.1.1", "/holds", max_requests=2)
        assert first["remaining"] == 1
        assert second["remaining"] == 0

    def test_endpoints_and_ips_are_independent(self):
        limiter = RateLimiter()
        limiter.hit("1.1.1.1", "/holds", max_requests=1)
        assert limiter.hit("1.1.1.1", "/other", max_requests=1)[0] is True
        assert limiter.hit("2.2.2.2", "/holds", max_requests=1)[0] is True

    def test_window_slides(self):
        limiter = RateLimiter()
        with patch("marketplace.rate_limiter.time.time", return_value=1000.0):
            limiter.hit("1.1.1.1", "/holds", max_requests=1, window_seconds=60)
            assert limiter.hit("1.1.1.1", "/holds", max_requests=1, window_seconds=60)[0] is False
        with patch("marketplace.rate_limiter.time.time", return_value=1061.0):
            assert limiter.hit("1.1.1.1", "/holds", max_requests=1, window_seconds=60)[0] is True

    def test_reset_single_ip(self):
        limiter = RateLimiter()
        limiter.hit("1.1.1.1", "/holds", max_requests=1)
        limiter.hit("2.2.2.2", "/holds", max_requests=1)

        limiter.reset("1.1.1.1")

        assert limiter.hit("1.1.1.1", "/holds", max_requests=1)[0] is True
        assert limiter.hit("2.2.2.2", "/holds", max_requests=1)[0] is False

    def test_idle_keys_are_evicted(self):
        """Test: a key whose hits have all left the window is dropped on the next sweep"""
        limiter = RateLimiter()
        with patch("marketplace.rate_limiter.time.time", return_value=1000.0):
            limiter.hit("1.1.1.1", "/holds", max_requests=5, window_seconds=60)
        assert ("1.1.1.1", "/holds") in limiter.hits

        with patch("marketplace.rate_limiter.time.time", return_value=1100.0):
            limiter.hit("2.2.2.2", "/holds", max_requests=5, window_seconds=60)

        assert ("1.1.1.1", "/holds") not in limiter.hits
        assert ("1.1.1.1", "/holds") not in limiter.windows
        assert ("2.2.2.2", "/holds") in limiter.hits
