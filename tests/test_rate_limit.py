"""Tests for rate limiting middleware."""

import json
from unittest.mock import MagicMock, patch

import pytest
from fastapi import Request

from scanmark.middleware.rate_limit import (
    RATE_LIMITS,
    get_client_ip,
    get_limiter,
    rate_limit_exceeded_handler,
)


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Reset the rate limiter before each test."""
    limiter = get_limiter()
    limiter.reset()


def _request(direct_ip: str, headers=None) -> MagicMock:
    mock_request = MagicMock(spec=Request)
    mock_request.headers = headers or {}
    mock_request.client.host = direct_ip
    return mock_request


# Client IP Detection Tests


def test_get_client_ip_direct(env) -> None:
    """Direct connection without trusted proxies."""
    with patch("scanmark.middleware.rate_limit.get_remote_address") as mock_get_remote:
        mock_get_remote.return_value = "192.168.1.100"
        assert get_client_ip(_request("192.168.1.100")) == "192.168.1.100"


def test_forwarded_for_ignored_without_trusted_proxies(env) -> None:
    """X-Forwarded-For cannot be spoofed by arbitrary clients."""
    request = _request("198.51.100.7", {"X-Forwarded-For": "10.0.0.1"})

    with patch("scanmark.middleware.rate_limit.get_remote_address", return_value="198.51.100.7"):
        assert get_client_ip(request) == "198.51.100.7"


def test_forwarded_for_from_trusted_proxy(env) -> None:
    """First X-Forwarded-For entry is used when the peer is a trusted proxy."""
    env.setenv("TRUSTED_PROXIES", "10.0.0.2, 10.0.0.3")
    request = _request("10.0.0.3", {"X-Forwarded-For": "  203.0.113.50  ,  10.0.0.2  "})

    with patch("scanmark.middleware.rate_limit.get_remote_address", return_value="10.0.0.3"):
        assert get_client_ip(request) == "203.0.113.50"


def test_forwarded_for_from_untrusted_peer(env) -> None:
    env.setenv("TRUSTED_PROXIES", "10.0.0.2")
    request = _request("192.0.2.9", {"X-Forwarded-For": "203.0.113.50"})

    with patch("scanmark.middleware.rate_limit.get_remote_address", return_value="192.0.2.9"):
        assert get_client_ip(request) == "192.0.2.9"


# Rate Limit Configuration Tests


def test_rate_limits_configuration() -> None:
    """Marking runs are expensive and limited per minute."""
    assert RATE_LIMITS["mark"] == "10/minute"


def test_get_limiter_returns_module_limiter() -> None:
    assert get_limiter() is get_limiter()


# Exceeded Handler Tests


def test_rate_limit_exceeded_handler() -> None:
    """429 body and headers."""
    exc = MagicMock()
    exc.retry_after = 42
    exc.detail = "10 per 1 minute"

    response = rate_limit_exceeded_handler(MagicMock(spec=Request), exc)

    assert response.status_code == 429
    body = json.loads(response.body)
    assert body["detail"] == "Rate limit exceeded"
    assert body["retry_after"] == 42
    assert response.headers["Retry-After"] == "42"
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert response.headers["X-RateLimit-Limit"] == "10 per 1 minute"
