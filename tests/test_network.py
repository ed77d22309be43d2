"""Tests for public address detection."""
from __future__ import annotations

import httpx

from sbxctl.network import detect_public_ip

SERVICES = ("https://ipv4.example.net", "https://echo.example.org/ip", "https://last.example.com")


Answers = dict[str, httpx.Response | Exception]


def _transport(answers: Answers, seen: list[str]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url).rstrip("/")
        seen.append(url)
        answer = answers[url]
        if isinstance(answer, Exception):
            raise answer
        return answer

    return httpx.MockTransport(handler)


def test_first_valid_answer_wins() -> None:
    """Later services are not queried once one answered."""
    seen: list[str] = []
    transport = _transport({SERVICES[0]: httpx.Response(200, text="1.2.3.4\n")}, seen)
    assert detect_public_ip(SERVICES, transport=transport) == "1.2.3.4"
    assert seen == [SERVICES[0]]


def test_failing_services_are_skipped() -> None:
    """Connection errors, error statuses and junk answers fall through."""
    seen: list[str] = []
    answers: Answers = {
        SERVICES[0]: httpx.ConnectError("connection refused"),
        SERVICES[1]: httpx.Response(503, text="busy"),
        SERVICES[2]: httpx.Response(200, text="8.8.4.4"),
    }
    assert detect_public_ip(SERVICES, transport=_transport(answers, seen)) == "8.8.4.4"
    assert seen == list(SERVICES)


def test_private_or_malformed_answers_yield_none() -> None:
    """Only public IPv4 addresses are accepted."""
    seen: list[str] = []
    answers: Answers = {
        SERVICES[0]: httpx.Response(200, text="10.0.0.5"),
        SERVICES[1]: httpx.Response(200, text="<html>rate limited</html>"),
        SERVICES[2]: httpx.Response(200, text="2001:db8::1"),
    }
    assert detect_public_ip(SERVICES, transport=_transport(answers, seen)) is None


def test_no_services_configured() -> None:
    """An empty service list disables detection."""
    assert detect_public_ip(()) is None
