"""
Tests for the resilient HTTP client.

Tests cover:
- Retries on 5xx and 429 responses
- No retries on other 4xx responses
- Retries on transport errors, re-raising once exhausted
- HttpError raised by get/post/get_text

Run with: cd backend && pytest tests/test_http_client.py -v
"""

import httpx
import pytest


def make_client(handler, retries=2):
    from jobtracker.services.http_client import HttpClient

    return HttpClient(
        timeout_ms=5000,
        retries=retries,
        base_delay_ms=1,
        max_delay_ms=4,
        transport=httpx.MockTransport(handler),
    )


class TestFetch:
    """Retry behaviour of HttpClient.fetch."""

    @pytest.mark.asyncio
    async def test_retries_server_errors_until_success(self):
        """A 503 followed by a 200 should return the 200."""
        calls = []

        def handler(request):
            calls.append(request.url)
            if len(calls) == 1:
                return httpx.Response(503)
            return httpx.Response(200, json={"ok": True})

        client = make_client(handler)
        response = await client.fetch("https://api.example.com/jobs")
        await client.aclose()

        assert response.status_code == 200
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_retries_rate_limited_responses(self):
        """429 is retried like a server error."""
        statuses = [429, 429, 200]

        def handler(request):
            return httpx.Response(statuses.pop(0), json={})

        client = make_client(handler)
        response = await client.fetch("https://api.example.com/jobs")
        await client.aclose()

        assert response.status_code == 200
        assert statuses == []

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        """A 404 comes straight back after one request."""
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(404)

        client = make_client(handler)
        response = await client.fetch("https://api.example.com/missing")
        await client.aclose()

        assert response.status_code == 404
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_returns_last_response_when_retries_exhausted(self):
        """After retries + 1 attempts the final 500 is returned."""
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(500)

        client = make_client(handler, retries=2)
        response = await client.fetch("https://api.example.com/jobs")
        await client.aclose()

        assert response.status_code == 500
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_transport_error_reraised_after_retries(self):
        """Connection errors are retried, then re-raised."""
        calls = []

        def handler(request):
            calls.append(1)
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler, retries=1)
        with pytest.raises(httpx.ConnectError):
            await client.fetch("https://api.example.com/jobs")
        await client.aclose()

        assert len(calls) == 2


class TestJsonHelpers:
    """get/post/get_text raise HttpError for non-2xx."""

    @pytest.mark.asyncio
    async def test_get_returns_parsed_json(self):
        """get() decodes the JSON body."""
        client = make_client(lambda request: httpx.Response(200, json={"jobs": [1, 2]}))
        data = await client.get("https://api.example.com/jobs")
        await client.aclose()

        assert data == {"jobs": [1, 2]}

    @pytest.mark.asyncio
    async def test_get_raises_http_error_with_status(self):
        """Non-2xx responses become HttpError carrying the status."""
        from jobtracker.services.http_client import HttpError

        client = make_client(lambda request: httpx.Response(404), retries=0)
        with pytest.raises(HttpError) as exc_info:
            await client.get("https://api.example.com/jobs")
        await client.aclose()

        assert exc_info.value.status == 404
        assert exc_info.value.is_client_error
        assert not exc_info.value.is_rate_limited

    @pytest.mark.asyncio
    async def test_post_sends_json_body(self):
        """post() serializes the body as JSON."""
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["body"] = request.content
            return httpx.Response(200, json={"total": 0})

        client = make_client(handler)
        data = await client.post("https://api.example.com/search", {"offset": 20})
        await client.aclose()

        assert data == {"total": 0}
        assert seen["method"] == "POST"
        assert b'"offset"' in seen["body"]

    @pytest.mark.asyncio
    async def test_get_text_returns_body(self):
        """get_text() returns the raw body."""
        client = make_client(lambda request: httpx.Response(200, text="<html>careers</html>"))
        text = await client.get_text("https://careers.example.com")
        await client.aclose()

        assert text == "<html>careers</html>"
