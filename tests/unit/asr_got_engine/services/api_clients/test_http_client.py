import json

import httpx
import pytest

from asr_got_engine.domain.services.exceptions import (
    AuthenticationError,
    ExternalApiError,
    MalformedResponseError,
    RateLimitError,
)
from asr_got_engine.services.api_clients.base_client import (
    APIHTTPError,
    APIRequestError,
    AsyncHTTPClient,
    translate_client_error,
)

BASE_URL = "https://service.example.org/v1"


# --- Test Fixtures ---
@pytest.fixture
async def http_client():
    """Client for a fake service with a credential header."""
    client = AsyncHTTPClient("test service", base_url=BASE_URL + "/", default_headers={"X-Api-Key": "secret-key"})
    yield client
    await client.close()


async def test_post_json_returns_body(http_client, httpx_mock):
    httpx_mock.add_response(url=f"{BASE_URL}/things", method="POST", json={"ok": True})

    body = await http_client.post_json("/things", {"name": "x"})

    assert body == {"ok": True}
    request = httpx_mock.get_request()
    assert request.headers["X-Api-Key"] == "secret-key"
    assert request.headers["Content-Type"] == "application/json"
    assert json.loads(request.content) == {"name": "x"}


async def test_http_error_keeps_status_and_retry_after(http_client, httpx_mock):
    httpx_mock.add_response(url=f"{BASE_URL}/things", method="POST", status_code=429, headers={"Retry-After": "7"})

    with pytest.raises(APIHTTPError) as exc_info:
        await http_client.post("things", {})

    assert exc_info.value.status_code == 429
    assert exc_info.value.retry_after == 7.0


async def test_rate_limit_carries_retry_after(http_client, httpx_mock):
    httpx_mock.add_response(url=f"{BASE_URL}/things", method="POST", status_code=429, headers={"Retry-After": "3"})
    with pytest.raises(RateLimitError) as exc_info:
        await http_client.post_json("things", {})
    assert exc_info.value.retry_after == 3.0


async def test_transport_failure(http_client, httpx_mock):
    httpx_mock.add_exception(httpx.ConnectError("refused"))

    with pytest.raises(ExternalApiError) as exc_info:
        await http_client.post_json("things", {})

    assert "ConnectError" in str(exc_info.value)
    assert isinstance(exc_info.value.__cause__, APIRequestError)


@pytest.mark.parametrize("body", [b"not json", b"[1, 2]"])
async def test_non_object_body(http_client, httpx_mock, body):
    httpx_mock.add_response(url=f"{BASE_URL}/things", method="POST", content=body)
    with pytest.raises(MalformedResponseError):
        await http_client.post_json("things", {})


@pytest.mark.parametrize(
    "error, expected",
    [
        (APIHTTPError(401, ""), AuthenticationError),
        (APIHTTPError(403, ""), AuthenticationError),
        (APIHTTPError(429, ""), RateLimitError),
        (APIHTTPError(502, ""), ExternalApiError),
        (APIRequestError("timeout"), ExternalApiError),
    ],
)
def test_translate_client_error(error, expected):
    translated = translate_client_error("search service", error)
    assert type(translated) is expected
    assert "search service" in str(translated)


def test_server_errors_keep_status_code():
    assert translate_client_error("svc", APIHTTPError(503, "")).status_code == 503
