from typing import Any, Dict, Optional

import httpx
from loguru import logger

from ...domain.services.exceptions import (
    AuthenticationError,
    ExternalApiError,
    MalformedResponseError,
    RateLimitError,
)


class BaseAPIClientError(Exception):
    """Base exception for transport-level client errors."""
    pass


class APIRequestError(BaseAPIClientError):
    """The request never produced a response (connection, DNS, timeout)."""
    pass


class APIHTTPError(BaseAPIClientError):
    """The service answered with a 4xx or 5xx status."""
    def __init__(self, status_code: int, response_content: Any, retry_after: Optional[float] = None):
        self.status_code = status_code
        self.response_content = response_content
        self.retry_after = retry_after
        super().__init__(f"HTTP {status_code}")


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def translate_client_error(service: str, error: BaseAPIClientError) -> Exception:
    """Map a transport-level client error onto the pipeline error taxonomy."""
    if isinstance(error, APIHTTPError):
        if error.status_code in (401, 403):
            return AuthenticationError(f"{service} rejected the credential (HTTP {error.status_code})")
        if error.status_code == 429:
            return RateLimitError(f"{service} rate limit hit (HTTP 429)", retry_after=error.retry_after)
        return ExternalApiError(f"{service} returned HTTP {error.status_code}", status_code=error.status_code)
    return ExternalApiError(f"{service} request failed: {error}")


class AsyncHTTPClient:
    """
    JSON-over-HTTP client shared by the reasoning and search services.

    Wraps one ``httpx.AsyncClient``. ``post_json`` is the entry point used by
    the service clients: it sends the payload, maps transport failures onto
    the pipeline errors and returns the decoded JSON object.
    """

    def __init__(
        self,
        service: str,
        base_url: str,
        default_headers: Optional[Dict[str, str]] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            service: Human-readable service name used in errors and logs.
            base_url: Base URL for every request.
            default_headers: Headers sent with every request. Credential
                headers passed here are never logged.
            timeout: Read timeout in seconds; connecting is capped at 10 s.
        """
        self.service = service
        self.base_url = base_url.rstrip("/")
        headers = {
            "User-Agent": "ASRGoTEngine/0.1",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        headers.update(default_headers or {})
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=10.0),
            follow_redirects=True,
            transport=transport,
        )
        logger.debug(f"AsyncHTTPClient for {service} initialized: {self.base_url}")

    async def post(self, endpoint: str, json_data: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """
        POST ``json_data`` to ``endpoint``.

        Raises:
            APIHTTPError: the service answered with a 4xx/5xx status.
            APIRequestError: the request failed before a response arrived.
        """
        url = f"/{endpoint.lstrip('/')}"
        try:
            response = await self.client.post(url, json=json_data)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            # body only; request headers carry the credential
            logger.error(f"{self.service} HTTP {e.response.status_code} for {url}: {e.response.text[:200]}")
            raise APIHTTPError(
                e.response.status_code, e.response.text, retry_after=_retry_after(e.response)
            ) from e
        except httpx.RequestError as e:
            logger.error(f"{self.service} request error for {url}: {e.__class__.__name__}")
            raise APIRequestError(f"{e.__class__.__name__} while calling {url}") from e
        logger.debug(f"{self.service} POST {url} -> {response.status_code}")
        return response

    async def post_json(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST ``payload`` and return the decoded JSON object.

        Raises:
            AuthenticationError: HTTP 401/403.
            RateLimitError: HTTP 429.
            MalformedResponseError: the body is not a JSON object.
            ExternalApiError: any other HTTP or transport failure.
        """
        try:
            response = await self.post(endpoint, json_data=payload)
        except BaseAPIClientError as e:
            raise translate_client_error(self.service, e) from e
        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"{self.service} response was not valid JSON") from e
        if not isinstance(body, dict):
            raise MalformedResponseError(f"{self.service} response was not a JSON object")
        return body

    async def close(self):
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
