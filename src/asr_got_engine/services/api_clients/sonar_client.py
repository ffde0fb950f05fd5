from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import SecretStr

from ...config import SearchServiceSettings
from ...domain.interfaces.evidence_provider import SearchRequest, SearchResult
from ...domain.models.graph_elements import SourceReference
from ...domain.services.exceptions import CredentialError, MalformedResponseError
from .base_client import AsyncHTTPClient


class SonarSearchClient:
    """Evidence provider backed by the Perplexity Sonar chat-completions API."""

    def __init__(
        self,
        api_key: SecretStr,
        config: Optional[SearchServiceSettings] = None,
        http_client: Optional[AsyncHTTPClient] = None,
    ) -> None:
        if api_key is None or not api_key.get_secret_value().strip():
            raise CredentialError("Search service API key is not configured")
        self.config = config or SearchServiceSettings()
        self.http_client = http_client or AsyncHTTPClient(
            "search service",
            base_url=self.config.base_url,
            default_headers={"Authorization": f"Bearer {api_key.get_secret_value()}"},
            timeout=self.config.timeout_seconds,
        )
        logger.info(f"SonarSearchClient initialized for base URL: {self.config.base_url}")

    async def close(self) -> None:
        await self.http_client.close()

    async def __aenter__(self) -> "SonarSearchClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _build_payload(self, request: SearchRequest) -> Dict[str, Any]:
        system = "Return peer-reviewed scientific evidence with citations."
        if request.focus:
            system += f" Focus on the field of {request.focus}."
        payload: Dict[str, Any] = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": request.query.strip()},
            ],
        }
        if request.recent_only:
            payload["search_recency_filter"] = "year"
        return payload

    @staticmethod
    def _parse_sources(body: Dict[str, Any]) -> List[SourceReference]:
        sources: List[SourceReference] = []
        for result in body.get("search_results") or []:
            if isinstance(result, dict) and result.get("url"):
                sources.append(SourceReference(url=result["url"], title=result.get("title") or ""))
        if not sources:
            for url in body.get("citations") or []:
                if isinstance(url, str) and url:
                    sources.append(SourceReference(url=url))
        return sources

    async def search(self, request: SearchRequest) -> SearchResult:
        logger.debug(f"Searching Sonar for query: '{request.query[:80]}'")
        body = await self.http_client.post_json("/chat/completions", self._build_payload(request))
        try:
            text = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise MalformedResponseError("Search response did not contain a message") from e
        usage = body.get("usage") or {}
        return SearchResult(
            text=text or "",
            sources=self._parse_sources(body),
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
        )
