import re
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger
from pydantic import BaseModel

from ..config import PipelineParams
from ..domain.interfaces.evidence_provider import EvidenceProvider, SearchRequest, SearchResult
from ..domain.interfaces.reasoning_provider import (
    ReasoningCapability,
    ReasoningProvider,
    ReasoningRequest,
    ReasoningResponse,
    estimate_tokens,
)
from ..domain.models.graph_elements import SourceReference
from ..domain.services.exceptions import (
    CallTimeoutError,
    CostLimitExceeded,
    ExternalApiError,
    PipelineError,
    ResponseTruncated,
    TaskFailedError,
    TaskTimeoutError,
)
from .cost_guardrail import REASONING, SEARCH, CostGuardrail
from .task_queue import BackgroundTaskQueue, TaskPriority

TRUNCATION_NOTICE = "\n\n[Response truncated: the token limit was reached before completion.]"
_URL_RE = re.compile(r"https?://[^\s\)\]>\"']+")


class StageCallStats(BaseModel):
    api_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    truncated_retries: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ExternalCallRouter:
    """
    Routes every external call through guardrail admission and the task queue.

    Order per call: ``can_make_call`` (synchronous, before submission) ->
    ``queue.submit`` -> ``queue.poll_result`` with the stage timeout ->
    ``record_usage``. Errors raised inside the task surface as their original
    typed exception.
    """

    def __init__(
        self,
        queue: BackgroundTaskQueue,
        guardrail: CostGuardrail,
        reasoning: ReasoningProvider,
        search: Optional[EvidenceProvider] = None,
        params: Optional[PipelineParams] = None,
    ) -> None:
        self.queue = queue
        self.guardrail = guardrail
        self.reasoning_provider = reasoning
        self.search_provider = search
        self.params = params or PipelineParams()
        self._stage = 0
        self._stats: Dict[int, StageCallStats] = {}

    # -- per-stage accounting --
    def begin_stage(self, stage: int) -> None:
        self._stage = stage
        self._stats[stage] = StageCallStats()

    def stage_stats(self, stage: Optional[int] = None) -> StageCallStats:
        return self._stats.setdefault(self._stage if stage is None else stage, StageCallStats())

    # -- dispatch --
    async def _dispatch(
        self,
        service: str,
        estimated_tokens: int,
        factory: Callable[[], Awaitable[Any]],
        name: str,
        priority: TaskPriority = TaskPriority.HIGH,
    ) -> Any:
        if not self.guardrail.can_make_call(service, estimated_tokens):
            raise CostLimitExceeded(service, self.guardrail.fallback_reason or "limit reached")
        task_id = self.queue.submit(factory, priority=priority, name=name)
        timeout = self.params.timeout_for(self._stage)
        try:
            return await self.queue.poll_result(task_id, timeout=timeout)
        except TaskTimeoutError as e:
            raise CallTimeoutError(f"{service} call '{name}' timed out after {timeout}s") from e
        except TaskFailedError as e:
            original = e.original_error
            if isinstance(original, PipelineError):
                raise original from None
            raise ExternalApiError(f"{service} call '{name}' failed: {original}") from original

    def _record(self, service: str, input_tokens: int, output_tokens: int) -> None:
        self.guardrail.record_usage(service, input_tokens + output_tokens)
        stats = self.stage_stats()
        stats.api_calls += 1
        stats.input_tokens += input_tokens
        stats.output_tokens += output_tokens

    # -- reasoning --
    async def reason(
        self,
        prompt: str,
        capability: ReasoningCapability = ReasoningCapability.THINKING_ONLY,
        max_tokens: Optional[int] = None,
        output_schema: Optional[Dict[str, Any]] = None,
        name: str = "reasoning",
    ) -> ReasoningResponse:
        """
        Issue one reasoning call. A truncated response is retried once with a
        larger token budget; if the retry is also truncated it is accepted
        with ``TRUNCATION_NOTICE`` appended.
        """
        budget = max_tokens or self.params.default_max_tokens
        response = await self._reason_once(prompt, capability, budget, output_schema, name)
        if not response.truncated:
            return response

        retry_budget = budget * self.params.truncation_retry_multiplier
        logger.warning(f"Reasoning call '{name}' truncated at {budget} tokens, retrying with {retry_budget}")
        self.stage_stats().truncated_retries += 1
        retried = await self._reason_once(prompt, capability, retry_budget, output_schema, f"{name}-retry")
        if retried.truncated:
            logger.warning(f"Reasoning call '{name}' still truncated after retry; accepting partial response")
            retried = retried.model_copy(update={"text": retried.text + TRUNCATION_NOTICE})
        return retried

    async def _reason_once(
        self,
        prompt: str,
        capability: ReasoningCapability,
        max_tokens: int,
        output_schema: Optional[Dict[str, Any]],
        name: str,
    ) -> ReasoningResponse:
        request = ReasoningRequest(
            prompt=prompt,
            capability=capability,
            output_schema=output_schema,
            max_tokens=max_tokens,
        )
        try:
            response = await self._dispatch(
                REASONING,
                estimate_tokens(prompt) + max_tokens,
                lambda: self.reasoning_provider.generate(request),
                name,
            )
        except ResponseTruncated as e:
            response = self._partial_response(e.partial_response, prompt)
        self._record(REASONING, response.input_tokens, response.output_tokens)
        return response

    @staticmethod
    def _partial_response(partial: Any, prompt: str) -> ReasoningResponse:
        if isinstance(partial, ReasoningResponse):
            return partial.model_copy(update={"finish_reason": "length"})
        text = partial if isinstance(partial, str) else ""
        return ReasoningResponse(
            text=text,
            finish_reason="length",
            input_tokens=estimate_tokens(prompt),
            output_tokens=estimate_tokens(text) if text else 0,
        )

    # -- search --
    async def search(self, query: str, focus: str = "", recent_only: bool = False) -> SearchResult:
        """Search via the search service, or the reasoning service in search mode when none is configured."""
        if self.search_provider is None:
            response = await self.reason(
                f"Search the scientific literature and summarize the evidence, citing source URLs.\n"
                f"Field: {focus or 'general science'}\nQuery: {query}",
                capability=ReasoningCapability.THINKING_SEARCH,
                name="search-via-reasoning",
            )
            urls = list(dict.fromkeys(_URL_RE.findall(response.text)))
            return SearchResult(
                text=response.text,
                sources=[SourceReference(url=url) for url in urls],
                input_tokens=response.input_tokens,
                output_tokens=response.output_tokens,
            )

        request = SearchRequest(query=query, focus=focus, recent_only=recent_only)
        result = await self._dispatch(
            SEARCH,
            estimate_tokens(query),
            lambda: self.search_provider.search(request),
            "search",
        )
        self._record(SEARCH, result.input_tokens, result.output_tokens)
        return result
