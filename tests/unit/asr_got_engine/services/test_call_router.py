import asyncio

import pytest

from asr_got_engine.config import PipelineParams
from asr_got_engine.domain.interfaces.reasoning_provider import (
    ReasoningCapability,
    ReasoningRequest,
    ReasoningResponse,
)
from asr_got_engine.domain.services.exceptions import (
    AuthenticationError,
    CallTimeoutError,
    CostLimitExceeded,
    ExternalApiError,
    ResponseTruncated,
)
from asr_got_engine.services.call_router import TRUNCATION_NOTICE, ExternalCallRouter
from asr_got_engine.services.cost_guardrail import REASONING, SEARCH, CostGuardrail, GuardrailLimits


def _response(text: str, finish_reason: str = "stop") -> ReasoningResponse:
    return ReasoningResponse(text=text, finish_reason=finish_reason, input_tokens=10, output_tokens=20)


class SlowReasoningProvider:
    async def generate(self, request: ReasoningRequest) -> ReasoningResponse:
        await asyncio.sleep(5)
        return _response("too late")


# --- Test Fixtures ---
@pytest.fixture
def make_router(task_queue, guardrail):
    """Build a router on the shared queue with a chosen reasoning provider."""

    def _make(reasoning, search=None, guardrail_override=None, params=None):
        router = ExternalCallRouter(
            queue=task_queue,
            guardrail=guardrail_override or guardrail,
            reasoning=reasoning,
            search=search,
            params=params or PipelineParams(default_max_tokens=100, call_timeout_seconds=2),
        )
        router.begin_stage(3)
        return router

    return _make


async def test_plain_call_records_usage(make_router, scripted_reasoning, guardrail):
    provider = scripted_reasoning([_response("ok")])
    router = make_router(provider)

    response = await router.reason("prompt text")

    assert response.text == "ok"
    stats = router.stage_stats()
    assert (stats.api_calls, stats.input_tokens, stats.output_tokens) == (1, 10, 20)
    assert guardrail.get_usage().calls[REASONING] == 1
    assert guardrail.get_usage().tokens[REASONING] == 30


async def test_truncated_response_is_retried_with_larger_budget(make_router, scripted_reasoning):
    provider = scripted_reasoning([_response("partial", "length"), _response("complete")])
    router = make_router(provider)

    response = await router.reason("prompt", max_tokens=100)

    assert response.text == "complete"
    assert [r.max_tokens for r in provider.requests] == [100, 200]
    assert router.stage_stats().truncated_retries == 1
    assert router.stage_stats().api_calls == 2


async def test_truncated_twice_is_accepted_with_notice(make_router, scripted_reasoning):
    provider = scripted_reasoning([_response("partial", "MAX_TOKENS"), _response("longer partial", "length")])
    router = make_router(provider)

    response = await router.reason("prompt")

    assert response.text == "longer partial" + TRUNCATION_NOTICE
    assert len(provider.requests) == 2


async def test_truncation_exception_is_treated_as_partial(make_router, scripted_reasoning):
    provider = scripted_reasoning([ResponseTruncated("cut off"), _response("full answer")])
    router = make_router(provider)

    response = await router.reason("prompt")

    assert response.text == "full answer"
    assert router.stage_stats().truncated_retries == 1


async def test_guardrail_refusal_skips_provider(make_router, scripted_reasoning):
    provider = scripted_reasoning()
    blocked = CostGuardrail(GuardrailLimits(max_daily_cost=0))
    router = make_router(provider, guardrail_override=blocked)

    with pytest.raises(CostLimitExceeded) as exc_info:
        await router.reason("prompt")

    assert exc_info.value.service == REASONING
    assert provider.requests == []
    assert blocked.fallback_mode


async def test_timeout_surfaces_as_call_timeout(make_router):
    router = make_router(SlowReasoningProvider(), params=PipelineParams(call_timeout_seconds=0.05))
    with pytest.raises(CallTimeoutError):
        await router.reason("prompt")


async def test_stage_specific_timeout_is_used(make_router):
    params = PipelineParams(call_timeout_seconds=10, stage_call_timeouts={3: 0.05})
    router = make_router(SlowReasoningProvider(), params=params)
    with pytest.raises(CallTimeoutError):
        await router.reason("prompt")


async def test_typed_errors_are_reraised_unchanged(make_router, scripted_reasoning):
    router = make_router(scripted_reasoning([AuthenticationError("bad key")]))
    with pytest.raises(AuthenticationError):
        await router.reason("prompt")


async def test_unexpected_errors_become_external_api_errors(make_router, scripted_reasoning):
    router = make_router(scripted_reasoning([RuntimeError("socket closed")]))
    with pytest.raises(ExternalApiError, match="socket closed"):
        await router.reason("prompt")


async def test_search_uses_search_provider(make_router, scripted_reasoning, search_provider, guardrail):
    router = make_router(scripted_reasoning(), search=search_provider)

    result = await router.search("checkpoint inhibitors", focus="Immunology", recent_only=True)

    assert len(result.sources) == 2
    request = search_provider.requests[0]
    assert (request.focus, request.recent_only) == ("Immunology", True)
    assert guardrail.get_usage().calls[SEARCH] == 1


async def test_search_falls_back_to_reasoning_search_mode(make_router, scripted_reasoning, guardrail):
    provider = scripted_reasoning()
    router = make_router(provider)

    result = await router.search("checkpoint inhibitors")

    assert provider.requests[0].capability == ReasoningCapability.THINKING_SEARCH
    assert [s.url for s in result.sources] == ["https://example.org/trial-1"]
    assert guardrail.get_usage().calls[SEARCH] == 0
    assert guardrail.get_usage().calls[REASONING] == 1


async def test_stats_are_kept_per_stage(make_router, scripted_reasoning):
    router = make_router(scripted_reasoning([_response("a"), _response("b")]))
    await router.reason("first")
    router.begin_stage(4)
    await router.reason("second")

    assert router.stage_stats(3).api_calls == 1
    assert router.stage_stats(4).api_calls == 1
