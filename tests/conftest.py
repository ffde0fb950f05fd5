"""Shared fixtures and scripted fakes for the test suite."""

import json
from typing import List, Optional, Sequence, Union

import pytest
from pydantic import SecretStr

from asr_got_engine.config import EngineSettings, PipelineParams
from asr_got_engine.domain.interfaces.evidence_provider import SearchRequest, SearchResult
from asr_got_engine.domain.interfaces.reasoning_provider import (
    ReasoningRequest,
    ReasoningResponse,
)
from asr_got_engine.domain.models.common_types import ApiCredentials
from asr_got_engine.domain.models.graph_elements import SourceReference
from asr_got_engine.domain.services.stage_engine import StageEngine
from asr_got_engine.services.cost_guardrail import CostGuardrail
from asr_got_engine.services.task_queue import BackgroundTaskQueue

MELANOMA_QUERY = "What is melanoma immunotherapy?"

# Distinct vocabularies keep generated hypotheses from being merged in stage 5.
_HYPOTHESIS_THEMES = [
    ("checkpoint blockade", "extends overall survival in advanced melanoma patients"),
    ("tumour mutational burden", "predicts durable responses to PD-1 antibodies"),
    ("gut microbiome composition", "modulates systemic antitumour immunity"),
    ("adoptive T-cell transfer", "overcomes resistance after BRAF inhibitor failure"),
]

SYNTHESIS_TEXT = (
    "Checkpoint inhibitors reshaped melanoma care [1]. Response durability depends on "
    "tumour biology and host factors [2]. Combination regimens raise toxicity [1]."
)

FINAL_TEXT = (
    "Melanoma immunotherapy is supported by strong trial evidence.\n"
    "Recommendation: Validate microbiome biomarkers prospectively\n"
    "Recommendation: Standardise toxicity reporting across trials"
)


def _reply(text: str, finish_reason: str = "stop", structured=None) -> ReasoningResponse:
    return ReasoningResponse(
        text=text,
        finish_reason=finish_reason,
        structured=structured,
        input_tokens=120,
        output_tokens=80,
    )


class FakeReasoningProvider:
    """
    Scripted reasoning provider.

    Responses queued with ``responses`` are returned first (exceptions are
    raised); afterwards a canned reply is chosen from the prompt wording.
    """

    def __init__(self, responses: Optional[Sequence[Union[ReasoningResponse, Exception]]] = None):
        self.requests: List[ReasoningRequest] = []
        self._scripted = list(responses or [])
        self._hypothesis_calls = 0

    def enqueue(self, *responses: Union[ReasoningResponse, Exception]) -> None:
        """Script the next replies, e.g. once earlier stages have run."""
        self._scripted.extend(responses)

    async def generate(self, request: ReasoningRequest) -> ReasoningResponse:
        self.requests.append(request)
        if self._scripted:
            item = self._scripted.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return self._canned(request.prompt)

    def _canned(self, prompt: str) -> ReasoningResponse:
        if "initializing a graph-of-thoughts" in prompt:
            data = {
                "primary_field": "Immunology",
                "secondary_fields": ["Oncology"],
                "objectives": ["Summarise approved therapies", "Identify response biomarkers"],
                "constraints": ["Human studies only"],
                "initial_scope": "Cutaneous melanoma",
            }
            return _reply(json.dumps(data), structured=data)
        if "Decompose the task" in prompt:
            data = {"Scope": "Cutaneous and uveal melanoma", "Knowledge Gaps": "Biomarkers; Long-term toxicity"}
            return _reply(json.dumps(data), structured=data)
        if "falsifiable hypotheses" in prompt:
            self._hypothesis_calls += 1
            call = self._hypothesis_calls
            items = []
            for i, (subject, claim) in enumerate(_HYPOTHESIS_THEMES):
                items.append(
                    {
                        "statement": f"{subject} {claim} cohort{call}x{i} arm{call}x{i} site{call}x{i}",
                        "falsification_criteria": f"No difference observed for {subject}",
                        "testing_plan": f"{subject} melanoma",
                        "disciplines": ["immunology"],
                    }
                )
            data = {"hypotheses": items}
            return _reply(json.dumps(data), structured=data)
        if "Assess how this evidence bears" in prompt:
            data = {
                "edge_type": "supportive",
                "confidence": [0.8, 0.7, 0.7, 0.6],
                "evidence_quality": "high",
                "statistical_power": 0.8,
                "sample_size": 945,
                "study_design": "rct",
                "peer_reviewed": True,
                "disciplines": ["immunology"],
            }
            return _reply(json.dumps(data), structured=data)
        if "Search the scientific literature" in prompt:
            return _reply("A randomized controlled trial reported benefit https://example.org/trial-1")
        if "Critically review" in prompt:
            data = {
                "bias_flags": [{"bias_type": "publication bias", "description": "Positive trials dominate"}],
                "consistency_score": 0.8,
                "findings": ["Toxicity data are sparse"],
            }
            return _reply(json.dumps(data), structured=data)
        if "final analysis report" in prompt:
            return _reply(FINAL_TEXT)
        if "scientific synthesis" in prompt:
            return _reply(SYNTHESIS_TEXT)
        return _reply("Field: General Science\nObjectives: Comprehensive analysis")


class FakeSearchProvider:
    def __init__(self, sources_per_query: int = 2):
        self.requests: List[SearchRequest] = []
        self.sources_per_query = sources_per_query

    async def search(self, request: SearchRequest) -> SearchResult:
        self.requests.append(request)
        n = len(self.requests)
        return SearchResult(
            text=f"Randomized controlled trial evidence on {request.query}.",
            sources=[
                SourceReference(url=f"https://example.org/{n}/{i}", title=f"Trial report {n}.{i}")
                for i in range(self.sources_per_query)
            ],
            input_tokens=30,
            output_tokens=60,
        )


# --- Test Fixtures ---
@pytest.fixture
def query():
    return MELANOMA_QUERY


@pytest.fixture
def credentials():
    """Well-formed credentials for both external services."""
    return ApiCredentials(
        reasoning_api_key=SecretStr("test-reasoning-key"),
        search_api_key=SecretStr("test-search-key"),
    )


@pytest.fixture
def engine_settings():
    """Settings with a reduced pipeline so full runs stay small."""
    return EngineSettings(
        pipeline=PipelineParams(
            dimensions=["Scope", "Objectives", "Knowledge Gaps"],
            hypotheses_per_dimension=2,
            evidence_per_hypothesis=2,
            call_timeout_seconds=5.0,
        )
    )


@pytest.fixture
def reasoning_provider():
    return FakeReasoningProvider()


@pytest.fixture
def search_provider():
    return FakeSearchProvider()


@pytest.fixture
def guardrail():
    return CostGuardrail()


@pytest.fixture
async def task_queue():
    """A running queue, closed after the test."""
    queue = BackgroundTaskQueue(max_concurrent=3)
    await queue.start()
    yield queue
    await queue.close()


@pytest.fixture
async def engine(credentials, engine_settings, guardrail, reasoning_provider, search_provider):
    """StageEngine wired to the scripted fakes."""
    stage_engine = StageEngine(
        credentials=credentials,
        settings=engine_settings,
        guardrail=guardrail,
        reasoning_provider=reasoning_provider,
        search_provider=search_provider,
    )
    yield stage_engine
    await stage_engine.close()


@pytest.fixture
def scripted_reasoning():
    """Factory: ``scripted_reasoning([resp1, error, ...])`` replays those first."""
    return FakeReasoningProvider


@pytest.fixture
async def make_engine(credentials, engine_settings, search_provider):
    """Factory for engines with selected collaborators replaced."""
    created: List[StageEngine] = []

    def _make(
        reasoning: Optional[FakeReasoningProvider] = None,
        guardrail: Optional[CostGuardrail] = None,
        creds: Optional[ApiCredentials] = None,
        search: Optional[FakeSearchProvider] = None,
        settings: Optional[EngineSettings] = None,
    ) -> StageEngine:
        stage_engine = StageEngine(
            credentials=creds if creds is not None else credentials,
            settings=settings or engine_settings,
            guardrail=guardrail or CostGuardrail(),
            reasoning_provider=reasoning or FakeReasoningProvider(),
            search_provider=search or search_provider,
        )
        created.append(stage_engine)
        return stage_engine

    yield _make
    for stage_engine in created:
        await stage_engine.close()
