"""
Stateful orchestrator of the nine-stage reasoning pipeline.

The engine owns the committed research graph and research context. Each
``execute_stage`` call runs one stage against a deep copy of that state and
commits the copy only when the stage finishes and the graph validates, so a
failing stage never leaves partial mutations behind.
"""

import datetime
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger  # type: ignore

from ...config import EngineSettings
from ...services.api_clients.sonar_client import SonarSearchClient
from ...services.call_router import ExternalCallRouter
from ...services.cost_guardrail import CostGuardrail
from ...services.llm import GeminiReasoningClient
from ...services.task_queue import BackgroundTaskQueue
from ..interfaces.evidence_provider import EvidenceProvider
from ..interfaces.reasoning_provider import ReasoningProvider
from ..models.common_types import (
    ApiCredentials,
    ResearchContext,
    StageExecutionContext,
    StageResult,
    StageStatus,
    TokenUsage,
)
from ..models.graph_elements import ResearchGraph
from ..stages import STAGE_CLASSES, BaseStage, StageOutput, StageState
from ..utils.response_parser import sanitize_text
from .exceptions import (
    CostLimitExceeded,
    CredentialError,
    PipelineError,
    StageExecutionError,
    StageOrderError,
    ValidationError,
)

FIRST_STAGE = 1
LAST_STAGE = len(STAGE_CLASSES)


class StageEngine:
    """
    Executes pipeline stages in strict order against one research graph.

    Re-running a completed stage N restores the state that existed before N
    first ran and invalidates every stage after N. Re-running stage 1 starts
    a new graph and research context.
    """

    def __init__(
        self,
        credentials: ApiCredentials,
        settings: Optional[EngineSettings] = None,
        guardrail: Optional[CostGuardrail] = None,
        queue: Optional[BackgroundTaskQueue] = None,
        reasoning_provider: Optional[ReasoningProvider] = None,
        search_provider: Optional[EvidenceProvider] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self._credentials = credentials
        self.settings = settings or EngineSettings()
        self.guardrail = guardrail or CostGuardrail(self.settings.guardrail)
        self._owns_queue = queue is None
        self.queue = queue or BackgroundTaskQueue(
            max_concurrent=self.settings.queue.max_concurrent,
            max_queue_size=self.settings.queue.max_queue_size,
            result_retention_seconds=self.settings.queue.result_retention_seconds,
        )
        self._reasoning_provider = reasoning_provider
        self._search_provider = search_provider
        self._owned_clients: List[Any] = []
        self._router: Optional[ExternalCallRouter] = None
        self._stages: Dict[int, BaseStage] = {}
        self.session_id = session_id or uuid.uuid4().hex[:12]

        self._graph = ResearchGraph()
        self._context = ResearchContext()
        self._baselines: Dict[int, Tuple[ResearchGraph, ResearchContext]] = {}
        self._results: Dict[int, StageResult] = {}
        self._stage_contexts: List[StageExecutionContext] = []
        logger.info(f"[Session: {self.session_id}] StageEngine initialized")

    async def __aenter__(self) -> "StageEngine":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Stop the owned task queue and close HTTP clients the engine created."""
        if self._owns_queue:
            await self.queue.close()
        for client in self._owned_clients:
            await client.close()
        self._owned_clients = []
        logger.info(f"[Session: {self.session_id}] StageEngine closed")

    # -- validation --
    @staticmethod
    def _validate_inputs(stage_number: Any, query: Any) -> None:
        if isinstance(stage_number, bool) or not isinstance(stage_number, int):
            raise ValidationError(f"Stage number must be an integer, got {type(stage_number).__name__}")
        if not FIRST_STAGE <= stage_number <= LAST_STAGE:
            raise ValidationError(
                f"Stage number must be between {FIRST_STAGE} and {LAST_STAGE}, got {stage_number}"
            )
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Query must be a non-empty string")

    def _validate_credentials(self) -> None:
        key = self._credentials.reasoning_api_key if self._credentials else None
        if key is None:
            raise CredentialError("Reasoning service credential is missing")
        value = key.get_secret_value()
        if not value.strip() or any(ch.isspace() for ch in value):
            raise CredentialError("Reasoning service credential is malformed")

    def _validate_order(self, stage_number: int) -> None:
        missing = [s for s in range(FIRST_STAGE, stage_number) if s not in self._results]
        if missing:
            raise StageOrderError(stage_number, missing)

    # -- collaborators --
    def _get_router(self) -> ExternalCallRouter:
        if self._router is not None:
            return self._router
        if self._reasoning_provider is None:
            client = GeminiReasoningClient(self._credentials.reasoning_api_key, self.settings.reasoning)
            self._owned_clients.append(client)
            self._reasoning_provider = client
        if self._search_provider is None and self._credentials.has_search:
            client = SonarSearchClient(self._credentials.search_api_key, self.settings.search)
            self._owned_clients.append(client)
            self._search_provider = client
        if self._search_provider is None:
            logger.info("No search credential configured; evidence search uses the reasoning service")
        self._router = ExternalCallRouter(
            queue=self.queue,
            guardrail=self.guardrail,
            reasoning=self._reasoning_provider,
            search=self._search_provider,
            params=self.settings.pipeline,
        )
        return self._router

    def _get_stage(self, stage_number: int) -> BaseStage:
        if stage_number not in self._stages:
            stage_cls = STAGE_CLASSES[stage_number - 1]
            self._stages[stage_number] = stage_cls(settings=self.settings, router=self._get_router())
        return self._stages[stage_number]

    def _base_state(self, stage_number: int) -> Tuple[ResearchGraph, ResearchContext]:
        if stage_number == FIRST_STAGE:
            return ResearchGraph(), ResearchContext()
        if stage_number in self._baselines:
            return self._baselines[stage_number]
        return self._graph, self._context

    # -- execution --
    async def execute_stage(self, stage_number: int, query: str) -> StageResult:
        """
        Execute one stage and commit its graph mutations.

        Raises:
            ValidationError: bad stage number or empty query.
            StageOrderError: an earlier stage has not completed.
            CredentialError: the reasoning credential is missing or malformed.
            CostLimitExceeded: the guardrail refused a call and the stage has
                no fallback heuristic.
            PipelineError: any typed failure raised by the stage or its calls.
            StageExecutionError: an unexpected error, wrapped with the stage name.
        """
        self._validate_inputs(stage_number, query)
        self._validate_credentials()
        self._validate_order(stage_number)

        stage = self._get_stage(stage_number)
        router = self._get_router()
        base_graph, base_context = self._base_state(stage_number)
        audit = StageExecutionContext(
            stage_id=stage_number, stage_name=stage.stage_name, input_query=query
        )
        router.begin_stage(stage_number)
        started = time.perf_counter()
        state = self._working_state(query, base_graph, base_context)

        try:
            if self.guardrail.fallback_mode:
                logger.warning(
                    f"[Session: {self.session_id}] Guardrail in fallback mode; "
                    f"running heuristic for {stage.stage_name}"
                )
                output = self._run_fallback(
                    stage,
                    state,
                    CostLimitExceeded("reasoning", self.guardrail.fallback_reason or "fallback mode active"),
                )
            else:
                try:
                    output = await stage.execute(state)
                except CostLimitExceeded as e:
                    logger.warning(
                        f"[Session: {self.session_id}] {stage.stage_name} hit the cost guardrail: {e}"
                    )
                    state = self._working_state(query, base_graph, base_context)
                    output = self._run_fallback(stage, state, e)
            state.graph.refresh_metadata(stage_number)
            state.graph.validate_consistency()
        except PipelineError as e:
            self._record_failure(audit, e)
            raise
        except Exception as e:
            self._record_failure(audit, e)
            raise StageExecutionError(
                stage.stage_name, e, {"stage": stage_number, "session_id": self.session_id}
            ) from e

        self._commit(stage_number, state, base_graph, base_context)
        result = self._build_result(stage_number, output, started)
        self._results[stage_number] = result

        stats = router.stage_stats(stage_number)
        audit.api_calls_made = stats.api_calls
        audit.tokens_consumed = stats.total_tokens
        audit.confidence_achieved = result.metadata["confidence_score"]
        audit.status = StageStatus.FALLBACK if output.fallback_used else StageStatus.COMPLETED
        audit.output_summary = output.summary
        audit.finished_at = result.timestamp
        self._stage_contexts.append(audit)
        return result.model_copy(deep=True)

    def _working_state(
        self, query: str, graph: ResearchGraph, context: ResearchContext
    ) -> StageState:
        return StageState(
            session_id=self.session_id,
            query=query,
            graph=graph.snapshot(),
            research_context=context.model_copy(deep=True),
        )

    def _run_fallback(self, stage: BaseStage, state: StageState, cause: CostLimitExceeded) -> StageOutput:
        try:
            output = stage.fallback(state)
        except NotImplementedError:
            raise cause from None
        output.fallback_used = True
        return output

    def _record_failure(self, audit: StageExecutionContext, error: BaseException) -> None:
        audit.status = StageStatus.FAILED
        audit.error_message = f"{type(error).__name__}: {error}"
        stats = self._get_router().stage_stats(audit.stage_id)
        audit.api_calls_made = stats.api_calls
        audit.tokens_consumed = stats.total_tokens
        audit.finished_at = datetime.datetime.now(datetime.timezone.utc)
        self._stage_contexts.append(audit)
        logger.error(
            f"[Session: {self.session_id}] Stage {audit.stage_id} ({audit.stage_name}) failed: "
            f"{audit.error_message}"
        )

    def _commit(
        self,
        stage_number: int,
        state: StageState,
        base_graph: ResearchGraph,
        base_context: ResearchContext,
    ) -> None:
        self._baselines[stage_number] = (base_graph, base_context)
        for later in [s for s in self._results if s >= stage_number]:
            del self._results[later]
        for later in [s for s in self._baselines if s > stage_number]:
            del self._baselines[later]
        self._graph = state.graph
        self._context = state.research_context

    def _build_result(self, stage_number: int, output: StageOutput, started: float) -> StageResult:
        stats = self._get_router().stage_stats(stage_number)
        graph = self._graph.snapshot()
        active = graph.active_nodes()
        confidence = (
            sum(n.confidence.average_confidence for n in active) / len(active) if active else 0.0
        )
        metadata: Dict[str, Any] = {
            "duration_ms": int((time.perf_counter() - started) * 1000),
            "token_usage": TokenUsage(input=stats.input_tokens, output=stats.output_tokens).as_dict(),
            "api_calls": stats.api_calls,
            "truncated_retries": stats.truncated_retries,
            "confidence_score": confidence,
            "fallback_used": output.fallback_used,
            "summary": output.summary,
        }
        if output.fallback_used:
            metadata["fallback_heuristic"] = self.guardrail.fallback_heuristic(stage_number)
        metadata.update(output.metrics)
        return StageResult(
            stage=stage_number,
            content=sanitize_text(output.content),
            nodes=list(graph.nodes.values()),
            edges=list(graph.edges),
            hyperedges=list(graph.hyperedges),
            status=StageStatus.COMPLETED,
            metadata=metadata,
        )

    async def run_pipeline(self, query: str, through_stage: int = LAST_STAGE) -> List[StageResult]:
        """Execute stages 1..``through_stage`` in order and return every result."""
        self._validate_inputs(through_stage, query)
        results = []
        for stage_number in range(FIRST_STAGE, through_stage + 1):
            results.append(await self.execute_stage(stage_number, query))
        return results

    # -- snapshots for collaborators --
    def get_graph_data(self) -> ResearchGraph:
        return self._graph.snapshot()

    def get_research_context(self) -> ResearchContext:
        return self._context.model_copy(deep=True)

    def get_stage_contexts(self) -> List[StageExecutionContext]:
        return [c.model_copy(deep=True) for c in self._stage_contexts]

    def get_stage_result(self, stage_number: int) -> Optional[StageResult]:
        result = self._results.get(stage_number)
        return result.model_copy(deep=True) if result else None

    @property
    def completed_stages(self) -> List[int]:
        return sorted(self._results)
