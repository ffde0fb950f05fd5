import threading
import time
from collections import defaultdict
from typing import Callable, DefaultDict, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field

REASONING = "reasoning"
SEARCH = "search"
SERVICES = (REASONING, SEARCH)

RESET_INTERVAL_SECONDS = 24 * 60 * 60

STAGE_FALLBACK_HEURISTICS: Dict[int, str] = {
    1: "Template-based initialization with the query as the research topic",
    2: "Standard dimension set without reasoning-service elaboration",
    3: "Predefined hypothesis patterns per dimension",
    4: "Evidence synthesized from hypothesis metadata, no external search",
    5: "Rule-based pruning and merging (no external calls)",
    6: "Graph-algorithm subgraph extraction (no external calls)",
    7: "Template composition from the accumulated graph",
    8: "Standard reflection checklist run locally",
    9: "Final analysis assembled from accumulated stage data",
}


class GuardrailLimits(BaseModel):
    """Ceilings enforced by the cost guardrail. Zero means always refuse."""

    max_daily_cost: float = 50.0
    max_reasoning_calls: int = 1000
    max_search_calls: int = 500
    max_reasoning_tokens: int = 1_000_000
    max_search_tokens: int = 100_000
    warning_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    reasoning_cost_per_token: float = 0.000002
    search_cost_per_call: float = 0.005


class UsageSnapshot(BaseModel):
    calls: Dict[str, int]
    tokens: Dict[str, int]
    total_cost: float
    last_reset: float
    fallback_mode: bool
    fallback_reason: Optional[str] = None


class GuardrailEvent(BaseModel):
    kind: str  # "warning" | "limit_exceeded" | "reset"
    metric: str = ""
    message: str = ""
    usage_percentage: float = 0.0


Listener = Callable[[GuardrailEvent], None]


class CostGuardrail:
    """
    Per-service call/token counters plus a shared cost accumulator.

    Admission is checked with ``can_make_call`` before a call is submitted and
    usage is recorded with ``record_usage`` after it returns. Counters are
    guarded by a lock so concurrent workers never lose an update.
    """

    def __init__(
        self,
        limits: Optional[GuardrailLimits] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._limits = limits or GuardrailLimits()
        self._clock = clock
        self._lock = threading.Lock()
        self._calls: DefaultDict[str, int] = defaultdict(int)
        self._tokens: DefaultDict[str, int] = defaultdict(int)
        self._total_cost = 0.0
        self._last_reset = clock()
        self._fallback_mode = False
        self._fallback_reason: Optional[str] = None
        self._warned: set[str] = set()
        self._listeners: List[Listener] = []

    # -- limits --
    def get_limits(self) -> GuardrailLimits:
        return self._limits.model_copy()

    def update_limits(self, **changes) -> GuardrailLimits:
        with self._lock:
            self._limits = self._limits.model_copy(update=changes)
            logger.info(f"Cost guardrail limits updated: {sorted(changes)}")
            return self._limits.model_copy()

    def _call_ceiling(self, service: str) -> int:
        return (
            self._limits.max_reasoning_calls
            if service == REASONING
            else self._limits.max_search_calls
        )

    def _token_ceiling(self, service: str) -> int:
        return (
            self._limits.max_reasoning_tokens
            if service == REASONING
            else self._limits.max_search_tokens
        )

    def estimate_cost(self, service: str, tokens: int) -> float:
        if service == REASONING:
            return tokens * self._limits.reasoning_cost_per_token
        return self._limits.search_cost_per_call

    @staticmethod
    def _check_service(service: str) -> None:
        if service not in SERVICES:
            raise ValueError(f"Unknown service '{service}', expected one of {SERVICES}")

    # -- admission --
    def can_make_call(self, service: str, estimated_tokens: int = 0) -> bool:
        """
        Return True if a call of ``estimated_tokens`` fits within every ceiling.

        A refusal switches the guardrail into fallback mode and notifies
        listeners. Nothing is charged here.
        """
        self._check_service(service)
        events: List[GuardrailEvent] = []
        with self._lock:
            self._maybe_reset_locked(events)
            reason = None
            projected_cost = self._total_cost + self.estimate_cost(service, estimated_tokens)
            if self._limits.max_daily_cost <= 0 or projected_cost > self._limits.max_daily_cost:
                reason = (
                    f"daily cost ceiling reached "
                    f"({projected_cost:.4f}/{self._limits.max_daily_cost:.2f})"
                )
            elif self._calls[service] + 1 > self._call_ceiling(service):
                reason = f"{service} call ceiling reached ({self._call_ceiling(service)})"
            elif (
                self._token_ceiling(service) <= 0
                or self._tokens[service] + estimated_tokens > self._token_ceiling(service)
            ):
                reason = f"{service} token ceiling reached ({self._token_ceiling(service)})"
            if reason is not None:
                self._fallback_mode = True
                self._fallback_reason = reason
                events.append(
                    GuardrailEvent(kind="limit_exceeded", metric=service, message=reason, usage_percentage=1.0)
                )
        self._emit(events)
        return reason is None

    def record_usage(self, service: str, tokens: int) -> float:
        """Atomically add one call and ``tokens`` to ``service``. Returns the cost charged."""
        self._check_service(service)
        events: List[GuardrailEvent] = []
        with self._lock:
            self._maybe_reset_locked(events)
            cost = self.estimate_cost(service, tokens)
            self._calls[service] += 1
            self._tokens[service] += max(0, tokens)
            self._total_cost += cost
            events.extend(self._threshold_events_locked(service))
        self._emit(events)
        return cost

    def _threshold_events_locked(self, service: str) -> List[GuardrailEvent]:
        events = []
        checks = {
            "cost": (self._total_cost, self._limits.max_daily_cost),
            f"{service}_calls": (self._calls[service], self._call_ceiling(service)),
            f"{service}_tokens": (self._tokens[service], self._token_ceiling(service)),
        }
        for metric, (used, ceiling) in checks.items():
            if ceiling <= 0 or metric in self._warned:
                continue
            ratio = used / ceiling
            if ratio >= self._limits.warning_threshold:
                self._warned.add(metric)
                events.append(
                    GuardrailEvent(
                        kind="warning",
                        metric=metric,
                        message=f"{metric} at {ratio:.0%} of its limit",
                        usage_percentage=ratio,
                    )
                )
        return events

    # -- reset --
    def _maybe_reset_locked(self, events: List[GuardrailEvent]) -> None:
        if self._clock() - self._last_reset >= RESET_INTERVAL_SECONDS:
            self._reset_locked()
            events.append(GuardrailEvent(kind="reset", message="Daily usage window elapsed"))

    def _reset_locked(self) -> None:
        self._calls.clear()
        self._tokens.clear()
        self._total_cost = 0.0
        self._warned.clear()
        self._last_reset = self._clock()
        self._fallback_mode = False
        self._fallback_reason = None

    def reset_usage(self) -> None:
        with self._lock:
            self._reset_locked()
        self._emit([GuardrailEvent(kind="reset", message="Usage reset manually")])

    def refresh(self) -> None:
        """Apply the daily reset if the usage window has elapsed."""
        events: List[GuardrailEvent] = []
        with self._lock:
            self._maybe_reset_locked(events)
        self._emit(events)

    # -- introspection --
    @property
    def fallback_mode(self) -> bool:
        self.refresh()
        with self._lock:
            return self._fallback_mode

    @property
    def fallback_reason(self) -> Optional[str]:
        self.refresh()
        with self._lock:
            return self._fallback_reason

    def get_usage(self) -> UsageSnapshot:
        self.refresh()
        with self._lock:
            return UsageSnapshot(
                calls={s: self._calls[s] for s in SERVICES},
                tokens={s: self._tokens[s] for s in SERVICES},
                total_cost=self._total_cost,
                last_reset=self._last_reset,
                fallback_mode=self._fallback_mode,
                fallback_reason=self._fallback_reason,
            )

    def usage_percentage(self, metric: str) -> float:
        """Usage of ``cost`` or ``<service>_calls`` / ``<service>_tokens`` as a 0..1 ratio."""
        with self._lock:
            if metric == "cost":
                used, ceiling = self._total_cost, self._limits.max_daily_cost
            else:
                service, _, kind = metric.partition("_")
                self._check_service(service)
                if kind == "calls":
                    used, ceiling = self._calls[service], self._call_ceiling(service)
                elif kind == "tokens":
                    used, ceiling = self._tokens[service], self._token_ceiling(service)
                else:
                    raise ValueError(f"Unknown usage metric '{metric}'")
        return 1.0 if ceiling <= 0 else used / ceiling

    @staticmethod
    def fallback_heuristic(stage: int) -> str:
        return STAGE_FALLBACK_HEURISTICS.get(stage, "No fallback heuristic defined")

    # -- notifications --
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, events: List[GuardrailEvent]) -> None:
        for event in events:
            if event.kind == "limit_exceeded":
                logger.warning(f"Cost guardrail entering fallback mode: {event.message}")
            elif event.kind == "warning":
                logger.warning(f"Cost guardrail warning: {event.message}")
            else:
                logger.info(f"Cost guardrail reset: {event.message}")
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception as e:
                    logger.error(f"Cost guardrail listener failed: {e}")
