import json

from loguru import logger

from ..interfaces.reasoning_provider import ReasoningCapability
from ..models.common import EpistemicStatus
from ..models.graph_elements import Node, NodeType, RootMetadata
from ..utils.metadata_helpers import normalize_tags
from ..utils.response_parser import TaskUnderstanding, sanitize_text
from .base_stage import BaseStage, StageOutput, StageState

ROOT_NODE_ID = "n0_root"

TASK_UNDERSTANDING_SCHEMA = {
    "type": "object",
    "properties": {
        "primary_field": {"type": "string"},
        "secondary_fields": {"type": "array", "items": {"type": "string"}},
        "objectives": {"type": "array", "items": {"type": "string"}},
        "interdisciplinary_connections": {"type": "array", "items": {"type": "string"}},
        "constraints": {"type": "array", "items": {"type": "string"}},
        "initial_scope": {"type": "string"},
    },
    "required": ["primary_field", "objectives"],
}


class InitializationStage(BaseStage):
    stage_name: str = "InitializationStage"
    stage_number: int = 1

    def _prompt(self, query: str) -> str:
        return (
            "You are initializing a graph-of-thoughts research analysis.\n"
            f"Research question: {query}\n\n"
            "Identify the primary scientific field, secondary fields, concrete research "
            "objectives, interdisciplinary connections, constraints and the initial scope. "
            "Respond with a JSON object with the keys: primary_field, secondary_fields, "
            "objectives, interdisciplinary_connections, constraints, initial_scope."
        )

    async def execute(self, state: StageState) -> StageOutput:
        self._log_start(state.session_id)
        response = await self.router.reason(
            self._prompt(state.query),
            capability=ReasoningCapability.THINKING_STRUCTURED,
            output_schema=TASK_UNDERSTANDING_SCHEMA,
            name="stage1-task-understanding",
        )
        raw = json.dumps(response.structured) if isinstance(response.structured, dict) else response.text
        understanding = self.parser.parse_task_understanding(raw)
        if not understanding.structured:
            logger.warning("Task understanding was not structured JSON; used the fallback grammar")
        output = self._build(state, understanding, sanitize_text(response.text))
        self._log_end(state.session_id, output)
        return output

    def fallback(self, state: StageState) -> StageOutput:
        self._log_start(state.session_id)
        understanding = self.parser.parse_task_understanding(state.query)
        content = (
            f"Task understanding (template): {sanitize_text(state.query)}\n"
            f"Field: {understanding.primary_field}\n"
            f"Objectives: {', '.join(understanding.objectives)}"
        )
        output = self._build(state, understanding, content)
        output.fallback_used = True
        self._log_end(state.session_id, output)
        return output

    def _build(self, state: StageState, understanding: TaskUnderstanding, content: str) -> StageOutput:
        ctx = state.research_context
        field = sanitize_text(understanding.primary_field) or "General Science"
        ctx.field = field
        ctx.topic = sanitize_text(state.query)
        ctx.extend("objectives", [sanitize_text(o) for o in understanding.objectives])
        ctx.extend("constraints", [sanitize_text(c) for c in understanding.constraints])

        secondary = [sanitize_text(f) for f in understanding.secondary_fields]
        root = Node(
            id=ROOT_NODE_ID,
            label="Task Understanding",
            type=NodeType.ROOT,
            confidence=self._vector(self.params.root_confidence),
            metadata=RootMetadata(
                description=ctx.topic,
                source_description="Initial research question",
                epistemic_status=EpistemicStatus.ASSUMPTION,
                disciplinary_tags=normalize_tags([field, *secondary]),
                impact_score=1.0,
                primary_field=field,
                secondary_fields=secondary,
                initial_scope=sanitize_text(understanding.initial_scope),
            ),
        )
        self._add_node(state, root)
        return StageOutput(
            summary=f"Initialized research graph in field '{field}'",
            content=content,
            metrics={
                "field": field,
                "objectives_count": len(ctx.objectives),
                "constraints_count": len(ctx.constraints),
                "interdisciplinary_connections": understanding.interdisciplinary_connections,
                "structured_response": understanding.structured,
            },
        )
