"""
Parsing and sanitization of free-form reasoning output.

Every parser first looks for structured JSON (bare or inside a fenced
```json block) and falls back to a small ``Key: value`` grammar:

    Field: <primary field>
    Objectives: <item>, <item>; <item>
    Constraints: <item>, ...
    Hypothesis 1: <statement>
    Falsification 1: <criteria>
    Bias: <bias name> - <description>
    Consistency: <0..1>
    Recommendation: <text>
"""

import html
import json
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models.graph_elements import EdgeType, EvidenceQuality

DEFAULT_FIELD = "General Science"
DEFAULT_OBJECTIVE = "Comprehensive analysis"

_SCRIPT_RE = re.compile(r"<(script|style)[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"</?[a-zA-Z][^>]*>")
_JS_URI_RE = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_ATTR_RE = re.compile(r"\bon[a-z]+\s*=\s*(\"[^\"]*\"|'[^']*')", re.IGNORECASE)
_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{.*?\}|\[.*?\])\s*```", re.DOTALL)
_CITATION_RE = re.compile(r"\[(\d+)\]")
_FIELD_RE = re.compile(r"field[s]?[:\-]\s*([^\n\r,\.]+)", re.IGNORECASE)
_OBJECTIVES_RE = re.compile(r"(?:objective[s]?|obj|goals?)[:\-]\s*([^\n\r]+)", re.IGNORECASE)
_CONSTRAINTS_RE = re.compile(r"constraint[s]?[:\-]\s*([^\n\r]+)", re.IGNORECASE)
_SCOPE_RE = re.compile(r"scope[:\-]\s*([^\n\r]+)", re.IGNORECASE)
_BULLET_RE = re.compile(r"^[-•*]\s*")


def sanitize_text(text: Optional[str]) -> str:
    """Strip executable markup from externally sourced text."""
    if not text:
        return ""
    cleaned = _SCRIPT_RE.sub("", text)
    cleaned = _EVENT_ATTR_RE.sub("", cleaned)
    cleaned = _TAG_RE.sub("", cleaned)
    cleaned = _JS_URI_RE.sub("", cleaned)
    cleaned = html.unescape(cleaned)
    # unescaping can reintroduce markup
    cleaned = _SCRIPT_RE.sub("", cleaned)
    cleaned = _TAG_RE.sub("", cleaned)
    cleaned = _JS_URI_RE.sub("", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def extract_json(text: Optional[str]) -> Optional[Any]:
    """Return the first JSON object found in ``text``, or None."""
    if not text:
        return None
    candidates = [text.strip()]
    candidates.extend(m.group(1) for m in _FENCED_JSON_RE.finditer(text))
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
    return None


def split_items(raw: str) -> List[str]:
    if "," in raw:
        parts = raw.split(",")
    elif ";" in raw:
        parts = raw.split(";")
    else:
        parts = raw.split("\n")
    items = []
    for part in parts:
        item = _BULLET_RE.sub("", part.strip()).strip()
        if item:
            items.append(item)
    return items


def word_count(text: str) -> int:
    return len(text.split())


def citation_markers(text: str) -> List[int]:
    """Distinct ``[n]`` citation numbers in order of first appearance."""
    seen: List[int] = []
    for match in _CITATION_RE.finditer(text or ""):
        number = int(match.group(1))
        if number not in seen:
            seen.append(number)
    return seen


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return split_items(value)
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    return [str(value)]


def _clamped_float(value: Any, default: float) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return default


def _optional_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _safe_int(value: Any) -> int:
    try:
        return int(str(value).replace(",", "")) if value is not None else 0
    except (TypeError, ValueError):
        return 0


# --- Parsed shapes ---
class TaskUnderstanding(BaseModel):
    primary_field: str = DEFAULT_FIELD
    secondary_fields: List[str] = Field(default_factory=list)
    objectives: List[str] = Field(default_factory=lambda: [DEFAULT_OBJECTIVE])
    constraints: List[str] = Field(default_factory=list)
    interdisciplinary_connections: List[str] = Field(default_factory=list)
    initial_scope: str = ""
    structured: bool = False


class ParsedHypothesis(BaseModel):
    statement: str
    falsification: str = ""
    testing_plan: str = ""
    disciplines: List[str] = Field(default_factory=list)


class EvidenceAnalysis(BaseModel):
    edge_type: EdgeType = EdgeType.SUPPORTIVE
    supports_hypothesis: bool = True
    confidence: List[float] = Field(default_factory=lambda: [0.5, 0.5, 0.5, 0.5])
    statistical_power: float = 0.5
    sample_size: int = 0
    effect_size: Optional[float] = None
    p_value: Optional[float] = None
    study_design: str = ""
    evidence_quality: EvidenceQuality = EvidenceQuality.MEDIUM
    peer_reviewed: bool = False
    controversial: bool = False
    confounders: List[str] = Field(default_factory=list)
    mechanism: str = ""
    counterfactual: str = ""
    temporal_pattern: str = ""
    disciplines: List[str] = Field(default_factory=list)


class ReflectionFindings(BaseModel):
    bias_flags: List[Dict[str, str]] = Field(default_factory=list)
    consistency_score: Optional[float] = None
    findings: List[str] = Field(default_factory=list)


class ResponseParser:
    """Turns raw reasoning text into typed values. Stateless."""

    # -- stage 1 --
    def parse_task_understanding(self, text: str) -> TaskUnderstanding:
        data = extract_json(text)
        if isinstance(data, dict) and data.get("primary_field"):
            objectives = _as_list(data.get("objectives")) or [DEFAULT_OBJECTIVE]
            return TaskUnderstanding(
                primary_field=str(data["primary_field"]).strip(),
                secondary_fields=_as_list(data.get("secondary_fields")),
                objectives=objectives,
                constraints=_as_list(data.get("constraints")),
                interdisciplinary_connections=_as_list(
                    data.get("interdisciplinary_connections")
                ),
                initial_scope=str(data.get("initial_scope") or "").strip(),
                structured=True,
            )

        understanding = TaskUnderstanding()
        if not text:
            return understanding
        field_match = _FIELD_RE.search(text)
        if field_match:
            understanding.primary_field = field_match.group(1).strip()
        objectives: List[str] = []
        for match in _OBJECTIVES_RE.finditer(text):
            objectives.extend(split_items(match.group(1)))
        if objectives:
            understanding.objectives = objectives
        constraints_match = _CONSTRAINTS_RE.search(text)
        if constraints_match:
            understanding.constraints = split_items(constraints_match.group(1))
        scope_match = _SCOPE_RE.search(text)
        if scope_match:
            understanding.initial_scope = scope_match.group(1).strip()
        return understanding

    # -- stage 2 --
    def parse_dimensions(self, text: str, names: List[str]) -> Dict[str, str]:
        """Map each dimension name to its description, empty when absent."""
        data = extract_json(text)
        result: Dict[str, str] = {name: "" for name in names}
        if isinstance(data, dict):
            lowered = {str(k).lower().replace("_", " "): v for k, v in data.items()}
            for name in names:
                value = lowered.get(name.lower())
                if value:
                    result[name] = sanitize_text(
                        value if isinstance(value, str) else json.dumps(value)
                    )
            return result
        for name in names:
            pattern = re.compile(
                rf"{re.escape(name)}[:\s]*([^\n]+)", re.IGNORECASE
            )
            match = pattern.search(text or "")
            if match:
                result[name] = sanitize_text(match.group(1).strip(" :-"))
        return result

    # -- stage 3 --
    def parse_hypotheses(self, text: str, count: int) -> List[ParsedHypothesis]:
        data = extract_json(text)
        items: List[Any] = []
        if isinstance(data, dict):
            items = data.get("hypotheses") or []
        elif isinstance(data, list):
            items = data
        parsed: List[ParsedHypothesis] = []
        for item in items:
            if isinstance(item, str) and item.strip():
                parsed.append(ParsedHypothesis(statement=sanitize_text(item)))
            elif isinstance(item, dict):
                statement = item.get("statement") or item.get("hypothesis") or item.get("content")
                if not statement:
                    continue
                parsed.append(
                    ParsedHypothesis(
                        statement=sanitize_text(str(statement)),
                        falsification=sanitize_text(
                            str(item.get("falsification_criteria") or item.get("falsification") or "")
                        ),
                        testing_plan=sanitize_text(
                            str(item.get("testing_plan") or item.get("search_query") or "")
                        ),
                        disciplines=_as_list(item.get("disciplines")),
                    )
                )
        if parsed:
            return parsed[:count]

        for index in range(1, count + 1):
            statement = self._indexed_line(text, ("hypothesis_", "hypothesis ", "h"), index)
            if not statement:
                continue
            parsed.append(
                ParsedHypothesis(
                    statement=statement,
                    falsification=self._indexed_line(
                        text, ("falsification_", "falsification ", "f"), index
                    ),
                )
            )
        return parsed

    @staticmethod
    def _indexed_line(text: str, prefixes: tuple, index: int) -> str:
        for prefix in prefixes:
            pattern = re.compile(
                rf"^\s*(?:[-*]\s*)?{re.escape(prefix)}{index}\b[:.)\s-]*([^\n\r]+)",
                re.IGNORECASE | re.MULTILINE,
            )
            match = pattern.search(text or "")
            if match and match.group(1).strip():
                return sanitize_text(match.group(1).strip())
        return ""

    # -- stage 4 --
    def parse_evidence_analysis(self, text: str) -> EvidenceAnalysis:
        data = extract_json(text)
        if isinstance(data, dict) and ("edge_type" in data or "relationship" in data):
            return self._structured_evidence(data)
        return self._free_text_evidence(text or "")

    def _structured_evidence(self, data: Dict[str, Any]) -> EvidenceAnalysis:
        raw_type = str(data.get("edge_type") or data.get("relationship") or "supportive")
        edge_type = self.classify_relationship(raw_type)
        quality = str(data.get("evidence_quality") or "medium").lower()
        confidence = data.get("confidence") or [0.5] * 4
        if not isinstance(confidence, list) or len(confidence) != 4:
            confidence = [0.5] * 4
        return EvidenceAnalysis(
            edge_type=edge_type,
            supports_hypothesis=edge_type != EdgeType.CONTRADICTORY,
            confidence=[_clamped_float(v, 0.5) for v in confidence],
            statistical_power=_clamped_float(data.get("statistical_power"), 0.5),
            sample_size=_safe_int(data.get("sample_size")),
            effect_size=_optional_float(data.get("effect_size")),
            p_value=_optional_float(data.get("p_value")),
            study_design=str(data.get("study_design") or ""),
            evidence_quality=(
                EvidenceQuality(quality)
                if quality in EvidenceQuality._value2member_map_
                else EvidenceQuality.MEDIUM
            ),
            peer_reviewed=bool(data.get("peer_reviewed", False)),
            controversial=bool(data.get("controversial", False)),
            confounders=_as_list(data.get("confounders")),
            mechanism=sanitize_text(str(data.get("mechanism") or "")),
            counterfactual=sanitize_text(str(data.get("counterfactual") or "")),
            temporal_pattern=str(data.get("temporal_pattern") or ""),
            disciplines=_as_list(data.get("disciplines")),
        )

    def _free_text_evidence(self, text: str) -> EvidenceAnalysis:
        lower = text.lower()
        edge_type = self.classify_relationship(text)
        sample_match = re.search(r"sample size[^:]*:\s*([0-9,]+)", text, re.IGNORECASE)
        effect_match = re.search(r"effect size[^:]*:\s*([0-9.]+)", text, re.IGNORECASE)
        p_match = re.search(r"p[- ]value[^:]*:\s*([0-9.]+)", text, re.IGNORECASE) or re.search(
            r"\bp\s*[<>=]\s*([0-9.]+)", text, re.IGNORECASE
        )
        if "meta-analysis" in lower:
            design = "meta_analysis"
        elif "randomized controlled trial" in lower or re.search(r"\brct\b", lower):
            design = "rct"
        elif "cohort" in lower:
            design = "cohort"
        elif "cross-sectional" in lower or "cross sectional" in lower:
            design = "cross_sectional"
        else:
            design = ""
        if design in ("meta_analysis", "rct"):
            quality = EvidenceQuality.HIGH
        elif design or "peer-reviewed" in lower:
            quality = EvidenceQuality.MEDIUM
        else:
            quality = EvidenceQuality.LOW
        discipline_match = re.search(r"discipline[s]?[:\-]\s*([^\n\r]+)", text, re.IGNORECASE)
        confounder_match = re.search(r"confound\w*[^:\n]*:(.*)", text, re.IGNORECASE | re.DOTALL)
        confounders: List[str] = []
        if confounder_match:
            confounders = [
                m.strip() for m in re.findall(r"[-•]\s*([^;\n]+)", confounder_match.group(1))
            ]
        return EvidenceAnalysis(
            edge_type=edge_type,
            supports_hypothesis=edge_type != EdgeType.CONTRADICTORY,
            confidence=self.parse_confidence_vector(text),
            statistical_power=self.estimate_statistical_power(text),
            sample_size=_safe_int(sample_match.group(1)) if sample_match else 0,
            effect_size=_optional_float(effect_match.group(1).rstrip(".")) if effect_match else None,
            p_value=_optional_float(p_match.group(1).rstrip(".")) if p_match else None,
            study_design=design,
            evidence_quality=quality,
            peer_reviewed="peer-reviewed" in lower or "peer reviewed" in lower,
            controversial="controversial" in lower or "disputed" in lower,
            confounders=confounders,
            mechanism=self._section(text, "mechanism"),
            counterfactual=self._section(text, "counterfactual"),
            temporal_pattern=self.classify_temporal(text).value if self._mentions_temporal(lower) else "",
            disciplines=split_items(discipline_match.group(1)) if discipline_match else [],
        )

    @staticmethod
    def _section(text: str, keyword: str) -> str:
        match = re.search(rf"{keyword}[^:\n]*:\s*([^\n\r]+)", text, re.IGNORECASE)
        return sanitize_text(match.group(1)) if match else ""

    @staticmethod
    def _mentions_temporal(lower: str) -> bool:
        return any(
            word in lower for word in ("temporal", "precedes", "sequential", "delayed", "cyclic")
        )

    @staticmethod
    def classify_relationship(text: str) -> EdgeType:
        lower = text.lower()
        if "causal_direct" in lower or "direct causal" in lower:
            return EdgeType.CAUSAL_DIRECT
        if "counterfactual" in lower:
            return EdgeType.CAUSAL_COUNTERFACTUAL
        if "confounded" in lower:
            return EdgeType.CAUSAL_CONFOUNDED
        if "contradict" in lower or "refute" in lower:
            return EdgeType.CONTRADICTORY
        if "correlat" in lower:
            return EdgeType.CORRELATIVE
        if lower.strip() in EdgeType._value2member_map_:
            return EdgeType(lower.strip())
        return EdgeType.SUPPORTIVE

    @staticmethod
    def classify_temporal(text: str) -> EdgeType:
        lower = text.lower()
        if "cyclic" in lower or "feedback loop" in lower:
            return EdgeType.TEMPORAL_CYCLIC
        if "delayed" in lower or "lag" in lower:
            return EdgeType.TEMPORAL_DELAYED
        if "sequential" in lower:
            return EdgeType.TEMPORAL_SEQUENTIAL
        return EdgeType.TEMPORAL_PRECEDENCE

    @staticmethod
    def parse_confidence_vector(text: str) -> List[float]:
        """Keyword heuristics for the four confidence dimensions."""
        lower = (text or "").lower()

        empirical = 0.5
        if "meta-analysis" in lower:
            empirical += 0.3
        elif "randomized controlled trial" in lower or re.search(r"\brct\b", lower):
            empirical += 0.25
        elif "cohort study" in lower:
            empirical += 0.2
        elif "case study" in lower:
            empirical -= 0.2
        if "large sample" in lower or "n > 1000" in lower:
            empirical += 0.15
        elif "small sample" in lower or "n < 30" in lower:
            empirical -= 0.15
        if "p < 0.001" in lower:
            empirical += 0.15
        elif "p < 0.01" in lower:
            empirical += 0.1
        elif "p < 0.05" in lower:
            empirical += 0.05
        elif "not significant" in lower:
            empirical -= 0.2

        theoretical = 0.5
        if "well-established theory" in lower or "theoretical framework" in lower:
            theoretical += 0.2
        if "established principles" in lower:
            theoretical += 0.1
        if "theoretical gap" in lower or "lacks theory" in lower:
            theoretical -= 0.2
        if "extensively cited" in lower or "foundational work" in lower:
            theoretical += 0.15

        methodological = 0.5
        if "rigorous methodology" in lower or "well-designed" in lower:
            methodological += 0.2
        if "controlled for confounders" in lower or "adjusted for" in lower:
            methodological += 0.15
        if "blinded" in lower:
            methodological += 0.15
        if "methodological limitations" in lower or "potential bias" in lower:
            methodological -= 0.15
        if "poor methodology" in lower or "flawed design" in lower:
            methodological -= 0.25

        consensus = 0.5
        if "scientific consensus" in lower or "widely accepted" in lower:
            consensus += 0.25
        if "replicated findings" in lower or "consistent results" in lower:
            consensus += 0.15
        if "controversial" in lower or "disputed" in lower:
            consensus -= 0.2
        if "conflicting evidence" in lower or "mixed results" in lower:
            consensus -= 0.15
        if "preliminary findings" in lower or "needs replication" in lower:
            consensus -= 0.1

        return [max(0.0, min(1.0, v)) for v in (empirical, theoretical, methodological, consensus)]

    @staticmethod
    def estimate_statistical_power(text: str) -> float:
        if not text:
            return 0.5
        power_match = re.search(r"statistical power[^:]*:\s*([0-9.]+)", text, re.IGNORECASE)
        if power_match:
            return _clamped_float(power_match.group(1).rstrip("."), 0.5)
        power = 0.5
        sample_match = re.search(r"sample size[^:]*:\s*([0-9,]+)", text, re.IGNORECASE)
        if sample_match:
            size = int(sample_match.group(1).replace(",", "") or 0)
            if size > 1000:
                power += 0.2
            elif size > 300:
                power += 0.15
            elif size > 100:
                power += 0.1
            elif size < 30:
                power -= 0.2
        effect_match = re.search(r"effect size[^:]*:\s*([0-9.]+)", text, re.IGNORECASE)
        if effect_match:
            effect = _clamped_float(effect_match.group(1).rstrip("."), 0.0)
            if effect > 0.8:
                power += 0.15
            elif effect > 0.5:
                power += 0.1
            elif effect > 0.2:
                power += 0.05
            else:
                power -= 0.1
        p_match = re.search(r"p[- ]value[^:]*:\s*([0-9.]+)", text, re.IGNORECASE) or re.search(
            r"\bp\s*[<>=]\s*([0-9.]+)", text, re.IGNORECASE
        )
        if p_match:
            p_value = _clamped_float(p_match.group(1).rstrip("."), 1.0)
            if p_value < 0.01:
                power += 0.15
            elif p_value < 0.05:
                power += 0.1
            elif p_value < 0.1:
                power += 0.05
            else:
                power -= 0.1
        return max(0.0, min(1.0, power))

    # -- stage 8 --
    def parse_reflection(self, text: str) -> ReflectionFindings:
        data = extract_json(text)
        if isinstance(data, dict):
            flags = []
            for raw in data.get("bias_flags") or []:
                if isinstance(raw, dict) and raw.get("bias_type"):
                    flags.append(
                        {
                            "bias_type": str(raw["bias_type"]),
                            "description": sanitize_text(str(raw.get("description", ""))),
                        }
                    )
                elif isinstance(raw, str) and raw.strip():
                    flags.append({"bias_type": raw.strip(), "description": ""})
            score = data.get("consistency_score")
            return ReflectionFindings(
                bias_flags=flags,
                consistency_score=_clamped_float(score, 0.0) if score is not None else None,
                findings=_as_list(data.get("findings")),
            )
        findings = ReflectionFindings()
        for match in re.finditer(r"^\s*(?:[-*]\s*)?bias[:\-]\s*([^\n\r]+)", text or "", re.IGNORECASE | re.MULTILINE):
            name, _, description = match.group(1).partition(" - ")
            findings.bias_flags.append(
                {"bias_type": sanitize_text(name.strip()), "description": sanitize_text(description.strip())}
            )
        score_match = re.search(r"consistency(?: score)?[:\-]\s*([0-9.]+)", text or "", re.IGNORECASE)
        if score_match:
            findings.consistency_score = _clamped_float(score_match.group(1).rstrip("."), 0.0)
        findings.findings = [
            sanitize_text(m.group(1))
            for m in re.finditer(r"^\s*(?:[-*]\s*)?finding[:\-]\s*([^\n\r]+)", text or "", re.IGNORECASE | re.MULTILINE)
        ]
        return findings

    # -- stage 9 --
    def parse_recommendations(self, text: str) -> List[str]:
        data = extract_json(text)
        if isinstance(data, dict) and data.get("recommendations"):
            return _as_list(data["recommendations"])
        return [
            sanitize_text(m.group(1))
            for m in re.finditer(
                r"^\s*(?:[-*]\s*)?recommendation[s]?(?:\s*\d+)?[:\-]\s*([^\n\r]+)",
                text or "",
                re.IGNORECASE | re.MULTILINE,
            )
        ]
