import json

import pytest

from asr_got_engine.domain.models.graph_elements import EdgeType, EvidenceQuality
from asr_got_engine.domain.utils.response_parser import (
    DEFAULT_FIELD,
    DEFAULT_OBJECTIVE,
    ResponseParser,
    citation_markers,
    extract_json,
    sanitize_text,
    split_items,
)


# --- Test Fixtures ---
@pytest.fixture
def parser():
    return ResponseParser()


class TestSanitizeText:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("<script>alert(1)</script><b>Bold</b> text", "Bold text"),
            ("&lt;script&gt;steal()&lt;/script&gt;ok", "ok"),
            ('<a href="#" onclick="run()">link</a>', "link"),
            ("open javascript:alert(1)", "open alert(1)"),
            ("a\n\n\n\nb", "a\n\nb"),
            (None, ""),
        ],
    )
    def test_strips_executable_markup(self, raw, expected):
        assert sanitize_text(raw) == expected

    def test_plain_text_unchanged(self):
        text = "Response rates were 40% (n=945) [1]."
        assert sanitize_text(text) == text


class TestHelpers:
    def test_extract_json_from_fenced_block(self):
        text = 'Here you go:\n```json\n{"a": 1}\n```\nThanks'
        assert extract_json(text) == {"a": 1}

    def test_extract_json_from_embedded_object(self):
        assert extract_json('Result: {"b": [1, 2]} end') == {"b": [1, 2]}

    @pytest.mark.parametrize("text", ["", None, "no json here", "{broken"])
    def test_extract_json_returns_none(self, text):
        assert extract_json(text) is None

    def test_split_items(self):
        assert split_items("a, b ,c") == ["a", "b", "c"]
        assert split_items("a; b") == ["a", "b"]
        assert split_items("- first\n* second\n") == ["first", "second"]

    def test_citation_markers_distinct_in_order(self):
        assert citation_markers("x [2] y [1] z [2]") == [2, 1]
        assert citation_markers("") == []


class TestTaskUnderstanding:
    def test_structured_json(self, parser):
        text = json.dumps({"primary_field": "Immunology", "objectives": "A; B", "constraints": ["Adults"]})
        result = parser.parse_task_understanding(text)
        assert result.structured
        assert result.primary_field == "Immunology"
        assert result.objectives == ["A", "B"]
        assert result.constraints == ["Adults"]

    def test_key_value_grammar(self, parser):
        text = (
            "Field: Immunology\n"
            "Objectives: Map therapies, Find biomarkers\n"
            "Constraints: Human studies only\n"
            "Scope: Cutaneous melanoma"
        )
        result = parser.parse_task_understanding(text)
        assert not result.structured
        assert result.primary_field == "Immunology"
        assert result.objectives == ["Map therapies", "Find biomarkers"]
        assert result.constraints == ["Human studies only"]
        assert result.initial_scope == "Cutaneous melanoma"

    def test_unparseable_text_gives_defaults(self, parser):
        result = parser.parse_task_understanding("I cannot help with that")
        assert result.primary_field == DEFAULT_FIELD
        assert result.objectives == [DEFAULT_OBJECTIVE]


class TestDimensionsAndHypotheses:
    def test_dimensions_from_json_keys(self, parser):
        text = json.dumps({"scope": "Melanoma", "knowledge_gaps": "Biomarkers"})
        result = parser.parse_dimensions(text, ["Scope", "Knowledge Gaps", "Constraints"])
        assert result == {"Scope": "Melanoma", "Knowledge Gaps": "Biomarkers", "Constraints": ""}

    def test_dimensions_from_lines(self, parser):
        result = parser.parse_dimensions("Scope: adults only\nObjectives - survival", ["Scope", "Objectives"])
        assert result == {"Scope": "adults only", "Objectives": "survival"}

    def test_hypotheses_from_json_capped(self, parser):
        text = json.dumps({"hypotheses": [{"statement": f"Claim {i}", "disciplines": "a, b"} for i in range(5)]})
        result = parser.parse_hypotheses(text, 3)
        assert [h.statement for h in result] == ["Claim 0", "Claim 1", "Claim 2"]
        assert result[0].disciplines == ["a", "b"]

    def test_hypotheses_from_numbered_lines(self, parser):
        text = "Hypothesis 1: PD-1 blockade improves survival\nFalsification 1: No survival gain\nH2: Microbiome alters response\nF2: No association"
        result = parser.parse_hypotheses(text, 3)
        assert [(h.statement, h.falsification) for h in result] == [
            ("PD-1 blockade improves survival", "No survival gain"),
            ("Microbiome alters response", "No association"),
        ]


class TestEvidenceAnalysis:
    def test_structured_values_are_coerced(self, parser):
        data = {
            "edge_type": "correlative",
            "confidence": [2, "x", 0.3, 0.4],
            "sample_size": "1,024",
            "p_value": "n/a",
            "effect_size": "0.4",
            "evidence_quality": "excellent",
        }
        result = parser.parse_evidence_analysis(json.dumps(data))
        assert result.edge_type == EdgeType.CORRELATIVE
        assert result.confidence == [1.0, 0.5, 0.3, 0.4]
        assert result.sample_size == 1024
        assert result.p_value is None
        assert result.effect_size == pytest.approx(0.4)
        assert result.evidence_quality == EvidenceQuality.MEDIUM

    def test_free_text_extraction(self, parser):
        text = (
            "A randomized controlled trial (sample size: 1,200) found a benefit, p < 0.01. "
            "Peer-reviewed in a major journal."
        )
        result = parser.parse_evidence_analysis(text)
        assert result.edge_type == EdgeType.SUPPORTIVE
        assert result.study_design == "rct"
        assert result.evidence_quality == EvidenceQuality.HIGH
        assert result.sample_size == 1200
        assert result.p_value == pytest.approx(0.01)
        assert result.peer_reviewed
        assert result.statistical_power == pytest.approx(0.8)

    @pytest.mark.parametrize(
        "text, effect, sample",
        [
            ("A cohort study followed patients. Sample size: 480. Effect size: 0.42.", 0.42, 480),
            ("Effect size (Cohen's d): 0.8. Sample size: , not reported.", 0.8, 0),
            ("Effect size: ... unclear from the abstract. P-value: 0.03.", None, 0),
        ],
    )
    def test_free_text_numbers_followed_by_punctuation(self, parser, text, effect, sample):
        result = parser.parse_evidence_analysis(text)
        assert result.effect_size == (pytest.approx(effect) if effect is not None else None)
        assert result.sample_size == sample
        assert 0.0 <= result.statistical_power <= 1.0

    def test_free_text_sentence_final_p_value(self, parser):
        result = parser.parse_evidence_analysis("The difference was significant. P-value: 0.03.")
        assert result.p_value == pytest.approx(0.03)

    def test_free_text_contradiction(self, parser):
        result = parser.parse_evidence_analysis("This cohort contradicts the claim")
        assert result.edge_type == EdgeType.CONTRADICTORY
        assert not result.supports_hypothesis
        assert result.evidence_quality == EvidenceQuality.MEDIUM

    def test_free_text_temporal_pattern(self, parser):
        result = parser.parse_evidence_analysis("Exposure precedes onset with a delayed response")
        assert result.temporal_pattern == EdgeType.TEMPORAL_DELAYED.value

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("causal_counterfactual", EdgeType.CAUSAL_COUNTERFACTUAL),
            ("direct causal link", EdgeType.CAUSAL_DIRECT),
            ("temporal_sequential", EdgeType.TEMPORAL_SEQUENTIAL),
            ("refutes", EdgeType.CONTRADICTORY),
            ("whatever", EdgeType.SUPPORTIVE),
        ],
    )
    def test_classify_relationship(self, raw, expected):
        assert ResponseParser.classify_relationship(raw) == expected

    def test_confidence_vector_keywords(self):
        vector = ResponseParser.parse_confidence_vector("A meta-analysis; controversial and disputed")
        assert vector[0] == pytest.approx(0.8)
        assert vector[3] == pytest.approx(0.3)


class TestReflectionAndRecommendations:
    def test_reflection_json(self, parser):
        text = json.dumps({"bias_flags": ["recency bias", {"bias_type": "funding", "description": "<b>x</b>"}], "consistency_score": 1.4})
        result = parser.parse_reflection(text)
        assert result.bias_flags == [
            {"bias_type": "recency bias", "description": ""},
            {"bias_type": "funding", "description": "x"},
        ]
        assert result.consistency_score == 1.0

    def test_reflection_lines(self, parser):
        text = "Bias: Selection bias - small convenience sample\nConsistency: 0.7\nFinding: Few replications"
        result = parser.parse_reflection(text)
        assert result.bias_flags == [{"bias_type": "Selection bias", "description": "small convenience sample"}]
        assert result.consistency_score == pytest.approx(0.7)
        assert result.findings == ["Few replications"]

    def test_recommendations_lines_and_json(self, parser):
        text = "Summary\nRecommendation 1: Run a trial\n- Recommendations: Share data\nOther line"
        assert parser.parse_recommendations(text) == ["Run a trial", "Share data"]
        assert parser.parse_recommendations(json.dumps({"recommendations": ["a", "b"]})) == ["a", "b"]
        assert parser.parse_recommendations("nothing to see") == []
