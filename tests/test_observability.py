"""
Tests for extraction decision tracing.

Tests cover:
1. Recording transitions and decisions
2. Path reconstruction and summaries
3. Human-readable explanation
4. JSON export
"""

import json

from cvextract.extract.observability import DecisionType, ExtractionTrace, LayerDecision


def _trace() -> ExtractionTrace:
    trace = ExtractionTrace(request_id="cv-123")
    trace.record_transition("preflight", "preflight_ok", "prompt_build")
    trace.record_transition("prompt_build", "prompt_ready", "call")
    trace.record_transition("call", "timeout", "call", "Request timed out")
    trace.add_decision(LayerDecision(
        layer_name="validate",
        field_name="extracted_data.contact.email",
        decision=DecisionType.REJECT,
        input_value="not-an-email",
        output_value=None,
        evidence="Invalid email format",
    ))
    trace.record_transition("call", "auth_failed", "failed", "401")
    return trace


class TestExtractionTrace:
    """Tests for ExtractionTrace."""

    def test_request_id_generated(self):
        assert len(ExtractionTrace().request_id) == 12
        assert ExtractionTrace().request_id != ExtractionTrace().request_id

    def test_transition_types(self):
        trace = _trace()
        assert len(trace.decisions_of(DecisionType.TRANSITION)) == 3
        failures = trace.decisions_of(DecisionType.FAIL)
        assert len(failures) == 1
        assert failures[0].evidence == "401"

    def test_path(self):
        assert _trace().path == ["preflight", "prompt_build", "call", "call", "failed"]
        assert ExtractionTrace().path == []

    def test_summarize(self):
        trace = _trace()
        trace.mark_complete("LLM_AUTH_FAILED")
        summary = trace.summarize()

        assert summary["outcome"] == "LLM_AUTH_FAILED"
        assert summary["decision_count"] == 5
        assert summary["by_type"] == {"transition": 3, "reject": 1, "fail": 1}
        assert summary["duration_seconds"] >= 0

    def test_summarize_in_progress(self):
        assert ExtractionTrace().summarize()["duration_seconds"] is None

    def test_explain(self):
        text = _trace().explain()
        assert "Request: cv-123" in text
        assert "Outcome: in progress" in text
        assert "Path: preflight -> prompt_build -> call -> call -> failed" in text
        assert "validate [extracted_data.contact.email] -> reject" in text
        assert "Why: Invalid email format" in text

    def test_explain_truncates_long_values(self):
        trace = ExtractionTrace()
        trace.add_decision(LayerDecision(layer_name="call", decision=DecisionType.RETRY, input_value="x" * 200))
        assert "x" * 77 + "..." in trace.explain()

    def test_to_dict_is_json_ready(self):
        trace = _trace()
        trace.add_decision(LayerDecision(
            layer_name="merge",
            decision=DecisionType.MERGE,
            input_value={"lines": (1, 2)},
            output_value=DecisionType.MERGE,
        ))
        data = trace.to_dict()

        json.dumps(data)
        assert data["request_id"] == "cv-123"
        assert data["decisions"][-1]["input_value"] == {"lines": [1, 2]}
        assert data["decisions"][-1]["output_value"] == "merge"

    def test_save(self, tmp_path):
        trace = _trace()
        path = trace.save(tmp_path / "traces")

        assert path.name == "cv-123_trace.json"
        saved = json.loads(path.read_text(encoding="utf-8"))
        assert saved["summary"]["path"][-1] == "failed"
