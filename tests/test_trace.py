"""
Тесты Trace Recorder (trace.py).
"""

from datetime import datetime, timezone

import pytest

from chat_router.trace import (
    BACKEND_LAYER,
    LAYER_DEFINITIONS,
    StepStatus,
    TraceBuilder,
    TraceMode,
    layer_definition,
)


WALL = datetime(2026, 1, 5, 3, 0, tzinfo=timezone.utc)


@pytest.fixture
def builder(clock):
    return TraceBuilder("สวัสดีครับ", clock=clock, wall_clock=lambda: WALL)


class TestTraceBuilder:

    def test_finish_fills_unreached_layers(self, builder):
        t = builder.now()
        builder.record(0, "Context Extraction", "ctx", StepStatus.CHECKED, t)
        t = builder.now()
        builder.record(1, "Admin Escalation", "admin", StepStatus.MATCHED, t)

        trace = builder.finish(final_layer=1, final_layer_name="Safety: Admin Escalation")

        assert [s.layer for s in trace.steps] == list(range(15))
        assert trace.step(1).status == StepStatus.MATCHED
        assert all(trace.step(layer).status == StepStatus.NOT_REACHED for layer in range(2, 15))
        assert trace.step(5).name == "Context Resolution"
        assert trace.step(5).duration_ms == 0.0

    def test_durations_from_injected_clock(self, builder):
        t = builder.now()
        builder.record(0, "Context Extraction", "ctx", StepStatus.CHECKED, t)
        assert builder.recorded(0).duration_ms == pytest.approx(1.0)

    def test_duplicate_layer_rejected(self, builder):
        t = builder.now()
        builder.record(3, "Stock Inquiry", "stock", StepStatus.SKIPPED, t)
        with pytest.raises(ValueError):
            builder.record(3, "Stock Inquiry", "stock", StepStatus.SKIPPED, t)

    def test_replace_overwrites_step(self, builder):
        t = builder.now()
        builder.record(12, "Category Specific", "cat", StepStatus.SKIPPED, t)
        builder.replace(12, "Clarification", "clarify", StepStatus.MATCHED, t)
        trace = builder.finish(final_layer=12, final_layer_name="Clarification")
        assert len([s for s in trace.steps if s.layer == 12]) == 1
        assert trace.step(12).name == "Clarification"

    def test_trace_fields(self, builder):
        trace = builder.finish(final_layer=14, final_layer_name="Default Fallback", final_intent="greeting")
        assert trace.mode == TraceMode.PIPELINE
        assert trace.user_message == "สวัสดีครับ"
        assert trace.timestamp == "2026-01-05T03:00:00Z"
        assert trace.final_intent == "greeting"
        assert trace.total_duration_ms > 0


class TestBackendStep:

    def test_success_moves_final_layer(self, builder):
        trace = builder.finish(final_layer=14, final_layer_name="Default Fallback")
        updated = trace.with_backend_step(
            "claude", StepStatus.MATCHED, 812.5, TraceMode.PIPELINE_THEN_BACKEND, {"attempt": 1},
        )
        assert updated.final_layer == BACKEND_LAYER
        assert updated.final_layer_name == "claude"
        assert updated.mode == TraceMode.PIPELINE_THEN_BACKEND
        assert len(updated.steps) == 16
        assert updated.steps[-1].layer == BACKEND_LAYER
        assert updated.steps[-1].duration_ms == 812.5
        assert updated.total_duration_ms == pytest.approx(trace.total_duration_ms + 812.5, abs=0.01)

    def test_original_trace_untouched(self, builder):
        trace = builder.finish(final_layer=14, final_layer_name="Default Fallback")
        trace.with_backend_step("claude", StepStatus.MATCHED, 10, TraceMode.PIPELINE_THEN_STREAM)
        assert len(trace.steps) == 15
        assert trace.final_layer == 14

    def test_revert_keeps_final_layer(self, builder):
        trace = builder.finish(final_layer=14, final_layer_name="Default Fallback")
        updated = trace.with_backend_step(
            "openai", StepStatus.CHECKED, 5, TraceMode.BACKEND_FAILED, {"errors": []},
        )
        assert updated.final_layer == 14
        assert updated.final_layer_name == "Default Fallback"
        assert updated.step(BACKEND_LAYER).status == StepStatus.CHECKED

    def test_single_backend_step(self, builder):
        trace = builder.finish(final_layer=14, final_layer_name="Default Fallback")
        twice = trace.with_backend_step(
            "claude", StepStatus.CHECKED, 5, TraceMode.BACKEND_FAILED,
        ).with_backend_step("openai", StepStatus.MATCHED, 5, TraceMode.PIPELINE_THEN_BACKEND)
        assert len([s for s in twice.steps if s.layer == BACKEND_LAYER]) == 1


class TestSerialization:

    def test_to_dict(self, builder):
        t = builder.now()
        builder.record(0, "Context Extraction", "ctx", StepStatus.CHECKED, t, {"products_count": 0})
        data = builder.finish(final_layer=14, final_layer_name="Default Fallback").to_dict()

        assert data["mode"] == "pipeline"
        assert data["final_layer"] == 14
        assert data["steps"][0]["status"] == "checked"
        assert data["steps"][0]["details"] == {"products_count": 0}
        assert "details" not in data["steps"][1]
        assert "final_intent" not in data

    def test_layer_definitions(self):
        assert len(LAYER_DEFINITIONS) == 15
        assert layer_definition(14)[1] == "Default Fallback"
        with pytest.raises(KeyError):
            layer_definition(99)
