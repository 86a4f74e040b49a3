from __future__ import annotations

from typing import Any

from transit_matrix.events import EventRecorder, ProgressEmitter, ProgressEvent


def test_emitter_without_subscribers_is_a_no_op() -> None:
    emitter = ProgressEmitter()
    emitter.emit_start("build_routes", 10, "Starting")
    emitter.emit_progress("build_routes", 1, 10)
    emitter.emit_complete("build_routes")
    emitter.emit_error("build_routes", RuntimeError("boom"))


def test_events_reach_subscribers_in_order_until_unsubscribed() -> None:
    emitter = ProgressEmitter()
    recorder = EventRecorder()
    unsubscribe = emitter.subscribe(recorder)

    emitter.emit_start("calculate_deciles", 4, "Calculating deciles...", {"period": "ALL"})
    emitter.emit_progress("calculate_deciles", 2, 4, "half way")
    unsubscribe()
    emitter.emit_complete("calculate_deciles", "done")

    assert [e.type for e in recorder.events] == ["start", "progress"]
    assert recorder.events[0].metadata == {"period": "ALL"}
    assert recorder.events[1].current == 2
    assert recorder.events[1].total == 4


def test_failing_subscriber_does_not_block_others(monkeypatch) -> None:
    logged: list[dict[str, Any]] = []

    def _capture_log_event(event: str, **fields: Any) -> None:
        logged.append({"event": event, **fields})

    monkeypatch.setattr("transit_matrix.events.log_event", _capture_log_event)

    def broken(event: ProgressEvent) -> None:  # noqa: ARG001
        raise ValueError("render failed")

    emitter = ProgressEmitter()
    emitter.subscribe(broken)
    recorder = EventRecorder(emitter)
    error = RuntimeError("upstream")
    emitter.emit_error("build_routes", error, "Route calculation failed")

    assert len(recorder.of_type("error")) == 1
    assert recorder.events[0].error is error
    assert logged[0]["event"] == "progress_subscriber_failed"
    assert "render failed" in logged[0]["error"]
