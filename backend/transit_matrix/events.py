from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Literal

from .logging_utils import log_event

Stage = Literal[
    "build_routes",
    "calculate_time_buckets",
    "calculate_deciles",
    "calculate_reachability",
    "clear_data",
    "export_read_models",
]
EventType = Literal["start", "progress", "complete", "error"]


@dataclass(frozen=True)
class ProgressEvent:
    stage: Stage
    type: EventType
    current: int | None = None
    total: int | None = None
    message: str | None = None
    error: BaseException | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


ProgressCallback = Callable[[ProgressEvent], None]


class ProgressEmitter:
    """Typed progress events fanned out to subscribed callbacks.

    Publishing with no subscriber is a no-op. A failing subscriber is logged and
    skipped so rendering problems never interrupt the pipeline.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._subscribers: list[ProgressCallback] = []

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as exc:
                log_event(
                    "progress_subscriber_failed",
                    level=logging.WARNING,
                    stage=event.stage,
                    event_type=event.type,
                    error=f"{type(exc).__name__}: {exc}",
                )

    def emit_start(
        self,
        stage: Stage,
        total: int | None = None,
        message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.publish(ProgressEvent(stage=stage, type="start", total=total, message=message, metadata=metadata or {}))

    def emit_progress(
        self,
        stage: Stage,
        current: int,
        total: int,
        message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.publish(
            ProgressEvent(
                stage=stage,
                type="progress",
                current=current,
                total=total,
                message=message,
                metadata=metadata or {},
            )
        )

    def emit_complete(
        self,
        stage: Stage,
        message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.publish(ProgressEvent(stage=stage, type="complete", message=message, metadata=metadata or {}))

    def emit_error(self, stage: Stage, error: BaseException, message: str | None = None) -> None:
        self.publish(ProgressEvent(stage=stage, type="error", error=error, message=message))


class EventRecorder:
    """Subscriber that keeps every event; handy for API responses and tests."""

    def __init__(self, emitter: ProgressEmitter | None = None) -> None:
        self.events: list[ProgressEvent] = []
        if emitter is not None:
            emitter.subscribe(self)

    def __call__(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[ProgressEvent]:
        return [e for e in self.events if e.type == event_type]
