"""Audit event sinks: agent runs, review verdicts and status transitions."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field

from .models import AgentRun, ReviewVerdict

logger = logging.getLogger("orchestrator")


class AuditEvent(BaseModel):
    kind: str
    feature: str | None = None
    issue_number: int | None = None
    timestamp: datetime = Field(default_factory=datetime.now)
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def agent_run(cls, run: AgentRun, feature: str | None, issue_number: int | None) -> AuditEvent:
        finished = run.end_time is not None
        return cls(
            kind="agent_run_finished" if finished else "agent_run_started",
            feature=feature,
            issue_number=issue_number,
            data=run.model_dump(mode="json"),
        )

    @classmethod
    def review(cls, verdict: ReviewVerdict, feature: str, issue_number: int) -> AuditEvent:
        return cls(
            kind="review_verdict",
            feature=feature,
            issue_number=issue_number,
            data=verdict.model_dump(mode="json"),
        )


class EventSink(Protocol):
    def emit(self, event: AuditEvent) -> None: ...


class LoggingEventSink:
    """Writes every event to the orchestrator logger at DEBUG level."""

    def emit(self, event: AuditEvent) -> None:
        target = event.feature or "-"
        if event.issue_number is not None:
            target += f"#{event.issue_number}"
        logger.debug(f"  Event {event.kind} [{target}] {event.data}")


class JsonlEventSink:
    """Appends events to a JSON-lines file."""

    def __init__(self, path: Path):
        self.path = path

    def emit(self, event: AuditEvent) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(event.model_dump_json() + "\n")


class FanoutEventSink:
    def __init__(self, *sinks: EventSink):
        self.sinks = list(sinks)

    def emit(self, event: AuditEvent) -> None:
        for sink in self.sinks:
            emit_safely(sink, event)


def emit_safely(sink: EventSink | None, event: AuditEvent) -> None:
    """Fire-and-forget: a failing sink is logged, never raised to the caller."""
    if sink is None:
        return
    try:
        sink.emit(event)
    except Exception as e:
        logger.warning(f"Event sink {type(sink).__name__} failed on {event.kind}: {e}")
