"""Diagnostic timeline models, owned exclusively by the diagnostic recorder."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

Phase = Literal["initiation", "redirect", "callback", "exchange", "completion"]
FinalState = Literal["pending", "success", "failure"]


class PhaseEvent(BaseModel):
    """A single timestamped step of one flow."""

    timestamp: float
    name: str
    phase: Phase
    success: bool
    metadata: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    elapsed_ms: float = 0.0  # Since session start


class FlowMetrics(BaseModel):
    """Durations in milliseconds."""

    callback_time: float | None = None  # Initiation -> callback receipt
    exchange_time: float | None = None
    total_duration: float | None = None


class OAuthSession(BaseModel):
    """One initiate -> complete cycle as seen by the recorder."""

    session_id: str
    provider: str | None = None
    start_time: float
    end_time: float | None = None
    events: list[PhaseEvent] = Field(default_factory=list)
    final_state: FinalState = "pending"
    error_count: int = 0
    metrics: FlowMetrics = Field(default_factory=FlowMetrics)

    def first_event(self, phase: Phase) -> PhaseEvent | None:
        return next((event for event in self.events if event.phase == phase), None)

    def last_event(self, phase: Phase) -> PhaseEvent | None:
        return next(
            (event for event in reversed(self.events) if event.phase == phase), None
        )
