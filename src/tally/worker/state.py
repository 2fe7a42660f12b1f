"""Worker run state and the failure escalator.

WorkerRunState is process-local and never persisted. The scheduler
owns one instance and hands it to the escalator on every tick outcome.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class EscalationState(str, Enum):
    """Escalator phases over the consecutive failure count."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FATAL = "fatal"


@dataclass
class WorkerRunState:
    """Mutable run state shared by the scheduler and the escalator."""
    in_flight: bool = False
    consecutive_failures: int = 0


class FailureEscalator:
    """Counts consecutive pipeline failures against a threshold.

    HEALTHY at 0 failures, DEGRADED from 1 to max_failures - 1, FATAL at
    max_failures or more. Only tick-level outcomes are recorded here;
    per-event validation problems never reach the escalator.
    """

    def __init__(self, max_failures: int = 5):
        if max_failures <= 0:
            raise ValueError("max_failures must be positive")
        self.max_failures = max_failures

    def phase(self, state: WorkerRunState) -> EscalationState:
        if state.consecutive_failures == 0:
            return EscalationState.HEALTHY
        if state.consecutive_failures < self.max_failures:
            return EscalationState.DEGRADED
        return EscalationState.FATAL

    def record_success(self, state: WorkerRunState) -> EscalationState:
        state.consecutive_failures = 0
        return EscalationState.HEALTHY

    def record_failure(self, state: WorkerRunState) -> EscalationState:
        state.consecutive_failures += 1
        return self.phase(state)
