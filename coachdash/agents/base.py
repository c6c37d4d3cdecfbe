"""Common behaviour for the advisory agents."""
from __future__ import annotations

import time
import uuid
from collections import deque
from typing import Optional

from coachdash.models import AgentContext, AgentExecutionResult, AgentHealth

HEALTH_WINDOW = 100
UNHEALTHY_ERROR_COUNT = 5
UNHEALTHY_AVERAGE_MS = 500.0


def suggestion_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


class BaseAgent:
    """An agent evaluates one ``AgentContext`` and proposes suggestions.

    Subclasses implement :meth:`evaluate`; :meth:`run` adds timing and the
    health bookkeeping the orchestrator reports on.
    """

    name: str = "agent"
    kind: str = "agent"
    max_context_allocation: int = 0

    def __init__(self) -> None:
        self._execution_times: deque[float] = deque(maxlen=HEALTH_WINDOW)
        self.error_count = 0
        self.last_execution_time: Optional[float] = None

    def should_run(self, context: AgentContext) -> bool:
        return context.context_usage_percent < 90

    async def evaluate(self, context: AgentContext) -> AgentExecutionResult:
        raise NotImplementedError

    async def run(self, context: AgentContext) -> AgentExecutionResult:
        started = time.perf_counter()
        try:
            result = await self.evaluate(context)
        except Exception as e:
            elapsed = (time.perf_counter() - started) * 1000
            self.record_execution(elapsed, False)
            return AgentExecutionResult(
                agent_name=self.name, success=False, error=str(e), execution_time_ms=elapsed,
            )
        elapsed = (time.perf_counter() - started) * 1000
        self.record_execution(elapsed, True)
        return result.model_copy(update={"execution_time_ms": elapsed})

    def record_execution(self, elapsed_ms: float, success: bool) -> None:
        self.last_execution_time = time.time()
        self._execution_times.append(elapsed_ms)
        if not success:
            self.error_count += 1

    def health(self) -> AgentHealth:
        times = list(self._execution_times)
        average = sum(times) / len(times) if times else 0.0
        return AgentHealth(
            healthy=self.error_count < UNHEALTHY_ERROR_COUNT and average < UNHEALTHY_AVERAGE_MS,
            last_execution_time=self.last_execution_time,
            error_count=self.error_count,
            average_execution_time_ms=round(average, 3),
        )
