"""Sequential agent runner with a per-agent timeout and an allocation cap."""
from __future__ import annotations

import asyncio
import logging
import time

from coachdash import config
from coachdash.agents.base import BaseAgent
from coachdash.agents.memory import AgentMemory
from coachdash.models import AgentContext, AgentExecutionResult, AgentRunResponse, AgentSuggestion
from coachdash.observability import record_agent_run

logger = logging.getLogger("coachdash.agents")

PRIORITY_ORDER = ("naming", "checkpoint_timing", "budget_guardian")
_PRIORITY_RANK = {"critical": 0, "high": 1, "medium": 2, "low": 3}


def rank_suggestions(suggestions: list[AgentSuggestion]) -> list[AgentSuggestion]:
    """Most urgent first; ties keep agent order."""
    return sorted(suggestions, key=lambda s: _PRIORITY_RANK[s.priority])


class AgentOrchestrator:
    def __init__(
        self,
        memory: AgentMemory,
        timeout_ms: int = config.AGENT_TIMEOUT_MS,
        max_context_percent: int = config.AGENT_MAX_CONTEXT_PERCENT,
    ):
        self.memory = memory
        self.timeout_ms = timeout_ms
        self.max_context_percent = max_context_percent
        self._agents: dict[str, BaseAgent] = {}
        self._running = False

    def register(self, agent: BaseAgent) -> None:
        if agent.kind in self._agents:
            raise ValueError(f"Agent {agent.name} is already registered")
        self._agents[agent.kind] = agent
        logger.info(f"Registered agent {agent.name} ({agent.max_context_allocation}% allocation)")

    @property
    def agents(self) -> list[BaseAgent]:
        return [self._agents[k] for k in PRIORITY_ORDER if k in self._agents]

    def get(self, name: str) -> BaseAgent | None:
        for agent in self._agents.values():
            if agent.name == name:
                return agent
        return None

    async def _run_one(self, agent: BaseAgent, context: AgentContext) -> AgentExecutionResult:
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(agent.run(context), timeout=self.timeout_ms / 1000)
        except asyncio.TimeoutError:
            elapsed = (time.perf_counter() - started) * 1000
            agent.record_execution(elapsed, False)
            logger.warning(f"Agent {agent.name} timed out after {self.timeout_ms}ms")
            return AgentExecutionResult(
                agent_name=agent.name,
                success=False,
                error=f"Agent {agent.name} execution timeout",
                execution_time_ms=elapsed,
            )

    async def execute(self, context: AgentContext) -> AgentRunResponse:
        if self._running:
            logger.warning("Orchestrator already running, skipping execution")
            return AgentRunResponse()

        self._running = True
        response = AgentRunResponse()
        allocated = 0
        started = time.perf_counter()
        try:
            for agent in self.agents:
                if allocated + agent.max_context_allocation > self.max_context_percent:
                    response.skipped.append(agent.name)
                    logger.info(f"Skipping {agent.name}: allocation cap of {self.max_context_percent}% reached")
                    continue
                if not agent.should_run(context):
                    response.skipped.append(agent.name)
                    continue
                allocated += agent.max_context_allocation

                result = await self._run_one(agent, context)
                record_agent_run(agent.name, result.success, result.execution_time_ms)
                response.results.append(result)
                if not result.success:
                    logger.warning(f"Agent {agent.name} failed: {result.error}")
                    continue
                if result.decision:
                    await self.memory.record_decision(context, result.decision)
                response.suggestions.extend(result.suggestions)
        finally:
            self._running = False

        response.suggestions = rank_suggestions(response.suggestions)
        logger.info(
            f"Agents ran in {(time.perf_counter() - started) * 1000:.1f}ms: "
            f"{len(response.results)} ran, {len(response.skipped)} skipped, "
            f"{len(response.suggestions)} suggestions"
        )
        return response

    def health(self) -> dict[str, dict]:
        return {agent.name: agent.health().model_dump() for agent in self.agents}
