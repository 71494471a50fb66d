"""Agent executor implementations."""

from task_engine.orchestrator.backend.base import AgentExecutor, ExecutionStatus
from task_engine.orchestrator.backend.cli_backend import BackendRunError, CliAgentExecutor
from task_engine.orchestrator.backend.echo_agent import EchoExecutor

__all__ = [
    "AgentExecutor",
    "BackendRunError",
    "CliAgentExecutor",
    "EchoExecutor",
    "ExecutionStatus",
]
