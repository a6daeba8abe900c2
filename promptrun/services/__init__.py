"""Run orchestration services."""

from promptrun.services.call_registry import CallEntry, CallRegistry, CumulativeStats, get_call_registry
from promptrun.services.cancellation import (
    CancellationCoordinator,
    CancellationToken,
    CancelOutcome,
    CancelResult,
)
from promptrun.services.execution_client import ExecutionClient
from promptrun.services.pricing import ModelPricing, estimate_cost, format_cost, get_model_pricing
from promptrun.services.run_initiator import (
    ResumeAnswer,
    RunHandle,
    RunInitiator,
    RunRequest,
    RunResult,
)
from promptrun.services.run_state import (
    PendingQuestion,
    Run,
    RunStateMachine,
    RunStatus,
    ToolActivity,
    Usage,
)
from promptrun.services.run_telemetry import RunTelemetry
from promptrun.services.thread_resolver import MAX_ANCESTOR_HOPS, ThreadResolver

__all__ = [
    "CallEntry",
    "CallRegistry",
    "CumulativeStats",
    "get_call_registry",
    "CancellationCoordinator",
    "CancellationToken",
    "CancelOutcome",
    "CancelResult",
    "ExecutionClient",
    "ModelPricing",
    "estimate_cost",
    "format_cost",
    "get_model_pricing",
    "ResumeAnswer",
    "RunHandle",
    "RunInitiator",
    "RunRequest",
    "RunResult",
    "PendingQuestion",
    "Run",
    "RunStateMachine",
    "RunStatus",
    "ToolActivity",
    "Usage",
    "RunTelemetry",
    "MAX_ANCESTOR_HOPS",
    "ThreadResolver",
]
