"""Turn pipeline: scene frame → intent intake → safety gate → check planner → narrative weaver."""

from chronicle_engine.pipeline.context import ExecutionContext
from chronicle_engine.pipeline.orchestrator import (
    DEFAULT_NODES,
    Node,
    Orchestrator,
    PipelineContractError,
)

__all__ = ["DEFAULT_NODES", "ExecutionContext", "Node", "Orchestrator", "PipelineContractError"]
