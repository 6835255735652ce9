"""Pipeline model and execution for gantry.

This package provides:
- Pipeline schema definitions (schema.py)
- Scoped environments and parameter resolution (environment.py, parameters.py)
- When-condition evaluation (gating.py)
- Cancellation tokens and named resource locks (cancellation.py, locks.py)
- Input-approval gates (approvals.py)
- Stage execution and the pipeline engine (stage_executor.py, executor.py)
- Pipeline loader and validator (loader.py)

Only the model-level modules are re-exported here; import the engine from
``gantry.pipeline.executor``.
"""

from gantry.pipeline.schema import (
    ApprovalEvent,
    Condition,
    ConditionOperator,
    FailureCause,
    InputGate,
    Parameter,
    ParameterType,
    PipelineDefinition,
    PipelineRun,
    RunStatus,
    Stage,
    StageKind,
    StageResult,
    StageStatus,
    Step,
    StepKind,
)
from gantry.pipeline.environment import Environment
from gantry.pipeline.cancellation import CancellationToken

__all__ = [
    "ApprovalEvent",
    "Condition",
    "ConditionOperator",
    "FailureCause",
    "InputGate",
    "Parameter",
    "ParameterType",
    "PipelineDefinition",
    "PipelineRun",
    "RunStatus",
    "Stage",
    "StageKind",
    "StageResult",
    "StageStatus",
    "Step",
    "StepKind",
    "Environment",
    "CancellationToken",
]
