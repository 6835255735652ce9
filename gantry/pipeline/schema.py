"""Pipeline schema definitions using Pydantic for validation.

This module defines the structure of gantry pipelines, including:
- Stage trees (leaf, sequential, parallel) and their steps
- Parameters and manual input gates
- When-conditions for conditional execution
- Run and stage results, including the persisted run snapshot
"""

import threading
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator

from gantry.utils.helpers import parse_duration


class StageKind(str, Enum):
    """Shape of a stage node."""
    LEAF = "leaf"                # Ordered list of steps
    SEQUENTIAL = "sequential"    # Children run one after another
    PARALLEL = "parallel"        # Children run concurrently, full join


class StepKind(str, Enum):
    """Type of step inside a leaf stage."""
    COMMAND = "command"                        # External process
    ARTIFACT_UPLOAD = "artifact_upload"        # Push a file to the artifact store
    ARTIFACT_DOWNLOAD = "artifact_download"    # Fetch a file from the artifact store
    DOWNSTREAM_BUILD = "downstream_build"      # Trigger another job
    EMIT = "emit"                              # Write a message to the run log
    SCAN = "scan"                              # Static analysis / quality gate
    NOTIFY = "notify"                          # Send a notification


class StageStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    TIMED_OUT = "TIMED_OUT"

    @property
    def is_terminal(self) -> bool:
        return self not in (StageStatus.PENDING, StageStatus.RUNNING)

    @property
    def is_failure(self) -> bool:
        return self in (StageStatus.FAILED, StageStatus.TIMED_OUT)


class RunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED_FOR_INPUT = "PAUSED_FOR_INPUT"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ABORTED = "ABORTED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILURE, RunStatus.ABORTED)


class FailureCause(str, Enum):
    """Why a stage or run did not pass."""
    STEP_FAILURE = "step_failure"
    STAGE_TIMEOUT = "stage_timeout"
    GLOBAL_TIMEOUT = "global_timeout"
    GATE_DENIED = "gate_denied"
    GATE_TIMED_OUT = "gate_timed_out"
    ABORTED = "aborted"
    ERROR = "error"                  # PipelineError raised by a step
    WHEN_FALSE = "when_false"        # SKIPPED because the condition was false
    UPSTREAM_FAILED = "upstream_failed"  # SKIPPED after an earlier sibling failed

    @property
    def is_timeout(self) -> bool:
        return self in (FailureCause.STAGE_TIMEOUT, FailureCause.GLOBAL_TIMEOUT)


class ParameterType(str, Enum):
    STRING = "string"
    TEXT = "text"
    BOOLEAN = "boolean"
    CHOICE = "choice"
    PASSWORD = "password"


class ConditionOperator(str, Enum):
    """Comparison operators for when-conditions."""
    EQ = "=="     # Equal
    NEQ = "!="    # Not equal
    GT = ">"      # Greater than
    GTE = ">="    # Greater than or equal
    LT = "<"      # Less than
    LTE = "<="    # Less than or equal
    IN = "in"     # Value in list
    NOT_IN = "not_in"  # Value not in list
    MATCHES = "matches"  # Regex full match
    EXISTS = "exists"    # Variable is defined and non-empty


class ApprovalDecision(str, Enum):
    APPROVE = "approve"
    DENY = "deny"


class GateState(str, Enum):
    AWAITING_ENGINE = "AWAITING_ENGINE"
    PAUSED_FOR_INPUT = "PAUSED_FOR_INPUT"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    TIMED_OUT = "TIMED_OUT"


def _duration(value: Any) -> Optional[float]:
    seconds = parse_duration(value)
    if seconds is not None and seconds <= 0:
        raise ValueError("Timeouts must be positive")
    return seconds


class Condition(BaseModel):
    """Predicate evaluated against the active environment before a stage runs.

    Examples:
        # Only deploy from the main branch
        field: "env.BRANCH_NAME"
        operator: "=="
        value: "main"

        # Run when the DEPLOY parameter is set and the target is not prod
        field: "params.DEPLOY"
        operator: "=="
        value: "true"
        and_conditions:
          - field: "env.TARGET_ENV"
            operator: "!="
            value: "prod"
    """
    field: str = Field(..., description="Path to evaluate (e.g., 'env.BRANCH_NAME', 'params.DEPLOY')")
    operator: ConditionOperator = Field(ConditionOperator.EQ, description="Comparison operator")
    value: Union[bool, int, float, str, List[Any], None] = Field(None, description="Value to compare against")

    and_conditions: Optional[List["Condition"]] = Field(None, description="AND these conditions")
    or_conditions: Optional[List["Condition"]] = Field(None, description="OR these conditions")
    negate: bool = Field(False, description="Invert the final result")


class Parameter(BaseModel):
    """Typed input declared at pipeline scope or requested by an input gate."""
    name: str = Field(..., pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    type: ParameterType = ParameterType.STRING
    default: Optional[Union[bool, str]] = None
    choices: Optional[List[str]] = None
    pattern: Optional[str] = Field(None, description="Regex the value must fully match (string/text)")
    description: Optional[str] = None
    required: bool = False

    @model_validator(mode='after')
    def validate_constraints(self):
        if self.type == ParameterType.CHOICE:
            if not self.choices:
                raise ValueError(f"Choice parameter '{self.name}' must declare 'choices'")
            if self.default is not None and str(self.default) not in self.choices:
                raise ValueError(f"Default of choice parameter '{self.name}' is not one of its choices")
        elif self.choices:
            raise ValueError(f"Parameter '{self.name}' of type '{self.type.value}' cannot declare choices")
        return self


class InputGate(BaseModel):
    """Manual approval checkpoint in front of a stage."""
    message: str = "Proceed?"
    approvers: List[str] = Field(default_factory=list, description="Allowed approvers; empty means anyone")
    timeout_seconds: Optional[float] = Field(None, description="Gate expiry; expiry counts as denial")
    parameters: List[Parameter] = Field(default_factory=list)

    check_timeout = field_validator('timeout_seconds', mode='before')(_duration)


class Step(BaseModel):
    """Smallest unit of work inside a leaf stage."""
    kind: StepKind = StepKind.COMMAND
    name: Optional[str] = None

    # kind=command
    command: Optional[str] = None
    capture: Optional[str] = Field(None, description="Store stripped stdout in this leaf-local variable")

    # kind=artifact_upload / artifact_download
    repository: Optional[str] = None
    version: Optional[str] = None
    filename: Optional[str] = None
    path: Optional[str] = Field(None, description="Local file (relative to the workspace)")
    overwrite: bool = False

    # kind=downstream_build
    job: Optional[str] = None
    parameters: Dict[str, str] = Field(default_factory=dict)
    wait: bool = True
    propagate: bool = Field(True, description="Fail this step when the awaited downstream run fails")

    # kind=emit / notify
    message: Optional[str] = None
    channel: Optional[str] = None

    # kind=scan
    scanner: Optional[str] = None
    scanner_config: Dict[str, Any] = Field(default_factory=dict)

    # Common fields
    environment: Dict[str, str] = Field(default_factory=dict, description="Scoped override for this and later steps")
    continue_on_error: bool = False

    @model_validator(mode='after')
    def validate_step_kind(self):
        """Validate step has required fields for its kind."""
        if self.kind == StepKind.COMMAND and not self.command:
            raise ValueError("Step with kind='command' must have 'command' field")

        if self.kind in (StepKind.ARTIFACT_UPLOAD, StepKind.ARTIFACT_DOWNLOAD):
            missing = [f for f in ("repository", "version", "filename") if not getattr(self, f)]
            if missing:
                raise ValueError(f"Step with kind='{self.kind.value}' is missing {', '.join(missing)}")

        if self.kind == StepKind.DOWNSTREAM_BUILD and not self.job:
            raise ValueError("Step with kind='downstream_build' must have 'job' field")

        if self.kind in (StepKind.EMIT, StepKind.NOTIFY) and not self.message:
            raise ValueError(f"Step with kind='{self.kind.value}' must have 'message' field")

        if self.kind == StepKind.SCAN and not self.scanner:
            raise ValueError("Step with kind='scan' must have 'scanner' field")

        if self.capture and self.kind != StepKind.COMMAND:
            raise ValueError("Only command steps can capture output")

        return self

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        if self.kind == StepKind.COMMAND:
            return self.command.splitlines()[0][:60]
        return self.kind.value


class Stage(BaseModel):
    """A node of the pipeline tree: a leaf of steps or a composite of stages."""
    name: str = Field(..., min_length=1)
    kind: StageKind = StageKind.LEAF
    steps: List[Step] = Field(default_factory=list)
    stages: List["Stage"] = Field(default_factory=list)

    when: Optional[Condition] = None
    timeout_seconds: Optional[float] = None
    input: Optional[InputGate] = None
    environment: Dict[str, str] = Field(default_factory=dict)
    outputs: List[str] = Field(default_factory=list, description="Variables published to later stages")
    lock: Optional[str] = Field(None, description="Named resource lock held while the stage runs")

    check_timeout = field_validator('timeout_seconds', mode='before')(_duration)

    @model_validator(mode='before')
    @classmethod
    def infer_kind(cls, data: Any) -> Any:
        """Accept the ``parallel:`` shorthand and bare command strings in YAML."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "parallel" in data:
            data.setdefault("kind", StageKind.PARALLEL)
            data["stages"] = data.pop("parallel")
        elif data.get("stages") and "kind" not in data:
            data["kind"] = StageKind.SEQUENTIAL
        if isinstance(data.get("steps"), list):
            data["steps"] = [
                {"command": step} if isinstance(step, str) else step
                for step in data["steps"]
            ]
        return data

    @model_validator(mode='after')
    def validate_shape(self):
        if self.kind == StageKind.LEAF:
            if not self.steps:
                raise ValueError(f"Leaf stage '{self.name}' must have at least one step")
            if self.stages:
                raise ValueError(f"Leaf stage '{self.name}' cannot have child stages")
        else:
            if not self.stages:
                raise ValueError(f"{self.kind.value.capitalize()} stage '{self.name}' must have at least one child")
            if self.steps:
                raise ValueError(f"Composite stage '{self.name}' cannot have steps")

        names = [child.name for child in self.stages]
        if len(names) != len(set(names)):
            raise ValueError(f"Child stage names of '{self.name}' must be unique")
        if "/" in self.name:
            raise ValueError(f"Stage name '{self.name}' cannot contain '/'")
        return self

    def walk(self, path: str = ""):
        """Yield (path, stage) for this stage and all descendants, depth first."""
        here = f"{path}/{self.name}" if path else self.name
        yield here, self
        for child in self.stages:
            yield from child.walk(here)


class PostActions(BaseModel):
    """Steps run after the stage tree, keyed by the final run status."""
    always: List[Step] = Field(default_factory=list)
    success: List[Step] = Field(default_factory=list)
    failure: List[Step] = Field(default_factory=list)
    aborted: List[Step] = Field(default_factory=list)

    @field_validator('always', 'success', 'failure', 'aborted', mode='before')
    @classmethod
    def accept_strings(cls, steps):
        if isinstance(steps, list):
            return [{"command": s} if isinstance(s, str) else s for s in steps]
        return steps

    def for_status(self, status: "RunStatus") -> List[tuple]:
        """Hook groups to run for a terminal status, ``always`` first."""
        groups = [("always", self.always)]
        if status == RunStatus.SUCCESS:
            groups.append(("success", self.success))
        elif status == RunStatus.FAILURE:
            groups.append(("failure", self.failure))
        elif status == RunStatus.ABORTED:
            groups.append(("aborted", self.aborted))
        return [(name, steps) for name, steps in groups if steps]


class PipelineDefinition(BaseModel):
    """Complete pipeline definition: the graph a run executes."""
    name: str = Field(..., description="Pipeline name (e.g., 'cart-nodeJSVM')")
    version: str = Field("1.0", description="Definition version for tracking changes")
    description: Optional[str] = None

    parameters: List[Parameter] = Field(default_factory=list)
    environment: Dict[str, str] = Field(default_factory=dict)
    stages: List[Stage] = Field(..., description="Top-level stages, run sequentially")

    timeout_seconds: Optional[float] = Field(None, description="Global timeout for the whole run")
    continue_after_failure: bool = Field(False, description="Keep running sequential siblings after a failure")
    post: PostActions = Field(default_factory=PostActions)
    tags: Optional[List[str]] = None

    check_timeout = field_validator('timeout_seconds', mode='before')(_duration)

    @field_validator('stages')
    @classmethod
    def validate_stages(cls, stages: List[Stage]):
        """Validate there is at least one stage and top-level names are unique."""
        if not stages:
            raise ValueError("Pipeline must have at least one stage")

        names = [stage.name for stage in stages]
        if len(names) != len(set(names)):
            raise ValueError("Stage names must be unique")

        return stages

    @field_validator('parameters')
    @classmethod
    def validate_parameters(cls, parameters: List[Parameter]):
        names = [p.name for p in parameters]
        if len(names) != len(set(names)):
            raise ValueError("Parameter names must be unique")
        return parameters

    def root_stage(self) -> Stage:
        """The implicit sequential root wrapping the top-level stages."""
        return Stage(
            name=self.name.replace("/", "-"),
            kind=StageKind.SEQUENTIAL,
            stages=self.stages,
            environment=self.environment,
        )


class StageResult(BaseModel):
    """Outcome of one stage, written only by that stage's execution."""
    stage: str = Field(..., description="Stage path, '/'-joined names from the root")
    status: StageStatus = StageStatus.PENDING
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    output: str = ""
    error: Optional[str] = None
    cause: Optional[FailureCause] = None
    outputs: Dict[str, str] = Field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.stage.rsplit("/", 1)[-1]


class PendingGate(BaseModel):
    """An open input gate, persisted while the run is paused."""
    run_id: str
    stage: str
    message: str
    approvers: List[str] = Field(default_factory=list)
    parameters: List[Parameter] = Field(default_factory=list)
    state: GateState = GateState.PAUSED_FOR_INPUT
    opened_at: Optional[str] = None
    expires_at: Optional[str] = None


class ApprovalEvent(BaseModel):
    """External answer to an input gate."""
    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(..., alias="runId")
    stage: str = Field(..., alias="stageName")
    approver: str
    decision: ApprovalDecision = ApprovalDecision.APPROVE
    parameters: Dict[str, Any] = Field(default_factory=dict, alias="suppliedParameters")


EXIT_CODES = {
    "SUCCESS": 0,
    "FAILURE": 1,
    "TIMED_OUT": 2,
    "ABORTED": 3,
}


def exit_code_for(status, cause=None) -> int:
    """Process exit code for a run status and failure cause (either may be a raw value)."""
    status = RunStatus(status)
    if status == RunStatus.SUCCESS:
        return EXIT_CODES["SUCCESS"]
    if status == RunStatus.ABORTED:
        return EXIT_CODES["ABORTED"]
    if cause is not None and FailureCause(cause).is_timeout:
        return EXIT_CODES["TIMED_OUT"]
    return EXIT_CODES["FAILURE"]


class PipelineRun(BaseModel):
    """One execution instance of a pipeline definition."""
    run_id: str
    pipeline_name: str
    root_stage: Stage
    definition: Optional[PipelineDefinition] = None
    status: RunStatus = RunStatus.PENDING
    cause: Optional[FailureCause] = None
    parameters: Dict[str, str] = Field(default_factory=dict, description="Resolved values, passwords masked")
    environment: Dict[str, str] = Field(default_factory=dict, description="Root environment snapshot, masked")
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    stage_results: Dict[str, StageResult] = Field(default_factory=dict)
    pending_gates: Dict[str, PendingGate] = Field(default_factory=dict)
    post_results: Dict[str, StageResult] = Field(default_factory=dict)
    error: Optional[str] = None
    request: Dict[str, Any] = Field(default_factory=dict, description="Original run request, for recovery")

    _lock: Any = PrivateAttr(default_factory=threading.RLock)

    def record(self, result: StageResult) -> None:
        with self._lock:
            self.stage_results[result.stage] = result

    def open_gate(self, gate: PendingGate) -> None:
        with self._lock:
            self.pending_gates[gate.stage] = gate
            self.status = RunStatus.PAUSED_FOR_INPUT

    def close_gate(self, stage: str) -> None:
        with self._lock:
            self.pending_gates.pop(stage, None)
            if not self.pending_gates and self.status == RunStatus.PAUSED_FOR_INPUT:
                self.status = RunStatus.RUNNING

    @property
    def exit_code(self) -> int:
        return exit_code_for(self.status, self.cause)

    def snapshot(self) -> Dict[str, Any]:
        """Serializable state, safe to persist and return from the API."""
        with self._lock:
            return self.model_dump(mode="json", exclude={"definition"})


# Update forward references for recursive models
Condition.model_rebuild()
Stage.model_rebuild()
