"""Infrastructure (Terraform) pipeline: Checkout -> Init -> Plan -> Approve -> Apply.

The Terraform stages share one named lock per workspace so two runs can never
plan and apply against the same state concurrently. The lock is held across
the approval gate: the plan being approved is the plan that gets applied.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from gantry.pipeline.schema import (
    InputGate,
    Parameter,
    ParameterType,
    PipelineDefinition,
    PostActions,
    Stage,
    StageKind,
    Step,
    StepKind,
)


class InfrastructureConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., pattern=r"^[A-Za-z0-9][A-Za-z0-9._-]*$", description="Stack name (e.g., 'network')")
    directory: str = Field(".", description="Terraform root module, relative to the workspace")
    environment: str = "dev"
    branch: str = "main"
    var_file: Optional[str] = None
    approvers: List[str] = Field(default_factory=list)
    approval_timeout_seconds: float = 4 * 3600
    backend_config: Dict[str, str] = Field(default_factory=dict)


def build_infrastructure(config: InfrastructureConfig) -> PipelineDefinition:
    tf = f"terraform -chdir={config.directory}"
    var_file = f" -var-file={config.var_file}" if config.var_file else ""
    backend = "".join(f" -backend-config={k}={v}" for k, v in sorted(config.backend_config.items()))

    return PipelineDefinition(
        name=f"{config.name}-infrastructure",
        description=f"Terraform pipeline for {config.name} ({config.environment})",
        parameters=[
            Parameter(name="TF_WORKSPACE", type=ParameterType.STRING, default=config.environment,
                      pattern=r"[A-Za-z0-9_-]+"),
        ],
        environment={"TF_IN_AUTOMATION": "true", "TF_INPUT": "0", "STACK": config.name},
        stages=[
            Stage(name="Checkout", steps=[
                Step(command=f"git fetch --all --prune && git checkout {config.branch} && git pull --ff-only"),
            ]),
            Stage(
                name="Terraform",
                kind=StageKind.SEQUENTIAL,
                lock=f"terraform-{config.name}-{config.environment}",
                stages=[
                    Stage(name="Init", steps=[Step(command=f"{tf} init -input=false{backend}")]),
                    Stage(name="Plan", steps=[
                        Step(command=f"{tf} plan -input=false -out=tfplan{var_file}"),
                        Step(name="summary", command=f"{tf} show -no-color tfplan", capture="PLAN_SUMMARY"),
                    ]),
                    Stage(
                        name="Approve",
                        input=InputGate(
                            message=f"Apply the Terraform plan for {config.name} ({config.environment})?",
                            approvers=config.approvers,
                            timeout_seconds=config.approval_timeout_seconds,
                        ),
                        steps=[Step(kind=StepKind.EMIT, message="Plan approved for ${STACK}")],
                    ),
                    Stage(name="Apply", steps=[Step(command=f"{tf} apply -input=false tfplan")]),
                ],
            ),
        ],
        post=PostActions(
            always=[Step(name="cleanup", command=f"rm -f {config.directory}/tfplan", continue_on_error=True)],
        ),
        tags=["terraform", "infrastructure"],
    )
