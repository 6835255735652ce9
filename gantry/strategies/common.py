"""Stage building blocks shared by the application strategies."""

from typing import Dict, List

from gantry.pipeline.schema import (
    Condition,
    ConditionOperator,
    InputGate,
    Parameter,
    ParameterType,
    PostActions,
    Stage,
    StageKind,
    Step,
    StepKind,
)
from gantry.strategies.router import RunConfig

PRODUCTION_ENVIRONMENTS = {"prod", "production"}


def standard_parameters(config: RunConfig) -> List[Parameter]:
    return [
        Parameter(name="DEPLOY", type=ParameterType.BOOLEAN, default=True,
                  description="Trigger the deployment job after publishing"),
        Parameter(name="TARGET_ENV", type=ParameterType.STRING, default=config.environment,
                  pattern=r"[A-Za-z0-9_-]+", description="Environment to deploy to"),
        Parameter(name="SKIP_TESTS", type=ParameterType.BOOLEAN, default=False),
    ]


def base_environment(config: RunConfig) -> Dict[str, str]:
    return {
        "COMPONENT": config.component,
        "BRANCH_NAME": config.branch,
        "APPLICATION": config.application.value,
    }


def checkout_stage(config: RunConfig) -> Stage:
    return Stage(name="Checkout", steps=[
        Step(name="fetch", command="git fetch --all --prune"),
        Step(name="checkout", command=f"git checkout {config.branch} && git pull --ff-only"),
    ])


def quality_stage(checks: Dict[str, str]) -> Stage:
    """Parallel test/analysis branches, skipped together when SKIP_TESTS is set."""
    return Stage(
        name="Quality",
        kind=StageKind.PARALLEL,
        when=Condition(field="params.SKIP_TESTS", operator=ConditionOperator.EQ, value=False),
        stages=[Stage(name=name, steps=[Step(command=command)]) for name, command in checks.items()],
    )


def version_stage(command: str) -> Stage:
    return Stage(
        name="Version",
        steps=[Step(name="read version", command=command, capture="PACKAGE_VERSION")],
        outputs=["PACKAGE_VERSION"],
    )


def publish_stage(config: RunConfig, default_repository: str, path: str) -> Stage:
    return Stage(name="Publish", steps=[
        Step(
            kind=StepKind.ARTIFACT_UPLOAD,
            repository=config.artifact_repository or default_repository,
            version="${PACKAGE_VERSION}",
            filename=path.rsplit("/", 1)[-1],
            path=path,
        ),
    ])


def deploy_stage(config: RunConfig, target: str, parameters: Dict[str, str]) -> Stage:
    """Downstream deployment; production targets wait for an approval first."""
    gate = None
    if config.environment in PRODUCTION_ENVIRONMENTS:
        gate = InputGate(
            message=f"Deploy {config.component} ${{PACKAGE_VERSION}} to {config.environment}?",
            timeout_seconds=24 * 3600,
        )
    return Stage(
        name="Deploy",
        when=Condition(field="params.DEPLOY", operator=ConditionOperator.EQ, value=True),
        input=gate,
        lock=f"deploy-{config.component}-{config.environment}",
        steps=[
            Step(
                kind=StepKind.DOWNSTREAM_BUILD,
                job=config.deploy_job or f"{config.component}-deploy-{target}",
                parameters={
                    "COMPONENT": config.component,
                    "VERSION": "${PACKAGE_VERSION}",
                    "ENVIRONMENT": "${TARGET_ENV}",
                    **parameters,
                },
            ),
        ],
    )


def post_actions(config: RunConfig) -> PostActions:
    return PostActions(
        always=[Step(kind=StepKind.EMIT, message=f"{config.component} pipeline finished: ${{PIPELINE_STATUS}}")],
    )
