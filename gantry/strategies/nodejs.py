"""Node.js pipeline strategies (VM and EKS targets)."""

from gantry.pipeline.schema import PipelineDefinition, Stage, Step
from gantry.strategies.common import (
    base_environment,
    checkout_stage,
    deploy_stage,
    post_actions,
    publish_stage,
    quality_stage,
    standard_parameters,
    version_stage,
)
from gantry.strategies.router import RunConfig

NODE_VERSION_COMMAND = "node -p \"require('./package.json').version\""


def _build_stages(config: RunConfig):
    return [
        checkout_stage(config),
        Stage(name="Install", steps=[Step(command="npm ci")]),
        quality_stage({
            "Lint": "npm run lint",
            "Unit Tests": "npm test",
            "Audit": "npm audit --audit-level=high",
        }),
        version_stage(NODE_VERSION_COMMAND),
    ]


def build_nodejs_vm(config: RunConfig) -> PipelineDefinition:
    """Install, test, pack a tarball, publish it, deploy it to VMs."""
    tarball = f"{config.component}-${{PACKAGE_VERSION}}.tgz"
    return PipelineDefinition(
        name=f"{config.component}-{config.application.value}",
        description=f"Node.js VM pipeline for {config.component}",
        parameters=standard_parameters(config),
        environment=base_environment(config),
        stages=_build_stages(config) + [
            Stage(name="Package", steps=[
                Step(command="npm prune --omit=dev"),
                Step(command=f"tar -czf {tarball} --exclude=.git ."),
            ]),
            publish_stage(config, "nodejs-releases", tarball),
            deploy_stage(config, "vm", {"ARTIFACT": tarball}),
        ],
        post=post_actions(config),
        tags=["nodejs", "vm"],
    )


def build_nodejs_eks(config: RunConfig) -> PipelineDefinition:
    """Install, test, build and push an image, publish the chart values, deploy to EKS."""
    registry = config.registry or "registry.local"
    image = f"{registry}/{config.component}:${{PACKAGE_VERSION}}"
    return PipelineDefinition(
        name=f"{config.component}-{config.application.value}",
        description=f"Node.js EKS pipeline for {config.component}",
        parameters=standard_parameters(config),
        environment={**base_environment(config), "IMAGE": image},
        stages=_build_stages(config) + [
            Stage(name="Image", steps=[
                Step(command=f"docker build -t {image} ."),
                Step(command=f"docker push {image}"),
            ]),
            Stage(name="Chart", steps=[
                Step(command="helm lint chart"),
                Step(command=f"helm package chart --version ${{PACKAGE_VERSION}} -d dist"),
            ]),
            publish_stage(config, "helm-charts", f"dist/{config.component}-${{PACKAGE_VERSION}}.tgz"),
            deploy_stage(config, "eks", {"IMAGE": image}),
        ],
        post=post_actions(config),
        tags=["nodejs", "eks"],
    )
