"""Java (Maven) pipeline strategies (VM and EKS targets)."""

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

MAVEN = "mvn -B -ntp"
MAVEN_VERSION_COMMAND = f"{MAVEN} help:evaluate -Dexpression=project.version -q -DforceStdout"


def _build_stages(config: RunConfig):
    return [
        checkout_stage(config),
        Stage(name="Compile", steps=[Step(command=f"{MAVEN} clean compile")]),
        quality_stage({
            "Unit Tests": f"{MAVEN} test",
            "Static Analysis": f"{MAVEN} verify -DskipTests spotbugs:check",
        }),
        version_stage(MAVEN_VERSION_COMMAND),
        Stage(name="Package", steps=[Step(command=f"{MAVEN} package -DskipTests")]),
    ]


def build_java_vm(config: RunConfig) -> PipelineDefinition:
    """Compile, test, package a jar, publish it, deploy it to VMs."""
    jar = f"target/{config.component}-${{PACKAGE_VERSION}}.jar"
    return PipelineDefinition(
        name=f"{config.component}-{config.application.value}",
        description=f"Java VM pipeline for {config.component}",
        parameters=standard_parameters(config),
        environment=base_environment(config),
        stages=_build_stages(config) + [
            publish_stage(config, "maven-releases", jar),
            deploy_stage(config, "vm", {"ARTIFACT": jar.rsplit("/", 1)[-1]}),
        ],
        post=post_actions(config),
        tags=["java", "vm"],
    )


def build_java_eks(config: RunConfig) -> PipelineDefinition:
    """Compile, test, package, build and push an image, deploy to EKS."""
    registry = config.registry or "registry.local"
    image = f"{registry}/{config.component}:${{PACKAGE_VERSION}}"
    return PipelineDefinition(
        name=f"{config.component}-{config.application.value}",
        description=f"Java EKS pipeline for {config.component}",
        parameters=standard_parameters(config),
        environment={**base_environment(config), "IMAGE": image},
        stages=_build_stages(config) + [
            publish_stage(config, "maven-releases", f"target/{config.component}-${{PACKAGE_VERSION}}.jar"),
            Stage(name="Image", steps=[
                Step(command=f"docker build -t {image} ."),
                Step(command=f"docker push {image}"),
            ]),
            deploy_stage(config, "eks", {"IMAGE": image}),
        ],
        post=post_actions(config),
        tags=["java", "eks"],
    )
